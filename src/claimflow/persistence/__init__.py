"""Persistence layer — repositories, entity codec and audit event log."""

from claimflow.persistence.event_log import EventLog, EventRecord, EventKind
from claimflow.persistence.repository import (
    InMemoryRepository,
    JsonFileRepository,
    Repository,
    RepositorySet,
    trust_event_key,
)

__all__ = [
    "EventLog",
    "EventRecord",
    "EventKind",
    "InMemoryRepository",
    "JsonFileRepository",
    "Repository",
    "RepositorySet",
    "trust_event_key",
]
