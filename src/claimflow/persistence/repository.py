"""Repositories — the persistence contract the workflow core depends on.

    save(entity) -> id        insert; duplicate IDs are refused
    find_by_id(id)            a private copy, or None
    find_by(**criteria)       copies of entities whose attributes match
    update(entity) -> bool    optimistic: False if missing or stale
    delete(id) -> bool

Entities carrying a ``version`` attribute are checked on update: the
stored version must equal the caller's, and a successful update bumps
both. Callers always work on copies, so an in-memory repository behaves
like a real store and a failed update cannot leak half-applied state.

JsonFileRepository keeps one JSON document per collection, written in
full on every mutation. Suitable for single-node deployment; a database
backend can replace it behind the same interface.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generic, Optional, Protocol, TypeVar

from claimflow.models.request import WorkRequest
from claimflow.models.trust import TrustScore, TrustScoreEvent
from claimflow.models.verification import VerificationRequest
from claimflow.persistence import codec

T = TypeVar("T")


def trust_event_key(user_id: str, event_id: str) -> str:
    """Trust events are unique per user: two users may share an event_id."""
    return f"{user_id}/{event_id}"


def _keyed_trust_event(event: TrustScoreEvent) -> str:
    return trust_event_key(event.user_id, event.event_id)


class Repository(Protocol[T]):
    def save(self, entity: T) -> str:
        ...

    def find_by_id(self, entity_id: str) -> Optional[T]:
        ...

    def find_by(self, **criteria: Any) -> list[T]:
        ...

    def update(self, entity: T) -> bool:
        ...

    def delete(self, entity_id: str) -> bool:
        ...


def _matches(entity: Any, criteria: dict[str, Any]) -> bool:
    return all(getattr(entity, k, None) == v for k, v in criteria.items())


class InMemoryRepository(Generic[T]):
    """Dictionary-backed repository holding deep copies."""

    def __init__(self, key: Callable[[T], str]) -> None:
        self._key = key
        self._items: dict[str, T] = {}

    def save(self, entity: T) -> str:
        entity_id = self._key(entity)
        if entity_id in self._items:
            raise ValueError(f"Duplicate id: {entity_id}")
        self._items[entity_id] = copy.deepcopy(entity)
        return entity_id

    def find_by_id(self, entity_id: str) -> Optional[T]:
        item = self._items.get(entity_id)
        return copy.deepcopy(item) if item is not None else None

    def find_by(self, **criteria: Any) -> list[T]:
        return [
            copy.deepcopy(e) for e in self._items.values()
            if _matches(e, criteria)
        ]

    def update(self, entity: T) -> bool:
        entity_id = self._key(entity)
        stored = self._items.get(entity_id)
        if stored is None:
            return False
        if hasattr(entity, "version"):
            if getattr(stored, "version") != getattr(entity, "version"):
                return False
            setattr(entity, "version", getattr(entity, "version") + 1)
        self._items[entity_id] = copy.deepcopy(entity)
        return True

    def delete(self, entity_id: str) -> bool:
        return self._items.pop(entity_id, None) is not None

    @property
    def count(self) -> int:
        return len(self._items)


class JsonFileRepository(Generic[T]):
    """Single JSON file repository.

    OSError from the filesystem propagates; the in-memory view is rolled
    back first so it never runs ahead of the file.
    """

    def __init__(
        self,
        storage_path: Path,
        key: Callable[[T], str],
        encode: Callable[[T], dict[str, Any]],
        decode: Callable[[dict[str, Any]], T],
    ) -> None:
        self._path = storage_path
        self._key = key
        self._encode = encode
        self._decode = decode
        self._records: dict[str, dict[str, Any]] = {}
        if storage_path.exists():
            self._load()

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            self._records = json.load(f).get("records", {})

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as f:
            json.dump(
                {"records": self._records},
                f, indent=2, sort_keys=True, ensure_ascii=False,
            )

    def _commit(self, entity_id: str, record: Optional[dict[str, Any]]) -> None:
        previous = self._records.get(entity_id)
        if record is None:
            self._records.pop(entity_id, None)
        else:
            self._records[entity_id] = record
        try:
            self._save()
        except OSError:
            if previous is None:
                self._records.pop(entity_id, None)
            else:
                self._records[entity_id] = previous
            raise

    def save(self, entity: T) -> str:
        entity_id = self._key(entity)
        if entity_id in self._records:
            raise ValueError(f"Duplicate id: {entity_id}")
        self._commit(entity_id, self._encode(entity))
        return entity_id

    def find_by_id(self, entity_id: str) -> Optional[T]:
        record = self._records.get(entity_id)
        return self._decode(record) if record is not None else None

    def find_by(self, **criteria: Any) -> list[T]:
        entities = [self._decode(r) for r in self._records.values()]
        return [e for e in entities if _matches(e, criteria)]

    def update(self, entity: T) -> bool:
        entity_id = self._key(entity)
        stored = self._records.get(entity_id)
        if stored is None:
            return False
        versioned = hasattr(entity, "version")
        if versioned and stored.get("version", 0) != getattr(entity, "version"):
            return False
        record = self._encode(entity)
        if versioned:
            record["version"] = getattr(entity, "version") + 1
        self._commit(entity_id, record)
        if versioned:
            setattr(entity, "version", record["version"])
        return True

    def delete(self, entity_id: str) -> bool:
        if entity_id not in self._records:
            return False
        self._commit(entity_id, None)
        return True

    @property
    def count(self) -> int:
        return len(self._records)


@dataclass
class RepositorySet:
    """The repositories a WorkflowService needs, passed explicitly."""
    requests: Repository[WorkRequest]
    trust_scores: Repository[TrustScore]
    trust_events: Repository[TrustScoreEvent]
    verifications: Repository[VerificationRequest]

    @classmethod
    def in_memory(cls) -> RepositorySet:
        return cls(
            requests=InMemoryRepository(lambda r: r.request_id),
            trust_scores=InMemoryRepository(lambda s: s.user_id),
            trust_events=InMemoryRepository(_keyed_trust_event),
            verifications=InMemoryRepository(lambda v: v.verification_id),
        )

    @classmethod
    def json_dir(cls, directory: Path) -> RepositorySet:
        """One JSON file per collection under directory."""
        return cls(
            requests=JsonFileRepository(
                directory / "requests.json", lambda r: r.request_id,
                codec.encode_request, codec.decode_request,
            ),
            trust_scores=JsonFileRepository(
                directory / "trust_scores.json", lambda s: s.user_id,
                codec.encode_trust_score, codec.decode_trust_score,
            ),
            trust_events=JsonFileRepository(
                directory / "trust_events.json", _keyed_trust_event,
                codec.encode_trust_event, codec.decode_trust_event,
            ),
            verifications=JsonFileRepository(
                directory / "verifications.json", lambda v: v.verification_id,
                codec.encode_verification, codec.decode_verification,
            ),
        )
