"""Audit trail of workflow intent, hash-chained.

The service appends one EventRecord per accepted mutation: a submission,
a decision, a vote, a trust event or a verification change. Each record
names the entity it is about (subject_id) and carries the hash of the
record before it, so editing or dropping a line breaks the chain.

Fan-out after a decision (trust, notifications) is best-effort; an
operator reconciles it against this log.

Persistence is JSONL, one record per line. Reopening a file replays it
through the same checks as a live append.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


CHAIN_START = ""


class EventKind(str, enum.Enum):
    """What kind of workflow mutation a record audits."""
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_DECIDED = "request_decided"
    REQUEST_COMPLETED = "request_completed"
    TRUST_EVENT_APPLIED = "trust_event_applied"
    TRUST_GATE_CHANGED = "trust_gate_changed"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_UPDATED = "dispute_updated"
    DISPUTE_VOTE_CAST = "dispute_vote_cast"
    DISPUTE_RESOLVED = "dispute_resolved"
    VERIFICATION_CREATED = "verification_created"
    VERIFICATION_UPDATED = "verification_updated"
    VERIFICATION_EXPIRED = "verification_expired"


@dataclass(frozen=True)
class EventRecord:
    """One audited mutation.

    event_hash covers every other field, previous_hash included.
    """
    event_id: str
    event_kind: EventKind
    subject_id: str
    actor_id: str
    timestamp_utc: str
    payload: dict[str, Any]
    previous_hash: str
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        subject_id: str,
        actor_id: str,
        payload: Optional[dict[str, Any]] = None,
        previous_hash: str = CHAIN_START,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = (timestamp_utc or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
        body = {
            "event_id": event_id,
            "event_kind": event_kind.value,
            "subject_id": subject_id,
            "actor_id": actor_id,
            "timestamp_utc": ts,
            "payload": dict(payload or {}),
            "previous_hash": previous_hash,
        }
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            subject_id=subject_id,
            actor_id=actor_id,
            timestamp_utc=ts,
            payload=body["payload"],
            previous_hash=previous_hash,
            event_hash=_digest(body),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "timestamp_utc": self.timestamp_utc,
            "payload": self.payload,
            "previous_hash": self.previous_hash,
            "event_hash": self.event_hash,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record. Raises ValueError if its hash is wrong."""
        body = {k: v for k, v in data.items() if k != "event_hash"}
        expected = _digest(body)
        if data["event_hash"] != expected:
            raise ValueError(
                f"Integrity check failed: event {data['event_id']} "
                f"stored hash {data['event_hash']} != computed {expected}"
            )
        return EventRecord(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            subject_id=data["subject_id"],
            actor_id=data["actor_id"],
            timestamp_utc=data["timestamp_utc"],
            payload=data["payload"],
            previous_hash=data["previous_hash"],
            event_hash=data["event_hash"],
        )


def _digest(body: dict[str, Any]) -> str:
    canonical = json.dumps(body, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


class EventLog:
    """Append-only, hash-chained audit log.

    Usage:
        log = EventLog(Path("data/audit.jsonl"))
        log.record("EVT-00000001", EventKind.REQUEST_SUBMITTED,
                   subject_id="WR-000001", actor_id="stu-1",
                   payload={"kind": "item_claim"})
        log.events_for("WR-000001")

    Without a storage path the log lives in memory only.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._path = storage_path
        self._events: list[EventRecord] = []
        self._ids: set[str] = set()
        if storage_path is not None and storage_path.exists():
            self._replay(storage_path)

    @property
    def head_hash(self) -> str:
        return self._events[-1].event_hash if self._events else CHAIN_START

    def record(
        self,
        event_id: str,
        event_kind: EventKind,
        subject_id: str,
        actor_id: str,
        payload: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> EventRecord:
        """Build the next record on the chain and append it."""
        event = EventRecord.create(
            event_id, event_kind, subject_id, actor_id, payload,
            previous_hash=self.head_hash,
            timestamp_utc=now,
        )
        self.append(event)
        return event

    def append(self, event: EventRecord) -> None:
        """Append a record built against the current head.

        Raises ValueError on a reused event_id or a record whose
        previous_hash is not the current head. Raises OSError if the
        file write fails; the in-memory log is left unchanged.
        """
        self._check_next(event)
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")
        self._events.append(event)
        self._ids.add(event.event_id)

    def _check_next(self, event: EventRecord) -> None:
        if event.event_id in self._ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if event.previous_hash != self.head_hash:
            raise ValueError(
                f"Broken chain at {event.event_id}: previous_hash "
                f"{event.previous_hash or '<start>'} != head {self.head_hash or '<start>'}"
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for(self, subject_id: str) -> list[EventRecord]:
        """Every record about one request, user or verification, in order."""
        return [e for e in self._events if e.subject_id == subject_id]

    def events_since(
        self, since_utc: str, kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        return [
            e for e in self._events
            if e.timestamp_utc >= since_utc and (kind is None or e.event_kind == kind)
        ]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _replay(self, path: Path) -> None:
        """Load a JSONL file, failing closed on the first bad line."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = EventRecord.from_dict(json.loads(line))
                    self._check_next(event)
                except (ValueError, KeyError) as e:
                    raise ValueError(f"{path} line {line_num}: {e}") from e
                self._events.append(event)
                self._ids.add(event.event_id)
