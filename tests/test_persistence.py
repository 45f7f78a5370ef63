"""Tests for repositories and the audit event log."""

import json
import pytest
from datetime import datetime, timezone
from pathlib import Path

from claimflow.models.enterprise import Enterprise
from claimflow.models.request import (
    ItemClaimDetails,
    RequestKind,
    RequestStatus,
    WorkRequest,
)
from claimflow.persistence import (
    EventKind,
    EventLog,
    EventRecord,
    InMemoryRepository,
    RepositorySet,
)


T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def _make_request(request_id: str = "WR-000001", requester: str = "stu-1") -> WorkRequest:
    return WorkRequest(
        request_id=request_id,
        kind=RequestKind.ITEM_CLAIM,
        requester_id=requester,
        requester_enterprise=Enterprise.UNIVERSITY,
        details=ItemClaimDetails("ITEM-1", "Backpack", "Mine", "Blue zip"),
        created_utc=T0,
    )


def _record(log: EventLog, event_id: str, subject: str = "WR-000001") -> EventRecord:
    return log.record(
        event_id, EventKind.REQUEST_SUBMITTED, subject, "stu-1",
        {"kind": "item_claim"}, now=T0,
    )


@pytest.fixture(params=["memory", "json"])
def repos(request, tmp_path: Path) -> RepositorySet:
    if request.param == "memory":
        return RepositorySet.in_memory()
    return RepositorySet.json_dir(tmp_path)


# ===================================================================
# Repository contract (both backends)
# ===================================================================

class TestRepositoryContract:
    def test_save_and_find(self, repos: RepositorySet) -> None:
        assert repos.requests.save(_make_request()) == "WR-000001"
        found = repos.requests.find_by_id("WR-000001")
        assert found is not None
        assert found.details.item_id == "ITEM-1"
        assert repos.requests.find_by_id("missing") is None

    def test_duplicate_save_refused(self, repos: RepositorySet) -> None:
        repos.requests.save(_make_request())
        with pytest.raises(ValueError, match="Duplicate id"):
            repos.requests.save(_make_request())

    def test_find_by_criteria(self, repos: RepositorySet) -> None:
        repos.requests.save(_make_request("WR-1", "stu-1"))
        repos.requests.save(_make_request("WR-2", "stu-2"))
        found = repos.requests.find_by(requester_id="stu-2")
        assert [r.request_id for r in found] == ["WR-2"]
        assert len(repos.requests.find_by()) == 2

    def test_callers_get_copies(self, repos: RepositorySet) -> None:
        repos.requests.save(_make_request())
        copy_a = repos.requests.find_by_id("WR-000001")
        copy_a.status = RequestStatus.CANCELLED
        assert repos.requests.find_by_id("WR-000001").status == RequestStatus.PENDING

    def test_update_bumps_version(self, repos: RepositorySet) -> None:
        repos.requests.save(_make_request())
        request = repos.requests.find_by_id("WR-000001")
        request.status = RequestStatus.IN_PROGRESS
        assert repos.requests.update(request) is True
        assert request.version == 1
        stored = repos.requests.find_by_id("WR-000001")
        assert stored.version == 1
        assert stored.status == RequestStatus.IN_PROGRESS

    def test_stale_update_refused(self, repos: RepositorySet) -> None:
        repos.requests.save(_make_request())
        first = repos.requests.find_by_id("WR-000001")
        second = repos.requests.find_by_id("WR-000001")
        first.status = RequestStatus.CANCELLED
        assert repos.requests.update(first) is True
        second.status = RequestStatus.IN_PROGRESS
        assert repos.requests.update(second) is False
        assert repos.requests.find_by_id("WR-000001").status == RequestStatus.CANCELLED

    def test_update_missing_returns_false(self, repos: RepositorySet) -> None:
        assert repos.requests.update(_make_request()) is False

    def test_delete(self, repos: RepositorySet) -> None:
        repos.requests.save(_make_request())
        assert repos.requests.delete("WR-000001") is True
        assert repos.requests.delete("WR-000001") is False


class TestJsonFileRepository:
    def test_survives_reopen(self, tmp_path: Path) -> None:
        RepositorySet.json_dir(tmp_path).requests.save(_make_request())
        reopened = RepositorySet.json_dir(tmp_path)
        assert reopened.requests.find_by_id("WR-000001").kind == RequestKind.ITEM_CLAIM
        data = json.loads((tmp_path / "requests.json").read_text())
        assert data["records"]["WR-000001"]["kind"] == "item_claim"

    def test_in_memory_count(self) -> None:
        repo = InMemoryRepository(lambda r: r.request_id)
        repo.save(_make_request())
        assert repo.count == 1


# ===================================================================
# Event log
# ===================================================================

class TestEventLog:
    def test_record_and_filter(self) -> None:
        log = EventLog()
        _record(log, "EVT-00000001")
        _record(log, "EVT-00000002", subject="WR-000002")
        assert log.count == 2
        assert [e.event_id for e in log.events_for("WR-000002")] == ["EVT-00000002"]
        assert len(log.events(EventKind.REQUEST_SUBMITTED)) == 2
        assert log.events(EventKind.DISPUTE_OPENED) == []
        assert log.last_event.event_id == "EVT-00000002"

    def test_records_are_chained(self) -> None:
        log = EventLog()
        first = _record(log, "EVT-00000001")
        second = _record(log, "EVT-00000002")
        assert first.previous_hash == ""
        assert second.previous_hash == first.event_hash
        assert log.head_hash == second.event_hash

    def test_duplicate_rejected(self) -> None:
        log = EventLog()
        _record(log, "EVT-00000001")
        with pytest.raises(ValueError, match="Duplicate event ID"):
            _record(log, "EVT-00000001")

    def test_record_built_off_head_rejected(self) -> None:
        log = EventLog()
        _record(log, "EVT-00000001")
        stray = EventRecord.create(
            "EVT-00000002", EventKind.REQUEST_DECIDED, "WR-000001", "coord-1",
        )
        with pytest.raises(ValueError, match="Broken chain"):
            log.append(stray)
        assert log.count == 1

    def test_jsonl_reload(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(path)
        _record(log, "EVT-00000001")
        _record(log, "EVT-00000002")
        reloaded = EventLog(path)
        assert reloaded.count == 2
        assert reloaded.head_hash == log.head_hash
        _record(reloaded, "EVT-00000003")
        assert EventLog(path).count == 3

    def test_tampered_line_detected(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        _record(EventLog(path), "EVT-00000001")
        record = json.loads(path.read_text())
        record["actor_id"] = "mallory"
        path.write_text(json.dumps(record) + "\n")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(path)

    def test_dropped_line_detected(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(path)
        for n in range(1, 4):
            _record(log, f"EVT-0000000{n}")
        lines = path.read_text().splitlines()
        path.write_text(lines[0] + "\n" + lines[2] + "\n")
        with pytest.raises(ValueError, match="line 2: Broken chain"):
            EventLog(path)

    def test_events_since(self) -> None:
        log = EventLog()
        _record(log, "EVT-00000001")
        assert len(log.events_since("2026-03-01T00:00:00Z")) == 1
        assert log.events_since("2026-03-02T00:00:00Z") == []
