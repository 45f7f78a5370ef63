"""Unit tests for the SLA tracker: windows, deadlines and breach lists."""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from claimflow.models.enterprise import Enterprise
from claimflow.models.request import (
    ItemClaimDetails,
    RequestKind,
    RequestPriority,
    RequestStatus,
    TransitToAirportEmergencyDetails,
    WorkRequest,
)
from claimflow.policy.resolver import PolicyResolver
from claimflow.sla.tracker import SlaTracker


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def tracker() -> SlaTracker:
    return SlaTracker(PolicyResolver.from_config_dir(CONFIG_DIR))


def _make_claim(
    request_id: str = "WR-000001",
    priority: RequestPriority = RequestPriority.NORMAL,
    created: datetime = T0,
    status: RequestStatus = RequestStatus.PENDING,
) -> WorkRequest:
    return WorkRequest(
        request_id=request_id,
        kind=RequestKind.ITEM_CLAIM,
        requester_id="stu-1",
        requester_enterprise=Enterprise.UNIVERSITY,
        details=ItemClaimDetails("ITEM-1", "Backpack", "Mine", "Blue zip"),
        priority=priority,
        status=status,
        created_utc=created,
    )


def _make_emergency(created: datetime = T0) -> WorkRequest:
    return WorkRequest(
        request_id="WR-000009",
        kind=RequestKind.TRANSIT_TO_AIRPORT_EMERGENCY,
        requester_id="trav-1",
        requester_enterprise=Enterprise.TRANSIT,
        details=TransitToAirportEmergencyDetails(
            "DOC-1", "Passport", "Central", "transit-central", "airport-main",
            "T2", "BA117", "Robin Tan",
        ),
        priority=RequestPriority.URGENT,
        created_utc=created,
    )


class TestWindows:
    def test_default_windows_per_priority(self, tracker: SlaTracker) -> None:
        expected = {
            RequestPriority.URGENT: 4,
            RequestPriority.HIGH: 24,
            RequestPriority.NORMAL: 72,
            RequestPriority.LOW: 168,
        }
        for priority, hours in expected.items():
            request = _make_claim(priority=priority)
            assert tracker.window(request) == timedelta(hours=hours)

    def test_kind_override(self, tracker: SlaTracker) -> None:
        assert tracker.window(_make_emergency()) == timedelta(hours=2)

    def test_missing_created_raises(self, tracker: SlaTracker) -> None:
        request = _make_claim()
        request.created_utc = None
        with pytest.raises(ValueError, match="no created_utc"):
            tracker.deadline(request)


class TestHoursUntil:
    def test_counts_down(self, tracker: SlaTracker) -> None:
        request = _make_claim()
        assert tracker.hours_until_sla(request, T0) == 72
        assert tracker.hours_until_sla(request, T0 + timedelta(hours=10)) == 62

    def test_floors_partial_hours(self, tracker: SlaTracker) -> None:
        request = _make_claim()
        now = T0 + timedelta(hours=71, minutes=30)
        assert tracker.hours_until_sla(request, now) == 0
        assert tracker.hours_until_sla(request, now + timedelta(hours=1)) == -1

    def test_overdue_only_when_negative_and_open(self, tracker: SlaTracker) -> None:
        request = _make_claim()
        late = T0 + timedelta(hours=73)
        assert tracker.is_overdue(request, T0 + timedelta(hours=72)) is False
        assert tracker.is_overdue(request, late) is True
        request.status = RequestStatus.APPROVED
        assert tracker.is_overdue(request, late) is True
        request.status = RequestStatus.COMPLETED
        assert tracker.is_overdue(request, late) is False

    def test_overdue_never_changes_status(self, tracker: SlaTracker) -> None:
        request = _make_claim()
        tracker.is_overdue(request, T0 + timedelta(days=30))
        assert request.status == RequestStatus.PENDING


class TestQueries:
    def test_overdue_sorted_by_deadline(self, tracker: SlaTracker) -> None:
        newer = _make_claim("WR-2", created=T0 + timedelta(hours=5))
        older = _make_claim("WR-1", created=T0)
        fresh = _make_claim("WR-3", created=T0 + timedelta(hours=70))
        done = _make_claim("WR-4", status=RequestStatus.REJECTED)
        now = T0 + timedelta(hours=100)
        result = tracker.overdue([newer, fresh, older, done], now)
        assert [r.request_id for r in result] == ["WR-1", "WR-2"]

    def test_approaching_breach_window(self, tracker: SlaTracker) -> None:
        request = _make_claim()
        # 20% of 72h is 14.4h
        assert tracker.is_approaching_breach(request, T0 + timedelta(hours=50)) is False
        assert tracker.is_approaching_breach(request, T0 + timedelta(hours=60)) is True
        assert tracker.is_approaching_breach(request, T0 + timedelta(hours=80)) is False
        result = tracker.approaching_breach([request], T0 + timedelta(hours=60))
        assert result == [request]
