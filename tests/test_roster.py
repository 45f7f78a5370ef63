"""Tests for ApproverRoster — registration and workload-balanced binding."""

import pytest

from claimflow.models.enterprise import ApproverRole, Enterprise
from claimflow.models.request import ChainStep, RequestPriority
from claimflow.routing.roster import ApproverEntry, ApproverRoster


def _make_roster() -> ApproverRoster:
    roster = ApproverRoster()
    roster.register(ApproverEntry(
        "coord-north", "Nadia", ApproverRole.CAMPUS_COORDINATOR,
        Enterprise.UNIVERSITY, "campus-north",
    ))
    roster.register(ApproverEntry(
        "coord-south-a", "Sam", ApproverRole.CAMPUS_COORDINATOR,
        Enterprise.UNIVERSITY, "campus-south",
    ))
    roster.register(ApproverEntry(
        "coord-south-b", "Sky", ApproverRole.CAMPUS_COORDINATOR,
        Enterprise.UNIVERSITY, "campus-south",
    ))
    roster.register(ApproverEntry(
        "mgr-1", "Morgan", ApproverRole.STATION_MANAGER,
        Enterprise.TRANSIT, "transit-central",
    ))
    return roster


SOUTH = ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY, "campus-south")


class TestRegistration:
    def test_blank_id_rejected(self) -> None:
        roster = ApproverRoster()
        with pytest.raises(ValueError, match="blank ID"):
            roster.register(ApproverEntry(
                "  ", "Nobody", ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY,
            ))

    def test_requester_role_rejected(self) -> None:
        roster = ApproverRoster()
        with pytest.raises(ValueError, match="REQUESTER"):
            roster.register(ApproverEntry(
                "x", "X", ApproverRole.REQUESTER, Enterprise.UNIVERSITY,
            ))

    def test_id_is_stripped(self) -> None:
        roster = ApproverRoster()
        roster.register(ApproverEntry(
            " mgr-2 ", "M", ApproverRole.STATION_MANAGER, Enterprise.TRANSIT,
        ))
        assert roster.get("mgr-2") is not None
        assert roster.count == 1


class TestResolve:
    def test_prefers_exact_organization(self) -> None:
        roster = _make_roster()
        entry = roster.resolve(SOUTH, RequestPriority.NORMAL)
        assert entry.organization_id == "campus-south"

    def test_balances_by_workload(self) -> None:
        roster = _make_roster()
        first = roster.resolve(SOUTH, RequestPriority.NORMAL)
        second = roster.resolve(SOUTH, RequestPriority.NORMAL)
        assert {first.approver_id, second.approver_id} == {"coord-south-a", "coord-south-b"}
        assert first.workload == 1
        assert second.workload == 1

    def test_falls_back_within_enterprise(self) -> None:
        roster = _make_roster()
        step = ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY, "campus-east")
        entry = roster.resolve(step, RequestPriority.NORMAL)
        assert entry is not None
        assert entry.enterprise == Enterprise.UNIVERSITY

    def test_urgent_keeps_organization_preference(self) -> None:
        roster = _make_roster()
        roster.get("coord-south-a").workload = 4
        roster.get("coord-south-b").workload = 4
        entry = roster.resolve(SOUTH, RequestPriority.URGENT)
        assert entry.organization_id == "campus-south"

    def test_urgent_transfer_binds_each_campus(self) -> None:
        roster = _make_roster()
        roster.get("coord-south-a").workload = 1
        roster.get("coord-south-b").workload = 1
        north = ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY, "campus-north")
        bound = [roster.resolve(s, RequestPriority.URGENT).approver_id for s in (north, SOUTH)]
        assert bound == ["coord-north", "coord-south-a"]

    def test_inactive_not_bound(self) -> None:
        roster = _make_roster()
        roster.deactivate("mgr-1")
        step = ChainStep(ApproverRole.STATION_MANAGER, Enterprise.TRANSIT, "transit-central")
        assert roster.resolve(step, RequestPriority.NORMAL) is None

    def test_wrong_enterprise_not_bound(self) -> None:
        roster = _make_roster()
        step = ChainStep(ApproverRole.STATION_MANAGER, Enterprise.AIRPORT)
        assert roster.resolve(step, RequestPriority.NORMAL) is None

    def test_release_decrements_not_below_zero(self) -> None:
        roster = _make_roster()
        entry = roster.resolve(SOUTH, RequestPriority.NORMAL)
        roster.release(entry.approver_id)
        roster.release(entry.approver_id)
        assert roster.get(entry.approver_id).workload == 0
