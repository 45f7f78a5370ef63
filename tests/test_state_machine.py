"""Tests for WorkRequestStateMachine — transitions, actors, trust effects."""

import copy
import pytest
from datetime import datetime, timezone

from claimflow.engine.state_machine import TRANSITIONS, WorkRequestStateMachine
from claimflow.errors import (
    ErrorKind,
    InvalidStateTransition,
    UnauthorizedActor,
    ValidationError,
)
from claimflow.models.enterprise import ApproverRole, Enterprise
from claimflow.models.request import (
    ChainStep,
    CrossCampusTransferDetails,
    Decision,
    RejectionCategory,
    RequestKind,
    RequestStatus,
    WorkRequest,
)
from claimflow.models.trust import TrustEventKind


T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

CHAIN = [
    ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY, "campus-north"),
    ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY, "campus-south"),
    ChainStep(ApproverRole.REQUESTER, None),
]
APPROVERS = [("coord-n", "Nadia"), ("coord-s", "Sam"), ("stu-1", "Student")]


def _make_request() -> WorkRequest:
    return WorkRequest(
        request_id="WR-000001",
        kind=RequestKind.CROSS_CAMPUS_TRANSFER,
        requester_id="stu-1",
        requester_enterprise=Enterprise.UNIVERSITY,
        details=CrossCampusTransferDetails(
            "ITEM-1", "Jacket", "campus-north", "campus-south", "stu-1",
        ),
    )


@pytest.fixture
def sm() -> WorkRequestStateMachine:
    return WorkRequestStateMachine()


@pytest.fixture
def bound(sm: WorkRequestStateMachine) -> WorkRequest:
    request = _make_request()
    sm.bind(request, CHAIN, APPROVERS, T0)
    return request


# ===================================================================
# Binding
# ===================================================================

class TestBind:
    def test_first_approver_current(self, bound: WorkRequest) -> None:
        assert bound.status == RequestStatus.PENDING
        assert bound.current_approver_id == "coord-n"
        assert bound.approval_step == 0
        assert WorkRequestStateMachine.invariant_violations(bound) == []

    def test_length_mismatch_rejected(self, sm: WorkRequestStateMachine) -> None:
        with pytest.raises(ValidationError, match="3 steps but 2 approvers"):
            sm.bind(_make_request(), CHAIN, APPROVERS[:2])

    def test_auto_advance_when_requester_holds_first_step(
        self, sm: WorkRequestStateMachine,
    ) -> None:
        request = _make_request()
        sm.bind(request, CHAIN, [("stu-1", "Student")] + APPROVERS[1:], T0)
        outcome = sm.auto_advance(request, T0)
        assert outcome is not None
        assert request.status == RequestStatus.IN_PROGRESS
        assert request.current_approver_id == "coord-s"
        assert "auto-approved" in request.notes[-1]

    def test_no_auto_advance_otherwise(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        assert sm.auto_advance(bound, T0) is None
        assert bound.approval_step == 0


# ===================================================================
# Decisions
# ===================================================================

class TestApprove:
    def test_full_chain_is_monotone(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        seen = [bound.status]
        for actor, _ in APPROVERS:
            sm.decide(bound, actor, Decision.APPROVE, now=T0)
            seen.append(bound.status)
            assert WorkRequestStateMachine.invariant_violations(bound) == []
        assert seen == [
            RequestStatus.PENDING,
            RequestStatus.IN_PROGRESS,
            RequestStatus.IN_PROGRESS,
            RequestStatus.APPROVED,
        ]
        assert bound.current_approver_id is None
        assert bound.approval_step == len(CHAIN)

    def test_trust_effects(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        first = sm.decide(bound, "coord-n", Decision.APPROVE, now=T0)
        assert [(e.user_id, e.kind) for e in first.trust_effects] == [
            ("coord-n", TrustEventKind.APPROVE_REQUEST),
        ]
        assert first.trust_effects[0].key == "WR-000001/0/approve/coord-n"
        sm.decide(bound, "coord-s", Decision.APPROVE, now=T0)
        last = sm.decide(bound, "stu-1", Decision.APPROVE, now=T0)
        assert last.final_approval is True
        assert [(e.user_id, e.kind) for e in last.trust_effects] == [
            ("stu-1", TrustEventKind.REQUEST_COMPLETED),
        ]

    def test_non_current_approver_leaves_request_unchanged(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        before = copy.deepcopy(bound)
        with pytest.raises(UnauthorizedActor) as exc:
            sm.decide(bound, "coord-s", Decision.APPROVE, now=T0)
        assert exc.value.kind == ErrorKind.UNAUTHORIZED_ACTOR
        assert bound == before

    def test_approve_after_approved_refused(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        for actor, _ in APPROVERS:
            sm.decide(bound, actor, Decision.APPROVE, now=T0)
        with pytest.raises(InvalidStateTransition, match="already approved"):
            sm.decide(bound, "stu-1", Decision.APPROVE, now=T0)


class TestReject:
    @pytest.mark.parametrize("category, penalty", [
        (RejectionCategory.POLICY, None),
        (RejectionCategory.INCOMPLETE, TrustEventKind.CLAIM_REJECTED),
        (RejectionCategory.FRAUDULENT, TrustEventKind.FALSE_CLAIM),
    ])
    def test_reject_penalty_by_category(
        self,
        sm: WorkRequestStateMachine,
        bound: WorkRequest,
        category: RejectionCategory,
        penalty,
    ) -> None:
        outcome = sm.decide(
            bound, "coord-n", Decision.REJECT, "No proof", category, now=T0,
        )
        assert bound.status == RequestStatus.REJECTED
        assert bound.completed_utc == T0
        assert bound.rejection_reason == "No proof"
        assert "No proof" in bound.notes[-1]
        kinds = [e.kind for e in outcome.trust_effects]
        assert kinds == ([] if penalty is None else [penalty])

    def test_terminal_admits_nothing(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        sm.decide(bound, "coord-n", Decision.REJECT, "No", now=T0)
        for decision in Decision:
            actor = "stu-1" if decision == Decision.CANCEL else "coord-n"
            with pytest.raises(InvalidStateTransition):
                sm.decide(bound, actor, decision, now=T0)
        with pytest.raises(InvalidStateTransition):
            sm.complete(bound, "stu-1", T0)

    def test_final_approver_may_reject_after_approval(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        for actor, _ in APPROVERS:
            sm.decide(bound, actor, Decision.APPROVE, now=T0)
        with pytest.raises(UnauthorizedActor):
            sm.decide(bound, "coord-n", Decision.REJECT, now=T0)
        sm.decide(bound, "stu-1", Decision.REJECT, "Wrong item", now=T0)
        assert bound.status == RequestStatus.REJECTED


class TestCancel:
    def test_requester_cancels_pending(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        outcome = sm.decide(bound, "stu-1", Decision.CANCEL, now=T0)
        assert bound.status == RequestStatus.CANCELLED
        assert bound.current_approver_id is None
        assert outcome.trust_effects == []

    def test_approver_cannot_cancel(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        with pytest.raises(UnauthorizedActor, match="Only the requester"):
            sm.decide(bound, "coord-n", Decision.CANCEL, now=T0)

    def test_cannot_cancel_approved(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        for actor, _ in APPROVERS:
            sm.decide(bound, actor, Decision.APPROVE, now=T0)
        with pytest.raises(InvalidStateTransition, match="can be cancelled"):
            sm.decide(bound, "stu-1", Decision.CANCEL, now=T0)


class TestComplete:
    def test_complete_after_approval(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        for actor, _ in APPROVERS:
            sm.decide(bound, actor, Decision.APPROVE, now=T0)
        outcome = sm.complete(bound, "stu-1", T0)
        assert outcome.new_status == RequestStatus.COMPLETED
        assert bound.is_terminal

    def test_complete_requires_approved(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        with pytest.raises(InvalidStateTransition, match="only approved"):
            sm.complete(bound, "stu-1", T0)

    def test_stranger_cannot_complete(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        for actor, _ in APPROVERS:
            sm.decide(bound, actor, Decision.APPROVE, now=T0)
        with pytest.raises(UnauthorizedActor):
            sm.complete(bound, "coord-n", T0)


class TestSupersede:
    def test_open_claim_closed_without_trust_effects(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        sm.decide(bound, "coord-n", Decision.APPROVE, now=T0)
        outcome = sm.supersede(bound, "Item awarded to stu-2 in WR-000009", T0)
        assert bound.status == RequestStatus.REJECTED
        assert bound.rejection_category == RejectionCategory.POLICY
        assert bound.current_approver_id is None
        assert outcome.previous_status == RequestStatus.IN_PROGRESS
        assert outcome.trust_effects == []

    def test_approved_claim_can_be_superseded(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        for actor, _ in APPROVERS:
            sm.decide(bound, actor, Decision.APPROVE, now=T0)
        sm.supersede(bound, "Awarded elsewhere", T0)
        assert bound.status == RequestStatus.REJECTED

    def test_terminal_claim_refused(
        self, sm: WorkRequestStateMachine, bound: WorkRequest,
    ) -> None:
        sm.decide(bound, "stu-1", Decision.CANCEL, now=T0)
        with pytest.raises(InvalidStateTransition, match="cannot supersede"):
            sm.supersede(bound, "Awarded elsewhere", T0)


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self) -> None:
        for status in (RequestStatus.REJECTED, RequestStatus.COMPLETED,
                       RequestStatus.CANCELLED):
            assert TRANSITIONS[status] == frozenset()

    def test_approved_never_returns_to_open(self) -> None:
        assert RequestStatus.PENDING not in TRANSITIONS[RequestStatus.APPROVED]
        assert RequestStatus.IN_PROGRESS not in TRANSITIONS[RequestStatus.APPROVED]
