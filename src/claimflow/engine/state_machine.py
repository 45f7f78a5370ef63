"""Work request state machine — one lifecycle shared by all seven kinds.

Pure computation over a WorkRequest passed in by the caller: every
precondition is checked before the first field is written, so a refused
decision leaves the request exactly as it was. The service layer
persists the mutated request and fans out the returned trust effects.

Transitions:
    PENDING     → IN_PROGRESS, APPROVED, REJECTED, CANCELLED
    IN_PROGRESS → APPROVED, REJECTED, CANCELLED
    APPROVED    → COMPLETED, REJECTED
    REJECTED, COMPLETED, CANCELLED → (none)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from claimflow.errors import (
    InvalidStateTransition,
    UnauthorizedActor,
    ValidationError,
)
from claimflow.models.dispute import DisputeDetails
from claimflow.models.request import (
    ChainStep,
    Decision,
    RejectionCategory,
    RequestStatus,
    WorkRequest,
)
from claimflow.models.trust import TrustEventKind


TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({
        RequestStatus.IN_PROGRESS,
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.IN_PROGRESS: frozenset({
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
        RequestStatus.CANCELLED,
    }),
    RequestStatus.APPROVED: frozenset({
        RequestStatus.COMPLETED,
        RequestStatus.REJECTED,
    }),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

_OPEN = (RequestStatus.PENDING, RequestStatus.IN_PROGRESS)

_REJECTION_PENALTY: dict[RejectionCategory, Optional[TrustEventKind]] = {
    RejectionCategory.POLICY: None,
    RejectionCategory.INCOMPLETE: TrustEventKind.CLAIM_REJECTED,
    RejectionCategory.FRAUDULENT: TrustEventKind.FALSE_CLAIM,
}


@dataclass(frozen=True)
class TrustEffect:
    """A trust event the service must apply after a transition.

    key is deterministic for a given (request, step, decision, user) so
    a retried decision maps onto the same ledger event.
    """
    user_id: str
    kind: TrustEventKind
    key: str
    description: str = ""


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of a successful decision or completion."""
    request_id: str
    decision: Optional[Decision]
    previous_status: RequestStatus
    new_status: RequestStatus
    step_index: Optional[int] = None
    final_approval: bool = False
    next_approver_id: Optional[str] = None
    trust_effects: list[TrustEffect] = field(default_factory=list)


class WorkRequestStateMachine:
    """Validates and applies lifecycle transitions.

    Usage:
        sm = WorkRequestStateMachine()
        sm.bind(request, chain, [("coord-1", "Casey")])
        outcome = sm.decide(request, "coord-1", Decision.APPROVE)
    """

    @staticmethod
    def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
        return target in TRANSITIONS[current]

    def _move(self, request: WorkRequest, target: RequestStatus) -> None:
        if not self.can_transition(request.status, target):
            raise InvalidStateTransition(
                f"Request {request.request_id}: illegal transition "
                f"{request.status.value} -> {target.value}"
            )
        request.status = target

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind(
        self,
        request: WorkRequest,
        chain: list[ChainStep],
        approvers: list[tuple[str, str]],
        now: Optional[datetime] = None,
    ) -> None:
        """Attach a chain and its bound (approver_id, name) pairs."""
        if len(chain) != len(approvers):
            raise ValidationError(
                f"Chain has {len(chain)} steps but {len(approvers)} approvers"
            )
        now = now or datetime.now(timezone.utc)
        request.chain = list(chain)
        request.approver_ids = [a[0] for a in approvers]
        request.approver_names = [a[1] for a in approvers]
        request.approval_step = 0
        request.current_approver_id = request.approver_ids[0] if approvers else None
        request.status = RequestStatus.PENDING
        request.created_utc = request.created_utc or now
        request.last_updated_utc = now

    def auto_advance(
        self, request: WorkRequest, now: Optional[datetime] = None,
    ) -> Optional[TransitionOutcome]:
        """Auto-approve the first step when the requester is its approver.

        A station manager filing a transfer out of their own station does
        not need to approve their own release.
        """
        if (
            request.status != RequestStatus.PENDING
            or request.approval_step != 0
            or not request.approver_ids
            or request.approver_ids[0] != request.requester_id
        ):
            return None
        now = now or datetime.now(timezone.utc)
        previous = request.status
        final = self._advance(request, now)
        request.add_note("Step 1 auto-approved: requester holds the approving role", now)
        return TransitionOutcome(
            request_id=request.request_id,
            decision=Decision.APPROVE,
            previous_status=previous,
            new_status=request.status,
            step_index=0,
            final_approval=final,
            next_approver_id=request.current_approver_id,
        )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(
        self,
        request: WorkRequest,
        actor_id: str,
        decision: Decision,
        notes: str = "",
        rejection_category: Optional[RejectionCategory] = None,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """Apply one approver (or requester) decision.

        Raises:
            InvalidStateTransition: request is terminal, or the decision
                does not apply to its current status.
            UnauthorizedActor: actor is not the current approver, or not
                the requester for CANCEL.
        """
        if request.is_terminal:
            raise InvalidStateTransition(
                f"Request {request.request_id} is {request.status.value}; "
                f"no further decisions accepted"
            )
        if decision == Decision.CANCEL:
            self._check_cancel(request, actor_id)
        else:
            self._check_approver(request, actor_id, decision)

        now = now or datetime.now(timezone.utc)
        previous = request.status
        step = request.approval_step
        effects: list[TrustEffect] = []
        final = False

        if decision == Decision.APPROVE:
            final = self._advance(request, now)
            if notes:
                request.add_note(f"Approved by {actor_id}: {notes}", now)
            if actor_id != request.requester_id:
                effects.append(TrustEffect(
                    user_id=actor_id,
                    kind=TrustEventKind.APPROVE_REQUEST,
                    key=f"{request.request_id}/{step}/approve/{actor_id}",
                    description=f"Approved step {step + 1} of {request.request_id}",
                ))
            if final:
                effects.append(TrustEffect(
                    user_id=request.requester_id,
                    kind=TrustEventKind.REQUEST_COMPLETED,
                    key=f"{request.request_id}/final/{request.requester_id}",
                    description=f"Request {request.request_id} approved",
                ))

        elif decision == Decision.REJECT:
            category = rejection_category or RejectionCategory.POLICY
            self._move(request, RequestStatus.REJECTED)
            request.rejection_reason = notes
            request.rejection_category = category
            request.completed_utc = now
            request.current_approver_id = None
            request.add_note(
                f"Rejected by {actor_id} ({category.value}): {notes}", now,
            )
            penalty = _REJECTION_PENALTY[category]
            if penalty is not None:
                effects.append(TrustEffect(
                    user_id=request.requester_id,
                    kind=penalty,
                    key=f"{request.request_id}/{step}/reject/{request.requester_id}",
                    description=notes or f"Request {request.request_id} rejected",
                ))

        else:
            self._move(request, RequestStatus.CANCELLED)
            request.completed_utc = now
            request.current_approver_id = None
            request.add_note(f"Cancelled by requester: {notes}" if notes
                             else "Cancelled by requester", now)

        request.last_updated_utc = now
        return TransitionOutcome(
            request_id=request.request_id,
            decision=decision,
            previous_status=previous,
            new_status=request.status,
            step_index=step if decision != Decision.CANCEL else None,
            final_approval=final,
            next_approver_id=request.current_approver_id,
            trust_effects=effects,
        )

    def _check_cancel(self, request: WorkRequest, actor_id: str) -> None:
        if actor_id != request.requester_id:
            raise UnauthorizedActor(
                f"Only the requester may cancel {request.request_id}"
            )
        if request.status not in _OPEN:
            raise InvalidStateTransition(
                f"Request {request.request_id} is {request.status.value}; "
                f"only pending or in-progress requests can be cancelled"
            )

    def _check_approver(
        self, request: WorkRequest, actor_id: str, decision: Decision,
    ) -> None:
        if request.status == RequestStatus.APPROVED:
            if decision == Decision.APPROVE:
                raise InvalidStateTransition(
                    f"Request {request.request_id} is already approved"
                )
            final_approver = request.approver_ids[-1] if request.approver_ids else None
            if actor_id != final_approver:
                raise UnauthorizedActor(
                    f"{actor_id} is not the final approver of {request.request_id}"
                )
            return
        if request.current_approver_id is None or actor_id != request.current_approver_id:
            raise UnauthorizedActor(
                f"{actor_id} is not the current approver of {request.request_id}"
            )

    def _advance(self, request: WorkRequest, now: datetime) -> bool:
        """Move past the current step. Returns True on final approval."""
        request.approval_step += 1
        if request.approval_step >= len(request.chain):
            self._move(request, RequestStatus.APPROVED)
            request.current_approver_id = None
            request.last_updated_utc = now
            return True
        if request.status == RequestStatus.PENDING:
            self._move(request, RequestStatus.IN_PROGRESS)
        request.current_approver_id = request.approver_ids[request.approval_step]
        request.last_updated_utc = now
        return False

    # ------------------------------------------------------------------
    # Fulfilment and dispute resolution
    # ------------------------------------------------------------------

    def complete(
        self,
        request: WorkRequest,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """Record hand-over of an approved request (APPROVED → COMPLETED)."""
        if request.status != RequestStatus.APPROVED:
            raise InvalidStateTransition(
                f"Request {request.request_id} is {request.status.value}; "
                f"only approved requests can be completed"
            )
        allowed = {request.requester_id}
        if request.approver_ids:
            allowed.add(request.approver_ids[-1])
        if isinstance(request.details, DisputeDetails) and request.details.winning_claimant_id:
            allowed.add(request.details.winning_claimant_id)
        if actor_id not in allowed:
            raise UnauthorizedActor(
                f"{actor_id} may not complete {request.request_id}"
            )
        now = now or datetime.now(timezone.utc)
        self._move(request, RequestStatus.COMPLETED)
        request.completed_utc = now
        request.last_updated_utc = now
        request.add_note(f"Completed by {actor_id}", now)
        return TransitionOutcome(
            request_id=request.request_id,
            decision=None,
            previous_status=RequestStatus.APPROVED,
            new_status=RequestStatus.COMPLETED,
        )

    def supersede(
        self, request: WorkRequest, reason: str, now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """Close a claim another decision made moot, as a POLICY rejection.

        Used for the losing claims of a resolved dispute. Carries no
        trust effects; the dispute outcome already scored the claimants.
        """
        if request.is_terminal:
            raise InvalidStateTransition(
                f"Request {request.request_id} is {request.status.value}; "
                f"cannot supersede"
            )
        now = now or datetime.now(timezone.utc)
        previous = request.status
        self._move(request, RequestStatus.REJECTED)
        request.rejection_reason = reason
        request.rejection_category = RejectionCategory.POLICY
        request.completed_utc = now
        request.current_approver_id = None
        request.last_updated_utc = now
        request.add_note(f"Superseded: {reason}", now)
        return TransitionOutcome(
            request_id=request.request_id,
            decision=Decision.REJECT,
            previous_status=previous,
            new_status=RequestStatus.REJECTED,
        )

    def resolve(
        self, request: WorkRequest, now: Optional[datetime] = None,
    ) -> TransitionOutcome:
        """Advance a dispute whose panel reached a verdict to APPROVED."""
        if request.is_terminal or request.status == RequestStatus.APPROVED:
            raise InvalidStateTransition(
                f"Request {request.request_id} is {request.status.value}; "
                f"cannot resolve"
            )
        now = now or datetime.now(timezone.utc)
        previous = request.status
        self._move(request, RequestStatus.APPROVED)
        request.approval_step = len(request.chain)
        request.current_approver_id = None
        request.last_updated_utc = now
        return TransitionOutcome(
            request_id=request.request_id,
            decision=Decision.APPROVE,
            previous_status=previous,
            new_status=RequestStatus.APPROVED,
            final_approval=True,
        )

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    @staticmethod
    def invariant_violations(request: WorkRequest) -> list[str]:
        """Structural invariants that must hold after every transition."""
        errors: list[str] = []
        if len(request.approver_ids) != len(request.chain):
            errors.append("approver_ids and chain differ in length")
        if not 0 <= request.approval_step <= len(request.chain):
            errors.append(
                f"approval_step {request.approval_step} outside "
                f"[0, {len(request.chain)}]"
            )
        should_have_approver = (
            not request.is_terminal
            and request.approval_step < len(request.chain)
        )
        if should_have_approver and request.current_approver_id is None:
            errors.append("current_approver_id missing for an open step")
        if not should_have_approver and request.current_approver_id is not None:
            errors.append("current_approver_id set with no open step")
        if (
            should_have_approver
            and request.current_approver_id is not None
            and request.current_approver_id != request.approver_ids[request.approval_step]
        ):
            errors.append("current_approver_id does not match the bound approver")
        return errors
