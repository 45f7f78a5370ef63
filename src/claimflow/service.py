"""Workflow service — unified facade for the work-request orchestration core.

This is the primary interface for programmatic access. It orchestrates:
- Submission (validation, priority, chain routing, approver binding)
- Decisions (approve, reject, cancel, complete) through the state machine
- Trust ledger events emitted as side effects of decisions and votes
- Dispute panels (claimants, panel, evidence, voting, manual resolution)
- Verification requests linked to approval chains
- SLA queries (overdue, approaching breach)

Every operation returns a ServiceResult. Business rejections never
escape as exceptions: engines raise typed WorkflowErrors and this layer
converts them, carrying the ErrorKind for the caller.

Write ordering for a decision:
1. Load a private copy of the request and check every precondition.
2. Persist it with an optimistic version check (stale → STALE_WRITE,
   or INVALID_STATE_TRANSITION if the other writer closed it).
3. Fan out side effects sequentially and best-effort: trust events
   (idempotent per event key), linked verifications, roster workload,
   notifications. Failures here become warnings, not rollbacks.
4. Append the audit record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from claimflow import __version__
from claimflow.dispute.engine import DisputeResolutionEngine
from claimflow.engine.state_machine import (
    TransitionOutcome,
    TrustEffect,
    WorkRequestStateMachine,
)
from claimflow.errors import (
    DisputePreconditionError,
    ErrorKind,
    InvalidStateTransition,
    NotFound,
    PersistenceFailure,
    StaleWrite,
    UnauthorizedActor,
    ValidationError,
    WorkflowError,
)
from claimflow.models.dispute import (
    Claimant,
    DisputeDetails,
    EvidenceOutcome,
    PanelMember,
    ResolutionStatus,
)
from claimflow.models.enterprise import ApproverRole
from claimflow.models.request import (
    ChainStep,
    Decision,
    ItemClaimDetails,
    RejectionCategory,
    RequestKind,
    RequestPriority,
    RequestStatus,
    WorkRequest,
)
from claimflow.models.trust import TrustEventKind, TrustScore, TrustScoreEvent
from claimflow.models.verification import (
    VerificationRequest,
    VerificationStatus,
    VerificationType,
)
from claimflow.notify import Notifier, OutboxNotifier
from claimflow.persistence.event_log import EventKind, EventLog
from claimflow.persistence.repository import RepositorySet, trust_event_key
from claimflow.policy.resolver import PolicyResolver
from claimflow.routing.roster import ApproverRoster, RosterLookup
from claimflow.routing.router import ApprovalChainRouter
from claimflow.sla.tracker import SlaTracker
from claimflow.trust.ledger import TrustLedger
from claimflow.verification.engine import VerificationEngine

logger = logging.getLogger(__name__)

_OPEN = (RequestStatus.PENDING, RequestStatus.IN_PROGRESS)
_POLICE_ROLES = (ApproverRole.POLICE_OFFICER, ApproverRole.POLICE_EVIDENCE_CUSTODIAN)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None


def _failure(exc: WorkflowError) -> ServiceResult:
    errors = exc.errors if isinstance(exc, ValidationError) else [str(exc)]
    return ServiceResult(success=False, errors=errors, error_kind=exc.kind)


def _with_warnings(data: dict[str, Any], warnings: list[str]) -> dict[str, Any]:
    if warnings:
        data["warnings"] = warnings
    return data


class WorkflowService:
    """Cross-enterprise work-request facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        roster = ApproverRoster()
        roster.register(ApproverEntry("coord-1", "Casey", ApproverRole.CAMPUS_COORDINATOR,
                                      Enterprise.UNIVERSITY, "campus-main"))
        service = WorkflowService(resolver, roster=roster)

        result = service.submit(request)
        result = service.decide(result.data["request_id"], "coord-1", Decision.APPROVE)

    Persistence (optional):
        repos = RepositorySet.json_dir(Path("data"))
        service = WorkflowService(resolver, repositories=repos,
                                  event_log=EventLog(Path("data/audit.jsonl")))
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        repositories: Optional[RepositorySet] = None,
        roster: Optional[RosterLookup] = None,
        notifier: Optional[Notifier] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._resolver = resolver
        self._repos = repositories or RepositorySet.in_memory()
        self._roster: RosterLookup = roster if roster is not None else ApproverRoster()
        self._notifier: Notifier = notifier if notifier is not None else OutboxNotifier()
        self._event_log = event_log

        self._ledger = TrustLedger(resolver)
        self._router = ApprovalChainRouter(resolver, self._ledger)
        self._state_machine = WorkRequestStateMachine()
        self._sla = SlaTracker(resolver)
        self._disputes = DisputeResolutionEngine(resolver)
        self._verifier = VerificationEngine(resolver)

        # Counters start from persisted state to avoid ID collision on restart
        self._request_counter = len(self._repos.requests.find_by())
        self._verification_counter = len(self._repos.verifications.find_by())
        self._trust_event_counter = len(self._repos.trust_events.find_by())
        self._event_counter = event_log.count if event_log is not None else 0

        # Set when an audit append fails after the store was updated.
        self._audit_degraded: bool = False

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self, request: WorkRequest, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Validate, route and store a new work request.

        An item claim on an item someone else is already claiming is not
        stored: it opens (or joins) a multi-enterprise dispute for the
        item, and the result carries the dispute's ID instead.
        """
        now = now or datetime.now(timezone.utc)
        bound: list[str] = []
        warnings: list[str] = []
        dispute: Optional[WorkRequest] = None
        try:
            errors = request.validate()
            if errors:
                raise ValidationError("Invalid work request", errors)
            if (
                request.request_id
                and self._repos.requests.find_by_id(request.request_id) is not None
            ):
                raise ValidationError(f"Duplicate request ID: {request.request_id}")

            trust = self._trust_for(request.requester_id, now)
            if isinstance(request.details, ItemClaimDetails):
                dispute = self._route_competing_claim(request, trust, now, warnings)
            if dispute is None:
                self._route_and_store(request, trust, now, bound)
        except WorkflowError as exc:
            for approver_id in bound:
                self._roster.release(approver_id)
            logger.warning("Submission refused: %s", exc)
            return _failure(exc)

        if dispute is not None:
            logger.info(
                "Claim by %s on %s routed to dispute %s",
                request.requester_id, request.item_id, dispute.request_id,
            )
            return ServiceResult(success=True, data=_with_warnings({
                "request_id": dispute.request_id,
                "dispute_id": dispute.request_id,
                "status": dispute.status.value,
                "priority": dispute.priority.value,
                "claimants": [c.claimant_id for c in dispute.details.claimants],
            }, warnings))

        warning = self._record_event(
            EventKind.REQUEST_SUBMITTED, request.requester_id, request.request_id,
            {
                "kind": request.kind.value,
                "priority": request.priority.value,
                "chain": [s.role.value for s in request.chain],
            },
        )
        if warning:
            warnings.append(warning)
        if request.current_approver_id:
            self._notifier.decision_needed(request, request.current_approver_id)
        if request.status == RequestStatus.APPROVED:
            self._notifier.request_approved(request)
        logger.info(
            "Submitted %s (%s, %s) chain=%d",
            request.request_id, request.kind.value,
            request.priority.value, len(request.chain),
        )

        data: dict[str, Any] = {
            "request_id": request.request_id,
            "status": request.status.value,
            "priority": request.priority.value,
            "chain": [s.role.value for s in request.chain],
            "current_approver_id": request.current_approver_id,
            "verification_ids": list(request.linked_verification_ids),
        }
        return ServiceResult(success=True, data=_with_warnings(data, warnings))

    def _route_and_store(
        self,
        request: WorkRequest,
        trust: TrustScore,
        now: datetime,
        bound: list[str],
    ) -> None:
        if not request.request_id:
            request.request_id = self._next_request_id()
        request.priority = self._router.determine_priority(request, trust)
        if self._ledger.is_low_trust(trust):
            request.add_note(
                f"LOW TRUST SCORE: requester at {trust.current_score}", now,
            )
        request.created_utc = now
        request.version = 0

        verification: Optional[VerificationRequest] = None
        if request.kind == RequestKind.MULTI_ENTERPRISE_DISPUTE:
            self._disputes.open(request)
            self._state_machine.bind(request, [], [], now)
        else:
            chain = self._router.build_chain(request, trust)
            approvers = self._bind_approvers(request, chain, bound)
            self._state_machine.bind(request, chain, approvers, now)
            self._state_machine.auto_advance(request, now)
            verification = self._spawn_chain_verification(request, now)

        self._insert(self._repos.requests, request)
        if verification is not None:
            self._insert(self._repos.verifications, verification)

    def _bind_approvers(
        self,
        request: WorkRequest,
        chain: list[ChainStep],
        bound: list[str],
    ) -> list[tuple[str, str]]:
        approvers: list[tuple[str, str]] = []
        for step in chain:
            if step.role == ApproverRole.REQUESTER:
                approvers.append((request.requester_id, request.requester_name))
                continue
            entry = self._roster.resolve(step, request.priority)
            if entry is None:
                where = step.enterprise.value if step.enterprise else "any enterprise"
                raise NotFound(f"No active {step.role.value} available in {where}")
            bound.append(entry.approver_id)
            approvers.append((entry.approver_id, entry.name))
        return approvers

    def _spawn_chain_verification(
        self, request: WorkRequest, now: datetime,
    ) -> Optional[VerificationRequest]:
        """Create the verification backing a chain's verification step."""
        for index, step in enumerate(request.chain):
            if step.role != ApproverRole.VERIFICATION_OFFICER:
                continue
            verification = self._verifier.create(
                self._next_verification_id(),
                self._router.verification_type(request),
                subject_user_id=request.requester_id,
                requester_id=request.requester_id,
                subject_item_id=request.item_id,
                item_value=self._router.item_value(request),
                related_request_id=request.request_id,
                now=now,
            )
            self._verifier.assign(
                verification, request.approver_ids[index], step.role.value, now,
            )
            request.linked_verification_ids.append(verification.verification_id)
            return verification
        return None

    def _open_dispute_for(self, item_id: Optional[str]) -> Optional[WorkRequest]:
        """The unresolved dispute over an item, if there is one."""
        for dispute in self._repos.requests.find_by(
            kind=RequestKind.MULTI_ENTERPRISE_DISPUTE,
        ):
            if dispute.item_id != item_id or dispute.is_terminal:
                continue
            if dispute.details.resolution_status != ResolutionStatus.RESOLVED:
                return dispute
        return None

    def _route_competing_claim(
        self,
        request: WorkRequest,
        trust: TrustScore,
        now: datetime,
        warnings: list[str],
    ) -> Optional[WorkRequest]:
        """Open or join the dispute over a claimed item.

        Returns None when nobody else is claiming the item, in which case
        the claim is routed like any other request.
        """
        newcomer = self._claimant_from(request, trust)
        dispute = self._open_dispute_for(request.item_id)
        if dispute is not None:
            if dispute.details.claimant(request.requester_id) is None:
                if self._disputes.add_claimant(dispute, newcomer):
                    dispute.priority = RequestPriority.URGENT
                    dispute.add_note("Escalated: claimant count threshold reached", now)
                dispute.last_updated_utc = now
                self._store_request(dispute)
                warning = self._record_event(
                    EventKind.DISPUTE_UPDATED, request.requester_id,
                    dispute.request_id,
                    {"action": "claimant_joined", "claimant_id": request.requester_id},
                )
                if warning:
                    warnings.append(warning)
            return dispute

        rivals = [
            r for r in self._repos.requests.find_by(kind=RequestKind.ITEM_CLAIM)
            if r.item_id == request.item_id
            and not r.is_terminal
            and r.requester_id != request.requester_id
        ]
        if not rivals:
            return None

        claimants = [
            self._claimant_from(r, self._trust_for(r.requester_id, now))
            for r in rivals
        ]
        claimants.append(newcomer)
        details: ItemClaimDetails = request.details  # type: ignore[assignment]
        dispute = WorkRequest(
            request_id=self._next_request_id(),
            kind=RequestKind.MULTI_ENTERPRISE_DISPUTE,
            requester_id=request.requester_id,
            requester_name=request.requester_name,
            requester_enterprise=request.requester_enterprise,
            requester_organization_id=request.requester_organization_id,
            target_enterprise=request.target_enterprise,
            target_organization_id=request.target_organization_id,
            custodian_enterprise=request.custodian_enterprise,
            custodian_organization_id=request.custodian_organization_id,
            description=f"Competing claims for {details.item_name}",
            details=DisputeDetails(
                item_id=details.item_id,
                item_name=details.item_name,
                dispute_reason=f"{len(claimants)} requesters claim the same item",
                estimated_value=details.estimated_value,
                custodian_enterprise=request.custodian_enterprise,
                claimants=claimants,
            ),
            created_utc=now,
        )
        self._disputes.open(dispute)
        dispute.priority = self._router.determine_priority(dispute)
        self._state_machine.bind(dispute, [], [], now)
        self._insert(self._repos.requests, dispute)
        warning = self._record_event(
            EventKind.DISPUTE_OPENED, request.requester_id, dispute.request_id,
            {
                "item_id": details.item_id,
                "claimants": [c.claimant_id for c in claimants],
            },
        )
        if warning:
            warnings.append(warning)
        logger.info(
            "Opened dispute %s for item %s with %d claimants",
            dispute.request_id, details.item_id, len(claimants),
        )
        return dispute

    def _check_not_disputed(self, request: WorkRequest) -> None:
        """Claims on an item under dispute wait for the panel's verdict."""
        if request.kind != RequestKind.ITEM_CLAIM:
            return
        dispute = self._open_dispute_for(request.item_id)
        if dispute is not None:
            raise DisputePreconditionError(
                f"Claim {request.request_id} is on hold: item {request.item_id} "
                f"is under dispute {dispute.request_id}"
            )

    @staticmethod
    def _claimant_from(request: WorkRequest, trust: TrustScore) -> Claimant:
        d: ItemClaimDetails = request.details  # type: ignore[assignment]
        return Claimant(
            claimant_id=request.requester_id,
            name=request.requester_name,
            enterprise=request.requester_enterprise,
            organization_id=request.requester_organization_id,
            trust_score_snapshot=trust.current_score,
            claim_description=d.claim_details,
            proof_description=d.proof_description,
        )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(
        self,
        request_id: str,
        actor_id: str,
        decision: Decision,
        notes: str = "",
        rejection_category: Optional[RejectionCategory] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record one decision on a request.

        APPROVE and REJECT come from the current approver; CANCEL from
        the requester. A refused decision leaves the stored request
        untouched.
        """
        now = now or datetime.now(timezone.utc)
        try:
            request = self._load_request(request_id)
            self._check_not_disputed(request)
            verifications = self._prepare_verification_step(
                request, actor_id, decision, now,
            )
            outcome = self._state_machine.decide(
                request, actor_id, decision, notes, rejection_category, now,
            )
            self._store_request(request)
        except WorkflowError as exc:
            logger.warning(
                "Decision %s on %s by %s refused: %s",
                decision.value, request_id, actor_id, exc,
            )
            return _failure(exc)

        warnings: list[str] = []
        for v in verifications:
            self._try(warnings, lambda v=v: self._store_verification(v))
        if outcome.new_status in (RequestStatus.REJECTED, RequestStatus.CANCELLED):
            self._close_linked_verifications(request, outcome, now, warnings)
        trust_event_ids = self._apply_effects(
            outcome.trust_effects, request, actor_id, now, warnings,
        )
        self._after_transition(request, actor_id, outcome, warnings)

        logger.info(
            "%s %s by %s: %s -> %s",
            request_id, decision.value, actor_id,
            outcome.previous_status.value, outcome.new_status.value,
        )
        data: dict[str, Any] = {
            "request_id": request_id,
            "status": request.status.value,
            "approval_step": request.approval_step,
            "current_approver_id": request.current_approver_id,
            "trust_event_ids": trust_event_ids,
        }
        return ServiceResult(success=True, data=_with_warnings(data, warnings))

    def cancel(
        self,
        request_id: str,
        actor_id: str,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Requester withdraws a pending or in-progress request."""
        return self.decide(request_id, actor_id, Decision.CANCEL, notes, now=now)

    def complete(
        self,
        request_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record the hand-over of an approved request."""
        now = now or datetime.now(timezone.utc)
        try:
            request = self._load_request(request_id)
            self._check_not_disputed(request)
            outcome = self._state_machine.complete(request, actor_id, now)
            self._store_request(request)
        except WorkflowError as exc:
            return _failure(exc)

        warnings: list[str] = []
        self._after_transition(request, actor_id, outcome, warnings)
        data = {"request_id": request_id, "status": request.status.value}
        return ServiceResult(success=True, data=_with_warnings(data, warnings))

    def _prepare_verification_step(
        self,
        request: WorkRequest,
        actor_id: str,
        decision: Decision,
        now: datetime,
    ) -> list[VerificationRequest]:
        """Complete the linked verification before its chain step is approved.

        Raises InvalidStateTransition if the verification already failed
        or expired, so the step cannot be approved past it.
        """
        step = request.current_step()
        if (
            decision != Decision.APPROVE
            or step is None
            or step.role != ApproverRole.VERIFICATION_OFFICER
            or actor_id != request.current_approver_id
        ):
            return []
        completed: list[VerificationRequest] = []
        for vid in request.linked_verification_ids:
            v = self._repos.verifications.find_by_id(vid)
            if v is None:
                raise NotFound(f"Linked verification not found: {vid}")
            if v.status == VerificationStatus.VERIFIED:
                continue
            self._verifier.complete(v, actor_id, "Approved in chain", now)
            completed.append(v)
        return completed

    def _close_linked_verifications(
        self,
        request: WorkRequest,
        outcome: TransitionOutcome,
        now: datetime,
        warnings: list[str],
    ) -> None:
        for vid in request.linked_verification_ids:
            v = self._repos.verifications.find_by_id(vid)
            if v is None or v.is_terminal:
                continue
            if outcome.decision == Decision.REJECT:
                self._verifier.fail(v, request.rejection_reason or "Request rejected", now)
            else:
                self._verifier.cancel(v, "Request cancelled", now)
            self._try(warnings, lambda v=v: self._store_verification(v))

    def _after_transition(
        self,
        request: WorkRequest,
        actor_id: str,
        outcome: TransitionOutcome,
        warnings: list[str],
    ) -> None:
        """Roster workload, notifications and the audit record."""
        if outcome.previous_status in _OPEN and outcome.new_status not in _OPEN:
            self._release_approvers(request)
        self._notifier.decision_recorded(request, actor_id, outcome.decision)
        if outcome.next_approver_id and outcome.new_status in _OPEN:
            self._notifier.decision_needed(request, outcome.next_approver_id)
        if outcome.final_approval:
            self._notifier.request_approved(request)
        kind = (
            EventKind.REQUEST_COMPLETED
            if outcome.new_status == RequestStatus.COMPLETED
            else EventKind.REQUEST_DECIDED
        )
        warning = self._record_event(kind, actor_id, request.request_id, {
            "decision": outcome.decision.value if outcome.decision else None,
            "from": outcome.previous_status.value,
            "to": outcome.new_status.value,
            "step": outcome.step_index,
        })
        if warning:
            warnings.append(warning)

    def _release_approvers(self, request: WorkRequest) -> None:
        for step, approver_id in zip(request.chain, request.approver_ids):
            if step.role != ApproverRole.REQUESTER:
                self._roster.release(approver_id)

    # ------------------------------------------------------------------
    # Trust ledger
    # ------------------------------------------------------------------

    def apply_trust_event(
        self,
        user_id: str,
        kind: TrustEventKind,
        points: Optional[int] = None,
        description: str = "",
        related_item_id: Optional[str] = None,
        related_request_id: Optional[str] = None,
        related_claim_id: Optional[str] = None,
        event_id: Optional[str] = None,
        recorded_by: str = "system",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Apply one trust event. Replaying an event_id changes nothing."""
        if not user_id or not user_id.strip():
            return _failure(ValidationError("Trust event requires user_id"))
        event_id = event_id or self._next_trust_event_id()
        try:
            event = self._apply_trust(
                user_id.strip(), kind, points,
                event_id=event_id,
                description=description,
                related_item_id=related_item_id,
                related_request_id=related_request_id,
                related_claim_id=related_claim_id,
                recorded_by=recorded_by,
                now=now,
            )
            score = self._trust_for(user_id.strip(), now)
        except WorkflowError as exc:
            return _failure(exc)
        return ServiceResult(success=True, data={
            "user_id": score.user_id,
            "applied": event is not None,
            "event_id": event_id,
            "score": score.current_score,
            "level": score.score_level.value,
            "is_flagged": score.is_flagged,
        })

    def get_trust(self, user_id: str) -> Optional[TrustScore]:
        return self._repos.trust_scores.find_by_id(user_id)

    def trust_history(self, user_id: str) -> list[TrustScoreEvent]:
        """Every event applied to a user, oldest first."""
        events = self._repos.trust_events.find_by(user_id=user_id)
        events.sort(key=lambda e: (e.timestamp_utc, e.event_id))
        return events

    def trust_eligibility(self, user_id: str) -> dict[str, Any]:
        score = self._repos.trust_scores.find_by_id(user_id)
        if score is None:
            score = self._ledger.open_score(user_id)
        return {
            "score": score.current_score,
            "level": score.score_level.value,
            "can_claim_high_value_item": self._ledger.can_claim_high_value_item(score),
            "can_skip_verification": self._ledger.can_skip_verification(score),
            "requires_verification": self._ledger.requires_verification(score),
            "is_low_trust": self._ledger.is_low_trust(score),
            "trend": self._ledger.trend(score).value,
        }

    def flag_user(self, user_id: str, reason: str, admin_id: str) -> ServiceResult:
        if not reason:
            return _failure(ValidationError("Flagging requires a reason"))
        return self._change_trust_gate(
            user_id, admin_id, "flag",
            lambda s, now: self._ledger.flag(s, reason, now),
        )

    def clear_flag(self, user_id: str, admin_id: str) -> ServiceResult:
        return self._change_trust_gate(
            user_id, admin_id, "clear_flag",
            lambda s, now: self._ledger.clear_flag(s, now),
        )

    def start_investigation(self, user_id: str, admin_id: str) -> ServiceResult:
        return self._change_trust_gate(
            user_id, admin_id, "start_investigation",
            lambda s, now: self._ledger.start_investigation(s, now),
        )

    def end_investigation(
        self, user_id: str, admin_id: str, cleared: bool = False,
    ) -> ServiceResult:
        """Close an investigation. A cleared user earns FRAUD_CLEARED."""
        result = self._change_trust_gate(
            user_id, admin_id, "end_investigation",
            lambda s, now: self._ledger.end_investigation(s, now),
        )
        if not result.success or not cleared:
            return result
        cleared_result = self.apply_trust_event(
            user_id, TrustEventKind.FRAUD_CLEARED,
            description="Investigation closed, user cleared",
            recorded_by=admin_id,
        )
        if not cleared_result.success:
            return cleared_result
        clear = self.clear_flag(user_id, admin_id)
        return ServiceResult(
            success=clear.success,
            errors=clear.errors,
            data={**clear.data, "cleared": True},
            error_kind=clear.error_kind,
        )

    def adjust_trust_score(
        self, user_id: str, target: int, admin_id: str, reason: str = "",
    ) -> ServiceResult:
        """Set a user's score exactly, recorded as MANUAL_ADJUSTMENT."""
        now = datetime.now(timezone.utc)
        try:
            score = self._load_trust(user_id)
            event = self._ledger.adjust_to(
                score, target,
                event_id=self._next_trust_event_id(),
                recorded_by=admin_id, reason=reason, now=now,
            )
            self._store_trust(score, event)
        except WorkflowError as exc:
            return _failure(exc)
        return ServiceResult(success=True, data={
            "user_id": user_id,
            "score": score.current_score,
            "points": event.points if event else 0,
        })

    def _change_trust_gate(
        self,
        user_id: str,
        admin_id: str,
        action: str,
        mutate: Callable[[TrustScore, datetime], None],
    ) -> ServiceResult:
        now = datetime.now(timezone.utc)
        try:
            score = self._load_trust(user_id)
            mutate(score, now)
            self._store_trust(score, None)
        except WorkflowError as exc:
            return _failure(exc)
        warnings: list[str] = []
        warning = self._record_event(
            EventKind.TRUST_GATE_CHANGED, admin_id, user_id, {"action": action},
        )
        if warning:
            warnings.append(warning)
        return ServiceResult(success=True, data=_with_warnings({
            "user_id": user_id,
            "is_flagged": score.is_flagged,
            "is_under_investigation": score.is_under_investigation,
        }, warnings))

    def _apply_effects(
        self,
        effects: list[TrustEffect],
        request: WorkRequest,
        actor_id: str,
        now: datetime,
        warnings: list[str],
    ) -> list[str]:
        applied: list[str] = []
        for effect in effects:
            try:
                event = self._apply_trust(
                    effect.user_id, effect.kind, None,
                    event_id=effect.key,
                    description=effect.description,
                    related_item_id=request.item_id,
                    related_request_id=request.request_id,
                    recorded_by=actor_id,
                    now=now,
                )
            except WorkflowError as exc:
                warnings.append(f"Trust event {effect.key} not applied: {exc}")
                continue
            if event is not None:
                applied.append(event.event_id)
        return applied

    def _apply_trust(
        self,
        user_id: str,
        kind: TrustEventKind,
        points: Optional[int],
        *,
        event_id: str,
        description: str = "",
        related_item_id: Optional[str] = None,
        related_request_id: Optional[str] = None,
        related_claim_id: Optional[str] = None,
        recorded_by: str = "system",
        now: Optional[datetime] = None,
    ) -> Optional[TrustScoreEvent]:
        key = trust_event_key(user_id, event_id)
        if self._repos.trust_events.find_by_id(key) is not None:
            logger.info(
                "Trust event %s already applied to %s; ignoring replay",
                event_id, user_id,
            )
            return None
        score = self._trust_for(user_id, now)
        event = self._ledger.apply_event(
            score, kind, points,
            event_id=event_id,
            description=description,
            related_item_id=related_item_id,
            related_request_id=related_request_id,
            related_claim_id=related_claim_id,
            recorded_by=recorded_by,
            now=now,
        )
        self._store_trust(score, event)
        self._record_event(EventKind.TRUST_EVENT_APPLIED, recorded_by, user_id, {
            "trust_event_id": event.event_id,
            "kind": kind.value,
            "points": event.points,
            "new_score": event.new_score,
        })
        return event

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def cast_vote(
        self,
        dispute_id: str,
        panel_member_id: str,
        claimant_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record a panel vote; at quorum with a plurality, approve the dispute."""
        now = now or datetime.now(timezone.utc)
        try:
            request = self._load_request(dispute_id)
            vote = self._disputes.cast_vote(
                request, panel_member_id, claimant_id, reason, now,
            )
            outcome = None
            if vote.resolved:
                outcome = self._state_machine.resolve(request, now)
            self._store_request(request)
        except WorkflowError as exc:
            logger.warning("Vote on %s by %s refused: %s", dispute_id, panel_member_id, exc)
            return _failure(exc)

        warnings: list[str] = []
        warning = self._record_event(
            EventKind.DISPUTE_VOTE_CAST, panel_member_id, dispute_id,
            {"claimant_id": claimant_id, "votes_received": vote.tally.votes_received},
        )
        if warning:
            warnings.append(warning)
        if outcome is not None:
            self._finish_dispute(request, panel_member_id, outcome, now, warnings)

        d: DisputeDetails = request.details  # type: ignore[assignment]
        data: dict[str, Any] = {
            "dispute_id": dispute_id,
            "votes_received": d.panel_votes_received,
            "votes_required": d.panel_votes_required,
            "tally": dict(vote.tally.counts),
            "resolution_status": d.resolution_status.value,
            "winning_claimant_id": d.winning_claimant_id,
            "status": request.status.value,
        }
        return ServiceResult(success=True, data=_with_warnings(data, warnings))

    def resolve_dispute(
        self,
        dispute_id: str,
        admin_id: str,
        claimant_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Administrator picks the winner of a dispute in pending_review."""
        now = now or datetime.now(timezone.utc)
        try:
            request = self._load_request(dispute_id)
            self._disputes.resolve_manually(request, admin_id, claimant_id, reason, now)
            outcome = self._state_machine.resolve(request, now)
            self._store_request(request)
        except WorkflowError as exc:
            return _failure(exc)
        warnings: list[str] = []
        self._finish_dispute(request, admin_id, outcome, now, warnings)
        return ServiceResult(success=True, data=_with_warnings({
            "dispute_id": dispute_id,
            "winning_claimant_id": claimant_id,
            "status": request.status.value,
        }, warnings))

    def _finish_dispute(
        self,
        request: WorkRequest,
        actor_id: str,
        outcome: TransitionOutcome,
        now: datetime,
        warnings: list[str],
    ) -> None:
        d: DisputeDetails = request.details  # type: ignore[assignment]
        effects = [
            TrustEffect(
                user_id=c.claimant_id,
                kind=(
                    TrustEventKind.SUCCESSFUL_CLAIM
                    if c.claimant_id == d.winning_claimant_id
                    else TrustEventKind.CLAIM_REJECTED
                ),
                key=f"{request.request_id}/resolution/{c.claimant_id}",
                description=f"Dispute {request.request_id}: {d.resolution_reason}",
            )
            for c in d.claimants
        ]
        self._apply_effects(effects, request, actor_id, now, warnings)
        for claim in self._repos.requests.find_by(kind=RequestKind.ITEM_CLAIM):
            if (
                claim.item_id != request.item_id
                or claim.is_terminal
                or claim.requester_id == d.winning_claimant_id
            ):
                continue
            self._try(warnings, lambda c=claim: self._supersede_claim(
                c, request, actor_id, now, warnings,
            ))
        self._notifier.request_approved(request)
        warning = self._record_event(
            EventKind.DISPUTE_RESOLVED, actor_id, request.request_id,
            {
                "winning_claimant_id": d.winning_claimant_id,
                "reason": d.resolution_reason,
                "to": outcome.new_status.value,
            },
        )
        if warning:
            warnings.append(warning)
        logger.info(
            "Dispute %s resolved for %s", request.request_id, d.winning_claimant_id,
        )

    def _supersede_claim(
        self,
        claim: WorkRequest,
        dispute: WorkRequest,
        actor_id: str,
        now: datetime,
        warnings: list[str],
    ) -> None:
        winner = dispute.details.winning_claimant_id
        outcome = self._state_machine.supersede(
            claim, f"Item awarded to {winner} in dispute {dispute.request_id}", now,
        )
        self._store_request(claim)
        self._close_linked_verifications(claim, outcome, now, warnings)
        self._after_transition(claim, actor_id, outcome, warnings)

    def add_claimant(self, dispute_id: str, claimant: Claimant) -> ServiceResult:
        def _add(request: WorkRequest) -> dict[str, Any]:
            escalated = self._disputes.add_claimant(request, claimant)
            if escalated:
                request.priority = RequestPriority.URGENT
            return {"claimants": len(request.details.claimants), "escalated": escalated}
        return self._update_dispute(dispute_id, claimant.claimant_id, "add_claimant", _add)

    def add_panel_member(self, dispute_id: str, member: PanelMember) -> ServiceResult:
        def _add(request: WorkRequest) -> dict[str, Any]:
            self._disputes.add_panel_member(request, member)
            return {"panel_size": len(request.details.verification_panel)}
        return self._update_dispute(dispute_id, member.member_id, "add_panel_member", _add)

    def submit_evidence(
        self,
        dispute_id: str,
        submitter_id: str,
        claimant_id: str,
        evidence_type: str,
        description: str = "",
    ) -> ServiceResult:
        def _submit(request: WorkRequest) -> dict[str, Any]:
            item = self._disputes.submit_evidence(
                request, submitter_id, claimant_id, evidence_type, description,
            )
            return {"evidence_id": item.evidence_id}
        return self._update_dispute(dispute_id, submitter_id, "submit_evidence", _submit)

    def verify_evidence(
        self,
        dispute_id: str,
        evidence_id: str,
        verifier_id: str,
        outcome: EvidenceOutcome,
    ) -> ServiceResult:
        def _verify(request: WorkRequest) -> dict[str, Any]:
            item = self._disputes.verify_evidence(
                request, evidence_id, verifier_id, outcome,
            )
            return {"evidence_id": item.evidence_id, "outcome": item.outcome.value}
        return self._update_dispute(dispute_id, verifier_id, "verify_evidence", _verify)

    def record_police_findings(
        self, dispute_id: str, officer_id: str, findings: str,
    ) -> ServiceResult:
        def _record(request: WorkRequest) -> dict[str, Any]:
            self._require_police(officer_id)
            self._disputes.record_police_findings(request, findings)
            return {"police_involved": True}
        return self._update_dispute(dispute_id, officer_id, "police_findings", _record)

    def _update_dispute(
        self,
        dispute_id: str,
        actor_id: str,
        action: str,
        mutate: Callable[[WorkRequest], dict[str, Any]],
    ) -> ServiceResult:
        now = datetime.now(timezone.utc)
        try:
            request = self._load_request(dispute_id)
            data = mutate(request)
            request.last_updated_utc = now
            self._store_request(request)
        except WorkflowError as exc:
            return _failure(exc)
        warnings: list[str] = []
        warning = self._record_event(
            EventKind.DISPUTE_UPDATED, actor_id, dispute_id, {"action": action},
        )
        if warning:
            warnings.append(warning)
        data["dispute_id"] = dispute_id
        return ServiceResult(success=True, data=_with_warnings(data, warnings))

    # ------------------------------------------------------------------
    # Verification requests
    # ------------------------------------------------------------------

    def create_verification(
        self,
        verification_type: VerificationType,
        subject_user_id: str,
        requester_id: str,
        subject_item_id: Optional[str] = None,
        item_value: float = 0.0,
        related_request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        try:
            v = self._verifier.create(
                self._next_verification_id(), verification_type,
                subject_user_id=subject_user_id,
                requester_id=requester_id,
                subject_item_id=subject_item_id,
                item_value=item_value,
                related_request_id=related_request_id,
                now=now,
            )
            self._insert(self._repos.verifications, v)
        except WorkflowError as exc:
            return _failure(exc)
        self._record_event(
            EventKind.VERIFICATION_CREATED, requester_id, v.verification_id,
            {"type": verification_type.value, "subject_user_id": subject_user_id},
        )
        return ServiceResult(success=True, data={
            "verification_id": v.verification_id,
            "status": v.status.value,
            "priority": v.priority.value,
            "requires_police": self._verifier.requires_police(v),
        })

    def get_verification(self, verification_id: str) -> Optional[VerificationRequest]:
        return self._repos.verifications.find_by_id(verification_id)

    def assign_verification(
        self, verification_id: str, verifier_id: str, verifier_role: str = "",
    ) -> ServiceResult:
        return self._update_verification(
            verification_id, verifier_id, "assign",
            lambda v, now: self._verifier.assign(v, verifier_id, verifier_role, now),
        )

    def complete_verification(
        self, verification_id: str, verifier_id: str, note: str = "",
    ) -> ServiceResult:
        def _complete(v: VerificationRequest, now: datetime) -> None:
            if self._verifier.requires_police(v):
                self._require_police(verifier_id)
            self._verifier.complete(v, verifier_id, note, now)
        return self._update_verification(verification_id, verifier_id, "complete", _complete)

    def fail_verification(
        self, verification_id: str, actor_id: str, reason: str,
    ) -> ServiceResult:
        return self._update_verification(
            verification_id, actor_id, "fail",
            lambda v, now: self._verifier.fail(v, reason, now),
        )

    def record_police_check(
        self, verification_id: str, officer_id: str, result: str, is_stolen: bool,
    ) -> ServiceResult:
        def _check(v: VerificationRequest, now: datetime) -> None:
            self._require_police(officer_id)
            self._verifier.record_police_check(v, result, is_stolen, now)
        return self._update_verification(verification_id, officer_id, "police_check", _check)

    def record_serial_check(
        self, verification_id: str, officer_id: str, result: str, is_stolen: bool,
    ) -> ServiceResult:
        def _check(v: VerificationRequest, now: datetime) -> None:
            self._require_police(officer_id)
            self._verifier.record_serial_check(v, result, is_stolen, now)
        return self._update_verification(verification_id, officer_id, "serial_check", _check)

    def record_verification_approval(
        self, verification_id: str, approver_id: str,
    ) -> ServiceResult:
        return self._update_verification(
            verification_id, approver_id, "approval",
            lambda v, now: self._verifier.record_approval(v, approver_id, now),
        )

    def expire_verifications(self, now: Optional[datetime] = None) -> ServiceResult:
        """Sweep: mark every overdue verification request EXPIRED."""
        now = now or datetime.now(timezone.utc)
        candidates = [
            v for v in self._repos.verifications.find_by() if not v.is_terminal
        ]
        expired = self._verifier.expire_due(candidates, now)
        errors: list[str] = []
        stored: list[str] = []
        for v in expired:
            try:
                self._store_verification(v)
            except WorkflowError as exc:
                errors.append(f"{v.verification_id}: {exc}")
                continue
            stored.append(v.verification_id)
            self._record_event(
                EventKind.VERIFICATION_EXPIRED, "system", v.verification_id, {},
            )
        if errors:
            return ServiceResult(
                success=False, errors=errors, data={"expired": stored},
                error_kind=ErrorKind.PERSISTENCE_FAILURE,
            )
        return ServiceResult(success=True, data={"expired": stored})

    def required_verifications(
        self, user_id: str, item_value: float,
    ) -> list[VerificationType]:
        score = self._repos.trust_scores.find_by_id(user_id)
        if score is None:
            score = self._ledger.open_score(user_id)
        return self._verifier.required_verifications(
            item_value, score.current_score,
            can_skip_identity=self._ledger.can_skip_verification(score),
        )

    def _require_police(self, actor_id: str) -> None:
        entry = self._roster.get(actor_id)
        if entry is None or entry.role not in _POLICE_ROLES:
            raise UnauthorizedActor(f"{actor_id} is not a police officer")

    def _update_verification(
        self,
        verification_id: str,
        actor_id: str,
        action: str,
        mutate: Callable[[VerificationRequest, datetime], Any],
    ) -> ServiceResult:
        now = datetime.now(timezone.utc)
        try:
            v = self._repos.verifications.find_by_id(verification_id)
            if v is None:
                raise NotFound(f"Verification not found: {verification_id}")
            mutate(v, now)
            self._store_verification(v)
        except WorkflowError as exc:
            return _failure(exc)
        warnings: list[str] = []
        warning = self._record_event(
            EventKind.VERIFICATION_UPDATED, actor_id, verification_id,
            {"action": action, "status": v.status.value},
        )
        if warning:
            warnings.append(warning)
        return ServiceResult(success=True, data=_with_warnings({
            "verification_id": verification_id,
            "status": v.status.value,
        }, warnings))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> Optional[WorkRequest]:
        return self._repos.requests.find_by_id(request_id)

    def requests(self, **criteria: Any) -> list[WorkRequest]:
        return self._repos.requests.find_by(**criteria)

    def active_requests(self) -> list[WorkRequest]:
        """Requests still in someone's queue. APPROVED awaits hand-over."""
        return [r for r in self._repos.requests.find_by() if not r.is_terminal]

    def work_queue(self, approver_id: str) -> list[WorkRequest]:
        """Requests waiting on this approver, most urgent first."""
        queue = self._repos.requests.find_by(current_approver_id=approver_id)
        queue.sort(key=lambda r: (self._sla.deadline(r), r.request_id))
        return queue

    def hours_until_sla(
        self, request_id: str, now: Optional[datetime] = None,
    ) -> Optional[int]:
        request = self._repos.requests.find_by_id(request_id)
        if request is None:
            return None
        return self._sla.hours_until_sla(request, now)

    def overdue_requests(self, now: Optional[datetime] = None) -> list[WorkRequest]:
        return self._sla.overdue(self.active_requests(), now)

    def approaching_breach(self, now: Optional[datetime] = None) -> list[WorkRequest]:
        return self._sla.approaching_breach(self.active_requests(), now)

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        requests = self._repos.requests.find_by()
        by_status: dict[str, int] = {}
        by_kind: dict[str, int] = {}
        for r in requests:
            by_status[r.status.value] = by_status.get(r.status.value, 0) + 1
            by_kind[r.kind.value] = by_kind.get(r.kind.value, 0) + 1
        verifications = self._repos.verifications.find_by()
        scores = self._repos.trust_scores.find_by()
        return {
            "version": __version__,
            "policy_version": self._resolver.version,
            "requests": {
                "total": len(requests),
                "by_status": by_status,
                "by_kind": by_kind,
                "overdue": len(self.overdue_requests()),
            },
            "verifications": {
                "total": len(verifications),
                "open": sum(1 for v in verifications if not v.is_terminal),
            },
            "trust": {
                "users": len(scores),
                "flagged": sum(1 for s in scores if s.is_flagged),
                "under_investigation": sum(
                    1 for s in scores if s.is_under_investigation
                ),
            },
            "audit_degraded": self._audit_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _next_request_id(self) -> str:
        while True:
            self._request_counter += 1
            candidate = f"WR-{self._request_counter:06d}"
            if self._repos.requests.find_by_id(candidate) is None:
                return candidate

    def _next_verification_id(self) -> str:
        self._verification_counter += 1
        return f"VER-{self._verification_counter:06d}"

    def _next_trust_event_id(self) -> str:
        self._trust_event_counter += 1
        return f"TSE-{self._trust_event_counter:08d}"

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique audit event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _load_request(self, request_id: str) -> WorkRequest:
        try:
            request = self._repos.requests.find_by_id(request_id)
        except OSError as e:
            raise PersistenceFailure(f"Persistence failure: {e}") from e
        if request is None:
            raise NotFound(f"Work request not found: {request_id}")
        return request

    def _load_trust(self, user_id: str) -> TrustScore:
        score = self._repos.trust_scores.find_by_id(user_id)
        if score is None:
            raise NotFound(f"No trust score for user: {user_id}")
        return score

    def _trust_for(self, user_id: str, now: Optional[datetime] = None) -> TrustScore:
        """Load a user's score, opening one at the initial value if new."""
        score = self._repos.trust_scores.find_by_id(user_id)
        if score is None:
            score = self._ledger.open_score(user_id, now)
            self._insert(self._repos.trust_scores, score)
        return score

    def _insert(self, repo: Any, entity: Any) -> None:
        try:
            repo.save(entity)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        except OSError as e:
            raise PersistenceFailure(f"Persistence failure: {e}") from e

    def _store_request(self, request: WorkRequest) -> None:
        """Optimistic update. The loser of a race re-reads before failing."""
        try:
            if self._repos.requests.update(request):
                return
            current = self._repos.requests.find_by_id(request.request_id)
        except OSError as e:
            raise PersistenceFailure(f"Persistence failure: {e}") from e
        if current is None:
            raise NotFound(f"Work request not found: {request.request_id}")
        if current.is_terminal:
            raise InvalidStateTransition(
                f"Request {request.request_id} was {current.status.value} "
                f"by another writer"
            )
        raise StaleWrite(
            f"Request {request.request_id} changed concurrently "
            f"(version {current.version}); re-read and retry"
        )

    def _store_verification(self, v: VerificationRequest) -> None:
        try:
            ok = self._repos.verifications.update(v)
        except OSError as e:
            raise PersistenceFailure(f"Persistence failure: {e}") from e
        if not ok:
            raise StaleWrite(f"Verification {v.verification_id} changed concurrently")

    def _store_trust(
        self, score: TrustScore, event: Optional[TrustScoreEvent],
    ) -> None:
        """Event row first, then the aggregate.

        If the aggregate cannot be written the event row is removed again,
        so a failed call leaves neither behind.
        """
        try:
            if event is not None:
                self._repos.trust_events.save(event)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        except OSError as e:
            raise PersistenceFailure(f"Persistence failure: {e}") from e
        try:
            ok = self._repos.trust_scores.update(score)
        except OSError as e:
            self._discard_trust_event(event)
            raise PersistenceFailure(f"Persistence failure: {e}") from e
        if not ok:
            self._discard_trust_event(event)
            raise StaleWrite(f"Trust score of {score.user_id} changed concurrently")

    def _discard_trust_event(self, event: Optional[TrustScoreEvent]) -> None:
        if event is None:
            return
        try:
            self._repos.trust_events.delete(
                trust_event_key(event.user_id, event.event_id),
            )
        except OSError as e:
            logger.error(
                "Trust event %s for %s left without its score update: %s",
                event.event_id, event.user_id, e,
            )

    @staticmethod
    def _try(warnings: list[str], action: Callable[[], None]) -> None:
        try:
            action()
        except WorkflowError as exc:
            warnings.append(str(exc))

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        subject_id: str,
        payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an audit record. Returns a warning string on failure.

        The store has already been updated when this runs, so a failed
        append is reported and flagged rather than rolled back.
        """
        if self._event_log is None:
            return None
        try:
            self._event_log.record(
                self._next_event_id(), kind, subject_id, actor_id, payload,
            )
        except (ValueError, OSError) as e:
            self._audit_degraded = True
            logger.error("Audit append failed for %s: %s", subject_id, e)
            return f"Audit degraded: {e}"
        return None
