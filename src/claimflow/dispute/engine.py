"""Dispute resolution engine — quorum voting among a cross-enterprise panel.

Pure computation over the DisputeDetails of a multi-enterprise dispute
request. No side effects beyond the dispute passed in: the service layer
advances the owning request, applies trust events and persists.

Voting rules:
- Each panel member votes once, for one of the dispute's claimants.
- The quorum (panel_votes_required) is fixed when the dispute is opened.
- At quorum the tally is evaluated: a claimant with strictly more votes
  than every other claimant wins and the dispute is RESOLVED. Without a
  strict plurality it becomes PENDING_REVIEW and waits for an
  administrator; there is no automatic tie-break.
- Further votes after PENDING_REVIEW are still accepted and re-evaluate
  the tally, since a late vote can break the tie.

Evidence may be submitted and verified until the dispute is resolved.
Verifying evidence never casts a vote.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from claimflow.errors import (
    AlreadyVoted,
    DisputePreconditionError,
    NotFound,
    ValidationError,
)
from claimflow.models.dispute import (
    Claimant,
    ClaimantStatus,
    DisputeDetails,
    EvidenceItem,
    EvidenceOutcome,
    PanelMember,
    ResolutionStatus,
)
from claimflow.models.request import WorkRequest
from claimflow.policy.resolver import PolicyResolver


@dataclass(frozen=True)
class TallyResult:
    """Vote counts at a point in time and what they imply."""
    votes_received: int
    votes_required: int
    counts: dict[str, int] = field(default_factory=dict)
    quorum_reached: bool = False
    winner_id: Optional[str] = None

    @property
    def has_plurality(self) -> bool:
        return self.winner_id is not None


@dataclass(frozen=True)
class VoteOutcome:
    """Result of casting one vote."""
    member_id: str
    claimant_id: str
    tally: TallyResult
    resolution_status: ResolutionStatus

    @property
    def resolved(self) -> bool:
        return self.resolution_status == ResolutionStatus.RESOLVED


def _dispute(request: WorkRequest) -> DisputeDetails:
    if not isinstance(request.details, DisputeDetails):
        raise DisputePreconditionError(
            f"Request {request.request_id} is not a multi-enterprise dispute"
        )
    return request.details


class DisputeResolutionEngine:
    """Opens disputes, records votes and evidence, and tallies outcomes.

    Usage:
        engine = DisputeResolutionEngine(resolver)
        engine.open(request)
        outcome = engine.cast_vote(request, "panel-1", "claimant-a", "receipt matches")
        if outcome.resolved:
            ...  # advance the owning request
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def open(self, request: WorkRequest) -> None:
        """Validate a new dispute and fix its quorum.

        A zero panel_votes_required takes the configured default. A
        panel that is already seated must be able to reach the quorum.
        """
        d = _dispute(request)
        config = self._resolver.dispute_config()
        errors = d.validate()
        if len(d.claimants) < config["min_claimants"]:
            errors.append(
                f"Dispute requires at least {config['min_claimants']} claimants"
            )
        if d.panel_votes_required <= 0:
            d.panel_votes_required = config["default_votes_required"]
        if d.verification_panel and len(d.verification_panel) < d.panel_votes_required:
            errors.append(
                f"Panel of {len(d.verification_panel)} cannot reach a quorum "
                f"of {d.panel_votes_required}"
            )
        if errors:
            raise ValidationError("Invalid dispute", errors)
        d.panel_votes_received = sum(1 for m in d.verification_panel if m.has_voted)
        d.resolution_status = ResolutionStatus.PENDING
        if len(d.claimants) >= config["escalation_claimant_count"]:
            d.police_involved = True

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def cast_vote(
        self,
        request: WorkRequest,
        member_id: str,
        claimant_id: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> VoteOutcome:
        """Record one panel member's vote and re-evaluate the tally.

        Raises:
            DisputePreconditionError: dispute resolved or request closed.
            NotFound: unknown panel member or claimant.
            AlreadyVoted: the member has voted before.
        """
        d = self._require_open(request)
        member = d.panel_member(member_id)
        if member is None:
            raise NotFound(f"Panel member not found: {member_id}")
        if member.has_voted:
            raise AlreadyVoted(
                f"Panel member {member_id} already voted for "
                f"{member.voted_for_claimant_id}"
            )
        if d.claimant(claimant_id) is None:
            raise NotFound(f"Claimant not found in dispute: {claimant_id}")

        now = now or datetime.now(timezone.utc)
        member.has_voted = True
        member.voted_for_claimant_id = claimant_id
        member.vote_reason = reason
        member.voted_utc = now
        d.panel_votes_received += 1

        result = self.tally(d)
        if result.quorum_reached:
            if result.winner_id is not None:
                reason = (
                    f"Panel vote {result.counts[result.winner_id]} of "
                    f"{result.votes_received}"
                )
                self._settle(d, result.winner_id, reason, None, now)
            else:
                d.resolution_status = ResolutionStatus.PENDING_REVIEW
        request.last_updated_utc = now
        return VoteOutcome(
            member_id=member_id,
            claimant_id=claimant_id,
            tally=result,
            resolution_status=d.resolution_status,
        )

    @staticmethod
    def tally(d: DisputeDetails) -> TallyResult:
        """Count votes per claimant and find a strict plurality, if any."""
        counts = {c.claimant_id: 0 for c in d.claimants}
        for m in d.verification_panel:
            if m.has_voted and m.voted_for_claimant_id in counts:
                counts[m.voted_for_claimant_id] += 1
        quorum = d.panel_votes_received >= d.panel_votes_required
        winner: Optional[str] = None
        if quorum and counts:
            ranked = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
            top_id, top_votes = ranked[0]
            runner_up = ranked[1][1] if len(ranked) > 1 else -1
            if top_votes > runner_up:
                winner = top_id
        return TallyResult(
            votes_received=d.panel_votes_received,
            votes_required=d.panel_votes_required,
            counts=counts,
            quorum_reached=quorum,
            winner_id=winner,
        )

    def resolve_manually(
        self,
        request: WorkRequest,
        admin_id: str,
        claimant_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> None:
        """Administrator decision for a dispute the panel could not settle."""
        d = self._require_open(request)
        if d.resolution_status != ResolutionStatus.PENDING_REVIEW:
            raise DisputePreconditionError(
                f"Dispute {request.request_id} is {d.resolution_status.value}; "
                f"manual resolution needs pending_review"
            )
        if d.claimant(claimant_id) is None:
            raise NotFound(f"Claimant not found in dispute: {claimant_id}")
        if not reason:
            raise ValidationError("Manual resolution requires a reason")
        now = now or datetime.now(timezone.utc)
        self._settle(d, claimant_id, reason, admin_id, now)
        request.add_note(f"Resolved manually by {admin_id}: {reason}", now)

    def _settle(
        self,
        d: DisputeDetails,
        winner_id: str,
        reason: str,
        resolved_by: Optional[str],
        now: datetime,
    ) -> None:
        d.winning_claimant_id = winner_id
        d.resolution_status = ResolutionStatus.RESOLVED
        d.resolution_reason = reason
        d.resolved_by = resolved_by
        d.resolved_utc = now
        for c in d.claimants:
            c.status = (
                ClaimantStatus.APPROVED if c.claimant_id == winner_id
                else ClaimantStatus.REJECTED
            )

    # ------------------------------------------------------------------
    # Parties
    # ------------------------------------------------------------------

    def add_claimant(self, request: WorkRequest, claimant: Claimant) -> bool:
        """Join a new claimant. Returns True if the dispute escalated."""
        d = self._require_open(request)
        if d.claimant(claimant.claimant_id) is not None:
            raise ValidationError(
                f"Claimant {claimant.claimant_id} already in dispute"
            )
        d.claimants.append(claimant)
        escalate_at = self._resolver.dispute_config()["escalation_claimant_count"]
        if len(d.claimants) >= escalate_at and not d.police_involved:
            d.police_involved = True
            return True
        return False

    def add_panel_member(self, request: WorkRequest, member: PanelMember) -> None:
        d = self._require_open(request)
        if d.panel_member(member.member_id) is not None:
            raise ValidationError(
                f"Panel member {member.member_id} already seated"
            )
        if d.claimant(member.member_id) is not None:
            raise ValidationError(
                f"Claimant {member.member_id} cannot sit on their own panel"
            )
        d.verification_panel.append(member)

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def submit_evidence(
        self,
        request: WorkRequest,
        submitter_id: str,
        claimant_id: str,
        evidence_type: str,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> EvidenceItem:
        d = self._require_open(request)
        claimant = d.claimant(claimant_id)
        if claimant is None:
            raise NotFound(f"Claimant not found in dispute: {claimant_id}")
        if not evidence_type:
            raise ValidationError("Evidence requires an evidence_type")
        now = now or datetime.now(timezone.utc)
        item = EvidenceItem(
            evidence_id=f"{request.request_id}-EV-{len(d.evidence) + 1:03d}",
            submitter_id=submitter_id,
            claimant_id=claimant_id,
            evidence_type=evidence_type,
            description=description,
            submitted_utc=now,
        )
        d.evidence.append(item)
        claimant.evidence_ids.append(item.evidence_id)
        return item

    def verify_evidence(
        self,
        request: WorkRequest,
        evidence_id: str,
        verifier_id: str,
        outcome: EvidenceOutcome,
    ) -> EvidenceItem:
        d = self._require_open(request)
        item = d.evidence_item(evidence_id)
        if item is None:
            raise NotFound(f"Evidence not found: {evidence_id}")
        if outcome == EvidenceOutcome.UNVERIFIED:
            raise ValidationError("Verification must record an outcome")
        item.verified = True
        item.verified_by = verifier_id
        item.outcome = outcome
        return item

    def record_police_findings(
        self,
        request: WorkRequest,
        findings: str,
        now: Optional[datetime] = None,
    ) -> None:
        d = self._require_open(request)
        if not findings:
            raise ValidationError("Police findings cannot be empty")
        d.police_involved = True
        d.police_findings = findings
        request.add_note("Police findings recorded", now)

    def _require_open(self, request: WorkRequest) -> DisputeDetails:
        d = _dispute(request)
        if request.is_terminal:
            raise DisputePreconditionError(
                f"Dispute {request.request_id} is {request.status.value}"
            )
        if d.resolution_status == ResolutionStatus.RESOLVED:
            raise DisputePreconditionError(
                f"Dispute {request.request_id} is already resolved"
            )
        return d
