"""Dispute data models — claimants, verification panel, evidence.

A multi-enterprise dispute arises when more than one person claims the
same item. Each claimant may belong to a different enterprise. A panel
of members drawn from the involved enterprises votes for one claimant;
once the number of votes reaches the quorum fixed at creation, the
claimant with a strict plurality wins. Without a strict plurality the
dispute waits for manual administrative resolution.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from claimflow.models.enterprise import Enterprise


class ResolutionStatus(str, enum.Enum):
    """Outcome state of a dispute's panel vote."""
    PENDING = "pending"
    PENDING_REVIEW = "pending_review"
    RESOLVED = "resolved"


class ClaimantStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class EvidenceOutcome(str, enum.Enum):
    """Result of independently verifying an evidence item."""
    UNVERIFIED = "unverified"
    VALID = "valid"
    INVALID = "invalid"
    INCONCLUSIVE = "inconclusive"


@dataclass
class Claimant:
    """One party asserting ownership of the disputed item.

    trust_score_snapshot is the claimant's score when they joined the
    dispute. It is recorded for the panel and never refreshed.
    """
    claimant_id: str
    name: str
    enterprise: Enterprise
    organization_id: str
    trust_score_snapshot: int = 50
    claim_description: str = ""
    proof_description: str = ""
    evidence_ids: list[str] = field(default_factory=list)
    status: ClaimantStatus = ClaimantStatus.SUBMITTED


@dataclass
class PanelMember:
    """A voting member of the dispute's verification panel."""
    member_id: str
    name: str
    enterprise: Enterprise
    organization_id: str = ""
    role: str = ""
    has_voted: bool = False
    voted_for_claimant_id: Optional[str] = None
    vote_reason: str = ""
    voted_utc: Optional[datetime] = None


@dataclass
class EvidenceItem:
    """Supporting material submitted for one claimant.

    Verification records an outcome only; it never casts a vote.
    """
    evidence_id: str
    submitter_id: str
    claimant_id: str
    evidence_type: str
    description: str = ""
    submitted_utc: Optional[datetime] = None
    verified: bool = False
    verified_by: Optional[str] = None
    outcome: EvidenceOutcome = EvidenceOutcome.UNVERIFIED


@dataclass
class DisputeDetails:
    """Kind-specific payload of a multi-enterprise dispute request."""
    item_id: str
    item_name: str
    dispute_reason: str
    estimated_value: float = 0.0
    custodian_enterprise: Optional[Enterprise] = None
    claimants: list[Claimant] = field(default_factory=list)
    verification_panel: list[PanelMember] = field(default_factory=list)
    evidence: list[EvidenceItem] = field(default_factory=list)
    panel_votes_required: int = 0
    panel_votes_received: int = 0
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    winning_claimant_id: Optional[str] = None
    resolution_reason: str = ""
    resolved_by: Optional[str] = None
    resolved_utc: Optional[datetime] = None
    police_involved: bool = False
    police_findings: str = ""

    def claimant(self, claimant_id: str) -> Optional[Claimant]:
        for c in self.claimants:
            if c.claimant_id == claimant_id:
                return c
        return None

    def panel_member(self, member_id: str) -> Optional[PanelMember]:
        for m in self.verification_panel:
            if m.member_id == member_id:
                return m
        return None

    def evidence_item(self, evidence_id: str) -> Optional[EvidenceItem]:
        for e in self.evidence:
            if e.evidence_id == evidence_id:
                return e
        return None

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.item_id:
            errors.append("Dispute requires item_id")
        if not self.dispute_reason:
            errors.append("Dispute requires a dispute_reason")
        ids = [c.claimant_id for c in self.claimants]
        if len(ids) != len(set(ids)):
            errors.append("Duplicate claimant IDs in dispute")
        members = [m.member_id for m in self.verification_panel]
        if len(members) != len(set(members)):
            errors.append("Duplicate panel member IDs in dispute")
        return errors
