"""Approval chain router — computes who must sign off, and in what order.

Given a request's kind, its custody context and the requester's trust
standing, the router produces an ordered list of ChainSteps. Steps name
roles, never people; the roster binds them afterwards.

Default chains:
  item claim            [custodian coordinator]
                        (+ verification officer first when the item is
                        high-value or the requester needs verification)
  cross-campus          [source coordinator, destination coordinator, requester]
  transit → university  [station manager, campus coordinator, requester]
  airport → university  [airport specialist, (police officer), campus coordinator, requester]
  police evidence       [source custodian, police evidence custodian]
  transit → airport     [station manager, airport specialist]
  dispute               [] (panel voting replaces the chain)

When the item is held by a different enterprise than the kind's default
first approver, the first non-verification step is retargeted to the
holding enterprise's custodian role. Only typed Enterprise values and
organization IDs drive routing.
"""

from __future__ import annotations

from typing import Callable, Optional

from claimflow.models.dispute import DisputeDetails
from claimflow.models.enterprise import CUSTODIAN_ROLE, ApproverRole, Enterprise
from claimflow.models.request import (
    AirportToUniversityDetails,
    ChainStep,
    CrossCampusTransferDetails,
    ItemClaimDetails,
    PoliceEvidenceDetails,
    RequestKind,
    RequestPriority,
    TransitToAirportEmergencyDetails,
    TransitToUniversityDetails,
    WorkRequest,
    more_urgent,
    require_every_kind,
)
from claimflow.models.trust import TrustScore
from claimflow.models.verification import VerificationType
from claimflow.policy.resolver import PolicyResolver
from claimflow.trust.ledger import TrustLedger


def _requester_step(purpose: str) -> ChainStep:
    return ChainStep(ApproverRole.REQUESTER, None, "", purpose)


# ---------------------------------------------------------------------------
# Per-kind default chains
# ---------------------------------------------------------------------------

def _item_claim_chain(request: WorkRequest) -> list[ChainStep]:
    return [ChainStep(
        ApproverRole.CAMPUS_COORDINATOR,
        Enterprise.UNIVERSITY,
        request.target_organization_id,
        "review claim",
    )]


def _cross_campus_chain(request: WorkRequest) -> list[ChainStep]:
    d: CrossCampusTransferDetails = request.details  # type: ignore[assignment]
    return [
        ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY,
                  d.source_organization_id, "release item"),
        ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY,
                  d.destination_organization_id, "receive item"),
        _requester_step("confirm receipt"),
    ]


def _transit_to_university_chain(request: WorkRequest) -> list[ChainStep]:
    d: TransitToUniversityDetails = request.details  # type: ignore[assignment]
    return [
        ChainStep(ApproverRole.STATION_MANAGER, Enterprise.TRANSIT,
                  d.station_organization_id, "release item"),
        ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY,
                  d.destination_organization_id, "receive item"),
        _requester_step("verify identity at pickup"),
    ]


def _airport_to_university_chain(request: WorkRequest) -> list[ChainStep]:
    d: AirportToUniversityDetails = request.details  # type: ignore[assignment]
    chain = [
        ChainStep(ApproverRole.AIRPORT_SPECIALIST, Enterprise.AIRPORT,
                  d.airport_organization_id, "release item"),
    ]
    if d.requires_police_verification:
        police_org = (
            request.target_organization_id
            if request.target_enterprise == Enterprise.POLICE else ""
        )
        chain.append(ChainStep(ApproverRole.POLICE_OFFICER, Enterprise.POLICE,
                               police_org, "police verification"))
    chain.append(ChainStep(ApproverRole.CAMPUS_COORDINATOR, Enterprise.UNIVERSITY,
                           d.destination_organization_id, "receive item"))
    chain.append(_requester_step("confirm receipt"))
    return chain


def _police_evidence_chain(request: WorkRequest) -> list[ChainStep]:
    d: PoliceEvidenceDetails = request.details  # type: ignore[assignment]
    police_org = (
        request.target_organization_id
        if request.target_enterprise == Enterprise.POLICE else ""
    )
    return [
        ChainStep(CUSTODIAN_ROLE[d.source_enterprise], d.source_enterprise,
                  d.source_organization_id, "release to police"),
        ChainStep(ApproverRole.POLICE_EVIDENCE_CUSTODIAN, Enterprise.POLICE,
                  police_org, "log evidence"),
    ]


def _emergency_chain(request: WorkRequest) -> list[ChainStep]:
    d: TransitToAirportEmergencyDetails = request.details  # type: ignore[assignment]
    return [
        ChainStep(ApproverRole.STATION_MANAGER, Enterprise.TRANSIT,
                  d.station_organization_id, "dispatch item"),
        ChainStep(ApproverRole.AIRPORT_SPECIALIST, Enterprise.AIRPORT,
                  d.airport_organization_id, "deliver to traveller"),
    ]


def _dispute_chain(request: WorkRequest) -> list[ChainStep]:
    return []


DEFAULT_CHAINS: dict[RequestKind, Callable[[WorkRequest], list[ChainStep]]] = {
    RequestKind.ITEM_CLAIM: _item_claim_chain,
    RequestKind.CROSS_CAMPUS_TRANSFER: _cross_campus_chain,
    RequestKind.TRANSIT_TO_UNIVERSITY_TRANSFER: _transit_to_university_chain,
    RequestKind.AIRPORT_TO_UNIVERSITY_TRANSFER: _airport_to_university_chain,
    RequestKind.POLICE_EVIDENCE_REQUEST: _police_evidence_chain,
    RequestKind.TRANSIT_TO_AIRPORT_EMERGENCY: _emergency_chain,
    RequestKind.MULTI_ENTERPRISE_DISPUTE: _dispute_chain,
}
require_every_kind(DEFAULT_CHAINS, "DEFAULT_CHAINS")


class ApprovalChainRouter:
    """Builds approval chains and initial priorities.

    Usage:
        router = ApprovalChainRouter(resolver, ledger)
        chain = router.build_chain(request, requester_trust)
        priority = router.determine_priority(request, requester_trust)
    """

    def __init__(self, resolver: PolicyResolver, ledger: TrustLedger) -> None:
        self._resolver = resolver
        self._ledger = ledger

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def build_chain(
        self, request: WorkRequest, requester_trust: TrustScore,
    ) -> list[ChainStep]:
        """Return the ordered roles that must approve the request."""
        chain = DEFAULT_CHAINS[request.kind](request)
        if not chain:
            return chain
        chain = self._retarget_to_custodian(request, chain)
        if self.needs_verification(request, requester_trust):
            holder = chain[0]
            chain.insert(0, ChainStep(
                ApproverRole.VERIFICATION_OFFICER,
                holder.enterprise,
                holder.organization_id,
                "verify claimant",
            ))
        return chain

    def _retarget_to_custodian(
        self, request: WorkRequest, chain: list[ChainStep],
    ) -> list[ChainStep]:
        custodian = request.custodian_enterprise
        if custodian is None:
            return chain
        first = chain[0]
        if first.enterprise == custodian:
            return chain
        chain[0] = ChainStep(
            CUSTODIAN_ROLE[custodian],
            custodian,
            request.custodian_organization_id,
            first.purpose,
        )
        return chain

    def needs_verification(
        self, request: WorkRequest, requester_trust: TrustScore,
    ) -> bool:
        """Item claims need a verification step for high value or low trust."""
        if request.kind != RequestKind.ITEM_CLAIM:
            return False
        return (
            self.is_high_value(request)
            or self._ledger.requires_verification(requester_trust)
        )

    def verification_type(self, request: WorkRequest) -> VerificationType:
        """Which verification a claim's verification step spawns."""
        if self.is_high_value(request):
            return VerificationType.HIGH_VALUE_ITEM_CLAIM
        return VerificationType.IDENTITY_VERIFICATION

    # ------------------------------------------------------------------
    # Priority
    # ------------------------------------------------------------------

    def item_value(self, request: WorkRequest) -> float:
        return getattr(request.details, "estimated_value", 0.0)

    def is_high_value(self, request: WorkRequest) -> bool:
        return self.item_value(request) > self._resolver.high_value_threshold()

    def determine_priority(
        self,
        request: WorkRequest,
        requester_trust: Optional[TrustScore] = None,
    ) -> RequestPriority:
        """Compute the priority a request deserves from its content.

        The caller keeps whichever of this and its own choice is more
        urgent.
        """
        priority = self._content_priority(request)
        if (
            requester_trust is not None
            and priority == RequestPriority.NORMAL
            and self._ledger.is_low_trust(requester_trust)
        ):
            priority = RequestPriority.HIGH
        return more_urgent(priority, request.priority)

    def _content_priority(self, request: WorkRequest) -> RequestPriority:
        d = request.details
        value = self.item_value(request)
        if isinstance(d, ItemClaimDetails):
            if value > self._resolver.urgent_value_threshold():
                return RequestPriority.URGENT
            if self.is_high_value(request):
                return RequestPriority.HIGH
            return RequestPriority.NORMAL
        if isinstance(d, PoliceEvidenceDetails):
            return RequestPriority.URGENT if d.is_stolen_check else RequestPriority.HIGH
        if isinstance(d, AirportToUniversityDetails):
            return RequestPriority.HIGH if d.was_in_secure_area else RequestPriority.NORMAL
        if isinstance(d, TransitToAirportEmergencyDetails):
            return RequestPriority.URGENT
        if isinstance(d, DisputeDetails):
            escalate_at = self._resolver.dispute_config()["escalation_claimant_count"]
            if self.is_high_value(request) or len(d.claimants) >= escalate_at:
                return RequestPriority.URGENT
            return RequestPriority.HIGH
        return RequestPriority.NORMAL
