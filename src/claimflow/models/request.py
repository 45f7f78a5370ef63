"""Work request data models — the seven request kinds and their shared envelope.

A WorkRequest is a tagged variant: the common envelope (status, priority,
requester, approval chain, bound approvers, timestamps) plus a
kind-specific ``details`` payload. ``DETAILS_TYPES`` maps every
RequestKind to its payload class; every per-kind dispatch table in the
package is checked against RequestKind at import time, so adding a kind
means adding one entry per table and nothing else.

Lifecycle:
    PENDING → IN_PROGRESS → APPROVED → COMPLETED
    REJECTED / CANCELLED reachable from any non-terminal state.
    REJECTED, COMPLETED and CANCELLED are terminal.

APPROVED means "decision made, fulfilment pending". It stays in active
work queues until the hand-over is recorded as COMPLETED.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from claimflow.models.dispute import DisputeDetails
from claimflow.models.enterprise import ApproverRole, Enterprise


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class RequestKind(str, enum.Enum):
    """The seven request variants sharing one state machine."""
    ITEM_CLAIM = "item_claim"
    CROSS_CAMPUS_TRANSFER = "cross_campus_transfer"
    TRANSIT_TO_UNIVERSITY_TRANSFER = "transit_to_university_transfer"
    AIRPORT_TO_UNIVERSITY_TRANSFER = "airport_to_university_transfer"
    POLICE_EVIDENCE_REQUEST = "police_evidence_request"
    TRANSIT_TO_AIRPORT_EMERGENCY = "transit_to_airport_emergency"
    MULTI_ENTERPRISE_DISPUTE = "multi_enterprise_dispute"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    RequestStatus.REJECTED,
    RequestStatus.COMPLETED,
    RequestStatus.CANCELLED,
})


class RequestPriority(str, enum.Enum):
    URGENT = "URGENT"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


# Lower rank is more urgent.
PRIORITY_RANK: dict[RequestPriority, int] = {
    RequestPriority.URGENT: 0,
    RequestPriority.HIGH: 1,
    RequestPriority.NORMAL: 2,
    RequestPriority.LOW: 3,
}


def more_urgent(a: RequestPriority, b: RequestPriority) -> RequestPriority:
    """Return whichever priority is more urgent."""
    return a if PRIORITY_RANK[a] <= PRIORITY_RANK[b] else b


class Decision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"


class RejectionCategory(str, enum.Enum):
    """Why a request was rejected. Selects the requester's trust penalty.

    POLICY: the request cannot be honoured, no fault of the requester.
    INCOMPLETE: missing or unconvincing proof (CLAIM_REJECTED).
    FRAUDULENT: the claim was false (FALSE_CLAIM).
    """
    POLICY = "policy"
    INCOMPLETE = "incomplete"
    FRAUDULENT = "fraudulent"


class PoliceCheckOutcome(str, enum.Enum):
    PENDING = "pending"
    CLEAR = "clear"
    FLAGGED = "flagged"
    STOLEN = "stolen"


# ---------------------------------------------------------------------------
# Approval chain
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChainStep:
    """One entry of an approval chain: a role, not yet a person.

    enterprise is None only for REQUESTER steps, which bind to the
    request's own requester.
    """
    role: ApproverRole
    enterprise: Optional[Enterprise]
    organization_id: str = ""
    purpose: str = ""


# ---------------------------------------------------------------------------
# Kind-specific payloads
# ---------------------------------------------------------------------------

@dataclass
class ItemClaimDetails:
    """A requester claims a found item as theirs."""
    item_id: str
    item_name: str
    claim_details: str
    identifying_features: str
    lost_report_id: str = ""
    item_category: str = ""
    estimated_value: float = 0.0
    proof_description: str = ""

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.item_id:
            errors.append("Item claim requires item_id")
        if not self.claim_details:
            errors.append("Item claim requires claim_details")
        if not self.identifying_features:
            errors.append("Item claim requires identifying_features")
        if self.estimated_value < 0:
            errors.append("Item value cannot be negative")
        return errors


@dataclass
class CrossCampusTransferDetails:
    item_id: str
    item_name: str
    source_organization_id: str
    destination_organization_id: str
    student_id: str
    student_name: str = ""
    lost_report_id: str = ""
    pickup_location: str = ""
    transfer_method: str = "courier"

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.item_id:
            errors.append("Transfer requires item_id")
        if not self.source_organization_id or not self.destination_organization_id:
            errors.append("Transfer requires source and destination organizations")
        elif self.source_organization_id == self.destination_organization_id:
            errors.append("Source and destination campus must differ")
        if not self.student_id:
            errors.append("Transfer requires student_id")
        return errors


@dataclass
class TransitToUniversityDetails:
    item_id: str
    item_name: str
    station_name: str
    station_organization_id: str
    destination_organization_id: str
    student_id: str
    route: str = ""
    lost_report_id: str = ""
    campus_pickup_location: str = ""
    requires_id_verification: bool = True

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.item_id:
            errors.append("Transfer requires item_id")
        if not self.station_name:
            errors.append("Transit transfer requires station_name")
        if not self.destination_organization_id:
            errors.append("Transit transfer requires destination_organization_id")
        if not self.student_id:
            errors.append("Transit transfer requires student_id")
        return errors


@dataclass
class AirportToUniversityDetails:
    item_id: str
    item_name: str
    terminal: str
    airport_organization_id: str
    destination_organization_id: str
    student_id: str
    incident_number: str = ""
    estimated_value: float = 0.0
    lost_report_id: str = ""
    campus_pickup_location: str = ""
    requires_police_verification: bool = False
    was_in_secure_area: bool = False
    security_notes: str = ""

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.item_id:
            errors.append("Transfer requires item_id")
        if not self.terminal:
            errors.append("Airport transfer requires terminal")
        if not self.destination_organization_id:
            errors.append("Airport transfer requires destination_organization_id")
        if not self.student_id:
            errors.append("Airport transfer requires student_id")
        if self.was_in_secure_area and len(self.security_notes.strip()) < 20:
            errors.append(
                "Items from a secure area require security notes "
                "of at least 20 characters"
            )
        return errors


@dataclass
class PoliceEvidenceDetails:
    item_id: str
    item_name: str
    source_enterprise: Enterprise
    source_organization_id: str
    verification_reason: str = ""
    estimated_value: float = 0.0
    serial_number: str = ""
    imei: str = ""
    other_identifiers: str = ""
    is_stolen_check: bool = False
    is_high_value_verification: bool = False
    outcome: PoliceCheckOutcome = PoliceCheckOutcome.PENDING
    case_number: str = ""

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.item_id:
            errors.append("Police evidence request requires item_id")
        if not self.source_organization_id:
            errors.append("Police evidence request requires source_organization_id")
        if self.is_high_value_verification and not self.serial_number:
            errors.append("High-value verification requires a serial number")
        if self.is_stolen_check and not (
            self.serial_number or self.imei or self.other_identifiers
        ):
            errors.append(
                "Stolen property check requires a serial number, IMEI "
                "or other identifier"
            )
        return errors


@dataclass
class TransitToAirportEmergencyDetails:
    """A traveller's document was found on transit shortly before a flight."""
    item_id: str
    item_name: str
    station_name: str
    station_organization_id: str
    airport_organization_id: str
    terminal: str
    flight_number: str
    traveler_name: str
    transit_line: str = ""
    departure_utc: Optional[datetime] = None
    traveler_contact: str = ""
    document_type: str = ""

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.item_id:
            errors.append("Emergency transfer requires item_id")
        if not self.flight_number:
            errors.append("Emergency transfer requires flight_number")
        if not self.traveler_name:
            errors.append("Emergency transfer requires traveler_name")
        return errors


RequestDetails = Union[
    ItemClaimDetails,
    CrossCampusTransferDetails,
    TransitToUniversityDetails,
    AirportToUniversityDetails,
    PoliceEvidenceDetails,
    TransitToAirportEmergencyDetails,
    DisputeDetails,
]


def require_every_kind(table: Mapping[RequestKind, Any], label: str) -> None:
    """Fail at import time if a per-kind dispatch table misses a kind."""
    missing = set(RequestKind) - set(table)
    if missing:
        names = ", ".join(sorted(k.value for k in missing))
        raise ValueError(f"{label} has no entry for: {names}")


DETAILS_TYPES: dict[RequestKind, type] = {
    RequestKind.ITEM_CLAIM: ItemClaimDetails,
    RequestKind.CROSS_CAMPUS_TRANSFER: CrossCampusTransferDetails,
    RequestKind.TRANSIT_TO_UNIVERSITY_TRANSFER: TransitToUniversityDetails,
    RequestKind.AIRPORT_TO_UNIVERSITY_TRANSFER: AirportToUniversityDetails,
    RequestKind.POLICE_EVIDENCE_REQUEST: PoliceEvidenceDetails,
    RequestKind.TRANSIT_TO_AIRPORT_EMERGENCY: TransitToAirportEmergencyDetails,
    RequestKind.MULTI_ENTERPRISE_DISPUTE: DisputeDetails,
}
require_every_kind(DETAILS_TYPES, "DETAILS_TYPES")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass
class WorkRequest:
    """A cross-enterprise work request.

    Invariants (maintained by WorkRequestStateMachine):
    - 0 <= approval_step <= len(chain) == len(approver_ids)
    - current_approver_id is set iff the request is not terminal and
      approval_step < len(chain)
    - version increases by one on every successful repository update
    """
    request_id: str
    kind: RequestKind
    requester_id: str
    requester_enterprise: Enterprise
    details: RequestDetails
    requester_name: str = ""
    requester_organization_id: str = ""
    status: RequestStatus = RequestStatus.PENDING
    priority: RequestPriority = RequestPriority.NORMAL

    target_enterprise: Optional[Enterprise] = None
    target_organization_id: str = ""
    # Enterprise physically holding the item, when it differs from
    # the kind's default first approver.
    custodian_enterprise: Optional[Enterprise] = None
    custodian_organization_id: str = ""

    chain: list[ChainStep] = field(default_factory=list)
    approver_ids: list[str] = field(default_factory=list)
    approver_names: list[str] = field(default_factory=list)
    current_approver_id: Optional[str] = None
    approval_step: int = 0

    description: str = ""
    notes: list[str] = field(default_factory=list)
    rejection_reason: str = ""
    rejection_category: Optional[RejectionCategory] = None
    linked_verification_ids: list[str] = field(default_factory=list)

    created_utc: Optional[datetime] = None
    last_updated_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def item_id(self) -> str:
        return self.details.item_id

    def current_step(self) -> Optional[ChainStep]:
        if self.approval_step < len(self.chain):
            return self.chain[self.approval_step]
        return None

    def add_note(self, text: str, timestamp: Optional[datetime] = None) -> None:
        if timestamp is not None:
            text = f"[{timestamp.strftime('%Y-%m-%dT%H:%M:%SZ')}] {text}"
        self.notes.append(text)

    def validate(self) -> list[str]:
        """Envelope and payload field checks. Empty list means valid."""
        errors: list[str] = []
        if not self.requester_id or not self.requester_id.strip():
            errors.append("Request requires requester_id")
        expected = DETAILS_TYPES[self.kind]
        if not isinstance(self.details, expected):
            errors.append(
                f"{self.kind.value} requires {expected.__name__}, "
                f"got {type(self.details).__name__}"
            )
            return errors
        errors.extend(self.details.validate())
        return errors
