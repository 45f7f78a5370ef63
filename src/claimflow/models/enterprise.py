"""Enterprises of the recovery network and the approver roles they staff."""

from __future__ import annotations

import enum


class Enterprise(str, enum.Enum):
    """The four independent top-level organizations in the network."""
    UNIVERSITY = "university"
    TRANSIT = "transit"
    AIRPORT = "airport"
    POLICE = "police"


class ApproverRole(str, enum.Enum):
    """Abstract approver roles. Binding a role to a person is a roster lookup."""
    CAMPUS_COORDINATOR = "campus_coordinator"
    STATION_MANAGER = "station_manager"
    AIRPORT_SPECIALIST = "airport_specialist"
    POLICE_EVIDENCE_CUSTODIAN = "police_evidence_custodian"
    POLICE_OFFICER = "police_officer"
    VERIFICATION_OFFICER = "verification_officer"
    REQUESTER = "requester"


# The role that signs off on items held by each enterprise.
CUSTODIAN_ROLE: dict[Enterprise, ApproverRole] = {
    Enterprise.UNIVERSITY: ApproverRole.CAMPUS_COORDINATOR,
    Enterprise.TRANSIT: ApproverRole.STATION_MANAGER,
    Enterprise.AIRPORT: ApproverRole.AIRPORT_SPECIALIST,
    Enterprise.POLICE: ApproverRole.POLICE_EVIDENCE_CUSTODIAN,
}

_LABELS: dict[Enterprise, str] = {
    Enterprise.UNIVERSITY: "University",
    Enterprise.TRANSIT: "Transit Authority",
    Enterprise.AIRPORT: "Airport",
    Enterprise.POLICE: "Police Department",
}


def display_label(enterprise: Enterprise, organization_name: str = "") -> str:
    """Human-readable label for listings and notifications.

    Cosmetic only. Routing never looks at organization names.
    """
    base = _LABELS[enterprise]
    if organization_name:
        return f"{organization_name} ({base})"
    return base
