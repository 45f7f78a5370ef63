"""Verification request models — a parallel workflow with its own expiry.

Verification requests back the approval chain: an item claim that needs
identity or high-value checks spawns one, and the verification step of
the chain is approved by the officer who completes it. Unlike work
requests, verification requests expire automatically once their window
passes (an external periodic sweep calls VerificationEngine.expire_due).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from claimflow.models.request import RequestPriority


class VerificationType(str, enum.Enum):
    IDENTITY_VERIFICATION = "identity_verification"
    HIGH_VALUE_ITEM_CLAIM = "high_value_item_claim"
    CROSS_ENTERPRISE_TRANSFER = "cross_enterprise_transfer"
    SERIAL_NUMBER_CHECK = "serial_number_check"
    STOLEN_PROPERTY_CHECK = "stolen_property_check"
    STUDENT_ENROLLMENT = "student_enrollment"
    POLICE_BACKGROUND_CHECK = "police_background_check"
    OWNERSHIP_DOCUMENTATION = "ownership_documentation"
    MULTI_PARTY_APPROVAL = "multi_party_approval"


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_DOCUMENTS = "awaiting_documents"
    AWAITING_RESPONSE = "awaiting_response"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


VERIFICATION_TERMINAL = frozenset({
    VerificationStatus.VERIFIED,
    VerificationStatus.FAILED,
    VerificationStatus.EXPIRED,
    VerificationStatus.CANCELLED,
})


@dataclass
class VerificationRequest:
    verification_id: str
    verification_type: VerificationType
    subject_user_id: str
    requester_id: str
    status: VerificationStatus = VerificationStatus.PENDING
    priority: RequestPriority = RequestPriority.NORMAL
    subject_item_id: Optional[str] = None
    item_value: float = 0.0
    related_request_id: Optional[str] = None
    verifier_id: Optional[str] = None
    verifier_role: str = ""
    notes: list[str] = field(default_factory=list)
    failure_reason: str = ""
    police_check_result: str = ""
    serial_check_result: str = ""
    is_reported_stolen: bool = False
    required_approvals: int = 1
    approver_ids: list[str] = field(default_factory=list)
    created_utc: Optional[datetime] = None
    assigned_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    expires_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in VERIFICATION_TERMINAL

    def is_past_expiry(self, now: datetime) -> bool:
        return self.expires_utc is not None and now > self.expires_utc
