"""Verification engine — status machine and expiry for verification requests.

Pure computation over VerificationRequest objects. Expiry is the only
automatic transition in the package and is driven from outside
(expire_due is called by a periodic sweep, never by the engine itself).

Status flow:
    PENDING → IN_PROGRESS → AWAITING_DOCUMENTS / AWAITING_RESPONSE → ...
    any non-terminal → VERIFIED | FAILED | EXPIRED | CANCELLED
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from claimflow.errors import (
    InvalidStateTransition,
    UnauthorizedActor,
    ValidationError,
)
from claimflow.models.verification import (
    VerificationRequest,
    VerificationStatus,
    VerificationType,
)
from claimflow.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


class VerificationEngine:
    """Creates verification requests and applies their transitions.

    Usage:
        engine = VerificationEngine(resolver)
        v = engine.create("VER-000001", VerificationType.IDENTITY_VERIFICATION,
                          subject_user_id="u-1", requester_id="coord-1")
        engine.assign(v, "officer-1", "verification_officer")
        engine.complete(v, "officer-1", "ID matches")
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def create(
        self,
        verification_id: str,
        verification_type: VerificationType,
        subject_user_id: str,
        requester_id: str,
        subject_item_id: Optional[str] = None,
        item_value: float = 0.0,
        related_request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationRequest:
        if not subject_user_id:
            raise ValidationError("Verification requires subject_user_id")
        now = now or datetime.now(timezone.utc)
        hours = self._resolver.verification_expiry_hours(verification_type)
        required = 1
        if verification_type == VerificationType.MULTI_PARTY_APPROVAL:
            required = self._resolver.multi_party_required_approvals()
        return VerificationRequest(
            verification_id=verification_id,
            verification_type=verification_type,
            subject_user_id=subject_user_id,
            requester_id=requester_id,
            priority=self._resolver.verification_priority(verification_type),
            subject_item_id=subject_item_id,
            item_value=item_value,
            related_request_id=related_request_id,
            required_approvals=required,
            created_utc=now,
            expires_utc=now + timedelta(hours=hours),
        )

    def requires_police(self, request: VerificationRequest) -> bool:
        return request.verification_type in self._resolver.police_required_types()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require_active(
        self, request: VerificationRequest, now: datetime,
    ) -> None:
        if request.is_terminal:
            raise InvalidStateTransition(
                f"Verification {request.verification_id} is "
                f"{request.status.value}"
            )
        if request.is_past_expiry(now):
            raise InvalidStateTransition(
                f"Verification {request.verification_id} expired at "
                f"{request.expires_utc}"
            )

    def assign(
        self,
        request: VerificationRequest,
        verifier_id: str,
        verifier_role: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        request.verifier_id = verifier_id
        request.verifier_role = verifier_role
        request.assigned_utc = now
        request.status = VerificationStatus.IN_PROGRESS

    def await_documents(
        self, request: VerificationRequest, note: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        request.status = VerificationStatus.AWAITING_DOCUMENTS
        if note:
            request.notes.append(note)

    def await_response(
        self, request: VerificationRequest, note: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        request.status = VerificationStatus.AWAITING_RESPONSE
        if note:
            request.notes.append(note)

    def complete(
        self,
        request: VerificationRequest,
        verifier_id: str,
        note: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        """Mark verified. Once assigned, only the assignee may complete it."""
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        if request.verifier_id and request.verifier_id != verifier_id:
            raise UnauthorizedActor(
                f"Verification {request.verification_id} is assigned to "
                f"{request.verifier_id}, not {verifier_id}"
            )
        request.verifier_id = verifier_id
        request.status = VerificationStatus.VERIFIED
        request.completed_utc = now
        if note:
            request.notes.append(note)

    def fail(
        self,
        request: VerificationRequest,
        reason: str,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        request.status = VerificationStatus.FAILED
        request.failure_reason = reason
        request.completed_utc = now

    def cancel(
        self,
        request: VerificationRequest,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> None:
        if request.is_terminal:
            raise InvalidStateTransition(
                f"Verification {request.verification_id} is "
                f"{request.status.value}"
            )
        request.status = VerificationStatus.CANCELLED
        request.completed_utc = now or datetime.now(timezone.utc)
        if reason:
            request.notes.append(f"Cancelled: {reason}")

    def record_police_check(
        self,
        request: VerificationRequest,
        result: str,
        is_stolen: bool,
        now: Optional[datetime] = None,
    ) -> None:
        """Store a police database result. Stolen property fails the check."""
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        request.police_check_result = result
        request.is_reported_stolen = is_stolen
        if is_stolen:
            self.fail(request, "Item reported stolen", now)

    def record_serial_check(
        self,
        request: VerificationRequest,
        result: str,
        is_stolen: bool,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        request.serial_check_result = result
        request.is_reported_stolen = is_stolen
        if is_stolen:
            self.fail(request, "Serial number matches a stolen item", now)

    def record_approval(
        self,
        request: VerificationRequest,
        approver_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record one party's sign-off. Returns True once verified."""
        now = now or datetime.now(timezone.utc)
        self._require_active(request, now)
        if request.verification_type != VerificationType.MULTI_PARTY_APPROVAL:
            raise ValidationError(
                f"{request.verification_type.value} does not take approvals"
            )
        if approver_id in request.approver_ids:
            raise ValidationError(f"{approver_id} already approved")
        request.approver_ids.append(approver_id)
        if len(request.approver_ids) >= request.required_approvals:
            request.status = VerificationStatus.VERIFIED
            request.completed_utc = now
            return True
        if request.status == VerificationStatus.PENDING:
            request.status = VerificationStatus.IN_PROGRESS
        return False

    # ------------------------------------------------------------------
    # Sweep and requirements
    # ------------------------------------------------------------------

    def expire_due(
        self,
        requests: Iterable[VerificationRequest],
        now: Optional[datetime] = None,
    ) -> list[VerificationRequest]:
        """Mark every overdue non-terminal request EXPIRED. Returns them."""
        now = now or datetime.now(timezone.utc)
        expired: list[VerificationRequest] = []
        for r in requests:
            if not r.is_terminal and r.is_past_expiry(now):
                r.status = VerificationStatus.EXPIRED
                r.completed_utc = now
                expired.append(r)
        if expired:
            logger.info("Expired %d verification request(s)", len(expired))
        return expired

    def required_verifications(
        self,
        item_value: float,
        trust_score: int,
        can_skip_identity: bool = False,
    ) -> list[VerificationType]:
        """Verifications a claim of this value by this user should pass.

        can_skip_identity is the ledger's can_skip_verification answer
        for the claimant.
        """
        required: list[VerificationType] = []
        if trust_score < self._resolver.trust_thresholds().verification:
            required.append(VerificationType.IDENTITY_VERIFICATION)
        if item_value >= self._resolver.high_value_threshold():
            required.append(VerificationType.HIGH_VALUE_ITEM_CLAIM)
            required.append(VerificationType.OWNERSHIP_DOCUMENTATION)
            if (
                not can_skip_identity
                and VerificationType.IDENTITY_VERIFICATION not in required
            ):
                required.append(VerificationType.IDENTITY_VERIFICATION)
        if item_value >= self._resolver.very_high_value_threshold():
            required.append(VerificationType.SERIAL_NUMBER_CHECK)
            required.append(VerificationType.STOLEN_PROPERTY_CHECK)
        return required

    def requires_multi_party(self, item_value: float) -> bool:
        return item_value >= self._resolver.very_high_value_threshold()
