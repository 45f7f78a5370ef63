"""Tests for the verification workflow — transitions, expiry, requirements."""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from claimflow.errors import InvalidStateTransition, UnauthorizedActor, ValidationError
from claimflow.models.request import RequestPriority
from claimflow.models.verification import VerificationStatus, VerificationType
from claimflow.policy.resolver import PolicyResolver
from claimflow.verification.engine import VerificationEngine


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine() -> VerificationEngine:
    return VerificationEngine(PolicyResolver.from_config_dir(CONFIG_DIR))


def _make(engine: VerificationEngine, vtype=VerificationType.IDENTITY_VERIFICATION):
    return engine.create(
        "VER-000001", vtype, subject_user_id="stu-1", requester_id="coord-1", now=T0,
    )


class TestCreate:
    def test_expiry_and_priority_from_config(self, engine: VerificationEngine) -> None:
        v = _make(engine, VerificationType.STOLEN_PROPERTY_CHECK)
        assert v.status == VerificationStatus.PENDING
        assert v.priority == RequestPriority.URGENT
        assert v.expires_utc == T0 + timedelta(hours=48)
        assert engine.requires_police(v) is True

    def test_multi_party_requires_two_approvals(self, engine: VerificationEngine) -> None:
        v = _make(engine, VerificationType.MULTI_PARTY_APPROVAL)
        assert v.required_approvals == 2

    def test_subject_required(self, engine: VerificationEngine) -> None:
        with pytest.raises(ValidationError):
            engine.create("VER-1", VerificationType.IDENTITY_VERIFICATION, "", "coord-1")


class TestTransitions:
    def test_assign_then_complete(self, engine: VerificationEngine) -> None:
        v = _make(engine)
        engine.assign(v, "officer-1", "verification_officer", T0)
        assert v.status == VerificationStatus.IN_PROGRESS
        engine.await_documents(v, "Need student card", T0)
        assert v.status == VerificationStatus.AWAITING_DOCUMENTS
        engine.complete(v, "officer-1", "Card matches", T0 + timedelta(hours=1))
        assert v.status == VerificationStatus.VERIFIED
        assert v.is_terminal
        assert "Card matches" in v.notes

    def test_only_assignee_completes(self, engine: VerificationEngine) -> None:
        v = _make(engine)
        engine.assign(v, "officer-1", "verification_officer", T0)
        with pytest.raises(UnauthorizedActor, match="assigned to officer-1"):
            engine.complete(v, "officer-2", now=T0)
        assert v.status == VerificationStatus.IN_PROGRESS
        assert v.verifier_id == "officer-1"

    def test_unassigned_completion_records_verifier(
        self, engine: VerificationEngine,
    ) -> None:
        v = _make(engine)
        engine.complete(v, "officer-2", now=T0)
        assert v.verifier_id == "officer-2"

    def test_terminal_refuses_changes(self, engine: VerificationEngine) -> None:
        v = _make(engine)
        engine.fail(v, "ID mismatch", T0)
        with pytest.raises(InvalidStateTransition):
            engine.complete(v, "officer-1", now=T0)
        with pytest.raises(InvalidStateTransition):
            engine.cancel(v)

    def test_past_expiry_refuses_changes(self, engine: VerificationEngine) -> None:
        v = _make(engine)
        late = T0 + timedelta(hours=25)
        with pytest.raises(InvalidStateTransition, match="expired"):
            engine.complete(v, "officer-1", now=late)
        assert v.status == VerificationStatus.PENDING

    def test_stolen_police_check_fails(self, engine: VerificationEngine) -> None:
        v = _make(engine, VerificationType.STOLEN_PROPERTY_CHECK)
        engine.record_police_check(v, "Match in stolen register", True, T0)
        assert v.status == VerificationStatus.FAILED
        assert v.is_reported_stolen is True
        assert v.failure_reason == "Item reported stolen"

    def test_clean_serial_check_keeps_open(self, engine: VerificationEngine) -> None:
        v = _make(engine, VerificationType.SERIAL_NUMBER_CHECK)
        engine.record_serial_check(v, "No match", False, T0)
        assert v.status == VerificationStatus.PENDING
        assert v.serial_check_result == "No match"

    def test_multi_party_approval(self, engine: VerificationEngine) -> None:
        v = _make(engine, VerificationType.MULTI_PARTY_APPROVAL)
        assert engine.record_approval(v, "a-1", T0) is False
        assert v.status == VerificationStatus.IN_PROGRESS
        with pytest.raises(ValidationError, match="already approved"):
            engine.record_approval(v, "a-1", T0)
        assert engine.record_approval(v, "a-2", T0) is True
        assert v.status == VerificationStatus.VERIFIED

    def test_approval_on_single_party_type_rejected(
        self, engine: VerificationEngine,
    ) -> None:
        with pytest.raises(ValidationError, match="does not take approvals"):
            engine.record_approval(_make(engine), "a-1", T0)


class TestExpirySweep:
    def test_expire_due_only_touches_overdue_open(self, engine: VerificationEngine) -> None:
        due = _make(engine)
        long_window = engine.create(
            "VER-000002", VerificationType.CROSS_ENTERPRISE_TRANSFER,
            subject_user_id="stu-1", requester_id="coord-1", now=T0,
        )
        done = engine.create(
            "VER-000003", VerificationType.IDENTITY_VERIFICATION,
            subject_user_id="stu-2", requester_id="coord-1", now=T0,
        )
        engine.complete(done, "officer-1", now=T0)
        expired = engine.expire_due([due, long_window, done], T0 + timedelta(hours=30))
        assert expired == [due]
        assert due.status == VerificationStatus.EXPIRED
        assert long_window.status == VerificationStatus.PENDING
        assert done.status == VerificationStatus.VERIFIED


class TestRequirements:
    def test_low_value_trusted_user_needs_nothing(self, engine: VerificationEngine) -> None:
        assert engine.required_verifications(100.0, 60) == []

    def test_low_trust_needs_identity(self, engine: VerificationEngine) -> None:
        assert engine.required_verifications(100.0, 40) == [
            VerificationType.IDENTITY_VERIFICATION,
        ]

    def test_high_value(self, engine: VerificationEngine) -> None:
        assert engine.required_verifications(600.0, 60) == [
            VerificationType.HIGH_VALUE_ITEM_CLAIM,
            VerificationType.OWNERSHIP_DOCUMENTATION,
            VerificationType.IDENTITY_VERIFICATION,
        ]
        assert VerificationType.IDENTITY_VERIFICATION not in engine.required_verifications(
            600.0, 90, can_skip_identity=True,
        )

    def test_very_high_value_adds_police_checks(self, engine: VerificationEngine) -> None:
        required = engine.required_verifications(2500.0, 90, can_skip_identity=True)
        assert VerificationType.SERIAL_NUMBER_CHECK in required
        assert VerificationType.STOLEN_PROPERTY_CHECK in required
        assert engine.requires_multi_party(2500.0) is True
        assert engine.requires_multi_party(600.0) is False
