"""Tests for the persistence codec — kind tags survive a reload."""

import json
import pytest
from collections import deque
from datetime import datetime, timedelta, timezone

from claimflow.models.dispute import (
    Claimant,
    DisputeDetails,
    EvidenceItem,
    EvidenceOutcome,
    PanelMember,
    ResolutionStatus,
)
from claimflow.models.enterprise import ApproverRole, Enterprise
from claimflow.models.request import (
    AirportToUniversityDetails,
    ChainStep,
    CrossCampusTransferDetails,
    ItemClaimDetails,
    PoliceCheckOutcome,
    PoliceEvidenceDetails,
    RejectionCategory,
    RequestKind,
    RequestPriority,
    RequestStatus,
    TransitToAirportEmergencyDetails,
    TransitToUniversityDetails,
    WorkRequest,
)
from claimflow.models.trust import TrustEventKind, TrustScore, TrustScoreEvent
from claimflow.models.verification import (
    VerificationRequest,
    VerificationStatus,
    VerificationType,
)
from claimflow.persistence import codec


T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

DETAILS = {
    RequestKind.ITEM_CLAIM: ItemClaimDetails(
        "ITEM-1", "Laptop", "Left in library", "Sticker on lid",
        lost_report_id="LR-7", item_category="electronics", estimated_value=899.0,
        proof_description="Receipt",
    ),
    RequestKind.CROSS_CAMPUS_TRANSFER: CrossCampusTransferDetails(
        "ITEM-2", "Jacket", "campus-north", "campus-south", "stu-1",
        student_name="Student", transfer_method="shuttle",
    ),
    RequestKind.TRANSIT_TO_UNIVERSITY_TRANSFER: TransitToUniversityDetails(
        "ITEM-3", "Umbrella", "Central", "transit-central", "campus-main", "stu-1",
        route="Line 4", requires_id_verification=False,
    ),
    RequestKind.AIRPORT_TO_UNIVERSITY_TRANSFER: AirportToUniversityDetails(
        "ITEM-4", "Tablet", "T1", "airport-main", "campus-main", "stu-1",
        incident_number="INC-88", estimated_value=420.0,
        requires_police_verification=True, was_in_secure_area=True,
        security_notes="Found past screening at gate B12",
    ),
    RequestKind.POLICE_EVIDENCE_REQUEST: PoliceEvidenceDetails(
        "ITEM-5", "Phone", Enterprise.AIRPORT, "airport-main",
        verification_reason="Possible theft", serial_number="SN-123",
        is_stolen_check=True, outcome=PoliceCheckOutcome.FLAGGED, case_number="C-9",
    ),
    RequestKind.TRANSIT_TO_AIRPORT_EMERGENCY: TransitToAirportEmergencyDetails(
        "DOC-1", "Passport", "Central", "transit-central", "airport-main",
        "T2", "BA117", "Robin Tan", departure_utc=T0, document_type="passport",
    ),
    RequestKind.MULTI_ENTERPRISE_DISPUTE: DisputeDetails(
        "ITEM-6", "Watch", "Two claims", estimated_value=1200.0,
        custodian_enterprise=Enterprise.TRANSIT,
        claimants=[
            Claimant("A", "Ana", Enterprise.UNIVERSITY, "campus-main",
                     trust_score_snapshot=61, evidence_ids=["WR-1-EV-001"]),
            Claimant("B", "Ben", Enterprise.AIRPORT, "airport-main"),
        ],
        verification_panel=[
            PanelMember("p1", "Pat", Enterprise.POLICE, has_voted=True,
                        voted_for_claimant_id="A", voted_utc=T0),
        ],
        evidence=[
            EvidenceItem("WR-1-EV-001", "A", "A", "receipt", submitted_utc=T0,
                         verified=True, verified_by="p1",
                         outcome=EvidenceOutcome.VALID),
        ],
        panel_votes_required=3,
        panel_votes_received=1,
        resolution_status=ResolutionStatus.PENDING_REVIEW,
    ),
}


def _make_request(kind: RequestKind) -> WorkRequest:
    return WorkRequest(
        request_id="WR-000001",
        kind=kind,
        requester_id="stu-1",
        requester_name="Student",
        requester_enterprise=Enterprise.UNIVERSITY,
        details=DETAILS[kind],
        status=RequestStatus.IN_PROGRESS,
        priority=RequestPriority.HIGH,
        custodian_enterprise=Enterprise.TRANSIT,
        chain=[
            ChainStep(ApproverRole.STATION_MANAGER, Enterprise.TRANSIT, "transit-central", "release"),
            ChainStep(ApproverRole.REQUESTER, None, "", "confirm"),
        ],
        approver_ids=["mgr-1", "stu-1"],
        approver_names=["Morgan", "Student"],
        current_approver_id="stu-1",
        approval_step=1,
        notes=["[2026-03-01T09:00:00Z] Approved by mgr-1"],
        rejection_category=RejectionCategory.INCOMPLETE,
        linked_verification_ids=["VER-000001"],
        created_utc=T0,
        last_updated_utc=T0,
        version=4,
    )


class TestWorkRequestCodec:
    @pytest.mark.parametrize("kind", list(RequestKind))
    def test_reload_preserves_kind_and_fields(self, kind: RequestKind) -> None:
        original = _make_request(kind)
        encoded = json.loads(json.dumps(codec.encode_request(original)))
        restored = codec.decode_request(encoded)
        assert restored.kind == kind
        assert type(restored.details) is type(original.details)
        assert restored == original

    def test_unknown_kind_tag(self) -> None:
        data = codec.encode_request(_make_request(RequestKind.ITEM_CLAIM))
        data["kind"] = "teleport_request"
        with pytest.raises(ValueError, match="Unknown request kind tag"):
            codec.decode_request(data)

    def test_mismatched_details_refused(self) -> None:
        request = _make_request(RequestKind.ITEM_CLAIM)
        request.kind = RequestKind.CROSS_CAMPUS_TRANSFER
        with pytest.raises(ValueError, match="expected CrossCampusTransferDetails"):
            codec.encode_request(request)


class TestTimestamps:
    def test_microseconds_survive_reload(self) -> None:
        precise = datetime(2026, 3, 1, 9, 0, 0, 123456, tzinfo=timezone.utc)
        request = _make_request(RequestKind.TRANSIT_TO_AIRPORT_EMERGENCY)
        request.details = TransitToAirportEmergencyDetails(
            "DOC-2", "Visa", "Central", "transit-central", "airport-main",
            "T2", "BA117", "Robin Tan", departure_utc=precise,
        )
        request.created_utc = precise
        restored = codec.decode_request(
            json.loads(json.dumps(codec.encode_request(request))),
        )
        assert restored.created_utc == precise
        assert restored.details.departure_utc == precise

    def test_offset_time_stored_as_utc(self) -> None:
        local = datetime(2026, 3, 1, 11, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        request = _make_request(RequestKind.ITEM_CLAIM)
        request.created_utc = local
        encoded = codec.encode_request(request)
        assert encoded["created_utc"] == "2026-03-01T09:00:00.000000Z"
        assert codec.decode_request(encoded).created_utc == T0

    def test_second_resolution_records_still_load(self) -> None:
        encoded = codec.encode_request(_make_request(RequestKind.ITEM_CLAIM))
        encoded["created_utc"] = "2026-03-01T09:00:00Z"
        assert codec.decode_request(encoded).created_utc == T0

class TestTrustCodec:
    def test_score_keeps_recent_ring(self) -> None:
        event = TrustScoreEvent(
            "E-1", "stu-1", TrustEventKind.FALSE_CLAIM, -25, 50, 25, T0,
            related_request_id="WR-000001",
        )
        score = TrustScore(
            user_id="stu-1", current_score=25, total_events=1, negative_events=1,
            points_lost=25, is_flagged=True, flag_reason="Score dropped below threshold",
            flagged_utc=T0, recent_events=deque([event], maxlen=10),
            created_utc=T0, last_updated_utc=T0, version=2,
        )
        restored = codec.decode_trust_score(
            json.loads(json.dumps(codec.encode_trust_score(score))),
        )
        assert restored.recent_events.maxlen == 10
        assert list(restored.recent_events) == [event]
        assert restored.is_flagged is True
        assert restored.version == 2


class TestVerificationCodec:
    def test_reload(self) -> None:
        v = VerificationRequest(
            "VER-000001", VerificationType.MULTI_PARTY_APPROVAL, "stu-1", "coord-1",
            status=VerificationStatus.IN_PROGRESS, priority=RequestPriority.NORMAL,
            item_value=2500.0, approver_ids=["a-1"], required_approvals=2,
            created_utc=T0, expires_utc=T0,
        )
        restored = codec.decode_verification(
            json.loads(json.dumps(codec.encode_verification(v))),
        )
        assert restored == v
