"""Codec — plain-dict encoding of every persisted entity.

Work requests are encoded with their kind tag and decoded through a
per-kind table checked against RequestKind at import time, so a reload
always yields the same details class with every kind-specific field.

Timestamps are stored as UTC with microseconds. Files written with the
older second-resolution format still load.
"""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import fields, is_dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from claimflow.models.dispute import (
    Claimant,
    ClaimantStatus,
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
    DETAILS_TYPES,
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
    require_every_kind,
)
from claimflow.models.trust import TrustEventKind, TrustScore, TrustScoreEvent
from claimflow.models.verification import (
    VerificationRequest,
    VerificationStatus,
    VerificationType,
)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_SECONDS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _ts(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    fmt = TIMESTAMP_FORMAT if "." in value else _SECONDS_FORMAT
    return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)


def _plain(value: Any) -> Any:
    """Recursively convert enums, datetimes and dataclasses to JSON types."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return _ts(value)
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, (list, tuple, deque)):
        return [_plain(v) for v in value]
    return value


def _build(
    cls: type,
    data: dict[str, Any],
    enums: Optional[dict[str, type]] = None,
    datetimes: tuple[str, ...] = (),
) -> Any:
    """Construct a flat dataclass from its encoded fields."""
    enums = enums or {}
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name in enums and value is not None:
            value = enums[f.name](value)
        elif f.name in datetimes:
            value = _parse_ts(value)
        kwargs[f.name] = value
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Work requests
# ---------------------------------------------------------------------------

def _decode_dispute(data: dict[str, Any]) -> DisputeDetails:
    d = _build(
        DisputeDetails,
        {k: v for k, v in data.items()
         if k not in ("claimants", "verification_panel", "evidence")},
        enums={
            "custodian_enterprise": Enterprise,
            "resolution_status": ResolutionStatus,
        },
        datetimes=("resolved_utc",),
    )
    d.claimants = [
        _build(Claimant, c, enums={
            "enterprise": Enterprise, "status": ClaimantStatus,
        })
        for c in data.get("claimants", [])
    ]
    d.verification_panel = [
        _build(PanelMember, m, enums={"enterprise": Enterprise},
               datetimes=("voted_utc",))
        for m in data.get("verification_panel", [])
    ]
    d.evidence = [
        _build(EvidenceItem, e, enums={"outcome": EvidenceOutcome},
               datetimes=("submitted_utc",))
        for e in data.get("evidence", [])
    ]
    return d


DETAILS_DECODERS: dict[RequestKind, Callable[[dict[str, Any]], Any]] = {
    RequestKind.ITEM_CLAIM: lambda d: _build(ItemClaimDetails, d),
    RequestKind.CROSS_CAMPUS_TRANSFER: lambda d: _build(CrossCampusTransferDetails, d),
    RequestKind.TRANSIT_TO_UNIVERSITY_TRANSFER: (
        lambda d: _build(TransitToUniversityDetails, d)
    ),
    RequestKind.AIRPORT_TO_UNIVERSITY_TRANSFER: (
        lambda d: _build(AirportToUniversityDetails, d)
    ),
    RequestKind.POLICE_EVIDENCE_REQUEST: lambda d: _build(
        PoliceEvidenceDetails, d,
        enums={"source_enterprise": Enterprise, "outcome": PoliceCheckOutcome},
    ),
    RequestKind.TRANSIT_TO_AIRPORT_EMERGENCY: lambda d: _build(
        TransitToAirportEmergencyDetails, d, datetimes=("departure_utc",),
    ),
    RequestKind.MULTI_ENTERPRISE_DISPUTE: _decode_dispute,
}
require_every_kind(DETAILS_DECODERS, "DETAILS_DECODERS")


def encode_request(request: WorkRequest) -> dict[str, Any]:
    """Encode a work request with its kind tag."""
    expected = DETAILS_TYPES[request.kind]
    if not isinstance(request.details, expected):
        raise ValueError(
            f"Request {request.request_id}: {request.kind.value} carries "
            f"{type(request.details).__name__}, expected {expected.__name__}"
        )
    return {
        "request_id": request.request_id,
        "kind": request.kind.value,
        "status": request.status.value,
        "priority": request.priority.value,
        "requester_id": request.requester_id,
        "requester_name": request.requester_name,
        "requester_enterprise": request.requester_enterprise.value,
        "requester_organization_id": request.requester_organization_id,
        "target_enterprise": _plain(request.target_enterprise),
        "target_organization_id": request.target_organization_id,
        "custodian_enterprise": _plain(request.custodian_enterprise),
        "custodian_organization_id": request.custodian_organization_id,
        "chain": [
            {
                "role": s.role.value,
                "enterprise": _plain(s.enterprise),
                "organization_id": s.organization_id,
                "purpose": s.purpose,
            }
            for s in request.chain
        ],
        "approver_ids": list(request.approver_ids),
        "approver_names": list(request.approver_names),
        "current_approver_id": request.current_approver_id,
        "approval_step": request.approval_step,
        "description": request.description,
        "notes": list(request.notes),
        "rejection_reason": request.rejection_reason,
        "rejection_category": _plain(request.rejection_category),
        "linked_verification_ids": list(request.linked_verification_ids),
        "created_utc": _ts(request.created_utc),
        "last_updated_utc": _ts(request.last_updated_utc),
        "completed_utc": _ts(request.completed_utc),
        "version": request.version,
        "details": _plain(request.details),
    }


def decode_request(data: dict[str, Any]) -> WorkRequest:
    """Rebuild a work request. Raises ValueError on an unknown kind tag."""
    try:
        kind = RequestKind(data["kind"])
    except ValueError:
        raise ValueError(f"Unknown request kind tag: {data['kind']!r}") from None

    def _opt_enterprise(value: Optional[str]) -> Optional[Enterprise]:
        return Enterprise(value) if value else None

    return WorkRequest(
        request_id=data["request_id"],
        kind=kind,
        status=RequestStatus(data["status"]),
        priority=RequestPriority(data["priority"]),
        requester_id=data["requester_id"],
        requester_name=data.get("requester_name", ""),
        requester_enterprise=Enterprise(data["requester_enterprise"]),
        requester_organization_id=data.get("requester_organization_id", ""),
        target_enterprise=_opt_enterprise(data.get("target_enterprise")),
        target_organization_id=data.get("target_organization_id", ""),
        custodian_enterprise=_opt_enterprise(data.get("custodian_enterprise")),
        custodian_organization_id=data.get("custodian_organization_id", ""),
        chain=[
            ChainStep(
                role=ApproverRole(s["role"]),
                enterprise=_opt_enterprise(s["enterprise"]),
                organization_id=s.get("organization_id", ""),
                purpose=s.get("purpose", ""),
            )
            for s in data.get("chain", [])
        ],
        approver_ids=list(data.get("approver_ids", [])),
        approver_names=list(data.get("approver_names", [])),
        current_approver_id=data.get("current_approver_id"),
        approval_step=data.get("approval_step", 0),
        description=data.get("description", ""),
        notes=list(data.get("notes", [])),
        rejection_reason=data.get("rejection_reason", ""),
        rejection_category=(
            RejectionCategory(data["rejection_category"])
            if data.get("rejection_category") else None
        ),
        linked_verification_ids=list(data.get("linked_verification_ids", [])),
        created_utc=_parse_ts(data.get("created_utc")),
        last_updated_utc=_parse_ts(data.get("last_updated_utc")),
        completed_utc=_parse_ts(data.get("completed_utc")),
        version=data.get("version", 0),
        details=DETAILS_DECODERS[kind](data["details"]),
    )


# ---------------------------------------------------------------------------
# Trust
# ---------------------------------------------------------------------------

def encode_trust_event(event: TrustScoreEvent) -> dict[str, Any]:
    return _plain(event)


def decode_trust_event(data: dict[str, Any]) -> TrustScoreEvent:
    return _build(
        TrustScoreEvent, data,
        enums={"kind": TrustEventKind},
        datetimes=("timestamp_utc",),
    )


def encode_trust_score(score: TrustScore) -> dict[str, Any]:
    return {
        "user_id": score.user_id,
        "current_score": score.current_score,
        "total_events": score.total_events,
        "positive_events": score.positive_events,
        "negative_events": score.negative_events,
        "points_earned": score.points_earned,
        "points_lost": score.points_lost,
        "is_flagged": score.is_flagged,
        "flag_reason": score.flag_reason,
        "flagged_utc": _ts(score.flagged_utc),
        "is_under_investigation": score.is_under_investigation,
        "investigation_started_utc": _ts(score.investigation_started_utc),
        "recent_capacity": score.recent_events.maxlen,
        "recent_events": [encode_trust_event(e) for e in score.recent_events],
        "created_utc": _ts(score.created_utc),
        "last_updated_utc": _ts(score.last_updated_utc),
        "version": score.version,
    }


def decode_trust_score(data: dict[str, Any]) -> TrustScore:
    score = _build(
        TrustScore,
        {k: v for k, v in data.items()
         if k not in ("recent_events", "recent_capacity")},
        datetimes=(
            "flagged_utc", "investigation_started_utc",
            "created_utc", "last_updated_utc",
        ),
    )
    score.recent_events = deque(
        (decode_trust_event(e) for e in data.get("recent_events", [])),
        maxlen=data.get("recent_capacity"),
    )
    return score


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def encode_verification(request: VerificationRequest) -> dict[str, Any]:
    return _plain(request)


def decode_verification(data: dict[str, Any]) -> VerificationRequest:
    return _build(
        VerificationRequest, data,
        enums={
            "verification_type": VerificationType,
            "status": VerificationStatus,
            "priority": RequestPriority,
        },
        datetimes=("created_utc", "assigned_utc", "completed_utc", "expires_utc"),
    )
