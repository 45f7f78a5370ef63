"""Trust score data models — per-user reputation and its event trail.

A TrustScore is mutated in place by each applied event. Every
application produces one TrustScoreEvent, which is immutable and
append-only: the event rows, not the aggregate, are the durable record
of why a score is what it is.

Score levels are a pure function of the current score:
    EXCELLENT >= 90, GOOD >= 70, FAIR >= 50, LOW >= 30, PROBATION below.
"""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

DEFAULT_RECENT_CAPACITY = 10


class TrustEventKind(str, enum.Enum):
    """Kinds of trust-affecting events, each with default points."""
    REPORT_FOUND_ITEM = "report_found_item"
    REPORT_LOST_ITEM = "report_lost_item"
    SUCCESSFUL_CLAIM = "successful_claim"
    APPROVE_REQUEST = "approve_request"
    ASSIST_RECOVERY = "assist_recovery"
    GOOD_SAMARITAN = "good_samaritan"
    ACCOUNT_VERIFICATION = "account_verification"
    REQUEST_COMPLETED = "request_completed"
    FALSE_CLAIM = "false_claim"
    CLAIM_REJECTED = "claim_rejected"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    NO_SHOW_PICKUP = "no_show_pickup"
    FRAUDULENT_REPORT = "fraudulent_report"
    FRAUD_FLAG = "fraud_flag"
    FRAUD_CLEARED = "fraud_cleared"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    SCORE_DECAY = "score_decay"
    INITIAL_SCORE = "initial_score"

    @property
    def default_points(self) -> int:
        return DEFAULT_POINTS[self]

    @property
    def is_severe(self) -> bool:
        return DEFAULT_POINTS[self] <= -25


DEFAULT_POINTS: dict[TrustEventKind, int] = {
    TrustEventKind.REPORT_FOUND_ITEM: 2,
    TrustEventKind.REPORT_LOST_ITEM: 1,
    TrustEventKind.SUCCESSFUL_CLAIM: 10,
    TrustEventKind.APPROVE_REQUEST: 5,
    TrustEventKind.ASSIST_RECOVERY: 3,
    TrustEventKind.GOOD_SAMARITAN: 15,
    TrustEventKind.ACCOUNT_VERIFICATION: 5,
    TrustEventKind.REQUEST_COMPLETED: 3,
    TrustEventKind.FALSE_CLAIM: -25,
    TrustEventKind.CLAIM_REJECTED: -5,
    TrustEventKind.SUSPICIOUS_ACTIVITY: -10,
    TrustEventKind.NO_SHOW_PICKUP: -8,
    TrustEventKind.FRAUDULENT_REPORT: -30,
    TrustEventKind.FRAUD_FLAG: -50,
    TrustEventKind.FRAUD_CLEARED: 20,
    TrustEventKind.MANUAL_ADJUSTMENT: 0,
    TrustEventKind.SCORE_DECAY: -1,
    TrustEventKind.INITIAL_SCORE: 0,
}


class ScoreLevel(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    LOW = "low"
    PROBATION = "probation"


def level_for(score: int) -> ScoreLevel:
    """Map a score in [0, 100] to its level."""
    if score >= 90:
        return ScoreLevel.EXCELLENT
    if score >= 70:
        return ScoreLevel.GOOD
    if score >= 50:
        return ScoreLevel.FAIR
    if score >= 30:
        return ScoreLevel.LOW
    return ScoreLevel.PROBATION


class TrustTrend(str, enum.Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


@dataclass(frozen=True)
class TrustScoreEvent:
    """One applied trust event. Never mutated after creation."""
    event_id: str
    user_id: str
    kind: TrustEventKind
    points: int
    previous_score: int
    new_score: int
    timestamp_utc: datetime
    description: str = ""
    related_item_id: Optional[str] = None
    related_request_id: Optional[str] = None
    related_claim_id: Optional[str] = None
    recorded_by: str = "system"

    @property
    def is_positive(self) -> bool:
        return self.points > 0


@dataclass
class TrustScore:
    """Aggregate reputation of one user.

    recent_events holds the newest events first and drops the oldest
    once full.
    """
    user_id: str
    current_score: int = 50
    total_events: int = 0
    positive_events: int = 0
    negative_events: int = 0
    points_earned: int = 0
    points_lost: int = 0
    is_flagged: bool = False
    flag_reason: str = ""
    flagged_utc: Optional[datetime] = None
    is_under_investigation: bool = False
    investigation_started_utc: Optional[datetime] = None
    recent_events: deque = field(
        default_factory=lambda: deque(maxlen=DEFAULT_RECENT_CAPACITY),
    )
    created_utc: Optional[datetime] = None
    last_updated_utc: Optional[datetime] = None
    version: int = 0

    @property
    def score_level(self) -> ScoreLevel:
        return level_for(self.current_score)
