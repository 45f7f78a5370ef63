"""Trust ledger — applies reputation events and answers eligibility questions.

Pure computation over a TrustScore passed in by the caller. No
persistence, no audit log: the service layer stores the returned
TrustScoreEvent and the mutated score.

Application rules:
  delta = custom points if given, else the kind's default points
  new   = clamp(current + delta, 0, 100)
  Crossing below the flag threshold from at-or-above it flags the user.
  Crossing back up never clears the flag; clear_flag() is required.

The ledger applies whatever it is given. Replay detection belongs to
the caller, against the stored event history.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Optional

from claimflow.models.trust import (
    TrustEventKind,
    TrustScore,
    TrustScoreEvent,
    TrustTrend,
)
from claimflow.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)

AUTO_FLAG_REASON = "Score dropped below threshold"


def _clamp(value: int, lo: int = 0, hi: int = 100) -> int:
    return max(lo, min(hi, value))


class TrustLedger:
    """Reputation arithmetic and trust-gated predicates.

    Usage:
        ledger = TrustLedger(resolver)
        score = ledger.open_score("u-1")
        event = ledger.apply_event(score, TrustEventKind.FALSE_CLAIM, event_id="E-1")
        if ledger.requires_verification(score):
            ...
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver
        self._thresholds = resolver.trust_thresholds()

    def open_score(
        self, user_id: str, now: Optional[datetime] = None,
    ) -> TrustScore:
        """Create a fresh score at the configured initial value."""
        now = now or datetime.now(timezone.utc)
        return TrustScore(
            user_id=user_id,
            current_score=_clamp(self._resolver.initial_trust_score()),
            recent_events=deque(maxlen=self._resolver.recent_events_capacity()),
            created_utc=now,
            last_updated_utc=now,
        )

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply_event(
        self,
        score: TrustScore,
        kind: TrustEventKind,
        points: Optional[int] = None,
        *,
        event_id: str,
        description: str = "",
        related_item_id: Optional[str] = None,
        related_request_id: Optional[str] = None,
        related_claim_id: Optional[str] = None,
        recorded_by: str = "system",
        now: Optional[datetime] = None,
    ) -> TrustScoreEvent:
        """Apply one event to the score in place.

        Returns the event the caller must store alongside the score.
        """
        now = now or datetime.now(timezone.utc)
        delta = points if points is not None else kind.default_points
        previous = score.current_score
        new = _clamp(previous + delta)

        score.total_events += 1
        if delta > 0:
            score.positive_events += 1
            score.points_earned += delta
        elif delta < 0:
            score.negative_events += 1
            score.points_lost += -delta

        score.current_score = new
        threshold = self._thresholds.flag_threshold
        if previous >= threshold and new < threshold and not score.is_flagged:
            score.is_flagged = True
            score.flag_reason = AUTO_FLAG_REASON
            score.flagged_utc = now
            logger.warning(
                "User %s flagged: score %d -> %d", score.user_id, previous, new,
            )

        event = TrustScoreEvent(
            event_id=event_id,
            user_id=score.user_id,
            kind=kind,
            points=delta,
            previous_score=previous,
            new_score=new,
            timestamp_utc=now,
            description=description or kind.value,
            related_item_id=related_item_id,
            related_request_id=related_request_id,
            related_claim_id=related_claim_id,
            recorded_by=recorded_by,
        )
        score.recent_events.appendleft(event)
        score.last_updated_utc = now
        return event

    def adjust_to(
        self,
        score: TrustScore,
        target: int,
        *,
        event_id: str,
        recorded_by: str,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> TrustScoreEvent:
        """Set the score to an exact value through a MANUAL_ADJUSTMENT event."""
        delta = _clamp(target) - score.current_score
        return self.apply_event(
            score,
            TrustEventKind.MANUAL_ADJUSTMENT,
            delta,
            event_id=event_id,
            description=reason or f"Manual adjustment to {_clamp(target)}",
            recorded_by=recorded_by,
            now=now,
        )

    # ------------------------------------------------------------------
    # Eligibility predicates
    # ------------------------------------------------------------------

    def _in_good_standing(self, score: TrustScore) -> bool:
        return not score.is_flagged and not score.is_under_investigation

    def can_claim_high_value_item(self, score: TrustScore) -> bool:
        return (
            score.current_score >= self._thresholds.high_value_claim
            and self._in_good_standing(score)
        )

    def can_skip_verification(self, score: TrustScore) -> bool:
        return (
            score.current_score >= self._thresholds.skip_verification
            and self._in_good_standing(score)
        )

    def requires_verification(self, score: TrustScore) -> bool:
        return (
            score.current_score < self._thresholds.verification
            or not self._in_good_standing(score)
        )

    def is_low_trust(self, score: TrustScore) -> bool:
        return score.current_score < self._thresholds.low_trust

    def trend(self, score: TrustScore) -> TrustTrend:
        """Direction of the recent events, by share of positive ones."""
        recent = list(score.recent_events)
        if not recent:
            return TrustTrend.NEUTRAL
        positive = sum(1 for e in recent if e.is_positive)
        ratio = positive / len(recent)
        if ratio > self._thresholds.trend_positive_ratio:
            return TrustTrend.POSITIVE
        if ratio < self._thresholds.trend_negative_ratio:
            return TrustTrend.NEGATIVE
        return TrustTrend.NEUTRAL

    # ------------------------------------------------------------------
    # Administrative gating (never touches the score)
    # ------------------------------------------------------------------

    def flag(
        self, score: TrustScore, reason: str, now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        score.is_flagged = True
        score.flag_reason = reason
        score.flagged_utc = now
        score.last_updated_utc = now

    def clear_flag(self, score: TrustScore, now: Optional[datetime] = None) -> None:
        score.is_flagged = False
        score.flag_reason = ""
        score.flagged_utc = None
        score.last_updated_utc = now or datetime.now(timezone.utc)

    def start_investigation(
        self, score: TrustScore, now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        score.is_under_investigation = True
        score.investigation_started_utc = now
        score.last_updated_utc = now

    def end_investigation(
        self, score: TrustScore, now: Optional[datetime] = None,
    ) -> None:
        score.is_under_investigation = False
        score.investigation_started_utc = None
        score.last_updated_utc = now or datetime.now(timezone.utc)
