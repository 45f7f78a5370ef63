"""SLA tracker — deadline arithmetic for work requests.

Advisory only: overdue is a signal for display and human escalation.
The tracker never changes a request's status.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from claimflow.models.request import WorkRequest
from claimflow.policy.resolver import PolicyResolver


class SlaTracker:
    """Computes remaining time against the (kind, priority) window.

    Usage:
        tracker = SlaTracker(resolver)
        tracker.hours_until_sla(request)   # negative means overdue
        late = tracker.overdue(all_requests)
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver

    def window(self, request: WorkRequest) -> timedelta:
        return timedelta(hours=self._resolver.sla_hours(request.kind, request.priority))

    def deadline(self, request: WorkRequest) -> datetime:
        if request.created_utc is None:
            raise ValueError(f"Request {request.request_id} has no created_utc")
        return request.created_utc + self.window(request)

    def hours_until_sla(
        self, request: WorkRequest, now: Optional[datetime] = None,
    ) -> int:
        """Whole hours until the deadline, rounded down. Negative is overdue."""
        now = now or datetime.now(timezone.utc)
        remaining = self.deadline(request) - now
        return math.floor(remaining.total_seconds() / 3600)

    def is_overdue(
        self, request: WorkRequest, now: Optional[datetime] = None,
    ) -> bool:
        if request.is_terminal:
            return False
        return self.hours_until_sla(request, now) < 0

    def is_approaching_breach(
        self, request: WorkRequest, now: Optional[datetime] = None,
    ) -> bool:
        """Less than the configured fraction of the window remains."""
        if request.is_terminal:
            return False
        now = now or datetime.now(timezone.utc)
        remaining = (self.deadline(request) - now).total_seconds()
        if remaining <= 0:
            return False
        total = self.window(request).total_seconds()
        return remaining / total < self._resolver.approaching_breach_fraction()

    def overdue(
        self,
        requests: Iterable[WorkRequest],
        now: Optional[datetime] = None,
    ) -> list[WorkRequest]:
        """Overdue non-terminal requests, oldest deadline first."""
        now = now or datetime.now(timezone.utc)
        late = [r for r in requests if self.is_overdue(r, now)]
        late.sort(key=self.deadline)
        return late

    def approaching_breach(
        self,
        requests: Iterable[WorkRequest],
        now: Optional[datetime] = None,
    ) -> list[WorkRequest]:
        now = now or datetime.now(timezone.utc)
        near = [r for r in requests if self.is_approaching_breach(r, now)]
        near.sort(key=self.deadline)
        return near
