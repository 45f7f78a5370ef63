"""Notification collaborator — facts the core emits, delivery not included.

The service reports three facts: a person now owes a decision, a
decision was recorded, and a request reached final approval (the hook
downstream systems use to close the matched lost report or release
custody). How those facts reach people is outside the core.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from claimflow.models.request import Decision, WorkRequest


class Notifier(Protocol):
    def decision_needed(self, request: WorkRequest, approver_id: str) -> None:
        ...

    def decision_recorded(
        self, request: WorkRequest, actor_id: str, decision: Optional[Decision],
    ) -> None:
        ...

    def request_approved(self, request: WorkRequest) -> None:
        ...


@dataclass(frozen=True)
class Notice:
    fact: str
    request_id: str
    recipient_id: str
    detail: str = ""


@dataclass
class OutboxNotifier:
    """Collects notices in memory for a delivery job (or a test) to drain."""
    outbox: list[Notice] = field(default_factory=list)

    def decision_needed(self, request: WorkRequest, approver_id: str) -> None:
        step = request.current_step()
        self.outbox.append(Notice(
            fact="decision_needed",
            request_id=request.request_id,
            recipient_id=approver_id,
            detail=step.purpose if step else "",
        ))

    def decision_recorded(
        self, request: WorkRequest, actor_id: str, decision: Optional[Decision],
    ) -> None:
        self.outbox.append(Notice(
            fact="decision_recorded",
            request_id=request.request_id,
            recipient_id=request.requester_id,
            detail=f"{actor_id}:{decision.value if decision else 'complete'}",
        ))

    def request_approved(self, request: WorkRequest) -> None:
        self.outbox.append(Notice(
            fact="request_approved",
            request_id=request.request_id,
            recipient_id=request.requester_id,
            detail=request.item_id,
        ))

    def for_recipient(self, recipient_id: str) -> list[Notice]:
        return [n for n in self.outbox if n.recipient_id == recipient_id]

    def drain(self) -> list[Notice]:
        notices, self.outbox = self.outbox, []
        return notices
