"""Approver roster — binds abstract chain roles to concrete people.

The workflow core only sees the RosterLookup protocol. ApproverRoster is
the in-memory implementation used by tests, the CLI and single-node
deployments; a directory service can stand in for it unchanged.

Binding rules:
- Only active approvers holding the step's role in the step's
  enterprise are candidates.
- An exact organization match is preferred at every priority, falling
  back to any organization in the enterprise, least-busy first.
- Ties break on approver_id so binding is deterministic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from claimflow.models.enterprise import ApproverRole, Enterprise
from claimflow.models.request import ChainStep, RequestPriority

logger = logging.getLogger(__name__)


@dataclass
class ApproverEntry:
    """One person able to approve steps for a role.

    workload counts the open requests currently bound to them.
    """
    approver_id: str
    name: str
    role: ApproverRole
    enterprise: Enterprise
    organization_id: str = ""
    active: bool = True
    workload: int = 0


class RosterLookup(Protocol):
    def resolve(
        self, step: ChainStep, priority: RequestPriority,
    ) -> Optional[ApproverEntry]:
        ...

    def release(self, approver_id: str) -> None:
        ...

    def get(self, approver_id: str) -> Optional[ApproverEntry]:
        ...


class ApproverRoster:
    """Registry of approvers with workload-balanced binding.

    Thread-safety: this class is not thread-safe. The caller must
    synchronise access if used from multiple threads.
    """

    def __init__(self) -> None:
        self._approvers: dict[str, ApproverEntry] = {}

    def register(self, entry: ApproverEntry) -> None:
        """Register a new approver or replace an existing one.

        Raises ValueError if approver_id is blank.
        """
        canonical_id = entry.approver_id.strip()
        if not canonical_id:
            raise ValueError("Cannot register approver with blank ID")
        if entry.role == ApproverRole.REQUESTER:
            raise ValueError("REQUESTER steps bind to the requester, not the roster")
        entry.approver_id = canonical_id
        self._approvers[canonical_id] = entry

    def deactivate(self, approver_id: str) -> None:
        entry = self._approvers.get(approver_id.strip())
        if entry is not None:
            entry.active = False

    def get(self, approver_id: str) -> Optional[ApproverEntry]:
        return self._approvers.get(approver_id.strip())

    def all_approvers(self) -> list[ApproverEntry]:
        return list(self._approvers.values())

    def candidates(self, step: ChainStep) -> list[ApproverEntry]:
        return [
            a for a in self._approvers.values()
            if a.active
            and a.role == step.role
            and (step.enterprise is None or a.enterprise == step.enterprise)
        ]

    def resolve(
        self, step: ChainStep, priority: RequestPriority,
    ) -> Optional[ApproverEntry]:
        """Pick an approver for the step and count it against their workload."""
        pool = self.candidates(step)
        if not pool:
            logger.warning(
                "No active %s in %s",
                step.role.value,
                step.enterprise.value if step.enterprise else "any enterprise",
            )
            return None

        if step.organization_id:
            local = [a for a in pool if a.organization_id == step.organization_id]
            if local:
                pool = local
            else:
                logger.info(
                    "No %s at %s; binding %s step elsewhere in %s",
                    step.role.value, step.organization_id, priority.value,
                    step.enterprise.value if step.enterprise else "any enterprise",
                )

        chosen = min(pool, key=lambda a: (a.workload, a.approver_id))
        chosen.workload += 1
        return chosen

    def release(self, approver_id: str) -> None:
        """Decrement workload once a bound request is closed."""
        entry = self._approvers.get(approver_id)
        if entry is not None and entry.workload > 0:
            entry.workload -= 1

    @property
    def count(self) -> int:
        return len(self._approvers)
