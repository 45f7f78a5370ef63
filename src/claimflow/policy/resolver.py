"""Policy resolver — loads workflow_policy.json and exposes every runtime
threshold as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from claimflow.models.request import RequestKind, RequestPriority
from claimflow.models.verification import VerificationType


@dataclass(frozen=True)
class TrustThresholds:
    """Resolved trust-score breakpoints."""
    flag_threshold: int
    low_trust: int
    verification: int
    high_value_claim: int
    skip_verification: int
    trend_positive_ratio: float
    trend_negative_ratio: float


class PolicyResolver:
    """Loads and resolves all workflow policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        window = resolver.sla_hours(RequestKind.ITEM_CLAIM, RequestPriority.HIGH)
        thresholds = resolver.trust_thresholds()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate_version()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / "workflow_policy.json"))

    def _validate_version(self) -> None:
        if "version" not in self._policy:
            raise ValueError("workflow_policy.json missing version")

    @property
    def version(self) -> str:
        return self._policy["version"]

    # ------------------------------------------------------------------
    # SLA windows
    # ------------------------------------------------------------------

    def sla_hours(self, kind: RequestKind, priority: RequestPriority) -> int:
        """Target resolution window in hours for a (kind, priority) pair."""
        sla = self._policy["sla_hours"]
        override = sla["kind_overrides"].get(kind.value, {})
        if priority.value in override:
            return override[priority.value]
        hours = sla["default"].get(priority.value)
        if hours is None:
            raise ValueError(f"No SLA window for priority: {priority.value}")
        return hours

    def approaching_breach_fraction(self) -> float:
        """Fraction of the window below which a request is near breach."""
        return self._policy["sla_hours"]["approaching_breach_fraction"]

    # ------------------------------------------------------------------
    # Trust ledger
    # ------------------------------------------------------------------

    def initial_trust_score(self) -> int:
        return self._policy["trust"]["initial_score"]

    def recent_events_capacity(self) -> int:
        return self._policy["trust"]["recent_events_capacity"]

    def trust_thresholds(self) -> TrustThresholds:
        """Return every trust breakpoint used by the ledger predicates."""
        t = self._policy["trust"]
        return TrustThresholds(
            flag_threshold=t["flag_threshold"],
            low_trust=t["low_trust_threshold"],
            verification=t["verification_threshold"],
            high_value_claim=t["high_value_claim_threshold"],
            skip_verification=t["skip_verification_threshold"],
            trend_positive_ratio=t["trend_positive_ratio"],
            trend_negative_ratio=t["trend_negative_ratio"],
        )

    # ------------------------------------------------------------------
    # Item value thresholds
    # ------------------------------------------------------------------

    def high_value_threshold(self) -> float:
        """Items valued above this are high-value."""
        return self._policy["claims"]["high_value_threshold"]

    def urgent_value_threshold(self) -> float:
        """High-value claims above this are routed URGENT."""
        return self._policy["claims"]["urgent_value_threshold"]

    def very_high_value_threshold(self) -> float:
        """Items at or above this need serial and stolen-property checks."""
        return self._policy["claims"]["very_high_value_threshold"]

    # ------------------------------------------------------------------
    # Dispute resolution
    # ------------------------------------------------------------------

    def dispute_config(self) -> dict[str, int]:
        """Return dispute quorum and escalation settings.

        Keys:
        - default_votes_required: quorum when the creator gives none
        - min_claimants: a dispute needs at least this many claimants
        - escalation_claimant_count: at this many claimants the dispute
          becomes URGENT and police are involved
        """
        d = self._policy["dispute"]
        return {
            "default_votes_required": d["default_votes_required"],
            "min_claimants": d["min_claimants"],
            "escalation_claimant_count": d["escalation_claimant_count"],
        }

    # ------------------------------------------------------------------
    # Verification workflow
    # ------------------------------------------------------------------

    def verification_expiry_hours(self, vtype: VerificationType) -> int:
        hours = self._policy["verification"]["expiry_hours"].get(vtype.value)
        if hours is None:
            raise ValueError(f"No expiry configured for: {vtype.value}")
        return hours

    def verification_priority(self, vtype: VerificationType) -> RequestPriority:
        raw = self._policy["verification"]["priority"].get(vtype.value)
        if raw is None:
            raise ValueError(f"No priority configured for: {vtype.value}")
        return RequestPriority(raw)

    def police_required_types(self) -> set[VerificationType]:
        """Verification types that only police may complete."""
        return {
            VerificationType(v)
            for v in self._policy["verification"]["police_required"]
        }

    def multi_party_required_approvals(self) -> int:
        return self._policy["verification"]["multi_party_required_approvals"]


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
