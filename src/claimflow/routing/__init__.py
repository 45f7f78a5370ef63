"""Routing module — approval chain construction and approver binding."""

from claimflow.routing.roster import ApproverEntry, ApproverRoster, RosterLookup
from claimflow.routing.router import ApprovalChainRouter, DEFAULT_CHAINS

__all__ = [
    "ApprovalChainRouter",
    "ApproverEntry",
    "ApproverRoster",
    "DEFAULT_CHAINS",
    "RosterLookup",
]
