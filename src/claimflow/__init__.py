"""claimflow — cross-enterprise work-request orchestration core."""

__version__ = "0.1.0"
