"""
Command-line interface for claimflow operators.

Provides subcommands for the periodic sweep (verification expiry plus
the SLA report), listing overdue requests, and a status summary of a
JSON-backed data directory.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from claimflow.logging_config import configure_logging
from claimflow.persistence.event_log import EventLog
from claimflow.persistence.repository import RepositorySet
from claimflow.policy.resolver import PolicyResolver
from claimflow.service import WorkflowService


def _open_service(args: argparse.Namespace) -> WorkflowService:
    data_dir = Path(args.data_dir)
    return WorkflowService(
        PolicyResolver.from_config_dir(Path(args.config_dir)),
        repositories=RepositorySet.json_dir(data_dir),
        event_log=EventLog(data_dir / "audit.jsonl"),
    )


def _print_requests(service: WorkflowService, requests: list, now: datetime) -> None:
    for r in requests:
        hours = service.hours_until_sla(r.request_id, now)
        print(
            f"  {r.request_id} [{r.priority.value}] {r.kind.value} "
            f"{r.status.value} ({hours:+d}h)"
        )


def cmd_sweep(args: argparse.Namespace) -> int:
    """Expire overdue verifications and report SLA breaches."""
    try:
        service = _open_service(args)
        now = datetime.now(timezone.utc)
        result = service.expire_verifications(now)
        expired = result.data.get("expired", [])
        print(f"Expired {len(expired)} verification request(s)")
        if args.verbose:
            for vid in expired:
                print(f"  {vid}")
        for error in result.errors:
            print(f"Error: {error}", file=sys.stderr)

        overdue = service.overdue_requests(now)
        approaching = service.approaching_breach(now)
        print(f"Overdue: {len(overdue)}, approaching breach: {len(approaching)}")
        if args.verbose:
            _print_requests(service, overdue + approaching, now)

        return 0 if result.success else 1

    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_overdue(args: argparse.Namespace) -> int:
    """List requests past their SLA deadline."""
    try:
        service = _open_service(args)
        now = datetime.now(timezone.utc)
        overdue = service.overdue_requests(now)
        if args.approaching:
            overdue = overdue + service.approaching_breach(now)

        if not overdue:
            print("No overdue requests")
            return 0

        print(f"{len(overdue)} request(s):")
        _print_requests(service, overdue, now)
        return 0

    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    """Show a status summary."""
    try:
        service = _open_service(args)
        print(json.dumps(service.status(), indent=2, sort_keys=True))
        return 0

    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="claimflow",
        description="Cross-enterprise work-request orchestration"
    )

    # Global options
    parser.add_argument(
        "--config-dir",
        default="config",
        help="Directory holding workflow_policy.json"
    )
    parser.add_argument(
        "--data-dir",
        default="data",
        help="Directory of the JSON repositories and audit log"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    sweep_parser = subparsers.add_parser(
        "sweep", help="Expire verifications and report SLA breaches",
    )
    sweep_parser.set_defaults(func=cmd_sweep)

    overdue_parser = subparsers.add_parser("overdue", help="List overdue requests")
    overdue_parser.add_argument("--approaching", action="store_true",
                                help="Include requests approaching breach")
    overdue_parser.set_defaults(func=cmd_overdue)

    status_parser = subparsers.add_parser("status", help="Show status summary")
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
