"""Logging setup for the command-line entry point.

Library modules only create module-level loggers; nothing under
claimflow configures handlers except this function, which the CLI
calls once at startup.
"""

import logging
import sys


def configure_logging(level: int = logging.INFO) -> None:
    """Attach a stderr handler to the root logger. Safe to call twice."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    root.addHandler(handler)
    root.setLevel(level)
