# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def env_flag(name: str, default: bool) -> bool:
    """Return the boolean value of environment variable ``name``.

    Unset or empty variables yield ``default``. Unrecognised values are
    treated as ``default`` as well, with a warning.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    logging.warning(f"Ignoring unrecognised value {raw!r} for {name}")
    return default


def get_run_dir() -> Path | None:
    """Return ``STEWARD_RUN_DIR`` if set, else ``None``."""
    run_dir = os.getenv("STEWARD_RUN_DIR")
    return Path(run_dir) if run_dir else None


def format_log_line(prefix: str, stream: str, line: str) -> str:
    """Format a captured output line with ISO timestamp and labels.

    Args:
        prefix: Unit name (e.g., "app" or "web")
        stream: "stdout" or "stderr"
        line: Output line from the process

    Returns:
        Formatted line: "2024-11-01T10:30:45 [prefix:stream] line\\n"
    """
    timestamp = datetime.now().isoformat(timespec="seconds")
    clean_line = line.rstrip("\n")
    return f"{timestamp} [{prefix}:{stream}] {clean_line}\n"


def configure_logging(level: int) -> None:
    """Send log records to stderr, the supervisor's diagnostic stream."""
    root = logging.getLogger()
    root.handlers = []
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


def setup_cli(
    parser: argparse.ArgumentParser,
    *,
    default_level: int = logging.WARNING,
    argv: list[str] | None = None,
) -> argparse.Namespace:
    """Parse command line arguments and configure logging.

    The parser will be extended with ``-v``/``--verbose`` and ``-d``/``--debug``
    flags. Environment variables from ``.env`` are loaded before parsing so
    ``STEWARD_*`` settings can live alongside the deployment.
    """

    load_dotenv()
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug logging"
    )
    args = parser.parse_args(argv)

    if args.debug:
        log_level = logging.DEBUG
    elif args.verbose:
        log_level = min(logging.INFO, default_level)
    else:
        log_level = default_level

    configure_logging(log_level)
    return args
