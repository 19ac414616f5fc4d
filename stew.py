# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Unified CLI for steward - supervisor for app, front and log processes.

Usage:
    stew                    Show configuration status and available commands
    stew <command> [args]   Run a subcommand

Examples:
    stew start --config steward.json   Supervise the configured units
    stew logs '/var/log/nginx/*.log'   Forward log files to stderr
    stew wait /run/app.pid --pid 42    Wait for a readiness marker
"""

from __future__ import annotations

import importlib
import os
import sys
from typing import Any

import setproctitle

__version__ = "0.1.0"

# =============================================================================
# Command Registry
# =============================================================================
# Maps short command names to module paths.
# All modules must have a main() function as entry point.
# =============================================================================

COMMANDS: dict[str, str] = {
    "supervisor": "steward.supervisor",
    "logs": "steward.logmux",
    "wait": "steward.readiness",
}

# Maps alias names to (module, default_args) tuples.
ALIASES: dict[str, tuple[str, list[str]]] = {
    "start": ("steward.supervisor", []),
    "start-forceful": ("steward.supervisor", ["--no-graceful"]),
}


def get_status() -> dict[str, Any]:
    """Return current configuration status information."""
    from dotenv import load_dotenv

    load_dotenv()

    status: dict[str, Any] = {}

    config_path = os.environ.get("STEWARD_CONFIG")
    if config_path:
        status["config"] = config_path
        status["config_exists"] = os.path.isfile(config_path)
    else:
        status["config"] = "(not set)"
        status["config_exists"] = False

    status["graceful"] = os.environ.get("STEWARD_GRACEFUL", "(default: on)")
    status["run_dir"] = os.environ.get("STEWARD_RUN_DIR", "(temporary)")
    return status


def print_status() -> None:
    status = get_status()
    missing = status["config"] != "(not set)" and not status["config_exists"]
    suffix = " (missing)" if missing else ""
    print(f"STEWARD_CONFIG={status['config']}{suffix}")
    print(f"STEWARD_GRACEFUL={status['graceful']}")
    print(f"STEWARD_RUN_DIR={status['run_dir']}")
    print()


def print_help() -> None:
    print("stew - steward unified CLI\n")
    print_status()

    print("Usage: stew <command> [args...]\n")
    print("Commands:")
    for cmd, module in COMMANDS.items():
        print(f"  {cmd:16} {module}")
    print()

    if ALIASES:
        print("Aliases:")
        for alias, (module, args) in ALIASES.items():
            args_str = " ".join(args) if args else ""
            print(f"  {alias:16} → {module} {args_str}")
        print()


def resolve_command(name: str) -> tuple[str, list[str]]:
    """Resolve command name to module path and any preset args.

    Raises:
        ValueError: If command not found
    """
    if name in ALIASES:
        module, preset_args = ALIASES[name]
        return module, preset_args

    if name in COMMANDS:
        return COMMANDS[name], []

    available = sorted(set(COMMANDS.keys()) | set(ALIASES.keys()))
    raise ValueError(
        f"Unknown command: {name}\nAvailable commands: {', '.join(available)}"
    )


def run_command(module_path: str) -> int:
    """Import and run a module's main() function, returning its exit code."""
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        print(f"Error: Could not import module '{module_path}': {e}", file=sys.stderr)
        return 1

    if not hasattr(module, "main"):
        print(f"Error: Module '{module_path}' has no main() function", file=sys.stderr)
        return 1

    try:
        module.main()
        return 0
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else (1 if e.code else 0)


def main() -> None:
    if len(sys.argv) < 2:
        print_help()
        return

    cmd = sys.argv[1]

    if cmd in ("--help", "-h", "help"):
        print_help()
        return

    if cmd in ("--version", "-V"):
        print(f"stew (steward) {__version__}")
        return

    try:
        module_path, preset_args = resolve_command(cmd)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setproctitle.setproctitle(f"stew:{cmd}")

    # ["stew", "start", "--config", "x"] becomes ["stew start", "--config", "x"]
    # so argparse shows "usage: stew start ..."
    remaining_args = sys.argv[2:]
    sys.argv = [f"stew {cmd}"] + preset_args + remaining_args

    sys.exit(run_command(module_path))


if __name__ == "__main__":
    main()
