# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Load the unit descriptors for a supervision session.

The configuration is a JSON file, located by argument or ``STEWARD_CONFIG``::

    {
      "graceful": true,
      "run_dir": "/run/steward",
      "readiness": {"interval": 0.1, "attempts": 25,
                    "liveness_interval": 0.1, "liveness_attempts": 25},
      "logs": ["/var/log/nginx/*.log"],
      "units": [
        {"name": "app",
         "command": ["gunicorn", "--pid", "$run_dir/app.pid", "app:wsgi"],
         "marker": "$run_dir/app.pid",
         "graceful_signal": "SIGTERM", "forceful_signal": "SIGINT"},
        {"name": "web",
         "command": ["nginx", "-g", "daemon off;"],
         "marker": "$run_dir/nginx.pid",
         "graceful_signal": "SIGQUIT", "forceful_signal": "SIGTERM"}
      ]
    }

``$run_dir`` (plus any key of the unit's ``vars`` mapping) is substituted into
commands and marker paths. ``STEWARD_GRACEFUL`` overrides ``graceful`` and
``STEWARD_RUN_DIR`` overrides ``run_dir``.
"""

from __future__ import annotations

import json
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

from steward.readiness import ReadinessPolicy
from steward.utils import env_flag, get_run_dir


class ConfigError(ValueError):
    """Raised when the supervision configuration is unusable."""


@dataclass
class UnitConfig:
    """Descriptor for one supervised command."""

    name: str
    command: list[str]
    marker: str | None = None
    graceful_signal: signal.Signals | None = None
    forceful_signal: signal.Signals | None = None
    start_order: int | None = None
    watch_process: bool = True
    capture_output: bool = False
    env: dict[str, str] = field(default_factory=dict)
    readiness: ReadinessPolicy | None = None

    def render_command(self, variables: dict[str, str]) -> list[str]:
        return [Template(arg).safe_substitute(variables) for arg in self.command]

    def render_marker(self, variables: dict[str, str]) -> Path | None:
        if not self.marker:
            return None
        return Path(Template(self.marker).safe_substitute(variables))


@dataclass
class StewardConfig:
    units: list[UnitConfig]
    graceful: bool = True
    logs: list[str] = field(default_factory=list)
    run_dir: Path | None = None
    readiness: ReadinessPolicy = field(default_factory=ReadinessPolicy)
    log_poll_interval: float = 0.2


def parse_signal(value: str | int | None) -> signal.Signals | None:
    """Convert ``"SIGTERM"``, ``"TERM"``, ``"term"`` or ``15`` to a signal."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid signal: {value!r}")
    if isinstance(value, int):
        try:
            return signal.Signals(value)
        except ValueError as exc:
            raise ConfigError(f"Unknown signal number: {value}") from exc
    name = str(value).strip().upper()
    if name.isdigit():
        return parse_signal(int(name))
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return signal.Signals[name]
    except KeyError as exc:
        raise ConfigError(f"Unknown signal: {value!r}") from exc


def graceful_from_env(default: bool = True) -> bool:
    """Return the graceful-shutdown preference from ``STEWARD_GRACEFUL``."""
    return env_flag("STEWARD_GRACEFUL", default)


def _parse_policy(raw: Any, base: ReadinessPolicy) -> ReadinessPolicy:
    if raw is None:
        return base
    if not isinstance(raw, dict):
        raise ConfigError("readiness must be an object")
    try:
        policy = ReadinessPolicy(
            interval=float(raw.get("interval", base.interval)),
            attempts=int(raw.get("attempts", base.attempts)),
            liveness_interval=float(
                raw.get("liveness_interval", base.liveness_interval)
            ),
            liveness_attempts=int(
                raw.get("liveness_attempts", base.liveness_attempts)
            ),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid readiness settings: {exc}") from exc
    if policy.interval <= 0 or policy.liveness_interval <= 0:
        raise ConfigError("readiness intervals must be positive")
    if policy.attempts < 1 or policy.liveness_attempts < 1:
        raise ConfigError("readiness attempts must be at least 1")
    return policy


def _parse_unit(raw: Any, index: int, policy: ReadinessPolicy) -> UnitConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"units[{index}] must be an object")
    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError(f"units[{index}] is missing a name")

    command = raw.get("command")
    if isinstance(command, str):
        command = command.split()
    if not command or not isinstance(command, list):
        raise ConfigError(f"{name}: command must be a non-empty list")

    graceful = parse_signal(raw.get("graceful_signal"))
    forceful = parse_signal(raw.get("forceful_signal"))
    if graceful is None and forceful is None:
        forceful = signal.SIGTERM

    start_order = raw.get("start_order")
    if start_order is not None and not isinstance(start_order, int):
        raise ConfigError(f"{name}: start_order must be an integer")

    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"{name}: env must be an object")

    return UnitConfig(
        name=name,
        command=[str(arg) for arg in command],
        marker=raw.get("marker"),
        graceful_signal=graceful,
        forceful_signal=forceful,
        start_order=start_order,
        watch_process=bool(raw.get("watch_process", True)),
        capture_output=bool(raw.get("capture_output", False)),
        env={str(k): str(v) for k, v in env.items()},
        readiness=_parse_policy(raw.get("readiness"), policy),
    )


def parse_config(data: Any) -> StewardConfig:
    """Validate a decoded configuration document."""
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a JSON object")

    policy = _parse_policy(data.get("readiness"), ReadinessPolicy())

    raw_units = data.get("units") or []
    if not isinstance(raw_units, list):
        raise ConfigError("units must be a list")
    units = [_parse_unit(raw, i, policy) for i, raw in enumerate(raw_units)]

    seen: set[str] = set()
    for unit in units:
        if unit.name in seen:
            raise ConfigError(f"Duplicate unit name: {unit.name}")
        seen.add(unit.name)

    logs = data.get("logs") or []
    if isinstance(logs, str):
        logs = [logs]
    if not isinstance(logs, list):
        raise ConfigError("logs must be a list of paths or glob patterns")

    if not units and not logs:
        raise ConfigError("Nothing to supervise: no units and no logs configured")

    try:
        log_poll_interval = float(data.get("log_poll_interval", 0.2))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid log_poll_interval: {exc}") from exc
    if log_poll_interval <= 0:
        raise ConfigError("log_poll_interval must be positive")

    run_dir = data.get("run_dir")
    env_run_dir = get_run_dir()
    if env_run_dir is not None:
        run_dir = env_run_dir

    return StewardConfig(
        units=units,
        graceful=graceful_from_env(bool(data.get("graceful", True))),
        logs=[str(p) for p in logs],
        run_dir=Path(run_dir) if run_dir else None,
        readiness=policy,
        log_poll_interval=log_poll_interval,
    )


def load_config(path: str | Path | None = None) -> StewardConfig:
    """Read and validate the configuration file.

    Raises
    ------
    ConfigError
        If no path is given and ``STEWARD_CONFIG`` is unset, or the file is
        missing, malformed or invalid.
    """
    if path is None:
        path = os.getenv("STEWARD_CONFIG")
    if not path:
        raise ConfigError("No configuration given (use --config or STEWARD_CONFIG)")

    config_path = Path(path)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {config_path}: {exc}") from exc

    return parse_config(data)
