# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Readiness detection for freshly launched units.

Supervised servers have no native "ready" callback, so readiness is observed
from the outside. The default strategy polls for a marker file (usually the
PID file the server writes once it has finished initialising):

    wait_for_marker(path)                 READY or TIMED_OUT
    wait_for_marker_or_death(pid, path)   READY, TIMED_OUT or DIED

The second form also probes the owning process on every poll, so a server
that crashes during startup is reported as DIED straight away instead of
after the full timeout. Both bounds default to 25 polls at 100 ms and are
configured independently through :class:`ReadinessPolicy`.

Run standalone to reuse the waiter from shell bootstraps:

    stew wait /run/app.pid --pid 1234
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from steward.utils import setup_cli

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 0.1
DEFAULT_ATTEMPTS = 25


class Readiness(enum.Enum):
    READY = "ready"
    TIMED_OUT = "timed-out"
    DIED = "died"


@dataclass(frozen=True)
class ReadinessPolicy:
    """Polling bounds for marker readiness.

    ``interval``/``attempts`` bound a slow start (marker never appears while the
    process stays up). ``liveness_interval``/``liveness_attempts`` bound the
    watched variant, where the owning process is probed alongside the marker.
    """

    interval: float = DEFAULT_INTERVAL
    attempts: int = DEFAULT_ATTEMPTS
    liveness_interval: float = DEFAULT_INTERVAL
    liveness_attempts: int = DEFAULT_ATTEMPTS

    @property
    def timeout(self) -> float:
        return self.interval * self.attempts

    @property
    def liveness_timeout(self) -> float:
        return self.liveness_interval * self.liveness_attempts


def pid_alive(pid: int) -> bool:
    """Return True if a process with ``pid`` exists (signal 0 probe)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


async def wait_for_marker(
    path: str | Path,
    poll_interval: float = DEFAULT_INTERVAL,
    max_attempts: int = DEFAULT_ATTEMPTS,
) -> Readiness:
    """Poll until ``path`` exists or ``max_attempts`` polls have elapsed."""
    marker = Path(path)
    for attempt in range(max_attempts):
        if marker.exists():
            logger.debug(f"Marker {marker} present after {attempt} polls")
            return Readiness.READY
        await asyncio.sleep(poll_interval)
    if marker.exists():
        return Readiness.READY
    logger.debug(f"Marker {marker} missing after {max_attempts} polls")
    return Readiness.TIMED_OUT


async def wait_for_marker_or_death(
    pid: int,
    path: str | Path,
    poll_interval: float = DEFAULT_INTERVAL,
    max_attempts: int = DEFAULT_ATTEMPTS,
    *,
    is_alive: Callable[[], bool] | None = None,
) -> Readiness:
    """Like :func:`wait_for_marker`, but return DIED once ``pid`` is gone.

    ``is_alive`` overrides the default signal-0 probe. Owners of the process
    pass their own probe so an exited-but-unreaped child is not mistaken for
    a live one.
    """
    marker = Path(path)
    probe = is_alive if is_alive is not None else (lambda: pid_alive(pid))
    for attempt in range(max_attempts):
        if marker.exists():
            logger.debug(f"Marker {marker} present after {attempt} polls")
            return Readiness.READY
        if not probe():
            logger.debug(f"PID {pid} died before {marker} appeared")
            return Readiness.DIED
        await asyncio.sleep(poll_interval)
    if marker.exists():
        return Readiness.READY
    if not probe():
        return Readiness.DIED
    logger.debug(f"Marker {marker} missing after {max_attempts} polls")
    return Readiness.TIMED_OUT


class ReadinessSource(ABC):
    """Strategy deciding when a launched unit counts as ready."""

    marker: Path | None = None

    @abstractmethod
    async def wait(
        self, pid: int | None, is_alive: Callable[[], bool] | None = None
    ) -> Readiness:
        """Resolve once the unit with ``pid`` is ready (or never will be)."""

    def describe(self) -> str:
        return type(self).__name__


class Immediate(ReadinessSource):
    """Ready as soon as the process is launched."""

    async def wait(
        self, pid: int | None, is_alive: Callable[[], bool] | None = None
    ) -> Readiness:
        return Readiness.READY

    def describe(self) -> str:
        return "immediate"


class MarkerFile(ReadinessSource):
    """Ready once ``path`` exists on the filesystem."""

    def __init__(
        self,
        path: str | Path,
        policy: ReadinessPolicy | None = None,
        *,
        watch_process: bool = True,
    ) -> None:
        self.marker = Path(path)
        self.policy = policy or ReadinessPolicy()
        self.watch_process = watch_process

    async def wait(
        self, pid: int | None, is_alive: Callable[[], bool] | None = None
    ) -> Readiness:
        if self.watch_process and pid is not None:
            return await wait_for_marker_or_death(
                pid,
                self.marker,
                self.policy.liveness_interval,
                self.policy.liveness_attempts,
                is_alive=is_alive,
            )
        return await wait_for_marker(
            self.marker, self.policy.interval, self.policy.attempts
        )

    def describe(self) -> str:
        return f"marker {self.marker}"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Wait for a readiness marker file to appear"
    )
    parser.add_argument("path", help="marker file to wait for")
    parser.add_argument(
        "--pid", type=int, help="give up as soon as this process has exited"
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_INTERVAL,
        help=f"seconds between polls (default: {DEFAULT_INTERVAL})",
    )
    parser.add_argument(
        "--attempts",
        type=int,
        default=DEFAULT_ATTEMPTS,
        help=f"number of polls before giving up (default: {DEFAULT_ATTEMPTS})",
    )
    args = setup_cli(parser)

    if args.pid is not None:
        result = asyncio.run(
            wait_for_marker_or_death(args.pid, args.path, args.interval, args.attempts)
        )
    else:
        result = asyncio.run(wait_for_marker(args.path, args.interval, args.attempts))

    exit_codes = {Readiness.READY: 0, Readiness.TIMED_OUT: 1, Readiness.DIED: 2}
    if result is not Readiness.READY:
        print(f"{args.path}: {result.value}", file=sys.stderr)
    sys.exit(exit_codes[result])


if __name__ == "__main__":
    main()
