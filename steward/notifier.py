# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Single-slot exit notification shared by every unit of a session."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UNIT_EXIT = "unit-exit"
SIGNAL = "signal"
NOT_READY = "not-ready"


@dataclass(frozen=True)
class ExitReason:
    """Why a session is shutting down."""

    name: str
    kind: str = UNIT_EXIT
    signum: int | None = None
    returncode: int | None = None

    @classmethod
    def from_signal(cls, signum: int) -> "ExitReason":
        return cls(name=signal.Signals(signum).name, kind=SIGNAL, signum=signum)

    @property
    def external(self) -> bool:
        return self.kind == SIGNAL

    def describe(self) -> str:
        if self.kind == SIGNAL:
            return f"received {self.name}"
        if self.kind == NOT_READY:
            return f"{self.name} did not become ready"
        if self.returncode is None:
            return f"{self.name} exited"
        return f"{self.name} exited with code {self.returncode}"


class ExitNotifier:
    """First post wins; everything after it is dropped.

    Units post when their monitoring task ends and signal handlers post on
    external termination requests. The supervisor performs exactly one
    :meth:`receive` per session. All posts happen on the event loop thread.
    """

    def __init__(self) -> None:
        self._reason: ExitReason | None = None
        self._received = False
        self.posted = asyncio.Event()

    def post(self, reason: ExitReason) -> bool:
        """Record ``reason`` if the slot is empty. Returns True if it won."""
        if self._reason is not None:
            logger.debug(f"Dropping exit post ({reason.describe()})")
            return False
        self._reason = reason
        self.posted.set()
        return True

    def is_set(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> ExitReason | None:
        return self._reason

    async def receive(self) -> ExitReason:
        """Block until the slot is filled and return its reason (once)."""
        if self._received:
            raise RuntimeError("ExitNotifier already received")
        self._received = True
        await self.posted.wait()
        assert self._reason is not None
        return self._reason
