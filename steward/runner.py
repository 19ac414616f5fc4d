# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Supervised units and their process lifecycle.

Every unit moves forward through

    STARTING -> READY -> RUNNING -> TERMINATING -> EXITED

exactly once. A :class:`ManagedProcess` owns one external command: it spawns
it, records the PID, and runs a monitoring task that waits for either the
process to exit on its own or a shutdown intent to arrive. An intent is turned
into the unit's graceful or forceful signal, after which the task waits for
the process to actually go away. Whatever ends the monitoring task, the unit
posts its name to the session's :class:`~steward.notifier.ExitNotifier`
exactly once.

The PID is only ever signalled from inside the unit. Other components go
through :meth:`Unit.request_shutdown`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Sequence, TextIO, Union

from steward.notifier import UNIT_EXIT, ExitNotifier, ExitReason
from steward.readiness import Immediate, Readiness, ReadinessSource
from steward.utils import format_log_line

logger = logging.getLogger(__name__)

CommandFactory = Union[Sequence[str], Callable[[], Sequence[str]]]

# Output lines longer than this are split by the stream reader
_STREAM_LIMIT = 1024 * 1024

# Seconds to keep reading output after the child exits. A grandchild holding
# the pipes open must not keep the unit from reaching EXITED.
_DRAIN_TIMEOUT = 1.0
_EXIT_POLL = 0.1


class Intent(enum.Enum):
    GRACEFUL = "graceful"
    FORCEFUL = "forceful"


class UnitState(enum.IntEnum):
    STARTING = 0
    READY = 1
    RUNNING = 2
    TERMINATING = 3
    EXITED = 4


@dataclass(frozen=True)
class ExitStatus:
    """Final status of a unit. ``returncode`` is None if nothing ran."""

    name: str
    returncode: int | None

    @property
    def signalled(self) -> bool:
        return self.returncode is not None and self.returncode < 0

    def describe(self) -> str:
        if self.returncode is None:
            return "not started"
        if self.signalled:
            try:
                return f"killed by {signal.Signals(-self.returncode).name}"
            except ValueError:
                return f"killed by signal {-self.returncode}"
        return f"exit code {self.returncode}"


def choose_signal(
    intent: Intent,
    graceful: signal.Signals | None,
    forceful: signal.Signals | None,
    graceful_preferred: bool = True,
) -> signal.Signals:
    """Pick the signal that carries out ``intent``.

    The forceful signal wins whenever the intent is forceful, graceful
    shutdown is disabled for the session, or no graceful signal exists.
    """
    if intent is Intent.GRACEFUL and graceful_preferred and graceful is not None:
        return graceful
    if forceful is not None:
        return forceful
    if graceful is not None:
        return graceful
    raise ValueError("Unit defines neither a graceful nor a forceful signal")


class Unit(ABC):
    """One supervised task with a forward-only lifecycle."""

    def __init__(self, name: str, *, start_order: int | None = None) -> None:
        if not name:
            raise ValueError("Unit name must be provided")
        self.name = name
        self.start_order = start_order
        self._state: UnitState | None = None
        self._notifier: ExitNotifier | None = None
        self._exit_status: ExitStatus | None = None
        self._exited = asyncio.Event()

    def __repr__(self) -> str:
        state = self._state.name if self._state is not None else "PENDING"
        return f"<{type(self).__name__} {self.name} {state}>"

    @property
    def state(self) -> UnitState | None:
        """Current state, or None before launch."""
        return self._state

    @property
    def launched(self) -> bool:
        return self._state is not None

    @property
    def exit_status(self) -> ExitStatus | None:
        return self._exit_status

    def _set_state(self, state: UnitState) -> None:
        if self._state is not None and state < self._state:
            raise RuntimeError(
                f"{self.name}: cannot move from {self._state.name} to {state.name}"
            )
        self._state = state

    def _begin(self, notifier: ExitNotifier) -> None:
        if self.launched:
            raise RuntimeError(f"{self.name} already launched")
        self._notifier = notifier
        self._set_state(UnitState.STARTING)

    def _finish(self, returncode: int | None) -> None:
        """Mark the unit exited and post to the notifier (first call only)."""
        if self._state is UnitState.EXITED:
            return
        self._state = UnitState.EXITED
        self._exit_status = ExitStatus(self.name, returncode)
        logger.info(f"{self.name} stopped ({self._exit_status.describe()})")
        if self._notifier is not None:
            self._notifier.post(
                ExitReason(name=self.name, kind=UNIT_EXIT, returncode=returncode)
            )
        self._exited.set()

    def mark_running(self) -> None:
        if self._state is UnitState.READY:
            self._set_state(UnitState.RUNNING)

    @abstractmethod
    async def launch(self, notifier: ExitNotifier) -> None:
        """Start the unit and its monitoring task."""

    @abstractmethod
    async def await_ready(self) -> Readiness:
        """Resolve once the unit is ready, timed out, or dead."""

    @abstractmethod
    def request_shutdown(self, intent: Intent) -> None:
        """Ask the unit to stop. No-op once terminating or exited."""

    async def await_exit(self) -> ExitStatus:
        """Wait for the unit to reach EXITED (returns at once if never launched)."""
        if not self.launched:
            return ExitStatus(self.name, None)
        await self._exited.wait()
        assert self._exit_status is not None
        return self._exit_status


class ManagedProcess(Unit):
    """One external command under supervision.

    ``command`` is either an argv sequence or a zero-argument callable
    returning one; the unit treats it as opaque. ``graceful_signal`` and
    ``forceful_signal`` may be given individually, in which case the one
    provided serves both purposes; with neither, SIGTERM is used.

    With ``capture_output`` the child's stdout/stderr are re-emitted line by
    line to ``output`` (stderr by default) as::

        2024-11-01T10:30:45 [name:stdout] line

    Otherwise the child inherits the supervisor's streams.
    """

    def __init__(
        self,
        name: str,
        command: CommandFactory,
        *,
        readiness: ReadinessSource | None = None,
        graceful_signal: signal.Signals | None = None,
        forceful_signal: signal.Signals | None = None,
        graceful_preferred: bool = True,
        capture_output: bool = False,
        env: dict[str, str] | None = None,
        start_order: int | None = None,
        output: TextIO | None = None,
    ) -> None:
        super().__init__(name, start_order=start_order)
        if graceful_signal is None and forceful_signal is None:
            forceful_signal = signal.SIGTERM
        self.command = command
        self.readiness = readiness or Immediate()
        self.graceful_signal = graceful_signal or forceful_signal
        self.forceful_signal = forceful_signal or graceful_signal
        self.graceful_preferred = graceful_preferred
        self.capture_output = capture_output
        self.env = env
        self.pid: int | None = None
        self._output = output
        self._process: asyncio.subprocess.Process | None = None
        self._intent: asyncio.Future[Intent] | None = None
        self._monitor_task: asyncio.Task | None = None
        self._stream_tasks: list[asyncio.Task] = []

    def build_argv(self) -> list[str]:
        argv = list(self.command() if callable(self.command) else self.command)
        if not argv:
            raise ValueError(f"{self.name}: command is empty")
        return [str(arg) for arg in argv]

    async def launch(self, notifier: ExitNotifier) -> None:
        argv = self.build_argv()
        self._begin(notifier)
        env = {**os.environ, **self.env} if self.env else None
        pipe = asyncio.subprocess.PIPE if self.capture_output else None

        logger.info(f"Starting {self.name}: {' '.join(argv)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=pipe,
                stderr=pipe,
                env=env,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            self._finish(None)
            raise RuntimeError(f"Failed to spawn {self.name}: {exc}") from exc

        self.pid = self._process.pid
        logger.info(f"Started {self.name} with PID {self.pid}")

        self._intent = asyncio.get_running_loop().create_future()
        if self.capture_output:
            self._stream_tasks = [
                asyncio.create_task(self._pump(self._process.stdout, "stdout")),
                asyncio.create_task(self._pump(self._process.stderr, "stderr")),
            ]
        self._monitor_task = asyncio.create_task(
            self._monitor(), name=f"monitor:{self.name}"
        )

    def is_running(self) -> bool:
        """True while the child process has not been reaped."""
        return self._process is not None and self._process.returncode is None

    async def await_ready(self) -> Readiness:
        if not self.launched:
            raise RuntimeError(f"{self.name} has not been launched")
        if self._state >= UnitState.TERMINATING:
            return Readiness.DIED

        result = await self.readiness.wait(self.pid, is_alive=self.is_running)
        if result is Readiness.READY and self._state is UnitState.STARTING:
            self._set_state(UnitState.READY)
            logger.info(f"{self.name} is ready")
        return result

    def request_shutdown(self, intent: Intent) -> None:
        if not self.launched or self._intent is None:
            logger.debug(f"{self.name} was never launched, nothing to stop")
            return
        if self._state >= UnitState.TERMINATING or self._intent.done():
            logger.debug(f"{self.name} already stopping, ignoring {intent.value}")
            return
        self._intent.set_result(intent)

    async def _monitor(self) -> None:
        assert self._process is not None and self._intent is not None
        wait_task = asyncio.ensure_future(self._wait_exit())
        try:
            done, _ = await asyncio.wait(
                {wait_task, self._intent}, return_when=asyncio.FIRST_COMPLETED
            )
            if wait_task not in done:
                self._set_state(UnitState.TERMINATING)
                self._deliver(self._intent.result())
            await wait_task
            await self._drain_streams()
        finally:
            if not wait_task.done():
                wait_task.cancel()
            self.pid = None
            self._finish(self._process.returncode)

    async def _wait_exit(self) -> int:
        """Wait for the child itself to be reaped, not for its pipes to close."""
        assert self._process is not None
        waiter = asyncio.ensure_future(self._process.wait())
        try:
            while self._process.returncode is None:
                await asyncio.wait({waiter}, timeout=_EXIT_POLL)
        finally:
            waiter.cancel()
        return self._process.returncode

    async def _drain_streams(self) -> None:
        if not self._stream_tasks:
            return
        _, pending = await asyncio.wait(self._stream_tasks, timeout=_DRAIN_TIMEOUT)
        if pending:
            logger.debug(
                f"{self.name} output still open after exit, "
                f"abandoning {len(pending)} stream(s)"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _deliver(self, intent: Intent) -> None:
        assert self._process is not None
        sig = choose_signal(
            intent, self.graceful_signal, self.forceful_signal, self.graceful_preferred
        )
        logger.info(f"Stopping {self.name} (PID {self.pid}) with {sig.name}")
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            logger.debug(f"{self.name} exited before {sig.name} was delivered")

    async def _pump(self, reader: asyncio.StreamReader | None, stream: str) -> None:
        if reader is None:
            return
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                # Line longer than the reader limit; take what is buffered
                line = await reader.read(_STREAM_LIMIT)
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            out = self._output or sys.stderr
            try:
                out.write(format_log_line(self.name, stream, text))
                out.flush()
            except (BrokenPipeError, ValueError):
                logger.debug(f"Output closed, discarding {self.name}:{stream} line")
