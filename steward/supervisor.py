# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass

from steward.config import ConfigError, StewardConfig, load_config
from steward.logmux import LogMultiplexer
from steward.notifier import NOT_READY, ExitNotifier, ExitReason
from steward.readiness import Immediate, MarkerFile, Readiness
from steward.runner import Intent, ManagedProcess, Unit
from steward.session import SessionState, SupervisionSession
from steward.utils import setup_cli

# sysexits.h: internal software error / configuration error
EX_UNEXPECTED = getattr(os, "EX_SOFTWARE", 70)
EX_CONFIG = getattr(os, "EX_CONFIG", 78)


@dataclass(frozen=True)
class SessionOutcome:
    """How a session ended.

    ``signum`` is set when an external signal drove the shutdown; the caller
    should re-raise it (see :func:`reraise`) so the exit status reads as a
    signal death rather than an ordinary exit code.
    """

    exit_code: int
    reason: ExitReason | None
    signum: int | None = None


class Supervisor:
    """Launch a session's units in order and tear them down in reverse.

    External signals are translated into shutdown intents and posted to the
    session's exit notifier like any unit exit, so one receive on the
    notifier covers every way a session can end.
    """

    def __init__(
        self, session: SupervisionSession, *, interactive: bool | None = None
    ) -> None:
        self.session = session
        if interactive is None:
            interactive = sys.stdin is not None and sys.stdin.isatty()
        self.interactive = interactive
        self.launched: list[Unit] = []
        self._signals: list[int] = []

    @property
    def notifier(self) -> ExitNotifier:
        return self.session.notifier

    def _on_signal(self, signum: int) -> None:
        reason = ExitReason.from_signal(signum)
        if self.notifier.post(reason):
            logging.info(f"Received {reason.name}, shutting down...")
        else:
            logging.info(f"Received {reason.name}, shutdown already in progress")

    def _on_ignored_signal(self, signum: int) -> None:
        logging.info(
            f"Ignoring {signal.Signals(signum).name}: not attached to a terminal"
        )

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGTERM, self._on_signal, signal.SIGTERM)
        self._signals.append(signal.SIGTERM)
        # An interrupt only counts from an interactive terminal; otherwise the
        # parent is expected to send SIGTERM. A handler rather than SIG_IGN,
        # since an ignored disposition would be inherited by the children.
        if self.interactive:
            loop.add_signal_handler(signal.SIGINT, self._on_signal, signal.SIGINT)
        else:
            loop.add_signal_handler(
                signal.SIGINT, self._on_ignored_signal, signal.SIGINT
            )
        self._signals.append(signal.SIGINT)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in self._signals:
            loop.remove_signal_handler(signum)
        self._signals = []

    def _clear_stale_marker(self, unit: Unit) -> None:
        marker = getattr(getattr(unit, "readiness", None), "marker", None)
        if marker is not None and marker.exists():
            logging.warning(
                f"Removing stale marker {marker} before starting {unit.name}"
            )
            marker.unlink(missing_ok=True)

    async def _await_ready(self, unit: Unit) -> Readiness | None:
        """Wait for ``unit`` to become ready unless the notifier fires first."""
        ready = asyncio.ensure_future(unit.await_ready())
        posted = asyncio.ensure_future(self.notifier.posted.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, posted}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (ready, posted):
                if not task.done():
                    task.cancel()
        if ready in done:
            return ready.result()
        return None

    async def launch_all(self) -> bool:
        """Start units in order, each gated on its predecessor's readiness.

        Returns True if every unit is up. On False, the notifier holds the
        reason the sequence stopped.
        """
        for unit in self.session.units:
            if self.notifier.is_set():
                logging.info(f"Not starting {unit.name}")
                return False

            self._clear_stale_marker(unit)
            try:
                await unit.launch(self.notifier)
            except (RuntimeError, ValueError) as exc:
                logging.error(str(exc))
                self.notifier.post(ExitReason(name=unit.name, kind=NOT_READY))
                return False
            self.launched.append(unit)

            result = await self._await_ready(unit)
            if result is None:
                return False
            if result is not Readiness.READY:
                logging.error(f"{unit.name} did not become ready ({result.value})")
                self.notifier.post(ExitReason(name=unit.name, kind=NOT_READY))
                return False
        return True

    async def shutdown(self, intent: Intent) -> None:
        """Stop launched units in reverse start order, one at a time."""
        for unit in reversed(self.launched):
            unit.request_shutdown(intent)
            await unit.await_exit()

    async def run(self) -> SessionOutcome:
        session = self.session
        session.freeze()
        if not session.units:
            logging.warning("No units configured, nothing to supervise")
            session.cleanup()
            session.transition(SessionState.DONE)
            return SessionOutcome(0, None)

        self.install_signal_handlers()
        try:
            if await self.launch_all():
                session.transition(SessionState.RUNNING)
                for unit in self.launched:
                    unit.mark_running()
                logging.info(f"All {len(self.launched)} units running")

            reason = await self.notifier.receive()
            session.transition(SessionState.SHUTTING_DOWN)
            intent = session.intent()
            logging.info(f"Shutting down ({intent.value}): {reason.describe()}")
            await self.shutdown(intent)
        except Exception:
            logging.exception("Supervisor failed, stopping all units")
            session.transition(SessionState.SHUTTING_DOWN)
            await self.shutdown(Intent.FORCEFUL)
            raise
        finally:
            self.remove_signal_handlers()
            session.cleanup()
            session.transition(SessionState.DONE)

        if reason.external:
            outcome = SessionOutcome(128 + reason.signum, reason, reason.signum)
        else:
            outcome = SessionOutcome(EX_UNEXPECTED, reason)
        logging.info(f"Supervisor shutdown complete (exit code {outcome.exit_code})")
        return outcome


def reraise(signum: int) -> None:
    """Terminate this process with ``signum`` so the parent sees 128+signum."""
    sys.stdout.flush()
    sys.stderr.flush()
    signal.signal(signum, signal.SIG_DFL)
    os.kill(os.getpid(), signum)
    # Only reached if the default action did not terminate us
    sys.exit(128 + signum)


def build_session(config: StewardConfig) -> SupervisionSession:
    """Turn a loaded configuration into a session.

    The log multiplexer (when logs are configured) starts first and stops
    last. Log patterns are resolved here, so an unmatched pattern raises
    :class:`ConfigError` before anything is created.
    """
    logs = None
    if config.logs:
        logs = LogMultiplexer(config.logs, poll_interval=config.log_poll_interval)

    session = SupervisionSession(
        graceful_preferred=config.graceful, run_dir=config.run_dir
    )
    variables = {"run_dir": str(session.run_dir)}

    if logs is not None:
        session.register(logs)

    for unit_config in config.units:
        marker = unit_config.render_marker(variables)
        if marker is not None:
            session.track_temp(marker)
            readiness = MarkerFile(
                marker,
                unit_config.readiness or config.readiness,
                watch_process=unit_config.watch_process,
            )
        else:
            readiness = Immediate()
        session.register(
            ManagedProcess(
                unit_config.name,
                unit_config.render_command(variables),
                readiness=readiness,
                graceful_signal=unit_config.graceful_signal,
                forceful_signal=unit_config.forceful_signal,
                graceful_preferred=config.graceful,
                capture_output=unit_config.capture_output,
                env=unit_config.env or None,
                start_order=unit_config.start_order,
            )
        )
    return session


def parse_args() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Supervise the app server, front server and log forwarder"
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="JSON unit configuration (default: $STEWARD_CONFIG)",
    )
    parser.add_argument(
        "--no-graceful",
        action="store_true",
        help="Always stop units with their forceful signal",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = parse_args()
    args = setup_cli(parser, default_level=logging.INFO, argv=argv)

    try:
        config = load_config(args.config)
        if args.no_graceful:
            config.graceful = False
        session = build_session(config)
    except ConfigError as exc:
        logging.error(f"Configuration error: {exc}")
        sys.exit(EX_CONFIG)

    logging.info(
        f"Supervisor starting {len(session.units)} units "
        f"({'graceful' if session.graceful_preferred else 'forceful'} shutdown)"
    )
    outcome = asyncio.run(Supervisor(session).run())

    if outcome.signum is not None:
        reraise(outcome.signum)
    sys.exit(outcome.exit_code)


if __name__ == "__main__":
    main()
