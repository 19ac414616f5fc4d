# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Per-invocation registry of units and temporary resources."""

from __future__ import annotations

import enum
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Iterable

from steward.notifier import ExitNotifier
from steward.runner import Intent, Unit

logger = logging.getLogger(__name__)


class SessionState(enum.IntEnum):
    LAUNCHING = 0
    RUNNING = 1
    SHUTTING_DOWN = 2
    DONE = 3


class SupervisionSession:
    """One supervised run, from first launch to final cleanup.

    ``units`` is ordered by ``start_order``; units without one keep their
    registration position. The order is fixed once launching starts.
    """

    def __init__(
        self,
        units: Iterable[Unit] = (),
        *,
        graceful_preferred: bool = True,
        notifier: ExitNotifier | None = None,
        run_dir: Path | None = None,
    ) -> None:
        self.graceful_preferred = graceful_preferred
        self.notifier = notifier or ExitNotifier()
        self.state = SessionState.LAUNCHING
        self._units: list[Unit] = []
        self._temp_paths: list[Path] = []
        self._owns_run_dir = run_dir is None
        self._run_dir = run_dir
        self._frozen = False
        for unit in units:
            self.register(unit)

    @property
    def units(self) -> tuple[Unit, ...]:
        return tuple(self._units)

    @property
    def run_dir(self) -> Path:
        """Directory for supervisor-created markers, made on first use."""
        if self._run_dir is None:
            self._run_dir = Path(tempfile.mkdtemp(prefix="steward-"))
            logger.debug(f"Created run directory {self._run_dir}")
        return self._run_dir

    def register(self, unit: Unit) -> Unit:
        if self._frozen:
            raise RuntimeError("Units cannot be registered after launch has begun")
        if any(existing.name == unit.name for existing in self._units):
            raise ValueError(f"Duplicate unit name: {unit.name}")
        if unit.start_order is None:
            unit.start_order = len(self._units)
        self._units.append(unit)
        # Stable sort keeps registration order between equal start orders
        self._units.sort(key=lambda u: u.start_order)
        return unit

    def freeze(self) -> None:
        self._frozen = True

    def transition(self, state: SessionState) -> None:
        if state < self.state:
            raise RuntimeError(
                f"Session cannot move from {self.state.name} to {state.name}"
            )
        if state != self.state:
            logger.debug(f"Session {self.state.name} -> {state.name}")
            self.state = state

    def intent(self) -> Intent:
        return Intent.GRACEFUL if self.graceful_preferred else Intent.FORCEFUL

    def track_temp(self, path: Path) -> Path:
        """Register a supervisor-created file for removal at cleanup."""
        self._temp_paths.append(Path(path))
        return path

    def cleanup(self) -> None:
        """Remove temporaries, tolerating ones that are already gone."""
        for path in self._temp_paths:
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path, ignore_errors=True)
                else:
                    path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning(f"Could not remove {path}: {exc}")
        self._temp_paths.clear()

        if self._owns_run_dir and self._run_dir is not None:
            shutil.rmtree(self._run_dir, ignore_errors=True)
            logger.debug(f"Removed run directory {self._run_dir}")
            self._run_dir = None
