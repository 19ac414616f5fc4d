# SPDX-License-Identifier: AGPL-3.0-only
# Copyright (c) 2026 sol pbc

"""Forward growing log files to the diagnostic stream.

Two stages joined by a one-way channel:

    FileTailer  --LineChannel-->  transformer  -->  stderr

The tailer follows every configured file from its current end, reopening on
rotation and rewinding on truncation. A watchdog observer wakes it early when
a followed file changes. The transformer repairs one known bad line shape
(see :func:`repair_line`) and writes the result out.

Usage:
    stew logs '/var/log/nginx/*.log'     Forward until interrupted
"""

from __future__ import annotations

import argparse
import asyncio
import glob
import logging
import os
import re
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, TextIO

from watchdog.events import PatternMatchingEventHandler
from watchdog.observers import Observer

from steward.config import ConfigError
from steward.notifier import ExitNotifier
from steward.readiness import Readiness
from steward.runner import Intent, Unit, UnitState
from steward.utils import setup_cli

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.2
ELLIPSIS = "..."

_MAGIC = re.compile(r"[*?[]")
_UNESCAPED_QUOTE = re.compile(r'(?<!\\)"')


def resolve_log_paths(patterns: str | Iterable[str]) -> list[Path]:
    """Expand ``patterns`` into the list of files to follow.

    A pattern with glob characters must match at least one file. Literal
    paths are kept even if they do not exist yet; they are picked up once
    created.
    """
    if isinstance(patterns, str):
        patterns = [patterns]

    paths: list[Path] = []
    for pattern in patterns:
        expanded = os.path.expanduser(pattern)
        if _MAGIC.search(expanded):
            matches = sorted(m for m in glob.glob(expanded) if not os.path.isdir(m))
            if not matches:
                raise ConfigError(f"Log pattern {pattern!r} matched no files")
            candidates = [Path(m) for m in matches]
        else:
            candidates = [Path(expanded)]
        for path in candidates:
            if path not in paths:
                paths.append(path)

    if not paths:
        raise ConfigError("No log files to forward")
    return paths


def repair_line(line: str) -> str:
    """Fix a message that was cut off mid-capture.

    Truncated messages end in ``...`` where the closing quote should be,
    leaving the opening quote dangling::

        upstream said: "connection reset while reading...
        upstream said: connection reset while reading...

    A lone backslash left by a cut escape sequence just before the ellipsis
    is dropped as well. Other lines are returned unchanged.
    """
    if not line.endswith(ELLIPSIS):
        return line
    body = line[: -len(ELLIPSIS)]
    quotes = [m.start() for m in _UNESCAPED_QUOTE.finditer(body)]
    if len(quotes) % 2 == 0:
        return line

    last = quotes[-1]
    body = body[:last] + body[last + 1 :]
    trailing = len(body) - len(body.rstrip("\\"))
    if trailing % 2 == 1:
        body = body[:-1]
    return body + ELLIPSIS


class LineChannel:
    """One-way line channel from the tailer to the transformer.

    ``send`` after ``close`` is dropped and reported as False; ``recv``
    returns None once the channel is closed and drained.
    """

    _EOF = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, line: str) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(line)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._EOF)

    async def recv(self) -> str | None:
        item = await self._queue.get()
        if item is self._EOF:
            # Leave the marker for any other reader
            self._queue.put_nowait(self._EOF)
            return None
        return item


@dataclass
class _Followed:
    path: Path
    fh: BinaryIO | None = None
    identity: tuple[int, int] | None = None
    position: int = 0
    partial: bytes = b""


class FileTailer:
    """Follow a set of files by name, like ``tail -F``.

    Files are re-read every ``poll_interval`` seconds. With ``watch`` a
    watchdog observer on the files' directories wakes the tailer as soon as
    one of them changes; polling still covers what the observer misses.
    """

    def __init__(
        self,
        paths: Iterable[Path],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        *,
        from_start: bool = False,
        watch: bool = True,
    ) -> None:
        self.poll_interval = poll_interval
        self.watch = watch
        self._from_start = from_start
        self._files = [_Followed(Path(p)) for p in paths]

    def open_all(self) -> None:
        """Open every existing file at its current end (or start)."""
        for followed in self._files:
            if followed.fh is None:
                self._open(followed, at_end=not self._from_start)

    def _open(self, followed: _Followed, *, at_end: bool) -> None:
        try:
            fh = open(followed.path, "rb")
        except OSError:
            return
        stat = os.fstat(fh.fileno())
        if at_end:
            fh.seek(0, os.SEEK_END)
        followed.fh = fh
        followed.identity = (stat.st_dev, stat.st_ino)
        followed.position = fh.tell()
        followed.partial = b""
        logger.debug(f"Following {followed.path}")

    def _read(self, followed: _Followed) -> list[str]:
        if followed.fh is None:
            return []
        data = followed.fh.read()
        if not data:
            return []
        followed.position = followed.fh.tell()
        chunks = (followed.partial + data).split(b"\n")
        followed.partial = chunks.pop()
        return [chunk.decode("utf-8", errors="replace") for chunk in chunks]

    def _check_replaced(self, followed: _Followed) -> list[str]:
        """Handle rotation and truncation. Returns lines drained from the old file."""
        try:
            stat = os.stat(followed.path)
        except OSError:
            return []

        if followed.fh is None:
            # Appeared after we started: everything in it is new
            self._open(followed, at_end=False)
            return []

        lines: list[str] = []
        if (stat.st_dev, stat.st_ino) != followed.identity:
            lines = self._read(followed)
            if followed.partial:
                lines.append(followed.partial.decode("utf-8", errors="replace"))
            followed.fh.close()
            followed.fh = None
            logger.debug(f"{followed.path} was rotated, reopening")
            self._open(followed, at_end=False)
        elif stat.st_size < followed.position:
            logger.debug(f"{followed.path} was truncated, rewinding")
            followed.fh.seek(0)
            followed.position = 0
            followed.partial = b""
        return lines

    def poll(self) -> list[str]:
        """One pass over all files, returning completed lines."""
        lines: list[str] = []
        for followed in self._files:
            lines.extend(self._check_replaced(followed))
            lines.extend(self._read(followed))
        return lines

    def close(self) -> None:
        for followed in self._files:
            if followed.fh is not None:
                try:
                    followed.fh.close()
                except OSError:
                    pass
                followed.fh = None

    def _watch(
        self, loop: asyncio.AbstractEventLoop, wake: asyncio.Event
    ) -> Observer | None:
        handler = PatternMatchingEventHandler(
            patterns=[str(f.path.absolute()) for f in self._files],
            ignore_directories=True,
        )

        def on_any_event(event):
            loop.call_soon_threadsafe(wake.set)

        handler.on_any_event = on_any_event

        observer = Observer()
        directories = {f.path.absolute().parent for f in self._files}
        watched = [d for d in sorted(directories) if d.is_dir()]
        if not watched:
            return None
        for directory in watched:
            observer.schedule(handler, str(directory), recursive=False)
        try:
            observer.start()
        except OSError as exc:
            logger.warning(f"File watching unavailable, polling only: {exc}")
            return None
        logger.debug(f"Watching {', '.join(str(d) for d in watched)}")
        return observer

    async def _idle(self, stop: asyncio.Event, wake: asyncio.Event) -> None:
        """Sleep one poll interval, or less if stopped or a file changed."""
        waiters = [
            asyncio.ensure_future(stop.wait()),
            asyncio.ensure_future(wake.wait()),
        ]
        try:
            await asyncio.wait(
                waiters,
                timeout=self.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def run(self, channel: LineChannel, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set, then forward what is left and return."""
        self.open_all()
        wake = asyncio.Event()
        observer = None
        if self.watch:
            observer = self._watch(asyncio.get_running_loop(), wake)
        try:
            while not stop.is_set():
                wake.clear()
                for line in self.poll():
                    if not channel.send(line):
                        return
                await self._idle(stop, wake)
            for line in self.poll():
                if not channel.send(line):
                    return
        finally:
            if observer is not None:
                observer.stop()
                await asyncio.to_thread(observer.join)
            self.close()


async def transform(channel: LineChannel, output: TextIO | None = None) -> int:
    """Repair and emit lines until the channel closes. Returns lines written."""
    written = 0
    while True:
        line = await channel.recv()
        if line is None:
            break
        out = output or sys.stderr
        try:
            out.write(repair_line(line) + "\n")
            out.flush()
            written += 1
        except (BrokenPipeError, ValueError):
            logger.debug("Output stream closed, dropping forwarded line")
    return written


class LogMultiplexer(Unit):
    """Unit forwarding log files for the whole session.

    Log patterns are resolved at construction, so a pattern that matches
    nothing fails before any unit is launched. Shutdown is always forceful:
    the tailer stops, forwards what it has already read, and the channel is
    closed once the transformer has everything.
    """

    def __init__(
        self,
        patterns: str | Iterable[str],
        *,
        name: str = "logs",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        output: TextIO | None = None,
        start_order: int | None = None,
        from_start: bool = False,
        watch: bool = True,
    ) -> None:
        super().__init__(name, start_order=start_order)
        self.paths = resolve_log_paths(patterns)
        self.poll_interval = poll_interval
        self._output = output
        self._from_start = from_start
        self._watch = watch
        self._stop = asyncio.Event()
        self._channel: LineChannel | None = None
        self._tail_task: asyncio.Task | None = None
        self._transform_task: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None

    async def launch(self, notifier: ExitNotifier) -> None:
        self._begin(notifier)
        self._channel = LineChannel()
        tailer = FileTailer(
            self.paths,
            self.poll_interval,
            from_start=self._from_start,
            watch=self._watch,
        )
        # Open now so anything appended after launch is forwarded
        tailer.open_all()
        self._tail_task = asyncio.create_task(
            tailer.run(self._channel, self._stop), name=f"tail:{self.name}"
        )
        self._transform_task = asyncio.create_task(
            transform(self._channel, self._output), name=f"transform:{self.name}"
        )
        self._monitor_task = asyncio.create_task(
            self._monitor(), name=f"monitor:{self.name}"
        )
        logger.info(f"Forwarding {len(self.paths)} log file(s) as {self.name}")

    async def await_ready(self) -> Readiness:
        if not self.launched:
            raise RuntimeError(f"{self.name} has not been launched")
        if self._state >= UnitState.TERMINATING:
            return Readiness.DIED
        if self._state is UnitState.STARTING:
            self._set_state(UnitState.READY)
            logger.info(f"{self.name} is ready")
        return Readiness.READY

    def request_shutdown(self, intent: Intent) -> None:
        if not self.launched:
            logger.debug(f"{self.name} was never launched, nothing to stop")
            return
        if self._state >= UnitState.TERMINATING or self._stop.is_set():
            logger.debug(f"{self.name} already stopping, ignoring {intent.value}")
            return
        logger.info(f"Stopping {self.name}")
        self._stop.set()

    async def _monitor(self) -> None:
        assert self._tail_task and self._transform_task and self._channel
        failed = False
        try:
            await asyncio.wait(
                {self._tail_task, self._transform_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if self._stop.is_set():
                self._set_state(UnitState.TERMINATING)
            else:
                failed = True
                self._stop.set()
            await asyncio.gather(self._tail_task, return_exceptions=True)
            self._channel.close()
            await asyncio.gather(self._transform_task, return_exceptions=True)
            errors = [
                task
                for task in (self._tail_task, self._transform_task)
                if not task.cancelled() and task.exception() is not None
            ]
            for task in errors:
                logger.error(f"{task.get_name()} failed: {task.exception()}")
            if failed and not errors:
                logger.error(f"{self.name} pipeline ended unexpectedly")
            failed = failed or bool(errors)
        finally:
            self._finish(1 if failed else 0)


async def _run_standalone(patterns: list[str], poll_interval: float) -> int:
    notifier = ExitNotifier()
    mux = LogMultiplexer(patterns, poll_interval=poll_interval)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, mux.request_shutdown, Intent.FORCEFUL)

    await mux.launch(notifier)
    status = await mux.await_exit()
    return status.returncode or 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Forward growing log files to stderr",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("patterns", nargs="+", metavar="PATTERN")
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help=f"seconds between polls (default: {DEFAULT_POLL_INTERVAL})",
    )
    args = setup_cli(parser)

    try:
        exit_code = asyncio.run(_run_standalone(args.patterns, args.interval))
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(os.EX_CONFIG)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
