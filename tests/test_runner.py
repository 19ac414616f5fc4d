"""Tests for steward.runner process units."""

import asyncio
import io
import os
import signal
import sys

import pytest

from steward.notifier import UNIT_EXIT, ExitNotifier
from steward.readiness import MarkerFile, Readiness, ReadinessPolicy
from steward.runner import (
    ExitStatus,
    Intent,
    ManagedProcess,
    UnitState,
    choose_signal,
)
from tests.conftest import read_record, wait_until

POLICY = ReadinessPolicy(
    interval=0.05, attempts=200, liveness_interval=0.05, liveness_attempts=200
)


def _stub_unit(stub_command, tmp_path, name="app", **kwargs):
    marker = tmp_path / f"{name}.pid"
    record = tmp_path / "signals.log"
    options = kwargs.pop("options", {})
    unit = ManagedProcess(
        name,
        stub_command(name, record=record, marker=marker, **options),
        readiness=MarkerFile(marker, POLICY),
        graceful_signal=kwargs.pop("graceful_signal", signal.SIGUSR1),
        forceful_signal=kwargs.pop("forceful_signal", signal.SIGUSR2),
        **kwargs,
    )
    return unit, record


async def _start(unit):
    notifier = ExitNotifier()
    await unit.launch(notifier)
    assert await unit.await_ready() is Readiness.READY
    return notifier


@pytest.mark.parametrize(
    "intent,preferred,expected",
    [
        (Intent.GRACEFUL, True, signal.SIGQUIT),
        (Intent.GRACEFUL, False, signal.SIGTERM),
        (Intent.FORCEFUL, True, signal.SIGTERM),
        (Intent.FORCEFUL, False, signal.SIGTERM),
    ],
)
def test_choose_signal(intent, preferred, expected):
    assert choose_signal(intent, signal.SIGQUIT, signal.SIGTERM, preferred) == expected


def test_choose_signal_falls_back():
    assert choose_signal(Intent.GRACEFUL, None, signal.SIGINT) == signal.SIGINT
    assert choose_signal(Intent.FORCEFUL, signal.SIGQUIT, None) == signal.SIGQUIT
    with pytest.raises(ValueError):
        choose_signal(Intent.FORCEFUL, None, None)


def test_exit_status_describe():
    assert ExitStatus("app", None).describe() == "not started"
    assert ExitStatus("app", 0).describe() == "exit code 0"
    assert ExitStatus("app", -9).describe() == "killed by SIGKILL"
    assert ExitStatus("app", -9).signalled
    assert not ExitStatus("app", 1).signalled


def test_single_signal_serves_both_roles():
    unit = ManagedProcess("web", ["true"], graceful_signal=signal.SIGQUIT)
    assert unit.graceful_signal == signal.SIGQUIT
    assert unit.forceful_signal == signal.SIGQUIT

    unit = ManagedProcess("worker", ["true"], forceful_signal=signal.SIGKILL)
    assert unit.graceful_signal == signal.SIGKILL
    assert unit.forceful_signal == signal.SIGKILL


def test_signals_default_to_sigterm():
    unit = ManagedProcess("app", ["true"])
    assert unit.graceful_signal == signal.SIGTERM
    assert unit.forceful_signal == signal.SIGTERM

    unit = ManagedProcess("app", ["true"], graceful_signal=None, forceful_signal=None)
    assert unit.forceful_signal == signal.SIGTERM


def test_command_factory_is_called():
    unit = ManagedProcess("app", lambda: ["echo", 1])
    assert unit.build_argv() == ["echo", "1"]


@pytest.mark.asyncio
async def test_empty_command_is_rejected_before_launch():
    unit = ManagedProcess("app", [])
    with pytest.raises(ValueError):
        await unit.launch(ExitNotifier())
    assert not unit.launched
    status = await asyncio.wait_for(unit.await_exit(), timeout=1)
    assert status.returncode is None


@pytest.mark.asyncio
async def test_spawn_failure(tmp_path):
    notifier = ExitNotifier()
    unit = ManagedProcess("app", [str(tmp_path / "missing-binary")])
    with pytest.raises(RuntimeError, match="Failed to spawn app"):
        await unit.launch(notifier)

    assert unit.state is UnitState.EXITED
    assert unit.exit_status.returncode is None
    assert notifier.reason.name == "app"


@pytest.mark.asyncio
async def test_launch_twice_rejected(stub_command, tmp_path):
    unit, _ = _stub_unit(stub_command, tmp_path)
    notifier = await _start(unit)
    try:
        with pytest.raises(RuntimeError):
            await unit.launch(notifier)
    finally:
        unit.request_shutdown(Intent.FORCEFUL)
        await unit.await_exit()


@pytest.mark.asyncio
async def test_lifecycle_and_graceful_stop(stub_command, tmp_path):
    unit, record = _stub_unit(stub_command, tmp_path)
    notifier = ExitNotifier()

    await unit.launch(notifier)
    assert unit.state is UnitState.STARTING
    assert unit.pid is not None

    assert await unit.await_ready() is Readiness.READY
    assert unit.state is UnitState.READY
    unit.mark_running()
    assert unit.state is UnitState.RUNNING

    unit.request_shutdown(Intent.GRACEFUL)
    status = await asyncio.wait_for(unit.await_exit(), timeout=10)

    assert status.returncode == 0
    assert unit.state is UnitState.EXITED
    assert unit.pid is None
    assert read_record(record) == ["app SIGUSR1"]
    assert notifier.reason.name == "app"
    assert notifier.reason.kind == UNIT_EXIT


@pytest.mark.asyncio
async def test_graceful_disabled_uses_forceful(stub_command, tmp_path):
    unit, record = _stub_unit(stub_command, tmp_path, graceful_preferred=False)
    await _start(unit)

    unit.request_shutdown(Intent.GRACEFUL)
    await asyncio.wait_for(unit.await_exit(), timeout=10)

    assert read_record(record) == ["app SIGUSR2"]


@pytest.mark.asyncio
async def test_second_request_is_ignored(stub_command, tmp_path):
    unit, record = _stub_unit(stub_command, tmp_path)
    await _start(unit)

    unit.request_shutdown(Intent.GRACEFUL)
    unit.request_shutdown(Intent.FORCEFUL)
    await asyncio.wait_for(unit.await_exit(), timeout=10)

    assert read_record(record) == ["app SIGUSR1"]


@pytest.mark.asyncio
async def test_exit_on_its_own_posts_once(stub_command, tmp_path):
    trigger = tmp_path / "go"
    trigger.touch()
    unit, _ = _stub_unit(
        stub_command, tmp_path, options={"exit_when": trigger, "exit_code": 3}
    )
    notifier = ExitNotifier()
    await unit.launch(notifier)

    status = await asyncio.wait_for(unit.await_exit(), timeout=10)
    assert status.returncode == 3
    assert notifier.reason.returncode == 3

    # Stopping an exited unit is harmless and does not wait
    unit.request_shutdown(Intent.FORCEFUL)
    status = await asyncio.wait_for(unit.await_exit(), timeout=1)
    assert status.returncode == 3
    assert notifier.reason.returncode == 3


@pytest.mark.asyncio
async def test_readiness_reports_death(tmp_path):
    unit = ManagedProcess(
        "app",
        [sys.executable, "-c", "import sys; sys.exit(4)"],
        readiness=MarkerFile(tmp_path / "never.pid", POLICY),
    )
    await unit.launch(ExitNotifier())

    assert await unit.await_ready() is Readiness.DIED
    status = await asyncio.wait_for(unit.await_exit(), timeout=10)
    assert status.returncode == 4


@pytest.mark.asyncio
async def test_forceful_kill():
    unit = ManagedProcess(
        "app",
        [sys.executable, "-c", "import time; time.sleep(30)"],
        forceful_signal=signal.SIGKILL,
    )
    await unit.launch(ExitNotifier())
    unit.request_shutdown(Intent.FORCEFUL)

    status = await asyncio.wait_for(unit.await_exit(), timeout=10)
    assert status.returncode == -signal.SIGKILL
    assert status.describe() == "killed by SIGKILL"


@pytest.mark.asyncio
async def test_request_before_launch_is_noop():
    unit = ManagedProcess("app", ["true"])
    unit.request_shutdown(Intent.GRACEFUL)
    assert unit.state is None
    status = await unit.await_exit()
    assert status.describe() == "not started"


@pytest.mark.asyncio
async def test_capture_output_prefixes_lines(stub_command, tmp_path):
    output = io.StringIO()
    trigger = tmp_path / "go"
    trigger.touch()
    unit = ManagedProcess(
        "echo",
        stub_command("echo", say="hello", exit_when=trigger),
        capture_output=True,
        output=output,
    )
    await unit.launch(ExitNotifier())
    await asyncio.wait_for(unit.await_exit(), timeout=10)

    text = output.getvalue()
    assert "[echo:stdout] hello\n" in text
    assert "[echo:stderr] hello (err)\n" in text


@pytest.mark.asyncio
async def test_env_is_merged(tmp_path):
    output = io.StringIO()
    unit = ManagedProcess(
        "env",
        [sys.executable, "-c", "import os; print(os.environ['STEWARD_TEST_VALUE'])"],
        env={"STEWARD_TEST_VALUE": "42"},
        capture_output=True,
        output=output,
    )
    await unit.launch(ExitNotifier())
    await asyncio.wait_for(unit.await_exit(), timeout=10)
    assert "[env:stdout] 42" in output.getvalue()


GRANDCHILD = """
import subprocess, sys, time
subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
print("up", flush=True)
time.sleep(30)
"""


@pytest.mark.asyncio
async def test_capture_exits_while_grandchild_holds_pipes():
    output = io.StringIO()
    unit = ManagedProcess(
        "parent",
        [sys.executable, "-c", GRANDCHILD],
        capture_output=True,
        output=output,
    )
    await unit.launch(ExitNotifier())
    pgid = unit.pid
    try:
        await wait_until(lambda: "[parent:stdout] up" in output.getvalue())
        unit.request_shutdown(Intent.GRACEFUL)
        status = await asyncio.wait_for(unit.await_exit(), timeout=5)
        assert status.returncode == -signal.SIGTERM
        assert unit.state is UnitState.EXITED
    finally:
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
