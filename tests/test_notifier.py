"""Tests for steward.notifier."""

import asyncio
import signal

import pytest

from steward.notifier import NOT_READY, SIGNAL, UNIT_EXIT, ExitNotifier, ExitReason


def test_first_post_wins():
    notifier = ExitNotifier()
    assert notifier.post(ExitReason("app", returncode=3))
    assert not notifier.post(ExitReason("web", returncode=0))
    assert not notifier.post(ExitReason.from_signal(signal.SIGTERM))

    assert notifier.is_set()
    assert notifier.reason.name == "app"
    assert notifier.reason.returncode == 3


@pytest.mark.asyncio
async def test_receive_waits_for_post():
    notifier = ExitNotifier()

    async def later():
        await asyncio.sleep(0.01)
        notifier.post(ExitReason("web"))

    poster = asyncio.create_task(later())
    reason = await asyncio.wait_for(notifier.receive(), timeout=2)
    await poster
    assert reason.name == "web"


@pytest.mark.asyncio
async def test_receive_returns_earlier_post():
    notifier = ExitNotifier()
    notifier.post(ExitReason("app"))
    notifier.post(ExitReason("web"))
    assert (await notifier.receive()).name == "app"


@pytest.mark.asyncio
async def test_receive_only_once():
    notifier = ExitNotifier()
    notifier.post(ExitReason("app"))
    await notifier.receive()
    with pytest.raises(RuntimeError):
        await notifier.receive()


def test_reason_from_signal():
    reason = ExitReason.from_signal(signal.SIGTERM)
    assert reason.kind == SIGNAL
    assert reason.external
    assert reason.name == "SIGTERM"
    assert reason.signum == signal.SIGTERM
    assert reason.describe() == "received SIGTERM"


@pytest.mark.parametrize(
    "reason,text",
    [
        (ExitReason("app", UNIT_EXIT, returncode=3), "app exited with code 3"),
        (ExitReason("app"), "app exited"),
        (ExitReason("web", NOT_READY), "web did not become ready"),
    ],
)
def test_describe_unit_reasons(reason, text):
    assert not reason.external
    assert reason.describe() == text
