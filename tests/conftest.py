import asyncio
import sys
import time
from pathlib import Path

import pytest

STUB = Path(__file__).parent / "unit_stub.py"


@pytest.fixture(autouse=True)
def clear_steward_env(monkeypatch):
    """Keep the developer's STEWARD_* settings out of every test."""
    for name in ("STEWARD_CONFIG", "STEWARD_GRACEFUL", "STEWARD_RUN_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def stub_command():
    """Build an argv that runs tests/unit_stub.py with the given options.

    Keyword arguments map to flags (``exit_when=path`` -> ``--exit-when path``);
    list values repeat the flag.
    """

    def make(name, **options):
        cmd = [sys.executable, str(STUB), "--name", name]
        for key, value in options.items():
            flag = "--" + key.replace("_", "-")
            values = value if isinstance(value, (list, tuple)) else [value]
            for item in values:
                cmd += [flag, str(item)]
        return cmd

    return make


def read_record(path):
    """Return the ``name SIGNAL`` lines a stub wrote, in arrival order."""
    path = Path(path)
    if not path.exists():
        return []
    return path.read_text().splitlines()


async def wait_until(predicate, timeout=10.0, interval=0.02):
    """Poll ``predicate`` on the event loop until it returns True."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise TimeoutError("condition not met in time")
