import argparse
import logging
import re

import pytest

from steward.utils import env_flag, format_log_line, get_run_dir, setup_cli


@pytest.mark.parametrize(
    "raw,expected",
    [("1", True), ("Yes", True), (" on ", True), ("0", False), ("OFF", False)],
)
def test_env_flag_values(monkeypatch, raw, expected):
    monkeypatch.setenv("STEWARD_GRACEFUL", raw)
    assert env_flag("STEWARD_GRACEFUL", not expected) is expected


@pytest.mark.parametrize("raw", [None, "", "sometimes"])
def test_env_flag_defaults(monkeypatch, raw):
    if raw is not None:
        monkeypatch.setenv("STEWARD_GRACEFUL", raw)
    assert env_flag("STEWARD_GRACEFUL", True) is True
    assert env_flag("STEWARD_GRACEFUL", False) is False


def test_get_run_dir(monkeypatch, tmp_path):
    assert get_run_dir() is None
    monkeypatch.setenv("STEWARD_RUN_DIR", str(tmp_path))
    assert get_run_dir() == tmp_path


def test_format_log_line():
    line = format_log_line("web", "stderr", "listening on :80\n")
    assert re.fullmatch(
        r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2} \[web:stderr\] listening on :80\n", line
    )


@pytest.mark.parametrize(
    "flags,default,level",
    [
        ([], logging.WARNING, logging.WARNING),
        (["-v"], logging.WARNING, logging.INFO),
        (["-v"], logging.DEBUG, logging.DEBUG),
        (["--debug"], logging.INFO, logging.DEBUG),
    ],
)
def test_setup_cli_levels(flags, default, level):
    parser = argparse.ArgumentParser()
    parser.add_argument("--name", default="x")
    args = setup_cli(parser, default_level=default, argv=["--name", "y", *flags])

    assert args.name == "y"
    assert logging.getLogger().level == level
