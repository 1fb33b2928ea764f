from __future__ import annotations

import json
import logging
import sys
from typing import Iterator

import pytest
from rich.logging import RichHandler

from folio_media.logging_config import LEVEL_ENV_VAR, JSONFormatter, resolve_level, setup_logging
from tools.run_pytest import build_command


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_resolve_level_prefers_argument_then_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(LEVEL_ENV_VAR, raising=False)
    assert resolve_level() == logging.WARNING

    monkeypatch.setenv(LEVEL_ENV_VAR, "info")
    assert resolve_level() == logging.INFO
    assert resolve_level("debug") == logging.DEBUG


def test_resolve_level_rejects_unknown_names() -> None:
    with pytest.raises(ValueError):
        resolve_level("chatty")


def test_setup_logging_installs_single_handler() -> None:
    setup_logging("info")
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0], RichHandler)
    assert root.level == logging.INFO

    setup_logging("error", json_output=True)
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JSONFormatter)
    assert logging.getLogger("PIL").level == logging.ERROR


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "folio_media.scheduler", logging.ERROR, __file__, 1, "job %s failed", ("abc",), sys.exc_info()
        )

    entry = json.loads(JSONFormatter().format(record))

    assert entry["level"] == "ERROR"
    assert entry["logger"] == "folio_media.scheduler"
    assert entry["message"] == "job abc failed"
    assert "RuntimeError: boom" in entry["exception"]


def test_run_pytest_fast_flag_deselects_slow_tests() -> None:
    assert build_command("py", ["--fast", "tests/test_geometry.py"]) == [
        "py",
        "-m",
        "pytest",
        "-q",
        "-m",
        "not slow",
        "tests/test_geometry.py",
    ]
    assert build_command("py", []) == ["py", "-m", "pytest", "-q"]
