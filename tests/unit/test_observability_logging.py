"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest
from rich.logging import RichHandler

import codetree.observability.logging as log_module
from codetree.observability import (
    close_file_logging,
    configure_logging,
    get_log_file,
    get_logger,
)

if TYPE_CHECKING:
    from pathlib import Path


def _read_entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_configure_logging_default_is_warning() -> None:
    """Default verbosity (0) sets WARNING level."""
    configure_logging(verbosity=0)
    assert logging.getLogger().level == logging.WARNING


def test_configure_logging_verbose_lowers_root_level() -> None:
    """verbosity>=1 opens the root logger; the console handler filters."""
    configure_logging(verbosity=1)
    assert logging.getLogger().level == logging.DEBUG


@pytest.mark.parametrize(
    ("verbosity", "expected"),
    [(0, logging.WARNING), (1, logging.INFO), (2, logging.DEBUG), (5, logging.DEBUG)],
)
def test_console_handler_level(verbosity: int, expected: int) -> None:
    configure_logging(verbosity=verbosity)
    (handler,) = [h for h in logging.getLogger().handlers if isinstance(h, RichHandler)]
    assert handler.level == expected


def test_get_logger_has_level_methods() -> None:
    logger = get_logger(__name__)
    for method in ("debug", "info", "warning", "error"):
        assert hasattr(logger, method)


def test_get_logger_auto_configures() -> None:
    """get_logger configures logging if not already done."""
    log_module._state.configured = False
    assert get_logger("test") is not None
    assert log_module._state.configured is True


def test_file_logging_requires_log_dir() -> None:
    with pytest.raises(ValueError, match="log_dir is required"):
        configure_logging(verbosity=0, log_to_file=True, log_dir=None)


def test_file_logging_creates_log_dir(tmp_path: Path) -> None:
    logs = tmp_path / "logs"
    configure_logging(verbosity=0, log_to_file=True, log_dir=logs)
    try:
        assert logs.exists()
        assert get_log_file() == logs / "codetree.jsonl"
    finally:
        close_file_logging()
    assert get_log_file() is None


def test_reconfiguration_closes_previous_handler(tmp_path: Path) -> None:
    configure_logging(verbosity=0, log_to_file=True, log_dir=tmp_path)
    first = log_module._state.file_handler
    configure_logging(verbosity=0, log_to_file=True, log_dir=tmp_path)

    assert first is not None
    assert first.stream is None or first.stream.closed
    assert log_module._state.file_handler is not None
    second = log_module._state.file_handler
    close_file_logging()
    assert log_module._state.file_handler is None
    assert second not in logging.getLogger().handlers


def test_jsonl_handler_writes_structlog_context(tmp_path: Path) -> None:
    """The JSONL handler flattens the structlog event dict into one JSON line."""
    configure_logging(verbosity=2, log_to_file=True, log_dir=tmp_path)
    get_logger("test.context").info("node_moved", tree_id="t1", regenerated=3)
    close_file_logging()

    entry = next(
        e for e in _read_entries(tmp_path / "codetree.jsonl") if e.get("message") == "node_moved"
    )
    assert entry["tree_id"] == "t1"
    assert entry["regenerated"] == 3
    assert entry["level"] == "INFO"
    assert entry["logger"] == "test.context"


def test_jsonl_handler_records_plain_messages_and_exceptions(tmp_path: Path) -> None:
    configure_logging(verbosity=0, log_to_file=True, log_dir=tmp_path)
    try:
        raise RuntimeError("disk full")
    except RuntimeError:
        logging.getLogger("sqlite").exception("write failed for %s", "t1")
    close_file_logging()

    (entry,) = [
        e for e in _read_entries(tmp_path / "codetree.jsonl") if e["logger"] == "sqlite"
    ]
    assert entry["message"] == "write failed for t1"
    assert entry["level"] == "ERROR"
    assert "RuntimeError: disk full" in entry["exception"]
