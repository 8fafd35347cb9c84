"""structlog setup shared by the CLI and the engine.

Events always go to stderr through rich, filtered by ``-v``. With ``--log``
every event, DEBUG included, is also appended as one JSON object per line
to ``codetree.jsonl`` in the chosen directory.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger, Processor

LOG_FILE_NAME = "codetree.jsonl"

_CONSOLE_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)

# Keys structlog adds that the JSON entry already carries in its own form.
_ENVELOPE_KEYS = ("level", "timestamp")


@dataclass
class _LoggingState:
    configured: bool = False
    file_handler: logging.FileHandler | None = None
    log_file: Path | None = None


_state = _LoggingState()


def _entry_for(record: logging.LogRecord) -> dict[str, Any]:
    """Flatten a stdlib record, and the structlog event dict it may carry."""
    entry: dict[str, Any] = {
        "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
        "level": record.levelname,
        "logger": record.name,
    }
    if isinstance(record.msg, dict):
        fields = {k: v for k, v in record.msg.items() if k not in _ENVELOPE_KEYS}
        entry["message"] = fields.pop("event", "")
        entry.update(fields)
    else:
        entry["message"] = record.getMessage()
    if record.exc_info:
        entry["exception"] = logging.Formatter().formatException(record.exc_info)
    return entry


class JsonLinesHandler(logging.FileHandler):
    """Appends each record to the log file as a single JSON object."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if self.stream is None:
                self.stream = self._open()
            self.stream.write(json.dumps(_entry_for(record), default=str) + "\n")
            self.flush()
        except Exception:
            self.handleError(record)


def _console_handler(verbosity: int) -> RichHandler:
    level = _CONSOLE_LEVELS[min(max(verbosity, 0), len(_CONSOLE_LEVELS) - 1)]
    debug = verbosity >= 2
    return RichHandler(
        console=Console(stderr=True),
        level=level,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=debug,
        show_path=debug,
        show_time=verbosity >= 1,
    )


def _open_log_file(log_dir: Path) -> JsonLinesHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = JsonLinesHandler(log_dir / LOG_FILE_NAME, mode="a", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    _state.file_handler = handler
    _state.log_file = log_dir / LOG_FILE_NAME
    return handler


def _configure_structlog(level: int) -> None:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    log_dir: Path | None = None,
) -> None:
    """(Re)configure console and optional file logging.

    Args:
        verbosity: 0 shows warnings, 1 adds info, 2 or more adds debug.
        log_to_file: Also write every event to ``log_dir/codetree.jsonl``.
        log_dir: Directory for the log file, created if missing.

    Raises:
        ValueError: If *log_to_file* is set without *log_dir*.
    """
    if log_to_file and log_dir is None:
        raise ValueError("log_dir is required when log_to_file=True")

    close_file_logging()
    handlers: list[logging.Handler] = [_console_handler(verbosity)]
    if log_to_file and log_dir is not None:
        handlers.append(_open_log_file(log_dir))

    # The file wants everything; otherwise the console handler filters.
    level = logging.DEBUG if verbosity > 0 or log_to_file else logging.WARNING
    logging.basicConfig(level=level, format="%(message)s", handlers=handlers, force=True)
    _configure_structlog(level)
    _state.configured = True


def get_logger(name: str | None = None) -> FilteringBoundLogger:
    """Return a structlog logger, configuring defaults on first use."""
    if not _state.configured:
        configure_logging()
    logger: FilteringBoundLogger = structlog.get_logger(name)
    return logger


def get_log_file() -> Path | None:
    """Path of the JSONL log being written, or None when file logging is off."""
    return _state.log_file


def close_file_logging() -> None:
    """Flush and close the JSONL log, if one is open."""
    handler, _state.file_handler = _state.file_handler, None
    _state.log_file = None
    if handler is not None:
        logging.getLogger().removeHandler(handler)
        handler.close()
