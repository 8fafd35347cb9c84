"""Observability module for codetree.

Provides structured logging to the console and to a JSONL file.
"""

from codetree.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_log_file,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "get_log_file",
]
