"""Observability module for storyloom.

Provides structured logging with per-turn context.
"""

from storyloom.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_logs_dir,
    turn_context,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "get_logs_dir",
    "turn_context",
]
