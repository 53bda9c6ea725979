"""Utilities package."""

from .config import resolve_db_path, settings
from .log import LoggerMixin, configure_logging, get_logger, run_context

__all__ = [
    "settings",
    "resolve_db_path",
    "get_logger",
    "LoggerMixin",
    "configure_logging",
    "run_context",
]
