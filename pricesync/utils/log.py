"""
Structured logging for the pipeline.

Everything logs through structlog on top of the standard library. Run-level
context (run id, set key) is bound once with ``run_context`` and is merged into
every event emitted by the fetcher, resolver and batcher during that run.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog

from .config import settings


def configure_logging(level: Optional[str] = None, json_output: bool = True) -> None:
    """
    Configure stdlib logging and structlog.

    Args:
        level: Log level name, defaults to ``settings.LOG_LEVEL``
        json_output: Render JSON lines; otherwise use the structlog console renderer
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
        force=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a configured logger instance."""
    if not structlog.is_configured():
        configure_logging()
    return structlog.get_logger(name)


@contextmanager
def run_context(**context: Any) -> Iterator[None]:
    """Bind context to every log event emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**context):
        yield


class LoggerMixin:
    """Gives a class a named structlog logger and start/success/error helpers."""

    @property
    def logger(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger

    def log_start(self, event: str, **kwargs: Any) -> Dict[str, Any]:
        """Log the start of an operation; the returned context carries its timer."""
        self.logger.info(f"{event} started", **kwargs)
        return {"event": event, "start_time": time.time(), **kwargs}

    @staticmethod
    def _elapsed(context: Dict[str, Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
        if "start_time" in context:
            kwargs["duration_ms"] = int((time.time() - context["start_time"]) * 1000)
        fields = {k: v for k, v in context.items() if k not in ("event", "start_time")}
        fields.update(kwargs)
        return fields

    def log_success(self, context: Dict[str, Any], **kwargs: Any) -> None:
        self.logger.info(f"{context.get('event', 'operation')} completed", **self._elapsed(context, kwargs))

    def log_error(self, context: Dict[str, Any], error: Exception, **kwargs: Any) -> None:
        kwargs.update(error=str(error), error_type=type(error).__name__)
        self.logger.error(f"{context.get('event', 'operation')} failed", **self._elapsed(context, kwargs))
