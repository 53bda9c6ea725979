"""Unit tests for logging configuration and utilities."""

import json
import logging
import sys
from unittest.mock import MagicMock, patch

import pytest
import structlog

from pricesync.utils.log import LoggerMixin, configure_logging, get_logger, run_context


@pytest.fixture(autouse=True)
def reset_structlog():
    """Each test starts from a freshly configured JSON logger."""
    structlog.reset_defaults()
    configure_logging()
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    """Test logging configuration function."""

    def test_configure_logging_sets_up_structlog(self):
        """Test that configure_logging sets up structlog correctly."""
        assert structlog.is_configured()

        config = structlog.get_config()
        processor_names = [p.__name__ if hasattr(p, "__name__") else str(p) for p in config["processors"]]
        assert any("merge_contextvars" in name for name in processor_names)
        assert any("filter_by_level" in name for name in processor_names)
        assert any("add_log_level" in name for name in processor_names)
        assert any("JSONRenderer" in name for name in processor_names)

    def test_configure_logging_sets_up_standard_logging(self):
        configure_logging()
        root_logger = logging.getLogger()
        assert len(root_logger.handlers) > 0
        assert root_logger.handlers[0].stream == sys.stdout

    def test_explicit_level_overrides_settings(self):
        configure_logging(level="warning")
        assert logging.getLogger().level == logging.WARNING

    def test_invalid_level_falls_back_to_info(self):
        configure_logging(level="NOT_A_LEVEL")
        assert logging.getLogger().level == logging.INFO

    def test_console_renderer(self):
        configure_logging(json_output=False)
        renderer = structlog.get_config()["processors"][-1]
        assert isinstance(renderer, structlog.dev.ConsoleRenderer)


class TestGetLogger:
    """Test get_logger function."""

    def test_get_logger_auto_configures_if_needed(self):
        structlog.reset_defaults()
        with patch("pricesync.utils.log.configure_logging") as mock_configure:
            get_logger("test")
            mock_configure.assert_called_once()

    def test_get_logger_returns_usable_logger(self):
        logger = get_logger("test_logger")
        assert hasattr(logger, "info")
        assert hasattr(logger, "error")


class TestLoggerMixin:
    """Test LoggerMixin class."""

    def test_logger_mixin_caches_logger(self):
        class Worker(LoggerMixin):
            pass

        worker = Worker()
        assert worker.logger is worker.logger

    def test_log_start_creates_context(self):
        class Worker(LoggerMixin):
            pass

        worker = Worker()
        worker._logger = MagicMock()

        context = worker.log_start("fetch", set_id="s")

        assert context["event"] == "fetch"
        assert context["set_id"] == "s"
        assert "start_time" in context
        worker._logger.info.assert_called_once_with("fetch started", set_id="s")

    def test_log_success_adds_duration(self):
        class Worker(LoggerMixin):
            pass

        worker = Worker()
        worker._logger = MagicMock()

        worker.log_success(worker.log_start("persist"), rows=3)

        message, kwargs = worker._logger.info.call_args[0][0], worker._logger.info.call_args[1]
        assert message == "persist completed"
        assert kwargs["rows"] == 3
        assert kwargs["duration_ms"] >= 0
        assert "start_time" not in kwargs

    def test_log_success_without_start_time(self):
        class Worker(LoggerMixin):
            pass

        worker = Worker()
        worker._logger = MagicMock()

        worker.log_success({"event": "persist"})

        assert "duration_ms" not in worker._logger.info.call_args[1]

    def test_log_error_includes_error_type(self):
        class Worker(LoggerMixin):
            pass

        worker = Worker()
        worker._logger = MagicMock()

        worker.log_error(worker.log_start("fetch"), ValueError("boom"))

        kwargs = worker._logger.error.call_args[1]
        assert worker._logger.error.call_args[0][0] == "fetch failed"
        assert kwargs["error"] == "boom"
        assert kwargs["error_type"] == "ValueError"


class TestRunContext:
    """Test context binding across components."""

    def test_bound_fields_reach_every_event(self, capsys):
        configure_logging()

        class Worker(LoggerMixin):
            pass

        with run_context(run_id="run-1", set_key="paldea-evolved"):
            Worker().logger.info("inside")
        Worker().logger.info("outside")

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        inside = next(line for line in lines if line["event"] == "inside")
        outside = next(line for line in lines if line["event"] == "outside")
        assert inside["run_id"] == "run-1"
        assert inside["set_key"] == "paldea-evolved"
        assert "run_id" not in outside
