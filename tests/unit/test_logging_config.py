"""
Unit tests for utils.logging

Covers JSON and console formatting, context logging, and setup from
arguments and environment.
"""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from utils.logging import (
    ConsoleFormatter,
    ContextLogger,
    JSONFormatter,
    configure_from_env,
    setup_logging,
    shutdown_logging,
)


def make_record(msg="Test message", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord(
        name="test_logger",
        level=level,
        pathname="/path/to/test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield root
    shutdown_logging()
    root.setLevel(level)


class TestJSONFormatter:
    """Test JSONFormatter class"""

    def test_init_with_defaults(self):
        formatter = JSONFormatter()

        assert formatter.include_timestamp is True
        assert formatter.app_name == "etl-sync"
        assert formatter.hostname is not None

    def test_format_basic_log_record(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test_logger"
        assert data["message"] == "Test message"
        assert data["app"] == "etl-sync"
        assert data["source"]["line"] == 42
        assert "timestamp" in data

    def test_format_without_timestamp_and_hostname(self):
        formatter = JSONFormatter(include_timestamp=False, include_hostname=False)
        data = json.loads(formatter.format(make_record()))

        assert "timestamp" not in data
        assert "hostname" not in data

    def test_format_with_exception_info(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "boom"
        assert any("ValueError" in line for line in data["exception"]["traceback"])

    def test_extra_fields_land_in_context(self):
        record = make_record(job_id="orders", bucket_number=3)
        data = json.loads(JSONFormatter().format(record))

        assert data["context"] == {"job_id": "orders", "bucket_number": 3}

    def test_no_context_key_without_extras(self):
        data = json.loads(JSONFormatter().format(make_record()))
        assert "context" not in data

    def test_non_serializable_extras_stringified(self):
        record = make_record(watermark=object())
        data = json.loads(JSONFormatter().format(record))
        assert data["context"]["watermark"].startswith("<object")


class TestConsoleFormatter:
    """Test ConsoleFormatter class"""

    def test_without_colors(self):
        formatter = ConsoleFormatter(use_colors=False)
        output = formatter.format(make_record())

        assert "[INFO] test_logger: Test message" in output
        assert "\033[" not in output

    @patch("sys.stderr.isatty", return_value=True)
    def test_with_colors(self, mock_isatty):
        formatter = ConsoleFormatter(use_colors=True)
        record = make_record(level=logging.WARNING)
        output = formatter.format(record)

        assert "\033[33mWARNING\033[0m" in output
        # the record itself is left untouched for other handlers
        assert record.levelname == "WARNING"

    def test_context_appended(self):
        output = ConsoleFormatter(use_colors=False).format(make_record(job_id="orders"))
        assert output.endswith("[job_id=orders]")


class TestSetupLogging:
    """Test setup_logging function"""

    def test_console_handler_installed(self, restore_root_logger):
        setup_logging(level="DEBUG")

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, ConsoleFormatter)

    def test_invalid_level_defaults_to_info(self, restore_root_logger):
        setup_logging(level="NOT_A_LEVEL")
        assert restore_root_logger.level == logging.INFO

    def test_json_file_logging(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "logs" / "app.log"
        setup_logging(level="INFO", log_file=str(log_file), console_output=False, json_format=True)

        logging.getLogger("etl_sync.test").info("written", extra={"job_id": "orders"})
        shutdown_logging()

        lines = log_file.read_text(encoding="utf-8").strip().splitlines()
        data = json.loads(lines[-1])
        assert data["message"] == "written"
        assert data["context"]["job_id"] == "orders"

    def test_replaces_existing_handlers(self, restore_root_logger):
        setup_logging()
        setup_logging()
        assert len(restore_root_logger.handlers) == 1

    def test_noisy_loggers_quieted(self, restore_root_logger):
        setup_logging(level="DEBUG")
        assert logging.getLogger("opentelemetry").level == logging.WARNING


class TestContextLogger:
    """Test ContextLogger class"""

    def test_context_passed_as_extra(self):
        log = ContextLogger("etl_sync.test", job_id="orders")

        with patch.object(log.logger, "log") as mock_log:
            log.info("Run started", execution_log_id="ab12")

        _, kwargs = mock_log.call_args
        assert kwargs["extra"] == {"job_id": "orders", "execution_log_id": "ab12"}

    def test_disabled_level_skipped(self):
        log = ContextLogger("etl_sync.test.quiet")
        log.logger.setLevel(logging.ERROR)

        with patch.object(log.logger, "log") as mock_log:
            log.debug("hidden")

        mock_log.assert_not_called()

    def test_error_forwards_exc_info(self):
        log = ContextLogger("etl_sync.test")

        with patch.object(log.logger, "log") as mock_log:
            log.error("failed", exc_info=True)

        assert mock_log.call_args[1]["exc_info"] is True

    def test_bind_extends_context(self):
        log = ContextLogger("etl_sync.test", job_id="orders")
        bound = log.bind(bucket_number=7)

        assert bound.get_context() == {"job_id": "orders", "bucket_number": 7}
        assert log.get_context() == {"job_id": "orders"}

    def test_get_context_returns_copy(self):
        log = ContextLogger("etl_sync.test", job_id="orders")
        log.get_context()["job_id"] = "changed"
        assert log.context["job_id"] == "orders"


class TestConfigureFromEnv:
    """Test configure_from_env function"""

    @patch("utils.logging.config.setup_logging")
    def test_all_vars_set(self, mock_setup, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LOG_FILE", "/tmp/etl.log")
        monkeypatch.setenv("LOG_JSON", "yes")
        monkeypatch.setenv("LOG_CONSOLE", "false")

        configure_from_env()

        mock_setup.assert_called_once_with(
            level="DEBUG", log_file="/tmp/etl.log", console_output=False, json_format=True
        )

    @patch("utils.logging.config.setup_logging")
    def test_defaults(self, mock_setup, monkeypatch):
        for name in ("LOG_LEVEL", "LOG_FILE", "LOG_JSON", "LOG_CONSOLE"):
            monkeypatch.delenv(name, raising=False)

        configure_from_env(default_level="WARNING")

        mock_setup.assert_called_once_with(
            level="WARNING", log_file=None, console_output=True, json_format=False
        )
