"""Tests for logging configuration."""

import json
import logging

import pytest

from duckgate.core.logging_config import JsonFormatter, configure_logging


def make_record(msg, *args, **extra):
    record = logging.LogRecord("duckgate.test", logging.INFO, __file__, 1, msg, args, None)
    record.__dict__.update(extra)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestJsonFormatter:
    def test_trace_prefix_becomes_field(self):
        """The "[trace_id] " prefix is lifted into its own field."""
        line = JsonFormatter().format(make_record("[%s] Request: model=%s", "00001_x", "gpt-4o-mini"))

        data = json.loads(line)
        assert data["trace_id"] == "00001_x"
        assert data["message"] == "Request: model=gpt-4o-mini"
        assert data["level"] == "INFO"
        assert data["logger"] == "duckgate.test"

    def test_plain_message(self):
        data = json.loads(JsonFormatter().format(make_record("Gateway listening")))

        assert "trace_id" not in data
        assert data["message"] == "Gateway listening"

    def test_extra_fields(self):
        data = json.loads(JsonFormatter().format(make_record("hi", attempt=2)))

        assert data["extra"] == {"attempt": 2}


class TestConfigureLogging:
    def test_json_format(self, restore_root_logger):
        configure_logging(level="DEBUG", format="json", force=True)

        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)

    def test_environment_level(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("DUCKGATE_LOG_LEVEL", "warning")

        configure_logging(force=True)

        assert restore_root_logger.level == logging.WARNING
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_file_handler(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "gateway.log"

        configure_logging(level="INFO", file_path=str(log_file), force=True)
        logging.getLogger("duckgate.test").info("written")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert "written" in log_file.read_text()
