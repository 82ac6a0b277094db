"""Test suite for logger configuration."""

import json
import sys
from unittest.mock import patch

from loguru import logger

from identity_sync.monitoring.logger import LOG_FORMAT
from identity_sync.monitoring.logger import configure_logger
from identity_sync.monitoring.logger import format_stacktrace
from identity_sync.monitoring.logger import process_log_record


class TestProcessLogRecord:
    """Tests for the record filter applied to every sink."""

    def test_extra_is_serialized(self):
        record = {"extra": {"source": "ldap", "count": 3}, "exception": None}

        processed = process_log_record(record)

        assert json.loads(processed["extra"]) == {"source": "ldap", "count": 3}
        assert processed["stacktrace"] == ""

    def test_empty_extra_left_alone(self):
        record = {"extra": {}, "exception": None}

        assert process_log_record(record)["extra"] == {}

    def test_exception_stacktrace_is_single_line(self):
        try:
            raise ValueError("bad value")
        except ValueError:
            exc_info = sys.exc_info()

        record = {"extra": {}, "exception": exc_info}
        processed = process_log_record(record)

        assert "\n" not in processed["stacktrace"]
        assert "ValueError: bad value" in processed["stacktrace"]


class TestFormatStacktrace:
    def test_keeps_newlines_when_asked(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()

        stacktrace = format_stacktrace(exc_info, single_line=False)

        assert "\n" in stacktrace
        assert stacktrace.startswith("Traceback")


class TestConfigureLogger:
    def test_single_stdout_sink(self):
        with patch.object(logger, "add") as mock_add, patch.object(logger, "remove") as mock_remove:
            configure_logger("debug")

        mock_remove.assert_called_once_with()
        mock_add.assert_called_once()
        kwargs = mock_add.call_args.kwargs
        assert kwargs["sink"] is sys.stdout
        assert kwargs["level"] == "DEBUG"
        assert kwargs["filter"] is process_log_record
        assert kwargs["diagnose"] is False

    def test_format_renders_extra_on_one_line(self):
        lines = []
        handler_id = logger.add(lines.append, level="INFO", format=LOG_FORMAT, filter=process_log_record, colorize=False)
        try:
            logger.info("Sync started", source="ldap")
            logger.debug("Not shown")
        finally:
            logger.remove(handler_id)

        assert len(lines) == 1
        assert "| INFO     |" in lines[0]
        assert "Sync started" in lines[0]
        assert '{"source": "ldap"}' in lines[0]

    def test_third_party_loggers_quieted(self):
        import logging

        with patch.object(logger, "add"), patch.object(logger, "remove"):
            configure_logger("debug")

        assert logging.getLogger("ldap3").level == logging.WARNING
        assert logging.getLogger("apscheduler").level == logging.WARNING
