"""Tests for JSON and console log formatters."""

import json
import logging
import sys

import pytest

from core.logging.context import clear_log_context, set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter


def _make_record(
    msg="test message",
    level=logging.INFO,
    name="test.logger",
    exc_info=None,
    **extras,
):
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extras.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def clear_context():
    clear_log_context()
    yield
    clear_log_context()


class TestJSONFormatter:
    def test_formats_basic_json_with_required_fields(self):
        output = json.loads(JSONFormatter().format(_make_record()))

        assert output["level"] == "INFO"
        assert output["logger"] == "test.logger"
        assert output["message"] == "test message"
        assert output["ts"].endswith("Z")

    def test_injects_context(self):
        set_log_context(stage="delivery", interface="orders", message_id="m-1")
        output = json.loads(JSONFormatter().format(_make_record()))

        assert output["stage"] == "delivery"
        assert output["interface"] == "orders"
        assert output["message_id"] == "m-1"
        assert "cycle_id" not in output

    def test_explicit_extra_overrides_context(self):
        set_log_context(interface="orders")
        output = json.loads(JSONFormatter().format(_make_record(interface="invoices")))
        assert output["interface"] == "invoices"

    def test_extra_fields_and_numeric_coercion(self):
        record = _make_record(retry_count="2", duration_ms="1.5", subscriber="erp-1")
        output = json.loads(JSONFormatter().format(record))

        assert output["retry_count"] == 2
        assert output["duration_ms"] == 1.5
        assert output["subscriber"] == "erp-1"

    def test_bad_numeric_becomes_null(self):
        output = json.loads(JSONFormatter().format(_make_record(retry_count="many")))
        assert output["retry_count"] is None

    def test_unknown_extras_are_not_emitted(self):
        output = json.loads(JSONFormatter().format(_make_record(favourite_colour="blue")))
        assert "favourite_colour" not in output

    def test_redacts_store_url_credentials(self):
        record = _make_record(store_url="postgresql+asyncpg://staging:s3cret@db:5432/staging")
        output = json.loads(JSONFormatter().format(record))

        assert "s3cret" not in output["store_url"]
        assert output["store_url"] == "postgresql+asyncpg://staging:[REDACTED]@db:5432/staging"

    def test_redacts_secret_query_params(self):
        record = _make_record(destination="https://erp.example.com/api?token=abc&x=1")
        output = json.loads(JSONFormatter().format(record))
        assert output["destination"] == "https://erp.example.com/api?token=[REDACTED]&x=1"

    def test_source_location_only_for_debug_and_errors(self):
        formatter = JSONFormatter()
        assert "file" not in json.loads(formatter.format(_make_record()))
        assert json.loads(formatter.format(_make_record(level=logging.ERROR)))["file"] == "test.py:42"

    def test_includes_exception(self):
        try:
            raise ValueError("bad record")
        except ValueError:
            record = _make_record(level=logging.ERROR, exc_info=sys.exc_info())

        output = json.loads(JSONFormatter().format(record))
        assert output["exception"]["type"] == "ValueError"
        assert output["exception"]["message"] == "bad record"
        assert "Traceback" in output["exception"]["stacktrace"]

    def test_keeps_non_ascii(self):
        output = JSONFormatter().format(_make_record(msg="separator ║ in use"))
        assert "║" in output


class TestConsoleFormatter:
    def test_prefix_and_tags(self):
        formatter = ConsoleFormatter()
        formatter._use_colors = False
        set_log_context(stage="delivery", interface="orders")

        line = formatter.format(_make_record(message_id="1234567890abcdef", subscriber="erp-1"))

        assert " - INFO - [delivery] - [orders] - " in line
        assert "[msg:12345678] [sub:erp-1] test message" in line

    def test_colors_when_enabled(self):
        formatter = ConsoleFormatter()
        formatter._use_colors = True
        line = formatter.format(_make_record(level=logging.WARNING))
        assert "\033[33mWARNING\033[0m" in line

    def test_traceback_for_errors(self):
        formatter = ConsoleFormatter()
        formatter._use_colors = False
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _make_record(level=logging.ERROR, exc_info=sys.exc_info())

        assert "RuntimeError: boom" in formatter.format(record)
