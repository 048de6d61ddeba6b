"""Tests for logging utility functions."""

import logging

from core.errors import NonRetriableAdapterError
from core.logging.utilities import (
    detect_log_output_mode,
    format_cycle_output,
    log_exception,
    log_with_context,
)


class TestLogWithContext:
    def test_passes_extras_and_drops_reserved_keys(self, caplog):
        logger = logging.getLogger("test.utilities")
        with caplog.at_level(logging.INFO, logger="test.utilities"):
            log_with_context(logger, logging.INFO, "Delivered", message_id="m-1", name="clash")

        record = caplog.records[-1]
        assert record.message_id == "m-1"
        assert record.name == "test.utilities"

    def test_exc_info_is_forwarded(self, caplog):
        logger = logging.getLogger("test.utilities")
        with caplog.at_level(logging.ERROR, logger="test.utilities"):
            try:
                raise ValueError("x")
            except ValueError:
                log_with_context(logger, logging.ERROR, "Failed", exc_info=True)

        assert caplog.records[-1].exc_info is not None


class TestLogException:
    def test_adds_category_and_message(self, caplog):
        logger = logging.getLogger("test.utilities")
        with caplog.at_level(logging.WARNING, logger="test.utilities"):
            log_exception(
                logger,
                NonRetriableAdapterError("schema mismatch"),
                "Delivery failed",
                level=logging.WARNING,
                include_traceback=False,
                subscriber="erp-1",
            )

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.error_category == "permanent"
        assert record.error_message == "schema mismatch"
        assert record.error_type == "NonRetriableAdapterError"
        assert record.subscriber == "erp-1"
        assert record.exc_info is None

    def test_truncates_long_messages(self, caplog):
        logger = logging.getLogger("test.utilities")
        with caplog.at_level(logging.ERROR, logger="test.utilities"):
            log_exception(logger, RuntimeError("x" * 600), "Failed")

        assert len(caplog.records[-1].error_message) == 503


class TestFormatCycleOutput:
    def test_totals_without_delta(self):
        assert format_cycle_output(1, 120, 3) == "Cycle 1: processed=123 (delivered=120, failed=3)"

    def test_includes_optional_counts(self):
        result = format_cycle_output(2, 10, 1, dead_lettered=2, released=4)
        assert result == "Cycle 2: processed=17 (delivered=10, failed=1, dead_lettered=2, released=4)"

    def test_delta_and_rate(self):
        result = format_cycle_output(5, 120, 3, 0, 0, {"delivered": 24, "failed": 0}, 30)
        assert result == "Cycle 5: +24 this cycle | total: 120 delivered, 3 failed | 0.8 msg/s"


class TestDetectLogOutputMode:
    def test_reports_console_without_handlers(self):
        root = logging.getLogger()
        saved = root.handlers[:]
        root.handlers.clear()
        try:
            assert detect_log_output_mode() == "console"
        finally:
            root.handlers[:] = saved
