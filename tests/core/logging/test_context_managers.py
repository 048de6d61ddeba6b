"""Tests for LogContext, OperationContext and log_operation."""

import logging

import pytest

from core.errors import AdapterError
from core.logging.context import clear_log_context, get_log_context, set_log_context
from core.logging.context_managers import LogContext, OperationContext, log_operation


@pytest.fixture(autouse=True)
def clean_context():
    clear_log_context()
    yield
    clear_log_context()


class TestLogContext:
    def test_sets_and_restores(self):
        set_log_context(stage="delivery", interface="orders")

        with LogContext(interface="invoices", message_id="m-1"):
            ctx = get_log_context()
            assert ctx["stage"] == "delivery"
            assert ctx["interface"] == "invoices"
            assert ctx["message_id"] == "m-1"

        ctx = get_log_context()
        assert ctx["interface"] == "orders"
        assert ctx["message_id"] == ""

    def test_restores_on_exception(self):
        with pytest.raises(RuntimeError):
            with LogContext(message_id="m-2"):
                raise RuntimeError("boom")
        assert get_log_context()["message_id"] == ""

    def test_nested(self):
        with LogContext(cycle_id="c-1"):
            with LogContext(message_id="m-1"):
                assert get_log_context()["cycle_id"] == "c-1"
            assert get_log_context()["message_id"] == ""


class TestOperationContext:
    def test_logs_completion_with_duration(self, caplog):
        logger = logging.getLogger("test.operation")
        with caplog.at_level(logging.DEBUG, logger="test.operation"):
            with OperationContext(logger, "debatch", interface="orders"):
                pass

        record = caplog.records[-1]
        assert record.getMessage() == "Completed: debatch"
        assert record.operation == "debatch"
        assert record.interface == "orders"
        assert record.duration_ms >= 0

    def test_logs_failure_and_propagates(self, caplog):
        logger = logging.getLogger("test.operation")
        with caplog.at_level(logging.DEBUG, logger="test.operation"):
            with pytest.raises(AdapterError):
                with OperationContext(logger, "write"):
                    raise AdapterError("destination down")

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.getMessage() == "Failed: write"
        assert record.error_category == "transient"

    def test_slow_operation_promoted_to_info(self, caplog):
        logger = logging.getLogger("test.operation")
        with caplog.at_level(logging.DEBUG, logger="test.operation"):
            with OperationContext(logger, "slow", slow_threshold_ms=0.000001):
                sum(range(10000))

        assert caplog.records[-1].levelno == logging.INFO

    def test_string_level(self):
        ctx = OperationContext(logging.getLogger("x"), "op", level="warning")
        assert ctx.level == logging.WARNING

    def test_add_context(self, caplog):
        logger = logging.getLogger("test.operation")
        with caplog.at_level(logging.DEBUG, logger="test.operation"):
            with log_operation(logger, "stage") as op:
                op.add_context(record_count=12)

        assert caplog.records[-1].record_count == 12
