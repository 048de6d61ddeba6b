"""Tests for logging context variables."""

import asyncio

import pytest

from core.logging.context import clear_log_context, get_log_context, set_log_context


@pytest.fixture(autouse=True)
def clean_context():
    clear_log_context()
    yield
    clear_log_context()


class TestLogContext:
    def test_defaults_are_empty(self):
        assert get_log_context() == {
            "cycle_id": "",
            "stage": "",
            "worker_id": "",
            "interface": "",
            "message_id": "",
            "instance_id": "",
        }

    def test_set_only_given_fields(self):
        set_log_context(stage="delivery", interface="orders")
        set_log_context(message_id="m-1")

        ctx = get_log_context()
        assert ctx["stage"] == "delivery"
        assert ctx["interface"] == "orders"
        assert ctx["message_id"] == "m-1"
        assert ctx["worker_id"] == ""

    def test_clear_resets_everything(self):
        set_log_context(cycle_id="c-1", worker_id="w-1", instance_id="erp-1")
        clear_log_context()
        assert all(v == "" for v in get_log_context().values())

    @pytest.mark.asyncio
    async def test_tasks_get_isolated_copies(self):
        set_log_context(stage="parent")

        async def child():
            set_log_context(stage="child")
            return get_log_context()["stage"]

        assert await asyncio.create_task(child()) == "child"
        assert get_log_context()["stage"] == "parent"
