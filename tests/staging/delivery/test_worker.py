"""Tests for the delivery worker against real store backends."""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from core.errors import AdapterError, NonRetriableAdapterError
from staging.delivery import DeliveryWorker, RetryPolicy
from staging.delivery.worker import (
    CONTENDED,
    DEAD_LETTERED,
    DELIVERED,
    FAILED,
    RELEASED,
    SKIPPED,
)
from staging.mailbox import MessageBox
from staging.models import MessageStatus, ProcessingStatus

HEADERS = ["id", "name"]
NO_DELAY = RetryPolicy(min_delay=timedelta(0))


class RecordingDestination:
    """Destination adapter double that raises queued errors before succeeding."""

    def __init__(self, name="csv_file", errors=None):
        self.name = name
        self.errors = list(errors or [])
        self.writes = []
        self.structure_calls = 0

    async def write(self, destination_id, headers, records):
        if self.errors:
            raise self.errors.pop(0)
        self.writes.append((headers, records))

    async def get_schema(self, source_id=None):
        return {}

    async def ensure_destination_structure(self, destination_id, column_types):
        self.structure_calls += 1


@pytest.fixture
def mailbox(backend):
    return MessageBox(backend.store, backend.registry, max_retries=2)


async def _make_worker(mailbox, destinations, **kwargs):
    worker = DeliveryWorker(
        "orders",
        mailbox,
        destinations,
        retry_policy=kwargs.pop("retry_policy", NO_DELAY),
        poll_interval=0.01,
        worker_id="delivery-test",
        **kwargs,
    )
    for instance_id, adapter in destinations.items():
        await mailbox.ensure_adapter_instance(instance_id, "orders", adapter.name)
    return worker


async def _stage(mailbox, record=None, **kwargs):
    return await mailbox.write_record("orders", "csv_file", HEADERS, record or {"id": "1", "name": "Ann"}, **kwargs)


class TestProcessMessage:
    @pytest.mark.asyncio
    async def test_delivers_and_purges(self, mailbox):
        destination = RecordingDestination()
        worker = await _make_worker(mailbox, {"erp-1": destination})
        message_id = await _stage(mailbox)

        outcomes = await worker.run_cycle()

        assert outcomes == {DELIVERED: 1}
        assert destination.writes == [(HEADERS, [{"id": "1", "name": "Ann"}])]
        assert await mailbox.store.get(message_id) is None
        assert worker.get_stats()["purged"] == 1

    @pytest.mark.asyncio
    async def test_partial_failure_retries_only_failed_subscriber(self, mailbox):
        ok = RecordingDestination()
        flaky = RecordingDestination(errors=[AdapterError("ERP timeout", adapter_name="erp")])
        worker = await _make_worker(mailbox, {"erp-1": ok, "erp-2": flaky})
        message_id = await _stage(mailbox)

        assert await worker.run_cycle() == {FAILED: 1}
        message = await mailbox.store.get(message_id)
        assert message.status == MessageStatus.ERROR
        assert message.retry_count == 1
        assert message.error_message.startswith("erp-2: ERP timeout")
        record = await mailbox.registry.get_record(message_id, "erp-2")
        assert record.status == ProcessingStatus.ERROR

        assert await worker.run_cycle() == {DELIVERED: 1}
        assert len(ok.writes) == 1
        assert len(flaky.writes) == 1
        assert await mailbox.store.get(message_id) is None

    @pytest.mark.asyncio
    async def test_permanent_error_dead_letters_immediately(self, mailbox):
        destination = RecordingDestination(errors=[NonRetriableAdapterError("bad column")])
        worker = await _make_worker(mailbox, {"erp-1": destination})
        message_id = await _stage(mailbox)

        assert await worker.run_cycle() == {DEAD_LETTERED: 1}
        message = await mailbox.store.get(message_id)
        assert message.status == MessageStatus.DEAD_LETTER
        assert message.retry_count == 0
        assert message.error_message.startswith("Non-retriable error from erp-1")

    @pytest.mark.asyncio
    async def test_exhausted_budget_dead_letters(self, mailbox):
        destination = RecordingDestination(errors=[RuntimeError("boom")] * 3)
        worker = await _make_worker(mailbox, {"erp-1": destination})
        message_id = await _stage(mailbox, max_retries=1)

        assert await worker.run_cycle() == {FAILED: 1}
        assert await worker.run_cycle() == {DEAD_LETTERED: 1}
        message = await mailbox.store.get(message_id)
        assert message.error_message.startswith("Max retries (1) exceeded")
        assert await worker.run_cycle() == {}

    @pytest.mark.asyncio
    async def test_retry_waits_for_delay(self, mailbox):
        destination = RecordingDestination(errors=[AdapterError("down")])
        worker = await _make_worker(
            mailbox, {"erp-1": destination}, retry_policy=RetryPolicy(min_delay=timedelta(hours=1))
        )
        await _stage(mailbox)

        assert await worker.run_cycle() == {FAILED: 1}
        assert await worker.run_cycle() == {}

    @pytest.mark.asyncio
    async def test_remote_subscriber_keeps_message(self, mailbox):
        await mailbox.ensure_adapter_instance("remote-bi", "orders", "csv_file")
        worker = await _make_worker(mailbox, {"erp-1": RecordingDestination()})
        message_id = await _stage(mailbox)

        assert await worker.run_cycle() == {RELEASED: 1}
        message = await mailbox.store.get(message_id)
        assert message.status == MessageStatus.PENDING
        assert await mailbox.registry.pending_subscribers(message_id, "orders") == ["remote-bi"]

        # No longer owed by anything hosted here, so not even read
        assert await worker.run_cycle() == {}
        assert await worker.process_message(message) == SKIPPED

    @pytest.mark.asyncio
    async def test_finishes_message_when_all_subscribers_done(self, mailbox):
        destination = RecordingDestination()
        worker = await _make_worker(mailbox, {"erp-1": destination})
        message_id = await _stage(mailbox)
        await mailbox.registry.mark_processed(message_id, "erp-1")

        assert await worker.run_cycle() == {DELIVERED: 1}
        assert destination.writes == []
        assert await mailbox.store.get(message_id) is None

    @pytest.mark.asyncio
    async def test_lost_lease_is_contention(self, mailbox):
        worker = await _make_worker(mailbox, {"erp-1": RecordingDestination()})
        message_id = await _stage(mailbox)
        message = await mailbox.store.get(message_id)
        await mailbox.store.acquire_lease(message_id, timedelta(minutes=5))

        assert await worker.process_message(message) == CONTENDED
        assert worker.get_stats()["contended"] == 1

    @pytest.mark.asyncio
    async def test_structure_ensured_once_per_destination(self, mailbox):
        destination = RecordingDestination()
        worker = await _make_worker(mailbox, {"erp-1": destination})
        await _stage(mailbox, {"id": "1", "name": "Ann"})
        await _stage(mailbox, {"id": "2", "name": "Bob"})

        assert await worker.run_cycle() == {DELIVERED: 2}
        assert destination.structure_calls == 1


    @pytest.mark.asyncio
    async def test_remote_backlog_does_not_starve_local_delivery(self, mailbox):
        await mailbox.ensure_adapter_instance("remote-bi", "orders", "csv_file")
        destination = RecordingDestination()
        worker = await _make_worker(mailbox, {"erp-1": destination}, batch_size=2)
        for i in range(3):
            await _stage(mailbox, {"id": str(i), "name": f"n{i}"})

        for _ in range(3):
            await worker.run_cycle()

        assert sorted(records[0]["id"] for _, records in destination.writes) == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_undecodable_body_dead_letters_and_cycle_continues(self, mailbox, make_message):
        destination = RecordingDestination()
        worker = await _make_worker(mailbox, {"erp-1": destination})
        broken = make_message()
        broken.body = "not json"
        await mailbox.store.write(broken)
        good_id = await _stage(mailbox, {"id": "2", "name": "Bob"})

        outcomes = await worker.run_cycle()

        assert outcomes == {DEAD_LETTERED: 1, DELIVERED: 1}
        message = await mailbox.store.get(broken.id)
        assert message.status == MessageStatus.DEAD_LETTER
        assert message.error_message.startswith("Undecodable message body")
        assert destination.writes == [(HEADERS, [{"id": "2", "name": "Bob"}])]
        assert await mailbox.store.get(good_id) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_on_one_message_is_logged_and_skipped(self, mailbox, monkeypatch):
        destination = RecordingDestination()
        worker = await _make_worker(mailbox, {"erp-1": destination})
        first_id = await _stage(mailbox, {"id": "1", "name": "Ann"})
        await _stage(mailbox, {"id": "2", "name": "Bob"})
        original = worker.process_message

        async def failing_first(message):
            if message.id == first_id:
                raise KeyError("unexpected")
            return await original(message)

        monkeypatch.setattr(worker, "process_message", failing_first)

        assert await worker.run_cycle() == {DELIVERED: 1}
        assert destination.writes == [(HEADERS, [{"id": "2", "name": "Bob"}])]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_subscribes_delivers_and_stops(self, mailbox):
        destination = RecordingDestination()
        health_server = MagicMock()
        worker = DeliveryWorker(
            "orders",
            mailbox,
            {"erp-1": destination},
            poll_interval=0.01,
            health_server=health_server,
        )
        message_id = await _stage(mailbox)

        task = asyncio.create_task(worker.start())
        for _ in range(200):
            if destination.writes:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert not worker.is_running
        assert [s.instance_id for s in await mailbox.registry.get_subscriptions("orders")] == ["erp-1"]
        assert await mailbox.store.get(message_id) is None
        health_server.record_heartbeat.assert_called()

    @pytest.mark.asyncio
    async def test_loop_survives_unexpected_cycle_error(self, mailbox, monkeypatch):
        worker = await _make_worker(mailbox, {"erp-1": RecordingDestination()})
        calls = []

        async def broken_cycle():
            calls.append(1)
            raise RuntimeError("store driver bug")

        monkeypatch.setattr(worker, "run_cycle", broken_cycle)
        task = asyncio.create_task(worker.start())
        for _ in range(200):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        assert len(calls) >= 2
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_start_disables_configured_off_destinations(self, mailbox):
        await mailbox.ensure_adapter_instance("erp-old", "orders", "csv_file")
        destination = RecordingDestination()
        worker = DeliveryWorker(
            "orders",
            mailbox,
            {"erp-1": destination},
            disabled={"erp-old": "csv_file"},
            poll_interval=0.01,
        )
        message_id = await _stage(mailbox)

        task = asyncio.create_task(worker.start())
        for _ in range(200):
            if await mailbox.store.get(message_id) is None:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(task, timeout=5)

        enabled = await mailbox.registry.get_subscriptions("orders")
        assert [s.instance_id for s in enabled] == ["erp-1"]
        # Nothing waits on the disabled instance, so the message was purged
        assert await mailbox.store.get(message_id) is None
