"""Tests for MessageBox staging, deduplication and purge gating."""

from datetime import timedelta

import pytest

from staging.mailbox import MessageBox
from staging.models import AdapterType, MessageStatus

HEADERS = ["id", "name"]


@pytest.fixture
def mailbox(backend):
    return MessageBox(backend.store, backend.registry, max_retries=2)


class TestWriteRecord:
    @pytest.mark.asyncio
    async def test_stages_pending_message(self, mailbox):
        message_id = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1, "name": "Ann"})

        message = await mailbox.store.get(message_id)
        assert message.status == MessageStatus.PENDING
        assert message.max_retries == 2
        assert message.adapter_type == AdapterType.SOURCE
        assert message.message_hash is not None
        assert MessageBox.extract_payload(message) == (HEADERS, {"id": "1", "name": "Ann"})

    @pytest.mark.asyncio
    async def test_per_call_max_retries(self, mailbox):
        message_id = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1}, max_retries=0)
        assert (await mailbox.store.get(message_id)).max_retries == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interface, adapter", [("", "csv_file"), ("orders", "  ")])
    async def test_rejects_blank_names(self, mailbox, interface, adapter):
        with pytest.raises(ValueError, match="cannot be empty"):
            await mailbox.write_record(interface, adapter, HEADERS, {"id": 1})

    @pytest.mark.asyncio
    async def test_rejects_unconvertible_record(self, mailbox):
        with pytest.raises(ValueError):
            await mailbox.write_record("orders", "csv_file", [], {})

    @pytest.mark.asyncio
    async def test_deduplicate_returns_existing_id(self, mailbox):
        first = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1}, deduplicate=True)
        second = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1}, deduplicate=True)
        assert first == second
        assert len(await mailbox.store.read_pending("orders")) == 1

    @pytest.mark.asyncio
    async def test_duplicates_kept_without_flag(self, mailbox):
        first = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1})
        second = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1})
        assert first != second

    @pytest.mark.asyncio
    async def test_dedup_window_expired(self, backend):
        mailbox = MessageBox(backend.store, backend.registry, dedup_window=timedelta(seconds=-1))
        first = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1}, deduplicate=True)
        second = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1}, deduplicate=True)
        assert first != second


class TestWriteBatch:
    @pytest.mark.asyncio
    async def test_one_message_per_record_in_order(self, mailbox):
        records = [{"id": str(i), "name": f"n{i}"} for i in range(3)]
        ids = await mailbox.write_batch("orders", "csv_file", HEADERS, records)

        assert len(ids) == 3
        bodies = [(await mailbox.store.get(i)).payload.record for i in ids]
        assert bodies == records

    @pytest.mark.asyncio
    async def test_bad_record_dropped_not_fatal(self, mailbox):
        records = [{"id": "1"}, {"id": "2", "bogus": "x"}, {"id": "3"}]
        ids = await mailbox.write_batch("orders", "csv_file", HEADERS, records)

        assert len(ids) == 2
        staged = [(await mailbox.store.get(i)).payload.record["id"] for i in ids]
        assert staged == ["1", "3"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, mailbox):
        assert await mailbox.write_batch("orders", "csv_file", HEADERS, []) == []

    @pytest.mark.asyncio
    async def test_deduplicates_within_batch(self, mailbox):
        records = [{"id": "1"}, {"id": "1"}, {"id": "2"}]
        ids = await mailbox.write_batch("orders", "csv_file", HEADERS, records, deduplicate=True)

        assert ids[0] == ids[1]
        assert len(set(ids)) == 2
        assert len(await mailbox.store.read_pending("orders")) == 2


class TestPurge:
    @pytest.mark.asyncio
    async def test_refused_until_all_subscribers_done(self, mailbox):
        await mailbox.ensure_adapter_instance("erp-1", "orders", "csv_file")
        await mailbox.ensure_adapter_instance("erp-2", "orders", "csv_file")
        message_id = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1})

        await mailbox.registry.mark_processed(message_id, "erp-1")
        assert await mailbox.purge(message_id) is False
        assert await mailbox.store.get(message_id) is not None

        await mailbox.registry.mark_processed(message_id, "erp-2")
        assert await mailbox.purge(message_id) is True
        assert await mailbox.store.get(message_id) is None
        assert await mailbox.registry.records_for(message_id) == []

    @pytest.mark.asyncio
    async def test_disabled_instance_does_not_block(self, mailbox):
        await mailbox.ensure_adapter_instance("erp-1", "orders", "csv_file")
        await mailbox.ensure_adapter_instance("erp-2", "orders", "csv_file", enabled=False)
        message_id = await mailbox.write_record("orders", "csv_file", HEADERS, {"id": 1})

        await mailbox.registry.mark_processed(message_id, "erp-1")
        assert await mailbox.purge(message_id) is True

    @pytest.mark.asyncio
    async def test_unknown_message(self, mailbox):
        assert await mailbox.purge("missing") is False
