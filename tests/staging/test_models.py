"""Tests for staging data model types."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from staging.models import (
    LockStatus,
    Message,
    MessagePayload,
    MessageStatus,
    ProcessingRecord,
    TransportLock,
    content_hash,
)


class TestMessagePayload:
    def test_from_record_stringifies_values(self):
        payload = MessagePayload.from_record(["id", "qty", "note"], {"id": 1, "qty": 2.5, "note": None})
        assert payload.record == {"id": "1", "qty": "2.5", "note": ""}

    def test_missing_columns_allowed(self):
        payload = MessagePayload.from_record(["id", "name"], {"id": "1"})
        assert payload.record == {"id": "1"}

    def test_unknown_columns_rejected(self):
        with pytest.raises(ValueError, match="not in headers"):
            MessagePayload.from_record(["id"], {"id": "1", "extra": "x"})

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            MessagePayload.from_record(["id"], ["1"])

    def test_empty_headers_rejected(self):
        with pytest.raises(ValidationError):
            MessagePayload(headers=[], record={})

    def test_body_keeps_unicode_and_order(self):
        payload = MessagePayload(headers=["name", "city"], record={"name": "Zoë", "city": "Köln"})
        body = payload.to_body()
        assert body == '{"headers":["name","city"],"record":{"name":"Zoë","city":"Köln"}}'
        assert MessagePayload.from_body(body) == payload


class TestContentHash:
    def test_sha256_hex(self):
        assert content_hash("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_differs_by_content(self):
        assert content_hash("a") != content_hash("b")


class TestMessage:
    def test_defaults(self):
        message = Message(interface_name="orders", adapter_name="csv_file", body="{}")
        assert message.status == MessageStatus.PENDING
        assert message.retry_count == 0
        assert message.max_retries == 3
        assert message.dead_letter is False
        assert message.created_at.tzinfo is not None
        assert len(message.id) == 36

    def test_retry_budget(self):
        message = Message(interface_name="o", adapter_name="a", body="{}", max_retries=1)
        assert message.has_retry_budget
        message.retry_count = 2
        assert not message.has_retry_budget

    def test_dict_round_trip_restores_types(self):
        message = Message(interface_name="o", adapter_name="a", body="{}", status=MessageStatus.ERROR)
        data = message.to_dict()
        assert data["status"] == "Error"
        assert isinstance(data["created_at"], str)

        restored = Message.from_dict(data | {"unknown_key": 1})
        assert restored == message

    def test_naive_timestamps_read_as_utc(self):
        data = Message(interface_name="o", adapter_name="a", body="{}").to_dict()
        data["created_at"] = "2024-01-05T10:00:00"
        assert Message.from_dict(data).created_at == datetime(2024, 1, 5, 10, tzinfo=UTC)


class TestRows:
    def test_processing_record_status_enum(self):
        record = ProcessingRecord.from_dict({"message_id": "m", "instance_id": "i", "status": "Processed"})
        assert record.status.value == "Processed"

    def test_transport_lock_from_dict(self):
        lock = TransportLock.from_dict(
            {
                "message_id": "m",
                "lock_token": "t",
                "expires_at": "2024-01-05T10:00:00+00:00",
                "status": "Expired",
            }
        )
        assert lock.status == LockStatus.EXPIRED
        assert lock.expires_at.tzinfo is not None
