"""Local filesystem JSON backend for the staging engine.

Implements StagingStore, SubscriptionRegistry and TransportLockTracker using
local JSON files, for development, tests and single-node deployments where a
database is not configured.

Architecture:
- One JSON file per table (messages, subscriptions, processing records,
  transport locks)
- Atomic writes via write-to-temp + os.replace() for crash safety
- asyncio.Lock per file path; every operation reads, mutates and writes the
  table while holding it, which makes acquire_lease a single conditional
  update within the process

File structure:
    <storage_path>/
      messages.json
      subscriptions.json
      processing_records.json
      transport_locks.json

Limitations:
- Single-process concurrency only (no cross-process file locking)
- Every write rewrites the whole table; use the sql backend for volume
"""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator

from core.errors import LeaseError, MessageNotFoundError, StoreUnavailableError
from core.utils import json_serializer
from staging.models import (
    LockStatus,
    Message,
    MessageStatus,
    ProcessingRecord,
    ProcessingStatus,
    Subscription,
    TransportLock,
    utc_now,
)
from staging.store.base import MAX_RETRIES_EXCEEDED_PREFIX

logger = logging.getLogger(__name__)

_TERMINAL_LOCK_STATUSES = (LockStatus.COMPLETED, LockStatus.ABANDONED, LockStatus.DEAD_LETTERED)


class JsonTable:
    """One JSON file holding ``{"rows": {key: row_dict}}``."""

    def __init__(self, file_path: Path, lock: asyncio.Lock) -> None:
        self.file_path = file_path
        self._lock = lock

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[dict[str, dict[str, Any]]]:
        """Hold the table lock; rows are written back when the block exits cleanly."""
        async with self._lock:
            rows = self._read_json()
            yield rows
            self._write_json(rows)

    async def snapshot(self) -> dict[str, dict[str, Any]]:
        async with self._lock:
            return self._read_json()

    def _read_json(self) -> dict[str, dict[str, Any]]:
        """Read the table; a missing file is an empty table.

        A corrupt or unreadable file raises StoreUnavailableError and is left
        untouched, so no transaction can write an emptied table over it.
        """
        if not self.file_path.exists():
            return {}
        try:
            with open(self.file_path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(
                f"Failed to read {self.file_path}: {e}",
                extra={"file_path": str(self.file_path)},
            )
            raise StoreUnavailableError(
                f"Staging table {self.file_path} is unreadable: {e}", cause=e
            ) from e
        if not isinstance(data, dict) or not isinstance(data.get("rows"), dict):
            logger.error(
                f"Malformed JSON in {self.file_path}", extra={"file_path": str(self.file_path)}
            )
            raise StoreUnavailableError(f"Staging table {self.file_path} is malformed")
        return data["rows"]

    def _write_json(self, rows: dict[str, dict[str, Any]]) -> None:
        """Atomic write: write to temp file then os.replace().

        On Windows, os.replace() can fail with PermissionError when another
        process (antivirus, search indexer, etc.) briefly locks the target
        file. Retries with short delays handle this transient condition.
        """
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"rows": rows}, f, indent=2, default=json_serializer, ensure_ascii=False)

        max_retries = 5
        for attempt in range(max_retries):
            try:
                os.replace(str(tmp_path), str(self.file_path))
                return
            except PermissionError:
                if attempt < max_retries - 1:
                    delay = 0.05 * (2**attempt)
                    logger.debug(
                        f"os.replace failed for {self.file_path.name} "
                        f"(attempt {attempt + 1}/{max_retries}), "
                        f"retrying in {delay * 1000:.0f}ms"
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"os.replace failed for {self.file_path.name} "
                        f"after {max_retries} attempts, raising"
                    )
                    raise


def _sort_oldest_first(messages: list[Message]) -> list[Message]:
    return sorted(messages, key=lambda m: (m.created_at, m.id))


def _limited(items: list, limit: int | None) -> list:
    return items if limit is None else items[:limit]


class JsonStagingStore:
    """StagingStore over messages.json.

    The registry is only consulted for owed_by filtering on reads.
    """

    def __init__(self, table: JsonTable, registry: "JsonSubscriptionRegistry | None" = None) -> None:
        self._table = table
        self._registry = registry

    async def write(self, message: Message) -> str:
        async with self._table.transaction() as rows:
            rows[message.id] = message.to_dict()
        return message.id

    async def write_many(self, messages: list[Message]) -> list[str]:
        async with self._table.transaction() as rows:
            for message in messages:
                rows[message.id] = message.to_dict()
        return [m.id for m in messages]

    async def get(self, message_id: str) -> Message | None:
        rows = await self._table.snapshot()
        row = rows.get(message_id)
        return Message.from_dict(row) if row else None

    async def _select(self, predicate) -> list[Message]:
        rows = await self._table.snapshot()
        messages = (Message.from_dict(row) for row in rows.values())
        return [m for m in messages if predicate(m)]

    async def _owed(
        self, interface_name: str, owed_by: list[str], messages: list[Message]
    ) -> list[Message]:
        """Keep messages some owed_by instance has not processed, or that every
        enabled subscriber has processed (left for the message to be resolved)."""
        if self._registry is None:
            raise ValueError("owed_by filtering needs the subscription registry")
        done = await self._registry.processed_instances()
        subscribers = {s.instance_id for s in await self._registry.get_subscriptions(interface_name)}
        hosted = set(owed_by)
        return [
            m
            for m in messages
            if not hosted <= done.get(m.id, set()) or subscribers <= done.get(m.id, set())
        ]

    async def read_pending(
        self,
        interface_name: str,
        limit: int | None = None,
        owed_by: list[str] | None = None,
    ) -> list[Message]:
        found = await self._select(
            lambda m: m.interface_name == interface_name and m.status == MessageStatus.PENDING
        )
        if owed_by is not None:
            found = await self._owed(interface_name, owed_by, found)
        return _limited(_sort_oldest_first(found), limit)

    async def read_by_status(
        self,
        interface_name: str,
        status: MessageStatus,
        limit: int | None = None,
    ) -> list[Message]:
        found = await self._select(
            lambda m: m.interface_name == interface_name and m.status == status
        )
        return _limited(_sort_oldest_first(found), limit)

    async def read_retryable(
        self,
        interface_name: str,
        min_delay: timedelta,
        limit: int | None = None,
        owed_by: list[str] | None = None,
    ) -> list[Message]:
        cutoff = utc_now() - min_delay
        found = await self._select(
            lambda m: m.interface_name == interface_name
            and m.status == MessageStatus.ERROR
            and m.has_retry_budget
            and (m.last_retry_at is None or m.last_retry_at <= cutoff)
        )
        if owed_by is not None:
            found = await self._owed(interface_name, owed_by, found)
        found.sort(key=lambda m: (m.retry_count, m.last_retry_at or m.created_at, m.id))
        return _limited(found, limit)

    async def read_dead_letters(
        self, interface_name: str | None = None, limit: int | None = None
    ) -> list[Message]:
        found = await self._select(
            lambda m: m.status == MessageStatus.DEAD_LETTER
            and (interface_name is None or m.interface_name == interface_name)
        )
        return _limited(_sort_oldest_first(found), limit)

    async def count_dead_letters(self, interface_name: str | None = None) -> int:
        found = await self._select(
            lambda m: m.status == MessageStatus.DEAD_LETTER
            and (interface_name is None or m.interface_name == interface_name)
        )
        return len(found)

    async def find_by_hash(
        self,
        message_hash: str,
        interface_name: str,
        adapter_name: str,
        adapter_instance_id: str | None,
        since: datetime,
    ) -> Message | None:
        found = await self._select(
            lambda m: m.message_hash == message_hash
            and m.interface_name == interface_name
            and m.adapter_name == adapter_name
            and m.adapter_instance_id == adapter_instance_id
            and m.created_at >= since
        )
        if not found:
            return None
        return max(found, key=lambda m: m.created_at)

    @asynccontextmanager
    async def _mutate(self, message_id: str) -> AsyncIterator[Message | None]:
        """Yield the message for in-place mutation; yields None for dead letters."""
        async with self._table.transaction() as rows:
            row = rows.get(message_id)
            if row is None:
                raise MessageNotFoundError(message_id)
            message = Message.from_dict(row)
            if message.status == MessageStatus.DEAD_LETTER:
                logger.warning(
                    "Ignoring update to dead-lettered message",
                    extra={"message_id": message_id},
                )
                yield None
                return
            yield message
            rows[message_id] = message.to_dict()

    async def acquire_lease(self, message_id: str, timeout: timedelta) -> bool:
        async with self._table.transaction() as rows:
            row = rows.get(message_id)
            if row is None:
                return False
            message = Message.from_dict(row)
            leasable = message.status == MessageStatus.PENDING or (
                message.status == MessageStatus.ERROR and message.has_retry_budget
            )
            if not leasable:
                return False
            message.status = MessageStatus.IN_PROGRESS
            message.in_progress_until = utc_now() + timeout
            rows[message_id] = message.to_dict()
            return True

    async def release_lease(
        self, message_id: str, revert_to: MessageStatus = MessageStatus.PENDING
    ) -> None:
        if revert_to not in (MessageStatus.PENDING, MessageStatus.ERROR):
            raise ValueError(f"release_lease can only revert to Pending or Error, got {revert_to}")
        async with self._mutate(message_id) as message:
            if message is None:
                return
            if message.status != MessageStatus.IN_PROGRESS:
                raise LeaseError(message_id, message.status.value)
            message.status = revert_to
            message.in_progress_until = None

    async def mark_processed(self, message_id: str, details: str | None = None) -> None:
        async with self._mutate(message_id) as message:
            if message is None:
                return
            message.status = MessageStatus.PROCESSED
            message.processed_at = utc_now()
            message.processing_details = details
            message.in_progress_until = None
            message.error_message = None

    async def mark_error(self, message_id: str, error_message: str) -> MessageStatus:
        async with self._mutate(message_id) as message:
            if message is None:
                return MessageStatus.DEAD_LETTER
            message.retry_count += 1
            message.last_retry_at = utc_now()
            message.in_progress_until = None
            if message.retry_count > message.max_retries:
                prefix = MAX_RETRIES_EXCEEDED_PREFIX.format(max_retries=message.max_retries)
                message.status = MessageStatus.DEAD_LETTER
                message.dead_letter = True
                message.error_message = f"{prefix}: {error_message}"
            else:
                message.status = MessageStatus.ERROR
                message.error_message = error_message
            return message.status

    async def move_to_dead_letter(self, message_id: str, reason: str) -> None:
        async with self._mutate(message_id) as message:
            if message is None:
                return
            message.status = MessageStatus.DEAD_LETTER
            message.dead_letter = True
            message.error_message = reason
            message.in_progress_until = None

    async def reap_stale_leases(self, grace: timedelta = timedelta(0)) -> int:
        cutoff = utc_now() - grace
        reaped = 0
        async with self._table.transaction() as rows:
            for message_id, row in rows.items():
                message = Message.from_dict(row)
                if message.status != MessageStatus.IN_PROGRESS:
                    continue
                if message.in_progress_until is not None and message.in_progress_until >= cutoff:
                    continue
                message.status = (
                    MessageStatus.PENDING if message.retry_count == 0 else MessageStatus.ERROR
                )
                message.in_progress_until = None
                rows[message_id] = message.to_dict()
                reaped += 1
        return reaped

    async def purge(self, message_id: str) -> bool:
        async with self._table.transaction() as rows:
            return rows.pop(message_id, None) is not None

    async def purge_dead_letters(self, older_than: timedelta) -> int:
        cutoff = utc_now() - older_than
        async with self._table.transaction() as rows:
            doomed = [
                message_id
                for message_id, row in rows.items()
                if (m := Message.from_dict(row)).status == MessageStatus.DEAD_LETTER
                and (m.last_retry_at or m.created_at) < cutoff
            ]
            for message_id in doomed:
                del rows[message_id]
        return len(doomed)


def _subscription_key(instance_id: str, interface_name: str) -> str:
    return f"{interface_name}|{instance_id}"


def _record_key(message_id: str, instance_id: str) -> str:
    return f"{message_id}|{instance_id}"


class JsonSubscriptionRegistry:
    """SubscriptionRegistry over subscriptions.json and processing_records.json."""

    def __init__(self, subscriptions: JsonTable, records: JsonTable) -> None:
        self._subscriptions = subscriptions
        self._records = records

    async def subscribe(self, instance_id: str, interface_name: str, adapter_name: str) -> Subscription:
        key = _subscription_key(instance_id, interface_name)
        async with self._subscriptions.transaction() as rows:
            row = rows.get(key)
            if row is None:
                subscription = Subscription(instance_id, interface_name, adapter_name)
            else:
                subscription = Subscription.from_dict(row)
                subscription.enabled = True
                subscription.adapter_name = adapter_name
                subscription.updated_at = utc_now()
            rows[key] = subscription.to_dict()
            return subscription

    async def unsubscribe(self, instance_id: str, interface_name: str) -> bool:
        key = _subscription_key(instance_id, interface_name)
        async with self._subscriptions.transaction() as rows:
            row = rows.get(key)
            if row is None:
                return False
            subscription = Subscription.from_dict(row)
            subscription.enabled = False
            subscription.updated_at = utc_now()
            rows[key] = subscription.to_dict()
            return True

    async def get_subscriptions(
        self, interface_name: str, include_disabled: bool = False
    ) -> list[Subscription]:
        rows = await self._subscriptions.snapshot()
        subscriptions = [Subscription.from_dict(row) for row in rows.values()]
        return sorted(
            (
                s
                for s in subscriptions
                if s.interface_name == interface_name and (include_disabled or s.enabled)
            ),
            key=lambda s: s.instance_id,
        )

    async def begin_processing(self, message_id: str, instance_id: str) -> ProcessingRecord:
        key = _record_key(message_id, instance_id)
        async with self._records.transaction() as rows:
            row = rows.get(key)
            if row is not None:
                return ProcessingRecord.from_dict(row)
            record = ProcessingRecord(message_id, instance_id)
            rows[key] = record.to_dict()
            return record

    async def _resolve(
        self,
        message_id: str,
        instance_id: str,
        status: ProcessingStatus,
        details: str | None = None,
        error_message: str | None = None,
    ) -> ProcessingRecord:
        key = _record_key(message_id, instance_id)
        async with self._records.transaction() as rows:
            row = rows.get(key)
            record = (
                ProcessingRecord.from_dict(row)
                if row is not None
                else ProcessingRecord(message_id, instance_id)
            )
            if record.status == ProcessingStatus.PROCESSED:
                # Processed is terminal
                return record
            record.status = status
            record.processed_at = utc_now()
            if details is not None:
                record.details = details
            record.error_message = error_message
            rows[key] = record.to_dict()
            return record

    async def mark_processed(
        self, message_id: str, instance_id: str, details: str | None = None
    ) -> ProcessingRecord:
        return await self._resolve(message_id, instance_id, ProcessingStatus.PROCESSED, details=details)

    async def mark_error(
        self, message_id: str, instance_id: str, error_message: str
    ) -> ProcessingRecord:
        return await self._resolve(
            message_id, instance_id, ProcessingStatus.ERROR, error_message=error_message
        )

    async def get_record(self, message_id: str, instance_id: str) -> ProcessingRecord | None:
        rows = await self._records.snapshot()
        row = rows.get(_record_key(message_id, instance_id))
        return ProcessingRecord.from_dict(row) if row else None

    async def records_for(self, message_id: str) -> list[ProcessingRecord]:
        rows = await self._records.snapshot()
        records = [ProcessingRecord.from_dict(row) for row in rows.values()]
        return sorted(
            (r for r in records if r.message_id == message_id), key=lambda r: r.instance_id
        )

    async def processed_instances(self) -> dict[str, set[str]]:
        """message_id -> instance ids holding a Processed record for it."""
        rows = await self._records.snapshot()
        done: dict[str, set[str]] = {}
        for record in (ProcessingRecord.from_dict(row) for row in rows.values()):
            if record.status == ProcessingStatus.PROCESSED:
                done.setdefault(record.message_id, set()).add(record.instance_id)
        return done

    async def pending_subscribers(self, message_id: str, interface_name: str) -> list[str]:
        subscriptions = await self.get_subscriptions(interface_name)
        done = {
            r.instance_id
            for r in await self.records_for(message_id)
            if r.status == ProcessingStatus.PROCESSED
        }
        return [s.instance_id for s in subscriptions if s.instance_id not in done]

    async def all_subscribers_done(self, message_id: str, interface_name: str) -> bool:
        return not await self.pending_subscribers(message_id, interface_name)

    async def delete_records(self, message_id: str) -> int:
        async with self._records.transaction() as rows:
            doomed = [k for k, row in rows.items() if row.get("message_id") == message_id]
            for key in doomed:
                del rows[key]
        return len(doomed)


class JsonTransportLockTracker:
    """TransportLockTracker over transport_locks.json, keyed by message id."""

    def __init__(self, table: JsonTable) -> None:
        self._table = table

    async def record_lock(
        self,
        message_id: str,
        lock_token: str,
        expires_at: datetime,
        delivery_count: int = 1,
        interface_name: str = "",
        instance_id: str = "",
        topic: str | None = None,
        subscription: str | None = None,
    ) -> TransportLock:
        async with self._table.transaction() as rows:
            row = rows.get(message_id)
            if row is None:
                lock = TransportLock(
                    message_id=message_id,
                    lock_token=lock_token,
                    expires_at=expires_at,
                    interface_name=interface_name,
                    instance_id=instance_id,
                    topic=topic,
                    subscription=subscription,
                    delivery_count=delivery_count,
                )
            else:
                lock = TransportLock.from_dict(row)
                lock.lock_token = lock_token
                lock.expires_at = expires_at
                lock.delivery_count = delivery_count
                lock.status = LockStatus.ACTIVE
                lock.acquired_at = utc_now()
                lock.completed_at = None
                lock.completion_reason = None
                lock.interface_name = interface_name or lock.interface_name
                lock.instance_id = instance_id or lock.instance_id
                lock.topic = topic or lock.topic
                lock.subscription = subscription or lock.subscription
            rows[message_id] = lock.to_dict()
            return lock

    async def get_lock(self, message_id: str) -> TransportLock | None:
        rows = await self._table.snapshot()
        row = rows.get(message_id)
        return TransportLock.from_dict(row) if row else None

    async def renew_lock(self, message_id: str, new_expires_at: datetime) -> bool:
        async with self._table.transaction() as rows:
            row = rows.get(message_id)
            if row is None:
                return False
            lock = TransportLock.from_dict(row)
            if lock.status != LockStatus.ACTIVE:
                return False
            lock.expires_at = new_expires_at
            lock.last_renewed_at = utc_now()
            lock.renewal_count += 1
            rows[message_id] = lock.to_dict()
            return True

    async def update_lock_status(
        self, message_id: str, status: LockStatus, reason: str | None = None
    ) -> bool:
        async with self._table.transaction() as rows:
            row = rows.get(message_id)
            if row is None:
                return False
            lock = TransportLock.from_dict(row)
            lock.status = status
            if status in _TERMINAL_LOCK_STATUSES:
                lock.completed_at = utc_now()
                lock.completion_reason = reason
            rows[message_id] = lock.to_dict()
            return True

    async def get_expired_locks(self) -> list[TransportLock]:
        now = utc_now()
        expired = []
        async with self._table.transaction() as rows:
            for message_id, row in rows.items():
                lock = TransportLock.from_dict(row)
                if lock.status == LockStatus.ACTIVE and lock.expires_at < now:
                    lock.status = LockStatus.EXPIRED
                    rows[message_id] = lock.to_dict()
                    expired.append(lock)
        return expired

    async def get_locks_needing_renewal(self, threshold: timedelta) -> list[TransportLock]:
        now = utc_now()
        horizon = now + threshold
        rows = await self._table.snapshot()
        locks = [TransportLock.from_dict(row) for row in rows.values()]
        return sorted(
            (
                lock
                for lock in locks
                if lock.status == LockStatus.ACTIVE and now <= lock.expires_at <= horizon
            ),
            key=lambda lock: lock.expires_at,
        )

    async def get_active_locks(self, instance_id: str | None = None) -> list[TransportLock]:
        rows = await self._table.snapshot()
        locks = [TransportLock.from_dict(row) for row in rows.values()]
        return [
            lock
            for lock in locks
            if lock.status == LockStatus.ACTIVE
            and (instance_id is None or lock.instance_id == instance_id)
        ]

    async def cleanup_old_locks(self, retention: timedelta) -> int:
        cutoff = utc_now() - retention
        async with self._table.transaction() as rows:
            doomed = [
                message_id
                for message_id, row in rows.items()
                if (lock := TransportLock.from_dict(row)).status != LockStatus.ACTIVE
                and (lock.completed_at or lock.expires_at) < cutoff
            ]
            for message_id in doomed:
                del rows[message_id]
        return len(doomed)


class JsonStagingBackend:
    """All three stores on one directory of JSON files."""

    def __init__(self, storage_path: str | Path) -> None:
        self._base_path = Path(storage_path)
        self._locks: dict[str, asyncio.Lock] = {}

        self.registry = JsonSubscriptionRegistry(
            self._table("subscriptions.json"), self._table("processing_records.json")
        )
        self.store = JsonStagingStore(self._table("messages.json"), registry=self.registry)
        self.locks = JsonTransportLockTracker(self._table("transport_locks.json"))

        logger.info(
            "JsonStagingBackend initialized",
            extra={"file_path": str(self._base_path), "backend": "json"},
        )

    def _get_lock(self, file_path: str) -> asyncio.Lock:
        """Get or create an asyncio.Lock for the given file path."""
        if file_path not in self._locks:
            self._locks[file_path] = asyncio.Lock()
        return self._locks[file_path]

    def _table(self, filename: str) -> JsonTable:
        file_path = self._base_path / filename
        return JsonTable(file_path, self._get_lock(str(file_path)))

    async def ensure_schema(self) -> None:
        self._base_path.mkdir(parents=True, exist_ok=True)

    async def ping(self) -> bool:
        return self._base_path.is_dir() and os.access(self._base_path, os.W_OK)

    async def close(self) -> None:
        logger.debug("JsonStagingBackend closed (no-op)")


__all__ = [
    "JsonStagingBackend",
    "JsonStagingStore",
    "JsonSubscriptionRegistry",
    "JsonTransportLockTracker",
    "JsonTable",
]
