"""SQLAlchemy async backend for the staging engine.

Implements StagingStore, SubscriptionRegistry and TransportLockTracker over
any database SQLAlchemy has an async driver for (SQLite via aiosqlite for
tests and single hosts, PostgreSQL via asyncpg for shared deployments).

acquire_lease is one conditional UPDATE; the affected row count decides the
winner, so concurrent workers in separate processes never both lease a
message. Every other multi-step mutation runs inside a single transaction
that reads the row with FOR UPDATE where the dialect supports it.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator

from sqlalchemy import and_, delete, func, or_, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import LeaseError, MessageNotFoundError, StoreUnavailableError
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
from staging.store.db import create_engine_and_sessions, redact_url
from staging.store.orm_models import (
    Base,
    MessageRow,
    ProcessingRecordRow,
    SubscriptionRow,
    TransportLockRow,
)

logger = logging.getLogger(__name__)

_TERMINAL_LOCK_STATUSES = (LockStatus.COMPLETED, LockStatus.ABANDONED, LockStatus.DEAD_LETTERED)

_PROCESSED = ProcessingStatus.PROCESSED.value


def _owed_clause(owed_by: list[str]):
    """Messages some instance in owed_by has not processed yet, or that every
    enabled subscriber has processed (left for the message to be resolved)."""
    hosted_done = (
        select(func.count())
        .select_from(ProcessingRecordRow)
        .where(
            ProcessingRecordRow.message_id == MessageRow.id,
            ProcessingRecordRow.instance_id.in_(owed_by),
            ProcessingRecordRow.status == _PROCESSED,
        )
        .correlate(MessageRow)
        .scalar_subquery()
    )
    processed_by_subscriber = (
        select(ProcessingRecordRow.message_id)
        .where(
            ProcessingRecordRow.message_id == MessageRow.id,
            ProcessingRecordRow.instance_id == SubscriptionRow.instance_id,
            ProcessingRecordRow.status == _PROCESSED,
        )
        .correlate(MessageRow, SubscriptionRow)
        .exists()
    )
    subscriber_waiting = (
        select(SubscriptionRow.instance_id)
        .where(
            SubscriptionRow.interface_name == MessageRow.interface_name,
            SubscriptionRow.enabled.is_(True),
            ~processed_by_subscriber,
        )
        .correlate(MessageRow)
        .exists()
    )
    return or_(hosted_done < len(set(owed_by)), ~subscriber_waiting)


class _SqlComponent:
    def __init__(self, sessions: async_sessionmaker) -> None:
        self._sessions = sessions

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session, session.begin():
                yield session
        except OperationalError as e:
            raise StoreUnavailableError("Staging database unavailable", cause=e) from e


class SqlStagingStore(_SqlComponent):
    """StagingStore over the staging_messages table."""

    async def write(self, message: Message) -> str:
        async with self._transaction() as session:
            session.add(MessageRow.from_model(message))
        return message.id

    async def write_many(self, messages: list[Message]) -> list[str]:
        async with self._transaction() as session:
            session.add_all([MessageRow.from_model(m) for m in messages])
        return [m.id for m in messages]

    async def get(self, message_id: str) -> Message | None:
        async with self._transaction() as session:
            row = await session.get(MessageRow, message_id)
            return row.to_model() if row else None

    async def _select(self, stmt) -> list[Message]:
        async with self._transaction() as session:
            result = await session.scalars(stmt)
            return [row.to_model() for row in result]

    async def read_pending(
        self,
        interface_name: str,
        limit: int | None = None,
        owed_by: list[str] | None = None,
    ) -> list[Message]:
        stmt = select(MessageRow).where(
            MessageRow.interface_name == interface_name,
            MessageRow.status == MessageStatus.PENDING.value,
        )
        if owed_by is not None:
            stmt = stmt.where(_owed_clause(owed_by))
        stmt = stmt.order_by(MessageRow.created_at, MessageRow.id).limit(limit)
        return await self._select(stmt)

    async def read_by_status(
        self,
        interface_name: str,
        status: MessageStatus,
        limit: int | None = None,
    ) -> list[Message]:
        stmt = (
            select(MessageRow)
            .where(MessageRow.interface_name == interface_name, MessageRow.status == status.value)
            .order_by(MessageRow.created_at, MessageRow.id)
            .limit(limit)
        )
        return await self._select(stmt)

    async def read_retryable(
        self,
        interface_name: str,
        min_delay: timedelta,
        limit: int | None = None,
        owed_by: list[str] | None = None,
    ) -> list[Message]:
        cutoff = utc_now() - min_delay
        stmt = select(MessageRow).where(
            MessageRow.interface_name == interface_name,
            MessageRow.status == MessageStatus.ERROR.value,
            MessageRow.dead_letter.is_(False),
            MessageRow.retry_count <= MessageRow.max_retries,
            or_(MessageRow.last_retry_at.is_(None), MessageRow.last_retry_at <= cutoff),
        )
        if owed_by is not None:
            stmt = stmt.where(_owed_clause(owed_by))
        stmt = stmt.order_by(MessageRow.retry_count, MessageRow.last_retry_at, MessageRow.id).limit(
            limit
        )
        return await self._select(stmt)

    async def read_dead_letters(
        self, interface_name: str | None = None, limit: int | None = None
    ) -> list[Message]:
        stmt = select(MessageRow).where(MessageRow.status == MessageStatus.DEAD_LETTER.value)
        if interface_name is not None:
            stmt = stmt.where(MessageRow.interface_name == interface_name)
        stmt = stmt.order_by(MessageRow.created_at, MessageRow.id).limit(limit)
        return await self._select(stmt)

    async def count_dead_letters(self, interface_name: str | None = None) -> int:
        stmt = select(func.count()).select_from(MessageRow).where(
            MessageRow.status == MessageStatus.DEAD_LETTER.value
        )
        if interface_name is not None:
            stmt = stmt.where(MessageRow.interface_name == interface_name)
        async with self._transaction() as session:
            return (await session.execute(stmt)).scalar_one()

    async def find_by_hash(
        self,
        message_hash: str,
        interface_name: str,
        adapter_name: str,
        adapter_instance_id: str | None,
        since: datetime,
    ) -> Message | None:
        instance_clause = (
            MessageRow.adapter_instance_id.is_(None)
            if adapter_instance_id is None
            else MessageRow.adapter_instance_id == adapter_instance_id
        )
        stmt = (
            select(MessageRow)
            .where(
                MessageRow.message_hash == message_hash,
                MessageRow.interface_name == interface_name,
                MessageRow.adapter_name == adapter_name,
                instance_clause,
                MessageRow.created_at >= since,
            )
            .order_by(MessageRow.created_at.desc())
            .limit(1)
        )
        found = await self._select(stmt)
        return found[0] if found else None

    @asynccontextmanager
    async def _mutate(self, message_id: str) -> AsyncIterator[MessageRow | None]:
        """Yield the locked row; yields None for dead letters."""
        async with self._transaction() as session:
            stmt = select(MessageRow).where(MessageRow.id == message_id).with_for_update()
            row = (await session.scalars(stmt)).first()
            if row is None:
                raise MessageNotFoundError(message_id)
            if row.status == MessageStatus.DEAD_LETTER.value:
                logger.warning(
                    "Ignoring update to dead-lettered message",
                    extra={"message_id": message_id},
                )
                yield None
                return
            yield row

    async def acquire_lease(self, message_id: str, timeout: timedelta) -> bool:
        stmt = (
            update(MessageRow)
            .where(
                MessageRow.id == message_id,
                MessageRow.dead_letter.is_(False),
                or_(
                    MessageRow.status == MessageStatus.PENDING.value,
                    and_(
                        MessageRow.status == MessageStatus.ERROR.value,
                        MessageRow.retry_count <= MessageRow.max_retries,
                    ),
                ),
            )
            .values(
                status=MessageStatus.IN_PROGRESS.value,
                in_progress_until=utc_now() + timeout,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def release_lease(
        self, message_id: str, revert_to: MessageStatus = MessageStatus.PENDING
    ) -> None:
        if revert_to not in (MessageStatus.PENDING, MessageStatus.ERROR):
            raise ValueError(f"release_lease can only revert to Pending or Error, got {revert_to}")
        async with self._mutate(message_id) as row:
            if row is None:
                return
            if row.status != MessageStatus.IN_PROGRESS.value:
                raise LeaseError(message_id, row.status)
            row.status = revert_to.value
            row.in_progress_until = None

    async def mark_processed(self, message_id: str, details: str | None = None) -> None:
        async with self._mutate(message_id) as row:
            if row is None:
                return
            row.status = MessageStatus.PROCESSED.value
            row.processed_at = utc_now()
            row.processing_details = details
            row.in_progress_until = None
            row.error_message = None

    async def mark_error(self, message_id: str, error_message: str) -> MessageStatus:
        async with self._mutate(message_id) as row:
            if row is None:
                return MessageStatus.DEAD_LETTER
            row.retry_count += 1
            row.last_retry_at = utc_now()
            row.in_progress_until = None
            if row.retry_count > row.max_retries:
                prefix = MAX_RETRIES_EXCEEDED_PREFIX.format(max_retries=row.max_retries)
                row.status = MessageStatus.DEAD_LETTER.value
                row.dead_letter = True
                row.error_message = f"{prefix}: {error_message}"
            else:
                row.status = MessageStatus.ERROR.value
                row.error_message = error_message
            return MessageStatus(row.status)

    async def move_to_dead_letter(self, message_id: str, reason: str) -> None:
        async with self._mutate(message_id) as row:
            if row is None:
                return
            row.status = MessageStatus.DEAD_LETTER.value
            row.dead_letter = True
            row.error_message = reason
            row.in_progress_until = None

    async def reap_stale_leases(self, grace: timedelta = timedelta(0)) -> int:
        cutoff = utc_now() - grace
        stale = and_(
            MessageRow.status == MessageStatus.IN_PROGRESS.value,
            or_(MessageRow.in_progress_until.is_(None), MessageRow.in_progress_until < cutoff),
        )
        reaped = 0
        async with self._transaction() as session:
            for revert_to, budget_clause in (
                (MessageStatus.PENDING, MessageRow.retry_count == 0),
                (MessageStatus.ERROR, MessageRow.retry_count > 0),
            ):
                result = await session.execute(
                    update(MessageRow)
                    .where(stale, budget_clause)
                    .values(status=revert_to.value, in_progress_until=None)
                    .execution_options(synchronize_session=False)
                )
                reaped += result.rowcount
        return reaped

    async def purge(self, message_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(delete(MessageRow).where(MessageRow.id == message_id))
            return result.rowcount > 0

    async def purge_dead_letters(self, older_than: timedelta) -> int:
        cutoff = utc_now() - older_than
        stmt = delete(MessageRow).where(
            MessageRow.status == MessageStatus.DEAD_LETTER.value,
            or_(
                and_(MessageRow.last_retry_at.is_not(None), MessageRow.last_retry_at < cutoff),
                and_(MessageRow.last_retry_at.is_(None), MessageRow.created_at < cutoff),
            ),
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount


class SqlSubscriptionRegistry(_SqlComponent):
    """SubscriptionRegistry over staging_subscriptions and staging_processing_records."""

    async def subscribe(self, instance_id: str, interface_name: str, adapter_name: str) -> Subscription:
        async with self._transaction() as session:
            row = await session.get(SubscriptionRow, (instance_id, interface_name))
            if row is None:
                row = SubscriptionRow.from_model(
                    Subscription(instance_id, interface_name, adapter_name)
                )
                session.add(row)
            else:
                row.enabled = True
                row.adapter_name = adapter_name
                row.updated_at = utc_now()
            await session.flush()
            return row.to_model()

    async def unsubscribe(self, instance_id: str, interface_name: str) -> bool:
        async with self._transaction() as session:
            row = await session.get(SubscriptionRow, (instance_id, interface_name))
            if row is None:
                return False
            row.enabled = False
            row.updated_at = utc_now()
            return True

    async def get_subscriptions(
        self, interface_name: str, include_disabled: bool = False
    ) -> list[Subscription]:
        stmt = select(SubscriptionRow).where(SubscriptionRow.interface_name == interface_name)
        if not include_disabled:
            stmt = stmt.where(SubscriptionRow.enabled.is_(True))
        stmt = stmt.order_by(SubscriptionRow.instance_id)
        async with self._transaction() as session:
            return [row.to_model() for row in await session.scalars(stmt)]

    async def begin_processing(self, message_id: str, instance_id: str) -> ProcessingRecord:
        try:
            async with self._transaction() as session:
                row = await session.get(ProcessingRecordRow, (message_id, instance_id))
                if row is not None:
                    return row.to_model()
                record = ProcessingRecord(message_id, instance_id)
                session.add(ProcessingRecordRow.from_model(record))
                return record
        except IntegrityError:
            # Lost the create race; the winner's row is the record
            existing = await self.get_record(message_id, instance_id)
            if existing is None:
                raise
            return existing

    async def _resolve(
        self,
        message_id: str,
        instance_id: str,
        status: ProcessingStatus,
        details: str | None = None,
        error_message: str | None = None,
    ) -> ProcessingRecord:
        async with self._transaction() as session:
            stmt = (
                select(ProcessingRecordRow)
                .where(
                    ProcessingRecordRow.message_id == message_id,
                    ProcessingRecordRow.instance_id == instance_id,
                )
                .with_for_update()
            )
            row = (await session.scalars(stmt)).first()
            if row is None:
                row = ProcessingRecordRow.from_model(ProcessingRecord(message_id, instance_id))
                session.add(row)
            elif row.status == ProcessingStatus.PROCESSED.value:
                # Processed is terminal
                return row.to_model()
            row.status = status.value
            row.processed_at = utc_now()
            if details is not None:
                row.details = details
            row.error_message = error_message
            await session.flush()
            return row.to_model()

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
        async with self._transaction() as session:
            row = await session.get(ProcessingRecordRow, (message_id, instance_id))
            return row.to_model() if row else None

    async def records_for(self, message_id: str) -> list[ProcessingRecord]:
        stmt = (
            select(ProcessingRecordRow)
            .where(ProcessingRecordRow.message_id == message_id)
            .order_by(ProcessingRecordRow.instance_id)
        )
        async with self._transaction() as session:
            return [row.to_model() for row in await session.scalars(stmt)]

    async def pending_subscribers(self, message_id: str, interface_name: str) -> list[str]:
        processed = select(ProcessingRecordRow.instance_id).where(
            ProcessingRecordRow.message_id == message_id,
            ProcessingRecordRow.status == ProcessingStatus.PROCESSED.value,
        )
        stmt = (
            select(SubscriptionRow.instance_id)
            .where(
                SubscriptionRow.interface_name == interface_name,
                SubscriptionRow.enabled.is_(True),
                SubscriptionRow.instance_id.not_in(processed),
            )
            .order_by(SubscriptionRow.instance_id)
        )
        async with self._transaction() as session:
            return list(await session.scalars(stmt))

    async def all_subscribers_done(self, message_id: str, interface_name: str) -> bool:
        return not await self.pending_subscribers(message_id, interface_name)

    async def delete_records(self, message_id: str) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                delete(ProcessingRecordRow).where(ProcessingRecordRow.message_id == message_id)
            )
            return result.rowcount


class SqlTransportLockTracker(_SqlComponent):
    """TransportLockTracker over staging_transport_locks, keyed by message id."""

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
        async with self._transaction() as session:
            row = await session.get(TransportLockRow, message_id)
            if row is None:
                row = TransportLockRow.from_model(
                    TransportLock(
                        message_id=message_id,
                        lock_token=lock_token,
                        expires_at=expires_at,
                        interface_name=interface_name,
                        instance_id=instance_id,
                        topic=topic,
                        subscription=subscription,
                        delivery_count=delivery_count,
                    )
                )
                session.add(row)
            else:
                row.lock_token = lock_token
                row.expires_at = expires_at
                row.delivery_count = delivery_count
                row.status = LockStatus.ACTIVE.value
                row.acquired_at = utc_now()
                row.completed_at = None
                row.completion_reason = None
                row.interface_name = interface_name or row.interface_name
                row.instance_id = instance_id or row.instance_id
                row.topic = topic or row.topic
                row.subscription = subscription or row.subscription
            await session.flush()
            return row.to_model()

    async def get_lock(self, message_id: str) -> TransportLock | None:
        async with self._transaction() as session:
            row = await session.get(TransportLockRow, message_id)
            return row.to_model() if row else None

    async def renew_lock(self, message_id: str, new_expires_at: datetime) -> bool:
        stmt = (
            update(TransportLockRow)
            .where(
                TransportLockRow.message_id == message_id,
                TransportLockRow.status == LockStatus.ACTIVE.value,
            )
            .values(
                expires_at=new_expires_at,
                last_renewed_at=utc_now(),
                renewal_count=TransportLockRow.renewal_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def update_lock_status(
        self, message_id: str, status: LockStatus, reason: str | None = None
    ) -> bool:
        values: dict = {"status": status.value}
        if status in _TERMINAL_LOCK_STATUSES:
            values.update(completed_at=utc_now(), completion_reason=reason)
        stmt = (
            update(TransportLockRow)
            .where(TransportLockRow.message_id == message_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def get_expired_locks(self) -> list[TransportLock]:
        now = utc_now()
        async with self._transaction() as session:
            stmt = (
                select(TransportLockRow)
                .where(
                    TransportLockRow.status == LockStatus.ACTIVE.value,
                    TransportLockRow.expires_at < now,
                )
                .order_by(TransportLockRow.expires_at)
                .with_for_update()
            )
            rows = list(await session.scalars(stmt))
            for row in rows:
                row.status = LockStatus.EXPIRED.value
            await session.flush()
            return [row.to_model() for row in rows]

    async def get_locks_needing_renewal(self, threshold: timedelta) -> list[TransportLock]:
        now = utc_now()
        stmt = (
            select(TransportLockRow)
            .where(
                TransportLockRow.status == LockStatus.ACTIVE.value,
                TransportLockRow.expires_at >= now,
                TransportLockRow.expires_at <= now + threshold,
            )
            .order_by(TransportLockRow.expires_at)
        )
        async with self._transaction() as session:
            return [row.to_model() for row in await session.scalars(stmt)]

    async def get_active_locks(self, instance_id: str | None = None) -> list[TransportLock]:
        stmt = select(TransportLockRow).where(TransportLockRow.status == LockStatus.ACTIVE.value)
        if instance_id is not None:
            stmt = stmt.where(TransportLockRow.instance_id == instance_id)
        async with self._transaction() as session:
            return [row.to_model() for row in await session.scalars(stmt)]

    async def cleanup_old_locks(self, retention: timedelta) -> int:
        cutoff = utc_now() - retention
        stmt = delete(TransportLockRow).where(
            TransportLockRow.status != LockStatus.ACTIVE.value,
            or_(
                and_(TransportLockRow.completed_at.is_not(None), TransportLockRow.completed_at < cutoff),
                and_(TransportLockRow.completed_at.is_(None), TransportLockRow.expires_at < cutoff),
            ),
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount


class SqlStagingBackend:
    """All three stores on one database."""

    def __init__(self, url: str, echo: bool = False, pool_size: int | None = None) -> None:
        self.url = url
        self._engine, self._sessions = create_engine_and_sessions(url, echo=echo, pool_size=pool_size)

        self.store = SqlStagingStore(self._sessions)
        self.registry = SqlSubscriptionRegistry(self._sessions)
        self.locks = SqlTransportLockTracker(self._sessions)

        logger.info(
            "SqlStagingBackend initialized",
            extra={"store_url": redact_url(url), "backend": "sql"},
        )

    async def ensure_schema(self) -> None:
        """Create missing tables; existing tables are left alone."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except DBAPIError as e:
            logger.warning(f"Staging database ping failed: {e}", extra={"backend": "sql"})
            return False

    async def close(self) -> None:
        await self._engine.dispose()
        logger.debug("SqlStagingBackend closed")


__all__ = [
    "SqlStagingBackend",
    "SqlStagingStore",
    "SqlSubscriptionRegistry",
    "SqlTransportLockTracker",
]
