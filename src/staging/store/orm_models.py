"""SQLAlchemy ORM models for the sql staging backend.

Tables mirror the logical layout of the staging engine:

- ``staging_messages``: one row per staged record with status, lease and retry state
- ``staging_subscriptions``: destination instance interest in an interface
- ``staging_processing_records``: per (message, subscriber) progress ledger
- ``staging_transport_locks``: external queue lock tokens for crash recovery

Enum columns are stored as their string values so rows stay readable from
plain SQL tooling.
"""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from staging.models import (
    Message,
    ProcessingRecord,
    Subscription,
    TransportLock,
)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC.

    SQLite drops tzinfo on the way in, so normalise before binding and
    reattach on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class MessageRow(Base):
    __tablename__ = "staging_messages"
    __table_args__ = (
        Index("ix_staging_messages_interface_status", "interface_name", "status"),
        Index("ix_staging_messages_hash", "message_hash"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    interface_name: Mapped[str] = mapped_column(String(255))
    adapter_name: Mapped[str] = mapped_column(String(255))
    adapter_type: Mapped[str] = mapped_column(String(32))
    adapter_instance_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    body: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    in_progress_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dead_letter: Mapped[bool] = mapped_column(Boolean, default=False)
    message_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    @classmethod
    def from_model(cls, message: Message) -> "MessageRow":
        return cls(**message.to_dict() | _datetimes(message, Message._DATETIME_FIELDS))

    def to_model(self) -> Message:
        return Message.from_dict(_columns(self))


class SubscriptionRow(Base):
    __tablename__ = "staging_subscriptions"

    instance_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    interface_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    adapter_name: Mapped[str] = mapped_column(String(255))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionRow":
        return cls(
            **subscription.to_dict() | _datetimes(subscription, Subscription._DATETIME_FIELDS)
        )

    def to_model(self) -> Subscription:
        return Subscription.from_dict(_columns(self))


class ProcessingRecordRow(Base):
    __tablename__ = "staging_processing_records"

    message_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    instance_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    @classmethod
    def from_model(cls, record: ProcessingRecord) -> "ProcessingRecordRow":
        return cls(**record.to_dict() | _datetimes(record, ProcessingRecord._DATETIME_FIELDS))

    def to_model(self) -> ProcessingRecord:
        return ProcessingRecord.from_dict(_columns(self))


class TransportLockRow(Base):
    __tablename__ = "staging_transport_locks"
    __table_args__ = (Index("ix_staging_transport_locks_status", "status", "expires_at"),)

    message_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    lock_token: Mapped[str] = mapped_column(String(255))
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)
    interface_name: Mapped[str] = mapped_column(String(255), default="")
    instance_id: Mapped[str] = mapped_column(String(255), default="")
    topic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_renewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    renewal_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(32))
    delivery_count: Mapped[int] = mapped_column(Integer, default=1)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @classmethod
    def from_model(cls, lock: TransportLock) -> "TransportLockRow":
        return cls(**lock.to_dict() | _datetimes(lock, TransportLock._DATETIME_FIELDS))

    def to_model(self) -> TransportLock:
        return TransportLock.from_dict(_columns(self))


def _datetimes(model, names: tuple[str, ...]) -> dict:
    # to_dict() renders datetimes as ISO strings; columns want the objects
    return {name: getattr(model, name) for name in names}


def _columns(row: Base) -> dict:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


__all__ = [
    "Base",
    "MessageRow",
    "SubscriptionRow",
    "ProcessingRecordRow",
    "TransportLockRow",
    "UTCDateTime",
]
