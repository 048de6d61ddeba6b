"""
Data model for the staging engine.

Messages carry exactly one record each. The message body is immutable after
creation; only the status, lease and retry fields change over its life.

Per-subscriber progress lives in ProcessingRecord rows, not on the message:
a message may be purged only once every enabled subscription for its
interface has a Processed record.
"""

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "MessageStatus",
    "ProcessingStatus",
    "LockStatus",
    "AdapterType",
    "MessagePayload",
    "Message",
    "Subscription",
    "ProcessingRecord",
    "TransportLock",
    "content_hash",
    "new_message_id",
    "utc_now",
]

DEFAULT_MAX_RETRIES = 3


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_message_id() -> str:
    return str(uuid.uuid4())


class MessageStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    PROCESSED = "Processed"
    ERROR = "Error"
    DEAD_LETTER = "DeadLetter"


class ProcessingStatus(str, Enum):
    PENDING = "Pending"
    PROCESSED = "Processed"
    ERROR = "Error"


class LockStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    ABANDONED = "Abandoned"
    DEAD_LETTERED = "DeadLettered"
    EXPIRED = "Expired"


class AdapterType(str, Enum):
    SOURCE = "Source"
    DESTINATION = "Destination"


class MessagePayload(BaseModel):
    """Body of a staged message: shared headers plus one record.

    Example:
        >>> payload = MessagePayload.from_record(["id", "name"], {"id": 1, "name": None})
        >>> payload.record
        {'id': '1', 'name': ''}
    """

    headers: list[str] = Field(..., description="Ordered column names")
    record: dict[str, str] = Field(default_factory=dict, description="Column name -> value")

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("headers cannot be empty")
        return v

    @classmethod
    def from_record(cls, headers: list[str], record: Mapping[str, Any]) -> "MessagePayload":
        """Convert one source record; raises ValueError for records that cannot be staged."""
        if not isinstance(record, Mapping):
            raise ValueError(f"record must be a mapping, got {type(record).__name__}")

        unknown = [k for k in record if k not in headers]
        if unknown:
            raise ValueError(f"record has columns not in headers: {unknown}")

        values = {
            str(k): "" if v is None else str(v)
            for k, v in record.items()
        }
        return cls(headers=list(headers), record=values)

    def to_body(self) -> str:
        return json.dumps(
            {"headers": self.headers, "record": self.record},
            ensure_ascii=False,
            separators=(",", ":"),
        )

    @classmethod
    def from_body(cls, body: str) -> "MessagePayload":
        return cls.model_validate_json(body)


def content_hash(body: str) -> str:
    """Lowercase hex SHA-256 of a message body (advisory duplicate hint)."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _decode_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class _Row:
    """Dict round-tripping for the JSON file backend."""

    _DATETIME_FIELDS: tuple[str, ...] = ()
    _ENUM_FIELDS: dict[str, type[Enum]] = {}

    def to_dict(self) -> dict[str, Any]:
        return {k: _encode(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        names = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in names}
        for name in cls._DATETIME_FIELDS:
            if name in kwargs:
                kwargs[name] = _decode_datetime(kwargs[name])
        for name, enum_cls in cls._ENUM_FIELDS.items():
            if kwargs.get(name) is not None:
                kwargs[name] = enum_cls(kwargs[name])
        return cls(**kwargs)


@dataclass
class Message(_Row):
    """One data record in flight."""

    interface_name: str
    adapter_name: str
    body: str
    adapter_type: AdapterType = AdapterType.SOURCE
    adapter_instance_id: str | None = None
    id: str = field(default_factory=new_message_id)
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None
    error_message: str | None = None
    processing_details: str | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    last_retry_at: datetime | None = None
    in_progress_until: datetime | None = None
    dead_letter: bool = False
    message_hash: str | None = None

    _DATETIME_FIELDS = ("created_at", "processed_at", "last_retry_at", "in_progress_until")
    _ENUM_FIELDS = {"status": MessageStatus, "adapter_type": AdapterType}

    @property
    def payload(self) -> MessagePayload:
        return MessagePayload.from_body(self.body)

    @property
    def has_retry_budget(self) -> bool:
        return not self.dead_letter and self.retry_count <= self.max_retries


@dataclass
class Subscription(_Row):
    """A destination adapter instance's interest in an interface."""

    instance_id: str
    interface_name: str
    adapter_name: str
    enabled: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    _DATETIME_FIELDS = ("created_at", "updated_at")


@dataclass
class ProcessingRecord(_Row):
    """One subscriber's progress on one message."""

    message_id: str
    instance_id: str
    status: ProcessingStatus = ProcessingStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None
    details: str | None = None
    error_message: str | None = None

    _DATETIME_FIELDS = ("created_at", "processed_at")
    _ENUM_FIELDS = {"status": ProcessingStatus}


@dataclass
class TransportLock(_Row):
    """Externally issued queue lock token tied to a logical message."""

    message_id: str
    lock_token: str
    expires_at: datetime
    interface_name: str = ""
    instance_id: str = ""
    topic: str | None = None
    subscription: str | None = None
    acquired_at: datetime = field(default_factory=utc_now)
    last_renewed_at: datetime | None = None
    renewal_count: int = 0
    status: LockStatus = LockStatus.ACTIVE
    delivery_count: int = 1
    completed_at: datetime | None = None
    completion_reason: str | None = None

    _DATETIME_FIELDS = ("expires_at", "acquired_at", "last_renewed_at", "completed_at")
    _ENUM_FIELDS = {"status": LockStatus}
