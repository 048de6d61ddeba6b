"""
Storage protocols for the staging engine.

Three stores share one substrate:

- StagingStore: the mailbox of single-record messages and their
  lease/retry/dead-letter state machine
- SubscriptionRegistry: destination subscriptions and the per-subscriber
  processing ledger that gates purging
- TransportLockTracker: external queue lock tokens kept so a restarted
  worker can reconcile locks its predecessor held

Every mutation goes through one of these operations. Callers never
read-modify-write a message themselves; acquire_lease in particular must be a
single conditional update so that concurrent callers get exactly one winner.
"""

from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from staging.models import (
    LockStatus,
    Message,
    MessageStatus,
    ProcessingRecord,
    Subscription,
    TransportLock,
)

__all__ = [
    "StagingStore",
    "SubscriptionRegistry",
    "TransportLockTracker",
    "StagingBackend",
    "MAX_RETRIES_EXCEEDED_PREFIX",
]

MAX_RETRIES_EXCEEDED_PREFIX = "Max retries ({max_retries}) exceeded"


@runtime_checkable
class StagingStore(Protocol):
    async def write(self, message: Message) -> str:
        """Append a Pending message and return its id."""
        ...

    async def write_many(self, messages: list[Message]) -> list[str]:
        """Append several messages in one store round trip."""
        ...

    async def get(self, message_id: str) -> Message | None: ...

    async def read_pending(
        self,
        interface_name: str,
        limit: int | None = None,
        owed_by: list[str] | None = None,
    ) -> list[Message]:
        """Pending messages of an interface, oldest first.

        With owed_by, only messages that one of those instances has not yet
        processed, plus messages every enabled subscriber has processed.
        """
        ...

    async def read_by_status(
        self,
        interface_name: str,
        status: MessageStatus,
        limit: int | None = None,
    ) -> list[Message]: ...

    async def read_retryable(
        self,
        interface_name: str,
        min_delay: timedelta,
        limit: int | None = None,
        owed_by: list[str] | None = None,
    ) -> list[Message]:
        """Error messages with budget left whose last attempt is older than min_delay."""
        ...

    async def read_dead_letters(
        self, interface_name: str | None = None, limit: int | None = None
    ) -> list[Message]: ...

    async def count_dead_letters(self, interface_name: str | None = None) -> int: ...

    async def find_by_hash(
        self,
        message_hash: str,
        interface_name: str,
        adapter_name: str,
        adapter_instance_id: str | None,
        since: datetime,
    ) -> Message | None:
        """Most recent message with the same content hash created after since."""
        ...

    async def acquire_lease(self, message_id: str, timeout: timedelta) -> bool:
        """Pending/Error(with budget) -> InProgress; False on contention or missing id."""
        ...

    async def release_lease(
        self, message_id: str, revert_to: MessageStatus = MessageStatus.PENDING
    ) -> None: ...

    async def mark_processed(self, message_id: str, details: str | None = None) -> None: ...

    async def mark_error(self, message_id: str, error_message: str) -> MessageStatus:
        """Count one failed attempt; returns the resulting status (Error or DeadLetter)."""
        ...

    async def move_to_dead_letter(self, message_id: str, reason: str) -> None: ...

    async def reap_stale_leases(self, grace: timedelta = timedelta(0)) -> int: ...

    async def purge(self, message_id: str) -> bool:
        """Delete a message. Only call after the subscription registry says every subscriber is done."""
        ...

    async def purge_dead_letters(self, older_than: timedelta) -> int: ...


@runtime_checkable
class SubscriptionRegistry(Protocol):
    async def subscribe(self, instance_id: str, interface_name: str, adapter_name: str) -> Subscription:
        """Create the subscription or re-enable an existing one."""
        ...

    async def unsubscribe(self, instance_id: str, interface_name: str) -> bool:
        """Soft-disable; returns False when no such subscription exists."""
        ...

    async def get_subscriptions(
        self, interface_name: str, include_disabled: bool = False
    ) -> list[Subscription]: ...

    async def begin_processing(self, message_id: str, instance_id: str) -> ProcessingRecord:
        """Create the (message, subscriber) record; returns the existing one if present."""
        ...

    async def mark_processed(
        self, message_id: str, instance_id: str, details: str | None = None
    ) -> ProcessingRecord: ...

    async def mark_error(
        self, message_id: str, instance_id: str, error_message: str
    ) -> ProcessingRecord: ...

    async def get_record(self, message_id: str, instance_id: str) -> ProcessingRecord | None: ...

    async def records_for(self, message_id: str) -> list[ProcessingRecord]: ...

    async def all_subscribers_done(self, message_id: str, interface_name: str) -> bool:
        """True iff every enabled subscriber of the interface has a Processed record."""
        ...

    async def pending_subscribers(self, message_id: str, interface_name: str) -> list[str]:
        """Enabled subscribers of the interface without a Processed record."""
        ...

    async def delete_records(self, message_id: str) -> int: ...


@runtime_checkable
class TransportLockTracker(Protocol):
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
    ) -> TransportLock: ...

    async def get_lock(self, message_id: str) -> TransportLock | None: ...

    async def renew_lock(self, message_id: str, new_expires_at: datetime) -> bool: ...

    async def update_lock_status(
        self, message_id: str, status: LockStatus, reason: str | None = None
    ) -> bool: ...

    async def get_expired_locks(self) -> list[TransportLock]:
        """Mark Active locks past expiry as Expired and return them."""
        ...

    async def get_locks_needing_renewal(self, threshold: timedelta) -> list[TransportLock]:
        """Active locks expiring within threshold."""
        ...

    async def get_active_locks(self, instance_id: str | None = None) -> list[TransportLock]: ...

    async def cleanup_old_locks(self, retention: timedelta) -> int: ...


class StagingBackend(Protocol):
    """The three stores on one substrate, plus lifecycle."""

    store: StagingStore
    registry: SubscriptionRegistry
    locks: TransportLockTracker

    async def ensure_schema(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
