"""
Startup reconciliation of transport locks left behind by a previous process.

Run before a worker resumes polling. Locks already past expiry are only
marked Expired: the queue has released them and will redeliver. Every lock
still Active for this instance is settled from the message's state in the
staging store:

    message gone or Processed -> complete on the queue
    message dead-lettered     -> dead-letter on the queue
    anything else             -> abandon, so the queue redelivers
"""

import logging
from dataclasses import dataclass

from core.logging import log_exception
from staging.models import LockStatus, MessageStatus
from staging.store.base import StagingStore, TransportLockTracker
from staging.transport.receiver import QueueReceiver

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    expired: int = 0
    completed: int = 0
    dead_lettered: int = 0
    abandoned: int = 0
    failed: int = 0

    @property
    def settled(self) -> int:
        return self.completed + self.dead_lettered + self.abandoned


async def reconcile_transport_locks(
    tracker: TransportLockTracker,
    receiver: QueueReceiver,
    store: StagingStore,
    instance_id: str,
) -> ReconcileSummary:
    summary = ReconcileSummary()

    expired = await tracker.get_expired_locks()
    summary.expired = len(expired)

    for lock in await tracker.get_active_locks(instance_id):
        try:
            message = await store.get(lock.message_id)

            if message is None or message.status == MessageStatus.PROCESSED:
                await receiver.complete(lock)
                await tracker.update_lock_status(
                    lock.message_id, LockStatus.COMPLETED, "Reconciled: message already processed"
                )
                summary.completed += 1
            elif message.status == MessageStatus.DEAD_LETTER:
                reason = message.error_message or "Dead-lettered in staging store"
                await receiver.dead_letter(lock, reason)
                await tracker.update_lock_status(lock.message_id, LockStatus.DEAD_LETTERED, reason)
                summary.dead_lettered += 1
            else:
                await receiver.abandon(lock)
                await tracker.update_lock_status(
                    lock.message_id,
                    LockStatus.ABANDONED,
                    f"Reconciled: message {message.status.value}, released for redelivery",
                )
                summary.abandoned += 1
        except Exception as e:
            summary.failed += 1
            log_exception(
                logger,
                e,
                "Failed to reconcile transport lock",
                level=logging.WARNING,
                include_traceback=False,
                message_id=lock.message_id,
                lock_token=lock.lock_token,
            )

    logger.info(
        "Transport lock reconciliation complete",
        extra={
            "instance_id": instance_id,
            "locks_expired": summary.expired,
            "locks_completed": summary.completed + summary.dead_lettered,
            "locks_abandoned": summary.abandoned,
            "failed": summary.failed,
        },
    )
    return summary


__all__ = ["reconcile_transport_locks", "ReconcileSummary"]
