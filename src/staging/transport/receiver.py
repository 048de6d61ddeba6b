"""
Managed-queue receiver contract.

When the staging substrate is a queue service with its own short-lived
delivery locks, the queue client is wrapped in something satisfying
QueueReceiver. The lock services only talk to the queue through it.
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from staging.models import TransportLock


@runtime_checkable
class QueueReceiver(Protocol):
    async def renew_lock(self, lock: TransportLock) -> datetime:
        """Extend the lock on the queue; returns the new expiry."""
        ...

    async def complete(self, lock: TransportLock) -> None: ...

    async def abandon(self, lock: TransportLock) -> None:
        """Release the lock so the queue redelivers the message."""
        ...

    async def dead_letter(self, lock: TransportLock, reason: str) -> None: ...


__all__ = ["QueueReceiver"]
