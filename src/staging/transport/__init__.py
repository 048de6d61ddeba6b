"""Transport lock tracking for managed-queue substrates."""

from staging.transport.receiver import QueueReceiver
from staging.transport.reconcile import ReconcileSummary, reconcile_transport_locks
from staging.transport.renewal import LockRenewalService

__all__ = [
    "QueueReceiver",
    "LockRenewalService",
    "ReconcileSummary",
    "reconcile_transport_locks",
]
