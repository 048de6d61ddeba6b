"""Periodic transport lock renewal."""

import asyncio
import contextlib
import logging
from datetime import timedelta

from core.logging import log_exception
from staging import metrics
from staging.store.base import TransportLockTracker
from staging.transport.receiver import QueueReceiver

logger = logging.getLogger(__name__)


class LockRenewalService:
    """Renews Active locks that expire within renewal_threshold.

    A failed renewal is logged and counted; the sweep carries on with the
    remaining locks. A lock that keeps failing expires on the queue and is
    picked up by reconciliation.
    """

    def __init__(
        self,
        tracker: TransportLockTracker,
        receiver: QueueReceiver,
        interval_seconds: float = 30.0,
        renewal_threshold: timedelta = timedelta(seconds=60),
        instance_id: str | None = None,
    ):
        self._tracker = tracker
        self._receiver = receiver
        self._interval_seconds = interval_seconds
        self._renewal_threshold = renewal_threshold
        self._instance_id = instance_id
        self._task: asyncio.Task | None = None
        self.total_renewed = 0
        self.total_failed = 0

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.renew_once()
                await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                return
            except Exception as e:
                logger.warning("Error in lock renewal sweep", extra={"error": str(e)})
                await asyncio.sleep(self._interval_seconds)

    async def renew_once(self) -> tuple[int, int]:
        """One sweep. Returns (renewed, failed)."""
        renewed = failed = 0
        locks = await self._tracker.get_locks_needing_renewal(self._renewal_threshold)

        for lock in locks:
            if self._instance_id is not None and lock.instance_id != self._instance_id:
                continue
            try:
                new_expiry = await self._receiver.renew_lock(lock)
                if await self._tracker.renew_lock(lock.message_id, new_expiry):
                    renewed += 1
                    metrics.record_lock_renewal(True)
            except Exception as e:
                failed += 1
                metrics.record_lock_renewal(False)
                log_exception(
                    logger,
                    e,
                    "Failed to renew transport lock",
                    level=logging.WARNING,
                    include_traceback=False,
                    message_id=lock.message_id,
                    lock_token=lock.lock_token,
                    renewal_count=lock.renewal_count,
                )

        self.total_renewed += renewed
        self.total_failed += failed
        if renewed or failed:
            logger.info(
                f"Lock renewal sweep: {renewed} renewed, {failed} failed",
                extra={"renewed": renewed, "failed": failed},
            )
        return renewed, failed


__all__ = ["LockRenewalService"]
