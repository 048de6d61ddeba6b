"""Periodic stale-lease reaper and dead-letter retention sweep."""

import asyncio
import contextlib
import logging
from datetime import timedelta

from staging import metrics
from staging.delivery.dead_letters import DeadLetterMonitor
from staging.store.base import StagingStore

logger = logging.getLogger(__name__)

REAP_INTERVAL_SECONDS = 60


class StaleLeaseReaper:
    """Reverts InProgress messages whose lease expired without resolution.

    Runs on its own fixed interval, independent of any delivery worker, so a
    crashed worker's in-flight messages return to Pending (never attempted)
    or Error (retry budget partly used). When dead_letter_retention is set,
    dead letters older than it are purged on the same sweep. With a
    DeadLetterMonitor, each sweep also publishes per-interface dead-letter
    counts and warns about interfaces above the monitor's threshold.
    """

    def __init__(
        self,
        store: StagingStore,
        interval_seconds: float = REAP_INTERVAL_SECONDS,
        grace: timedelta = timedelta(0),
        dead_letter_retention: timedelta | None = None,
        monitor: DeadLetterMonitor | None = None,
    ):
        self._store = store
        self._interval_seconds = interval_seconds
        self._grace = grace
        self._dead_letter_retention = dead_letter_retention
        self._monitor = monitor
        self._reported_interfaces: set[str] = set()
        self._task: asyncio.Task | None = None
        self.total_reaped = 0
        self.total_purged = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Stale lease reaper started",
            extra={"interval_seconds": self._interval_seconds},
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                return
            except Exception as e:
                logger.warning(
                    "Error in stale lease sweep",
                    extra={"error": str(e)},
                )
                await asyncio.sleep(self._interval_seconds)

    async def run_once(self) -> tuple[int, int]:
        """One sweep. Returns (reaped, purged dead letters)."""
        reaped = await self._store.reap_stale_leases(self._grace)
        self.total_reaped += reaped
        if reaped:
            metrics.reaped_leases_counter.inc(reaped)
            logger.warning(
                f"Reaped {reaped} stale leases",
                extra={"reaped": reaped},
            )

        purged = 0
        if self._dead_letter_retention is not None:
            purged = await self._store.purge_dead_letters(self._dead_letter_retention)
            self.total_purged += purged
            if purged:
                logger.info(
                    f"Purged {purged} dead letters past retention",
                    extra={"purged": purged},
                )

        if self._monitor is not None:
            await self._report_dead_letters()
        return reaped, purged

    async def _report_dead_letters(self) -> None:
        stats = await self._monitor.stats()
        for interface_name in self._reported_interfaces - stats.keys():
            metrics.dead_letters_gauge.labels(interface=interface_name).set(0)
        for interface_name, summary in stats.items():
            metrics.dead_letters_gauge.labels(interface=interface_name).set(summary.count)
            if summary.count > self._monitor.threshold:
                logger.warning(
                    f"{summary.count} dead letters on {interface_name}",
                    extra={
                        "interface": interface_name,
                        "dead_letters": summary.count,
                        "threshold": self._monitor.threshold,
                    },
                )
        self._reported_interfaces = set(stats)


__all__ = ["StaleLeaseReaper", "REAP_INTERVAL_SECONDS"]
