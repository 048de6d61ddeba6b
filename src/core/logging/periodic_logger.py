"""Periodic statistics logging utility for workers."""

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from core.logging.utilities import format_cycle_output

logger = logging.getLogger(__name__)

_COUNTERS = ("delivered", "failed", "dead_lettered", "released")


class PeriodicStatsLogger:
    """
    Periodic statistics logging for workers with delta tracking.

    Workers provide a callback returning cumulative counters
    (delivered, failed, dead_lettered, released); the logger reports
    totals plus the change since the previous cycle.
    """

    def __init__(
        self,
        interval_seconds: int,
        get_stats: Callable[[], dict[str, Any]],
        stage: str,
        worker_id: str,
    ):
        self.interval_seconds = interval_seconds
        self.get_stats = get_stats
        self.stage = stage
        self.worker_id = worker_id
        self._task: asyncio.Task | None = None
        self._cycle_count = 0
        self._previous_stats: dict[str, int] = {}

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Periodic logger already running")
            return

        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def _snapshot(self) -> tuple[dict[str, int], dict[str, Any]]:
        extra = self.get_stats()
        return {k: int(extra.get(k, 0)) for k in _COUNTERS}, extra

    def log_cycle(self) -> str:
        """Log one cycle line and advance the delta baseline."""
        current, extra = self._snapshot()
        deltas = {k: current[k] - self._previous_stats.get(k, 0) for k in _COUNTERS}

        msg = format_cycle_output(
            cycle_count=self._cycle_count,
            **current,
            since_last=deltas if self._cycle_count > 0 else None,
            interval_seconds=self.interval_seconds,
        )
        self._previous_stats = current

        logger.info(
            msg,
            extra={
                "worker_id": self.worker_id,
                "stage": self.stage,
                "cycle": self._cycle_count,
                **extra,
            },
        )
        return msg

    async def _run(self) -> None:
        self.log_cycle()
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                self._cycle_count += 1
                self.log_cycle()
        except asyncio.CancelledError:
            logger.debug("Periodic stats logger task cancelled")
            raise
