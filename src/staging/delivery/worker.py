"""
Delivery worker: moves staged messages of one interface into the destination
adapters hosted by this process.

Per message:
    1. Work out which hosted subscribers still lack a Processed record
       (none left anywhere: skip straight to resolving the message)
    2. acquire_lease (losing the race is normal, not an error)
    3. Decode the body (undecodable -> move_to_dead_letter, nothing written)
       and for each such subscriber: begin_processing, write, mark its record
    4. Resolve the message:
       - a PermanentError from any adapter -> move_to_dead_letter
       - any other failure -> mark_error (shared budget, may dead-letter)
       - all succeeded and every enabled subscriber done -> mark_processed + purge
       - all succeeded but subscribers hosted elsewhere pending -> release to Pending

Adapter exceptions are captured into the message and processing record; they
never escape the loop, and an unexpected error on one message is logged before
the cycle moves on. If the worker is cancelled mid-lease the lease is left
to expire and the reaper recovers the message.
"""

import asyncio
import logging
import time
from datetime import timedelta

from pydantic import ValidationError

from core.errors import (
    ErrorCategory,
    PermanentError,
    PipelineError,
    classify_exception,
    truncate_error_message,
)
from core.logging import LogContext, PeriodicStatsLogger, generate_cycle_id, log_exception
from core.utils import generate_worker_id
from staging import metrics
from staging.adapters.base import DestinationAdapter
from staging.delivery.retry_policy import RetryPolicy
from staging.mailbox import MessageBox
from staging.models import Message, MessageStatus
from staging.parsing import ColumnTypeAnalyzer

logger = logging.getLogger(__name__)

# Outcomes returned by process_message
DELIVERED = "delivered"
RELEASED = "released"
FAILED = "failed"
DEAD_LETTERED = "dead_lettered"
CONTENDED = "contended"
SKIPPED = "skipped"


class DeliveryWorker:
    """Poll loop delivering one interface's messages to hosted destinations.

    Args:
        interface_name: Interface whose messages this worker delivers
        mailbox: MessageBox over the shared store and registry
        destinations: instance_id -> destination adapter hosted here
        disabled: instance_id -> adapter name of configured but disabled
            destinations; their subscriptions are disabled on start
        retry_policy: Gate for re-attempting messages in Error
        batch_size: Max messages read per cycle
        poll_interval: Seconds between cycles
        lease_timeout: Lease length; the reaper recovers leases older than this
        stats_interval: Seconds between periodic stats lines
        worker_id: Name for logs (generated if omitted)
        health_server: Optional HealthCheckServer to heartbeat
    """

    def __init__(
        self,
        interface_name: str,
        mailbox: MessageBox,
        destinations: dict[str, DestinationAdapter],
        disabled: dict[str, str] | None = None,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 100,
        poll_interval: float = 5.0,
        lease_timeout: timedelta = timedelta(minutes=5),
        stats_interval: int = 30,
        worker_id: str | None = None,
        health_server=None,
    ):
        self.interface_name = interface_name
        self.mailbox = mailbox
        self.destinations = destinations
        self.disabled = disabled or {}
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.lease_timeout = lease_timeout
        self.worker_id = worker_id or generate_worker_id(f"delivery-{interface_name}")
        self.health_server = health_server

        self._analyzer = ColumnTypeAnalyzer()
        self._structure_ensured: set[str] = set()
        self._shutdown = asyncio.Event()
        self._running = False

        self.delivered = 0
        self.failed = 0
        self.dead_lettered = 0
        self.released = 0
        self.contended = 0
        self.purged = 0

        self._stats_logger = PeriodicStatsLogger(
            interval_seconds=stats_interval,
            get_stats=self.get_stats,
            stage="delivery",
            worker_id=self.worker_id,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> dict[str, int]:
        return {
            "delivered": self.delivered,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "released": self.released,
            "contended": self.contended,
            "purged": self.purged,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe hosted destinations and poll until stop() is called."""
        for instance_id, adapter in self.destinations.items():
            await self.mailbox.ensure_adapter_instance(
                instance_id, self.interface_name, adapter.name
            )
        for instance_id, adapter_name in self.disabled.items():
            await self.mailbox.ensure_adapter_instance(
                instance_id, self.interface_name, adapter_name, enabled=False
            )
            logger.info(
                "Destination disabled",
                extra={"interface": self.interface_name, "subscriber": instance_id},
            )

        self._running = True
        self._shutdown.clear()
        self._stats_logger.start()
        logger.info(
            "Delivery worker started",
            extra={
                "worker_id": self.worker_id,
                "interface": self.interface_name,
                "subscriber": ",".join(self.destinations),
            },
        )

        try:
            while not self._shutdown.is_set():
                try:
                    await self.run_cycle()
                except PipelineError as e:
                    log_exception(
                        logger,
                        e,
                        "Delivery cycle failed, retrying next cycle",
                        include_traceback=False,
                        interface=self.interface_name,
                    )
                except Exception as e:
                    log_exception(
                        logger,
                        e,
                        "Unexpected error in delivery cycle, retrying next cycle",
                        interface=self.interface_name,
                    )
                if self.health_server is not None:
                    self.health_server.record_heartbeat()
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self.poll_interval)
                except TimeoutError:
                    pass
        finally:
            self._running = False
            await self._stats_logger.stop()

    async def stop(self) -> None:
        if not self._shutdown.is_set():
            logger.info(
                "Stopping delivery worker",
                extra={"worker_id": self.worker_id, "interface": self.interface_name},
            )
        self._shutdown.set()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def fetch_candidates(self) -> list[Message]:
        """Pending messages first, then retryable ones whose delay has elapsed."""
        store = self.mailbox.store
        owed_by = list(self.destinations)
        candidates = await store.read_pending(
            self.interface_name, limit=self.batch_size, owed_by=owed_by
        )

        room = self.batch_size - len(candidates)
        if room > 0:
            retryable = await store.read_retryable(
                self.interface_name,
                self.retry_policy.store_min_delay,
                limit=room,
                owed_by=owed_by,
            )
            candidates.extend(m for m in retryable if self.retry_policy.is_due(m))
        return candidates

    async def run_cycle(self) -> dict[str, int]:
        """One poll: process every candidate message. Returns outcome counts."""
        outcomes: dict[str, int] = {}
        with LogContext(cycle_id=generate_cycle_id(), interface=self.interface_name):
            for message in await self.fetch_candidates():
                if self._shutdown.is_set():
                    break
                try:
                    outcome = await self.process_message(message)
                except PipelineError as e:
                    # Store trouble on one message (purged concurrently, unavailable)
                    log_exception(
                        logger,
                        e,
                        "Failed to process message",
                        include_traceback=False,
                        message_id=message.id,
                    )
                    continue
                except Exception as e:
                    log_exception(
                        logger,
                        e,
                        "Unexpected error processing message",
                        message_id=message.id,
                    )
                    continue
                outcomes[outcome] = outcomes.get(outcome, 0) + 1
        return outcomes

    # ------------------------------------------------------------------
    # Message
    # ------------------------------------------------------------------

    async def _targets_for(self, message: Message) -> list[str]:
        pending = await self.mailbox.registry.pending_subscribers(message.id, message.interface_name)
        return [instance_id for instance_id in pending if instance_id in self.destinations]

    async def process_message(self, message: Message) -> str:
        targets = await self._targets_for(message)
        # No targets but every subscriber done: only the message itself is left to resolve
        if not targets and not await self.mailbox.registry.all_subscribers_done(
            message.id, message.interface_name
        ):
            return SKIPPED

        store = self.mailbox.store
        if not await store.acquire_lease(message.id, self.lease_timeout):
            self.contended += 1
            metrics.lease_contention_counter.labels(interface=self.interface_name).inc()
            logger.debug("Lease held elsewhere", extra={"message_id": message.id})
            return CONTENDED

        gauge = metrics.in_flight_leases_gauge.labels(interface=self.interface_name)
        gauge.inc()
        try:
            with LogContext(message_id=message.id):
                try:
                    headers, record = self.mailbox.extract_payload(message)
                except ValidationError as e:
                    return await self._dead_letter_undecodable(message, e)
                failures = await self._deliver(message, targets, headers, record)
                return await self._resolve(message, targets, failures)
        finally:
            gauge.dec()

    async def _dead_letter_undecodable(self, message: Message, error: ValidationError) -> str:
        reason = truncate_error_message(f"Undecodable message body: {error}")
        await self.mailbox.store.move_to_dead_letter(message.id, reason)
        self.dead_lettered += 1
        metrics.record_dead_letter(self.interface_name, "undecodable")
        logger.warning(
            "Message dead-lettered (undecodable body)",
            extra={"status": MessageStatus.DEAD_LETTER.value, "error_message": reason},
        )
        return DEAD_LETTERED

    async def _deliver(
        self,
        message: Message,
        targets: list[str],
        headers: list[str],
        record: dict[str, str],
    ) -> dict[str, Exception]:
        registry = self.mailbox.registry
        failures: dict[str, Exception] = {}

        for instance_id in targets:
            adapter = self.destinations[instance_id]
            await registry.begin_processing(message.id, instance_id)
            started = time.perf_counter()
            try:
                await self._ensure_structure(instance_id, adapter, headers, record)
                await adapter.write(None, headers, [record])
            except Exception as e:
                failures[instance_id] = e
                error_text = truncate_error_message(e)
                await registry.mark_error(message.id, instance_id, error_text)
                category = classify_exception(e)
                metrics.record_delivery_failure(self.interface_name, instance_id, category.value)
                log_exception(
                    logger,
                    e,
                    "Delivery failed",
                    level=logging.WARNING,
                    include_traceback=category != ErrorCategory.TRANSIENT,
                    subscriber=instance_id,
                    adapter_name=adapter.name,
                    retry_count=message.retry_count,
                    error_category=category.value,
                )
                continue

            await registry.mark_processed(message.id, instance_id, details=f"Delivered by {adapter.name}")
            metrics.record_delivery(self.interface_name, instance_id, time.perf_counter() - started)
            self.delivered += 1
            logger.debug("Delivered", extra={"subscriber": instance_id, "adapter_name": adapter.name})

        return failures

    async def _ensure_structure(self, instance_id, adapter, headers, record) -> None:
        if instance_id in self._structure_ensured:
            return
        column_types = self._analyzer.analyze_records(headers, [record])
        await adapter.ensure_destination_structure(None, column_types)
        self._structure_ensured.add(instance_id)

    async def _resolve(
        self, message: Message, targets: list[str], failures: dict[str, Exception]
    ) -> str:
        store = self.mailbox.store

        permanent = {k: e for k, e in failures.items() if isinstance(e, PermanentError)}
        if permanent:
            instance_id, error = next(iter(permanent.items()))
            reason = truncate_error_message(f"Non-retriable error from {instance_id}: {error}")
            await store.move_to_dead_letter(message.id, reason)
            self.dead_lettered += 1
            metrics.record_dead_letter(self.interface_name, "permanent")
            logger.warning(
                "Message dead-lettered (non-retriable)",
                extra={"subscriber": instance_id, "status": MessageStatus.DEAD_LETTER.value},
            )
            return DEAD_LETTERED

        if failures:
            error_text = "; ".join(
                f"{instance_id}: {truncate_error_message(e, 500)}"
                for instance_id, e in failures.items()
            )
            status = await store.mark_error(message.id, truncate_error_message(error_text))
            if status == MessageStatus.DEAD_LETTER:
                self.dead_lettered += 1
                metrics.record_dead_letter(self.interface_name, "max_retries")
                logger.warning(
                    "Message dead-lettered (retries exhausted)",
                    extra={"retry_count": message.retry_count + 1, "status": status.value},
                )
                return DEAD_LETTERED
            self.failed += 1
            return FAILED

        if await self.mailbox.registry.all_subscribers_done(message.id, message.interface_name):
            await store.mark_processed(message.id, details=f"Delivered to {', '.join(targets)}")
            if await self.mailbox.purge(message.id):
                self.purged += 1
                metrics.purged_messages_counter.labels(interface=self.interface_name).inc()
            return DELIVERED

        # Hosted subscribers done, others still pending
        await store.release_lease(message.id, revert_to=MessageStatus.PENDING)
        self.released += 1
        return RELEASED


__all__ = [
    "DeliveryWorker",
    "DELIVERED",
    "RELEASED",
    "FAILED",
    "DEAD_LETTERED",
    "CONTENDED",
    "SKIPPED",
]
