"""Worker runners for the staging engine.

Provides the registry of runnable workers and reusable execution patterns:
- Startup retry with backoff
- Shutdown handling through a shared event
- Health server error mode on fatal errors
- Building mailboxes, adapters and policies from StagingConfig
"""

import asyncio
import importlib
import logging
import os
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

from config.config import StagingConfig
from core.errors import ConfigurationError
from core.logging import log_worker_startup, set_log_context
from staging.adapters import CsvFileAdapter, build_from_config
from staging.debatch import DebatchingPipeline, DebatchResult
from staging.delivery import DeadLetterMonitor, DeliveryWorker, RetryPolicy, StaleLeaseReaper
from staging.health import HealthCheckServer
from staging.mailbox import MessageBox
from staging.store.base import StagingBackend
from staging.transport import LockRenewalService, QueueReceiver, reconcile_transport_locks

logger = logging.getLogger(__name__)

# Startup retry configuration (overridable via env vars)
DEFAULT_STARTUP_RETRIES = 5
DEFAULT_STARTUP_BACKOFF_BASE = 5  # seconds


# ---------------------------------------------------------------------------
# Execution patterns
# ---------------------------------------------------------------------------


async def _cleanup_watcher_task(task: asyncio.Task) -> None:
    """Cancel and await watcher task, suppressing expected exceptions."""
    try:
        task.cancel()
        await task
    except (asyncio.CancelledError, RuntimeError):
        pass


async def _start_with_retry(
    start_fn: Callable,
    label: str,
    max_retries: int | None = None,
    backoff_base: float | None = None,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Retry an async start function with linear backoff.

    On exhaustion, re-raises the last exception so the caller can enter
    health server error mode.

    Args:
        start_fn: Async callable (e.g. worker.start)
        label: Human-readable label for log messages
        max_retries: Attempts (default: 5, env: STARTUP_MAX_RETRIES)
        backoff_base: Base seconds for backoff (default: 5, env: STARTUP_BACKOFF_SECONDS)
        shutdown_event: If set, skip retries during shutdown
    """
    max_retries = max_retries or int(
        os.getenv("STARTUP_MAX_RETRIES", str(DEFAULT_STARTUP_RETRIES))
    )
    if backoff_base is None:
        backoff_base = float(
            os.getenv("STARTUP_BACKOFF_SECONDS", str(DEFAULT_STARTUP_BACKOFF_BASE))
        )

    for attempt in range(1, max_retries + 1):
        try:
            await start_fn()
            return
        except Exception as e:
            if shutdown_event and shutdown_event.is_set():
                logger.info(f"Shutdown in progress, not retrying {label}")
                raise
            if attempt == max_retries:
                logger.error(
                    f"Failed to start {label} after {max_retries} attempts, giving up",
                    extra={"error": str(e), "attempts": max_retries},
                )
                raise
            delay = backoff_base * attempt
            logger.warning(
                f"Failed to start {label} (attempt {attempt}/{max_retries}), "
                f"retrying in {delay}s",
                extra={"error": str(e), "attempt": attempt, "delay": delay},
            )
            await asyncio.sleep(delay)


async def _enter_worker_error_mode(
    health_server: HealthCheckServer,
    stage_name: str,
    error_msg: str,
    shutdown_event: asyncio.Event,
) -> None:
    """Keep the health server alive in error state until shutdown.

    Liveness keeps passing and readiness reports the error, so the failed
    worker can be inspected instead of crash-looping.
    """
    logger.warning(
        f"Entering ERROR MODE for {stage_name} - health endpoint will remain alive"
    )
    health_server.set_error(error_msg)
    logger.info(
        "Health server running in error mode",
        extra={
            "stage": stage_name,
            "health_port": health_server.actual_port,
            "error": error_msg,
        },
    )
    await shutdown_event.wait()
    logger.info(f"Shutdown signal received in error mode for {stage_name}")


async def execute_worker_with_shutdown(
    worker_instance,
    stage_name: str,
    shutdown_event: asyncio.Event,
    instance_id: str | None = None,
) -> None:
    """Execute a worker whose start() runs until stop() is called.

    On fatal error, if the worker has a health_server, enters error mode to
    keep the health endpoint alive. Otherwise re-raises.

    Args:
        worker_instance: Worker instance with start() and stop() methods
        stage_name: Name for logging context
        shutdown_event: Event to signal graceful shutdown
        instance_id: Instance identifier within a worker pool (optional)
    """
    context = {"stage": stage_name}
    if instance_id is not None:
        context["worker_id"] = f"{stage_name}-{instance_id}"
        logger_suffix = f" (instance {instance_id})"
    else:
        logger_suffix = ""

    set_log_context(**context)
    logger.info("Starting %s%s...", stage_name, logger_suffix)

    worker_stopped = False

    async def shutdown_watcher():
        nonlocal worker_stopped
        await shutdown_event.wait()
        logger.info(f"Shutdown signal received, stopping {stage_name}{logger_suffix}...")
        await worker_instance.stop()
        worker_stopped = True

    watcher_task = asyncio.create_task(shutdown_watcher())

    try:
        await _start_with_retry(worker_instance.start, stage_name, shutdown_event=shutdown_event)
    except Exception as e:
        health_server = getattr(worker_instance, "health_server", None)
        if health_server is not None and not shutdown_event.is_set():
            await _cleanup_watcher_task(watcher_task)
            await _enter_worker_error_mode(
                health_server, stage_name, f"Fatal error: {e}", shutdown_event
            )
            return
        raise
    finally:
        await _cleanup_watcher_task(watcher_task)
        if not worker_stopped:
            await worker_instance.stop()


async def execute_service_with_shutdown(
    service,
    stage_name: str,
    shutdown_event: asyncio.Event,
) -> None:
    """Run a background service (start() spawns a task) until shutdown."""
    set_log_context(stage=stage_name)
    logger.info("Starting %s...", stage_name)
    await _start_with_retry(service.start, stage_name, shutdown_event=shutdown_event)
    try:
        await shutdown_event.wait()
        logger.info(f"Shutdown signal received, stopping {stage_name}...")
    finally:
        await service.stop()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_mailbox(config: StagingConfig, backend: StagingBackend, interface_name: str) -> MessageBox:
    return MessageBox(
        backend.store,
        backend.registry,
        max_retries=config.max_retries_for(interface_name),
    )


def build_destinations(config: StagingConfig, interface_name: str) -> dict[str, Any]:
    """instance_id -> destination adapter for every enabled destination configured here."""
    interface = config.get_interface(interface_name)
    return {
        instance_id: build_from_config(settings, config.csv)
        for instance_id, settings in interface.destinations.items()
        if settings.enabled
    }


def disabled_destinations(config: StagingConfig, interface_name: str) -> dict[str, str]:
    """instance_id -> adapter name for destinations configured with enabled: false."""
    interface = config.get_interface(interface_name)
    return {
        instance_id: settings.name
        for instance_id, settings in interface.destinations.items()
        if not settings.enabled
    }


def build_source(config: StagingConfig, interface_name: str):
    """The interface's configured source, or a plain CSV file reader."""
    interface = config.get_interface(interface_name)
    if interface.source is None:
        return CsvFileAdapter.from_settings(csv_config=config.csv, name=interface_name)
    return build_from_config(interface.source, config.csv)


def load_receiver(config: StagingConfig) -> QueueReceiver:
    """Import and construct the configured QueueReceiver.

    Raises:
        ConfigurationError: No receiver configured, or it cannot be imported
    """
    locks = config.locks
    if not locks.receiver_module or not locks.receiver_class:
        raise ConfigurationError(
            "locks.receiver_module and locks.receiver_class are required for lock renewal"
        )
    try:
        module = importlib.import_module(locks.receiver_module)
        receiver_class = getattr(module, locks.receiver_class)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Failed to import queue receiver {locks.receiver_module}.{locks.receiver_class}: {e}",
            cause=e,
        ) from e

    receiver = receiver_class(config=dict(locks.receiver_settings))
    if not isinstance(receiver, QueueReceiver):
        raise ConfigurationError(
            f"{locks.receiver_class} does not implement QueueReceiver",
        )
    return receiver


def delivery_interfaces(config: StagingConfig) -> list[str]:
    """Interfaces with at least one enabled destination hosted by this process."""
    return [
        name
        for name, interface in config.interfaces.items()
        if any(dest.enabled for dest in interface.destinations.values())
    ]


async def disable_unhosted_subscriptions(config: StagingConfig, backend: StagingBackend) -> int:
    """Disable subscriptions of interfaces whose destinations are all disabled.

    Interfaces with an enabled destination get a delivery worker, which
    reconciles its own disabled destinations on start.
    """
    hosted = set(delivery_interfaces(config))
    disabled = 0
    for name in config.interfaces:
        if name in hosted:
            continue
        for instance_id in disabled_destinations(config, name):
            if await backend.registry.unsubscribe(instance_id, name):
                disabled += 1
                logger.info(
                    "Destination disabled",
                    extra={"interface": name, "subscriber": instance_id},
                )
    return disabled


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


async def run_delivery_worker(
    config: StagingConfig,
    backend: StagingBackend,
    shutdown_event: asyncio.Event,
    interface_name: str,
    instance_id: str | None = None,
    health_server: HealthCheckServer | None = None,
) -> None:
    destinations = build_destinations(config, interface_name)
    if not destinations:
        raise ConfigurationError(
            f"Interface '{interface_name}' has no destinations configured",
            context={"interface": interface_name},
        )

    worker = DeliveryWorker(
        interface_name=interface_name,
        mailbox=build_mailbox(config, backend, interface_name),
        destinations=destinations,
        disabled=disabled_destinations(config, interface_name),
        retry_policy=RetryPolicy.from_config(config.retry),
        batch_size=config.delivery.batch_size,
        poll_interval=config.delivery.poll_interval_seconds,
        lease_timeout=timedelta(seconds=config.delivery.lease_timeout_seconds),
        stats_interval=config.delivery.stats_interval_seconds,
        health_server=health_server,
    )
    set_log_context(interface=interface_name)
    await execute_worker_with_shutdown(worker, "delivery", shutdown_event, instance_id=instance_id)


async def run_reaper(
    config: StagingConfig,
    backend: StagingBackend,
    shutdown_event: asyncio.Event,
) -> None:
    retention_days = config.reaper.dead_letter_retention_days
    reaper = StaleLeaseReaper(
        backend.store,
        interval_seconds=config.reaper.interval_seconds,
        grace=timedelta(seconds=config.reaper.grace_seconds),
        dead_letter_retention=timedelta(days=retention_days) if retention_days else None,
        monitor=DeadLetterMonitor(
            backend.store, threshold=config.reaper.dead_letter_alert_threshold
        ),
    )
    await execute_service_with_shutdown(reaper, "reaper", shutdown_event)


async def run_lock_renewal(
    config: StagingConfig,
    backend: StagingBackend,
    shutdown_event: asyncio.Event,
    receiver: QueueReceiver | None = None,
) -> None:
    """Reconcile locks left by a previous process, then renew until shutdown."""
    receiver = receiver or load_receiver(config)

    await reconcile_transport_locks(backend.locks, receiver, backend.store, config.instance_id)
    removed = await backend.locks.cleanup_old_locks(timedelta(days=config.locks.retention_days))
    if removed:
        logger.info(f"Removed {removed} settled transport locks past retention")

    service = LockRenewalService(
        backend.locks,
        receiver,
        interval_seconds=config.locks.renewal_interval_seconds,
        renewal_threshold=timedelta(seconds=config.locks.renewal_threshold_seconds),
        instance_id=config.instance_id,
    )
    await execute_service_with_shutdown(service, "lock-renewal", shutdown_event)


async def stage_file(
    config: StagingConfig,
    backend: StagingBackend,
    path: str | Path,
    interface_name: str,
) -> DebatchResult:
    """Debatch one file into the staging store."""
    interface = config.get_interface(interface_name)
    pipeline = DebatchingPipeline(
        build_mailbox(config, backend, interface_name),
        deduplicate=interface.deduplicate,
    )
    return await pipeline.stage(build_source(config, interface_name), str(path), interface_name)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

# Worker name -> runner; "per_interface" runners get one instance per
# interface with hosted destinations.
WORKER_REGISTRY: dict[str, dict[str, Any]] = {
    "delivery": {"runner": run_delivery_worker, "per_interface": True},
    "reaper": {"runner": run_reaper},
    "lock-renewal": {"runner": run_lock_renewal},
}


async def _gather_until_cancelled(tasks: list[asyncio.Task], label: str) -> None:
    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.info(f"{label} cancelled, shutting down...")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def run_worker_from_registry(
    worker_name: str,
    config: StagingConfig,
    backend: StagingBackend,
    shutdown_event: asyncio.Event,
    interface_name: str | None = None,
    count: int = 1,
    health_server: HealthCheckServer | None = None,
) -> None:
    """Run a worker by looking it up in the registry.

    Delivery runs once per interface (or only interface_name when given),
    count instances each; the instances compete for leases on the same
    messages.

    Raises:
        ValueError: If worker not found in registry
    """
    if worker_name not in WORKER_REGISTRY:
        raise ValueError(f"Unknown worker: {worker_name}")

    worker_def = WORKER_REGISTRY[worker_name]
    runner = worker_def["runner"]

    if not worker_def.get("per_interface"):
        await runner(config, backend, shutdown_event)
        return

    await disable_unhosted_subscriptions(config, backend)
    interfaces = [interface_name] if interface_name else delivery_interfaces(config)
    if not interfaces:
        raise ConfigurationError("No interface has destinations configured")

    log_worker_startup(
        logger,
        worker_name,
        store_backend=config.store.backend,
        instance_id=config.instance_id,
        interfaces=interfaces,
        extra_config={"instances_per_interface": count},
    )

    tasks = [
        asyncio.create_task(
            runner(
                config,
                backend,
                shutdown_event,
                name,
                instance_id=str(i) if count > 1 else None,
                health_server=health_server,
            ),
            name=f"{worker_name}-{name}-{i}",
        )
        for name in interfaces
        for i in range(count)
    ]
    await _gather_until_cancelled(tasks, "Worker pool")


async def run_all_workers(
    config: StagingConfig,
    backend: StagingBackend,
    shutdown_event: asyncio.Event,
    count: int = 1,
    health_server: HealthCheckServer | None = None,
) -> None:
    """Reaper plus the delivery workers for every configured interface."""
    logger.info("Starting all staging workers...")
    tasks = [
        asyncio.create_task(run_reaper(config, backend, shutdown_event), name="reaper"),
        asyncio.create_task(
            run_worker_from_registry(
                "delivery",
                config,
                backend,
                shutdown_event,
                count=count,
                health_server=health_server,
            ),
            name="delivery",
        ),
    ]
    await _gather_until_cancelled(tasks, "Workers")


__all__ = [
    "WORKER_REGISTRY",
    "build_destinations",
    "disabled_destinations",
    "build_mailbox",
    "build_source",
    "delivery_interfaces",
    "disable_unhosted_subscriptions",
    "execute_service_with_shutdown",
    "execute_worker_with_shutdown",
    "load_receiver",
    "run_all_workers",
    "run_delivery_worker",
    "run_lock_renewal",
    "run_reaper",
    "run_worker_from_registry",
    "stage_file",
]
