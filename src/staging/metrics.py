"""
Prometheus metrics for the staging engine.

Focused on essential metrics:
- Records staged and dropped during debatching
- Deliveries, delivery failures and dead letters per destination
- Lease contention, reaped leases and purges
- Transport lock renewals
- In-flight leases and current dead letters

Exposed over HTTP by the CLI (--metrics-port) via start_http_server.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# =============================================================================
# Core Metrics
# =============================================================================

messages_staged_counter = Counter(
    "staging_messages_staged_total",
    "Total messages written to the staging store",
    labelnames=["interface"],
)

records_dropped_counter = Counter(
    "staging_records_dropped_total",
    "Total source records dropped during debatching (conversion failures)",
    labelnames=["interface"],
)

deliveries_counter = Counter(
    "staging_deliveries_total",
    "Total successful deliveries to destination adapters",
    labelnames=["interface", "subscriber"],
)

delivery_failures_counter = Counter(
    "staging_delivery_failures_total",
    "Total failed deliveries by error category",
    labelnames=["interface", "subscriber", "error_category"],
)

dead_letters_counter = Counter(
    "staging_dead_letters_total",
    "Total messages moved to dead letter",
    labelnames=["interface", "reason"],
)

lease_contention_counter = Counter(
    "staging_lease_contention_total",
    "Total lease attempts lost to another worker",
    labelnames=["interface"],
)

reaped_leases_counter = Counter(
    "staging_reaped_leases_total",
    "Total stale leases reverted by the reaper",
)

purged_messages_counter = Counter(
    "staging_purged_messages_total",
    "Total messages purged after every subscriber finished",
    labelnames=["interface"],
)

lock_renewals_counter = Counter(
    "staging_lock_renewals_total",
    "Total transport lock renewal attempts",
    labelnames=["success"],
)

in_flight_leases_gauge = Gauge(
    "staging_in_flight_leases",
    "Messages currently leased by this process",
    labelnames=["interface"],
)

dead_letters_gauge = Gauge(
    "staging_dead_letter_backlog",
    "Messages currently in dead letter, as of the last reaper sweep",
    labelnames=["interface"],
)

delivery_duration_seconds = Histogram(
    "staging_delivery_duration_seconds",
    "Time spent delivering one message to one destination",
    labelnames=["interface"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
)


# =============================================================================
# Convenience Functions (callers can use metrics directly)
# =============================================================================


def record_staged(interface: str, staged: int, dropped: int = 0) -> None:
    if staged:
        messages_staged_counter.labels(interface=interface).inc(staged)
    if dropped:
        records_dropped_counter.labels(interface=interface).inc(dropped)


def record_delivery(interface: str, subscriber: str, duration: float) -> None:
    deliveries_counter.labels(interface=interface, subscriber=subscriber).inc()
    delivery_duration_seconds.labels(interface=interface).observe(duration)


def record_delivery_failure(interface: str, subscriber: str, error_category: str) -> None:
    delivery_failures_counter.labels(
        interface=interface, subscriber=subscriber, error_category=error_category
    ).inc()


def record_dead_letter(interface: str, reason: str) -> None:
    """reason is a short code ("max_retries", "permanent", "undecodable"), not the error text."""
    dead_letters_counter.labels(interface=interface, reason=reason).inc()


def record_lock_renewal(success: bool) -> None:
    lock_renewals_counter.labels(success="true" if success else "false").inc()


__all__ = [
    # Metrics
    "messages_staged_counter",
    "records_dropped_counter",
    "deliveries_counter",
    "delivery_failures_counter",
    "dead_letters_counter",
    "lease_contention_counter",
    "reaped_leases_counter",
    "purged_messages_counter",
    "lock_renewals_counter",
    "in_flight_leases_gauge",
    "dead_letters_gauge",
    "delivery_duration_seconds",
    # Helper functions
    "record_staged",
    "record_delivery",
    "record_delivery_failure",
    "record_dead_letter",
    "record_lock_renewal",
]
