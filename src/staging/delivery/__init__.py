"""Delivery loop, retry gating, stale-lease recovery and dead-letter monitoring."""

from staging.delivery.dead_letters import DeadLetterMonitor, DeadLetterStats
from staging.delivery.reaper import StaleLeaseReaper
from staging.delivery.retry_policy import EXPONENTIAL, FLAT, RetryPolicy
from staging.delivery.worker import DeliveryWorker

__all__ = [
    "DeliveryWorker",
    "RetryPolicy",
    "FLAT",
    "EXPONENTIAL",
    "StaleLeaseReaper",
    "DeadLetterMonitor",
    "DeadLetterStats",
]
