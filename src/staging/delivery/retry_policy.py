"""
Retry gating for messages in Error.

Two modes:
- flat: a message is due once min_delay has passed since its last attempt
- exponential: the delay after attempt n is base * 2**(n - 1), capped at max_delay

The store's read_retryable() applies the smallest delay the policy can ask
for; is_due() then filters per message.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from staging.models import Message, utc_now

FLAT = "flat"
EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    mode: str = FLAT
    min_delay: timedelta = timedelta(seconds=60)
    base_delay: timedelta = timedelta(seconds=60)
    max_delay: timedelta = timedelta(hours=1)

    def __post_init__(self):
        if self.mode not in (FLAT, EXPONENTIAL):
            raise ValueError(f"Unknown retry mode: {self.mode!r}")

    @classmethod
    def from_config(cls, retry_config) -> "RetryPolicy":
        return cls(
            mode=retry_config.mode,
            min_delay=timedelta(seconds=retry_config.min_delay_seconds),
            base_delay=timedelta(seconds=retry_config.base_delay_seconds),
            max_delay=timedelta(seconds=retry_config.max_delay_seconds),
        )

    def delay_for(self, retry_count: int) -> timedelta:
        """Wait required after retry_count failed attempts."""
        if self.mode == FLAT:
            return self.min_delay
        exponent = max(retry_count - 1, 0)
        # Cap the exponent before multiplying; timedelta overflows long before 2**64
        if exponent >= 32:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    @property
    def store_min_delay(self) -> timedelta:
        """Lower bound used to pre-filter in the store query."""
        if self.mode == FLAT:
            return self.min_delay
        return min(self.base_delay, self.max_delay)

    def is_due(self, message: Message, now: datetime | None = None) -> bool:
        if message.last_retry_at is None:
            return True
        now = now or utc_now()
        return now - message.last_retry_at >= self.delay_for(message.retry_count)


__all__ = ["RetryPolicy", "FLAT", "EXPONENTIAL"]
