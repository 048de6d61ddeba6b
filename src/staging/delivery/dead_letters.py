"""Dead-letter monitoring: counts, recent failures and per-interface summaries."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from staging.models import Message
from staging.store.base import StagingStore

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLD = 100
COMMON_ERROR_LIMIT = 5


def dead_lettered_at(message: Message) -> datetime:
    """Best known time the message stopped being retried."""
    return message.processed_at or message.last_retry_at or message.created_at


@dataclass
class DeadLetterStats:
    """Summary of one interface's dead letters."""

    interface_name: str
    count: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None
    # (error message, occurrences), most frequent first
    common_errors: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "interface": self.interface_name,
            "count": self.count,
            "oldest": self.oldest.isoformat() if self.oldest else None,
            "newest": self.newest.isoformat() if self.newest else None,
            "common_errors": [
                {"error_message": error, "count": count} for error, count in self.common_errors
            ],
        }


class DeadLetterMonitor:
    """Read-only view over the dead letters in a staging store."""

    def __init__(self, store: StagingStore, threshold: int = DEFAULT_ALERT_THRESHOLD):
        self._store = store
        self.threshold = threshold

    async def count(self, interface_name: str | None = None) -> int:
        return await self._store.count_dead_letters(interface_name)

    async def recent(self, limit: int = 10, interface_name: str | None = None) -> list[Message]:
        """Most recently dead-lettered messages first."""
        found = await self._store.read_dead_letters(interface_name)
        found.sort(key=lambda m: (dead_lettered_at(m), m.id), reverse=True)
        return found[:limit]

    async def stats(self) -> dict[str, DeadLetterStats]:
        """interface name -> DeadLetterStats, for interfaces with any dead letters."""
        by_interface: dict[str, list[Message]] = {}
        for message in await self._store.read_dead_letters():
            by_interface.setdefault(message.interface_name, []).append(message)

        result = {}
        for interface_name, messages in sorted(by_interface.items()):
            times = [dead_lettered_at(m) for m in messages]
            errors = Counter(m.error_message for m in messages if m.error_message)
            result[interface_name] = DeadLetterStats(
                interface_name=interface_name,
                count=len(messages),
                oldest=min(times),
                newest=max(times),
                common_errors=errors.most_common(COMMON_ERROR_LIMIT),
            )
        return result

    async def threshold_exceeded(
        self, threshold: int | None = None, interface_name: str | None = None
    ) -> bool:
        """True when the dead-letter count is strictly above the threshold."""
        limit = self.threshold if threshold is None else threshold
        count = await self.count(interface_name)
        if count > limit:
            logger.warning(
                "Dead letters above alert threshold",
                extra={
                    "interface": interface_name or "*",
                    "dead_letters": count,
                    "threshold": limit,
                },
            )
            return True
        return False


__all__ = [
    "DeadLetterMonitor",
    "DeadLetterStats",
    "DEFAULT_ALERT_THRESHOLD",
    "dead_lettered_at",
]
