"""
Debatching pipeline: one source batch in, N independently retryable messages out.

Reading and parsing happen before anything is written, so a parse error
(or any other source failure) leaves the store untouched. After that, a
single bad record only costs itself.
"""

import logging
from dataclasses import dataclass, field

from core.logging import log_operation
from staging import metrics
from staging.adapters.base import SourceAdapter
from staging.mailbox import MessageBox
from staging.models import AdapterType
from staging.parsing import ColumnTypeAnalyzer, ColumnTypeInfo

logger = logging.getLogger(__name__)


@dataclass
class DebatchResult:
    message_ids: list[str] = field(default_factory=list)
    dropped: int = 0
    column_types: dict[str, ColumnTypeInfo] = field(default_factory=dict)

    @property
    def staged(self) -> int:
        return len(self.message_ids)


class DebatchingPipeline:
    def __init__(
        self,
        mailbox: MessageBox,
        analyzer: ColumnTypeAnalyzer | None = None,
        deduplicate: bool = False,
    ):
        self.mailbox = mailbox
        self.analyzer = analyzer or ColumnTypeAnalyzer()
        self.deduplicate = deduplicate

    async def stage(
        self,
        source: SourceAdapter,
        source_id: str | None,
        interface_name: str,
        adapter_name: str | None = None,
        instance_id: str | None = None,
    ) -> DebatchResult:
        """Read one batch from source and stage it record by record."""
        adapter_name = adapter_name or source.name

        with log_operation(
            logger,
            "debatch",
            interface=interface_name,
            adapter_name=adapter_name,
        ):
            headers, records = await source.read(source_id)
            records = list(records)

            column_types = self.analyzer.analyze_records(headers, records) if headers else {}

            message_ids = await self.mailbox.write_batch(
                interface_name,
                adapter_name,
                headers,
                records,
                adapter_type=AdapterType.SOURCE,
                adapter_instance_id=instance_id,
                deduplicate=self.deduplicate,
            )

        dropped = len(records) - len(message_ids)
        metrics.record_staged(interface_name, len(message_ids), dropped)

        if dropped:
            logger.warning(
                f"Dropped {dropped} of {len(records)} records while staging",
                extra={"interface": interface_name, "adapter_name": adapter_name},
            )
        logger.info(
            f"Staged {len(message_ids)} messages",
            extra={
                "interface": interface_name,
                "adapter_name": adapter_name,
                "record_count": len(message_ids),
            },
        )
        return DebatchResult(message_ids=message_ids, dropped=dropped, column_types=column_types)


__all__ = ["DebatchingPipeline", "DebatchResult"]
