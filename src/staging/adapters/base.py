"""
Adapter capability interfaces.

A source adapter produces a batch (headers + records) for the debatching
pipeline. A destination adapter receives records from the delivery loop and
reports failure by raising: AdapterError (or any unclassified exception) is
retried against the message's budget, PermanentError dead-letters at once.
"""

from typing import Any, Mapping, Protocol, runtime_checkable

from staging.parsing import ColumnTypeInfo

Record = Mapping[str, Any]


@runtime_checkable
class SourceAdapter(Protocol):
    name: str

    async def read(self, source_id: str | None = None) -> tuple[list[str], list[Record]]:
        """Read one batch. Failures propagate; retry is the mailbox's concern."""
        ...


@runtime_checkable
class DestinationAdapter(Protocol):
    name: str

    async def write(
        self,
        destination_id: str | None,
        headers: list[str],
        records: list[Record],
    ) -> None: ...

    async def get_schema(self, source_id: str | None = None) -> dict[str, ColumnTypeInfo]:
        """Column types of the data behind source_id, inferred by ColumnTypeAnalyzer."""
        ...

    async def ensure_destination_structure(
        self,
        destination_id: str | None,
        column_types: dict[str, ColumnTypeInfo],
    ) -> None:
        """Create the sink if missing. No-op for schema-less sinks."""
        ...


__all__ = ["SourceAdapter", "DestinationAdapter", "Record"]
