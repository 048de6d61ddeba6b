"""
Delimited text file adapter.

As a source it parses a file (always with the streaming strategy) into one
batch. As a destination it appends one line per record in header order,
creating the file with a header row first.

File I/O runs in a worker thread so the event loop keeps polling.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from core.errors import AdapterError, NonRetriableAdapterError
from staging.adapters.base import Record
from staging.parsing import ColumnTypeAnalyzer, ColumnTypeInfo, CsvParseOptions, CsvParser, format_row

logger = logging.getLogger(__name__)

_OPTION_KEYS = (
    "separator",
    "quote_char",
    "skip_leading_lines",
    "skip_trailing_lines",
    "streaming_threshold",
    "chunk_size",
)


class CsvFileAdapter:
    """Reads and writes delimited text files.

    Args:
        path: Default file; read()/write() accept an explicit path instead
        name: Adapter name recorded on staged messages
        options: Parser options, also used for writing (separator, quote)
        encoding: File encoding for writes (reads tolerate a UTF-8 BOM)
    """

    kind = "csv_file"

    def __init__(
        self,
        path: str | Path | None = None,
        name: str = "csv_file",
        options: CsvParseOptions | None = None,
        encoding: str = "utf-8",
    ):
        self.path = Path(path) if path else None
        self.name = name
        self.options = options or CsvParseOptions()
        self.encoding = encoding
        self._parser = CsvParser(self.options)
        self._analyzer = ColumnTypeAnalyzer()

    @classmethod
    def from_settings(cls, csv_config=None, **settings: Any) -> "CsvFileAdapter":
        """Build from an adapter's configured settings; csv_config supplies parser defaults."""
        overrides = {k: settings.pop(k) for k in _OPTION_KEYS if k in settings}
        if csv_config is not None:
            options = CsvParseOptions.from_config(csv_config, **overrides)
        else:
            options = CsvParseOptions(**overrides)
        return cls(options=options, **settings)

    def _resolve(self, explicit: str | None) -> Path:
        if explicit:
            return Path(explicit)
        if self.path is None:
            raise NonRetriableAdapterError(
                f"Adapter '{self.name}' has no path configured and none was given",
                context={"adapter_name": self.name},
            )
        return self.path

    # ------------------------------------------------------------------
    # Source
    # ------------------------------------------------------------------

    async def read(self, source_id: str | None = None) -> tuple[list[str], list[Record]]:
        path = self._resolve(source_id)
        parsed = await asyncio.to_thread(self._parser.parse_file, path)
        logger.info(
            f"Read {len(parsed)} records from {path.name}",
            extra={"adapter_name": self.name, "record_count": len(parsed)},
        )
        return parsed.headers, parsed.records

    # ------------------------------------------------------------------
    # Destination
    # ------------------------------------------------------------------

    async def write(
        self,
        destination_id: str | None,
        headers: list[str],
        records: list[Record],
    ) -> None:
        path = self._resolve(destination_id)
        try:
            lines = [
                format_row(
                    ("" if record.get(h) is None else str(record.get(h)) for h in headers),
                    self.options.separator,
                    self.options.quote_char,
                )
                for record in records
            ]
            await asyncio.to_thread(self._append, path, headers, lines)
        except ValueError as e:
            # Value not representable without a quote character
            raise NonRetriableAdapterError(str(e), cause=e) from e
        except OSError as e:
            raise AdapterError(
                f"Failed to write {path}: {e}", adapter_name=self.name, cause=e
            ) from e

    async def get_schema(self, source_id: str | None = None) -> dict[str, ColumnTypeInfo]:
        headers, records = await self.read(source_id)
        return self._analyzer.analyze_records(headers, records)

    async def ensure_destination_structure(
        self,
        destination_id: str | None,
        column_types: dict[str, ColumnTypeInfo],
    ) -> None:
        path = self._resolve(destination_id)
        await asyncio.to_thread(self._create_if_missing, path, list(column_types))

    def _header_line(self, headers: list[str]) -> str:
        return format_row(headers, self.options.separator, self.options.quote_char)

    def _create_if_missing(self, path: Path, headers: list[str]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists() and path.stat().st_size > 0:
            return
        with open(path, "w", encoding=self.encoding, newline="") as f:
            if headers:
                f.write(self._header_line(headers) + "\n")
        logger.info(f"Created destination file {path}", extra={"adapter_name": self.name})

    def _append(self, path: Path, headers: list[str], lines: list[str]) -> None:
        self._create_if_missing(path, headers)
        with open(path, "a", encoding=self.encoding, newline="") as f:
            for line in lines:
                f.write(line + "\n")


__all__ = ["CsvFileAdapter"]
