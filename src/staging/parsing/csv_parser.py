"""
Delimited text parser with quote-aware, multi-line record handling.

Records are split on a configurable separator (default "║", chosen because it
practically never occurs in free text) with optional quoting. The header row
is authoritative: any data row with a different column count fails the whole
parse with a diagnostic naming the offending lines. No partial result is
returned.

Two strategies produce identical output for identical input:
- parse_in_memory: materializes every line, fastest for small inputs
- parse_stream: reads line by line and collects records in bounded chunks

parse() picks between them by input size; parse_file() always streams.
"""

import io
import logging
from collections import deque
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from core.errors import CsvParseError

logger = logging.getLogger(__name__)

DEFAULT_SEPARATOR = "║"
DEFAULT_QUOTE_CHAR = '"'
DEFAULT_STREAMING_THRESHOLD = 1024 * 1024
DEFAULT_CHUNK_SIZE = 1000
MAX_REPORTED_INVALID_ROWS = 10


@dataclass(frozen=True)
class CsvParseOptions:
    separator: str = DEFAULT_SEPARATOR
    quote_char: str | None = DEFAULT_QUOTE_CHAR
    skip_leading_lines: int = 0
    skip_trailing_lines: int = 0
    streaming_threshold: int = DEFAULT_STREAMING_THRESHOLD
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self):
        if not self.separator:
            raise ValueError("separator must not be empty")
        if self.quote_char is not None and len(self.quote_char) != 1:
            raise ValueError("quote_char must be a single character or None")
        if self.quote_char is not None and self.quote_char in self.separator:
            raise ValueError("quote_char must not appear in separator")
        if self.skip_leading_lines < 0 or self.skip_trailing_lines < 0:
            raise ValueError("skip counts must be >= 0")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

    @classmethod
    def from_config(cls, csv_config, **overrides) -> "CsvParseOptions":
        """Build from config.CsvConfig; keyword overrides win (per-adapter settings)."""
        values = {
            "separator": csv_config.separator,
            "quote_char": csv_config.quote_char,
            "skip_leading_lines": csv_config.skip_leading_lines,
            "skip_trailing_lines": csv_config.skip_trailing_lines,
            "streaming_threshold": csv_config.streaming_threshold,
            "chunk_size": csv_config.chunk_size,
        }
        values.update({k: v for k, v in overrides.items() if k in values})
        return cls(**values)


@dataclass
class ParsedCsv:
    headers: list[str] = field(default_factory=list)
    records: list[dict[str, str]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)

    def column_values(self, header: str) -> list[str]:
        return [record.get(header, "") for record in self.records]


def split_fields(text: str, separator: str, quote_char: str | None = DEFAULT_QUOTE_CHAR) -> list[str]:
    """
    Split one logical record into field values.

    A quote toggles inside-value mode, a doubled quote inside a quoted value is
    a literal quote, and the separator only ends a field outside quotes.
    Whitespace outside quoted sections at either end of a field is trimmed;
    quoted content is kept verbatim.
    """
    if quote_char is None or quote_char not in text:
        return [value.strip() for value in text.split(separator)]

    values: list[str] = []
    current: list[str] = []
    # Bounds of quoted content within current, for trimming
    quoted_start: int | None = None
    quoted_end: int | None = None
    in_quotes = False
    sep_len = len(separator)
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        if ch == quote_char:
            if in_quotes:
                if i + 1 < n and text[i + 1] == quote_char:
                    current.append(quote_char)
                    i += 2
                    continue
                in_quotes = False
                quoted_end = len(current)
            else:
                in_quotes = True
                if quoted_start is None:
                    quoted_start = len(current)
            i += 1
            continue

        if not in_quotes and text.startswith(separator, i):
            values.append(_finish_field(current, quoted_start, quoted_end))
            current = []
            quoted_start = quoted_end = None
            i += sep_len
            continue

        current.append(ch)
        i += 1

    values.append(_finish_field(current, quoted_start, quoted_end))
    return values


def _finish_field(chars: list[str], quoted_start: int | None, quoted_end: int | None) -> str:
    value = "".join(chars)
    if quoted_start is None:
        return value.strip()
    if quoted_end is None:
        quoted_end = len(value)
    return value[:quoted_start].lstrip() + value[quoted_start:quoted_end] + value[quoted_end:].rstrip()


def escape_value(
    value: str,
    separator: str = DEFAULT_SEPARATOR,
    quote_char: str | None = DEFAULT_QUOTE_CHAR,
) -> str:
    """
    Escape one value so that split_fields() returns it unchanged.

    Raises ValueError when quoting is disabled and the value cannot be
    represented (contains the separator or a line break, or has
    surrounding whitespace).
    """
    value = "" if value is None else str(value)
    needs_quotes = (
        separator in value
        or "\n" in value
        or "\r" in value
        or value != value.strip()
        or (quote_char is not None and quote_char in value)
    )
    if not needs_quotes:
        return value
    if quote_char is None:
        raise ValueError(f"Value cannot be written without a quote character: {value!r}")
    doubled = value.replace(quote_char, quote_char * 2)
    return f"{quote_char}{doubled}{quote_char}"


def format_row(
    values: Iterable[str],
    separator: str = DEFAULT_SEPARATOR,
    quote_char: str | None = DEFAULT_QUOTE_CHAR,
) -> str:
    return separator.join(escape_value(v, separator, quote_char) for v in values)


class CsvParser:
    """Parses delimited text into headers and records.

    Example:
        >>> parser = CsvParser(CsvParseOptions(separator=","))
        >>> parsed = parser.parse('id,name\\n1,"Smith, J"\\n')
        >>> parsed.records
        [{'id': '1', 'name': 'Smith, J'}]
    """

    def __init__(self, options: CsvParseOptions | None = None):
        self.options = options or CsvParseOptions()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def parse(self, text: str) -> ParsedCsv:
        if len(text) <= self.options.streaming_threshold:
            return self.parse_in_memory(text)
        logger.debug(
            "Input above streaming threshold, parsing as stream",
            extra={"input_chars": len(text)},
        )
        return self.parse_stream(io.StringIO(text, newline="\n"))

    def parse_file(self, path: Path | str, encoding: str = "utf-8-sig") -> ParsedCsv:
        """Parse a file with the streaming strategy (utf-8, BOM tolerated)."""
        with open(path, "r", encoding=encoding, newline="\n") as f:
            return self.parse_stream(f)

    def parse_in_memory(self, text: str) -> ParsedCsv:
        lines = text.split("\n")
        if text.endswith("\n"):
            lines.pop()
        lines = [line[:-1] if line.endswith("\r") else line for line in lines]

        start = self.options.skip_leading_lines
        stop = len(lines) - self.options.skip_trailing_lines
        lines = lines[start:stop] if stop > start else []

        logical = self._logical_records(lines)
        first = next(logical, None)
        if first is None:
            return ParsedCsv()

        headers = self._parse_headers(first[1])
        records, invalid = self._build_records(headers, logical)
        self._raise_if_invalid(headers, invalid)
        return ParsedCsv(headers=headers, records=records)

    def parse_stream(self, stream: TextIO) -> ParsedCsv:
        logical = self._logical_records(self._stream_lines(stream))

        first = next(logical, None)
        if first is None:
            return ParsedCsv()

        headers = self._parse_headers(first[1])
        records: list[dict[str, str]] = []
        invalid: list[tuple[int, int]] = []
        chunk: list[tuple[int, str]] = []

        for item in logical:
            chunk.append(item)
            if len(chunk) >= self.options.chunk_size:
                built, bad = self._build_records(headers, chunk)
                records.extend(built)
                invalid.extend(bad)
                chunk = []

        if chunk:
            built, bad = self._build_records(headers, chunk)
            records.extend(built)
            invalid.extend(bad)

        self._raise_if_invalid(headers, invalid)
        return ParsedCsv(headers=headers, records=records)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _stream_lines(self, stream: TextIO) -> Iterator[str]:
        """Physical lines after leading/trailing skips, without line terminators."""
        skip_leading = self.options.skip_leading_lines
        held: deque[str] = deque()

        for index, raw in enumerate(stream):
            if index < skip_leading:
                continue
            line = raw[:-1] if raw.endswith("\n") else raw
            if line.endswith("\r"):
                line = line[:-1]
            held.append(line)
            # Hold back the trailing lines until the end of input is known
            if len(held) > self.options.skip_trailing_lines:
                yield held.popleft()

    def _logical_records(self, lines: Iterable[str]) -> Iterator[tuple[int, str]]:
        """
        Group physical lines into logical records.

        Yields (line_number, text) where line_number is the 1-based physical
        line the record starts on. A record continues onto the next line
        while a quoted value is open.
        """
        quote_char = self.options.quote_char
        pending: list[str] = []
        start_line = 0
        quote_count = 0

        for line_number, line in enumerate(lines, start=1):
            if not pending:
                if not line.strip():
                    continue
                start_line = line_number

            pending.append(line)
            if quote_char is not None:
                quote_count += line.count(quote_char)

            if quote_count % 2 == 0:
                yield start_line, "\n".join(pending)
                pending = []
                quote_count = 0

        if pending:
            raise CsvParseError(
                f"Unterminated quoted value in record starting on line {start_line}"
            )

    def _parse_headers(self, text: str) -> list[str]:
        quote_char = self.options.quote_char
        headers = []
        for cell in split_fields(text, self.options.separator, quote_char):
            cell = cell.strip()
            if quote_char is not None:
                cell = cell.strip(quote_char).strip()
            if cell:
                headers.append(cell)

        if not headers:
            raise CsvParseError(
                "CSV file has no valid headers. Cannot determine expected column count."
            )

        duplicates = sorted({h for h in headers if headers.count(h) > 1})
        if duplicates:
            raise CsvParseError(
                f"CSV file has duplicate column names: {', '.join(duplicates)}",
                expected_columns=len(headers),
            )
        return headers

    def _build_records(
        self,
        headers: list[str],
        logical: Iterable[tuple[int, str]],
    ) -> tuple[list[dict[str, str]], list[tuple[int, int]]]:
        expected = len(headers)
        records: list[dict[str, str]] = []
        invalid: list[tuple[int, int]] = []

        for line_number, text in logical:
            values = split_fields(text, self.options.separator, self.options.quote_char)
            if len(values) != expected:
                invalid.append((line_number, len(values)))
                continue
            records.append(dict(zip(headers, values)))

        return records, invalid

    @staticmethod
    def _raise_if_invalid(headers: list[str], invalid: list[tuple[int, int]]) -> None:
        if not invalid:
            return

        expected = len(headers)
        details = ", ".join(
            f"Line {line} has {count} columns"
            for line, count in invalid[:MAX_REPORTED_INVALID_ROWS]
        )
        message = (
            f"CSV file has inconsistent column counts. Expected {expected} columns "
            f"(based on header row), but found rows with different counts: {details}"
        )
        if len(invalid) > MAX_REPORTED_INVALID_ROWS:
            message += f" (and {len(invalid) - MAX_REPORTED_INVALID_ROWS} more)"

        raise CsvParseError(message, invalid_rows=invalid, expected_columns=expected)
