"""
Column type inference for typed destinations.

Given the sampled string values of one column, pick the narrowest SQL storage
type that holds every value. Blank values are ignored. Parsing uses fixed,
culture-independent rules (no locale lookups) so the result is deterministic.

Precedence: INT -> DECIMAL -> DATETIME2 -> BIT -> UNIQUEIDENTIFIER -> NVARCHAR.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, Mapping

__all__ = [
    "SqlDataType",
    "ColumnTypeInfo",
    "ColumnTypeAnalyzer",
    "is_int",
    "is_decimal",
    "parse_datetime",
    "is_guid",
    "validate_value",
    "convert_value",
]

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

DEFAULT_DECIMAL_PRECISION = 18
DEFAULT_DECIMAL_SCALE = 2
MAX_DECIMAL_PRECISION = 38

DEFAULT_NVARCHAR_LENGTH = 255
NVARCHAR_BUCKETS = (255, 500, 1000, 4000)
NVARCHAR_MAX = -1

_INT_RE = re.compile(r"^[+-]?\d+$")
# Thousands separators must group by three
_DECIMAL_RE = re.compile(r"^[+-]?(?:\d{1,3}(?:,\d{3})+|\d+)?(?:\.\d+)?$")
_GUID_RE = re.compile(
    r"^\{?[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\}?$"
)

_DATE_FORMATS = ("%m/%d/%Y", "%d.%m.%Y", "%d/%m/%Y", "%Y/%m/%d")
_TIME_SUFFIXES = ("", " %H:%M:%S", " %H:%M")

_BIT_TRUE = frozenset({"true", "yes", "1", "y"})
_BIT_FALSE = frozenset({"false", "no", "0", "n"})


class SqlDataType(str, Enum):
    NVARCHAR = "NVARCHAR"
    INT = "INT"
    DECIMAL = "DECIMAL"
    DATETIME2 = "DATETIME2"
    BIT = "BIT"
    UNIQUEIDENTIFIER = "UNIQUEIDENTIFIER"


@dataclass(frozen=True)
class ColumnTypeInfo:
    data_type: SqlDataType
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None

    @property
    def sql_type_definition(self) -> str:
        if self.data_type == SqlDataType.NVARCHAR:
            if self.max_length == NVARCHAR_MAX:
                return "NVARCHAR(MAX)"
            return f"NVARCHAR({self.max_length or DEFAULT_NVARCHAR_LENGTH})"
        if self.data_type == SqlDataType.DECIMAL:
            return f"DECIMAL({self.precision},{self.scale})"
        return self.data_type.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_type": self.data_type.value,
            "max_length": self.max_length,
            "precision": self.precision,
            "scale": self.scale,
            "sql_type_definition": self.sql_type_definition,
        }


DEFAULT_COLUMN_TYPE = ColumnTypeInfo(SqlDataType.NVARCHAR, max_length=DEFAULT_NVARCHAR_LENGTH)


def is_int(value: str) -> bool:
    value = value.strip()
    if not _INT_RE.match(value):
        return False
    return INT64_MIN <= int(value) <= INT64_MAX


def is_decimal(value: str) -> bool:
    value = value.strip()
    # The regex admits "", "+" and "." since every part is optional
    return bool(_DECIMAL_RE.match(value)) and any(c.isdigit() for c in value)


def _decimal_digits(value: str) -> tuple[int, int]:
    """(integer digits, fraction digits) of a decimal literal."""
    body = value.strip().lstrip("+-").replace(",", "")
    integer, _, fraction = body.partition(".")
    return len(integer.lstrip("0") or "0"), len(fraction)


def parse_datetime(value: str) -> datetime | None:
    """Parse ISO-8601 or one of the fixed day/month formats; None if unparseable."""
    value = value.strip()
    if not value or not value[0].isdigit():
        return None

    iso = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        pass

    for date_format in _DATE_FORMATS:
        for suffix in _TIME_SUFFIXES:
            try:
                return datetime.strptime(value, date_format + suffix)
            except ValueError:
                continue
    return None


def is_guid(value: str) -> bool:
    return bool(_GUID_RE.match(value.strip()))


def _is_bit_literal(value: str) -> bool:
    return value.strip().lower() in ("true", "false")


def _nvarchar_length(longest: int) -> int:
    for bucket in NVARCHAR_BUCKETS:
        if longest <= bucket:
            return bucket
    return NVARCHAR_MAX


class ColumnTypeAnalyzer:
    """Infers ColumnTypeInfo from sampled string values.

    Example:
        >>> ColumnTypeAnalyzer().analyze_column("qty", ["1", "2.5"]).sql_type_definition
        'DECIMAL(18,2)'
    """

    def analyze_column(self, column_name: str, values: Iterable[str | None]) -> ColumnTypeInfo:
        non_blank = [v for v in values if v is not None and v.strip()]
        if not non_blank:
            return DEFAULT_COLUMN_TYPE

        if all(is_int(v) for v in non_blank):
            return ColumnTypeInfo(SqlDataType.INT)

        if all(is_decimal(v) for v in non_blank):
            precision, scale = self._decimal_precision(non_blank)
            return ColumnTypeInfo(SqlDataType.DECIMAL, precision=precision, scale=scale)

        if all(parse_datetime(v) is not None for v in non_blank):
            return ColumnTypeInfo(SqlDataType.DATETIME2)

        if all(_is_bit_literal(v) for v in non_blank):
            return ColumnTypeInfo(SqlDataType.BIT)

        if all(is_guid(v) for v in non_blank):
            return ColumnTypeInfo(SqlDataType.UNIQUEIDENTIFIER)

        longest = max(len(v) for v in non_blank)
        return ColumnTypeInfo(SqlDataType.NVARCHAR, max_length=_nvarchar_length(longest))

    def analyze_records(
        self,
        headers: list[str],
        records: Iterable[Mapping[str, str]],
    ) -> dict[str, ColumnTypeInfo]:
        """Analyze every column of a record set, keyed by header, in header order."""
        columns: dict[str, list[str]] = {h: [] for h in headers}
        for record in records:
            for header in headers:
                columns[header].append(record.get(header, ""))
        return {h: self.analyze_column(h, columns[h]) for h in headers}

    @staticmethod
    def _decimal_precision(values: list[str]) -> tuple[int, int]:
        integer_digits = 0
        scale = DEFAULT_DECIMAL_SCALE
        for value in values:
            digits, fraction = _decimal_digits(value)
            integer_digits = max(integer_digits, digits)
            scale = max(scale, fraction)

        precision = max(DEFAULT_DECIMAL_PRECISION, integer_digits + scale)
        precision = min(precision, MAX_DECIMAL_PRECISION)
        scale = min(scale, precision)
        return precision, scale


# ----------------------------------------------------------------------
# Value conversion
# ----------------------------------------------------------------------


def validate_value(value: str | None, data_type: SqlDataType) -> bool:
    """True if value is blank or converts cleanly to data_type."""
    try:
        convert_value(value, data_type)
    except ValueError:
        return False
    return True


def convert_value(value: str | None, data_type: SqlDataType) -> Any:
    """
    Convert one staged string to the Python value for a column type.

    Blank -> None. Raises ValueError if the value does not fit the type.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()

    if data_type == SqlDataType.INT:
        if not is_int(text):
            raise ValueError(f"Not an integer: {value!r}")
        return int(text)

    if data_type == SqlDataType.DECIMAL:
        if not is_decimal(text):
            raise ValueError(f"Not a decimal: {value!r}")
        try:
            return Decimal(text.replace(",", ""))
        except InvalidOperation as e:
            raise ValueError(f"Not a decimal: {value!r}") from e

    if data_type == SqlDataType.DATETIME2:
        parsed = parse_datetime(text)
        if parsed is None:
            raise ValueError(f"Not a date/time: {value!r}")
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(UTC)
        return parsed

    if data_type == SqlDataType.BIT:
        lowered = text.lower()
        if lowered in _BIT_TRUE:
            return True
        if lowered in _BIT_FALSE:
            return False
        raise ValueError(f"Not a boolean: {value!r}")

    if data_type == SqlDataType.UNIQUEIDENTIFIER:
        if not is_guid(text):
            raise ValueError(f"Not a GUID: {value!r}")
        return uuid.UUID(text.strip("{}"))

    return value
