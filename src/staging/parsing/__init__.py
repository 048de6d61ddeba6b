"""Delimited text parsing and column type inference."""

from staging.parsing.column_analyzer import (
    ColumnTypeAnalyzer,
    ColumnTypeInfo,
    SqlDataType,
    convert_value,
    validate_value,
)
from staging.parsing.csv_parser import (
    DEFAULT_SEPARATOR,
    CsvParseOptions,
    CsvParser,
    ParsedCsv,
    escape_value,
    format_row,
    split_fields,
)

__all__ = [
    "CsvParser",
    "CsvParseOptions",
    "ParsedCsv",
    "DEFAULT_SEPARATOR",
    "split_fields",
    "escape_value",
    "format_row",
    "ColumnTypeAnalyzer",
    "ColumnTypeInfo",
    "SqlDataType",
    "validate_value",
    "convert_value",
]
