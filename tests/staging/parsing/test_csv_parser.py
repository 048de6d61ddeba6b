"""Tests for the delimited text parser."""

import io
import logging

import pytest

from core.errors import CsvParseError
from config.config import CsvConfig
from staging.parsing import (
    CsvParseOptions,
    CsvParser,
    ParsedCsv,
    escape_value,
    format_row,
    split_fields,
)

SEP = "║"


def _both(parser: CsvParser, text: str) -> tuple[ParsedCsv, ParsedCsv]:
    return parser.parse_in_memory(text), parser.parse_stream(io.StringIO(text, newline="\n"))


class TestSplitFields:
    def test_plain_split_trims_whitespace(self):
        assert split_fields(" a ║b║ c", SEP) == ["a", "b", "c"]

    def test_quoted_separator_is_literal(self):
        assert split_fields('1║"x║y"║z', SEP) == ["1", "x║y", "z"]

    def test_doubled_quote_inside_quotes(self):
        assert split_fields('"say ""hi"""║2', SEP) == ['say "hi"', "2"]

    def test_quoted_whitespace_kept(self):
        assert split_fields('"  padded  "║x', SEP) == ["  padded  ", "x"]

    def test_empty_fields(self):
        assert split_fields("║║", SEP) == ["", "", ""]

    def test_multi_character_separator(self):
        assert split_fields('a::"b::c"::d', "::") == ["a", "b::c", "d"]

    def test_quote_disabled(self):
        assert split_fields('"a"║b', SEP, quote_char=None) == ['"a"', "b"]


class TestEscapeValue:
    def test_plain_value_unchanged(self):
        assert escape_value("Smith") == "Smith"

    def test_quotes_separator_and_doubles_quotes(self):
        assert escape_value('a║"b"') == '"a║""b"""'

    def test_quotes_line_breaks_and_padding(self):
        assert escape_value("line1\nline2") == '"line1\nline2"'
        assert escape_value(" x ") == '" x "'

    def test_unrepresentable_without_quote_char(self):
        with pytest.raises(ValueError):
            escape_value("a║b", quote_char=None)

    def test_escaped_values_split_back(self):
        values = ['x║y', 'say "hi"', "  pad", "plain", ""]
        assert split_fields(format_row(values), SEP) == values


class TestCsvParseOptions:
    def test_rejects_bad_options(self):
        with pytest.raises(ValueError):
            CsvParseOptions(separator="")
        with pytest.raises(ValueError):
            CsvParseOptions(quote_char="''")
        with pytest.raises(ValueError):
            CsvParseOptions(separator=",", quote_char=",")
        with pytest.raises(ValueError):
            CsvParseOptions(chunk_size=0)

    def test_from_config_with_overrides(self):
        options = CsvParseOptions.from_config(CsvConfig(skip_leading_lines=2), separator=",", unknown=1)
        assert options.separator == ","
        assert options.skip_leading_lines == 2
        assert options.quote_char == '"'


class TestCsvParser:
    def test_basic_parse(self):
        parsed = CsvParser().parse("id║name\n1║Ann\n2║Bob\n")

        assert parsed.headers == ["id", "name"]
        assert parsed.records == [{"id": "1", "name": "Ann"}, {"id": "2", "name": "Bob"}]
        assert len(parsed) == 2
        assert parsed.column_values("name") == ["Ann", "Bob"]

    def test_empty_input(self):
        parsed = CsvParser().parse("")
        assert parsed.headers == []
        assert parsed.records == []

    def test_header_only(self):
        parsed = CsvParser().parse("id║name\n")
        assert parsed.headers == ["id", "name"]
        assert parsed.records == []

    def test_crlf_and_blank_lines(self):
        parsed = CsvParser().parse("id║name\r\n\r\n1║Ann\r\n\r\n")
        assert parsed.records == [{"id": "1", "name": "Ann"}]

    def test_multiline_quoted_value(self):
        text = 'id║note\n1║"first line\nsecond line"\n2║plain\n'
        for parsed in _both(CsvParser(), text):
            assert parsed.records == [
                {"id": "1", "note": "first line\nsecond line"},
                {"id": "2", "note": "plain"},
            ]

    def test_quoted_headers_are_unwrapped(self):
        parsed = CsvParser().parse('"id"║" name "\n1║x\n')
        assert parsed.headers == ["id", "name"]

    def test_no_headers(self):
        with pytest.raises(CsvParseError, match="no valid headers"):
            CsvParser().parse("║\n1║2\n")

    def test_inconsistent_columns_reports_lines(self):
        text = "a║b║c\n1║2║3\n1║2\n1║2║3║4\n"
        with pytest.raises(CsvParseError) as exc_info:
            CsvParser().parse(text)

        error = exc_info.value
        assert error.expected_columns == 3
        assert error.invalid_rows == [(3, 2), (4, 4)]
        assert "Line 3 has 2 columns" in error.message
        assert "Line 4 has 4 columns" in error.message

    def test_invalid_rows_capped_in_message(self):
        text = "a║b\n" + "1\n" * 12
        with pytest.raises(CsvParseError) as exc_info:
            CsvParser().parse(text)
        assert len(exc_info.value.invalid_rows) == 12
        assert "(and 2 more)" in exc_info.value.message

    def test_unterminated_quote(self):
        with pytest.raises(CsvParseError, match="Unterminated"):
            CsvParser().parse('a║b\n1║"open\n')

    def test_skip_leading_and_trailing_lines(self):
        parser = CsvParser(CsvParseOptions(skip_leading_lines=2, skip_trailing_lines=1))
        text = "report\ngenerated today\nid║v\n1║a\n2║b\nTOTAL 2\n"
        for parsed in _both(parser, text):
            assert parsed.headers == ["id", "v"]
            assert [r["id"] for r in parsed.records] == ["1", "2"]

    def test_skips_larger_than_input(self):
        parser = CsvParser(CsvParseOptions(skip_leading_lines=3, skip_trailing_lines=3))
        for parsed in _both(parser, "id║v\n1║a\n"):
            assert parsed.records == []

    def test_strategies_agree(self):
        text = 'id║name║note\n1║"A ║ B"║x\n2║C║"multi\nline"\n\n3║D║\n'
        in_memory, streamed = _both(CsvParser(CsvParseOptions(chunk_size=1)), text)
        assert in_memory == streamed

    def test_strategies_raise_same_error(self):
        text = "a║b\n1\n2║3\n4\n"
        errors = []
        for strategy in ("parse_in_memory", "parse_stream"):
            parser = CsvParser(CsvParseOptions(chunk_size=1))
            arg = text if strategy == "parse_in_memory" else io.StringIO(text)
            with pytest.raises(CsvParseError) as exc_info:
                getattr(parser, strategy)(arg)
            errors.append(exc_info.value.invalid_rows)
        assert errors[0] == errors[1] == [(2, 1), (4, 1)]

    def test_parse_uses_stream_above_threshold(self, caplog):
        parser = CsvParser(CsvParseOptions(streaming_threshold=10))
        text = "id║name\n1║Ann\n2║Bob\n"
        with caplog.at_level(logging.DEBUG, logger="staging.parsing.csv_parser"):
            parsed = parser.parse(text)
        assert len(parsed) == 2
        assert [r.input_chars for r in caplog.records if hasattr(r, "input_chars")] == [len(text)]

    def test_duplicate_headers_rejected(self):
        text = "id║name║id\n1║Ann║2\n"
        for parse in (CsvParser().parse_in_memory, lambda t: CsvParser().parse_stream(io.StringIO(t))):
            with pytest.raises(CsvParseError, match="duplicate column names: id"):
                parse(text)

    def test_headers_duplicate_after_trimming_rejected(self):
        with pytest.raises(CsvParseError, match="duplicate column names"):
            CsvParser().parse('id║" id "\n1║2\n')

    def test_parse_file_tolerates_bom(self, tmp_path):
        path = tmp_path / "orders.csv"
        path.write_text("\ufeffid║qty\n1║5\n", encoding="utf-8")

        parsed = CsvParser().parse_file(path)
        assert parsed.headers == ["id", "qty"]
        assert parsed.records == [{"id": "1", "qty": "5"}]

    def test_comma_separated(self):
        parser = CsvParser(CsvParseOptions(separator=","))
        parsed = parser.parse('id,name\n1,"Smith, J"\n')
        assert parsed.records == [{"id": "1", "name": "Smith, J"}]
