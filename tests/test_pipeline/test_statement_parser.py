"""
Tests for CSV / TSV / JSON statement parsing.
"""

import json
from datetime import date
from decimal import Decimal

import pytest

from royalties.models.enums import StatementFormat
from royalties.pipeline.statement_parser import CsvStatementParser, header_key, parse_period_date


@pytest.fixture
def parser():
    return CsvStatementParser()


SPOTIFY_CSV = (
    "Song Title,Writer,ISRC,Territory,Streams,Royalty Amount,Usage Type\n"
    "Yesterday,\"Lennon, John\",GB-AYE-65-00001,gb,12000,\"$1,234.56\",Streaming\n"
    "Let It Be,Paul McCartney,,US,300,(12.50),stream\n"
    ",,,,,,\n"
    "Help!,John Lennon,,US,10,not money,Streaming\n"
)


class TestDelimitedParsing:
    """Test header aliasing and row normalization."""

    def test_rows_and_headers(self, parser):
        result = parser.parse(SPOTIFY_CSV, "spotify_2024q1.csv")
        assert result.format == "csv"
        assert result.headers[0] == "Song Title"
        assert [r.row_number for r in result.rows] == [1, 2]

    def test_normalized_fields(self, parser):
        first = parser.parse(SPOTIFY_CSV, "s.csv").rows[0]
        assert first.work_title == "Yesterday"
        assert first.writer_name == "John Lennon"
        assert first.writer_first_name == "John"
        assert first.writer_last_name == "Lennon"
        assert first.isrc == "GBAYE6500001"
        assert first.territory == "GB"
        assert first.usage_count == 12000
        assert first.amount == Decimal("1234.56")
        assert first.currency == "USD"
        assert first.usage_type == "streaming"
        assert first.raw_data["Song Title"] == "Yesterday"

    def test_negative_amount_and_usage_alias(self, parser):
        second = parser.parse(SPOTIFY_CSV, "s.csv").rows[1]
        assert second.amount == Decimal("-12.50")
        assert second.usage_type == "streaming"
        assert second.isrc is None

    def test_unparseable_amount_reported(self, parser):
        result = parser.parse(SPOTIFY_CSV, "s.csv")
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Row 4")

    def test_semicolon_delimiter(self, parser):
        content = "Title;Composer;Amount;Right Type\nYesterday;Paul McCartney;1.234,56;PERF\n"
        result = parser.parse(content, "gema.csv")
        row = result.rows[0]
        assert row.amount == Decimal("1234.56")
        assert row.right_type == "performance"
        assert row.writer_name == "Paul McCartney"

    def test_tsv(self, parser):
        content = "title\tiswc\tamount\nYesterday\tT-010.140.739-1\t10.00\n"
        result = parser.parse(content.encode("utf-8"), "ascap.tsv")
        assert result.format == StatementFormat.TSV.value
        assert result.rows[0].iswc == "T0101407391"

    def test_unknown_right_type_maps_to_other(self, parser):
        content = "title,amount,right type\nYesterday,1.00,grand rights\n"
        assert parser.parse(content, "s.csv").rows[0].right_type == "other"

    def test_missing_amount_column(self, parser):
        result = parser.parse("title,writer\nYesterday,Lennon\n", "s.csv")
        assert result.rows == []
        assert result.errors == ["No amount column detected"]

    def test_no_title_or_identifier_warns(self, parser):
        result = parser.parse("performer,amount\nThe Beatles,1.00\n", "s.csv")
        assert "No title or identifier column detected" in result.warnings
        assert result.rows[0].performer_name == "The Beatles"

    def test_explicit_column_mappings(self, parser):
        content = "Col A,Col B,Col C\nYesterday,T0101407391,9.99\n"
        result = parser.parse(
            content, "s.csv",
            column_mappings={"Col A": "work_title", "Col B": "iswc", "Col C": "amount", "Col D": "isrc"},
        )
        row = result.rows[0]
        assert row.work_title == "Yesterday"
        assert row.iswc == "T0101407391"
        assert row.amount == Decimal("9.99")
        assert any("Col D" in w for w in result.warnings)

    def test_utf8_bom_stripped(self, parser):
        content = "\ufefftitle,amount\nYesterday,1.00\n".encode("utf-8")
        assert parser.parse(content, "s.csv").rows[0].work_title == "Yesterday"

    def test_period_columns(self, parser):
        content = "title,amount,period start,period end\nYesterday,1.00,20240101,2024-03-31\n"
        row = parser.parse(content, "s.csv").rows[0]
        assert row.period_start == date(2024, 1, 1)
        assert row.period_end == date(2024, 3, 31)


class TestJsonParsing:
    """Test JSON statement input."""

    def test_array_of_objects(self, parser):
        content = json.dumps([
            {"title": "Yesterday", "writer": "John Lennon", "amount": 12.5, "iswc": "T-010.140.739-1"},
            {"title": "Help!", "amount": "3.00"},
        ])
        result = parser.parse(content, "feed.json")
        assert result.format == "json"
        assert [r.amount for r in result.rows] == [Decimal("12.5"), Decimal("3.00")]
        assert result.rows[0].iswc == "T0101407391"

    def test_rows_envelope_and_sniffing(self, parser):
        content = json.dumps({"rows": [{"title": "Yesterday", "amount": 1}]})
        result = parser.parse(content, "upload")
        assert result.format == "json"
        assert len(result.rows) == 1

    def test_invalid_json(self, parser):
        result = parser.parse("[{bad json", "feed.json")
        assert result.rows == []
        assert result.errors[0].startswith("Invalid JSON")


class TestHelpers:
    """Test header keys and period date parsing."""

    def test_header_key(self):
        assert header_key("  Royalty Amount (USD) ") == "royalty_amount_usd"

    @pytest.mark.parametrize("value,expected", [
        ("2024-01-31", date(2024, 1, 31)),
        ("20240131", date(2024, 1, 31)),
        ("", None),
        ("not a date", None),
    ])
    def test_parse_period_date(self, value, expected):
        assert parse_period_date(value) == expected
