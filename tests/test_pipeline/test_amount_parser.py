"""
Tests for statement amount parser.
"""

from decimal import Decimal

import pytest

from royalties.pipeline.amount_parser import parse_amount


class TestParseAmount:
    """Test amount parsing across statement conventions."""

    def test_simple_amount(self):
        result = parse_amount("1234.56")
        assert result.amount == Decimal("1234.56")
        assert not result.is_negative

    def test_thousands_separators(self):
        assert parse_amount("1,234,567.89").amount == Decimal("1234567.89")

    def test_dollar_sign(self):
        result = parse_amount("$500.00")
        assert result.amount == Decimal("500.00")
        assert result.currency == "USD"

    def test_currency_code_suffix(self):
        result = parse_amount("1234.56 eur")
        assert result.amount == Decimal("1234.56")
        assert result.currency == "EUR"

    def test_european_decimal_comma(self):
        assert parse_amount("1.234,56").amount == Decimal("1234.56")
        assert parse_amount("12,5").amount == Decimal("12.5")

    def test_comma_thousands_only(self):
        assert parse_amount("1,234").amount == Decimal("1234")

    def test_parentheses_negative(self):
        result = parse_amount("(500.00)")
        assert result.amount == Decimal("-500.00")
        assert result.is_negative
        assert result.sign_convention == "PARENTHESES"

    def test_leading_minus(self):
        result = parse_amount("-75.50")
        assert result.amount == Decimal("-75.50")
        assert result.sign_convention == "MINUS"

    def test_trailing_minus(self):
        result = parse_amount("75.50-")
        assert result.amount == Decimal("-75.50")
        assert result.is_negative

    def test_symbol_inside_parentheses(self):
        assert parse_amount("($1,000.00)").amount == Decimal("-1000.00")

    def test_sub_cent_precision_kept(self):
        assert parse_amount("0.003412").amount == Decimal("0.003412")

    @pytest.mark.parametrize("value", [12, 12.5, Decimal("3.14")])
    def test_numbers_pass_through(self, value):
        assert parse_amount(value).amount == Decimal(str(value))

    @pytest.mark.parametrize("value", ["", None, "-", "N/A", "abc", "nan"])
    def test_unparseable(self, value):
        assert parse_amount(value).amount is None
