"""Tests for record field normalization."""

from datetime import date

from beverage_sync.services.parsing import (
    clean_text,
    county_code,
    first_of_month_back,
    format_date_from_api,
    month_key,
    parse_date,
    parse_money,
    to_year_month,
)


class TestParseDate:
    def test_iso_timestamp(self):
        assert parse_date("2024-01-31T00:00:00.000") == date(2024, 1, 31)

    def test_iso_date(self):
        assert parse_date("2024-01-31") == date(2024, 1, 31)

    def test_compact(self):
        assert parse_date("20240131") == date(2024, 1, 31)

    def test_invalid(self):
        assert parse_date(None) is None
        assert parse_date("") is None
        assert parse_date("not a date") is None
        assert parse_date("20241341") is None

    def test_format_from_api(self):
        assert format_date_from_api("2024-02-29T00:00:00.000") == "2024-02-29"
        assert format_date_from_api(None) is None
        assert to_year_month(date(2024, 2, 29)) == "2024-02"


class TestParseMoney:
    def test_plain(self):
        assert parse_money("1234.56") == 1234.56

    def test_currency_formatting(self):
        assert parse_money("$1,234.56") == 1234.56

    def test_numeric_input(self):
        assert parse_money(12) == 12.0

    def test_absent_is_none_not_zero(self):
        assert parse_money(None) is None
        assert parse_money("") is None
        assert parse_money("$") is None
        assert parse_money("n/a") is None

    def test_zero(self):
        assert parse_money("0.00") == 0.0


class TestKeys:
    def test_county_code_is_zero_padded(self):
        assert county_code("1") == "001"
        assert county_code(" 227 ") == "227"
        assert county_code(57) == "057"

    def test_county_code_invalid(self):
        assert county_code(None) is None
        assert county_code("") is None
        assert county_code("TRAVIS") is None

    def test_month_key(self):
        assert month_key("MB123456", date(2024, 3, 31)) == "MB123456_202403"

    def test_clean_text(self):
        assert clean_text("  AUSTIN ") == "AUSTIN"
        assert clean_text("   ") is None
        assert clean_text(None) is None


class TestFirstOfMonthBack:
    def test_same_year(self):
        assert first_of_month_back(date(2024, 6, 30), 2) == date(2024, 4, 1)

    def test_crosses_year(self):
        assert first_of_month_back(date(2024, 1, 31), 1) == date(2023, 12, 1)
        assert first_of_month_back(date(2024, 3, 15), 15) == date(2022, 12, 1)

    def test_zero_months(self):
        assert first_of_month_back(date(2024, 3, 15), 0) == date(2024, 3, 1)
