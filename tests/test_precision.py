"""
Tests for cent precision across AutoFlow.

    1 USDC = 100 cents

Covers the constants, half-up quantization, user-input parsing and the
display helpers used by the activity feed.
"""

from decimal import Decimal

import pytest

from autoflow_core.precision import (
    CENT,
    MONEY_DECIMALS,
    ZERO,
    display_amount,
    format_amount,
    format_signed,
    is_positive_amount,
    parse_amount,
    quantize,
)


class TestPrecisionConstants:
    def test_money_decimals(self):
        assert MONEY_DECIMALS == 2

    def test_cent(self):
        assert CENT == Decimal("0.01")

    def test_zero_has_two_places(self):
        assert str(ZERO) == "0.00"


class TestQuantize:
    def test_rounds_half_up(self):
        assert quantize("1.005") == Decimal("1.01")
        assert quantize("1.004") == Decimal("1.00")

    def test_daily_yield_example(self):
        assert quantize(Decimal("789.23") * Decimal("0.052") / 365) == Decimal("0.11")

    def test_negative_half_rounds_away_from_zero(self):
        assert quantize("-3.505") == Decimal("-3.51")


class TestParseAmount:
    @pytest.mark.parametrize("raw, expected", [
        (100, Decimal("100.00")),
        ("12.5", Decimal("12.50")),
        (0.1, Decimal("0.10")),
        (Decimal("3.499"), Decimal("3.50")),
        ("-4", Decimal("-4.00")),
    ])
    def test_accepts_numbers(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [
        None, True, "abc", "", float("nan"), float("inf"), "NaN", "Infinity", [], {},
    ])
    def test_rejects_non_numbers(self, raw):
        assert parse_amount(raw) is None

    def test_tiny_value_rounds_to_zero_and_is_not_positive(self):
        assert not is_positive_amount(parse_amount("0.004"))

    def test_positive(self):
        assert is_positive_amount(Decimal("0.01"))
        assert not is_positive_amount(ZERO)
        assert not is_positive_amount(Decimal("-1"))
        assert not is_positive_amount(None)


class TestDisplay:
    def test_display_floors_negative(self):
        assert display_amount(Decimal("-5")) == ZERO

    def test_display_custom_floor(self):
        assert display_amount(Decimal("2"), Decimal("10")) == Decimal("10.00")
        assert display_amount(Decimal("20"), Decimal("10")) == Decimal("20.00")

    def test_format_amount(self):
        assert format_amount(Decimal("12.5")) == "12.50 USDC"
        assert format_amount(Decimal("1"), "ETH") == "1.00 ETH"

    def test_format_signed(self):
        assert format_signed(Decimal("12.5")) == "+ $12.50"
        assert format_signed(Decimal("-3.5")) == "- $3.50"
