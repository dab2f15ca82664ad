# tests/test_money.py
from datetime import timedelta
from decimal import Decimal

import pytest

from shared.money import add, daily_to_per_second, elapsed_seconds, multiply, quantize_money, to_decimal


def test_to_decimal_refuses_floats():
    with pytest.raises(TypeError):
        to_decimal(0.1)
    assert to_decimal("0.1") == Decimal("0.1")
    assert to_decimal(3) == Decimal("3")


def test_results_are_truncated_to_18_places():
    assert quantize_money("0.1234567890123456789") == Decimal("0.123456789012345678")
    assert multiply("2", "0.0000000000000000005") == Decimal("0.000000000000000001")
    assert add("1", "-0.0000000000000000001") == Decimal("0.999999999999999999")


def test_large_products_keep_full_precision():
    assert multiply("123456789012.123456789", "1000000", "0.000001") == Decimal("123456789012.123456789")


def test_elapsed_seconds_keeps_microseconds():
    assert elapsed_seconds(timedelta(days=1, seconds=5, microseconds=1)) == Decimal("86405.000001")
    assert elapsed_seconds(timedelta(seconds=-2)) == Decimal("-2")


def test_daily_rate_conversion():
    assert daily_to_per_second("0.864") == Decimal("0.00001")
