"""Tests for tax and shipping calculation."""
from decimal import Decimal

import pytest

from storefront.orders.pricing import calculate_tax, calculate_shipping


@pytest.mark.parametrize("subtotal, expected", [
    (0, 0),
    (100000, 18000),
    (50000, 9000),
    (25, 5),      # 4.5 rounds half-up
    (2, 0),       # 0.36 rounds down
    (99999, 18000),  # 17999.82
])
def test_tax_is_eighteen_percent_rounded_half_up(subtotal, expected):
    assert calculate_tax(subtotal) == expected


def test_tax_with_custom_rate():
    assert calculate_tax(1000, rate=Decimal("0.05")) == 50
    assert calculate_tax(10, rate=Decimal("0.05")) == 1  # 0.5 rounds up


def test_tax_is_an_integer():
    assert isinstance(calculate_tax(12345), int)


def test_free_shipping_at_threshold():
    assert calculate_shipping(1, 100000) == 0
    assert calculate_shipping(3, 250000) == 0


def test_flat_fee_below_threshold():
    assert calculate_shipping(1, 99999) == 5000
    assert calculate_shipping(1, 0) == 5000


def test_item_count_does_not_change_the_fee():
    assert calculate_shipping(1, 1000) == calculate_shipping(50, 1000)


def test_shipping_overrides():
    assert calculate_shipping(1, 400, threshold=500, flat_fee=99) == 99
    assert calculate_shipping(1, 500, threshold=500, flat_fee=99) == 0
