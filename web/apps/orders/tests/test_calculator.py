"""Unit tests for the tax and total calculator."""
from dataclasses import dataclass
from decimal import Decimal

import pytest

from apps.orders.domain import build_order_items, calculate_totals, line_totals, money


@dataclass
class Line:
    price: Decimal
    quantity: int
    name: str = "Item"
    product_id: object = None


def test_two_units_at_ten_percent():
    totals = calculate_totals([Line(Decimal("100"), 2)], 10)
    assert totals.subtotal == Decimal("200.00")
    assert totals.tax_amount == Decimal("20.00")
    assert totals.total == Decimal("220.00")


def test_total_is_sum_of_rounded_parts():
    # 3 x 3.33 = 9.99; tax 0.999 -> 1.00
    totals = calculate_totals([Line(Decimal("3.33"), 3)], 10)
    assert totals.subtotal == Decimal("9.99")
    assert totals.tax_amount == Decimal("1.00")
    assert totals.total == totals.subtotal + totals.tax_amount == Decimal("10.99")


def test_half_up_rounding():
    # 0.125 rounds up, not to even
    assert money(Decimal("0.125")) == Decimal("0.13")
    totals = calculate_totals([Line(Decimal("1.25"), 1)], 10)
    assert totals.tax_amount == Decimal("0.13")


def test_deterministic():
    items = [Line(Decimal("19.99"), 3), Line(Decimal("0.01"), 7)]
    assert calculate_totals(items, "12.5") == calculate_totals(items, "12.5")


def test_zero_rate_and_empty_cart():
    assert calculate_totals([Line(Decimal("5"), 1)], 0).total == Decimal("5.00")
    empty = calculate_totals([], 10)
    assert (empty.subtotal, empty.tax_amount, empty.total) == (Decimal("0.00"), Decimal("0.00"), Decimal("0.00"))


@pytest.mark.parametrize(
    "items,rate,code",
    [
        ([Line(Decimal("-1"), 1)], 10, "NEGATIVE_PRICE"),
        ([Line(Decimal("1"), 0)], 10, "INVALID_QUANTITY"),
        ([Line(Decimal("1"), 1)], -5, "NEGATIVE_TAX_RATE"),
    ],
)
def test_rejects_malformed_input(items, rate, code):
    with pytest.raises(ValueError, match=code):
        calculate_totals(items, rate)


def test_line_totals_and_items():
    line = Line(Decimal("100"), 2, name="Notebook", product_id=42)
    assert line_totals(line, 10) == (Decimal("200.00"), Decimal("20.00"))

    (item,) = build_order_items([line], 10)
    assert item.product_id == "42"
    assert item.product_name == "Notebook"
    assert item.unit_price == Decimal("100.00")
    assert item.total_price == Decimal("200.00")
    assert item.tax_amount == Decimal("20.00")


def test_as_dict_renders_strings():
    assert calculate_totals([Line(Decimal("100"), 2)], 10).as_dict() == {
        "subtotal": "200.00",
        "taxAmount": "20.00",
        "total": "220.00",
    }
