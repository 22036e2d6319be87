"""
Tests for product catalog matching and pricing.
"""

from __future__ import annotations

from decimal import Decimal

from src.sales_agent.catalog import find_products, get_catalog, unit_price_for


def test_catalog_has_expected_categories() -> None:
    catalog = get_catalog()

    assert set(catalog.categories) == {
        "Bagels/Pastries",
        "Beverages",
        "Coffee",
        "Dairy",
        "Condiments/Jams",
    }
    water = catalog.get("bottled water")
    assert water is not None
    assert water.min_cases == 3
    assert water.price_text == "$20.00"


def test_longer_alias_wins() -> None:
    matches = find_products(get_catalog(), "Can I get some asiago cheese bagels?")

    assert [p.name for p in matches] == ["Asiago Cheese Bagels"]


def test_products_in_order_of_mention() -> None:
    matches = find_products(get_catalog(), "Orange juice, and maybe some decaf and muffins")

    assert [p.name for p in matches] == [
        "Orange Juice (10 fl oz)",
        "Decaf Coffee",
        "Blueberry Muffins",
    ]


def test_no_match_for_unrelated_text() -> None:
    assert find_products(get_catalog(), "Who is calling?") == []
    assert find_products(get_catalog(), "") == []


def test_bulk_discount() -> None:
    bagels = get_catalog().get("Plain Bagels")

    assert unit_price_for(bagels, 4) == Decimal("23.00")
    assert unit_price_for(bagels, 5) == Decimal("21.00")
