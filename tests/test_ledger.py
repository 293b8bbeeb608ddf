"""Unit tests for the product ledger and its weighted-average cost rule."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pos_ledger import constants, ledger
from pos_ledger.errors import InsufficientStock, ProductNotFound


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Coffee", "Coffee"),
        ("  Coffee  ", "Coffee"),
        ("Green   Tea", "Green Tea"),
        ("\tGreen\nTea ", "Green Tea"),
    ],
)
def test_normalize_product_name_collapses_whitespace(raw, expected):
    assert ledger.normalize_product_name(raw) == expected


def test_product_key_is_case_insensitive():
    assert ledger.product_key("  GREEN tea") == ledger.product_key("green Tea")


def test_weighted_average_first_purchase_uses_unit_price():
    assert ledger.weighted_average_cost(0, Decimal("0"), 10, Decimal("10")) == Decimal("10.0000")


def test_weighted_average_blends_existing_stock():
    """(10 * 10 + 10 * 12) / 20 = 11."""

    assert ledger.weighted_average_cost(10, Decimal("10"), 10, Decimal("12")) == Decimal("11")


def test_weighted_average_rounds_half_up_to_cost_quantum():
    """(1 * 1 + 2 * 2) / 3 = 1.6666... rounds to 1.6667."""

    result = ledger.weighted_average_cost(1, Decimal("1"), 2, Decimal("2"))
    assert result == Decimal("1.6667")
    assert result.as_tuple().exponent == constants.COST_QUANTUM.as_tuple().exponent


def test_weighted_average_rejects_non_positive_total():
    with pytest.raises(ValueError):
        ledger.weighted_average_cost(0, Decimal("0"), 0, Decimal("1"))


def test_total_cost_is_quantity_times_average():
    assert ledger.total_cost(4, Decimal("2.5")) == Decimal("10.0")


# ---------------------------------------------------------------------------
# ProductLedger inside a transaction
# ---------------------------------------------------------------------------


def _product(store, name):
    return store.find_one(constants.CollectionName.PRODUCTS, "name_key", ledger.product_key(name))


def test_apply_purchase_delta_creates_product_on_first_sight(store):
    with store.transaction() as txn:
        staged = ledger.ProductLedger(txn).apply_purchase_delta("  Coffee ", 10, Decimal("10"))
        assert staged.name == "Coffee"

    product = _product(store, "coffee")
    assert product.quantity == 10
    assert product.average_cost == Decimal("10")
    assert product.total_cost == Decimal("100")
    assert product.version == 1
    assert product.created_at is not None
    assert product.updated_at == product.created_at


def test_apply_purchase_delta_updates_existing_product(store):
    with store.transaction() as txn:
        ledger.ProductLedger(txn).apply_purchase_delta("Coffee", 10, Decimal("10"))
    with store.transaction() as txn:
        ledger.ProductLedger(txn).apply_purchase_delta("COFFEE", 10, Decimal("12"))

    product = _product(store, "Coffee")
    assert product.name == "Coffee"
    assert product.quantity == 20
    assert product.average_cost == Decimal("11")
    assert product.total_cost == Decimal("220")
    assert product.version == 2
    assert product.updated_at > product.created_at


def test_same_product_twice_in_one_transaction_sees_staged_state(store):
    with store.transaction() as txn:
        product_ledger = ledger.ProductLedger(txn)
        product_ledger.apply_purchase_delta("Coffee", 10, Decimal("10"))
        product_ledger.apply_purchase_delta("Coffee", 10, Decimal("12"))

    products = store.list(constants.CollectionName.PRODUCTS)
    assert len(products) == 1
    assert products[0].quantity == 20
    assert products[0].average_cost == Decimal("11")


def test_apply_sale_delta_leaves_average_cost_unchanged(store):
    with store.transaction() as txn:
        ledger.ProductLedger(txn).apply_purchase_delta("Coffee", 20, Decimal("11"))
    with store.transaction() as txn:
        ledger.ProductLedger(txn).apply_sale_delta("coffee", 5)

    product = _product(store, "Coffee")
    assert product.quantity == 15
    assert product.average_cost == Decimal("11")
    assert product.total_cost == Decimal("165")


def test_apply_sale_delta_unknown_product(store):
    with pytest.raises(ProductNotFound, match="Ghost"):
        with store.transaction() as txn:
            ledger.ProductLedger(txn).apply_sale_delta(" Ghost ", 1)


def test_apply_sale_delta_insufficient_stock_reports_counts(store):
    with store.transaction() as txn:
        ledger.ProductLedger(txn).apply_purchase_delta("Coffee", 2, Decimal("5"))

    with pytest.raises(InsufficientStock) as excinfo:
        with store.transaction() as txn:
            ledger.ProductLedger(txn).apply_sale_delta("Coffee", 3)

    assert excinfo.value.requested == 3
    assert excinfo.value.available == 2
    assert _product(store, "Coffee").quantity == 2


def test_selling_everything_keeps_the_product(store):
    with store.transaction() as txn:
        ledger.ProductLedger(txn).apply_purchase_delta("Coffee", 2, Decimal("5"))
    with store.transaction() as txn:
        ledger.ProductLedger(txn).apply_sale_delta("Coffee", 2)

    product = _product(store, "Coffee")
    assert product.quantity == 0
    assert product.total_cost == Decimal("0")
    assert product.average_cost == Decimal("5")
