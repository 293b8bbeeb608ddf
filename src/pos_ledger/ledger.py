"""Product ledger: quantity on hand and weighted-average cost basis.

Every mutation of a product goes through :class:`ProductLedger`, which is
bound to one open :class:`~pos_ledger.document_store.Transaction`. The ledger
computes the new state and stages it; nothing is visible to other readers
until the transaction commits.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from . import log
from .constants import COST_QUANTUM, CollectionName
from .data_manager import ProductRecord
from .document_store import Transaction, generate_document_id
from .errors import InsufficientStock, ProductNotFound


def normalize_product_name(name: str) -> str:
    """Strip the name and collapse internal whitespace runs to one space."""

    return " ".join(str(name).split())


def product_key(name: str) -> str:
    """Return the case-insensitive lookup key for a product name."""

    return normalize_product_name(name).casefold()


def weighted_average_cost(
    old_quantity: int,
    old_average_cost: Decimal,
    quantity: int,
    unit_price: Decimal,
) -> Decimal:
    """Blend a purchase into the existing average cost.

    ``(old_quantity * old_average_cost + quantity * unit_price) / (old_quantity + quantity)``,
    rounded half-up to :data:`~pos_ledger.constants.COST_QUANTUM`. With no
    units on hand the result is simply ``unit_price``.
    """

    total_quantity = old_quantity + quantity
    if total_quantity <= 0:
        raise ValueError("Resulting quantity must be positive")
    if old_quantity == 0:
        blended = Decimal(unit_price)
    else:
        blended = (Decimal(old_quantity) * old_average_cost + Decimal(quantity) * unit_price) / Decimal(total_quantity)
    return blended.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def total_cost(quantity: int, average_cost: Decimal) -> Decimal:
    """Derived inventory value; always recomputed, never carried forward."""

    return Decimal(quantity) * average_cost


class ProductLedger:
    """Transaction-scoped view of the ``products`` collection."""

    def __init__(self, txn: Transaction) -> None:
        self._txn = txn

    def find_by_name(self, name: str) -> Optional[ProductRecord]:
        """Return the product matching ``name`` (normalized, case-insensitive)."""

        return self._txn.find_one(CollectionName.PRODUCTS, "name_key", product_key(name))

    def apply_purchase_delta(self, name: str, quantity: int, unit_price: Decimal) -> ProductRecord:
        """Add ``quantity`` units bought at ``unit_price``, creating the product if unseen."""

        product = self.find_by_name(name)
        if product is None:
            average_cost = weighted_average_cost(0, Decimal("0"), quantity, unit_price)
            created = ProductRecord(
                product_id=generate_document_id(CollectionName.PRODUCTS),
                name=normalize_product_name(name),
                name_key=product_key(name),
                quantity=quantity,
                average_cost=average_cost,
                total_cost=total_cost(quantity, average_cost),
            )
            log.debug("Staging new product '%s' (%s)", created.name, created.product_id)
            return self._txn.insert(CollectionName.PRODUCTS, created)

        new_quantity = product.quantity + quantity
        average_cost = weighted_average_cost(product.quantity, product.average_cost, quantity, unit_price)
        updated = replace(
            product,
            quantity=new_quantity,
            average_cost=average_cost,
            total_cost=total_cost(new_quantity, average_cost),
        )
        log.debug(
            "Staging purchase delta for '%s': quantity %s -> %s, average cost %s -> %s",
            product.name,
            product.quantity,
            new_quantity,
            product.average_cost,
            average_cost,
        )
        return self._txn.update(CollectionName.PRODUCTS, updated)

    def apply_sale_delta(self, name: str, quantity: int) -> ProductRecord:
        """Remove ``quantity`` units; the average cost is left untouched.

        Raises:
            ProductNotFound: If no product matches ``name``.
            InsufficientStock: If fewer than ``quantity`` units are on hand.
        """

        product = self.find_by_name(name)
        if product is None:
            raise ProductNotFound(normalize_product_name(name))
        if product.quantity < quantity:
            raise InsufficientStock(product.name, requested=quantity, available=product.quantity)

        new_quantity = product.quantity - quantity
        updated = replace(
            product,
            quantity=new_quantity,
            total_cost=total_cost(new_quantity, product.average_cost),
        )
        log.debug("Staging sale delta for '%s': quantity %s -> %s", product.name, product.quantity, new_quantity)
        return self._txn.update(CollectionName.PRODUCTS, updated)
