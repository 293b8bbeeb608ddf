"""Enumerations shared across the point-of-sale ledger modules.

Keeps collection, sheet and policy identifiers in one place so that the data
access layer, the document store, the business logic layer and the CLI agree
on the same spelling.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Average costs are kept to four decimal places; money totals stay exact.
COST_QUANTUM = Decimal("0.0001")
MONEY_QUANTUM = Decimal("0.01")

DEFAULT_LOW_STOCK_THRESHOLD = 5
DEFAULT_TOP_PRODUCTS = 5
DEFAULT_LAST_N_DAYS = 7

# Seconds a commit waits for another process to release the workbook lock.
DEFAULT_LOCK_TIMEOUT = 10.0


class CollectionName(str, Enum):
    """Enumerate the logical collections exposed by the document store."""

    PRODUCTS = "products"
    PURCHASES = "purchases"
    SALES = "sales"
    RETURNS = "returns"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    PURCHASES = "Purchases"
    PURCHASE_ITEMS = "PurchaseItems"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    RETURNS = "Returns"
    RETURN_ITEMS = "ReturnItems"


class ReportPeriod(str, Enum):
    """Enumerate the date windows understood by the reporting aggregator."""

    TODAY = "today"
    LAST_N_DAYS = "last-n-days"
    CURRENT_MONTH = "current-month"


class ReturnPolicy(str, Enum):
    """Enumerate what a supplier return does to the product ledger."""

    DEDUCT_STOCK = "deduct-stock"
    RECORD_ONLY = "record-only"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "COST_QUANTUM",
    "MONEY_QUANTUM",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_TOP_PRODUCTS",
    "DEFAULT_LAST_N_DAYS",
    "DEFAULT_LOCK_TIMEOUT",
    "CollectionName",
    "SheetName",
    "ReportPeriod",
    "ReturnPolicy",
]
