"""Exception taxonomy shared by the ledger, the store and the business layer."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when a command is malformed before any store access happens."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or purchase is unknown."""


class ProductNotFound(MissingReferenceError):
    """Raised when a sale or return names a product absent from the ledger."""

    def __init__(self, product_name: str) -> None:
        super().__init__(f"Product '{product_name}' not found in inventory")
        self.product_name = product_name


class PurchaseNotFound(MissingReferenceError):
    """Raised when a return references an unknown purchase id."""

    def __init__(self, purchase_id: str) -> None:
        super().__init__(f"Unknown purchase id: {purchase_id}")
        self.purchase_id = purchase_id


class InsufficientStock(BusinessRuleViolation):
    """Raised when a mutation would drive a product's quantity below zero."""

    def __init__(self, product_name: str, *, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_name}': requested {requested}, available {available}"
        )
        self.product_name = product_name
        self.requested = requested
        self.available = available


class StoreError(Exception):
    """Base class for failures raised by the document store."""


class StaleWriteError(StoreError):
    """Raised when a transaction's read snapshot changed before commit."""


class StoreWriteError(StoreError):
    """Raised when committed changes could not be persisted to disk."""


class StoreLockError(StoreError):
    """Raised when the workbook lock could not be acquired in time."""


class TransactionCommitFailure(Exception):
    """Raised when the atomic write failed; nothing from the batch is visible."""

    retryable = True


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "ProductNotFound",
    "PurchaseNotFound",
    "InsufficientStock",
    "StoreError",
    "StaleWriteError",
    "StoreWriteError",
    "StoreLockError",
    "TransactionCommitFailure",
]
