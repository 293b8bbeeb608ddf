"""Business logic layer for the point-of-sale ledger.

This module owns the three write entry points (:func:`submit_purchase`,
:func:`submit_sale`, :func:`submit_return`). Each one validates its command as
a whole before touching the store, then performs every ledger mutation and
the history append inside a single store transaction so that either all of it
becomes visible or none of it does.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from . import data_manager, log, reporting
from .constants import COST_QUANTUM, EXPECTED_SCHEMA_VERSION, CollectionName, ReportPeriod, ReturnPolicy
from .data_manager import (
    ProductRecord,
    PurchaseItem,
    PurchaseRecord,
    ReturnItem,
    ReturnRecord,
    SaleItem,
    SaleRecord,
)
from .document_store import Clock, DocumentStore, generate_document_id
from .errors import (
    BusinessRuleViolation,
    InsufficientStock,
    MissingReferenceError,
    ProductNotFound,
    PurchaseNotFound,
    StoreError,
    TransactionCommitFailure,
    ValidationError,
)
from .ledger import ProductLedger, normalize_product_name, product_key


__all__ = [
    "BusinessRuleViolation",
    "InsufficientStock",
    "MissingReferenceError",
    "ProductNotFound",
    "PurchaseNotFound",
    "TransactionCommitFailure",
    "ValidationError",
]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the document store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: DocumentStore


@dataclass(frozen=True)
class PurchaseLine:
    """One product entry within a purchase command."""

    product_name: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a multi-line purchase (stock-in)."""

    items: Sequence[PurchaseLine]
    date: date
    supplier: Optional[str] = None


@dataclass(frozen=True)
class SaleLine:
    """One product entry within a sale command."""

    product_name: str
    quantity: int
    sale_price: Decimal


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a multi-line sale (stock-out)."""

    items: Sequence[SaleLine]
    date: date


@dataclass(frozen=True)
class ReturnLine:
    """A product and the number of its purchased units being returned."""

    product_name: str
    quantity: int


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning part of a prior purchase to the supplier."""

    purchase_id: str
    items: Sequence[ReturnLine]
    reason: str
    date: date


def load_runtime_context(config_path: Optional[Path] = None, *, clock: Optional[Clock] = None) -> RuntimeContext:
    """Load configuration settings and open the file-backed document store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        clock (Callable | None): Optional source of server timestamps; tests
            pass a fixed clock.

    Returns:
        RuntimeContext: Settings bundled with an open store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = DocumentStore.open(settings.data_file, clock=clock, lock_timeout=settings.lock_timeout)
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reopen the store from disk with a fresh, empty cache.

    Raises:
        ValueError: If the context's store is not file-backed.
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    if context.store.data_file is None:
        raise ValueError("Only file-backed stores can be refreshed")
    store = DocumentStore(
        data_manager.refresh_workbook(context.store.data_file),
        data_file=context.store.data_file,
        clock=context.store._clock,
        lock_timeout=context.store.lock_timeout,
    )
    log.info("Reloaded store '%s'", context.store.data_file)
    return RuntimeContext(settings=context.settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_products(context: RuntimeContext) -> List[ProductRecord]:
    """Return every product ordered by name."""
    return context.store.query_range(CollectionName.PRODUCTS, "name_key")


def get_product(context: RuntimeContext, name: str) -> ProductRecord:
    """Resolve a product by name.

    Raises:
        ProductNotFound: If no product matches the normalized name.
    """
    product = context.store.find_one(CollectionName.PRODUCTS, "name_key", product_key(name))
    if product is None:
        log.warning("Product lookup failed for name '%s'", name)
        raise ProductNotFound(normalize_product_name(name))
    return product


def list_purchases(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[PurchaseRecord]:
    """Return purchases with a business date in ``[start, end]``, newest first."""
    return context.store.query_range(CollectionName.PURCHASES, "date", start=start, end=end, descending=True)


def list_sales(
    context: RuntimeContext,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[SaleRecord]:
    """Return sales with a business date in ``[start, end]``, newest first."""
    return context.store.query_range(CollectionName.SALES, "date", start=start, end=end, descending=True)


def list_returns(context: RuntimeContext) -> List[ReturnRecord]:
    """Return every supplier return, newest first."""
    return context.store.query_range(CollectionName.RETURNS, "date", descending=True)


def get_purchase(context: RuntimeContext, purchase_id: str) -> PurchaseRecord:
    """Resolve a purchase by id.

    Raises:
        PurchaseNotFound: If the id is unknown.
    """
    purchase = context.store.get(CollectionName.PURCHASES, purchase_id)
    if purchase is None:
        log.warning("Purchase lookup failed for id '%s'", purchase_id)
        raise PurchaseNotFound(purchase_id)
    return purchase


def returnable_quantities(context: RuntimeContext, purchase_id: str) -> Dict[str, int]:
    """Map each product of a purchase to the units that can still be returned."""
    purchase = get_purchase(context, purchase_id)
    prior = [
        record
        for record in context.store.list(CollectionName.RETURNS)
        if record.purchase_id == purchase_id
    ]
    returned = _returned_by_key(prior)
    return {
        name: quantity - returned.get(key, 0)
        for key, (name, quantity, _) in _purchased_by_key(purchase).items()
    }


def report_summary(
    context: RuntimeContext,
    period: ReportPeriod,
    *,
    today: Optional[date] = None,
    days: Optional[int] = None,
    top_n: Optional[int] = None,
) -> reporting.ReportSummary:
    """Aggregate the stored history for ``period`` using configured defaults."""
    days = context.settings.last_n_days if days is None else days
    top_n = context.settings.top_products if top_n is None else top_n
    start, end = reporting.period_bounds(period, today=today, days=days)
    summary = reporting.summarize(
        list_sales(context, start=start, end=end),
        list_purchases(context, start=start, end=end),
        period,
        today=today,
        days=days,
        top_n=top_n,
    )
    log.info(
        "Built %s report: invested=%s sold=%s profit=%s",
        period.value,
        summary.total_invested,
        summary.total_sold,
        summary.net_profit,
    )
    return summary


def inventory_report(context: RuntimeContext) -> reporting.InventorySummary:
    """Summarize on-hand stock using the configured low-stock threshold."""
    return reporting.inventory_summary(list_products(context), context.settings.low_stock_threshold)


def submit_purchase(context: RuntimeContext, command: PurchaseCommand) -> PurchaseRecord:
    """Validate and atomically record a purchase.

    Every line is blended into its product's weighted-average cost (creating
    the product on first sight) and the immutable purchase record is
    appended, all within one store transaction.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (PurchaseCommand): Structured purchase intent.

    Returns:
        PurchaseRecord: The committed purchase, carrying its server timestamp.

    Raises:
        ValidationError: If any line or the header fails validation; nothing
            is written.
        TransactionCommitFailure: If the store rejected or failed the commit.
    """
    lines = validate_purchase_command(command)
    supplier = _clean_optional_text(command.supplier)
    purchase_id = generate_document_id(CollectionName.PURCHASES)

    try:
        with context.store.transaction() as txn:
            ledger = ProductLedger(txn)
            items: List[PurchaseItem] = []
            for line in lines:
                product = ledger.apply_purchase_delta(line.product_name, line.quantity, line.unit_price)
                items.append(
                    PurchaseItem(
                        product_name=product.name,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        item_total=Decimal(line.quantity) * line.unit_price,
                    )
                )
            record = PurchaseRecord(
                purchase_id=purchase_id,
                date=_business_date(command.date),
                items=tuple(items),
                total_amount=sum((item.item_total for item in items), Decimal("0")),
                supplier=supplier,
            )
            txn.insert(CollectionName.PURCHASES, record)
    except StoreError as exc:
        log.error("Purchase '%s' failed to commit: %s", purchase_id, exc)
        raise TransactionCommitFailure(f"Purchase could not be committed: {exc}") from exc

    committed = txn.result(CollectionName.PURCHASES, purchase_id)
    log.info(
        "Recorded purchase '%s' with %d items (total=%s, supplier=%s)",
        committed.purchase_id,
        len(committed.items),
        committed.total_amount,
        committed.supplier,
    )
    return committed


def submit_sale(context: RuntimeContext, command: SaleCommand) -> SaleRecord:
    """Validate and atomically record a sale.

    Stock is checked against the ledger as read inside the transaction, never
    against a caller's cached snapshot. Each line captures the product's
    current average cost as ``cost_price``; profit is computed from that
    snapshot and the average cost itself is not changed by the sale.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        command (SaleCommand): Structured sale intent.

    Returns:
        SaleRecord: The committed sale with per-line and total profit.

    Raises:
        ValidationError: If any line fails validation.
        ProductNotFound: If a line names an unknown product.
        InsufficientStock: If a line requests more units than are on hand.
        TransactionCommitFailure: If the store rejected or failed the commit.
    """
    lines = validate_sale_command(command)
    sale_id = generate_document_id(CollectionName.SALES)

    try:
        with context.store.transaction() as txn:
            ledger = ProductLedger(txn)
            items: List[SaleItem] = []
            for line in lines:
                product = ledger.apply_sale_delta(line.product_name, line.quantity)
                items.append(build_sale_item(product.name, line.quantity, line.sale_price, product.average_cost))
            record = SaleRecord(
                sale_id=sale_id,
                date=_business_date(command.date),
                items=tuple(items),
                total_amount=sum((item.item_total for item in items), Decimal("0")),
                total_profit=sum((item.item_profit for item in items), Decimal("0")),
            )
            txn.insert(CollectionName.SALES, record)
    except (ProductNotFound, InsufficientStock) as exc:
        log.warning("Sale rejected: %s", exc)
        raise
    except StoreError as exc:
        log.error("Sale '%s' failed to commit: %s", sale_id, exc)
        raise TransactionCommitFailure(f"Sale could not be committed: {exc}") from exc

    committed = txn.result(CollectionName.SALES, sale_id)
    log.info(
        "Recorded sale '%s' with %d items (total=%s, profit=%s)",
        committed.sale_id,
        len(committed.items),
        committed.total_amount,
        committed.total_profit,
    )
    return committed


def submit_return(context: RuntimeContext, command: ReturnCommand) -> ReturnRecord:
    """Validate and atomically record a return against a prior purchase.

    Return quantities are bounded per product by what the purchase bought
    minus what earlier returns of the same purchase already sent back. Unit
    prices are copied from the purchase. Under
    :attr:`ReturnPolicy.DEDUCT_STOCK` the returned units also leave the
    product ledger in the same transaction.

    Raises:
        ValidationError: If the command is malformed, names a product not on
            the purchase, or exceeds the returnable quantity.
        PurchaseNotFound: If the purchase id does not resolve.
        ProductNotFound: If stock must be deducted from a missing product.
        InsufficientStock: If the returned units are no longer on hand.
        TransactionCommitFailure: If the store rejected or failed the commit.
    """
    lines = validate_return_command(command)
    return_id = generate_document_id(CollectionName.RETURNS)
    policy = context.settings.return_policy

    try:
        with context.store.transaction() as txn:
            purchase = txn.get(CollectionName.PURCHASES, command.purchase_id.strip())
            if purchase is None:
                raise PurchaseNotFound(command.purchase_id.strip())
            purchased = _purchased_by_key(purchase)
            returned = _returned_by_key(txn.find_all(CollectionName.RETURNS, "purchase_id", purchase.purchase_id))

            requested: Dict[str, int] = defaultdict(int)
            for index, line in enumerate(lines, start=1):
                key = product_key(line.product_name)
                if key not in purchased:
                    raise ValidationError(
                        f"Line {index}: '{line.product_name}' is not part of purchase {purchase.purchase_id}"
                    )
                requested[key] += line.quantity
                name, bought, _ = purchased[key]
                remaining = bought - returned.get(key, 0)
                if requested[key] > remaining:
                    raise ValidationError(
                        f"Line {index}: cannot return {requested[key]} of '{name}'; "
                        f"purchased {bought}, already returned {returned.get(key, 0)}"
                    )

            ledger = ProductLedger(txn)
            items: List[ReturnItem] = []
            for line in lines:
                name, _, unit_price = purchased[product_key(line.product_name)]
                if policy is ReturnPolicy.DEDUCT_STOCK:
                    ledger.apply_sale_delta(name, line.quantity)
                items.append(
                    ReturnItem(
                        product_name=name,
                        quantity=line.quantity,
                        unit_price=unit_price,
                        item_total=Decimal(line.quantity) * unit_price,
                    )
                )
            record = ReturnRecord(
                return_id=return_id,
                purchase_id=purchase.purchase_id,
                date=_business_date(command.date),
                reason=command.reason.strip(),
                items=tuple(items),
                total_amount=sum((item.item_total for item in items), Decimal("0")),
            )
            txn.insert(CollectionName.RETURNS, record)
    except BusinessRuleViolation as exc:
        log.warning("Return rejected: %s", exc)
        raise
    except StoreError as exc:
        log.error("Return '%s' failed to commit: %s", return_id, exc)
        raise TransactionCommitFailure(f"Return could not be committed: {exc}") from exc

    committed = txn.result(CollectionName.RETURNS, return_id)
    log.info(
        "Recorded return '%s' against purchase '%s' (%d items, total=%s, policy=%s)",
        committed.return_id,
        committed.purchase_id,
        len(committed.items),
        committed.total_amount,
        policy.value,
    )
    return committed


def build_sale_item(product_name: str, quantity: int, sale_price: Decimal, cost_price: Decimal) -> SaleItem:
    """Price one sale line against a cost-basis snapshot."""
    return SaleItem(
        product_name=product_name,
        quantity=quantity,
        sale_price=sale_price,
        cost_price=cost_price,
        item_total=Decimal(quantity) * sale_price,
        item_profit=(sale_price - cost_price) * Decimal(quantity),
    )


def validate_purchase_command(command: PurchaseCommand) -> Tuple[PurchaseLine, ...]:
    """Validate a purchase as a whole and return its normalized lines.

    Raises:
        ValidationError: On the first malformed line (1-based in the message),
            an empty item list, or a missing date.
    """
    _require_items(command.items)
    _business_date(command.date)
    return tuple(
        PurchaseLine(
            product_name=require_product_name(line.product_name, index=index),
            quantity=require_positive_quantity(line.quantity, index=index),
            unit_price=require_positive_money(line.unit_price, index=index, label="unit price"),
        )
        for index, line in enumerate(command.items, start=1)
    )


def validate_sale_command(command: SaleCommand) -> Tuple[SaleLine, ...]:
    """Validate a sale as a whole and return its normalized lines."""
    _require_items(command.items)
    _business_date(command.date)
    return tuple(
        SaleLine(
            product_name=require_product_name(line.product_name, index=index),
            quantity=require_positive_quantity(line.quantity, index=index),
            sale_price=require_positive_money(line.sale_price, index=index, label="sale price"),
        )
        for index, line in enumerate(command.items, start=1)
    )


def validate_return_command(command: ReturnCommand) -> Tuple[ReturnLine, ...]:
    """Validate the structure of a return; quantity bounds are checked against the store."""
    if not isinstance(command.purchase_id, str) or not command.purchase_id.strip():
        log.error("Return validation failed: missing purchase id")
        raise ValidationError("Select the purchase being returned")
    if not isinstance(command.reason, str) or not command.reason.strip():
        log.error("Return validation failed: missing reason")
        raise ValidationError("A reason for the return is required")
    _require_items(command.items)
    _business_date(command.date)
    return tuple(
        ReturnLine(
            product_name=require_product_name(line.product_name, index=index),
            quantity=require_positive_quantity(line.quantity, index=index),
        )
        for index, line in enumerate(command.items, start=1)
    )


def require_product_name(name: object, *, index: int) -> str:
    """Return the normalized name, rejecting blanks."""
    normalized = normalize_product_name(name) if isinstance(name, str) else ""
    if not normalized:
        log.error("Line %d validation failed: empty product name", index)
        raise ValidationError(f"Line {index}: product name is required")
    return normalized


def require_positive_quantity(quantity: object, *, index: int) -> int:
    """Validate that a quantity is a strictly positive integer.

    Integral :class:`~decimal.Decimal` values are accepted and converted;
    booleans and fractional values are not.
    """
    if isinstance(quantity, Decimal) and quantity.is_finite() and quantity == quantity.to_integral_value():
        quantity = int(quantity)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Line %d quantity validation failed: %r", index, quantity)
        raise ValidationError(f"Line {index}: quantity must be a whole number greater than zero")
    return quantity


def require_positive_money(amount: object, *, index: int, label: str) -> Decimal:
    """Validate that a monetary value is a finite number greater than zero."""
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        log.error("Line %d %s validation failed: %r", index, label, amount)
        raise ValidationError(f"Line {index}: {label} must be a number") from exc
    if isinstance(amount, bool) or not value.is_finite() or value <= Decimal("0"):
        log.error("Line %d %s validation failed: %r", index, label, amount)
        raise ValidationError(f"Line {index}: {label} must be greater than zero")
    return value


LineT = TypeVar("LineT", PurchaseLine, SaleLine)


class _Cart(Generic[LineT]):
    """Ordered, name-keyed accumulation of line items before submission."""

    def __init__(self) -> None:
        self._lines: Dict[str, LineT] = {}

    def __len__(self) -> int:
        return len(self._lines)

    def __bool__(self) -> bool:
        return bool(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def remove_item(self, product_name: str) -> None:
        key = product_key(product_name)
        if key not in self._lines:
            raise ValidationError(f"'{normalize_product_name(product_name)}' is not in the cart")
        del self._lines[key]

    def _existing(self, product_name: str) -> Tuple[str, LineT]:
        key = product_key(product_name)
        if key not in self._lines:
            raise ValidationError(f"'{normalize_product_name(product_name)}' is not in the cart")
        return key, self._lines[key]

    def _line_index(self, key: str) -> int:
        """Return the 1-based position of ``key``, or the next free position."""

        if key in self._lines:
            return list(self._lines).index(key) + 1
        return len(self._lines) + 1


class PurchaseCart(_Cart[PurchaseLine]):
    """Builder for :class:`PurchaseCommand`.

    Adding a product already in the cart merges the quantities and keeps the
    most recent unit price.
    """

    @property
    def items(self) -> Tuple[PurchaseLine, ...]:
        return tuple(self._lines.values())

    def add_item(self, product_name: str, quantity: int, unit_price: Decimal) -> PurchaseLine:
        key = product_key(product_name)
        index = self._line_index(key)
        name = require_product_name(product_name, index=index)
        quantity = require_positive_quantity(quantity, index=index)
        price = require_positive_money(unit_price, index=index, label="unit price")
        existing = self._lines.get(key)
        if existing is not None:
            quantity += existing.quantity
            name = existing.product_name
        line = PurchaseLine(product_name=name, quantity=quantity, unit_price=price)
        self._lines[key] = line
        return line

    def update_item(self, product_name: str, *, quantity: Optional[int] = None, unit_price: Optional[Decimal] = None) -> PurchaseLine:
        key, line = self._existing(product_name)
        index = self._line_index(key)
        line = PurchaseLine(
            product_name=line.product_name,
            quantity=line.quantity if quantity is None else require_positive_quantity(quantity, index=index),
            unit_price=line.unit_price if unit_price is None else require_positive_money(unit_price, index=index, label="unit price"),
        )
        self._lines[key] = line
        return line

    def totals(self) -> Decimal:
        return sum((Decimal(line.quantity) * line.unit_price for line in self._lines.values()), Decimal("0"))

    def to_command(self, when: date, *, supplier: Optional[str] = None) -> PurchaseCommand:
        command = PurchaseCommand(items=self.items, date=when, supplier=supplier)
        validate_purchase_command(command)
        return command


class SaleCart(_Cart[SaleLine]):
    """Builder for :class:`SaleCommand`.

    Lines are checked against the product snapshot they were added from so
    the cashier gets early feedback. The authoritative stock check still
    happens inside :func:`submit_sale`.
    """

    def __init__(self) -> None:
        super().__init__()
        self._snapshots: Dict[str, ProductRecord] = {}

    @property
    def items(self) -> Tuple[SaleLine, ...]:
        return tuple(self._lines.values())

    def add_item(self, product: ProductRecord, quantity: int, sale_price: Decimal) -> SaleLine:
        key = product.name_key
        index = self._line_index(key)
        quantity = require_positive_quantity(quantity, index=index)
        price = require_positive_money(sale_price, index=index, label="sale price")
        existing = self._lines.get(key)
        in_cart = existing.quantity if existing is not None else 0
        if in_cart + quantity > product.quantity:
            raise InsufficientStock(product.name, requested=in_cart + quantity, available=product.quantity)
        line = SaleLine(product_name=product.name, quantity=in_cart + quantity, sale_price=price)
        self._lines[key] = line
        self._snapshots[key] = product
        return line

    def update_item(self, product_name: str, *, quantity: Optional[int] = None, sale_price: Optional[Decimal] = None) -> SaleLine:
        key, line = self._existing(product_name)
        index = self._line_index(key)
        snapshot = self._snapshots[key]
        if quantity is not None:
            quantity = require_positive_quantity(quantity, index=index)
            if quantity > snapshot.quantity:
                raise InsufficientStock(snapshot.name, requested=quantity, available=snapshot.quantity)
        line = SaleLine(
            product_name=line.product_name,
            quantity=line.quantity if quantity is None else quantity,
            sale_price=line.sale_price if sale_price is None else require_positive_money(sale_price, index=index, label="sale price"),
        )
        self._lines[key] = line
        return line

    def remove_item(self, product_name: str) -> None:
        super().remove_item(product_name)
        self._snapshots.pop(product_key(product_name), None)

    def clear(self) -> None:
        super().clear()
        self._snapshots.clear()

    def totals(self) -> Tuple[Decimal, Decimal]:
        """Return ``(total_amount, estimated_profit)`` using the snapshot costs."""
        amount = Decimal("0")
        profit = Decimal("0")
        for key, line in self._lines.items():
            item = build_sale_item(line.product_name, line.quantity, line.sale_price, self._snapshots[key].average_cost)
            amount += item.item_total
            profit += item.item_profit
        return amount, profit

    def to_command(self, when: date) -> SaleCommand:
        command = SaleCommand(items=self.items, date=when)
        validate_sale_command(command)
        return command


def _require_items(items: Sequence[object]) -> None:
    if not items:
        log.error("Validation failed: no line items supplied")
        raise ValidationError("At least one line item is required")


def _business_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    log.error("Validation failed: invalid business date %r", value)
    raise ValidationError("A valid date is required")


def _clean_optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def _purchased_by_key(purchase: PurchaseRecord) -> Dict[str, Tuple[str, int, Decimal]]:
    """Collapse purchase lines to ``key -> (name, quantity, unit price)``.

    A product bought on several lines of one purchase gets the
    quantity-weighted unit price of those lines.
    """
    grouped: Dict[str, List[PurchaseItem]] = defaultdict(list)
    for item in purchase.items:
        grouped[product_key(item.product_name)].append(item)

    purchased: Dict[str, Tuple[str, int, Decimal]] = {}
    for key, items in grouped.items():
        quantity = sum(item.quantity for item in items)
        if len(items) == 1:
            unit_price = items[0].unit_price
        else:
            total = sum((item.item_total for item in items), Decimal("0"))
            unit_price = (total / Decimal(quantity)).quantize(COST_QUANTUM)
        purchased[key] = (items[0].product_name, quantity, unit_price)
    return purchased


def _returned_by_key(returns: Sequence[ReturnRecord]) -> Dict[str, int]:
    returned: Dict[str, int] = defaultdict(int)
    for record in returns:
        for item in record.items:
            returned[product_key(item.product_name)] += item.quantity
    return dict(returned)
