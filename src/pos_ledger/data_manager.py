"""Data access layer for the point-of-sale ledger.

This module provides low-level helpers that read from and write to the store
workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading typed records and appending or updating
   individual rows, including the line-item sheets that belong to each
   history record.
"""


from __future__ import annotations

import configparser
import os
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_LAST_N_DAYS,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_TOP_PRODUCTS,
    CollectionName,
    ReturnPolicy,
    SheetName,
)
from .errors import StoreLockError


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "Name",
        "NameKey",
        "Quantity",
        "AverageCost",
        "TotalCost",
        "CreatedAt",
        "UpdatedAt",
        "Version",
    ],
    SheetName.PURCHASES.value: ["PurchaseID", "Date", "CreatedAt", "Supplier", "TotalAmount"],
    SheetName.PURCHASE_ITEMS.value: ["PurchaseID", "LineNo", "ProductName", "Quantity", "UnitPrice", "ItemTotal"],
    SheetName.SALES.value: ["SaleID", "Date", "CreatedAt", "TotalAmount", "TotalProfit"],
    SheetName.SALE_ITEMS.value: [
        "SaleID",
        "LineNo",
        "ProductName",
        "Quantity",
        "SalePrice",
        "CostPrice",
        "ItemTotal",
        "ItemProfit",
    ],
    SheetName.RETURNS.value: ["ReturnID", "PurchaseID", "Date", "CreatedAt", "Reason", "TotalAmount"],
    SheetName.RETURN_ITEMS.value: ["ReturnID", "LineNo", "ProductName", "Quantity", "UnitPrice", "ItemTotal"],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    return_policy: ReturnPolicy = ReturnPolicy.DEDUCT_STOCK
    top_products: int = DEFAULT_TOP_PRODUCTS
    last_n_days: int = DEFAULT_LAST_N_DAYS
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT


@dataclass(frozen=True)
class ProductRecord:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    name_key: str
    quantity: int
    average_cost: Decimal
    total_cost: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0


@dataclass(frozen=True)
class PurchaseItem:
    """One line of a purchase."""

    product_name: str
    quantity: int
    unit_price: Decimal
    item_total: Decimal


@dataclass(frozen=True)
class PurchaseRecord:
    """Immutable purchase header together with its ordered line items."""

    purchase_id: str
    date: date
    items: Tuple[PurchaseItem, ...]
    total_amount: Decimal
    supplier: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SaleItem:
    """One line of a sale, including the cost basis captured at sale time."""

    product_name: str
    quantity: int
    sale_price: Decimal
    cost_price: Decimal
    item_total: Decimal
    item_profit: Decimal


@dataclass(frozen=True)
class SaleRecord:
    """Immutable sale header together with its ordered line items."""

    sale_id: str
    date: date
    items: Tuple[SaleItem, ...]
    total_amount: Decimal
    total_profit: Decimal
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReturnItem:
    """One line of a supplier return."""

    product_name: str
    quantity: int
    unit_price: Decimal
    item_total: Decimal


@dataclass(frozen=True)
class ReturnRecord:
    """Immutable return header referencing the purchase it reverses."""

    return_id: str
    purchase_id: str
    date: date
    reason: str
    items: Tuple[ReturnItem, ...]
    total_amount: Decimal
    created_at: Optional[datetime] = None


Record = Union[ProductRecord, PurchaseRecord, SaleRecord, ReturnRecord]

ID_FIELDS: Mapping[CollectionName, str] = {
    CollectionName.PRODUCTS: "product_id",
    CollectionName.PURCHASES: "purchase_id",
    CollectionName.SALES: "sale_id",
    CollectionName.RETURNS: "return_id",
}


def record_id(collection: CollectionName, record: Record) -> str:
    """Return the primary key of ``record`` within ``collection``."""

    return getattr(record, ID_FIELDS[collection])


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Inventory]`` and ``[Reports]``
    are optional and fall back to the package defaults. Relative data file
    paths are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required options is missing.
        ValueError: If an optional option holds an unparseable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    low_stock_threshold = parser.getint(
        "Inventory", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    return_policy_raw = parser.get(
        "Inventory", "ReturnPolicy", fallback=ReturnPolicy.DEDUCT_STOCK.value)
    try:
        return_policy = ReturnPolicy(return_policy_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported return policy: {return_policy_raw}") from exc
    top_products = parser.getint("Reports", "TopProducts", fallback=DEFAULT_TOP_PRODUCTS)
    last_n_days = parser.getint("Reports", "LastNDays", fallback=DEFAULT_LAST_N_DAYS)
    lock_timeout = parser.getfloat("System", "LockTimeout", fallback=DEFAULT_LOCK_TIMEOUT)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        low_stock_threshold=low_stock_threshold,
        return_policy=return_policy,
        top_products=top_products,
        last_n_days=last_n_days,
        lock_timeout=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the store ``.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If the workbook lacks one of the sheets in
            :data:`SHEET_COLUMNS`.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook {data_file} is missing sheets: {', '.join(missing)}")
    return wb


def new_workbook() -> Workbook:
    """Build an in-memory workbook containing every sheet and header row."""

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)
    for sheet_name, columns in SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        worksheet.append(list(columns))
    return workbook


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def lock_path_for(data_file: Path) -> Path:
    """Return the sidecar lock file guarding ``data_file``."""

    data_file = Path(data_file).expanduser().resolve()
    return data_file.with_name(f"{data_file.name}.lock")


def file_stamp(data_file: Path) -> Tuple[int, int]:
    """Return ``(mtime_ns, size)`` so callers can tell when another process saved."""

    stat = Path(data_file).expanduser().resolve().stat()
    return stat.st_mtime_ns, stat.st_size


@contextmanager
def lock_workbook(
    data_file: Path,
    *,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
    poll_interval: float = 0.05,
) -> Iterator[Path]:
    """Hold an exclusive, cross-process lock on ``data_file``.

    The lock is a sidecar ``<name>.lock`` file created with ``O_EXCL``, so
    only one process at a time can hold it. It records the owner's PID and
    is removed on exit. A lock left behind by a crashed process has to be
    deleted by hand.

    Raises:
        StoreLockError: If the lock is still held by someone else after
            ``timeout`` seconds.
    """

    lock_path = lock_path_for(data_file)
    deadline = time.monotonic() + timeout
    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            break
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise StoreLockError(
                    f"Timed out after {timeout}s waiting for '{lock_path}'; "
                    "remove it if no other pos-ledger process is running"
                ) from None
            time.sleep(poll_interval)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(str(os.getpid()))
        log.debug("Acquired workbook lock '%s'", lock_path)
        yield lock_path
    finally:
        lock_path.unlink(missing_ok=True)
        log.debug("Released workbook lock '%s'", lock_path)


def iter_products(workbook: Workbook) -> Iterable[ProductRecord]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRecord: One structured record per meaningful row.
    """

    for raw in _iter_rows(workbook, SheetName.PRODUCTS.value):
        yield deserialize_product(raw)


def iter_purchases(workbook: Workbook) -> Iterable[PurchaseRecord]:
    """Iterate over purchases, joining each header with its line items.

    Line items are grouped by ``PurchaseID`` and ordered by ``LineNo`` so the
    resulting record reproduces the sequence the items were submitted in.

    Args:
        workbook (Workbook): Workbook containing the purchase sheets.

    Yields:
        PurchaseRecord: Purchase in sheet order with its items attached.
    """

    items = _group_lines(workbook, SheetName.PURCHASE_ITEMS.value, deserialize_purchase_item)
    for raw in _iter_rows(workbook, SheetName.PURCHASES.value):
        yield deserialize_purchase(raw, items.get(str(raw[0]), ()))


def iter_sales(workbook: Workbook) -> Iterable[SaleRecord]:
    """Iterate over sales, joining each header with its line items."""

    items = _group_lines(workbook, SheetName.SALE_ITEMS.value, deserialize_sale_item)
    for raw in _iter_rows(workbook, SheetName.SALES.value):
        yield deserialize_sale(raw, items.get(str(raw[0]), ()))


def iter_returns(workbook: Workbook) -> Iterable[ReturnRecord]:
    """Iterate over returns, joining each header with its line items."""

    items = _group_lines(workbook, SheetName.RETURN_ITEMS.value, deserialize_return_item)
    for raw in _iter_rows(workbook, SheetName.RETURNS.value):
        yield deserialize_return(raw, items.get(str(raw[0]), ()))


def iter_collection(workbook: Workbook, collection: CollectionName) -> Iterable[Record]:
    """Dispatch to the iterator that materializes ``collection``."""

    readers = {
        CollectionName.PRODUCTS: iter_products,
        CollectionName.PURCHASES: iter_purchases,
        CollectionName.SALES: iter_sales,
        CollectionName.RETURNS: iter_returns,
    }
    return readers[collection](workbook)


def append_product(workbook: Workbook, record: ProductRecord) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[SheetName.PRODUCTS.value].append(serialize_product(record))


def append_purchase(workbook: Workbook, record: PurchaseRecord) -> None:
    """Append a purchase header and one ``PurchaseItems`` row per line."""

    workbook[SheetName.PURCHASES.value].append(serialize_purchase(record))
    item_sheet = workbook[SheetName.PURCHASE_ITEMS.value]
    for line_no, item in enumerate(record.items, start=1):
        item_sheet.append(serialize_purchase_item(record.purchase_id, line_no, item))


def append_sale(workbook: Workbook, record: SaleRecord) -> None:
    """Append a sale header and one ``SaleItems`` row per line."""

    workbook[SheetName.SALES.value].append(serialize_sale(record))
    item_sheet = workbook[SheetName.SALE_ITEMS.value]
    for line_no, item in enumerate(record.items, start=1):
        item_sheet.append(serialize_sale_item(record.sale_id, line_no, item))


def append_return(workbook: Workbook, record: ReturnRecord) -> None:
    """Append a return header and one ``ReturnItems`` row per line."""

    workbook[SheetName.RETURNS.value].append(serialize_return(record))
    item_sheet = workbook[SheetName.RETURN_ITEMS.value]
    for line_no, item in enumerate(record.items, start=1):
        item_sheet.append(serialize_return_item(record.return_id, line_no, item))


def append_record(workbook: Workbook, collection: CollectionName, record: Record) -> None:
    """Dispatch to the appender responsible for ``collection``."""

    writers = {
        CollectionName.PRODUCTS: append_product,
        CollectionName.PURCHASES: append_purchase,
        CollectionName.SALES: append_sale,
        CollectionName.RETURNS: append_return,
    }
    writers[collection](workbook, record)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    The function locates the row whose ``ProductID`` matches ``product_id``,
    validates that each requested field exists in the header row, and then writes
    the provided values into the corresponding cells. Only the specified fields
    are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    sheet_name = SheetName.PRODUCTS.value
    row_index = locate_row(workbook, sheet_name, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")
        col = header_map[field]
        sheet.cell(row=row_index, column=col, value=value)


def product_field_values(record: ProductRecord) -> dict[str, Any]:
    """Return the mutable product columns in the shape :func:`update_product` expects."""

    return {
        "Name": record.name,
        "Quantity": record.quantity,
        "AverageCost": record.average_cost,
        "TotalCost": record.total_cost,
        "UpdatedAt": format_timestamp(record.updated_at),
        "Version": record.version,
    }


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO-8601 text; Excel cells cannot hold tz-aware values."""

    return value.isoformat() if value is not None else None


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse ISO-8601 text (or a naive Excel datetime) back into a datetime."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def parse_date(value: object) -> date:
    """Parse a business date cell, accepting ISO text or Excel date values."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def serialize_product(record: ProductRecord) -> list[object]:
    """Convert a product record into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.name,
        record.name_key,
        record.quantity,
        record.average_cost,
        record.total_cost,
        format_timestamp(record.created_at),
        format_timestamp(record.updated_at),
        record.version,
    ]


def serialize_purchase(record: PurchaseRecord) -> list[object]:
    """Convert a purchase header into the ``Purchases`` column ordering."""

    return [
        record.purchase_id,
        record.date.isoformat(),
        format_timestamp(record.created_at),
        record.supplier,
        record.total_amount,
    ]


def serialize_purchase_item(purchase_id: str, line_no: int, item: PurchaseItem) -> list[object]:
    """Convert one purchase line into the ``PurchaseItems`` column ordering."""

    return [purchase_id, line_no, item.product_name, item.quantity, item.unit_price, item.item_total]


def serialize_sale(record: SaleRecord) -> list[object]:
    """Convert a sale header into the ``Sales`` column ordering."""

    return [
        record.sale_id,
        record.date.isoformat(),
        format_timestamp(record.created_at),
        record.total_amount,
        record.total_profit,
    ]


def serialize_sale_item(sale_id: str, line_no: int, item: SaleItem) -> list[object]:
    """Convert one sale line into the ``SaleItems`` column ordering."""

    return [
        sale_id,
        line_no,
        item.product_name,
        item.quantity,
        item.sale_price,
        item.cost_price,
        item.item_total,
        item.item_profit,
    ]


def serialize_return(record: ReturnRecord) -> list[object]:
    """Convert a return header into the ``Returns`` column ordering."""

    return [
        record.return_id,
        record.purchase_id,
        record.date.isoformat(),
        format_timestamp(record.created_at),
        record.reason,
        record.total_amount,
    ]


def serialize_return_item(return_id: str, line_no: int, item: ReturnItem) -> list[object]:
    """Convert one return line into the ``ReturnItems`` column ordering."""

    return [return_id, line_no, item.product_name, item.quantity, item.unit_price, item.item_total]


def deserialize_product(raw_row: Sequence[object]) -> ProductRecord:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric columns become :class:`~decimal.Decimal` or ``int`` values and the
    identity columns are coerced to ``str`` so Excel's habit of turning
    numeric-looking text into numbers does not leak into lookups.
    """

    (
        product_id,
        name,
        name_key,
        quantity_raw,
        average_cost_raw,
        total_cost_raw,
        created_at_raw,
        updated_at_raw,
        version_raw,
    ) = tuple(raw_row[:9])

    return ProductRecord(
        product_id=str(product_id),
        name=str(name),
        name_key=str(name_key) if name_key is not None else str(name).casefold(),
        quantity=_to_int(quantity_raw),
        average_cost=_to_decimal(average_cost_raw),
        total_cost=_to_decimal(total_cost_raw),
        created_at=parse_timestamp(created_at_raw),
        updated_at=parse_timestamp(updated_at_raw),
        version=_to_int(version_raw),
    )


def deserialize_purchase(raw_row: Sequence[object], items: Sequence[PurchaseItem]) -> PurchaseRecord:
    """Convert a ``Purchases`` row plus its grouped items into a record."""

    purchase_id, date_raw, created_at_raw, supplier, total_raw = tuple(raw_row[:5])
    return PurchaseRecord(
        purchase_id=str(purchase_id),
        date=parse_date(date_raw),
        items=tuple(items),
        total_amount=_to_decimal(total_raw),
        supplier=str(supplier) if supplier is not None else None,
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_purchase_item(raw_row: Sequence[object]) -> PurchaseItem:
    """Convert a ``PurchaseItems`` row (without its key columns) into an item."""

    product_name, quantity_raw, unit_price_raw, item_total_raw = tuple(raw_row[:4])
    return PurchaseItem(
        product_name=str(product_name),
        quantity=_to_int(quantity_raw),
        unit_price=_to_decimal(unit_price_raw),
        item_total=_to_decimal(item_total_raw),
    )


def deserialize_sale(raw_row: Sequence[object], items: Sequence[SaleItem]) -> SaleRecord:
    """Convert a ``Sales`` row plus its grouped items into a record."""

    sale_id, date_raw, created_at_raw, total_raw, profit_raw = tuple(raw_row[:5])
    return SaleRecord(
        sale_id=str(sale_id),
        date=parse_date(date_raw),
        items=tuple(items),
        total_amount=_to_decimal(total_raw),
        total_profit=_to_decimal(profit_raw),
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItem:
    """Convert a ``SaleItems`` row (without its key columns) into an item."""

    (
        product_name,
        quantity_raw,
        sale_price_raw,
        cost_price_raw,
        item_total_raw,
        item_profit_raw,
    ) = tuple(raw_row[:6])
    return SaleItem(
        product_name=str(product_name),
        quantity=_to_int(quantity_raw),
        sale_price=_to_decimal(sale_price_raw),
        cost_price=_to_decimal(cost_price_raw),
        item_total=_to_decimal(item_total_raw),
        item_profit=_to_decimal(item_profit_raw),
    )


def deserialize_return(raw_row: Sequence[object], items: Sequence[ReturnItem]) -> ReturnRecord:
    """Convert a ``Returns`` row plus its grouped items into a record."""

    return_id, purchase_id, date_raw, created_at_raw, reason, total_raw = tuple(raw_row[:6])
    return ReturnRecord(
        return_id=str(return_id),
        purchase_id=str(purchase_id),
        date=parse_date(date_raw),
        reason=str(reason) if reason is not None else "",
        items=tuple(items),
        total_amount=_to_decimal(total_raw),
        created_at=parse_timestamp(created_at_raw),
    )


def deserialize_return_item(raw_row: Sequence[object]) -> ReturnItem:
    """Convert a ``ReturnItems`` row (without its key columns) into an item."""

    product_name, quantity_raw, unit_price_raw, item_total_raw = tuple(raw_row[:4])
    return ReturnItem(
        product_name=str(product_name),
        quantity=_to_int(quantity_raw),
        unit_price=_to_decimal(unit_price_raw),
        item_total=_to_decimal(item_total_raw),
    )


def _iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def _group_lines(workbook: Workbook, sheet_name: str, deserialize) -> Dict[str, Tuple[Any, ...]]:
    """Group line-item rows by parent id, ordered by their ``LineNo`` column."""

    grouped: Dict[str, List[tuple[int, Any]]] = defaultdict(list)
    for raw in _iter_rows(workbook, sheet_name):
        parent_id, line_no = raw[0], raw[1]
        grouped[str(parent_id)].append((_to_int(line_no), deserialize(raw[2:])))
    log.debug("Grouped %d parents from sheet '%s'", len(grouped), sheet_name)
    return {
        parent_id: tuple(item for _, item in sorted(lines, key=lambda pair: pair[0]))
        for parent_id, lines in grouped.items()
    }


def _to_decimal(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0")


def _to_int(raw: object) -> int:
    return int(raw) if raw is not None else 0
