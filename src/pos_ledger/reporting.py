"""Read-side projections over purchase and sale history.

Everything here is a pure function of already-loaded records, so callers may
recompute a report on every refresh without touching the store.
"""

from __future__ import annotations

import calendar
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .constants import DEFAULT_LAST_N_DAYS, DEFAULT_TOP_PRODUCTS, MONEY_QUANTUM, ReportPeriod
from .data_manager import ProductRecord, PurchaseRecord, SaleRecord


_Dated = TypeVar("_Dated", PurchaseRecord, SaleRecord)


@dataclass(frozen=True)
class ProductPerformance:
    """Units, revenue and profit for one product within a report window."""

    product_name: str
    quantity: int
    revenue: Decimal
    profit: Decimal


@dataclass(frozen=True)
class ReportSummary:
    """Totals for one reporting window."""

    period: ReportPeriod
    start: date
    end: date
    total_invested: Decimal
    total_sold: Decimal
    net_profit: Decimal
    sales_count: int
    purchases_count: int
    profit_margin: Decimal
    top_products: Tuple[ProductPerformance, ...]


@dataclass(frozen=True)
class PeriodSummary:
    """Totals for one calendar day (``YYYY-MM-DD``) or month (``YYYY-MM``)."""

    label: str
    total_invested: Decimal
    total_sold: Decimal
    net_profit: Decimal
    sales_count: int
    purchases_count: int


@dataclass(frozen=True)
class InventorySummary:
    """Stock totals plus the products running low."""

    product_count: int
    total_units: int
    total_value: Decimal
    low_stock: Tuple[ProductRecord, ...]


def period_bounds(
    period: ReportPeriod,
    *,
    today: Optional[date] = None,
    days: int = DEFAULT_LAST_N_DAYS,
) -> Tuple[date, date]:
    """Return the inclusive ``(start, end)`` dates covered by ``period``.

    ``last-n-days`` spans from ``days`` days before ``today`` through
    ``today``; ``current-month`` spans the whole calendar month.
    """

    today = today or date.today()
    if period is ReportPeriod.TODAY:
        return today, today
    if period is ReportPeriod.LAST_N_DAYS:
        if days < 0:
            raise ValueError("days must be zero or positive")
        return today - timedelta(days=days), today
    if period is ReportPeriod.CURRENT_MONTH:
        last_day = calendar.monthrange(today.year, today.month)[1]
        return today.replace(day=1), today.replace(day=last_day)
    raise ValueError(f"Unsupported report period: {period}")


def filter_by_period(records: Iterable[_Dated], start: date, end: date) -> List[_Dated]:
    """Keep records whose business ``date`` falls within ``[start, end]``."""

    return [record for record in records if start <= record.date <= end]


def profit_margin(net_profit: Decimal, total_sold: Decimal) -> Decimal:
    """Net profit as a percentage of sales, rounded to two places; 0 without sales."""

    if total_sold == 0:
        return Decimal("0.00")
    return (net_profit / total_sold * Decimal("100")).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def top_products(sales: Iterable[SaleRecord], limit: int = DEFAULT_TOP_PRODUCTS) -> List[ProductPerformance]:
    """Rank products by units sold across ``sales``.

    Ties keep the order in which products were first encountered.
    """

    quantities: Dict[str, int] = defaultdict(int)
    revenue: Dict[str, Decimal] = defaultdict(Decimal)
    profit: Dict[str, Decimal] = defaultdict(Decimal)
    for sale in sales:
        for item in sale.items:
            quantities[item.product_name] += item.quantity
            revenue[item.product_name] += item.item_total
            profit[item.product_name] += item.item_profit

    ranked = sorted(quantities, key=lambda name: quantities[name], reverse=True)
    return [
        ProductPerformance(
            product_name=name,
            quantity=quantities[name],
            revenue=revenue[name],
            profit=profit[name],
        )
        for name in ranked[:limit]
    ]


def summarize(
    sales: Sequence[SaleRecord],
    purchases: Sequence[PurchaseRecord],
    period: ReportPeriod,
    *,
    today: Optional[date] = None,
    days: int = DEFAULT_LAST_N_DAYS,
    top_n: int = DEFAULT_TOP_PRODUCTS,
) -> ReportSummary:
    """Filter both histories to ``period`` and aggregate them."""

    start, end = period_bounds(period, today=today, days=days)
    period_sales = filter_by_period(sales, start, end)
    period_purchases = filter_by_period(purchases, start, end)

    total_invested = sum((purchase.total_amount for purchase in period_purchases), Decimal("0"))
    total_sold = sum((sale.total_amount for sale in period_sales), Decimal("0"))
    net_profit = sum((sale.total_profit for sale in period_sales), Decimal("0"))

    return ReportSummary(
        period=period,
        start=start,
        end=end,
        total_invested=total_invested,
        total_sold=total_sold,
        net_profit=net_profit,
        sales_count=len(period_sales),
        purchases_count=len(period_purchases),
        profit_margin=profit_margin(net_profit, total_sold),
        top_products=tuple(top_products(period_sales, top_n)),
    )


def summarize_by_day(sales: Sequence[SaleRecord], purchases: Sequence[PurchaseRecord]) -> List[PeriodSummary]:
    """One :class:`PeriodSummary` per business day that has any activity."""

    return _summarize_by(sales, purchases, lambda day: day.isoformat())


def summarize_by_month(sales: Sequence[SaleRecord], purchases: Sequence[PurchaseRecord]) -> List[PeriodSummary]:
    """One :class:`PeriodSummary` per calendar month that has any activity."""

    return _summarize_by(sales, purchases, lambda day: f"{day.year:04d}-{day.month:02d}")


def inventory_summary(products: Sequence[ProductRecord], low_stock_threshold: int) -> InventorySummary:
    """Count units and value on hand; flag products below ``low_stock_threshold``."""

    return InventorySummary(
        product_count=len(products),
        total_units=sum(product.quantity for product in products),
        total_value=sum((product.total_cost for product in products), Decimal("0")),
        low_stock=tuple(product for product in products if product.quantity < low_stock_threshold),
    )


def _summarize_by(
    sales: Sequence[SaleRecord],
    purchases: Sequence[PurchaseRecord],
    label_for: Callable[[date], str],
) -> List[PeriodSummary]:
    buckets: Dict[str, Dict[str, object]] = {}

    def bucket(label: str) -> Dict[str, object]:
        return buckets.setdefault(
            label,
            {
                "total_invested": Decimal("0"),
                "total_sold": Decimal("0"),
                "net_profit": Decimal("0"),
                "sales_count": 0,
                "purchases_count": 0,
            },
        )

    for purchase in purchases:
        entry = bucket(label_for(purchase.date))
        entry["total_invested"] += purchase.total_amount
        entry["purchases_count"] += 1
    for sale in sales:
        entry = bucket(label_for(sale.date))
        entry["total_sold"] += sale.total_amount
        entry["net_profit"] += sale.total_profit
        entry["sales_count"] += 1

    return [PeriodSummary(label=label, **buckets[label]) for label in sorted(buckets)]
