"""Integration tests describing the end-to-end ledger workflows.

These scenarios exercise the data access layer, the document store and the
business logic layer together against a workbook on disk.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import openpyxl
import pytest

from pos_ledger import core_logic
from pos_ledger.constants import CollectionName, ReportPeriod, SheetName


def _purchase(context, *lines, when=date(2024, 3, 15)):
    command = core_logic.PurchaseCommand(
        items=[core_logic.PurchaseLine(name, quantity, Decimal(price)) for name, quantity, price in lines],
        date=when,
    )
    return core_logic.submit_purchase(context, command)


def _sale(context, *lines, when=date(2024, 3, 15)):
    command = core_logic.SaleCommand(
        items=[core_logic.SaleLine(name, quantity, Decimal(price)) for name, quantity, price in lines],
        date=when,
    )
    return core_logic.submit_sale(context, command)


def test_purchase_sale_return_lifecycle_survives_reload(runtime_context):
    """Walk through stock-in, stock-out and a return, reloading from disk in between."""

    context = runtime_context
    first = _purchase(context, ("Rice", 10, "45.00"), when=date(2024, 3, 14))
    _purchase(context, ("Rice", 10, "55.00"), ("Beans", 4, "2.50"))

    # Each commit is saved, so a fresh context sees the same ledger.
    context = core_logic.refresh_context(context)
    rice = core_logic.get_product(context, "rice")
    assert (rice.quantity, rice.average_cost, rice.total_cost) == (20, Decimal("50"), Decimal("1000"))
    assert rice.version == 2

    sale = _sale(context, ("Rice", 5, "70.00"), ("Beans", 1, "3.00"))
    assert sale.total_profit == Decimal("100.50")

    returned = core_logic.submit_return(
        context,
        core_logic.ReturnCommand(
            purchase_id=first.purchase_id,
            items=[core_logic.ReturnLine("Rice", 3)],
            reason="Damaged",
            date=date(2024, 3, 16),
        ),
    )
    assert returned.total_amount == Decimal("135")

    context = core_logic.refresh_context(context)
    assert core_logic.get_product(context, "Rice").quantity == 12
    assert core_logic.get_product(context, "Rice").average_cost == Decimal("50")
    assert core_logic.returnable_quantities(context, first.purchase_id) == {"Rice": 7}

    [stored_sale] = core_logic.list_sales(context)
    assert stored_sale.sale_id == sale.sale_id
    assert [item.product_name for item in stored_sale.items] == ["Rice", "Beans"]
    assert stored_sale.items[0].cost_price == Decimal("50")

    summary = core_logic.report_summary(context, ReportPeriod.TODAY, today=date(2024, 3, 15))
    assert summary.total_invested == Decimal("560")
    assert summary.total_sold == Decimal("353")
    assert summary.net_profit == Decimal("100.5")


def test_history_sheets_hold_one_row_per_line(runtime_context):
    record = _purchase(runtime_context, ("Rice", 1, "1"), ("Beans", 2, "2"), ("Salt", 3, "3"))

    workbook = openpyxl.load_workbook(runtime_context.settings.data_file)
    headers = list(workbook[SheetName.PURCHASES.value].iter_rows(min_row=2, values_only=True))
    items = list(workbook[SheetName.PURCHASE_ITEMS.value].iter_rows(min_row=2, values_only=True))
    assert len(headers) == 1
    assert [(row[0], row[1], row[2]) for row in items] == [
        (record.purchase_id, 1, "Rice"),
        (record.purchase_id, 2, "Beans"),
        (record.purchase_id, 3, "Salt"),
    ]


def test_rejected_sale_leaves_disk_untouched(runtime_context):
    _purchase(runtime_context, ("Rice", 2, "10"))
    with pytest.raises(core_logic.InsufficientStock):
        _sale(runtime_context, ("Rice", 1, "12"), ("Rice", 2, "12"))

    reloaded = core_logic.refresh_context(runtime_context)
    assert core_logic.get_product(reloaded, "Rice").quantity == 2
    assert core_logic.list_sales(reloaded) == []


def test_subscribers_see_each_committed_sale(runtime_context):
    _purchase(runtime_context, ("Rice", 10, "10"))
    listener = Mock()
    subscription = runtime_context.store.subscribe(CollectionName.SALES, listener, order_by="date", descending=True)

    _sale(runtime_context, ("Rice", 1, "12"), when=date(2024, 3, 14))
    _sale(runtime_context, ("Rice", 1, "12"), when=date(2024, 3, 15))
    assert listener.call_count == 3
    latest = listener.call_args.args[0]
    assert [record.date for record in latest] == [date(2024, 3, 15), date(2024, 3, 14)]

    subscription.cancel()
    _sale(runtime_context, ("Rice", 1, "12"))
    assert listener.call_count == 3


def test_relative_data_file_is_anchored_to_config(config_factory):
    bundle = config_factory(make_relative=True)
    context = core_logic.load_runtime_context(bundle.config_path)
    _purchase(context, ("Rice", 1, "1"))
    assert core_logic.get_product(core_logic.refresh_context(context), "Rice").quantity == 1


def test_two_tills_on_one_workbook_cannot_oversell(config_file, clock):
    """Two contexts loaded from the same config each try to sell the last units."""

    _purchase(core_logic.load_runtime_context(config_file, clock=clock), ("Rice", 5, "45.00"))
    till_a = core_logic.load_runtime_context(config_file, clock=clock)
    till_b = core_logic.load_runtime_context(config_file, clock=clock)
    assert core_logic.get_product(till_a, "Rice").quantity == 5
    assert core_logic.get_product(till_b, "Rice").quantity == 5

    _sale(till_a, ("Rice", 5, "70.00"))
    with pytest.raises((core_logic.InsufficientStock, core_logic.TransactionCommitFailure)):
        _sale(till_b, ("Rice", 5, "70.00"))

    reloaded = core_logic.load_runtime_context(config_file, clock=clock)
    assert core_logic.get_product(reloaded, "Rice").quantity == 0
    assert len(core_logic.list_sales(reloaded)) == 1
    assert len(core_logic.list_purchases(reloaded)) == 1
