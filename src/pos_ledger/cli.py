"""Command-line entry points for the point-of-sale ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin lets tests, scripts or any
alternative front-end reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log, reporting, setup_excel
from .constants import ReportPeriod
from .errors import BusinessRuleViolation, TransactionCommitFailure


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    needs_context: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-ledger",
        description="Inventory, purchases and sales for a small shop.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    setup_specs = register_setup_commands(subparsers)
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*setup_specs.values(), *write_specs.values(), *read_specs.values()])


def register_setup_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that run before a store exists."""
    specs = {"init": register_init_command(subparsers)}
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "purchase": register_purchase_command(subparsers),
        "sale": register_sale_command(subparsers),
        "return": register_return_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "report": register_report_command(subparsers),
        "history": register_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item(raw: str, *, fields: int) -> Tuple[str, ...]:
    """Split ``NAME:QTY[:PRICE]`` from the right so names may contain colons."""
    parts = raw.rsplit(":", fields - 1)
    if len(parts) != fields or not parts[0].strip():
        expected = "NAME:QTY:PRICE" if fields == 3 else "NAME:QTY"
        raise argparse.ArgumentTypeError(f"Expected {expected}, got '{raw}'")
    return tuple(parts)


def priced_item(raw: str) -> Tuple[str, int, Decimal]:
    """argparse type for ``NAME:QTY:PRICE`` items."""
    name, quantity, price = parse_item(raw, fields=3)
    try:
        return name, int(quantity), Decimal(price)
    except (ValueError, InvalidOperation) as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity or price in '{raw}'") from exc


def quantity_item(raw: str) -> Tuple[str, int]:
    """argparse type for ``NAME:QTY`` items."""
    name, quantity = parse_item(raw, fields=2)
    try:
        return name, int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in '{raw}'") from exc


def iso_date(raw: str) -> date:
    """argparse type for ``YYYY-MM-DD`` dates."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{raw}', expected YYYY-MM-DD") from exc


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create the store workbook named in config.ini."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, needs_context=False)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a purchase (stock-in) with one or more items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=priced_item,
            required=True,
            metavar="NAME:QTY:UNIT_PRICE",
        )
        parser.add_argument("--supplier", default=None)
        parser.add_argument("--date", type=iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale (stock-out) with one or more items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=priced_item,
            required=True,
            metavar="NAME:QTY:SALE_PRICE",
        )
        parser.add_argument("--date", type=iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Return items of a prior purchase to the supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=quantity_item,
            required=True,
            metavar="NAME:QTY",
        )
        parser.add_argument("--reason", required=True)
        parser.add_argument("--date", type=iso_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock, cost basis and low-stock flags."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None, help="Only show products whose name contains this text.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display invested, sold, profit and top products for a period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--period",
            choices=[member.value for member in ReportPeriod],
            default=ReportPeriod.TODAY.value,
        )
        parser.add_argument("--days", type=int, default=None, help="Window size for last-n-days.")
        parser.add_argument("--top", type=int, default=None, help="Number of top products to list.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display purchases, sales or returns, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("collection", choices=["purchases", "sales", "returns"])
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_purchase(args: argparse.Namespace) -> core_logic.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return core_logic.PurchaseCommand(
        items=[
            core_logic.PurchaseLine(product_name=name, quantity=quantity, unit_price=price)
            for name, quantity, price in args.items
        ],
        date=args.date or date.today(),
        supplier=args.supplier,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        items=[
            core_logic.SaleLine(product_name=name, quantity=quantity, sale_price=price)
            for name, quantity, price in args.items
        ],
        date=args.date or date.today(),
    )


def translate_return(args: argparse.Namespace) -> core_logic.ReturnCommand:
    """Translate CLI args into a return command object."""
    return core_logic.ReturnCommand(
        purchase_id=args.purchase_id,
        items=[core_logic.ReturnLine(product_name=name, quantity=quantity) for name, quantity in args.items],
        reason=args.reason,
        date=args.date or date.today(),
    )


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the store workbook from configuration."""
    config_path = Path(args.config) if getattr(args, "config", None) else Path.cwd() / "config.ini"
    destination = setup_excel.run_from_config(config_path, overwrite=args.force)
    print(f"Created store workbook at {destination}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow via the BLL."""
    record = core_logic.submit_purchase(context, translate_purchase(args))
    print(f"Purchase {record.purchase_id}: {len(record.items)} item(s), total {record.total_amount}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    record = core_logic.submit_sale(context, translate_sale(args))
    print(
        f"Sale {record.sale_id}: {len(record.items)} item(s), "
        f"total {record.total_amount}, profit {record.total_profit}"
    )
    return 0


def run_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return workflow via the BLL."""
    record = core_logic.submit_return(context, translate_return(args))
    print(f"Return {record.return_id} for purchase {record.purchase_id}: total {record.total_amount}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the inventory, optionally filtered by a name search."""
    products = core_logic.list_products(context)
    search = (getattr(args, "search", None) or "").casefold()
    if search:
        products = [product for product in products if search in product.name_key]
    summary = reporting.inventory_summary(products, context.settings.low_stock_threshold)
    low_stock_ids = {product.product_id for product in summary.low_stock}
    for product in products:
        flag = "  LOW" if product.product_id in low_stock_ids else ""
        print(
            f"{product.name:<30} qty={product.quantity:>6} "
            f"avg={product.average_cost:>12} total={product.total_cost:>14}{flag}"
        )
    print(f"{summary.product_count} product(s), {summary.total_units} unit(s), value {summary.total_value}")
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the period summary and the top products."""
    summary = core_logic.report_summary(
        context,
        ReportPeriod(args.period),
        days=getattr(args, "days", None),
        top_n=getattr(args, "top", None),
    )
    print(f"Period {summary.period.value}: {summary.start} .. {summary.end}")
    print(f"Invested: {summary.total_invested} ({summary.purchases_count} purchase(s))")
    print(f"Sold:     {summary.total_sold} ({summary.sales_count} sale(s))")
    print(f"Profit:   {summary.net_profit} (margin {summary.profit_margin}%)")
    for rank, product in enumerate(summary.top_products, start=1):
        print(f"{rank}. {product.product_name}: {product.quantity} unit(s), revenue {product.revenue}, profit {product.profit}")
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one history collection, newest first."""
    if args.collection == "purchases":
        for purchase in core_logic.list_purchases(context):
            supplier = f" from {purchase.supplier}" if purchase.supplier else ""
            print(f"{purchase.date} {purchase.purchase_id}{supplier}: total {purchase.total_amount}")
    elif args.collection == "sales":
        for sale in core_logic.list_sales(context):
            print(f"{sale.date} {sale.sale_id}: total {sale.total_amount}, profit {sale.total_profit}")
    else:
        for record in core_logic.list_returns(context):
            print(f"{record.date} {record.return_id} (purchase {record.purchase_id}): {record.total_amount} - {record.reason}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, TransactionCommitFailure):
        log.error("%s (retry the command)", error)
        return 4
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table[args.command]
        context = load_runtime_context(getattr(args, "config", None)) if spec.needs_context else None
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
