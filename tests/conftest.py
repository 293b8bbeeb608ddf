"""Shared pytest fixtures and utilities for POS ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from pos_ledger.document_store import DocumentStore  # noqa: E402
from pos_ledger.setup_excel import create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Inventory]\n"
    "LowStockThreshold = {low_stock_threshold}\n"
    "ReturnPolicy = {return_policy}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


class TickingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.current = start

    def __call__(self) -> datetime:
        moment = self.current
        self.current = self.current + timedelta(seconds=1)
        return moment


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def clock() -> TickingClock:
    return TickingClock()


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "store.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        low_stock_threshold: int = constants.DEFAULT_LOW_STOCK_THRESHOLD,
        return_policy: str = constants.ReturnPolicy.DEDUCT_STOCK.value,
        create_workbook: bool = True,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        if create_workbook:
            workbook_path = workbook_factory(subdir=bundle_dir_name)
        else:
            workbook_path = bundle_dir / "store.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                low_stock_threshold=low_stock_threshold,
                return_policy=return_policy,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path, clock: TickingClock) -> core_logic.RuntimeContext:
    """Load a file-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=clock)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-ledger-test", description="POS ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "store.xlsx",
        store_name="Test Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def store(clock: TickingClock) -> DocumentStore:
    """Return an in-memory store with a deterministic clock."""

    return DocumentStore.in_memory(clock=clock)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: DocumentStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=store)


@pytest.fixture
def business_date() -> date:
    return date(2024, 3, 15)


@pytest.fixture
def purchase(context: core_logic.RuntimeContext, business_date: date) -> Callable[..., data_manager.PurchaseRecord]:
    """Record a purchase from ``(name, quantity, unit_price)`` tuples."""

    def _purchase(*lines: tuple, when: date | None = None, supplier: str | None = None) -> data_manager.PurchaseRecord:
        command = core_logic.PurchaseCommand(
            items=[core_logic.PurchaseLine(name, quantity, price) for name, quantity, price in lines],
            date=when or business_date,
            supplier=supplier,
        )
        return core_logic.submit_purchase(context, command)

    return _purchase


@pytest.fixture
def sale(context: core_logic.RuntimeContext, business_date: date) -> Callable[..., data_manager.SaleRecord]:
    """Record a sale from ``(name, quantity, sale_price)`` tuples."""

    def _sale(*lines: tuple, when: date | None = None) -> data_manager.SaleRecord:
        command = core_logic.SaleCommand(
            items=[core_logic.SaleLine(name, quantity, price) for name, quantity, price in lines],
            date=when or business_date,
        )
        return core_logic.submit_sale(context, command)

    return _sale
