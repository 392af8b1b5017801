"""Shared pytest fixtures and utilities for produce ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Sequence, Tuple
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from produce_ledger import cascade, cli, constants, core_logic, data_manager, inventory  # noqa: E402
from produce_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2024, 3, 10, 9, 30, tzinfo=UTC)
TODAY = "2024-03-10"
DAY1 = "2024-03-01"
DAY2 = "2024-03-02"

ITEM = "TOM"
SUPPLIER = "SUP1"
SELLER = "SEL1"

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "BalanceTolerance = {tolerance}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str


def assert_stock_chain(context: core_logic.RuntimeContext, variety: str = "Desi", item_id: str = ITEM) -> None:
    """Each daily row opens at the previous closing and the newest row equals live stock."""

    previous = None
    for row in inventory.daily_history(context, item_id, variety):
        assert row.opening_stock == (previous.closing_stock if previous is not None else Decimal("0"))
        assert row.closing_stock == max(row.opening_stock + row.purchased_today - row.sold_today, Decimal("0"))
        previous = row
    current = inventory.get_current_row(context, item_id, variety)
    if previous is not None:
        assert previous.closing_stock == current.current_stock
        assert previous.weighted_avg_purchase_rate == current.weighted_avg_rate


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Mandi",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        tolerance: str = "0.01",
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                tolerance=tolerance,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def ledger(runtime_context: core_logic.RuntimeContext, set_fixed_datetime) -> core_logic.RuntimeContext:
    """Runtime context frozen at ``TODAY`` with one item, two suppliers and two sellers."""

    set_fixed_datetime(FIXED_NOW)
    core_logic.add_item(runtime_context, item_id=ITEM, item_name="Tomato")
    core_logic.add_supplier(runtime_context, supplier_id=SUPPLIER, supplier_name="Ramesh Farms")
    core_logic.add_supplier(runtime_context, supplier_id="SUP2", supplier_name="Valley Growers")
    core_logic.add_seller(runtime_context, seller_id=SELLER, seller_name="Corner Stall")
    core_logic.add_seller(runtime_context, seller_id="SEL2", seller_name="Market Cart")
    return runtime_context


@pytest.fixture
def procure(ledger: core_logic.RuntimeContext) -> Callable[..., data_manager.ProcurementEntryRow]:
    """Record a procurement entry with sensible defaults."""

    def _procure(
        quantity,
        rate,
        *,
        day: str = DAY1,
        variety: str = "Desi",
        supplier_id: str = SUPPLIER,
        item_id: str = ITEM,
    ) -> data_manager.ProcurementEntryRow:
        command = cascade.ProcurementCommand(day, supplier_id, item_id, variety, Decimal(quantity), Decimal(rate))
        return cascade.add_procurement_entry(ledger, command)

    return _procure


@pytest.fixture
def sell(ledger: core_logic.RuntimeContext) -> Callable[..., data_manager.SalesEntryRow]:
    """Record a sales entry; ``lines`` are ``(variety, quantity, rate)`` tuples."""

    def _sell(
        lines: Sequence[Tuple[str, object, object]],
        *,
        day: str = DAY1,
        paid="0",
        discount="0",
        crates="0",
        seller_id: str = SELLER,
        item_id: str = ITEM,
    ) -> data_manager.SalesEntryRow:
        command = cascade.SalesCommand(
            session_date=day,
            seller_id=seller_id,
            item_id=item_id,
            line_items=[cascade.SaleLine(variety, Decimal(qty), Decimal(rate)) for variety, qty, rate in lines],
            crates_returned=Decimal(crates),
            amount_paid=Decimal(paid),
            discount=Decimal(discount),
        )
        return cascade.add_sales_entry(ledger, command)

    return _sell


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="ledger-cli", description="Ledger CLI")


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
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger_workbook.xlsx",
        business_name="Test Mandi",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)
