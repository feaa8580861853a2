"""Shared pytest fixtures and utilities for rental ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Iterator, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from rental_ledger import constants, core_logic, data_manager, runtime  # noqa: E402
from rental_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OPERATOR_ID = "OP-DEFAULT"
WITHDRAWN_AT = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)
DUE_AT = WITHDRAWN_AT + timedelta(days=7)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n"
    "LockTimeout = {lock_timeout}\n\n"
    "[Defaults]\n"
    "DefaultOperator = {default_operator_id}\n\n"
    "[Inventory]\n"
    "LowStockBoundary = {low_stock_boundary}\n"
)

CATALOG: Sequence[data_manager.ProductRow] = (
    data_manager.ProductRow("P-TENT", "Camping tent", Decimal("50.00"), 10, 2, True),
    data_manager.ProductRow("P-CHAIR", "Folding chair", Decimal("5.00"), 20, 5, True),
    data_manager.ProductRow("P-DRILL", "Hammer drill", Decimal("12.50"), 3, 1, True),
    data_manager.ProductRow("P-OLD", "Retired projector", Decimal("30.00"), 4, 0, False),
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_operator_id: str
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


def seed_products(workbook_path: Path, products: Iterable[data_manager.ProductRow]) -> None:
    """Append ``products`` to the workbook at ``workbook_path`` and save it."""

    workbook = data_manager.open_workbook(workbook_path)
    for product in products:
        data_manager.append_product(workbook, product)
    data_manager.save_workbook(workbook, workbook_path)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "rental_ledger.xlsx",
        products: Iterable[data_manager.ProductRow] = CATALOG,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        seed_products(workbook_path, products)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_operator_id: str = DEFAULT_OPERATOR_ID,
        lock_timeout: float = 2.0,
        low_stock_boundary: str = "inclusive",
        products: Iterable[data_manager.ProductRow] = CATALOG,
    ) -> ConfigBundle:
        subdir = f"bundle_{uuid.uuid4().hex}"
        workbook_path = workbook_factory(subdir=subdir, products=products)
        bundle_dir = workbook_path.parent
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                lock_timeout=lock_timeout,
                default_operator_id=default_operator_id,
                low_stock_boundary=low_stock_boundary,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_operator_id=default_operator_id,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    """A config/workbook pair seeded with the default catalog."""

    return config_factory()


@pytest.fixture
def runtime_context(config_bundle: ConfigBundle) -> runtime.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = runtime.load_runtime_context(config_bundle.config_path)
    runtime.ensure_schema_version(context)
    return context


@pytest.fixture
def rent() -> Callable[..., core_logic.RentalTransaction]:
    """Shortcut for creating a transaction with sensible defaults."""

    def _rent(
        context: runtime.RuntimeContext,
        *lines: core_logic.LineRequest,
        customer_id: str = "C-100",
        due_at: datetime = DUE_AT,
        withdrawn_at: datetime = WITHDRAWN_AT,
        notes: str | None = None,
    ) -> core_logic.RentalTransaction:
        command = core_logic.CreateTransactionCommand(
            customer_id=customer_id,
            operator_id=DEFAULT_OPERATOR_ID,
            due_at=due_at,
            lines=lines,
            notes=notes,
            withdrawn_at=withdrawn_at,
        )
        return core_logic.create_transaction(context, command)

    return _rent


@pytest.fixture
def stock_of() -> Callable[[runtime.RuntimeContext, str], int]:
    """Return a helper reading a product's stock on hand from the context."""

    def _stock_of(context: runtime.RuntimeContext, product_id: str) -> int:
        return core_logic.get_product(context, product_id).stock_on_hand

    return _stock_of


@pytest.fixture
def persisted_stock() -> Callable[[Path, str], int]:
    """Return a helper reading a product's stock on hand straight from disk."""

    def _persisted_stock(workbook_path: Path, product_id: str) -> int:
        workbook = data_manager.open_workbook(workbook_path)
        for product in data_manager.iter_products(workbook):
            if product.product_id == product_id:
                return product.stock_on_hand
        raise KeyError(product_id)

    return _persisted_stock
