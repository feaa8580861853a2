"""Data access layer for the rental ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business rules belong elsewhere.

The public API is organised around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, saving atomically, and tracking the revision
   counter used for optimistic concurrency.
3. Sheet operations: loading typed records and appending or rewriting rows.
4. Cross-process commit serialisation through a lock file next to the
   workbook.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

import openpyxl
from filelock import FileLock, Timeout
from openpyxl.workbook import Workbook

from . import get_logger
from .constants import LowStockBoundary, MovementType, SheetName, TransactionStatus


log = get_logger(__name__)

CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
LINES_SHEET = SheetName.TRANSACTION_LINES.value
MOVEMENTS_SHEET = SheetName.STOCK_MOVEMENTS.value
METADATA_SHEET = SheetName.METADATA.value

REVISION_KEY = "Revision"
SCHEMA_VERSION_KEY = "SchemaVersion"
DEFAULT_LOCK_TIMEOUT = 5.0
MONEY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_operator_id: str
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    low_stock_boundary: LowStockBoundary = LowStockBoundary.INCLUSIVE


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    unit_price: Decimal
    stock_on_hand: int
    minimum_stock: int
    is_active: bool


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    customer_id: str
    operator_id: str
    withdrawn_at: datetime
    due_at: datetime
    status: TransactionStatus
    amount_owed: Decimal
    notes: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class LineRow:
    """In-memory view of a row from the ``TransactionLines`` sheet."""

    line_id: str
    transaction_id: str
    product_id: str
    quantity_withdrawn: int
    quantity_returned: int
    unit_price_at_withdrawal: Decimal

    @property
    def outstanding(self) -> int:
        return self.quantity_withdrawn - self.quantity_returned


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the append-only ``StockMovements`` sheet."""

    movement_id: str
    timestamp: datetime
    movement_type: MovementType
    product_id: str
    quantity_change: int
    balance_after: int
    transaction_id: Optional[str]
    operator_id: Optional[str]
    notes: Optional[str]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in any parent
            directory.
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

    Validation of required entries happens in :func:`parse_settings`.

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

    ``[System] DataFile``, ``StoreName``, ``SchemaVersion`` and ``[Defaults]
    DefaultOperator`` are mandatory. ``[System] LockTimeout`` and
    ``[Inventory] LowStockBoundary`` fall back to their defaults when absent.
    Relative data file paths are anchored to ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional entry holds an unusable value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_operator = parser.get("Defaults", "DefaultOperator")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    lock_timeout = parser.getfloat("System", "LockTimeout", fallback=DEFAULT_LOCK_TIMEOUT)
    if lock_timeout <= 0:
        raise ValueError(f"LockTimeout must be positive, got {lock_timeout}")

    boundary_raw = parser.get(
        "Inventory", "LowStockBoundary", fallback=LowStockBoundary.INCLUSIVE.value
    )
    try:
        low_stock_boundary = LowStockBoundary(boundary_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported LowStockBoundary: {boundary_raw}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_operator_id=default_operator,
        lock_timeout=lock_timeout,
        low_stock_boundary=low_stock_boundary,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook so readers never observe a half-written file.

    The workbook is serialised into a temporary file in the destination's
    directory and then moved over the target with :func:`os.replace`, which is
    atomic on the same filesystem. The temporary file is removed when the
    save fails.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=".xlsx", dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def read_revision(workbook: Workbook) -> int:
    """Return the commit counter stored on the ``Metadata`` sheet (0 if unset)."""

    value = _read_metadata(workbook[METADATA_SHEET].iter_rows(min_row=2, values_only=True), REVISION_KEY)
    return int(value) if value is not None else 0


def read_persisted_revision(data_file: Path) -> int:
    """Read the revision counter straight from disk without loading every sheet.

    Used at commit time to detect writers in other processes that saved the
    workbook after this process loaded it.
    """

    workbook = openpyxl.load_workbook(Path(data_file).expanduser().resolve(), read_only=True)
    try:
        value = _read_metadata(workbook[METADATA_SHEET].iter_rows(min_row=2, values_only=True), REVISION_KEY)
    finally:
        workbook.close()
    return int(value) if value is not None else 0


def write_revision(workbook: Workbook, revision: int) -> None:
    """Store ``revision`` on the ``Metadata`` sheet, adding the row if needed."""

    sheet = workbook[METADATA_SHEET]
    row_index = locate_row(workbook, METADATA_SHEET, "Key", REVISION_KEY)
    if row_index is None:
        sheet.append([REVISION_KEY, revision])
    else:
        sheet.cell(row=row_index, column=2, value=revision)


def read_schema_version(workbook: Workbook) -> Optional[str]:
    """Return the schema version recorded inside the workbook, if any."""

    value = _read_metadata(workbook[METADATA_SHEET].iter_rows(min_row=2, values_only=True), SCHEMA_VERSION_KEY)
    return str(value) if value is not None else None


def _read_metadata(rows: Iterable[Sequence[object]], key: str) -> Optional[object]:
    for row in rows:
        if row and row[0] == key:
            return row[1] if len(row) > 1 else None
    return None


@contextmanager
def commit_lock(data_file: Path, *, timeout: float = DEFAULT_LOCK_TIMEOUT, poll_interval: float = 0.05) -> Iterator[Path]:
    """Hold an exclusive lock on ``<workbook>.lock`` for the duration of a commit.

    Only one process at a time can check the revision and replace the
    workbook. The lock is an OS-level file lock, so it is released when the
    holder exits, even abnormally, and a lock file left behind by a crashed
    writer does not block later commits.

    Raises:
        TimeoutError: If the lock cannot be obtained within ``timeout``
            seconds.
    """

    lock_path = Path(data_file).expanduser().resolve().with_suffix(".lock")
    lock = FileLock(lock_path)
    try:
        lock.acquire(timeout=timeout, poll_interval=poll_interval)
    except Timeout:
        raise TimeoutError(f"Timed out waiting for commit lock {lock_path}") from None

    try:
        yield lock_path
    finally:
        lock.release()


# ---------------------------------------------------------------------------
# Sheet iteration
# ---------------------------------------------------------------------------


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterator[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction headers from the ``Transactions`` worksheet."""

    for raw in _iter_sheet(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def iter_lines(workbook: Workbook) -> Iterable[LineRow]:
    """Stream transaction lines in sheet order (creation order per transaction)."""

    for raw in _iter_sheet(workbook, LINES_SHEET):
        yield deserialize_line(raw)


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Stream the stock movement audit trail in the order it was written."""

    for raw in _iter_sheet(workbook, MOVEMENTS_SHEET):
        yield deserialize_movement(raw)


# ---------------------------------------------------------------------------
# Sheet writes
# ---------------------------------------------------------------------------


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction header to the ``Transactions`` worksheet."""

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def append_line(workbook: Workbook, record: LineRow) -> None:
    """Append a transaction line to the ``TransactionLines`` worksheet."""

    workbook[LINES_SHEET].append(serialize_line(record))


def append_movement(workbook: Workbook, record: MovementRow) -> None:
    """Append an audit row to the ``StockMovements`` worksheet."""

    workbook[MOVEMENTS_SHEET].append(serialize_movement(record))


def replace_product(workbook: Workbook, record: ProductRow) -> None:
    """Overwrite the product row whose ``ProductID`` matches ``record``.

    Raises:
        KeyError: If the product does not exist on the sheet.
    """

    _replace_row(workbook, PRODUCTS_SHEET, "ProductID", record.product_id, serialize_product(record))


def replace_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Overwrite the transaction row whose ``TransactionID`` matches ``record``."""

    _replace_row(workbook, TRANSACTIONS_SHEET, "TransactionID", record.transaction_id, serialize_transaction(record))


def replace_line(workbook: Workbook, record: LineRow) -> None:
    """Overwrite the line row whose ``LineID`` matches ``record``."""

    _replace_row(workbook, LINES_SHEET, "LineID", record.line_id, serialize_line(record))


def _replace_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, values: Sequence[object]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The header row is used to resolve ``key_column`` to a column index and
    is never considered during matching.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the key column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------
#
# Money is written as text so Excel never turns it into a binary float, and
# timestamps are stored as ISO-8601 strings in UTC.


def format_money(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(MONEY_QUANTUM))


def parse_money(raw: object) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0.00")
    return Decimal(str(raw)).quantize(MONEY_QUANTUM)


def format_timestamp(moment: datetime) -> str:
    return ensure_utc(moment).isoformat()


def parse_timestamp(raw: object) -> datetime:
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


def ensure_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _optional_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def serialize_product(record: ProductRow) -> list[object]:
    """Return ``[ProductID, ProductName, UnitPrice, StockOnHand, MinimumStock, IsActive]``."""

    return [
        record.product_id,
        record.product_name,
        format_money(record.unit_price),
        record.stock_on_hand,
        record.minimum_stock,
        record.is_active,
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Return the ``Transactions`` column order for ``record``."""

    return [
        record.transaction_id,
        record.customer_id,
        record.operator_id,
        format_timestamp(record.withdrawn_at),
        format_timestamp(record.due_at),
        record.status.value,
        format_money(record.amount_owed),
        record.notes,
        format_timestamp(record.updated_at),
    ]


def serialize_line(record: LineRow) -> list[object]:
    """Return the ``TransactionLines`` column order for ``record``."""

    return [
        record.line_id,
        record.transaction_id,
        record.product_id,
        record.quantity_withdrawn,
        record.quantity_returned,
        format_money(record.unit_price_at_withdrawal),
    ]


def serialize_movement(record: MovementRow) -> list[object]:
    """Return the ``StockMovements`` column order for ``record``."""

    return [
        record.movement_id,
        format_timestamp(record.timestamp),
        record.movement_type.value,
        record.product_id,
        record.quantity_change,
        record.balance_after,
        record.transaction_id,
        record.operator_id,
        record.notes,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifiers are coerced to ``str`` so Excel's habit of turning numeric
    looking ids into numbers does not leak into lookups.
    """

    product_id, product_name, unit_price, stock_on_hand, minimum_stock, is_active = raw_row[:6]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        unit_price=parse_money(unit_price),
        stock_on_hand=int(stock_on_hand or 0),
        minimum_stock=int(minimum_stock or 0),
        is_active=bool(is_active),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction header."""

    (
        transaction_id,
        customer_id,
        operator_id,
        withdrawn_at,
        due_at,
        status,
        amount_owed,
        notes,
        updated_at,
    ) = raw_row[:9]

    withdrawn = parse_timestamp(withdrawn_at)
    return TransactionRow(
        transaction_id=str(transaction_id),
        customer_id=str(customer_id),
        operator_id=str(operator_id),
        withdrawn_at=withdrawn,
        due_at=parse_timestamp(due_at),
        status=TransactionStatus(str(status)),
        amount_owed=parse_money(amount_owed),
        notes=_optional_text(notes),
        updated_at=parse_timestamp(updated_at) if updated_at is not None else withdrawn,
    )


def deserialize_line(raw_row: Sequence[object]) -> LineRow:
    """Convert a raw worksheet row into a strongly typed transaction line."""

    line_id, transaction_id, product_id, withdrawn, returned, unit_price = raw_row[:6]
    return LineRow(
        line_id=str(line_id),
        transaction_id=str(transaction_id),
        product_id=str(product_id),
        quantity_withdrawn=int(withdrawn),
        quantity_returned=int(returned or 0),
        unit_price_at_withdrawal=parse_money(unit_price),
    )


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    """Convert a raw worksheet row into a stock movement record."""

    (
        movement_id,
        timestamp,
        movement_type,
        product_id,
        quantity_change,
        balance_after,
        transaction_id,
        operator_id,
        notes,
    ) = raw_row[:9]
    return MovementRow(
        movement_id=str(movement_id),
        timestamp=parse_timestamp(timestamp),
        movement_type=MovementType(str(movement_type)),
        product_id=str(product_id),
        quantity_change=int(quantity_change),
        balance_after=int(balance_after),
        transaction_id=_optional_text(transaction_id),
        operator_id=_optional_text(operator_id),
        notes=_optional_text(notes),
    )


def field_values(record: Any) -> dict[str, Any]:
    """Return ``record``'s dataclass fields as a plain dict (for logging/tests)."""

    return {name: getattr(record, name) for name in record.__dataclass_fields__}
