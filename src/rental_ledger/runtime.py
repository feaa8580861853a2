"""Runtime context and the atomic unit of work.

Every mutating operation runs through :func:`run_atomic`, which hands a
:class:`UnitOfWork` to a caller-supplied closure. The unit stages reads and
writes in memory; nothing touches the workbook until the closure returns.
Commit then happens under two locks:

* the context's in-process re-entrant lock, which serialises units of work
  sharing one :class:`RuntimeContext` (threads of one process), and
* a lock file beside the workbook, held while the persisted revision counter
  is compared with the one this context loaded (optimistic check against
  other processes) and the workbook is rewritten.

Any failure before or during commit leaves both the workbook on disk and the
in-memory workbook exactly as they were.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, get_logger
from .constants import EXPECTED_SCHEMA_VERSION
from .errors import ConflictError, MissingReferenceError


log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RuntimeContext:
    """Configuration, live workbook and shared state used by every operation."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    revision: int = 0
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Context holding the settings, the workbook and the
            revision counter the workbook was loaded at.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    revision = data_manager.read_revision(workbook)
    log.info("Loaded runtime context for workbook '%s' at revision %d", settings.data_file, revision)
    return RuntimeContext(settings=settings, workbook=workbook, revision=revision)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Both the version declared in ``config.ini`` and the one recorded in the
    workbook's ``Metadata`` sheet (when present) must equal
    ``EXPECTED_SCHEMA_VERSION``.

    Raises:
        RuntimeError: On any mismatch.
    """
    declared = context.settings.schema_version
    recorded = data_manager.read_schema_version(context.workbook)
    for source, version in (("config", declared), ("workbook", recorded)):
        if version is not None and version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Schema mismatch in %s: expected %s, found %s",
                source,
                EXPECTED_SCHEMA_VERSION,
                version,
            )
            raise RuntimeError(
                "Schema mismatch in %s: expected %s, found %s"
                % (source, EXPECTED_SCHEMA_VERSION, version)
            )

    log.debug("Schema version '%s' validated", declared)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk in place, discarding unsaved changes.

    The cache is dropped and the revision counter re-read so the next unit of
    work starts from what is actually persisted.
    """
    with context._lock:
        context.workbook = data_manager.refresh_workbook(context.settings.data_file)
        context.revision = data_manager.read_revision(context.workbook)
        context._cache.clear()
    log.info("Reloaded workbook '%s' at revision %d", context.settings.data_file, context.revision)
    return context


def generate_identifier(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``R20250101120000000000-1a2b3c``.

    The timestamp keeps identifiers in chronological order; the random suffix
    keeps them unique when two are minted within the same microsecond.
    """
    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Cached snapshot
# ---------------------------------------------------------------------------


def _ensure_snapshot(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the snapshot bucket from the workbook on demand.

    The bucket holds ``products`` (by id), ``transactions`` (by id, sheet
    order), ``lines`` (by id) and ``line_ids`` (transaction id -> ordered line
    ids). It is rebuilt after every commit or reload.
    """
    bucket = context._cache.get("snapshot")
    if bucket is not None:
        return bucket

    products = {row.product_id: row for row in data_manager.iter_products(context.workbook)}
    transactions = {row.transaction_id: row for row in data_manager.iter_transactions(context.workbook)}
    lines: Dict[str, data_manager.LineRow] = {}
    line_ids: Dict[str, List[str]] = {}
    for line in data_manager.iter_lines(context.workbook):
        lines[line.line_id] = line
        line_ids.setdefault(line.transaction_id, []).append(line.line_id)

    bucket = {
        "products": products,
        "transactions": transactions,
        "lines": lines,
        "line_ids": line_ids,
    }
    context._cache["snapshot"] = bucket
    log.debug(
        "Populated snapshot cache: %d products, %d transactions, %d lines",
        len(products),
        len(transactions),
        len(lines),
    )
    return bucket


def _reload_if_stale(context: RuntimeContext) -> None:
    persisted = data_manager.read_persisted_revision(context.settings.data_file)
    if persisted != context.revision:
        log.debug("Workbook moved from revision %d to %d; reloading", context.revision, persisted)
        refresh_context(context)


def read_snapshot(context: RuntimeContext) -> Dict[str, Any]:
    """Return a consistent copy of the cached snapshot for read-only queries.

    The context is reloaded first if another writer has committed since it
    was loaded.
    """
    with context._lock:
        _reload_if_stale(context)
        bucket = _ensure_snapshot(context)
        return {
            "products": dict(bucket["products"]),
            "transactions": dict(bucket["transactions"]),
            "lines": dict(bucket["lines"]),
            "line_ids": {key: list(ids) for key, ids in bucket["line_ids"].items()},
        }


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class UnitOfWork:
    """Staged view of the ledger used by a single atomic operation.

    Reads see the snapshot plus whatever this unit already staged. Writes are
    recorded as replaced rows, new rows and appended movements, and are only
    applied to the workbook by :meth:`commit`.
    """

    def __init__(self, context: RuntimeContext) -> None:
        snapshot = _ensure_snapshot(context)
        self._context = context
        self._products: Dict[str, data_manager.ProductRow] = dict(snapshot["products"])
        self._transactions: Dict[str, data_manager.TransactionRow] = dict(snapshot["transactions"])
        self._lines: Dict[str, data_manager.LineRow] = dict(snapshot["lines"])
        self._line_ids: Dict[str, List[str]] = {key: list(ids) for key, ids in snapshot["line_ids"].items()}

        self._dirty_products: Dict[str, None] = {}
        self._dirty_transactions: Dict[str, None] = {}
        self._dirty_lines: Dict[str, None] = {}
        self._new_transactions: Dict[str, None] = {}
        self._new_lines: Dict[str, None] = {}
        self._movements: List[data_manager.MovementRow] = []

    # -- products ---------------------------------------------------------

    def get_product(self, product_id: str) -> data_manager.ProductRow:
        try:
            return self._products[product_id]
        except KeyError as exc:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise MissingReferenceError(f"Unknown product id: {product_id}", product_id=product_id) from exc

    def save_product(self, record: data_manager.ProductRow) -> None:
        if record.product_id not in self._products:
            raise MissingReferenceError(f"Unknown product id: {record.product_id}", product_id=record.product_id)
        self._products[record.product_id] = record
        self._dirty_products[record.product_id] = None

    # -- transactions -----------------------------------------------------

    def get_transaction(self, transaction_id: str) -> data_manager.TransactionRow:
        try:
            return self._transactions[transaction_id]
        except KeyError as exc:
            log.warning("Transaction lookup failed for id '%s'", transaction_id)
            raise MissingReferenceError(
                f"Unknown transaction id: {transaction_id}", transaction_id=transaction_id
            ) from exc

    def transactions(self) -> List[data_manager.TransactionRow]:
        return list(self._transactions.values())

    def add_transaction(self, record: data_manager.TransactionRow) -> None:
        if record.transaction_id in self._transactions:
            raise ConflictError(
                f"Duplicate transaction id: {record.transaction_id}", transaction_id=record.transaction_id
            )
        self._transactions[record.transaction_id] = record
        self._new_transactions[record.transaction_id] = None

    def save_transaction(self, record: data_manager.TransactionRow) -> None:
        self.get_transaction(record.transaction_id)
        self._transactions[record.transaction_id] = record
        if record.transaction_id not in self._new_transactions:
            self._dirty_transactions[record.transaction_id] = None

    # -- lines ------------------------------------------------------------

    def lines_for(self, transaction_id: str) -> List[data_manager.LineRow]:
        return [self._lines[line_id] for line_id in self._line_ids.get(transaction_id, [])]

    def add_line(self, record: data_manager.LineRow) -> None:
        if record.line_id in self._lines:
            raise ConflictError(f"Duplicate line id: {record.line_id}", line_id=record.line_id)
        self._lines[record.line_id] = record
        self._line_ids.setdefault(record.transaction_id, []).append(record.line_id)
        self._new_lines[record.line_id] = None

    def save_line(self, record: data_manager.LineRow) -> None:
        if record.line_id not in self._lines:
            raise MissingReferenceError(f"Unknown line id: {record.line_id}", line_id=record.line_id)
        self._lines[record.line_id] = record
        if record.line_id not in self._new_lines:
            self._dirty_lines[record.line_id] = None

    # -- movements --------------------------------------------------------

    def record_movement(self, record: data_manager.MovementRow) -> None:
        self._movements.append(record)

    @property
    def movements(self) -> List[data_manager.MovementRow]:
        return list(self._movements)

    # -- commit -----------------------------------------------------------

    @property
    def has_changes(self) -> bool:
        return bool(
            self._dirty_products
            or self._dirty_transactions
            or self._dirty_lines
            or self._new_transactions
            or self._new_lines
            or self._movements
        )

    def commit(self) -> None:
        """Write every staged change to the workbook and persist it.

        Raises:
            ConflictError: If another writer committed since this context
                loaded the workbook, or the commit lock file could not be
                obtained in time. The context is reloaded from disk first so
                a retry starts from fresh data.
        """
        if not self.has_changes:
            return

        context = self._context
        data_file = context.settings.data_file
        try:
            with data_manager.commit_lock(data_file, timeout=context.settings.lock_timeout):
                persisted = data_manager.read_persisted_revision(data_file)
                if persisted != context.revision:
                    log.warning(
                        "Revision conflict on '%s': loaded %d, persisted %d",
                        data_file,
                        context.revision,
                        persisted,
                    )
                    raise ConflictError(
                        "The ledger was modified by another writer; retry the operation",
                        loaded_revision=context.revision,
                        persisted_revision=persisted,
                    )
                new_revision = context.revision + 1
                self._apply(context.workbook)
                data_manager.write_revision(context.workbook, new_revision)
                data_manager.save_workbook(context.workbook, data_file)
        except TimeoutError as exc:
            log.warning("Commit lock busy for '%s'", data_file)
            refresh_context(context)
            raise ConflictError(
                "Timed out waiting for the ledger commit lock", data_file=str(data_file)
            ) from exc
        except ConflictError:
            refresh_context(context)
            raise
        except Exception:
            log.exception("Commit failed for '%s'; rolling back", data_file)
            refresh_context(context)
            raise

        context.revision = new_revision
        context._cache.clear()
        log.debug("Committed revision %d to '%s'", new_revision, data_file)

    def _apply(self, workbook: Workbook) -> None:
        for product_id in self._dirty_products:
            data_manager.replace_product(workbook, self._products[product_id])
        for transaction_id in self._dirty_transactions:
            data_manager.replace_transaction(workbook, self._transactions[transaction_id])
        for line_id in self._dirty_lines:
            data_manager.replace_line(workbook, self._lines[line_id])
        for transaction_id in self._new_transactions:
            data_manager.append_transaction(workbook, self._transactions[transaction_id])
        for line_id in self._new_lines:
            data_manager.append_line(workbook, self._lines[line_id])
        for movement in self._movements:
            data_manager.append_movement(workbook, movement)


def run_atomic(context: RuntimeContext, work: Callable[[UnitOfWork], T]) -> T:
    """Run ``work`` inside one all-or-nothing unit and return its result.

    ``work`` receives a fresh :class:`UnitOfWork`. If it raises, the staged
    changes are discarded and the exception propagates untouched; otherwise
    the unit is committed before the result is returned. Units must not be
    nested.

    Raises:
        ConflictError: If the in-process lock is not acquired within the
            configured ``LockTimeout`` or the commit detects a concurrent
            writer.
    """
    timeout = context.settings.lock_timeout
    if not context._lock.acquire(timeout=timeout):
        log.warning("Timed out after %.2fs waiting for the ledger lock", timeout)
        raise ConflictError("Timed out waiting for the ledger lock", timeout=timeout)
    try:
        unit = UnitOfWork(context)
        result = work(unit)
        unit.commit()
        return result
    finally:
        context._lock.release()


def iter_movements(context: RuntimeContext) -> Iterator[data_manager.MovementRow]:
    """Yield the persisted stock movement audit trail."""
    with context._lock:
        _reload_if_stale(context)
        rows = list(data_manager.iter_movements(context.workbook))
    yield from rows
