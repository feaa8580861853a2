"""Business logic layer for the rental ledger.

This module owns the rental transaction lifecycle: creating a transaction and
reserving its stock, accepting partial or full returns, explicit completion,
cancellation, and the overdue sweep. Every mutation runs inside
:func:`rental_ledger.runtime.run_atomic`, so stock, lines and the transaction
header always change together or not at all.

Public operations raise the exceptions in :mod:`rental_ledger.errors`.
:func:`execute` wraps any of them and returns an :class:`OperationResult`
instead, which is what front ends should call.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from . import data_manager, get_logger, stock_ledger
from .constants import (
    OPEN_STATUSES,
    ErrorKind,
    LowStockBoundary,
    MovementType,
    TransactionStatus,
)
from .errors import (
    ConflictError,
    ExceedsAvailableError,
    InsufficientStockError,
    InvalidStateError,
    MissingReferenceError,
    RentalError,
    ValidationError,
)
from .runtime import RuntimeContext, UnitOfWork, generate_identifier, read_snapshot, run_atomic


log = get_logger(__name__)

RETURN_NOTE_TAG = "[Return]"
ZERO_MONEY = Decimal("0.00")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CatalogPrice:
    """Charge the product's catalog price as it stands at withdrawal time."""


@dataclass(frozen=True)
class PriceOverride:
    """Charge a negotiated unit price instead of the catalog price."""

    amount: Decimal


RequestedPrice = Union[CatalogPrice, PriceOverride]


@dataclass(frozen=True)
class LineRequest:
    """One product requested in a new transaction."""

    product_id: str
    quantity: int
    price: RequestedPrice = CatalogPrice()


@dataclass(frozen=True)
class CreateTransactionCommand:
    """User intent for opening a rental transaction."""

    customer_id: str
    operator_id: str
    due_at: datetime
    lines: Sequence[LineRequest]
    notes: Optional[str] = None
    withdrawn_at: Optional[datetime] = None


@dataclass(frozen=True)
class ReturnRequest:
    """Quantity handed back against one transaction line."""

    line_id: str
    quantity: int


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning goods against an open transaction."""

    transaction_id: str
    operator_id: str
    returns: Sequence[ReturnRequest]
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class TransactionFilter:
    """Criteria for :func:`list_transactions`; unset fields do not filter.

    ``start``/``end`` bound ``withdrawn_at`` inclusively. ``overdue_only``
    keeps open transactions whose due date has already passed, whether or not
    the sweep has flagged them yet.
    """

    status: Optional[TransactionStatus] = None
    customer_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    overdue_only: bool = False


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RentalTransaction:
    """A transaction header together with its lines, as callers see it."""

    transaction_id: str
    customer_id: str
    operator_id: str
    withdrawn_at: datetime
    due_at: datetime
    status: TransactionStatus
    amount_owed: Decimal
    notes: Optional[str]
    updated_at: datetime
    lines: Tuple[data_manager.LineRow, ...] = ()

    @classmethod
    def from_rows(cls, header: data_manager.TransactionRow, lines: Sequence[data_manager.LineRow]) -> "RentalTransaction":
        return cls(
            transaction_id=header.transaction_id,
            customer_id=header.customer_id,
            operator_id=header.operator_id,
            withdrawn_at=header.withdrawn_at,
            due_at=header.due_at,
            status=header.status,
            amount_owed=header.amount_owed,
            notes=header.notes,
            updated_at=header.updated_at,
            lines=tuple(lines),
        )

    @property
    def outstanding_quantity(self) -> int:
        return sum(line.outstanding for line in self.lines)

    @property
    def is_fully_returned(self) -> bool:
        return all(line.outstanding == 0 for line in self.lines)


@dataclass(frozen=True)
class Failure:
    """Structured description of why an operation was rejected."""

    kind: ErrorKind
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OperationResult:
    """Either a success payload or a :class:`Failure`, never both."""

    value: Any = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def execute(
    operation: Callable[..., Any],
    *args: Any,
    conflict_retries: int = 0,
    **kwargs: Any,
) -> OperationResult:
    """Run ``operation`` and convert domain failures into an :class:`OperationResult`.

    Only :class:`~rental_ledger.errors.ConflictError` is retried, up to
    ``conflict_retries`` additional attempts; every other failure is returned
    on the first occurrence because retrying would not change the outcome.

    Args:
        operation (Callable): Any public operation of this module, e.g.
            :func:`create_transaction`.
        *args: Positional arguments forwarded to ``operation``.
        conflict_retries (int): Extra attempts allowed after a conflict.
        **kwargs: Keyword arguments forwarded to ``operation``.

    Returns:
        OperationResult: ``value`` holds the operation's return value on
            success; ``failure`` holds the kind, message and offending
            entity otherwise.
    """
    retries_left = max(conflict_retries, 0)
    while True:
        try:
            return OperationResult(value=operation(*args, **kwargs))
        except ConflictError as error:
            if not retries_left:
                return OperationResult(failure=_to_failure(error))
            retries_left -= 1
            log.info(
                "Retrying %s after conflict (%d retries left)",
                getattr(operation, "__name__", operation),
                retries_left,
            )
        except RentalError as error:
            return OperationResult(failure=_to_failure(error))


def _to_failure(error: RentalError) -> Failure:
    return Failure(kind=error.kind, message=error.message, details=dict(error.details))


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Normalise an optional caller timestamp to an aware UTC datetime."""

    if candidate is None:
        return datetime.now(UTC)
    return data_manager.ensure_utc(candidate)


def require_positive_quantity(quantity: object, *, field_name: str = "quantity") -> int:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is not an ``int`` (``bool`` is
            rejected too) or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError(f"{field_name} must be an integer, got {quantity!r}", field=field_name)
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError(f"{field_name} must be greater than zero, got {quantity}", field=field_name)
    return quantity


def require_nonnegative_money(amount: object) -> Decimal:
    """Validate that a monetary value is a non-negative :class:`Decimal`.

    Floats are rejected so binary rounding never reaches the ledger, and so
    are amounts finer than one cent, which could not be stored exactly.
    """
    if isinstance(amount, bool) or not isinstance(amount, (Decimal, int)):
        log.error("Monetary value validation failed: %r", amount)
        raise ValidationError(f"Amount must be a Decimal, got {amount!r}", amount=str(amount))
    amount = Decimal(amount)
    if not amount.is_finite() or amount < 0:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive", amount=str(amount))
    quantized = amount.quantize(data_manager.MONEY_QUANTUM)
    if quantized != amount:
        log.error("Monetary value has more than two decimal places: %s", amount)
        raise ValidationError("Amount must not have more than two decimal places", amount=str(amount))
    return quantized


def _reject_illegal_characters(value: str, field_name: str) -> None:
    if ILLEGAL_CHARACTERS_RE.search(value):
        log.error("Field '%s' contains control characters that cannot be stored", field_name)
        raise ValidationError(f"{field_name} contains characters that cannot be stored", field=field_name)


def require_text(value: object, *, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        log.error("Missing required field '%s'", field_name)
        raise ValidationError(f"{field_name} is required", field=field_name)
    _reject_illegal_characters(value, field_name)
    return value.strip()


def clean_note(value: object, *, field_name: str = "notes") -> Optional[str]:
    """Return the stripped note, or ``None`` when it is absent or blank."""
    if value is None:
        return None
    if not isinstance(value, str):
        log.error("Field '%s' must be text, got %r", field_name, value)
        raise ValidationError(f"{field_name} must be text", field=field_name)
    _reject_illegal_characters(value, field_name)
    return value.strip() or None


def validate_create_command(command: CreateTransactionCommand) -> None:
    """Reject malformed creation requests before anything is staged.

    Raises:
        ValidationError: For missing customer/operator ids, a missing due
            date, an empty line list, or a non-positive quantity or negative
            override price on any line.
    """
    require_text(command.customer_id, field_name="customer_id")
    require_text(command.operator_id, field_name="operator_id")
    if not isinstance(command.due_at, datetime):
        raise ValidationError("due_at is required", field="due_at")
    clean_note(command.notes)
    if not command.lines:
        log.error("Transaction request without lines for customer '%s'", command.customer_id)
        raise ValidationError("A transaction needs at least one line", field="lines")
    for line in command.lines:
        require_text(line.product_id, field_name="product_id")
        require_positive_quantity(line.quantity)
        if isinstance(line.price, PriceOverride):
            require_nonnegative_money(line.price.amount)
        elif not isinstance(line.price, CatalogPrice):
            raise ValidationError(f"Unsupported price request: {line.price!r}", field="price")


def validate_return_command(command: ReturnCommand) -> None:
    """Reject malformed return requests before anything is staged."""
    require_text(command.transaction_id, field_name="transaction_id")
    require_text(command.operator_id, field_name="operator_id")
    clean_note(command.notes)
    if not command.returns:
        raise ValidationError("A return needs at least one line", field="returns")
    for item in command.returns:
        require_text(item.line_id, field_name="line_id")
        require_positive_quantity(item.quantity)


def resolve_unit_price(requested: RequestedPrice, product: data_manager.ProductRow) -> Decimal:
    """Freeze the unit price for a new line."""
    if isinstance(requested, PriceOverride):
        return require_nonnegative_money(requested.amount)
    return product.unit_price.quantize(data_manager.MONEY_QUANTUM)


def calculate_amount_owed(lines: Sequence[data_manager.LineRow]) -> Decimal:
    """Sum ``outstanding × unit_price_at_withdrawal`` over every line.

    Always recomputed from the full line set rather than adjusted by a
    delta, so any earlier drift in the stored total is corrected.
    """
    total = sum(
        (Decimal(line.outstanding) * line.unit_price_at_withdrawal for line in lines),
        ZERO_MONEY,
    )
    return total.quantize(data_manager.MONEY_QUANTUM)


def append_note(existing: Optional[str], tag: str, note: Optional[str]) -> Optional[str]:
    """Append ``note`` prefixed by ``tag`` on a new line; blank notes are ignored."""
    if note is None or not note.strip():
        return existing
    return f"{existing or ''}\n{tag} {note.strip()}".strip()


def _require_open(header: data_manager.TransactionRow, operation: str) -> None:
    if header.status.is_terminal:
        log.warning(
            "Rejected %s on transaction '%s' in status %s",
            operation,
            header.transaction_id,
            header.status.value,
        )
        raise InvalidStateError(header.transaction_id, status=header.status.value, operation=operation)


def _aggregate(pairs: Sequence[Tuple[str, int]]) -> "OrderedDict[str, int]":
    totals: "OrderedDict[str, int]" = OrderedDict()
    for key, quantity in pairs:
        totals[key] = totals.get(key, 0) + quantity
    return totals


# ---------------------------------------------------------------------------
# Rental transaction manager
# ---------------------------------------------------------------------------


def create_transaction(context: RuntimeContext, command: CreateTransactionCommand) -> RentalTransaction:
    """Open a rental transaction and reserve its stock.

    Every requested product must exist and be active, and its stock must
    cover the total requested across all lines naming it. Each line's unit
    price is frozen at this point: either the override supplied by the
    caller or the product's current catalog price. The transaction starts in
    ``ACTIVE`` with ``amount_owed`` equal to the sum of ``quantity × price``.

    The request is all-or-nothing: if any line fails, no stock changes and no
    transaction is written.

    Args:
        context (RuntimeContext): Runtime context providing the ledger.
        command (CreateTransactionCommand): Structured creation request.

    Returns:
        RentalTransaction: The persisted transaction with its lines.

    Raises:
        ValidationError: For malformed input or an inactive product.
        MissingReferenceError: If any product id is unknown.
        InsufficientStockError: If any product lacks the requested stock.
        ConflictError: If the unit of work could not commit.
    """
    validate_create_command(command)
    timestamp = _resolve_timestamp(command.withdrawn_at)
    due_at = data_manager.ensure_utc(command.due_at)
    notes = clean_note(command.notes)

    def work(unit: UnitOfWork) -> RentalTransaction:
        requested = _aggregate([(line.product_id, line.quantity) for line in command.lines])
        products = {product_id: unit.get_product(product_id) for product_id in requested}

        for product_id, quantity in requested.items():
            product = products[product_id]
            if not product.is_active:
                log.warning("Attempted to rent inactive product '%s'", product_id)
                raise ValidationError(f"Product '{product_id}' is inactive", product_id=product_id)
            if product.stock_on_hand < quantity:
                log.warning(
                    "Insufficient stock for product '%s': available %d, requested %d",
                    product_id,
                    product.stock_on_hand,
                    quantity,
                )
                raise InsufficientStockError(product_id, available=product.stock_on_hand, requested=quantity)

        transaction_id = generate_identifier("R", when=timestamp)
        lines: List[data_manager.LineRow] = []
        for index, request in enumerate(command.lines, start=1):
            stock_ledger.reserve(
                unit,
                request.product_id,
                request.quantity,
                timestamp=timestamp,
                transaction_id=transaction_id,
                operator_id=command.operator_id,
            )
            line = data_manager.LineRow(
                line_id=f"{transaction_id}-L{index:02d}",
                transaction_id=transaction_id,
                product_id=request.product_id,
                quantity_withdrawn=request.quantity,
                quantity_returned=0,
                unit_price_at_withdrawal=resolve_unit_price(request.price, products[request.product_id]),
            )
            unit.add_line(line)
            lines.append(line)

        header = data_manager.TransactionRow(
            transaction_id=transaction_id,
            customer_id=command.customer_id.strip(),
            operator_id=command.operator_id.strip(),
            withdrawn_at=timestamp,
            due_at=due_at,
            status=TransactionStatus.ACTIVE,
            amount_owed=calculate_amount_owed(lines),
            notes=notes,
            updated_at=timestamp,
        )
        unit.add_transaction(header)
        return RentalTransaction.from_rows(header, lines)

    transaction = run_atomic(context, work)
    log.info(
        "Created transaction '%s' for customer '%s' (%d lines, amount owed %s)",
        transaction.transaction_id,
        transaction.customer_id,
        len(transaction.lines),
        transaction.amount_owed,
    )
    return transaction


# ---------------------------------------------------------------------------
# Return processor
# ---------------------------------------------------------------------------


def process_return(context: RuntimeContext, command: ReturnCommand) -> RentalTransaction:
    """Apply a partial or full return to an open transaction.

    Requested quantities for the same line are summed, then each line's total
    is checked against its outstanding quantity; one over-return rejects the
    whole batch. Accepted quantities are added to ``quantity_returned`` and
    credited back to stock. ``amount_owed`` is then recomputed from every
    line, and the transaction becomes ``COMPLETED`` once nothing is
    outstanding; otherwise its status (``ACTIVE`` or ``OVERDUE``) is kept.
    Notes are appended to the existing ones under the ``[Return]`` tag.

    Args:
        context (RuntimeContext): Runtime context providing the ledger.
        command (ReturnCommand): Structured return request.

    Returns:
        RentalTransaction: The updated transaction.

    Raises:
        ValidationError: For malformed input.
        MissingReferenceError: If the transaction is unknown or a line does
            not belong to it.
        InvalidStateError: If the transaction is completed or cancelled.
        ExceedsAvailableError: If a line would be over-returned.
        ConflictError: If the unit of work could not commit.
    """
    validate_return_command(command)
    timestamp = _resolve_timestamp(command.timestamp)
    notes = clean_note(command.notes)

    def work(unit: UnitOfWork) -> RentalTransaction:
        header = unit.get_transaction(command.transaction_id)
        _require_open(header, "return goods against")

        lines = {line.line_id: line for line in unit.lines_for(header.transaction_id)}
        requested = _aggregate([(item.line_id, item.quantity) for item in command.returns])
        for line_id, quantity in requested.items():
            line = lines.get(line_id)
            if line is None:
                log.warning("Line '%s' is not part of transaction '%s'", line_id, header.transaction_id)
                raise MissingReferenceError(
                    f"Line '{line_id}' does not belong to transaction '{header.transaction_id}'",
                    line_id=line_id,
                    transaction_id=header.transaction_id,
                )
            if quantity > line.outstanding:
                log.warning(
                    "Return on line '%s' exceeds outstanding quantity: pending %d, requested %d",
                    line_id,
                    line.outstanding,
                    quantity,
                )
                raise ExceedsAvailableError(line_id, pending=line.outstanding, requested=quantity)

        for line_id, quantity in requested.items():
            line = lines[line_id]
            unit.save_line(replace(line, quantity_returned=line.quantity_returned + quantity))
            stock_ledger.credit(
                unit,
                line.product_id,
                quantity,
                timestamp=timestamp,
                movement_type=MovementType.RETURN,
                transaction_id=header.transaction_id,
                operator_id=command.operator_id,
                notes=notes,
            )

        updated_lines = unit.lines_for(header.transaction_id)
        fully_returned = all(line.outstanding == 0 for line in updated_lines)
        updated = replace(
            header,
            amount_owed=calculate_amount_owed(updated_lines),
            status=TransactionStatus.COMPLETED if fully_returned else header.status,
            notes=append_note(header.notes, RETURN_NOTE_TAG, notes),
            updated_at=timestamp,
        )
        unit.save_transaction(updated)
        return RentalTransaction.from_rows(updated, updated_lines)

    transaction = run_atomic(context, work)
    log.info(
        "Processed return on transaction '%s' (status %s, amount owed %s)",
        transaction.transaction_id,
        transaction.status.value,
        transaction.amount_owed,
    )
    return transaction


# ---------------------------------------------------------------------------
# Explicit completion and cancellation
# ---------------------------------------------------------------------------


def complete_transaction(
    context: RuntimeContext,
    transaction_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> RentalTransaction:
    """Close an open transaction, billing whatever was not returned.

    Goods still outstanding are treated as kept by the customer: stock is not
    credited and ``amount_owed`` is recomputed from the current line
    quantities.

    Raises:
        MissingReferenceError: If the transaction is unknown.
        InvalidStateError: If the transaction is already completed or
            cancelled.
        ConflictError: If the unit of work could not commit.
    """
    require_text(transaction_id, field_name="transaction_id")
    moment = _resolve_timestamp(timestamp)

    def work(unit: UnitOfWork) -> RentalTransaction:
        header = unit.get_transaction(transaction_id)
        _require_open(header, "complete")
        lines = unit.lines_for(transaction_id)
        updated = replace(
            header,
            amount_owed=calculate_amount_owed(lines),
            status=TransactionStatus.COMPLETED,
            updated_at=moment,
        )
        unit.save_transaction(updated)
        return RentalTransaction.from_rows(updated, lines)

    transaction = run_atomic(context, work)
    log.info(
        "Completed transaction '%s' with %d unit(s) kept (amount owed %s)",
        transaction_id,
        transaction.outstanding_quantity,
        transaction.amount_owed,
    )
    return transaction


def cancel_transaction(
    context: RuntimeContext,
    transaction_id: str,
    *,
    operator_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> RentalTransaction:
    """Cancel an open transaction and put every outstanding unit back in stock.

    Each line's outstanding quantity is credited, every line is marked fully
    returned, ``amount_owed`` becomes zero and the status ``CANCELLED``.
    Cancelling twice is an error.

    Raises:
        MissingReferenceError: If the transaction is unknown.
        InvalidStateError: If the transaction is already completed or
            cancelled.
        ConflictError: If the unit of work could not commit.
    """
    require_text(transaction_id, field_name="transaction_id")
    if operator_id is not None:
        require_text(operator_id, field_name="operator_id")
    moment = _resolve_timestamp(timestamp)

    def work(unit: UnitOfWork) -> Tuple[RentalTransaction, int]:
        header = unit.get_transaction(transaction_id)
        _require_open(header, "cancel")
        restored = 0
        for line in unit.lines_for(transaction_id):
            outstanding = line.outstanding
            stock_ledger.credit(
                unit,
                line.product_id,
                outstanding,
                timestamp=moment,
                movement_type=MovementType.CANCELLATION,
                transaction_id=transaction_id,
                operator_id=operator_id,
            )
            if outstanding:
                unit.save_line(replace(line, quantity_returned=line.quantity_withdrawn))
                restored += outstanding
        updated = replace(
            header,
            amount_owed=ZERO_MONEY,
            status=TransactionStatus.CANCELLED,
            updated_at=moment,
        )
        unit.save_transaction(updated)
        return RentalTransaction.from_rows(updated, unit.lines_for(transaction_id)), restored

    transaction, restored = run_atomic(context, work)
    log.info("Cancelled transaction '%s', restored %d unit(s) to stock", transaction_id, restored)
    return transaction


# ---------------------------------------------------------------------------
# Status scheduler
# ---------------------------------------------------------------------------


def sweep_overdue(context: RuntimeContext, now: Optional[datetime] = None) -> List[str]:
    """Flag every ``ACTIVE`` transaction whose due date is before ``now``.

    Statuses are re-read inside the unit of work, so a transaction completed
    or cancelled concurrently is never flipped to ``OVERDUE``. Running the
    sweep again with the same ``now`` changes nothing.

    Returns:
        list[str]: Identifiers of the transactions that became overdue.
    """
    moment = _resolve_timestamp(now)

    def work(unit: UnitOfWork) -> List[str]:
        flagged: List[str] = []
        for header in unit.transactions():
            if header.status is TransactionStatus.ACTIVE and header.due_at < moment:
                unit.save_transaction(replace(header, status=TransactionStatus.OVERDUE, updated_at=moment))
                flagged.append(header.transaction_id)
        return flagged

    flagged = run_atomic(context, work)
    if flagged:
        log.info("Marked %d transaction(s) overdue as of %s", len(flagged), moment.isoformat())
    else:
        log.debug("Overdue sweep at %s found nothing to flag", moment.isoformat())
    return flagged


# ---------------------------------------------------------------------------
# Read queries
# ---------------------------------------------------------------------------


def _assemble(snapshot: Dict[str, Any], header: data_manager.TransactionRow) -> RentalTransaction:
    lines = [snapshot["lines"][line_id] for line_id in snapshot["line_ids"].get(header.transaction_id, [])]
    return RentalTransaction.from_rows(header, lines)


def get_transaction(context: RuntimeContext, transaction_id: str) -> RentalTransaction:
    """Return a transaction with its lines.

    Raises:
        MissingReferenceError: If the transaction is unknown.
    """
    snapshot = read_snapshot(context)
    header = snapshot["transactions"].get(transaction_id)
    if header is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}", transaction_id=transaction_id)
    return _assemble(snapshot, header)


def list_transactions(
    context: RuntimeContext,
    criteria: Optional[TransactionFilter] = None,
    *,
    now: Optional[datetime] = None,
) -> List[RentalTransaction]:
    """Return transactions matching ``criteria``, newest withdrawal first.

    Args:
        context (RuntimeContext): Runtime context providing the ledger.
        criteria (TransactionFilter | None): Optional filters.
        now (datetime | None): Reference time for ``overdue_only``; defaults
            to the current UTC time.
    """
    criteria = criteria or TransactionFilter()
    moment = _resolve_timestamp(now)
    start = data_manager.ensure_utc(criteria.start) if criteria.start else None
    end = data_manager.ensure_utc(criteria.end) if criteria.end else None

    snapshot = read_snapshot(context)
    selected = []
    for header in snapshot["transactions"].values():
        if criteria.status is not None and header.status is not criteria.status:
            continue
        if criteria.customer_id is not None and header.customer_id != criteria.customer_id:
            continue
        if start is not None and header.withdrawn_at < start:
            continue
        if end is not None and header.withdrawn_at > end:
            continue
        if criteria.overdue_only and not (header.status in OPEN_STATUSES and header.due_at < moment):
            continue
        selected.append(header)

    selected.sort(key=lambda row: row.withdrawn_at, reverse=True)
    return [_assemble(snapshot, header) for header in selected]


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    product = read_snapshot(context)["products"].get(product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}", product_id=product_id)
    return product


def list_products(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return products in sheet order, hiding inactive ones unless asked."""
    products = read_snapshot(context)["products"].values()
    return [product for product in products if include_inactive or product.is_active]


def is_low_stock(product: data_manager.ProductRow, boundary: LowStockBoundary = LowStockBoundary.INCLUSIVE) -> bool:
    """Whether ``product`` sits at (inclusive) or below (exclusive) its minimum."""
    if boundary is LowStockBoundary.INCLUSIVE:
        return product.stock_on_hand <= product.minimum_stock
    return product.stock_on_hand < product.minimum_stock
