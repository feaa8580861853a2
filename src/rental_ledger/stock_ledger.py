"""Stock ledger primitives.

``reserve`` and ``credit`` are the only code paths that change a product's
stock on hand. Both operate on a :class:`~rental_ledger.runtime.UnitOfWork`,
so a stock change commits or rolls back together with the transaction and
line changes that caused it, and both append a row to the stock movement
audit trail with the balance left after the change.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional

from . import data_manager, get_logger
from .constants import MovementType
from .errors import InsufficientStockError, ValidationError
from .runtime import UnitOfWork, generate_identifier


log = get_logger(__name__)


def _require_int_quantity(quantity: object, *, allow_zero: bool) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"Quantity must be an integer, got {quantity!r}", quantity=quantity)
    if quantity < 0 or (quantity == 0 and not allow_zero):
        raise ValidationError(f"Quantity must be {'non-negative' if allow_zero else 'positive'}, got {quantity}", quantity=quantity)
    return quantity


def reserve(
    unit: UnitOfWork,
    product_id: str,
    quantity: int,
    *,
    timestamp: datetime,
    transaction_id: Optional[str] = None,
    operator_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> data_manager.ProductRow:
    """Decrement ``product_id``'s stock by ``quantity``.

    The availability check and the decrement happen against the same staged
    row, so within a unit of work they cannot be separated by another writer.

    Returns:
        data_manager.ProductRow: The product as staged after the decrement.

    Raises:
        ValidationError: If ``quantity`` is not a positive integer.
        MissingReferenceError: If the product is unknown.
        InsufficientStockError: If the stock on hand is below ``quantity``.
    """
    _require_int_quantity(quantity, allow_zero=False)
    product = unit.get_product(product_id)
    if product.stock_on_hand < quantity:
        log.warning(
            "Reservation rejected for product '%s': available %d, requested %d",
            product_id,
            product.stock_on_hand,
            quantity,
        )
        raise InsufficientStockError(product_id, available=product.stock_on_hand, requested=quantity)

    updated = replace(product, stock_on_hand=product.stock_on_hand - quantity)
    unit.save_product(updated)
    _record(unit, MovementType.RESERVE, updated, -quantity, timestamp, transaction_id, operator_id, notes)
    return updated


def credit(
    unit: UnitOfWork,
    product_id: str,
    quantity: int,
    *,
    timestamp: datetime,
    movement_type: MovementType = MovementType.RETURN,
    transaction_id: Optional[str] = None,
    operator_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> data_manager.ProductRow:
    """Increment ``product_id``'s stock by ``quantity``.

    A zero quantity is accepted and leaves the product (and the audit trail)
    untouched.

    Raises:
        ValidationError: If ``quantity`` is negative or not an integer.
        MissingReferenceError: If the product is unknown.
    """
    _require_int_quantity(quantity, allow_zero=True)
    product = unit.get_product(product_id)
    if quantity == 0:
        return product

    updated = replace(product, stock_on_hand=product.stock_on_hand + quantity)
    unit.save_product(updated)
    _record(unit, movement_type, updated, quantity, timestamp, transaction_id, operator_id, notes)
    return updated


def _record(
    unit: UnitOfWork,
    movement_type: MovementType,
    product: data_manager.ProductRow,
    change: int,
    timestamp: datetime,
    transaction_id: Optional[str],
    operator_id: Optional[str],
    notes: Optional[str],
) -> None:
    unit.record_movement(
        data_manager.MovementRow(
            movement_id=generate_identifier("M", when=timestamp),
            timestamp=timestamp,
            movement_type=movement_type,
            product_id=product.product_id,
            quantity_change=change,
            balance_after=product.stock_on_hand,
            transaction_id=transaction_id,
            operator_id=operator_id,
            notes=notes,
        )
    )
    log.debug(
        "%s %+d on product '%s' (balance %d)",
        movement_type.value,
        change,
        product.product_id,
        product.stock_on_hand,
    )
