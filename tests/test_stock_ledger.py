"""Tests for the reserve/credit primitives and the movement audit trail."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from rental_ledger import runtime, stock_ledger
from rental_ledger.constants import MovementType
from rental_ledger.errors import InsufficientStockError, MissingReferenceError, ValidationError


MOMENT = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


def test_reserve_decrements_stock_and_records_movement(runtime_context, stock_of):
    def work(unit):
        product = stock_ledger.reserve(unit, "P-TENT", 4, timestamp=MOMENT, transaction_id="R1", operator_id="OP")
        return product, unit.movements

    product, movements = runtime.run_atomic(runtime_context, work)

    assert product.stock_on_hand == 6
    assert stock_of(runtime_context, "P-TENT") == 6
    [movement] = movements
    assert movement.movement_type is MovementType.RESERVE
    assert movement.quantity_change == -4
    assert movement.balance_after == 6
    assert movement.transaction_id == "R1"


def test_reserve_entire_stock_reaches_zero(runtime_context, stock_of):
    runtime.run_atomic(runtime_context, lambda unit: stock_ledger.reserve(unit, "P-DRILL", 3, timestamp=MOMENT))
    assert stock_of(runtime_context, "P-DRILL") == 0


def test_reserve_more_than_available_fails_without_change(runtime_context, stock_of, caplog):
    with pytest.raises(InsufficientStockError) as excinfo:
        runtime.run_atomic(runtime_context, lambda unit: stock_ledger.reserve(unit, "P-DRILL", 4, timestamp=MOMENT))

    assert excinfo.value.details == {"product_id": "P-DRILL", "available": 3, "requested": 4}
    assert stock_of(runtime_context, "P-DRILL") == 3
    assert list(runtime.iter_movements(runtime_context)) == []
    assert "Reservation rejected for product 'P-DRILL'" in caplog.text


@pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
def test_reserve_rejects_non_positive_or_non_integer_quantities(runtime_context, quantity):
    with pytest.raises(ValidationError):
        runtime.run_atomic(
            runtime_context, lambda unit: stock_ledger.reserve(unit, "P-TENT", quantity, timestamp=MOMENT)
        )


def test_reserve_unknown_product_is_not_found(runtime_context):
    with pytest.raises(MissingReferenceError):
        runtime.run_atomic(runtime_context, lambda unit: stock_ledger.reserve(unit, "P-NOPE", 1, timestamp=MOMENT))


def test_credit_increments_stock(runtime_context, stock_of):
    def work(unit):
        stock_ledger.credit(
            unit, "P-CHAIR", 5, timestamp=MOMENT, movement_type=MovementType.CANCELLATION, transaction_id="R9"
        )
        return unit.movements

    [movement] = runtime.run_atomic(runtime_context, work)

    assert stock_of(runtime_context, "P-CHAIR") == 25
    assert movement.movement_type is MovementType.CANCELLATION
    assert movement.quantity_change == 5
    assert movement.balance_after == 25


def test_credit_zero_is_a_no_op(runtime_context, stock_of):
    def work(unit):
        stock_ledger.credit(unit, "P-CHAIR", 0, timestamp=MOMENT)
        return unit.has_changes

    assert runtime.run_atomic(runtime_context, work) is False
    assert stock_of(runtime_context, "P-CHAIR") == 20
    assert runtime_context.revision == 0


def test_credit_rejects_negative_quantity(runtime_context):
    with pytest.raises(ValidationError):
        runtime.run_atomic(runtime_context, lambda unit: stock_ledger.credit(unit, "P-CHAIR", -2, timestamp=MOMENT))


def test_successive_reservations_in_one_unit_see_staged_stock(runtime_context):
    """The second reservation must be checked against the already reduced stock."""

    def work(unit):
        stock_ledger.reserve(unit, "P-DRILL", 2, timestamp=MOMENT)
        stock_ledger.reserve(unit, "P-DRILL", 2, timestamp=MOMENT)

    with pytest.raises(InsufficientStockError) as excinfo:
        runtime.run_atomic(runtime_context, work)

    assert excinfo.value.available == 1
