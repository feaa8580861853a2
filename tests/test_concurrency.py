"""Concurrent callers must never overdraw stock or double-apply returns."""

from __future__ import annotations

import threading
from collections import Counter
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from rental_ledger import core_logic, runtime
from rental_ledger.constants import ErrorKind, TransactionStatus


WITHDRAWN_AT = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


def _rent_one(context: runtime.RuntimeContext, product_id: str, customer_id: str) -> core_logic.OperationResult:
    command = core_logic.CreateTransactionCommand(
        customer_id=customer_id,
        operator_id="OP-DEFAULT",
        due_at=WITHDRAWN_AT + timedelta(days=1),
        lines=[core_logic.LineRequest(product_id, 1)],
        withdrawn_at=WITHDRAWN_AT,
    )
    return core_logic.execute(core_logic.create_transaction, context, command, conflict_retries=10)


def _run_in_threads(count: int, target) -> list:
    results: list = [None] * count
    barrier = threading.Barrier(count)

    def worker(index: int) -> None:
        barrier.wait()
        results[index] = target(index)

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


@pytest.fixture
def patient_bundle(config_factory):
    return config_factory(lock_timeout=30)


def test_threads_sharing_a_context_cannot_overdraw_stock(patient_bundle, persisted_stock):
    context = runtime.load_runtime_context(patient_bundle.config_path)

    results = _run_in_threads(8, lambda index: _rent_one(context, "P-DRILL", f"C-{index}"))

    outcomes = Counter("ok" if result.ok else result.failure.kind for result in results)
    assert outcomes == Counter({"ok": 3, ErrorKind.INSUFFICIENT_STOCK: 5})
    assert core_logic.get_product(context, "P-DRILL").stock_on_hand == 0
    assert persisted_stock(patient_bundle.workbook_path, "P-DRILL") == 0
    assert len(core_logic.list_transactions(context)) == 3


def test_independent_contexts_on_one_workbook_cannot_overdraw_stock(patient_bundle, persisted_stock):
    """Separate contexts stand in for separate processes sharing the file."""

    def attempt(index: int) -> core_logic.OperationResult:
        context = runtime.load_runtime_context(patient_bundle.config_path)
        return _rent_one(context, "P-DRILL", f"C-{index}")

    results = _run_in_threads(5, attempt)

    outcomes = Counter("ok" if result.ok else result.failure.kind for result in results)
    assert outcomes == Counter({"ok": 3, ErrorKind.INSUFFICIENT_STOCK: 2})
    assert persisted_stock(patient_bundle.workbook_path, "P-DRILL") == 0

    fresh = runtime.load_runtime_context(patient_bundle.config_path)
    assert len(core_logic.list_transactions(fresh)) == 3


def test_concurrent_returns_never_exceed_withdrawn_quantity(patient_bundle):
    context = runtime.load_runtime_context(patient_bundle.config_path)
    transaction = core_logic.create_transaction(
        context,
        core_logic.CreateTransactionCommand(
            customer_id="C-1",
            operator_id="OP-DEFAULT",
            due_at=WITHDRAWN_AT + timedelta(days=1),
            lines=[core_logic.LineRequest("P-TENT", 4, core_logic.PriceOverride(Decimal("2.00")))],
            withdrawn_at=WITHDRAWN_AT,
        ),
    )
    line_id = transaction.lines[0].line_id

    def give_back_one(index: int) -> core_logic.OperationResult:
        command = core_logic.ReturnCommand(
            transaction_id=transaction.transaction_id,
            operator_id="OP-DEFAULT",
            returns=[core_logic.ReturnRequest(line_id, 1)],
        )
        return core_logic.execute(core_logic.process_return, context, command, conflict_retries=10)

    results = _run_in_threads(8, give_back_one)

    assert sum(1 for result in results if result.ok) == 4
    assert {result.failure.kind for result in results if not result.ok} == {ErrorKind.INVALID_STATE}
    final = core_logic.get_transaction(context, transaction.transaction_id)
    assert final.lines[0].quantity_returned == 4
    assert final.amount_owed == Decimal("0.00")
    assert final.status is TransactionStatus.COMPLETED
    assert core_logic.get_product(context, "P-TENT").stock_on_hand == 10


def test_cancel_racing_returns_restores_stock_exactly_once(patient_bundle):
    context = runtime.load_runtime_context(patient_bundle.config_path)
    transaction = core_logic.create_transaction(
        context,
        core_logic.CreateTransactionCommand(
            customer_id="C-1",
            operator_id="OP-DEFAULT",
            due_at=WITHDRAWN_AT + timedelta(days=1),
            lines=[core_logic.LineRequest("P-CHAIR", 6)],
            withdrawn_at=WITHDRAWN_AT,
        ),
    )
    line_id = transaction.lines[0].line_id

    def act(index: int) -> core_logic.OperationResult:
        if index == 0:
            return core_logic.execute(core_logic.cancel_transaction, context, transaction.transaction_id)
        command = core_logic.ReturnCommand(
            transaction_id=transaction.transaction_id,
            operator_id="OP-DEFAULT",
            returns=[core_logic.ReturnRequest(line_id, 1)],
        )
        return core_logic.execute(core_logic.process_return, context, command)

    _run_in_threads(4, act)

    final = core_logic.get_transaction(context, transaction.transaction_id)
    assert final.lines[0].quantity_returned == 6
    assert core_logic.get_product(context, "P-CHAIR").stock_on_hand == 20
