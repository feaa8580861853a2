"""Exception hierarchy for the rental ledger.

Every exception carries an :class:`~rental_ledger.constants.ErrorKind` and a
``details`` mapping naming the offending entity, so the boundary helpers in
:mod:`rental_ledger.core_logic` can turn them into structured failures.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from .constants import ErrorKind


class RentalError(Exception):
    """Base class for every failure raised by the public operations."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details)

    def as_dict(self) -> Mapping[str, Any]:
        return {"kind": self.kind.value, "message": self.message, **self.details}


class BusinessRuleViolation(RentalError):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation):
    """Malformed input rejected before any mutation is attempted."""

    kind = ErrorKind.VALIDATION


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, transaction, or line is unknown."""

    kind = ErrorKind.NOT_FOUND


class InsufficientStockError(BusinessRuleViolation):
    """Requested quantity exceeds the product's stock on hand."""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, product_id: str, *, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"available {available}, requested {requested}",
            product_id=product_id,
            available=available,
            requested=requested,
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class ExceedsAvailableError(BusinessRuleViolation):
    """Requested return quantity exceeds what is still outstanding on a line."""

    kind = ErrorKind.EXCEEDS_AVAILABLE

    def __init__(self, line_id: str, *, pending: int, requested: int) -> None:
        super().__init__(
            f"Return for line '{line_id}' exceeds outstanding quantity: "
            f"pending {pending}, requested {requested}",
            line_id=line_id,
            pending=pending,
            requested=requested,
        )
        self.line_id = line_id
        self.pending = pending
        self.requested = requested


class InvalidStateError(BusinessRuleViolation):
    """The transaction's current status forbids the requested operation."""

    kind = ErrorKind.INVALID_STATE

    def __init__(self, transaction_id: str, *, status: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} transaction '{transaction_id}' in status {status}",
            transaction_id=transaction_id,
            status=status,
            operation=operation,
        )
        self.transaction_id = transaction_id
        self.status = status
        self.operation = operation


class ConflictError(RentalError):
    """The unit of work could not commit because of a concurrent writer."""

    kind = ErrorKind.CONFLICT


__all__ = [
    "RentalError",
    "BusinessRuleViolation",
    "ValidationError",
    "MissingReferenceError",
    "InsufficientStockError",
    "ExceedsAvailableError",
    "InvalidStateError",
    "ConflictError",
]
