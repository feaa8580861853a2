"""Enumerations shared across the rental ledger modules.

Keeps status names, sheet names and error kinds in one place so the data
access layer, the business logic and the CLI agree on every identifier that
ends up persisted in the workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionStatus(str, Enum):
    """Lifecycle states of a rental transaction."""

    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.CANCELLED})
OPEN_STATUSES = frozenset({TransactionStatus.ACTIVE, TransactionStatus.OVERDUE})


class MovementType(str, Enum):
    """Reasons a product's stock on hand changed."""

    RESERVE = "RESERVE"
    RETURN = "RETURN"
    CANCELLATION = "CANCELLATION"


class ErrorKind(str, Enum):
    """Failure kinds surfaced to callers of the public operations."""

    VALIDATION = "ValidationError"
    NOT_FOUND = "NotFound"
    INSUFFICIENT_STOCK = "InsufficientStock"
    EXCEEDS_AVAILABLE = "ExceedsAvailable"
    INVALID_STATE = "InvalidState"
    CONFLICT = "Conflict"


class LowStockBoundary(str, Enum):
    """Whether stock equal to the minimum already counts as low."""

    INCLUSIVE = "inclusive"
    EXCLUSIVE = "exclusive"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    TRANSACTION_LINES = "TransactionLines"
    STOCK_MOVEMENTS = "StockMovements"
    METADATA = "Metadata"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionStatus",
    "TERMINAL_STATUSES",
    "OPEN_STATUSES",
    "MovementType",
    "ErrorKind",
    "LowStockBoundary",
    "SheetName",
]
