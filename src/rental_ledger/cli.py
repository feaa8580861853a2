"""Command-line entry points for the rental ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Mutating commands run through
:func:`rental_ledger.core_logic.execute`, so a rejected request is reported as
a structured failure rather than a traceback.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, get_logger
from .constants import TransactionStatus
from .errors import RentalError
from .runtime import RuntimeContext, ensure_schema_version, load_runtime_context


log = get_logger(__name__)

CONFLICT_RETRIES = 2

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BUSINESS_FAILURE = 2
EXIT_MISSING_FILE = 3


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="rental-cli",
        description="Command-line tools for the rental ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [*write_command_specs(), *read_command_specs()]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_datetime_arg(raw: str) -> datetime:
    """argparse type for ISO-8601 timestamps; naive values are taken as UTC."""
    try:
        return data_manager.ensure_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO-8601 timestamp: {raw}") from exc


def parse_rent_item(raw: str) -> core_logic.LineRequest:
    """Parse ``PRODUCT:QTY`` or ``PRODUCT:QTY:PRICE`` into a line request."""
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT:QTY[:PRICE], got {raw!r}")
    try:
        quantity = int(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be an integer in {raw!r}") from exc

    price: core_logic.RequestedPrice = core_logic.CatalogPrice()
    if len(parts) == 3:
        try:
            price = core_logic.PriceOverride(Decimal(parts[2]))
        except InvalidOperation as exc:
            raise argparse.ArgumentTypeError(f"Invalid price in {raw!r}") from exc
    return core_logic.LineRequest(product_id=parts[0], quantity=quantity, price=price)


def parse_return_item(raw: str) -> core_logic.ReturnRequest:
    """Parse ``LINE:QTY`` into a return request."""
    line_id, separator, quantity = raw.rpartition(":")
    if not separator or not line_id:
        raise argparse.ArgumentTypeError(f"Expected LINE:QTY, got {raw!r}")
    try:
        return core_logic.ReturnRequest(line_id=line_id, quantity=int(quantity))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be an integer in {raw!r}") from exc


# ---------------------------------------------------------------------------
# Command registration
# ---------------------------------------------------------------------------


def _simple_spec(
    name: str,
    help_text: str,
    configure: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def write_command_specs() -> Sequence[CommandSpec]:
    """Declare mutating CLI commands."""

    def rent_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--operator-id", default=None, help="Defaults to [Defaults] DefaultOperator.")
        parser.add_argument("--due", type=parse_datetime_arg, required=True, help="Due date (ISO-8601).")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_rent_item,
            required=True,
            help="PRODUCT:QTY or PRODUCT:QTY:PRICE; repeat for several lines.",
        )
        parser.add_argument("--notes", default=None)

    def return_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--operator-id", default=None, help="Defaults to [Defaults] DefaultOperator.")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_return_item,
            required=True,
            help="LINE:QTY; repeat for several lines.",
        )
        parser.add_argument("--notes", default=None)

    def transaction_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--transaction-id", required=True)

    def cancel_args(parser: argparse.ArgumentParser) -> None:
        transaction_args(parser)
        parser.add_argument("--operator-id", default=None, help="Defaults to [Defaults] DefaultOperator.")

    def sweep_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--now", type=parse_datetime_arg, default=None, help="Reference time (ISO-8601).")

    return [
        _simple_spec("rent", "Open a rental transaction and reserve stock.", rent_args, run_rent),
        _simple_spec("return", "Return goods against an open transaction.", return_args, run_return),
        _simple_spec("complete", "Complete a transaction, billing unreturned goods.", transaction_args, run_complete),
        _simple_spec("cancel", "Cancel a transaction and restore its stock.", cancel_args, run_cancel),
        _simple_spec("sweep-overdue", "Flag active transactions past their due date.", sweep_args, run_sweep),
    ]


def read_command_specs() -> Sequence[CommandSpec]:
    """Declare read-only CLI commands."""

    def show_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--transaction-id", required=True)

    def list_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--status", choices=[member.value for member in TransactionStatus], default=None)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--start", type=parse_datetime_arg, default=None)
        parser.add_argument("--end", type=parse_datetime_arg, default=None)
        parser.add_argument("--overdue-only", action="store_true")

    def stock_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--include-inactive", action="store_true")

    return [
        _simple_spec("show", "Display one transaction with its lines.", show_args, run_show),
        _simple_spec("list", "List transactions, newest first.", list_args, run_list),
        _simple_spec("stock", "Display stock levels and low-stock flags.", stock_args, run_stock_report),
    ]


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def _operator(context: RuntimeContext, args: argparse.Namespace) -> str:
    return getattr(args, "operator_id", None) or context.settings.default_operator_id


def translate_rent(context: RuntimeContext, args: argparse.Namespace) -> core_logic.CreateTransactionCommand:
    """Translate CLI args into a transaction creation command."""
    return core_logic.CreateTransactionCommand(
        customer_id=args.customer_id,
        operator_id=_operator(context, args),
        due_at=args.due,
        lines=tuple(args.items),
        notes=args.notes,
    )


def translate_return(context: RuntimeContext, args: argparse.Namespace) -> core_logic.ReturnCommand:
    """Translate CLI args into a return command."""
    return core_logic.ReturnCommand(
        transaction_id=args.transaction_id,
        operator_id=_operator(context, args),
        returns=tuple(args.items),
        notes=args.notes,
    )


def translate_filter(args: argparse.Namespace) -> core_logic.TransactionFilter:
    """Translate CLI args into a transaction filter."""
    return core_logic.TransactionFilter(
        status=TransactionStatus(args.status) if args.status else None,
        customer_id=args.customer_id,
        start=args.start,
        end=args.end,
        overdue_only=args.overdue_only,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def report_failure(failure: core_logic.Failure) -> int:
    """Log and print a rejected operation; return the business failure code."""
    details = ", ".join(f"{key}={value}" for key, value in failure.details.items())
    log.error("%s: %s (%s)", failure.kind.value, failure.message, details)
    print(f"[{failure.kind.value}] {failure.message}")
    return EXIT_BUSINESS_FAILURE


def format_transaction(transaction: core_logic.RentalTransaction) -> str:
    return (
        f"{transaction.transaction_id}  {transaction.status.value:<9}  customer={transaction.customer_id}  "
        f"due={transaction.due_at.isoformat()}  owed={transaction.amount_owed}"
    )


def print_transaction(transaction: core_logic.RentalTransaction) -> None:
    print(format_transaction(transaction))
    for line in transaction.lines:
        values = data_manager.field_values(line)
        print(
            "  {line_id}  {product_id}  withdrawn={quantity_withdrawn}  "
            "returned={quantity_returned}  price={unit_price_at_withdrawal}".format(**values)
        )
    if transaction.notes:
        print(f"  notes: {transaction.notes}")


def _run_transaction_operation(operation: Callable[..., core_logic.RentalTransaction], *args, **kwargs) -> int:
    result = core_logic.execute(operation, *args, conflict_retries=CONFLICT_RETRIES, **kwargs)
    if not result.ok:
        return report_failure(result.failure)
    print_transaction(result.value)
    return EXIT_OK


def run_rent(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the rental workflow via the business layer."""
    return _run_transaction_operation(core_logic.create_transaction, context, translate_rent(context, args))


def run_return(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return workflow via the business layer."""
    return _run_transaction_operation(core_logic.process_return, context, translate_return(context, args))


def run_complete(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute explicit completion via the business layer."""
    return _run_transaction_operation(core_logic.complete_transaction, context, args.transaction_id)


def run_cancel(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute cancellation via the business layer."""
    return _run_transaction_operation(
        core_logic.cancel_transaction,
        context,
        args.transaction_id,
        operator_id=_operator(context, args),
    )


def run_sweep(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the overdue sweep."""
    result = core_logic.execute(core_logic.sweep_overdue, context, args.now, conflict_retries=CONFLICT_RETRIES)
    if not result.ok:
        return report_failure(result.failure)
    print(f"Marked {len(result.value)} transaction(s) overdue.")
    for transaction_id in result.value:
        print(f"  {transaction_id}")
    return EXIT_OK


def run_show(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Display a single transaction."""
    result = core_logic.execute(core_logic.get_transaction, context, args.transaction_id)
    if not result.ok:
        return report_failure(result.failure)
    print_transaction(result.value)
    return EXIT_OK


def run_list(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Display transactions matching the requested filters."""
    transactions = core_logic.list_transactions(context, translate_filter(args))
    if not transactions:
        print("No transactions found.")
    for transaction in transactions:
        print(format_transaction(transaction))
    return EXIT_OK


def run_stock_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Display stock on hand, flagging products at or below their minimum."""
    boundary = context.settings.low_stock_boundary
    products = core_logic.list_products(context, include_inactive=args.include_inactive)
    print(f"--- Stock for {context.settings.store_name} ---")
    for product in products:
        flag = "  LOW" if core_logic.is_low_stock(product, boundary) else ""
        inactive = "  (inactive)" if not product.is_active else ""
        print(
            f"{product.product_id:<12} {product.product_name:<24} "
            f"on hand={product.stock_on_hand:<5} min={product.minimum_stock}{flag}{inactive}"
        )
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def dispatch_command(
    context: RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, RentalError):
        log.error("Operation rejected: %s", error.as_dict())
        return EXIT_BUSINESS_FAILURE
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    log.error("%s", error)
    return EXIT_ERROR


def main(argv: Sequence[str] | None = None, *, context: Optional[RuntimeContext] = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    ``context`` lets embedding code (and tests) reuse an already loaded
    runtime context instead of reading ``config.ini`` again.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        if context is None:
            context = load_runtime_context(args.config)
        ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # centralised error handler
        return handle_cli_error(error)
