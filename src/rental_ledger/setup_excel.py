"""Utility for initializing the rental ledger workbook.

The module doubles as a script (``rental-setup``) and as a library used by
tests or other tooling, so the workbook bootstrap stays identical regardless
of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, get_logger
from .constants import EXPECTED_SCHEMA_VERSION, SheetName


log = get_logger(__name__)

# Column order must match the serialize_* helpers in data_manager.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ProductName",
        "UnitPrice",
        "StockOnHand",
        "MinimumStock",
        "IsActive",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "CustomerID",
        "OperatorID",
        "WithdrawnAt",
        "DueAt",
        "Status",
        "AmountOwed",
        "Notes",
        "UpdatedAt",
    ],
    SheetName.TRANSACTION_LINES.value: [
        "LineID",
        "TransactionID",
        "ProductID",
        "QuantityWithdrawn",
        "QuantityReturned",
        "UnitPriceAtWithdrawal",
    ],
    SheetName.STOCK_MOVEMENTS.value: [
        "MovementID",
        "Timestamp",
        "MovementType",
        "ProductID",
        "QuantityChange",
        "BalanceAfter",
        "TransactionID",
        "OperatorID",
        "Notes",
    ],
    SheetName.METADATA.value: [
        "Key",
        "Value",
    ],
}

CONFIG_FILE = "config.ini"


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    schema_version: str = EXPECTED_SCHEMA_VERSION,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    Every sheet gets a bold header row and the ``Metadata`` sheet is seeded
    with the schema version and a zero revision counter.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is
            ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    metadata = workbook[SheetName.METADATA.value]
    metadata.append([data_manager.SCHEMA_VERSION_KEY, schema_version])
    metadata.append([data_manager.REVISION_KEY, 0])

    data_manager.save_workbook(workbook, destination)
    log.info("Created ledger workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_master_workbook(
        settings.data_file,
        schema_version=settings.schema_version,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the rental ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Rental Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
