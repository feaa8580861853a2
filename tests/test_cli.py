"""Tests for the argparse front end and its exit codes."""

from __future__ import annotations

import argparse
from decimal import Decimal

import pytest

from rental_ledger import cli, core_logic, runtime
from rental_ledger.constants import TransactionStatus
from rental_ledger.errors import ConflictError, MissingReferenceError


def _cli(bundle, *argv: str) -> int:
    return cli.main(["--config", str(bundle.config_path), *argv])


def _only_transaction(bundle) -> core_logic.RentalTransaction:
    context = runtime.load_runtime_context(bundle.config_path)
    [transaction] = core_logic.list_transactions(context)
    return transaction


# ---------------------------------------------------------------------------
# Parser wiring
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert parser.prog == "rental-cli"
    assert parser.parse_args([]).config is None


def test_configure_subcommands_registers_every_command():
    parser = cli.build_parser()
    table = cli.configure_subcommands(parser)

    assert set(table) == {"rent", "return", "complete", "cancel", "sweep-overdue", "show", "list", "stock"}
    args = parser.parse_args(["complete", "--transaction-id", "R1"])
    assert args.command == "complete"
    assert args.transaction_id == "R1"


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


def test_dispatch_command_invokes_executor(runtime_context):
    calls = []
    spec = cli.CommandSpec(
        "ping", "ping", lambda s: s.add_parser("ping"), lambda context, args: calls.append(context) or 0
    )

    result = cli.dispatch_command(runtime_context, argparse.Namespace(command="ping"), {"ping": spec})

    assert result == 0
    assert calls == [runtime_context]


def test_dispatch_command_handles_unknown_commands(runtime_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {})


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def test_parse_rent_item_accepts_catalog_and_override_prices():
    assert cli.parse_rent_item("P-TENT:2") == core_logic.LineRequest("P-TENT", 2, core_logic.CatalogPrice())
    assert cli.parse_rent_item("P-TENT:2:7.25") == core_logic.LineRequest(
        "P-TENT", 2, core_logic.PriceOverride(Decimal("7.25"))
    )


@pytest.mark.parametrize("raw", ["P-TENT", "P-TENT:two", ":2", "P-TENT:2:abc", "a:1:2:3"])
def test_parse_rent_item_rejects_malformed_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_rent_item(raw)


def test_parse_return_item_splits_on_last_colon():
    assert cli.parse_return_item("R1-L01:3") == core_logic.ReturnRequest("R1-L01", 3)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_return_item("R1-L01")


def test_parse_datetime_arg_defaults_to_utc():
    moment = cli.parse_datetime_arg("2025-03-08T09:00:00")
    assert moment.isoformat() == "2025-03-08T09:00:00+00:00"
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_datetime_arg("next tuesday")


def test_translate_rent_falls_back_to_default_operator(runtime_context):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["rent", "--customer-id", "C-1", "--due", "2025-03-08T09:00", "--item", "P-TENT:1", "--item", "P-CHAIR:2:1.00"]
    )

    command = cli.translate_rent(runtime_context, args)

    assert command.operator_id == "OP-DEFAULT"
    assert [item.product_id for item in command.lines] == ["P-TENT", "P-CHAIR"]


# ---------------------------------------------------------------------------
# End-to-end commands
# ---------------------------------------------------------------------------


def test_rent_return_and_show_round_trip(config_bundle, capsys):
    code = _cli(
        config_bundle, "rent", "--customer-id", "C-9", "--due", "2025-03-08T09:00", "--item", "P-TENT:4:2.00"
    )
    assert code == 0
    transaction = _only_transaction(config_bundle)
    assert transaction.amount_owed == Decimal("8.00")
    assert transaction.transaction_id in capsys.readouterr().out

    line_id = transaction.lines[0].line_id
    code = _cli(
        config_bundle,
        "return",
        "--transaction-id",
        transaction.transaction_id,
        "--item",
        f"{line_id}:1",
        "--notes",
        "one back",
    )
    assert code == 0
    capsys.readouterr()

    assert _cli(config_bundle, "show", "--transaction-id", transaction.transaction_id) == 0
    out = capsys.readouterr().out
    assert "owed=6.00" in out
    assert "returned=1" in out
    assert "[Return] one back" in out


def test_business_failure_exits_with_code_two(config_bundle, capsys):
    code = _cli(config_bundle, "rent", "--customer-id", "C-9", "--due", "2025-03-08", "--item", "P-DRILL:9")

    assert code == 2
    assert "[InsufficientStock]" in capsys.readouterr().out


def test_complete_and_cancel_commands(config_bundle):
    _cli(config_bundle, "rent", "--customer-id", "C-1", "--due", "2025-03-08", "--item", "P-TENT:2")
    transaction = _only_transaction(config_bundle)

    assert _cli(config_bundle, "complete", "--transaction-id", transaction.transaction_id) == 0
    assert _only_transaction(config_bundle).status is TransactionStatus.COMPLETED
    assert _cli(config_bundle, "cancel", "--transaction-id", transaction.transaction_id) == 2


def test_cancel_command_restores_stock(config_bundle, persisted_stock):
    _cli(config_bundle, "rent", "--customer-id", "C-1", "--due", "2025-03-08", "--item", "P-CHAIR:5")
    transaction = _only_transaction(config_bundle)

    assert _cli(config_bundle, "cancel", "--transaction-id", transaction.transaction_id) == 0
    assert persisted_stock(config_bundle.workbook_path, "P-CHAIR") == 20


def test_sweep_and_list_commands(config_bundle, capsys):
    _cli(config_bundle, "rent", "--customer-id", "C-1", "--due", "2025-03-08", "--item", "P-TENT:1")
    transaction = _only_transaction(config_bundle)
    capsys.readouterr()

    assert _cli(config_bundle, "sweep-overdue", "--now", "2025-03-09T00:00") == 0
    assert "Marked 1 transaction(s) overdue." in capsys.readouterr().out

    assert _cli(config_bundle, "list", "--status", "OVERDUE") == 0
    assert transaction.transaction_id in capsys.readouterr().out

    assert _cli(config_bundle, "list", "--customer-id", "C-404") == 0
    assert "No transactions found." in capsys.readouterr().out


def test_stock_command_flags_low_stock(config_factory, capsys):
    bundle = config_factory(low_stock_boundary="inclusive")
    _cli(bundle, "rent", "--customer-id", "C-1", "--due", "2025-03-08", "--item", "P-DRILL:2")
    capsys.readouterr()

    assert _cli(bundle, "stock") == 0
    out = capsys.readouterr().out
    drill = next(row for row in out.splitlines() if row.startswith("P-DRILL"))
    tent = next(row for row in out.splitlines() if row.startswith("P-TENT"))
    assert drill.endswith("LOW")
    assert not tent.endswith("LOW")
    assert "P-OLD" not in out


def test_show_unknown_transaction_exits_with_code_two(config_bundle):
    assert _cli(config_bundle, "show", "--transaction-id", "R-NOPE") == 2


def test_missing_config_exits_with_code_three(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "stock"]) == 3


def test_schema_mismatch_exits_with_code_one(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    assert _cli(bundle, "stock") == 1


def test_main_accepts_preloaded_context(runtime_context, capsys):
    assert cli.main(["stock"], context=runtime_context) == 0
    assert "--- Stock for Test Store ---" in capsys.readouterr().out


@pytest.mark.parametrize(
    "error, expected",
    [
        (MissingReferenceError("gone"), 2),
        (ConflictError("busy"), 2),
        (FileNotFoundError("config.ini"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected
