"""Command-line entry points for Stock Tracker.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin means the same parser can be
reused by tests, scripts, or any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, export, log, queries
from .balance import BalanceSummary, display_balance
from .constants import EntryType, Location


LOCATION_CHOICES = [member.value for member in Location]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    persist: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-cli",
        description="Command-line tools for the Stock Tracker workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and stock entries."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "add-stock": register_add_stock_command(subparsers),
        "stock-out": register_stock_out_command(subparsers),
        "stock-batch": register_stock_batch_command(subparsers),
        "update-entry": register_update_entry_command(subparsers),
        "delete-entry": register_delete_entry_command(subparsers),
        "clear-history": register_clear_history_command(subparsers),
        "sale": register_sale_command(subparsers),
        "sales-batch": register_sales_batch_command(subparsers),
        "update-sale": register_update_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
        "delete-sales-for-date": register_delete_sales_for_date_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": register_products_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "sales": register_sales_command(subparsers),
        "sale-dates": register_sale_dates_command(subparsers),
        "sales-summary": register_sales_summary_command(subparsers),
        "audit": register_audit_command(subparsers),
        "export-sales": register_export_sales_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def decimal_value(raw: str) -> Decimal:
    """Parse a numeric argument into ``Decimal``."""
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Expected a number, got '{raw}'") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"Expected a finite number, got '{raw}'")
    return value


def parse_stock_item(raw: str) -> core_logic.StockBatchItem:
    """Parse ``PRODUCT_ID:QUANTITY`` into a stock batch item."""
    parts = raw.split(":")
    if len(parts) != 2 or not all(part.strip() for part in parts):
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QUANTITY, got '{raw}'")
    return core_logic.StockBatchItem(product_id=parts[0].strip(), quantity=decimal_value(parts[1]))


def parse_sale_item(raw: str) -> core_logic.SalesBatchItem:
    """Parse ``PRODUCT_ID:QUANTITY:PRICE[:RECEIVER]`` into a sales batch item."""
    parts = raw.split(":", 3)
    if len(parts) < 3 or not all(part.strip() for part in parts[:3]):
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QUANTITY:PRICE[:RECEIVER], got '{raw}'")
    receiver = parts[3].strip() if len(parts) == 4 else None
    return core_logic.SalesBatchItem(
        product_id=parts[0].strip(),
        quantity=decimal_value(parts[1]),
        price=decimal_value(parts[2]),
        receiver=receiver or None,
    )


def _add_paging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--page", type=int, default=1)
    parser.add_argument("--limit", type=int, default=None, help="Page size (defaults to PageSize from config.ini).")


# ---------------------------------------------------------------------------
# Write commands
# ---------------------------------------------------------------------------


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--location", choices=LOCATION_CHOICES, required=True)
        parser.add_argument("--initial-balance", type=decimal_value, default="0")
        parser.add_argument("--price", type=decimal_value, default="0")
        parser.add_argument("--date-added", default=None, help="YYYY-MM-DD (defaults to today).")
        parser.add_argument(
            "--opening-entry",
            action="store_true",
            help="Carry the initial balance as an 'Initial balance' ledger entry.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit product fields; ledger entries are untouched."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--location", choices=LOCATION_CHOICES, default=None)
        parser.add_argument("--initial-balance", type=decimal_value, default=None)
        parser.add_argument("--price", type=decimal_value, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Delete a product with its ledger entries and sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def _register_entry_command(name: str, help_text: str, execute: Callable[..., int]) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=decimal_value, required=True)
        parser.add_argument("--date", required=True, help="YYYY-MM-DD")
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-stock``."""
    return _register_entry_command("add-stock", "Record incoming stock.", run_add_stock)


def register_stock_out_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-out``."""
    return _register_entry_command("stock-out", "Remove stock without recording a sale.", run_stock_out)


def register_stock_batch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-batch``."""
    name = "stock-batch"
    help_text = "Record incoming stock for several products of one location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True, help="YYYY-MM-DD")
        parser.add_argument("--location", choices=LOCATION_CHOICES, required=True)
        parser.add_argument("--description", default=None)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_stock_item,
            required=True,
            help="PRODUCT_ID:QUANTITY (repeatable).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_batch)


def register_update_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-entry``."""
    name = "update-entry"
    help_text = "Edit a ledger entry that is not part of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--quantity", type=decimal_value, default=None)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD")
        parser.add_argument("--description", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_entry)


def register_delete_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-entry``."""
    name = "delete-entry"
    help_text = "Delete a ledger entry that is not part of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--product-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_entry)


def register_clear_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clear-history``."""
    name = "clear-history"
    help_text = "Delete every ledger entry of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear_history)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale and its outgoing ledger entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=decimal_value, required=True)
        parser.add_argument("--price", type=decimal_value, required=True)
        parser.add_argument("--date", required=True, help="YYYY-MM-DD")
        parser.add_argument("--location", choices=LOCATION_CHOICES, default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument("--receiver", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_sales_batch_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales-batch``."""
    name = "sales-batch"
    help_text = "Record several sales of one location and date; all or nothing."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True, help="YYYY-MM-DD")
        parser.add_argument("--location", choices=LOCATION_CHOICES, required=True)
        parser.add_argument("--description", default=None)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_sale_item,
            required=True,
            help="PRODUCT_ID:QUANTITY:PRICE[:RECEIVER] (repeatable).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_batch)


def register_update_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""
    name = "update-sale"
    help_text = "Edit a sale together with its ledger entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--quantity", type=decimal_value, default=None)
        parser.add_argument("--price", type=decimal_value, default=None)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD")
        parser.add_argument("--description", default=None)
        parser.add_argument("--receiver", default=None)
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--location", choices=LOCATION_CHOICES, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_sale)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Delete a sale and restore its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale)


def register_delete_sales_for_date_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sales-for-date``."""
    name = "delete-sales-for-date"
    help_text = "Delete every sale of a location on one date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", required=True, help="YYYY-MM-DD")
        parser.add_argument("--location", choices=LOCATION_CHOICES, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sales_for_date)


# ---------------------------------------------------------------------------
# Read commands
# ---------------------------------------------------------------------------


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List products with their balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location", choices=LOCATION_CHOICES, default=None)
        parser.add_argument("--search", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report, persist=False)


def register_transactions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "List ledger entries of one product, or by location, date and type."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--search", default=None)
        parser.add_argument("--location", choices=LOCATION_CHOICES, default=None)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD")
        parser.add_argument("--type", dest="entry_type", choices=[member.value for member in EntryType], default=None)
        _add_paging_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions_report, persist=False)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List sales, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD")
        parser.add_argument("--start-date", default=None)
        parser.add_argument("--end-date", default=None)
        parser.add_argument("--location", choices=LOCATION_CHOICES, default=None)
        parser.add_argument("--search", default=None)
        _add_paging_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report, persist=False)


def register_sale_dates_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale-dates``."""
    name = "sale-dates"
    help_text = "List dates with sales at a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location", choices=LOCATION_CHOICES, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale_dates_report, persist=False)


def register_sales_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales-summary``."""
    name = "sales-summary"
    help_text = "Summarise sales per date and location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start-date", default=None)
        parser.add_argument("--end-date", default=None)
        parser.add_argument("--location", choices=LOCATION_CHOICES, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_summary_report, persist=False)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Check sales, ledger entries and balances for inconsistencies."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_report, persist=False)


def register_export_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export-sales``."""
    name = "export-sales"
    help_text = "Export the sales of a location and date range to Excel."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location", choices=LOCATION_CHOICES, required=True)
        parser.add_argument("--start-date", required=True)
        parser.add_argument("--end-date", required=True)
        parser.add_argument("--output", type=Path, default=Path.cwd(), help="Target file or directory.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_sales, persist=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else None
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a create-product request."""
    return {
        "name": args.name,
        "location": args.location,
        "initial_balance": args.initial_balance,
        "price": args.price,
        "date_added": args.date_added,
        "record_opening_entry": getattr(args, "opening_entry", False),
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into product field edits."""
    return {
        "name": args.name,
        "location": args.location,
        "initial_balance": args.initial_balance,
        "price": args.price,
    }


def translate_add_stock(args: argparse.Namespace) -> core_logic.StockEntryCommand:
    """Translate CLI args into a stock entry command."""
    return core_logic.StockEntryCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        date=args.date,
        description=args.description,
    )


def translate_stock_out(args: argparse.Namespace) -> core_logic.OutEntryCommand:
    """Translate CLI args into an outgoing entry command."""
    return core_logic.OutEntryCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        date=args.date,
        description=args.description,
    )


def translate_stock_batch(args: argparse.Namespace) -> core_logic.StockBatchCommand:
    """Translate CLI args into a stock batch command."""
    return core_logic.StockBatchCommand(
        date=args.date,
        location=args.location,
        items=list(args.items),
        description=args.description,
    )


def translate_update_entry(args: argparse.Namespace) -> core_logic.StockEntryUpdate:
    """Translate CLI args into a ledger entry update."""
    return core_logic.StockEntryUpdate(
        transaction_id=args.transaction_id,
        quantity=args.quantity,
        date=args.date,
        description=args.description,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        product_id=args.product_id,
        quantity=args.quantity,
        price=args.price,
        date=args.date,
        location=args.location,
        description=args.description,
        receiver=args.receiver,
    )


def translate_sales_batch(args: argparse.Namespace) -> core_logic.SalesBatchCommand:
    """Translate CLI args into a sales batch command."""
    return core_logic.SalesBatchCommand(
        date=args.date,
        location=args.location,
        items=list(args.items),
        description=args.description,
    )


def translate_update_sale(args: argparse.Namespace) -> core_logic.SaleUpdate:
    """Translate CLI args into a sale update."""
    return core_logic.SaleUpdate(
        sale_id=args.sale_id,
        quantity=args.quantity,
        price=args.price,
        date=args.date,
        description=args.description,
        receiver=args.receiver,
        product_id=args.product_id,
        location=args.location,
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _format_balance(projection: core_logic.ProductBalance) -> str:
    shown = display_balance(BalanceSummary(projection.balance, projection.total_in, projection.total_out))
    return (
        f"{projection.product.product_id}  {projection.product.name} [{projection.product.location}]  "
        f"balance={shown} in={projection.total_in} out={projection.total_out} status={projection.status.value}"
    )


def _format_entry(entry: Any) -> str:
    return (
        f"{entry.transaction_id}  {entry.date.isoformat()}  {entry.entry_type.upper():<3}  "
        f"{entry.quantity}  {entry.product_id}  {entry.description or ''}"
    ).rstrip()


def _format_sale(sale: Any) -> str:
    return (
        f"{sale.sale_id}  {sale.date.isoformat()}  {sale.location}  {sale.product_name}  "
        f"{sale.quantity} x {sale.price} = {sale.total}  {sale.receiver or ''}"
    ).rstrip()


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-product workflow in the BLL."""
    projection = core_logic.create_product(context, **translate_add_product(args))
    print(_format_balance(projection))
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    projection = core_logic.update_product(context, args.product_id, **translate_update_product(args))
    print(_format_balance(projection))
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    removed = core_logic.delete_product(context, args.product_id)
    print(f"Deleted {args.product_id} ({removed['transactions']} entries, {removed['sales']} sales)")
    return 0


def run_add_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-stock workflow via the BLL."""
    print(_format_entry(core_logic.add_stock_entry(context, translate_add_stock(args))))
    return 0


def run_stock_out(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock-out workflow via the BLL."""
    print(_format_entry(core_logic.record_out_entry(context, translate_stock_out(args))))
    return 0


def run_stock_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock batch workflow via the BLL."""
    for entry in core_logic.add_stock_batch(context, translate_stock_batch(args)):
        print(_format_entry(entry))
    return 0


def run_update_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger entry update via the BLL."""
    print(_format_entry(core_logic.update_stock_entry(context, translate_update_entry(args))))
    return 0


def run_delete_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger entry delete via the BLL."""
    entry = core_logic.delete_stock_entry(context, args.transaction_id, product_id=args.product_id)
    print(f"Deleted {entry.transaction_id}")
    return 0


def run_clear_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the clear-history workflow via the BLL."""
    print(_format_balance(core_logic.clear_product_history(context, args.product_id)))
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    recorded = core_logic.record_sale(context, translate_sale(args))
    print(_format_sale(recorded.sale))
    return 0


def run_sales_batch(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales batch workflow via the BLL."""
    for recorded in core_logic.record_sales_batch(context, translate_sales_batch(args)):
        print(_format_sale(recorded.sale))
    return 0


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale update workflow via the BLL."""
    recorded = core_logic.update_sale(context, translate_update_sale(args))
    print(_format_sale(recorded.sale))
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale delete workflow via the BLL."""
    sale = core_logic.delete_sale(context, args.sale_id)
    print(f"Deleted {sale.sale_id}")
    return 0


def run_delete_sales_for_date(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-by-date workflow; failures are printed, not raised."""
    result = core_logic.delete_sales_for_date(context, args.date, args.location)
    print(f"Deleted {result.deleted_count} sales")
    for error in result.errors:
        print(f"  failed {error.item_id}: [{error.kind}] {error.message}")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print products with balances."""
    for projection in queries.list_products_with_balance(context, location=args.location, search=args.search):
        print(_format_balance(projection))
    return 0


def run_transactions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print ledger entries."""
    if args.product_id is not None:
        page = queries.list_transactions_for_product(
            context, args.product_id, page=args.page, limit=args.limit, search=args.search)
        for entry in page.items:
            print(_format_entry(entry))
        print(f"page {page.page}/{page.pages} ({page.total} entries)")
        return 0

    for entry in queries.list_transactions(
            context, location=args.location, date=args.date, entry_type=args.entry_type):
        print(_format_entry(entry))
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one page of sales."""
    page = queries.list_sales(
        context,
        date=args.date,
        location=args.location,
        search=args.search,
        start_date=args.start_date,
        end_date=args.end_date,
        page=args.page,
        limit=args.limit,
    )
    for sale in page.items:
        print(_format_sale(sale))
    print(f"page {page.page}/{page.pages} ({page.total} sales)")
    return 0


def run_sale_dates_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print dates with sales."""
    for sale_date in queries.list_available_sale_dates(context, args.location):
        print(f"{sale_date.date.isoformat()}  {sale_date.count} sales  {sale_date.total} {context.settings.currency}")
    return 0


def run_sales_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print sales totals per date and location."""
    for row in queries.summarize_sales(
            context, start_date=args.start_date, end_date=args.end_date, location=args.location):
        print(
            f"{row.date.isoformat()}  {row.location}  {row.count} sales  "
            f"{row.total_items} items  {row.total_sales} {context.settings.currency}"
        )
    return 0


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print ledger inconsistencies; exit 1 when any are found."""
    findings = queries.audit_ledger(context)
    for finding in findings:
        print(f"[{finding.kind}] {finding.reference_id}: {finding.message}")
    if findings:
        return 1
    print("No inconsistencies found.")
    return 0


def run_export_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write the sales export workbook."""
    path = export.export_sales(
        context,
        args.output,
        location=args.location,
        start_date=args.start_date,
        end_date=args.end_date,
    )
    print(f"Exported sales to '{path}'")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("[%s] %s", error.kind, error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].persist:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
