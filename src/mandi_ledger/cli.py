"""Command-line entry points for the mandi ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the requests consumed by the business layer and
printing the results. Keeping the CLI thin means the same parser
configuration can be reused by tests, scripts, or any other front-end.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, receipts, reports
from .constants import CASH_SALE, ItemUnit, PricingMode, SaleStatus, TrayStatus

SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    The workbook is saved after a successful command only when ``mutates``
    is set.
    """

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="mandi-cli",
        description="Command-line tools for the mandi ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "--owner",
        default=None,
        help="Acting party for this invocation (defaults to [Defaults] ActingParty).",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and payments."""
    specs = {
        "add-customer": register_add_customer_command(subparsers),
        "edit-customer": register_edit_customer_command(subparsers),
        "hide-customer": register_visibility_command(subparsers, "hide-customer", visible=False),
        "show-customer": register_visibility_command(subparsers, "show-customer", visible=True),
        "delete-customer": register_delete_customer_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "add-category": register_add_category_command(subparsers),
        "sale": register_sale_command(subparsers),
        "tray": register_tray_command(subparsers),
        "pay": register_pay_command(subparsers),
        "pay-tray": register_pay_tray_command(subparsers),
        "cancel": register_cancel_command(subparsers),
        "tray-status": register_tray_status_command(subparsers),
        "edit-tray": register_edit_tray_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "customers": register_customers_command(subparsers),
        "items": register_items_command(subparsers),
        "transactions": register_transactions_command(subparsers),
        "trays": register_trays_command(subparsers),
        "receipt": register_receipt_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "daily": register_daily_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ----- Write command registration -----


def register_add_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer with a zero balance."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--hidden", action="store_true", help="Hide the customer from default listings.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_edit_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``edit-customer``."""
    name = "edit-customer"
    help_text = "Change a customer's name, phone or address."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--phone", default=None, help="Pass an empty string to clear.")
        parser.add_argument("--address", default=None, help="Pass an empty string to clear.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_customer)


def register_visibility_command(subparsers: SubParsers, name: str, *, visible: bool) -> CommandSpec:
    """Register ``hide-customer`` or ``show-customer``."""
    help_text = "Show a hidden customer again." if visible else "Hide a customer from default listings."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name, visible=visible)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_visibility)


def register_delete_customer_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``delete-customer``."""
    name = "delete-customer"
    help_text = "Delete a customer together with all of its sales and tray transactions."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_customer)


def register_add_item_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a new item with its pricing."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price-per-kg", required=True)
        parser.add_argument("--price-per-unit", default=None)
        parser.add_argument("--unit", choices=[member.value for member in ItemUnit], default=ItemUnit.KG.value)
        parser.add_argument("--stock", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_add_category_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``add-category``."""
    name = "add-category"
    help_text = "Add a pricing category to an item."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price-per-kg", required=True)
        parser.add_argument("--price-per-unit", default=None)
        parser.add_argument("--unit", choices=[member.value for member in ItemUnit], default=None)
        parser.add_argument("--stock", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_category)


def register_sale_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale transaction."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=CASH_SALE, help="Omit for a walk-in cash sale.")
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--category-id", default=None)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--rate", default=None, help="Defaults to the listed price.")
        parser.add_argument("--paid", default="0")
        parser.add_argument(
            "--pricing-mode",
            choices=[member.value for member in PricingMode],
            default=PricingMode.PER_KG.value,
        )
        parser.add_argument("--trays", type=int, default=0, help="Trays issued with the sale.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_tray_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``tray``."""
    name = "tray"
    help_text = "Record a tray transaction."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--tray-number", required=True)
        parser.add_argument("--weight", required=True)
        parser.add_argument("--rate", required=True)
        parser.add_argument("--paid", default="0")
        parser.add_argument("--trays", type=int, default=1)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_tray)


def _add_payment_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--amount", help="Add this payment to what was already paid.")
    group.add_argument("--set-paid", help="Replace the paid amount with this value.")


def register_pay_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record or correct a payment on a sale."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        _add_payment_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_pay_tray_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``pay-tray``."""
    name = "pay-tray"
    help_text = "Record or correct a payment on a tray transaction."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tray-transaction-id", required=True)
        _add_payment_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_tray)


def register_cancel_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``cancel``."""
    name = "cancel"
    help_text = "Cancel a pending sale."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel)


def register_tray_status_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``tray-status``."""
    name = "tray-status"
    help_text = "Mark trays as available (returned), in use or in maintenance."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tray-transaction-id", required=True)
        parser.add_argument("--status", choices=[member.value for member in TrayStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_tray_status)


def register_edit_tray_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``edit-tray``."""
    name = "edit-tray"
    help_text = "Change a tray transaction's tray number, tray count or notes."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--tray-transaction-id", required=True)
        parser.add_argument("--tray-number", default=None)
        parser.add_argument("--trays", type=int, default=None)
        parser.add_argument("--notes", default=None, help="Pass an empty string to clear.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_tray)


def register_reconcile_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Compare stored customer balances with their transactions."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--repair", action="store_true", help="Rewrite mismatched balances.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile)


# ----- Read command registration -----


def register_customers_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    name = "customers"
    help_text = "List customers and their balances."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="include_hidden", action="store_true", help="Include hidden customers.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customers, mutates=False)


def register_items_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``items``."""
    name = "items"
    help_text = "List items with their categories."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_items, mutates=False)


def register_transactions_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``transactions``."""
    name = "transactions"
    help_text = "List sale transactions, newest first."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--status", choices=[member.value for member in SaleStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_transactions, mutates=False)


def register_trays_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``trays``."""
    name = "trays"
    help_text = "List tray transactions, newest first."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--status", choices=[member.value for member in TrayStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_trays, mutates=False)


def register_receipt_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``receipt``."""
    name = "receipt"
    help_text = "Print or send the receipt for a sale."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        output = parser.add_mutually_exclusive_group()
        output.add_argument("--html", action="store_true", help="Print the receipt as HTML.")
        output.add_argument("--send", action="store_true", help="Open the receipt in the chat client.")
        parser.add_argument("--phone", default=None, help="Send to this number instead of the phone on file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receipt, mutates=False)


def register_dashboard_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display revenue, collections and outstanding balances."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard, mutates=False)


def register_daily_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``daily``."""
    name = "daily"
    help_text = "Display per-day sales for recent days."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--days", type=int, default=7)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_daily, mutates=False)


# ----- Plumbing -----


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    owner_id: Optional[str] = None,
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check the schema."""
    context = core_logic.load_runtime_context(config_path, owner_id=owner_id)
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


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of ``CommandSpec`` entries keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_decimal(raw: Optional[str], label: str) -> Decimal:
    """Convert a command-line number into ``Decimal``.

    Raises:
        ValueError: If ``raw`` is not a decimal number.
    """
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValueError(f"{label} must be a number, got {raw!r}") from exc


def _optional_decimal(raw: Optional[str], label: str) -> Optional[Decimal]:
    return parse_decimal(raw, label) if raw is not None else None


def _money(context: core_logic.RuntimeContext, amount: Decimal) -> str:
    return receipts.format_money(amount, context.settings.currency_symbol)


# ----- Translation -----


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-item request."""
    return {
        "name": args.name,
        "price_per_kg": parse_decimal(args.price_per_kg, "Price per kg"),
        "price_per_unit": _optional_decimal(args.price_per_unit, "Price per unit"),
        "unit": args.unit,
        "available_stock": parse_decimal(args.stock, "Stock"),
    }


def translate_add_category(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-category request."""
    return {
        "item_id": args.item_id,
        "name": args.name,
        "price_per_kg": parse_decimal(args.price_per_kg, "Price per kg"),
        "price_per_unit": _optional_decimal(args.price_per_unit, "Price per unit"),
        "unit": args.unit,
        "available_stock": parse_decimal(args.stock, "Stock"),
    }


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        customer_id=args.customer_id,
        item_id=args.item_id,
        quantity=parse_decimal(args.quantity, "Quantity"),
        rate=_optional_decimal(args.rate, "Rate"),
        paid_amount=parse_decimal(args.paid, "Paid amount"),
        pricing_mode=PricingMode(args.pricing_mode),
        category_id=args.category_id,
        number_of_trays=args.trays,
        notes=args.notes,
    )


def translate_tray(args: argparse.Namespace) -> core_logic.TrayCommand:
    """Translate CLI args into a tray command object."""
    return core_logic.TrayCommand(
        customer_id=args.customer_id,
        tray_number=args.tray_number,
        weight=parse_decimal(args.weight, "Weight"),
        rate=parse_decimal(args.rate, "Rate"),
        paid_amount=parse_decimal(args.paid, "Paid amount"),
        number_of_trays=args.trays,
        notes=args.notes,
    )


# ----- Execution -----


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.create_customer(
        context,
        args.name,
        phone=args.phone,
        address=args.address,
        visible=not args.hidden,
    )
    print(f"Created customer {customer.customer_id} ({customer.name})")
    return 0


def run_edit_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-customer workflow in the BLL."""
    customer = core_logic.update_customer(
        context,
        args.customer_id,
        name=args.name,
        phone=args.phone,
        address=args.address,
    )
    print(f"Updated customer {customer.customer_id} ({customer.name})")
    return 0


def run_set_visibility(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute hide-customer/show-customer in the BLL."""
    customer = core_logic.set_customer_visibility(context, args.customer_id, args.visible)
    print(f"Customer {customer.customer_id} is now {'visible' if customer.visible else 'hidden'}")
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cascading customer deletion in the BLL."""
    result = core_logic.delete_customer(context, args.customer_id)
    print(
        f"Deleted customer {result.customer_id} with {len(result.sale_transaction_ids)} sale(s) "
        f"and {len(result.tray_transaction_ids)} tray transaction(s)"
    )
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-item workflow in the BLL."""
    item = core_logic.add_item(context, **translate_add_item(args))
    print(f"Created item {item.item_id} ({item.name})")
    return 0


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-category workflow in the BLL."""
    category = core_logic.add_category(context, **translate_add_category(args))
    print(f"Created category {category.category_id} ({category.name})")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = core_logic.record_sale(context, translate_sale(args))
    print(
        f"Recorded sale {sale.transaction_id}: total {_money(context, sale.total_amount)}, "
        f"paid {_money(context, sale.paid_amount)}, {sale.status}"
    )
    return 0


def run_tray(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the tray workflow via the BLL."""
    tray = core_logic.record_tray_transaction(context, translate_tray(args))
    print(
        f"Recorded tray transaction {tray.tray_transaction_id} ({tray.tray_number}): "
        f"total {_money(context, tray.total_amount)}, paid {_money(context, tray.paid_amount)}"
    )
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a sale payment top-up or correction via the BLL."""
    if args.amount is not None:
        sale = core_logic.record_sale_payment(context, args.transaction_id, parse_decimal(args.amount, "Amount"))
    else:
        sale = core_logic.update_sale_payment(context, args.transaction_id, parse_decimal(args.set_paid, "Paid amount"))
    print(f"Sale {sale.transaction_id}: paid {_money(context, sale.paid_amount)} of {_money(context, sale.total_amount)}, {sale.status}")
    return 0


def run_pay_tray(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a tray payment top-up or correction via the BLL."""
    if args.amount is not None:
        tray = core_logic.record_tray_payment(
            context, args.tray_transaction_id, parse_decimal(args.amount, "Amount")
        )
    else:
        tray = core_logic.update_tray_payment(
            context, args.tray_transaction_id, parse_decimal(args.set_paid, "Paid amount")
        )
    print(
        f"Tray transaction {tray.tray_transaction_id}: paid {_money(context, tray.paid_amount)} "
        f"of {_money(context, tray.total_amount)}"
    )
    return 0


def run_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancel workflow via the BLL."""
    sale = core_logic.cancel_sale(context, args.transaction_id)
    print(f"Cancelled sale {sale.transaction_id}")
    return 0


def run_tray_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a tray status change via the BLL."""
    tray = core_logic.set_tray_status(context, args.tray_transaction_id, args.status)
    print(f"Tray transaction {tray.tray_transaction_id} is now {tray.status}")
    return 0


def run_edit_tray(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-tray workflow in the BLL."""
    tray = core_logic.update_tray_details(
        context,
        args.tray_transaction_id,
        tray_number=args.tray_number,
        number_of_trays=args.trays,
        notes=args.notes,
    )
    print(f"Updated tray transaction {tray.tray_transaction_id} ({tray.tray_number} x{tray.number_of_trays})")
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Report (and optionally repair) balance discrepancies."""
    discrepancies = core_logic.reconcile_balances(context, repair=args.repair)
    if not discrepancies:
        print("All customer balances match their transactions.")
        return 0
    for entry in discrepancies:
        print(
            f"{entry.customer_id}  {entry.customer_name}: stored {_money(context, entry.stored)}, "
            f"expected {_money(context, entry.expected)}"
        )
    print(f"{len(discrepancies)} discrepancy(ies){' repaired' if args.repair else ''}.")
    return 0


def run_customers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the customer listing."""
    for customer in core_logic.list_customers(context, include_hidden=args.include_hidden):
        hidden = "" if customer.visible else " [hidden]"
        phone = customer.phone or "-"
        print(f"{customer.customer_id}  {customer.name}{hidden}  {phone}  {_money(context, customer.balance)}")
    return 0


def run_items(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print items with their categories."""
    for item in core_logic.list_items(context):
        per_unit = f", {_money(context, item.price_per_unit)}/{item.unit}" if item.price_per_unit is not None else ""
        print(f"{item.item_id}  {item.name}  {_money(context, item.price_per_kg)}/kg{per_unit}  stock {item.available_stock}")
        for category in core_logic.list_categories(context, item.item_id):
            print(f"    {category.category_id}  {category.name}  {_money(context, category.price_per_kg)}/kg")
    return 0


def run_transactions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print sale transactions."""
    for sale in core_logic.list_sale_transactions(context, customer_id=args.customer_id, status=args.status):
        print(
            f"{sale.transaction_id}  {sale.created_at}  {sale.customer_id}  "
            f"{_money(context, sale.total_amount)}  paid {_money(context, sale.paid_amount)}  {sale.status}"
        )
    return 0


def run_trays(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print tray transactions."""
    for tray in core_logic.list_tray_transactions(context, customer_id=args.customer_id, status=args.status):
        print(
            f"{tray.tray_transaction_id}  {tray.tray_number}  x{tray.number_of_trays}  {tray.status}  "
            f"{_money(context, tray.total_amount)}  paid {_money(context, tray.paid_amount)}"
        )
    return 0


def run_receipt(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the receipt, or hand it to the chat client with ``--send``."""
    if args.send:
        uri = receipts.dispatch_receipt(context, args.transaction_id, phone=args.phone)
        print(f"Opened {uri}")
        return 0
    data = receipts.build_receipt_data(context, args.transaction_id)
    formatter = receipts.format_receipt_html if args.html else receipts.format_receipt_text
    print(
        formatter(
            data,
            business_name=context.settings.business_name,
            currency=context.settings.currency_symbol,
            tz=context.settings.timezone,
        )
    )
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard summary."""
    summary = reports.dashboard_summary(context)
    print(f"Revenue:     {_money(context, summary.total_revenue)}")
    print(f"Collected:   {_money(context, summary.total_collected)}")
    print(f"Pending:     {_money(context, summary.total_pending)}")
    print(f"Customers:   {summary.customer_count} ({summary.customers_with_balance} owing "
          f"{_money(context, summary.outstanding_balance)})")
    print("Status:      " + ", ".join(f"{name} {count}" for name, count in summary.status_counts.items()))
    for entry in summary.low_stock:
        print(f"Low stock:   {entry.name} ({entry.available_stock} {entry.unit})")
    return 0


def run_daily(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print per-day sales."""
    for row in reports.daily_sales(context, days=args.days):
        print(
            f"{row.day.isoformat()}  {row.transactions:>3} sale(s)  {_money(context, row.revenue)}  "
            f"collected {_money(context, row.collected)}  pending {_money(context, row.pending)}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.LedgerDiscrepancyError):
        log.critical("%s", error)
        return 4
    if isinstance(error, (core_logic.BusinessRuleViolation, ValueError)):
        log.error("%s", error)
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
        context = load_runtime_context(getattr(args, "config", None), owner_id=getattr(args, "owner", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except core_logic.LinkedTrayError as error:
        # The sale itself committed; keep it.
        try:
            persist_workbook(context)
        except Exception as persist_error:
            return handle_cli_error(persist_error)
        return handle_cli_error(error)
    except Exception as error:
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
