"""Command-line entry points for the produce ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the cascade and
printing the results. Keeping the CLI thin means the same parser
configuration can be reused by tests or any other front-end.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import auditor, cascade, core_logic, log, reports, set_console_level
from .constants import PartyRole, QuantityKind


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Command-line tools for the produce ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini above the working directory).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Echo every ledger change to stderr, not only warnings.",
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
    """Declare mutating CLI commands such as procurement and sales."""
    specs = {
        "add-item": register_add_item_command(subparsers),
        "add-supplier": register_add_party_command(subparsers, PartyRole.SUPPLIER),
        "add-seller": register_add_party_command(subparsers, PartyRole.SELLER),
        "procure": register_procure_command(subparsers),
        "update-procurement": register_update_procurement_command(subparsers),
        "delete-procurement": register_delete_procurement_command(subparsers),
        "sell": register_sell_command(subparsers),
        "update-sale": register_update_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
        "pay-supplier": register_pay_supplier_command(subparsers),
        "update-supplier-payment": register_update_payment_command(subparsers, PartyRole.SUPPLIER),
        "delete-supplier-payment": register_delete_payment_command(subparsers, PartyRole.SUPPLIER),
        "receive-payment": register_receive_payment_command(subparsers),
        "update-seller-payment": register_update_payment_command(subparsers, PartyRole.SELLER),
        "delete-seller-payment": register_delete_payment_command(subparsers, PartyRole.SELLER),
        "damage": register_damage_command(subparsers),
        "delete-damage": register_delete_damage_command(subparsers),
        "set-opening": register_set_opening_command(subparsers),
        "delete-opening": register_delete_opening_command(subparsers),
        "audit": register_audit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "outstanding": register_outstanding_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "summary": register_summary_command(subparsers),
        "supplier-ledger": register_supplier_ledger_command(subparsers),
        "profit": register_profit_command(subparsers),
        "dues": register_dues_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_sale_line(text: str) -> cascade.SaleLine:
    """Parse ``VARIETY:QUANTITY:RATE`` into a :class:`~produce_ledger.cascade.SaleLine`."""
    parts = text.rsplit(":", 2)
    if len(parts) != 3 or not all(part.strip() for part in parts):
        raise argparse.ArgumentTypeError(f"Expected VARIETY:QUANTITY:RATE, got {text!r}")
    variety, quantity, rate = (part.strip() for part in parts)
    return cascade.SaleLine(variety_name=variety, quantity=quantity, sale_rate=rate)


def _add_role_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--role", choices=[member.value for member in PartyRole], required=True)


# ---------------------------------------------------------------------------
# Write command registration
# ---------------------------------------------------------------------------


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""
    name = "add-item"
    help_text = "Register a new item in the Items sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--item-name", required=True)
        parser.add_argument(
            "--quantity-kind",
            choices=[member.value for member in QuantityKind],
            default=QuantityKind.CRATE.value,
        )
        parser.add_argument("--unit-name", default="crate")
        parser.add_argument("--inactive", action="store_true", help="Mark the item as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_item)


def register_add_party_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    role: PartyRole,
) -> CommandSpec:
    """Register the parser and executor for ``add-supplier`` or ``add-seller``."""
    name = f"add-{role.value}"
    help_text = f"Register a new {role.value}."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", f"--{role.value}-id", dest="party_id", required=True)
        parser.add_argument("--name", f"--{role.value}-name", dest="party_name", required=True)
        parser.add_argument("--contact", dest="contact_info", default=None)
        parser.add_argument("--inactive", action="store_true", help=f"Mark the {role.value} as inactive on creation.")
        parser.set_defaults(command=name, role=role.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_party)


def register_procure_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``procure``."""
    name = "procure"
    help_text = "Record a lot bought from a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="Session date (YYYY-MM-DD, defaults to today).")
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--variety", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--rate", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_procure)


def register_update_procurement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-procurement``."""
    name = "update-procurement"
    help_text = "Edit the quantity, rate or variety of a procurement entry."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.add_argument("--quantity", default=None)
        parser.add_argument("--rate", default=None)
        parser.add_argument("--variety", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_procurement)


def register_delete_procurement_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-procurement``."""
    name = "delete-procurement"
    help_text = "Delete a procurement entry and take its lot out of stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.add_argument("--force", action="store_true", help="Delete even if stock would go negative.")
        parser.add_argument("--dry-run", action="store_true", help="Only show what the deletion would do.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_procurement)


def register_sell_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sell``."""
    name = "sell"
    help_text = "Record a sale of one item to a seller."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="Session date (YYYY-MM-DD, defaults to today).")
        parser.add_argument("--seller-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_sale_line,
            required=True,
            metavar="VARIETY:QTY:RATE",
            help="Line item; repeat for several varieties.",
        )
        parser.add_argument("--paid", default="0")
        parser.add_argument("--discount", default="0")
        parser.add_argument("--crates-returned", default="0")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sell)


def register_update_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-sale``."""
    name = "update-sale"
    help_text = "Edit payment fields or replace the line items of a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_sale_line,
            default=None,
            metavar="VARIETY:QTY:RATE",
            help="Replacement line item; repeat for several varieties.",
        )
        parser.add_argument("--paid", default=None)
        parser.add_argument("--discount", default=None)
        parser.add_argument("--crates-returned", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_sale)


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""
    name = "delete-sale"
    help_text = "Delete a sale and return its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entry-id", required=True)
        parser.add_argument("--force", action="store_true")
        parser.add_argument("--dry-run", action="store_true", help="Only show what the deletion would do.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_sale)


def register_pay_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-supplier``."""
    name = "pay-supplier"
    help_text = "Record money or crates handed to a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--amount", default="0")
        parser.add_argument("--crates", default="0")
        parser.add_argument("--date", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay_supplier)


def register_receive_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive-payment``."""
    name = "receive-payment"
    help_text = "Record money or crates received from a seller."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--seller-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--amount", default="0")
        parser.add_argument("--crates", default="0")
        parser.add_argument("--date", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_receive_payment)


def register_update_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    role: PartyRole,
) -> CommandSpec:
    """Register the parser and executor for ``update-supplier-payment`` or ``update-seller-payment``."""
    name = f"update-{role.value}-payment"
    help_text = f"Change the amount, crates, date or notes of a {role.value} payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.add_argument("--amount", default=None)
        parser.add_argument("--crates", default=None)
        parser.add_argument("--date", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name, role=role.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_payment)


def register_delete_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    role: PartyRole,
) -> CommandSpec:
    """Register the parser and executor for ``delete-supplier-payment`` or ``delete-seller-payment``."""
    name = f"delete-{role.value}-payment"
    help_text = f"Delete a {role.value} payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--payment-id", required=True)
        parser.set_defaults(command=name, role=role.value)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_payment)


def register_damage_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``damage``."""
    name = "damage"
    help_text = "Record damaged stock against a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--variety", required=True)
        parser.add_argument("--damaged", required=True)
        parser.add_argument("--returned", default="0")
        parser.add_argument("--discount", default="0")
        parser.add_argument("--date", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_damage)


def register_delete_damage_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-damage``."""
    name = "delete-damage"
    help_text = "Delete a damage entry and restore its returned stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--damage-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_damage)


def register_set_opening_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-opening``."""
    name = "set-opening"
    help_text = "Create or replace the opening balance of a party for an item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_role_argument(parser)
        parser.add_argument("--party-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--payment-due", default="0")
        parser.add_argument("--quantity-due", default="0")
        parser.add_argument("--effective-date", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_opening)


def register_delete_opening_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-opening``."""
    name = "delete-opening"
    help_text = "Remove the opening balance of a party for an item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_role_argument(parser)
        parser.add_argument("--party-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_opening)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Recompute outstanding balances and compare them with the cache."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--repair", action="store_true", help="Rewrite wrong cache rows and running balances.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit)


# ---------------------------------------------------------------------------
# Read command registration
# ---------------------------------------------------------------------------


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display stock per variety as of a date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD, defaults to today.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_outstanding_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``outstanding``."""
    name = "outstanding"
    help_text = "Display outstanding balances of suppliers or sellers."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_role_argument(parser)
        parser.add_argument("--all", dest="include_settled", action="store_true", help="Include settled pairs.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_outstanding_report)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Display a seller's statement for one item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--seller-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display the procurement and sales sessions of a date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD, defaults to today.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_supplier_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``supplier-ledger``."""
    name = "supplier-ledger"
    help_text = "Display a supplier's statement for one item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_supplier_ledger_report)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display sales, procurement and gross profit over a date range."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start-date", required=True)
        parser.add_argument("--end-date", required=True)
        parser.add_argument("--item-id", default=None, help="Limit the figures to one item.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report)


def register_dues_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dues``."""
    name = "dues"
    help_text = "Display what each seller bought of an item on a date and still owes."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--date", default=None, help="YYYY-MM-DD, defaults to today.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dues_report)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
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
# Translation
# ---------------------------------------------------------------------------


def translate_add_item(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-item request."""
    return {
        "item_id": args.item_id,
        "item_name": args.item_name,
        "quantity_kind": QuantityKind(args.quantity_kind),
        "unit_name": args.unit_name,
        "is_active": not getattr(args, "inactive", False),
    }


def translate_procure(args: argparse.Namespace) -> cascade.ProcurementCommand:
    return cascade.ProcurementCommand(
        session_date=args.date,
        supplier_id=args.supplier_id,
        item_id=args.item_id,
        variety_name=args.variety,
        quantity=args.quantity,
        rate=args.rate,
    )


def translate_sell(args: argparse.Namespace) -> cascade.SalesCommand:
    return cascade.SalesCommand(
        session_date=args.date,
        seller_id=args.seller_id,
        item_id=args.item_id,
        line_items=tuple(args.lines),
        crates_returned=args.crates_returned,
        amount_paid=args.paid,
        discount=args.discount,
    )


def translate_update_sale(args: argparse.Namespace) -> cascade.SalesUpdate:
    return cascade.SalesUpdate(
        amount_paid=args.paid,
        discount=args.discount,
        crates_returned=args.crates_returned,
        line_items=tuple(args.lines) if args.lines else None,
    )


def translate_damage(args: argparse.Namespace) -> cascade.DamageCommand:
    return cascade.DamageCommand(
        supplier_id=args.supplier_id,
        item_id=args.item_id,
        variety_name=args.variety,
        damaged_quantity=args.damaged,
        damaged_returned_quantity=args.returned,
        supplier_discount_amount=args.discount,
        damage_date=args.date,
    )


def translate_set_opening(args: argparse.Namespace) -> cascade.OpeningBalanceCommand:
    return cascade.OpeningBalanceCommand(
        role=PartyRole(args.role),
        party_id=args.party_id,
        item_id=args.item_id,
        payment_due=args.payment_due,
        quantity_due=args.quantity_due,
        effective_from_date=args.effective_date,
    )


def translate_update_payment(
    args: argparse.Namespace,
) -> cascade.SupplierPaymentUpdate | cascade.SellerPaymentUpdate:
    if PartyRole(args.role) is PartyRole.SUPPLIER:
        return cascade.SupplierPaymentUpdate(
            amount_paid=args.amount, crates_returned=args.crates, payment_date=args.date, notes=args.notes
        )
    return cascade.SellerPaymentUpdate(
        amount_received=args.amount, crates_returned=args.crates, payment_date=args.date, notes=args.notes
    )


def _print_lines(lines: List[str]) -> None:
    for line in lines:
        print(line)


def _print_result(result: cascade.MutationResult) -> None:
    print(result.message)
    if result.outstanding is not None:
        print(
            f"Outstanding {result.outstanding.party_id}/{result.outstanding.item_id}: "
            f"payment={result.outstanding.payment_due} quantity={result.outstanding.quantity_due}"
        )


def _print_impact(impact: cascade.DeletionImpact) -> None:
    print(f"Deleting {impact.entry_id}: can_delete={impact.can_delete} warning={impact.warning_level.value}")
    for restriction in impact.restrictions:
        print(f"  ! {restriction}")
    for effect in impact.cascade_effects:
        print(f"  - {effect}")


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    item = core_logic.add_item(context, **translate_add_item(args))
    print(f"Added item {item.item_id} ({item.item_name})")
    return 0


def run_add_party(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    role = PartyRole(args.role)
    add = core_logic.add_supplier if role is PartyRole.SUPPLIER else core_logic.add_seller
    id_field = f"{role.value}_id"
    add(
        context,
        **{
            id_field: args.party_id,
            f"{role.value}_name": args.party_name,
            "contact_info": args.contact_info,
            "is_active": not args.inactive,
        },
    )
    print(f"Added {role.value} {args.party_id}")
    return 0


def run_procure(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = cascade.add_procurement_entry(context, translate_procure(args))
    print(f"Recorded procurement {entry.entry_id}: {entry.quantity} x {entry.variety_name} = {entry.total_amount}")
    return 0


def run_update_procurement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    changes = cascade.ProcurementUpdate(quantity=args.quantity, rate=args.rate, variety_name=args.variety)
    _print_result(cascade.update_procurement_entry(context, args.entry_id, changes))
    return 0


def run_delete_procurement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.dry_run:
        _print_impact(cascade.analyze_procurement_deletion(context, args.entry_id))
        return 0
    _print_result(cascade.delete_procurement_entry(context, args.entry_id, force=args.force))
    return 0


def run_sell(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    entry = cascade.add_sales_entry(context, translate_sell(args))
    print(
        f"Recorded sale {entry.entry_id}: {entry.total_quantity} for {entry.total_amount} "
        f"(running payment={entry.running_payment_outstanding} quantity={entry.running_quantity_outstanding})"
    )
    return 0


def run_update_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_result(cascade.update_sales_entry(context, args.entry_id, translate_update_sale(args)))
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.dry_run:
        _print_impact(cascade.analyze_sales_deletion(context, args.entry_id))
        return 0
    _print_result(cascade.delete_sales_entry(context, args.entry_id, force=args.force))
    return 0


def run_pay_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = cascade.SupplierPaymentCommand(
        supplier_id=args.supplier_id,
        item_id=args.item_id,
        amount_paid=args.amount,
        crates_returned=args.crates,
        payment_date=args.date,
        notes=args.notes,
    )
    payment = cascade.add_supplier_payment(context, command)
    print(f"Recorded supplier payment {payment.payment_id}")
    return 0


def run_receive_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = cascade.SellerPaymentCommand(
        seller_id=args.seller_id,
        item_id=args.item_id,
        amount_received=args.amount,
        crates_returned=args.crates,
        payment_date=args.date,
        notes=args.notes,
    )
    payment = cascade.add_seller_payment(context, command)
    print(f"Recorded seller payment {payment.payment_id}")
    return 0


def run_update_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    changes = translate_update_payment(args)
    if PartyRole(args.role) is PartyRole.SUPPLIER:
        result = cascade.update_supplier_payment(context, args.payment_id, changes)
    else:
        result = cascade.update_seller_payment(context, args.payment_id, changes)
    _print_result(result)
    return 0


def run_delete_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if PartyRole(args.role) is PartyRole.SUPPLIER:
        result = cascade.delete_supplier_payment(context, args.payment_id)
    else:
        result = cascade.delete_seller_payment(context, args.payment_id)
    _print_result(result)
    return 0


def run_damage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    damage = cascade.record_damage_entry(context, translate_damage(args))
    print(f"Recorded damage {damage.damage_id}")
    return 0


def run_delete_damage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_result(cascade.delete_damage_entry(context, args.damage_id))
    return 0


def run_set_opening(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_result(cascade.set_opening_balance(context, translate_set_opening(args)))
    return 0


def run_delete_opening(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_result(cascade.delete_opening_balance(context, PartyRole(args.role), args.party_id, args.item_id))
    return 0


def run_audit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    report = auditor.run_integrity_check(context, repair=args.repair)
    for issue in report.issues:
        print(f"  ! {issue.message}")
    for repair in report.repairs:
        print(f"  + {repair}")
    print(report.message)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_lines(reports.render_stock(reports.stock_report(context, args.date)))
    return 0


def run_outstanding_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = reports.outstanding_summary(context, PartyRole(args.role), include_settled=args.include_settled)
    _print_lines(reports.render_outstanding(summary))
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_lines(reports.render_seller_ledger(reports.seller_ledger(context, args.seller_id, args.item_id)))
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_lines(reports.render_daily_summary(reports.daily_summary(context, args.date)))
    return 0


def run_supplier_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    statement = reports.supplier_ledger(context, args.supplier_id, args.item_id)
    _print_lines(reports.render_supplier_ledger(statement))
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    analysis = reports.profit_analysis(context, args.start_date, args.end_date, item_id=args.item_id)
    _print_lines(reports.render_profit_analysis(analysis))
    return 0


def run_dues_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_lines(reports.render_daily_dues(reports.daily_dues(context, args.item_id, args.date)))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
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
    if getattr(args, "verbose", False):
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
