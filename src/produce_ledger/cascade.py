"""Cascade orchestrator: every ledger mutation and the derived state it drives.

Each public operation runs as one unit of work (see
:func:`produce_ledger.core_logic.unit_of_work`) and pushes its effect through
the derived state in dependency order:

ledger row → session totals → type registry → both inventory views →
outstanding cache → seller running balances.

Any failure restores the workbook to its state before the operation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple, Union

from . import balances, core_logic, data_manager, inventory, log
from .balances import OutstandingView
from .constants import ZERO, PartyRole, SessionStatus, SheetName, WarningLevel
from .core_logic import RuntimeContext, unit_of_work


Number = Union[Decimal, int, str]


@dataclass(frozen=True)
class ProcurementCommand:
    """User intent for buying one lot from a supplier."""

    session_date: str
    supplier_id: str
    item_id: str
    variety_name: str
    quantity: Number
    rate: Number


@dataclass(frozen=True)
class ProcurementUpdate:
    quantity: Optional[Number] = None
    rate: Optional[Number] = None
    variety_name: Optional[str] = None


@dataclass(frozen=True)
class SaleLine:
    variety_name: str
    quantity: Number
    sale_rate: Number


@dataclass(frozen=True)
class SalesCommand:
    """User intent for selling one item, possibly across varieties, to a seller."""

    session_date: str
    seller_id: str
    item_id: str
    line_items: Sequence[SaleLine]
    crates_returned: Number = ZERO
    amount_paid: Number = ZERO
    discount: Number = ZERO


@dataclass(frozen=True)
class SalesUpdate:
    amount_paid: Optional[Number] = None
    discount: Optional[Number] = None
    crates_returned: Optional[Number] = None
    line_items: Optional[Sequence[SaleLine]] = None


@dataclass(frozen=True)
class SupplierPaymentCommand:
    supplier_id: str
    item_id: str
    amount_paid: Number
    crates_returned: Number = ZERO
    payment_date: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SupplierPaymentUpdate:
    amount_paid: Optional[Number] = None
    crates_returned: Optional[Number] = None
    payment_date: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SellerPaymentCommand:
    seller_id: str
    item_id: str
    amount_received: Number
    crates_returned: Number = ZERO
    payment_date: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SellerPaymentUpdate:
    amount_received: Optional[Number] = None
    crates_returned: Optional[Number] = None
    payment_date: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DamageCommand:
    """Damaged stock reported against a supplier.

    ``damaged_returned_quantity`` leaves stock; ``supplier_discount_amount``
    is the compensation that lowers what is owed to the supplier.
    """

    supplier_id: str
    item_id: str
    variety_name: str
    damaged_quantity: Number
    damaged_returned_quantity: Number = ZERO
    supplier_discount_amount: Number = ZERO
    damage_date: Optional[str] = None


@dataclass(frozen=True)
class OpeningBalanceCommand:
    role: PartyRole
    party_id: str
    item_id: str
    payment_due: Number
    quantity_due: Number
    effective_from_date: str


@dataclass(frozen=True)
class MutationResult:
    """Outcome of an update or delete, with the pair's refreshed outstanding."""

    entity_id: str
    message: str
    outstanding: Optional[OutstandingView] = None


@dataclass(frozen=True)
class DeletionImpact:
    """What deleting an entry would do, computed without changing anything."""

    entry_id: str
    can_delete: bool
    warning_level: WarningLevel
    restrictions: Tuple[str, ...]
    cascade_effects: Tuple[str, ...]


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_procurement_entry(context: RuntimeContext, entry_id: str) -> data_manager.ProcurementEntryRow:
    return core_logic.lookup_record(context, SheetName.PROCUREMENT_ENTRIES, entry_id, "Procurement entry")


def get_sales_entry(context: RuntimeContext, entry_id: str) -> data_manager.SalesEntryRow:
    return core_logic.lookup_record(context, SheetName.SALES_ENTRIES, entry_id, "Sales entry")


def get_supplier_payment(context: RuntimeContext, payment_id: str) -> data_manager.SupplierPaymentRow:
    return core_logic.lookup_record(context, SheetName.SUPPLIER_PAYMENTS, payment_id, "Supplier payment")


def get_seller_payment(context: RuntimeContext, payment_id: str) -> data_manager.SellerPaymentRow:
    return core_logic.lookup_record(context, SheetName.SELLER_PAYMENTS, payment_id, "Seller payment")


def get_damage_entry(context: RuntimeContext, damage_id: str) -> data_manager.DamageEntryRow:
    return core_logic.lookup_record(context, SheetName.DAMAGE_ENTRIES, damage_id, "Damage entry")


def get_procurement_session(context: RuntimeContext, session_id: str) -> data_manager.ProcurementSessionRow:
    return core_logic.lookup_record(context, SheetName.PROCUREMENT_SESSIONS, session_id, "Procurement session")


def get_sales_session(context: RuntimeContext, session_id: str) -> data_manager.SalesSessionRow:
    return core_logic.lookup_record(context, SheetName.SALES_SESSIONS, session_id, "Sales session")


def list_sales_line_items(context: RuntimeContext, entry_id: str) -> List[data_manager.SalesLineItemRow]:
    index = core_logic.index_rows(context, SheetName.SALES_LINE_ITEMS, "by_entry", lambda row: row.entry_id)
    return list(index.get(entry_id, []))


def _session_entries(context: RuntimeContext, sheet: SheetName, session_id: str) -> list:
    index = core_logic.index_rows(context, sheet, "by_session", lambda row: row.session_id)
    return list(index.get(session_id, []))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def _get_or_create_session(context: RuntimeContext, sheet: SheetName, day: str, prefix: str):
    index = core_logic.index_rows(context, sheet, "by_date", lambda row: row.session_date)
    existing = index.get(day)
    if existing:
        return existing[0]
    row_type = data_manager.TABLES[sheet].row_type
    session = row_type(core_logic.generate_id(prefix), day, 0, ZERO, SessionStatus.ACTIVE.value)
    core_logic.insert_record(context, sheet, session)
    log.info("Opened %s session '%s' for %s", sheet.value, session.session_id, day)
    return session


def _refresh_procurement_session(context: RuntimeContext, session_id: str) -> Optional[data_manager.ProcurementSessionRow]:
    """Recompute a procurement session's totals; drop the session once it is empty."""
    session = get_procurement_session(context, session_id)
    entries = _session_entries(context, SheetName.PROCUREMENT_ENTRIES, session_id)
    if not entries:
        core_logic.remove_record(context, SheetName.PROCUREMENT_SESSIONS, session_id)
        log.info("Removed empty procurement session '%s' (%s)", session_id, session.session_date)
        return None
    updated = replace(
        session,
        total_amount=sum((entry.total_amount for entry in entries), ZERO),
        total_suppliers=len({entry.supplier_id for entry in entries}),
    )
    if updated != session:
        core_logic.replace_record(context, SheetName.PROCUREMENT_SESSIONS, updated)
    return updated


def _refresh_sales_session(context: RuntimeContext, session_id: str) -> Optional[data_manager.SalesSessionRow]:
    """Recompute a sales session's totals; drop the session once it is empty."""
    session = get_sales_session(context, session_id)
    entries = _session_entries(context, SheetName.SALES_ENTRIES, session_id)
    if not entries:
        core_logic.remove_record(context, SheetName.SALES_SESSIONS, session_id)
        log.info("Removed empty sales session '%s' (%s)", session_id, session.session_date)
        return None
    updated = replace(
        session,
        total_sales_amount=sum((entry.total_amount for entry in entries), ZERO),
        total_sellers=len({entry.seller_id for entry in entries}),
    )
    if updated != session:
        core_logic.replace_record(context, SheetName.SALES_SESSIONS, updated)
    return updated


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _nonnegative(value: Number, field_name: str) -> Decimal:
    amount = core_logic.to_decimal(value, field_name=field_name)
    core_logic.require_nonnegative(amount, field_name=field_name)
    return amount


def _positive(value: Number, field_name: str) -> Decimal:
    amount = core_logic.to_decimal(value, field_name=field_name)
    core_logic.require_positive_quantity(amount, field_name=field_name)
    return amount


def _validate_lines(lines: Sequence[SaleLine]) -> List[Tuple[str, Decimal, Decimal]]:
    if not lines:
        raise core_logic.ValidationError("A sales entry needs at least one line item")
    return [
        (
            core_logic.require_variety_name(line.variety_name),
            _positive(line.quantity, "Line quantity"),
            _nonnegative(line.sale_rate, "Sale rate"),
        )
        for line in lines
    ]


def _require_settlement(amount: Decimal, crates: Decimal) -> None:
    if amount == ZERO and crates == ZERO:
        raise core_logic.ValidationError("A payment must settle some money or some crates")


# ---------------------------------------------------------------------------
# Procurement
# ---------------------------------------------------------------------------


def add_procurement_entry(context: RuntimeContext, command: ProcurementCommand) -> data_manager.ProcurementEntryRow:
    """Record a procured lot and cascade it into stock and supplier outstanding.

    Args:
        context (RuntimeContext): Active runtime context.
        command (ProcurementCommand): Lot to record.

    Returns:
        data_manager.ProcurementEntryRow: The stored entry.

    Raises:
        MissingReferenceError: If the supplier or item is unknown.
        BusinessRuleViolation: If the supplier or item is inactive.
        ValidationError: If the quantity, rate or date is malformed, or the
            date lies in the future.
    """
    day = core_logic.normalize_date(command.session_date, field_name="Session date")
    core_logic.require_not_future(day, what="Procurement")
    quantity = _positive(command.quantity, "Quantity")
    rate = _nonnegative(command.rate, "Rate")
    variety = core_logic.require_variety_name(command.variety_name)

    with unit_of_work(context, "add_procurement_entry"):
        core_logic.require_active_party(context, PartyRole.SUPPLIER, command.supplier_id)
        core_logic.require_active_item(context, command.item_id)
        session = _get_or_create_session(context, SheetName.PROCUREMENT_SESSIONS, day, "PS")
        entry = data_manager.ProcurementEntryRow(
            entry_id=core_logic.generate_id("PE"),
            session_id=session.session_id,
            supplier_id=command.supplier_id,
            item_id=command.item_id,
            variety_name=variety,
            quantity=quantity,
            rate=rate,
            total_amount=quantity * rate,
        )
        core_logic.insert_record(context, SheetName.PROCUREMENT_ENTRIES, entry)
        _refresh_procurement_session(context, session.session_id)
        inventory.touch_item_type(context, entry.item_id, variety, day)
        inventory.apply_procurement(context, entry.item_id, variety, quantity, day)
        balances.recalculate_supplier_outstanding(context, entry.supplier_id, entry.item_id)

    log.info(
        "Recorded procurement '%s': %s x %s/%s @ %s from '%s' on %s",
        entry.entry_id,
        quantity,
        entry.item_id,
        variety,
        rate,
        entry.supplier_id,
        day,
    )
    return entry


def update_procurement_entry(context: RuntimeContext, entry_id: str, changes: ProcurementUpdate) -> MutationResult:
    """Edit the quantity, rate and/or variety of a procurement entry.

    A same-variety edit shifts stock by the quantity delta and re-weights the
    purchase rate. A variety change moves the whole lot: it is taken out of
    the old variety (never forced) and added to the new one.

    Raises:
        MissingReferenceError: If the entry is unknown.
        InventoryViolation: If the edit would leave stock negative anywhere.
        ValidationError: If a new value is malformed.
    """
    with unit_of_work(context, "update_procurement_entry"):
        entry = get_procurement_entry(context, entry_id)
        day = get_procurement_session(context, entry.session_id).session_date
        quantity = _positive(changes.quantity, "Quantity") if changes.quantity is not None else entry.quantity
        rate = _nonnegative(changes.rate, "Rate") if changes.rate is not None else entry.rate
        variety = (
            core_logic.require_variety_name(changes.variety_name)
            if changes.variety_name is not None
            else entry.variety_name
        )

        updated = replace(entry, quantity=quantity, rate=rate, variety_name=variety, total_amount=quantity * rate)
        core_logic.replace_record(context, SheetName.PROCUREMENT_ENTRIES, updated)

        if variety == entry.variety_name:
            inventory.adjust_procurement(
                context, entry.item_id, variety, day, old_quantity=entry.quantity, new_quantity=quantity
            )
        else:
            inventory.remove_procurement(context, entry.item_id, entry.variety_name, entry.quantity, day)
            inventory.touch_item_type(context, entry.item_id, variety, day)
            inventory.apply_procurement(context, entry.item_id, variety, quantity, day)
            inventory.deactivate_if_empty(context, entry.item_id, entry.variety_name)

        _refresh_procurement_session(context, entry.session_id)
        view = balances.recalculate_supplier_outstanding(context, entry.supplier_id, entry.item_id)

    log.info("Updated procurement '%s' (%s x %s @ %s)", entry_id, quantity, variety, rate)
    return MutationResult(entry_id, f"Procurement entry {entry_id} updated", view)


def delete_procurement_entry(context: RuntimeContext, entry_id: str, *, force: bool = False) -> MutationResult:
    """Delete a procurement entry and take its lot back out of stock.

    ``force`` suppresses the inventory violation raised when the lot has
    already been sold on. Short days close at zero; because the chain is
    re-derived from the ledger on every movement, deleting the sales that
    consumed the lot later restores exactly what the ledger still holds.

    Raises:
        MissingReferenceError: If the entry is unknown.
        InventoryViolation: If removal would leave stock negative and
            ``force`` is not set.
    """
    with unit_of_work(context, "delete_procurement_entry"):
        entry = get_procurement_entry(context, entry_id)
        day = get_procurement_session(context, entry.session_id).session_date
        core_logic.remove_record(context, SheetName.PROCUREMENT_ENTRIES, entry_id)
        inventory.remove_procurement(context, entry.item_id, entry.variety_name, entry.quantity, day, force=force)
        session = _refresh_procurement_session(context, entry.session_id)
        inventory.deactivate_if_empty(context, entry.item_id, entry.variety_name)
        view = balances.recalculate_supplier_outstanding(context, entry.supplier_id, entry.item_id)

    message = f"Procurement entry {entry_id} deleted"
    if session is None:
        message += f"; session for {day} removed"
    log.info("%s%s", message, " (forced)" if force else "")
    return MutationResult(entry_id, message, view)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def _insert_line_items(
    context: RuntimeContext,
    entry: data_manager.SalesEntryRow,
    lines: List[Tuple[str, Decimal, Decimal]],
    day: str,
) -> None:
    for variety, quantity, sale_rate in lines:
        line = data_manager.SalesLineItemRow(
            line_item_id=core_logic.generate_id("SL"),
            entry_id=entry.entry_id,
            variety_name=variety,
            quantity=quantity,
            sale_rate=sale_rate,
            amount=quantity * sale_rate,
        )
        core_logic.insert_record(context, SheetName.SALES_LINE_ITEMS, line)
        inventory.apply_sale(context, entry.item_id, variety, quantity, day)


def _remove_line_items(context: RuntimeContext, entry: data_manager.SalesEntryRow, day: str) -> None:
    for line in list_sales_line_items(context, entry.entry_id):
        inventory.reverse_sale(context, entry.item_id, line.variety_name, line.quantity, day)
        core_logic.remove_record(context, SheetName.SALES_LINE_ITEMS, line.line_item_id)


def add_sales_entry(context: RuntimeContext, command: SalesCommand) -> data_manager.SalesEntryRow:
    """Record a sale to a seller and cascade it into stock and the seller's ledger.

    Returns:
        data_manager.SalesEntryRow: The stored entry with its running balance
            stamped.

    Raises:
        MissingReferenceError: If the seller or item is unknown.
        BusinessRuleViolation: If the seller or item is inactive.
        InventoryViolation: If a line sells more than is in stock on the
            session date.
        ValidationError: If an amount, quantity or date is malformed.
    """
    day = core_logic.normalize_date(command.session_date, field_name="Session date")
    core_logic.require_not_future(day, what="Sale")
    lines = _validate_lines(command.line_items)
    amount_paid = _nonnegative(command.amount_paid, "Amount paid")
    discount = _nonnegative(command.discount, "Discount")
    crates_returned = _nonnegative(command.crates_returned, "Crates returned")

    with unit_of_work(context, "add_sales_entry"):
        core_logic.require_active_party(context, PartyRole.SELLER, command.seller_id)
        core_logic.require_active_item(context, command.item_id)
        session = _get_or_create_session(context, SheetName.SALES_SESSIONS, day, "SS")
        entry = data_manager.SalesEntryRow(
            entry_id=core_logic.generate_id("SE"),
            session_id=session.session_id,
            seller_id=command.seller_id,
            item_id=command.item_id,
            total_quantity=sum((quantity for _, quantity, _ in lines), ZERO),
            total_amount=sum((quantity * rate for _, quantity, rate in lines), ZERO),
            amount_paid=amount_paid,
            discount=discount,
            crates_returned=crates_returned,
            running_payment_outstanding=ZERO,
            running_quantity_outstanding=ZERO,
        )
        core_logic.insert_record(context, SheetName.SALES_ENTRIES, entry)
        _insert_line_items(context, entry, lines, day)
        _refresh_sales_session(context, session.session_id)
        balances.recalculate_seller_outstanding(context, entry.seller_id, entry.item_id)
        balances.recalculate_all_transactions_from_date(context, entry.seller_id, entry.item_id, day)
        stamped = get_sales_entry(context, entry.entry_id)

    log.info(
        "Recorded sale '%s' to '%s': %s of %s for %s (paid %s)",
        stamped.entry_id,
        stamped.seller_id,
        stamped.total_quantity,
        stamped.item_id,
        stamped.total_amount,
        stamped.amount_paid,
    )
    return stamped


def update_sales_entry(context: RuntimeContext, entry_id: str, changes: SalesUpdate) -> MutationResult:
    """Edit payment fields and/or replace the line items of a sales entry.

    Replacing line items reverses every old line before applying the new
    ones, so stock freed by the old lines is available to the new lines.

    Raises:
        MissingReferenceError: If the entry is unknown.
        InventoryViolation: If the new lines exceed stock on the session date.
        ValidationError: If a new value is malformed.
    """
    with unit_of_work(context, "update_sales_entry"):
        entry = get_sales_entry(context, entry_id)
        day = get_sales_session(context, entry.session_id).session_date
        updated = entry
        if changes.line_items is not None:
            lines = _validate_lines(changes.line_items)
            _remove_line_items(context, entry, day)
            _insert_line_items(context, entry, lines, day)
            updated = replace(
                updated,
                total_quantity=sum((quantity for _, quantity, _ in lines), ZERO),
                total_amount=sum((quantity * rate for _, quantity, rate in lines), ZERO),
            )
        if changes.amount_paid is not None:
            updated = replace(updated, amount_paid=_nonnegative(changes.amount_paid, "Amount paid"))
        if changes.discount is not None:
            updated = replace(updated, discount=_nonnegative(changes.discount, "Discount"))
        if changes.crates_returned is not None:
            updated = replace(updated, crates_returned=_nonnegative(changes.crates_returned, "Crates returned"))

        core_logic.replace_record(context, SheetName.SALES_ENTRIES, updated)
        _refresh_sales_session(context, entry.session_id)
        view = balances.recalculate_seller_outstanding(context, entry.seller_id, entry.item_id)
        balances.recalculate_all_transactions_from_date(context, entry.seller_id, entry.item_id, day)

    log.info("Updated sale '%s'", entry_id)
    return MutationResult(entry_id, f"Sales entry {entry_id} updated", view)


def delete_sales_entry(context: RuntimeContext, entry_id: str, *, force: bool = False) -> MutationResult:
    """Delete a sales entry, return its stock and restamp later running balances.

    ``force`` is accepted for symmetry with procurement deletion; reversing a
    sale only ever restores stock, so it cannot trip the inventory check.

    Raises:
        MissingReferenceError: If the entry is unknown.
    """
    with unit_of_work(context, "delete_sales_entry"):
        entry = get_sales_entry(context, entry_id)
        day = get_sales_session(context, entry.session_id).session_date
        _remove_line_items(context, entry, day)
        core_logic.remove_record(context, SheetName.SALES_ENTRIES, entry_id)
        session = _refresh_sales_session(context, entry.session_id)
        view = balances.recalculate_seller_outstanding(context, entry.seller_id, entry.item_id)
        balances.recalculate_subsequent_balances_after_deletion(
            context, entry.seller_id, entry.item_id, day, entry_id
        )

    message = f"Sales entry {entry_id} deleted"
    if session is None:
        message += f"; session for {day} removed"
    log.info("%s%s", message, " (forced)" if force else "")
    return MutationResult(entry_id, message, view)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def _payment_date(value: Optional[str]) -> str:
    day = core_logic.normalize_date(value, field_name="Payment date")
    core_logic.require_not_future(day, what="Payment")
    return day


def add_supplier_payment(context: RuntimeContext, command: SupplierPaymentCommand) -> data_manager.SupplierPaymentRow:
    """Record money and/or crates handed to a supplier for one item."""
    day = _payment_date(command.payment_date)
    amount = _nonnegative(command.amount_paid, "Amount paid")
    crates = _nonnegative(command.crates_returned, "Crates returned")
    _require_settlement(amount, crates)

    with unit_of_work(context, "add_supplier_payment"):
        core_logic.get_supplier(context, command.supplier_id)
        core_logic.get_item(context, command.item_id)
        payment = data_manager.SupplierPaymentRow(
            payment_id=core_logic.generate_id("SP"),
            payment_date=day,
            supplier_id=command.supplier_id,
            item_id=command.item_id,
            amount_paid=amount,
            crates_returned=crates,
            notes=command.notes,
        )
        core_logic.insert_record(context, SheetName.SUPPLIER_PAYMENTS, payment)
        balances.recalculate_supplier_outstanding(context, payment.supplier_id, payment.item_id)

    log.info("Recorded supplier payment '%s' to '%s' (%s, %s crates)", payment.payment_id, payment.supplier_id, amount, crates)
    return payment


def update_supplier_payment(context: RuntimeContext, payment_id: str, changes: SupplierPaymentUpdate) -> MutationResult:
    with unit_of_work(context, "update_supplier_payment"):
        payment = get_supplier_payment(context, payment_id)
        updated = replace(
            payment,
            amount_paid=(
                _nonnegative(changes.amount_paid, "Amount paid") if changes.amount_paid is not None else payment.amount_paid
            ),
            crates_returned=(
                _nonnegative(changes.crates_returned, "Crates returned")
                if changes.crates_returned is not None
                else payment.crates_returned
            ),
            payment_date=_payment_date(changes.payment_date) if changes.payment_date is not None else payment.payment_date,
            notes=changes.notes if changes.notes is not None else payment.notes,
        )
        _require_settlement(updated.amount_paid, updated.crates_returned)
        core_logic.replace_record(context, SheetName.SUPPLIER_PAYMENTS, updated)
        view = balances.recalculate_supplier_outstanding(context, payment.supplier_id, payment.item_id)

    log.info("Updated supplier payment '%s'", payment_id)
    return MutationResult(payment_id, f"Supplier payment {payment_id} updated", view)


def delete_supplier_payment(context: RuntimeContext, payment_id: str) -> MutationResult:
    with unit_of_work(context, "delete_supplier_payment"):
        payment = get_supplier_payment(context, payment_id)
        core_logic.remove_record(context, SheetName.SUPPLIER_PAYMENTS, payment_id)
        view = balances.recalculate_supplier_outstanding(context, payment.supplier_id, payment.item_id)

    log.info("Deleted supplier payment '%s'", payment_id)
    return MutationResult(payment_id, f"Supplier payment {payment_id} deleted", view)


def add_seller_payment(context: RuntimeContext, command: SellerPaymentCommand) -> data_manager.SellerPaymentRow:
    """Record money and/or crates received from a seller for one item.

    The payment also lowers the running balance of every entry dated after
    it, so those entries are restamped.
    """
    day = _payment_date(command.payment_date)
    amount = _nonnegative(command.amount_received, "Amount received")
    crates = _nonnegative(command.crates_returned, "Crates returned")
    _require_settlement(amount, crates)

    with unit_of_work(context, "add_seller_payment"):
        core_logic.get_seller(context, command.seller_id)
        core_logic.get_item(context, command.item_id)
        payment = data_manager.SellerPaymentRow(
            payment_id=core_logic.generate_id("RP"),
            payment_date=day,
            seller_id=command.seller_id,
            item_id=command.item_id,
            amount_received=amount,
            crates_returned=crates,
            notes=command.notes,
        )
        core_logic.insert_record(context, SheetName.SELLER_PAYMENTS, payment)
        balances.recalculate_seller_outstanding(context, payment.seller_id, payment.item_id)
        balances.recalculate_all_transactions_from_date(context, payment.seller_id, payment.item_id, day)

    log.info("Recorded seller payment '%s' from '%s' (%s, %s crates)", payment.payment_id, payment.seller_id, amount, crates)
    return payment


def update_seller_payment(context: RuntimeContext, payment_id: str, changes: SellerPaymentUpdate) -> MutationResult:
    with unit_of_work(context, "update_seller_payment"):
        payment = get_seller_payment(context, payment_id)
        updated = replace(
            payment,
            amount_received=(
                _nonnegative(changes.amount_received, "Amount received")
                if changes.amount_received is not None
                else payment.amount_received
            ),
            crates_returned=(
                _nonnegative(changes.crates_returned, "Crates returned")
                if changes.crates_returned is not None
                else payment.crates_returned
            ),
            payment_date=_payment_date(changes.payment_date) if changes.payment_date is not None else payment.payment_date,
            notes=changes.notes if changes.notes is not None else payment.notes,
        )
        _require_settlement(updated.amount_received, updated.crates_returned)
        core_logic.replace_record(context, SheetName.SELLER_PAYMENTS, updated)
        view = balances.recalculate_seller_outstanding(context, payment.seller_id, payment.item_id)
        balances.recalculate_all_transactions_from_date(
            context, payment.seller_id, payment.item_id, min(payment.payment_date, updated.payment_date)
        )

    log.info("Updated seller payment '%s'", payment_id)
    return MutationResult(payment_id, f"Seller payment {payment_id} updated", view)


def delete_seller_payment(context: RuntimeContext, payment_id: str) -> MutationResult:
    with unit_of_work(context, "delete_seller_payment"):
        payment = get_seller_payment(context, payment_id)
        core_logic.remove_record(context, SheetName.SELLER_PAYMENTS, payment_id)
        view = balances.recalculate_seller_outstanding(context, payment.seller_id, payment.item_id)
        balances.recalculate_subsequent_balances_after_deletion(
            context, payment.seller_id, payment.item_id, payment.payment_date
        )

    log.info("Deleted seller payment '%s'", payment_id)
    return MutationResult(payment_id, f"Seller payment {payment_id} deleted", view)


# ---------------------------------------------------------------------------
# Damage
# ---------------------------------------------------------------------------


def record_damage_entry(context: RuntimeContext, command: DamageCommand) -> data_manager.DamageEntryRow:
    """Record damaged stock against a supplier.

    The returned quantity leaves stock on the damage date and, together with
    the discount, lowers what is owed to the supplier.

    Raises:
        ValidationError: If quantities are malformed or more is returned than
            was damaged.
        InventoryViolation: If the returned quantity exceeds stock on that date.
    """
    day = core_logic.normalize_date(command.damage_date, field_name="Damage date")
    core_logic.require_not_future(day, what="Damage entry")
    damaged = _positive(command.damaged_quantity, "Damaged quantity")
    returned = _nonnegative(command.damaged_returned_quantity, "Returned quantity")
    discount = _nonnegative(command.supplier_discount_amount, "Supplier discount")
    variety = core_logic.require_variety_name(command.variety_name)
    if returned > damaged:
        log.warning("Damage return %s exceeds damaged quantity %s", returned, damaged)
        raise core_logic.ValidationError("Returned quantity cannot exceed the damaged quantity")

    with unit_of_work(context, "record_damage_entry"):
        core_logic.get_supplier(context, command.supplier_id)
        core_logic.get_item(context, command.item_id)
        damage = data_manager.DamageEntryRow(
            damage_id=core_logic.generate_id("DM"),
            damage_date=day,
            supplier_id=command.supplier_id,
            item_id=command.item_id,
            variety_name=variety,
            damaged_quantity=damaged,
            damaged_returned_quantity=returned,
            supplier_discount_amount=discount,
        )
        core_logic.insert_record(context, SheetName.DAMAGE_ENTRIES, damage)
        if returned > ZERO:
            inventory.apply_damage_return(context, damage.item_id, variety, returned, day)
            inventory.deactivate_if_empty(context, damage.item_id, variety)
        balances.recalculate_supplier_outstanding(context, damage.supplier_id, damage.item_id)

    log.info(
        "Recorded damage '%s' for '%s' %s/%s: damaged=%s returned=%s discount=%s",
        damage.damage_id,
        damage.supplier_id,
        damage.item_id,
        variety,
        damaged,
        returned,
        discount,
    )
    return damage


def delete_damage_entry(context: RuntimeContext, damage_id: str) -> MutationResult:
    """Delete a damage entry and put its returned quantity back into stock."""
    with unit_of_work(context, "delete_damage_entry"):
        damage = get_damage_entry(context, damage_id)
        if damage.damaged_returned_quantity > ZERO:
            inventory.reverse_damage_return(
                context, damage.item_id, damage.variety_name, damage.damaged_returned_quantity, damage.damage_date
            )
        core_logic.remove_record(context, SheetName.DAMAGE_ENTRIES, damage_id)
        view = balances.recalculate_supplier_outstanding(context, damage.supplier_id, damage.item_id)

    log.info("Deleted damage entry '%s'", damage_id)
    return MutationResult(damage_id, f"Damage entry {damage_id} deleted", view)


# ---------------------------------------------------------------------------
# Opening balances
# ---------------------------------------------------------------------------


def set_opening_balance(context: RuntimeContext, command: OpeningBalanceCommand) -> MutationResult:
    """Create or replace the opening balance of a (party, item) pair.

    The opening balance seeds every running balance of a seller, so all of
    the seller's entries for the item are restamped; suppliers only have
    their aggregate refreshed.
    """
    role = PartyRole(command.role)
    payment_due = core_logic.to_decimal(command.payment_due, field_name="Opening payment due")
    quantity_due = core_logic.to_decimal(command.quantity_due, field_name="Opening quantity due")
    effective = core_logic.normalize_date(command.effective_from_date, field_name="Effective date")

    with unit_of_work(context, "set_opening_balance"):
        core_logic.get_party(context, role, command.party_id)
        core_logic.get_item(context, command.item_id)
        balances.store_opening_balance(
            context,
            role,
            command.party_id,
            command.item_id,
            payment_due=payment_due,
            quantity_due=quantity_due,
            effective_from_date=effective,
        )
        if role is PartyRole.SELLER:
            balances.recalculate_all_transactions_from_date(
                context, command.party_id, command.item_id, balances.EARLIEST_DATE
            )
        view = balances.recalculate_outstanding(context, role, command.party_id, command.item_id)

    log.info(
        "Opening balance for %s '%s'/%s set to payment=%s quantity=%s from %s",
        role.value,
        command.party_id,
        command.item_id,
        payment_due,
        quantity_due,
        effective,
    )
    key = data_manager.balance_key(command.party_id, command.item_id)
    return MutationResult(key, f"Opening balance for {command.party_id}/{command.item_id} saved", view)


def delete_opening_balance(context: RuntimeContext, role: PartyRole, party_id: str, item_id: str) -> MutationResult:
    """Remove an opening balance and cascade like :func:`set_opening_balance`.

    Raises:
        MissingReferenceError: If the pair has no opening balance.
    """
    role = PartyRole(role)
    with unit_of_work(context, "delete_opening_balance"):
        removed = balances.remove_opening_balance(context, role, party_id, item_id)
        if role is PartyRole.SELLER:
            balances.recalculate_all_transactions_from_date(context, party_id, item_id, balances.EARLIEST_DATE)
        view = balances.recalculate_outstanding(context, role, party_id, item_id)

    log.info("Opening balance for %s '%s'/%s deleted", role.value, party_id, item_id)
    return MutationResult(removed.balance_key, f"Opening balance for {party_id}/{item_id} deleted", view)


# ---------------------------------------------------------------------------
# Deletion impact analysis
# ---------------------------------------------------------------------------


def _later_sales_of_variety(context: RuntimeContext, item_id: str, variety_name: str, day: str) -> int:
    index = core_logic.index_rows(context, SheetName.SALES_ENTRIES, "by_item", lambda row: row.item_id)
    count = 0
    for entry in index.get(item_id, []):
        if balances.sales_session_date(context, entry.session_id) < day:
            continue
        count += sum(1 for line in list_sales_line_items(context, entry.entry_id) if line.variety_name == variety_name)
    return count


def analyze_procurement_deletion(context: RuntimeContext, entry_id: str) -> DeletionImpact:
    """Describe what deleting a procurement entry would do, without doing it."""
    entry = get_procurement_entry(context, entry_id)
    day = get_procurement_session(context, entry.session_id).session_date
    shortfall = inventory.find_shortfall(context, entry.item_id, entry.variety_name, day, entry.quantity)
    later_sales = _later_sales_of_variety(context, entry.item_id, entry.variety_name, day)

    effects = [f"Stock of {entry.item_id}/{entry.variety_name} drops by {entry.quantity} from {day} onward"]
    if len(_session_entries(context, SheetName.PROCUREMENT_ENTRIES, entry.session_id)) == 1:
        effects.append(f"Procurement session for {day} will be removed")
    else:
        effects.append(f"Procurement session total for {day} drops by {entry.total_amount}")
    effects.append(
        f"Supplier {entry.supplier_id} outstanding for {entry.item_id} drops by "
        f"{entry.total_amount} and {entry.quantity} units"
    )
    if later_sales:
        effects.append(f"{later_sales} sale line(s) of this variety dated {day} or later depend on this stock")

    if shortfall is not None:
        level = WarningLevel.HIGH
    elif later_sales:
        level = WarningLevel.MEDIUM
    else:
        level = WarningLevel.LOW
    return DeletionImpact(
        entry_id=entry_id,
        can_delete=shortfall is None,
        warning_level=level,
        restrictions=(shortfall,) if shortfall is not None else (),
        cascade_effects=tuple(effects),
    )


def analyze_sales_deletion(context: RuntimeContext, entry_id: str) -> DeletionImpact:
    """Describe what deleting a sales entry would do, without doing it."""
    entry = get_sales_entry(context, entry_id)
    day = get_sales_session(context, entry.session_id).session_date

    effects = [
        f"Stock of {entry.item_id}/{line.variety_name} returns {line.quantity} on {day}"
        for line in list_sales_line_items(context, entry_id)
    ]
    if len(_session_entries(context, SheetName.SALES_ENTRIES, entry.session_id)) == 1:
        effects.append(f"Sales session for {day} will be removed")
    else:
        effects.append(f"Sales session total for {day} drops by {entry.total_amount}")
    effects.append(
        f"Seller {entry.seller_id} outstanding for {entry.item_id} drops by "
        f"{entry.total_amount - entry.amount_paid - entry.discount} and "
        f"{entry.total_quantity - entry.crates_returned} units"
    )

    siblings = balances.sales_entries_for(context, entry.seller_id, entry.item_id)
    position = next(i for i, sibling in enumerate(siblings) if sibling.entry_id == entry_id)
    later = [
        sibling
        for i, sibling in enumerate(siblings)
        if i != position
        and (
            balances.sales_session_date(context, sibling.session_id) > day
            or (balances.sales_session_date(context, sibling.session_id) == day and i > position)
        )
    ]
    if later:
        effects.append(f"Running balances of {len(later)} later entr{'y' if len(later) == 1 else 'ies'} will be restamped")

    return DeletionImpact(
        entry_id=entry_id,
        can_delete=True,
        warning_level=WarningLevel.MEDIUM if later else WarningLevel.LOW,
        restrictions=(),
        cascade_effects=tuple(effects),
    )
