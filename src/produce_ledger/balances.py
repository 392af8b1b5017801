"""Opening balances, the outstanding balance cache and seller running balances.

Aggregate outstanding figures are always recomputed from the ledger rather
than adjusted by deltas:

* supplier: opening + procurement − payments − damage discounts/returns
* seller: opening + sales − amounts paid − discounts − standalone payments

Sellers additionally carry a running balance stamped onto every sales entry,
walked chronologically (date, then insertion order within the date) and
seeded with the opening balance. Standalone seller payments are applied
after the entries of their date.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional

from . import core_logic, data_manager, log
from .constants import OPENING_BALANCE_SHEETS, OUTSTANDING_SHEETS, ZERO, PartyRole, SheetName
from .core_logic import RuntimeContext


EARLIEST_DATE = "0001-01-01"


@dataclass(frozen=True)
class OutstandingFigures:
    payment_due: Decimal
    quantity_due: Decimal

    def is_zero(self) -> bool:
        return self.payment_due == ZERO and self.quantity_due == ZERO


@dataclass(frozen=True)
class OutstandingView:
    """What a caller sees for one (party, item) pair."""

    role: PartyRole
    party_id: str
    item_id: str
    payment_due: Decimal
    quantity_due: Decimal
    last_updated: Optional[str]


@dataclass(frozen=True)
class RunningBalance:
    """Running outstanding as of one sales entry."""

    entry_id: str
    session_date: str
    payment_outstanding: Decimal
    quantity_outstanding: Decimal


# ---------------------------------------------------------------------------
# Indexed ledger lookups
# ---------------------------------------------------------------------------


def procurement_entries_for(context: RuntimeContext, supplier_id: str, item_id: str) -> List[data_manager.ProcurementEntryRow]:
    index = core_logic.index_rows(
        context, SheetName.PROCUREMENT_ENTRIES, "by_party_item", lambda row: (row.supplier_id, row.item_id)
    )
    return list(index.get((supplier_id, item_id), []))


def supplier_payments_for(context: RuntimeContext, supplier_id: str, item_id: str) -> List[data_manager.SupplierPaymentRow]:
    index = core_logic.index_rows(
        context, SheetName.SUPPLIER_PAYMENTS, "by_party_item", lambda row: (row.supplier_id, row.item_id)
    )
    return list(index.get((supplier_id, item_id), []))


def damage_entries_for(context: RuntimeContext, supplier_id: str, item_id: str) -> List[data_manager.DamageEntryRow]:
    index = core_logic.index_rows(
        context, SheetName.DAMAGE_ENTRIES, "by_party_item", lambda row: (row.supplier_id, row.item_id)
    )
    return list(index.get((supplier_id, item_id), []))


def sales_entries_for(context: RuntimeContext, seller_id: str, item_id: str) -> List[data_manager.SalesEntryRow]:
    """Sales entries of one seller+item in insertion order."""
    index = core_logic.index_rows(
        context, SheetName.SALES_ENTRIES, "by_party_item", lambda row: (row.seller_id, row.item_id)
    )
    return list(index.get((seller_id, item_id), []))


def seller_payments_for(context: RuntimeContext, seller_id: str, item_id: str) -> List[data_manager.SellerPaymentRow]:
    index = core_logic.index_rows(
        context, SheetName.SELLER_PAYMENTS, "by_party_item", lambda row: (row.seller_id, row.item_id)
    )
    return list(index.get((seller_id, item_id), []))


def sales_session_date(context: RuntimeContext, session_id: str) -> str:
    session = core_logic.find_record(context, SheetName.SALES_SESSIONS, session_id)
    if session is None:
        raise core_logic.MissingReferenceError(f"Unknown sales session id: {session_id}")
    return session.session_date


# ---------------------------------------------------------------------------
# Opening balances
# ---------------------------------------------------------------------------


def get_opening_balance(
    context: RuntimeContext, role: PartyRole, party_id: str, item_id: str
) -> Optional[data_manager.OpeningBalanceRow]:
    return core_logic.find_record(context, OPENING_BALANCE_SHEETS[role], data_manager.balance_key(party_id, item_id))


def store_opening_balance(
    context: RuntimeContext,
    role: PartyRole,
    party_id: str,
    item_id: str,
    *,
    payment_due: Decimal,
    quantity_due: Decimal,
    effective_from_date: str,
) -> data_manager.OpeningBalanceRow:
    """Insert or overwrite the opening balance of one (party, item) pair."""
    sheet = OPENING_BALANCE_SHEETS[role]
    today = core_logic.today_iso()
    existing = get_opening_balance(context, role, party_id, item_id)
    if existing is None:
        row = data_manager.OpeningBalanceRow(
            balance_key=data_manager.balance_key(party_id, item_id),
            party_id=party_id,
            item_id=item_id,
            opening_payment_due=payment_due,
            opening_quantity_due=quantity_due,
            effective_from_date=effective_from_date,
            created_date=today,
            last_modified_date=today,
        )
        return core_logic.insert_record(context, sheet, row)
    row = replace(
        existing,
        opening_payment_due=payment_due,
        opening_quantity_due=quantity_due,
        effective_from_date=effective_from_date,
        last_modified_date=today,
    )
    return core_logic.replace_record(context, sheet, row)


def remove_opening_balance(
    context: RuntimeContext, role: PartyRole, party_id: str, item_id: str
) -> data_manager.OpeningBalanceRow:
    """Delete an opening balance and return the removed row.

    Raises:
        MissingReferenceError: If the pair has no opening balance.
    """
    existing = get_opening_balance(context, role, party_id, item_id)
    if existing is None:
        log.warning("No %s opening balance for %s/%s", role.value, party_id, item_id)
        raise core_logic.MissingReferenceError(f"No {role.value} opening balance for {party_id}/{item_id}")
    core_logic.remove_record(context, OPENING_BALANCE_SHEETS[role], existing.balance_key)
    return existing


# ---------------------------------------------------------------------------
# Aggregate outstanding
# ---------------------------------------------------------------------------


def compute_supplier_outstanding(context: RuntimeContext, supplier_id: str, item_id: str) -> OutstandingFigures:
    """Recompute a supplier's aggregate outstanding from the ledger."""
    opening = get_opening_balance(context, PartyRole.SUPPLIER, supplier_id, item_id)
    payment = opening.opening_payment_due if opening is not None else ZERO
    quantity = opening.opening_quantity_due if opening is not None else ZERO
    for entry in procurement_entries_for(context, supplier_id, item_id):
        payment += entry.total_amount
        quantity += entry.quantity
    for paid in supplier_payments_for(context, supplier_id, item_id):
        payment -= paid.amount_paid
        quantity -= paid.crates_returned
    for damage in damage_entries_for(context, supplier_id, item_id):
        payment -= damage.supplier_discount_amount
        quantity -= damage.damaged_returned_quantity
    return OutstandingFigures(payment, quantity)


def compute_seller_outstanding(context: RuntimeContext, seller_id: str, item_id: str) -> OutstandingFigures:
    """Recompute a seller's aggregate outstanding from the ledger."""
    opening = get_opening_balance(context, PartyRole.SELLER, seller_id, item_id)
    payment = opening.opening_payment_due if opening is not None else ZERO
    quantity = opening.opening_quantity_due if opening is not None else ZERO
    for entry in sales_entries_for(context, seller_id, item_id):
        payment += entry.total_amount - entry.amount_paid - entry.discount
        quantity += entry.total_quantity - entry.crates_returned
    for received in seller_payments_for(context, seller_id, item_id):
        payment -= received.amount_received
        quantity -= received.crates_returned
    return OutstandingFigures(payment, quantity)


def compute_outstanding(context: RuntimeContext, role: PartyRole, party_id: str, item_id: str) -> OutstandingFigures:
    if role is PartyRole.SUPPLIER:
        return compute_supplier_outstanding(context, party_id, item_id)
    return compute_seller_outstanding(context, party_id, item_id)


def get_cached_outstanding(
    context: RuntimeContext, role: PartyRole, party_id: str, item_id: str
) -> Optional[data_manager.OutstandingRow]:
    return core_logic.find_record(context, OUTSTANDING_SHEETS[role], data_manager.balance_key(party_id, item_id))


def write_outstanding(
    context: RuntimeContext, role: PartyRole, party_id: str, item_id: str, figures: OutstandingFigures
) -> OutstandingView:
    """Upsert the cache row of one pair with ``figures``."""
    sheet = OUTSTANDING_SHEETS[role]
    stamp = core_logic.timestamp_iso()
    existing = get_cached_outstanding(context, role, party_id, item_id)
    if existing is None:
        row = data_manager.OutstandingRow(
            balance_key=data_manager.balance_key(party_id, item_id),
            party_id=party_id,
            item_id=item_id,
            payment_due=figures.payment_due,
            quantity_due=figures.quantity_due,
            last_updated=stamp,
        )
        core_logic.insert_record(context, sheet, row)
    else:
        row = replace(existing, payment_due=figures.payment_due, quantity_due=figures.quantity_due, last_updated=stamp)
        core_logic.replace_record(context, sheet, row)
    return _view(role, row)


def recalculate_supplier_outstanding(context: RuntimeContext, supplier_id: str, item_id: str) -> OutstandingView:
    figures = compute_supplier_outstanding(context, supplier_id, item_id)
    view = write_outstanding(context, PartyRole.SUPPLIER, supplier_id, item_id, figures)
    log.info(
        "Supplier outstanding %s/%s recalculated: payment=%s quantity=%s",
        supplier_id,
        item_id,
        figures.payment_due,
        figures.quantity_due,
    )
    return view


def recalculate_seller_outstanding(context: RuntimeContext, seller_id: str, item_id: str) -> OutstandingView:
    figures = compute_seller_outstanding(context, seller_id, item_id)
    view = write_outstanding(context, PartyRole.SELLER, seller_id, item_id, figures)
    log.info(
        "Seller outstanding %s/%s recalculated: payment=%s quantity=%s",
        seller_id,
        item_id,
        figures.payment_due,
        figures.quantity_due,
    )
    return view


def recalculate_outstanding(context: RuntimeContext, role: PartyRole, party_id: str, item_id: str) -> OutstandingView:
    if role is PartyRole.SUPPLIER:
        return recalculate_supplier_outstanding(context, party_id, item_id)
    return recalculate_seller_outstanding(context, party_id, item_id)


def get_outstanding(context: RuntimeContext, role: PartyRole, party_id: str, item_id: str) -> OutstandingView:
    """Return the cached outstanding of a pair; pairs without activity owe nothing.

    Raises:
        MissingReferenceError: If the party or item is unknown.
    """
    core_logic.get_party(context, role, party_id)
    core_logic.get_item(context, item_id)
    row = get_cached_outstanding(context, role, party_id, item_id)
    if row is None:
        return OutstandingView(role, party_id, item_id, ZERO, ZERO, None)
    return _view(role, row)


def _view(role: PartyRole, row: data_manager.OutstandingRow) -> OutstandingView:
    return OutstandingView(role, row.party_id, row.item_id, row.payment_due, row.quantity_due, row.last_updated)


# ---------------------------------------------------------------------------
# Seller running balances
# ---------------------------------------------------------------------------


def compute_running_balances(
    context: RuntimeContext,
    seller_id: str,
    item_id: str,
    *,
    exclude_entry_id: Optional[str] = None,
) -> List[RunningBalance]:
    """Walk a seller+item's ledger chronologically and derive every running balance.

    The walk starts from the opening balance, whatever its effective date,
    so the latest stamp always equals the aggregate. This is a pure read;
    nothing is stamped.

    Args:
        context (RuntimeContext): Active runtime context.
        seller_id (str): Seller whose entries are walked.
        item_id (str): Item whose entries are walked.
        exclude_entry_id (str | None): Entry to leave out, e.g. one that is
            being deleted.

    Returns:
        list[RunningBalance]: One balance per entry in chronological order.
    """
    entries_by_date: Dict[str, List[data_manager.SalesEntryRow]] = defaultdict(list)
    for entry in sales_entries_for(context, seller_id, item_id):
        if entry.entry_id != exclude_entry_id:
            entries_by_date[sales_session_date(context, entry.session_id)].append(entry)

    payments_by_date: Dict[str, List[data_manager.SellerPaymentRow]] = defaultdict(list)
    for payment in seller_payments_for(context, seller_id, item_id):
        payments_by_date[payment.payment_date].append(payment)

    opening = get_opening_balance(context, PartyRole.SELLER, seller_id, item_id)
    running_payment = opening.opening_payment_due if opening is not None else ZERO
    running_quantity = opening.opening_quantity_due if opening is not None else ZERO
    balances: List[RunningBalance] = []
    for day in sorted(set(entries_by_date) | set(payments_by_date)):
        for entry in entries_by_date.get(day, []):
            running_payment += entry.total_amount - entry.amount_paid - entry.discount
            running_quantity += entry.total_quantity - entry.crates_returned
            balances.append(RunningBalance(entry.entry_id, day, running_payment, running_quantity))
        for payment in payments_by_date.get(day, []):
            running_payment -= payment.amount_received
            running_quantity -= payment.crates_returned
    return balances


def recalculate_all_transactions_from_date(
    context: RuntimeContext,
    seller_id: str,
    item_id: str,
    from_date: str,
    *,
    exclude_entry_id: Optional[str] = None,
) -> int:
    """Restamp the running balance of every entry dated on or after ``from_date``.

    Entries before ``from_date`` still contribute to the seed of the walk but
    are not rewritten. Only entries whose stamp actually changes are written,
    so a second run without intervening writes is a no-op.

    Returns:
        int: Number of entries whose stamp changed.
    """
    changed = 0
    for balance in compute_running_balances(context, seller_id, item_id, exclude_entry_id=exclude_entry_id):
        if balance.session_date < from_date:
            continue
        entry = core_logic.find_record(context, SheetName.SALES_ENTRIES, balance.entry_id)
        if (
            entry.running_payment_outstanding == balance.payment_outstanding
            and entry.running_quantity_outstanding == balance.quantity_outstanding
        ):
            continue
        core_logic.replace_record(
            context,
            SheetName.SALES_ENTRIES,
            replace(
                entry,
                running_payment_outstanding=balance.payment_outstanding,
                running_quantity_outstanding=balance.quantity_outstanding,
            ),
        )
        changed += 1
    log.info("Restamped %d running balance(s) for %s/%s from %s", changed, seller_id, item_id, from_date)
    return changed


def recalculate_subsequent_balances_after_deletion(
    context: RuntimeContext,
    seller_id: str,
    item_id: str,
    deleted_date: str,
    exclude_id: Optional[str] = None,
) -> int:
    """Restamp running balances after an entry or payment dated ``deleted_date`` went away.

    Everything before ``deleted_date`` seeds the walk; every entry from that
    date on, including the deleted row's same-day siblings, is restamped.
    """
    return recalculate_all_transactions_from_date(
        context, seller_id, item_id, deleted_date, exclude_entry_id=exclude_id
    )
