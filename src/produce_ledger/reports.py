"""Read-only views over the ledger used by the CLI.

Nothing here mutates the workbook. Figures come from the derived sheets the
cascade maintains (outstanding cache, running balances, inventory views);
run :func:`produce_ledger.auditor.run_integrity_check` first when they are
in doubt.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from . import balances, cascade, core_logic, data_manager, inventory, log
from .balances import OutstandingView
from .constants import OUTSTANDING_SHEETS, ZERO, PartyRole, QuantityKind, SheetName
from .core_logic import RuntimeContext, ValidationError

PERCENT_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class OutstandingSummary:
    role: PartyRole
    rows: Tuple[OutstandingView, ...]
    total_payment_due: Decimal
    total_quantity_due: Decimal


@dataclass(frozen=True)
class SellerLedgerLine:
    """One sales entry as it appears on a seller's statement."""

    entry_id: str
    session_date: str
    total_quantity: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    discount: Decimal
    crates_returned: Decimal
    running_payment_outstanding: Decimal
    running_quantity_outstanding: Decimal
    line_items: Tuple[data_manager.SalesLineItemRow, ...]


@dataclass(frozen=True)
class SellerLedger:
    seller_id: str
    item_id: str
    opening: Optional[data_manager.OpeningBalanceRow]
    lines: Tuple[SellerLedgerLine, ...]
    payments: Tuple[data_manager.SellerPaymentRow, ...]
    outstanding: OutstandingView


@dataclass(frozen=True)
class StockReportLine:
    item_id: str
    item_name: str
    variety_name: str
    stock: Decimal
    avg_rate: Decimal


@dataclass(frozen=True)
class DailySummary:
    """Procurement and sales sessions of one date."""

    day: str
    procurement: Optional[data_manager.ProcurementSessionRow]
    sales: Optional[data_manager.SalesSessionRow]


@dataclass(frozen=True)
class SupplierLedgerLine:
    """One movement on a supplier's statement with the balance after it.

    ``kind`` is ``procurement``, ``payment`` or ``damage``. ``debit`` raises
    what the business owes the supplier, ``credit`` lowers it.
    """

    day: str
    kind: str
    reference: str
    description: str
    debit: Decimal
    credit: Decimal
    quantity_change: Decimal
    running_payment_outstanding: Decimal
    running_quantity_outstanding: Decimal


@dataclass(frozen=True)
class SupplierLedger:
    supplier_id: str
    item_id: str
    opening: Optional[data_manager.OpeningBalanceRow]
    lines: Tuple[SupplierLedgerLine, ...]
    outstanding: OutstandingView


@dataclass(frozen=True)
class ProfitAnalysis:
    """Sales against procurement over an inclusive date range."""

    start_date: str
    end_date: str
    item_id: Optional[str]
    total_sales: Decimal
    total_procurement: Decimal
    gross_profit: Decimal
    profit_margin: Decimal


@dataclass(frozen=True)
class DuesLine:
    seller_id: str
    seller_name: str
    entry_id: str
    total_quantity: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    discount: Decimal
    crates_returned: Decimal
    running_payment_outstanding: Decimal
    running_quantity_outstanding: Decimal
    line_items: Tuple[data_manager.SalesLineItemRow, ...]


@dataclass(frozen=True)
class DailyDues:
    """What each seller took of one item on one date and still owes after it."""

    day: str
    item_id: str
    item_name: str
    unit_name: str
    show_crates: bool
    lines: Tuple[DuesLine, ...]
    total_amount: Decimal
    total_payment_outstanding: Decimal


def outstanding_summary(context: RuntimeContext, role: PartyRole, *, include_settled: bool = False) -> OutstandingSummary:
    """Summarize the outstanding cache of one role.

    Args:
        context (RuntimeContext): Active runtime context.
        role (PartyRole): Suppliers or sellers.
        include_settled (bool): Keep pairs that owe nothing.

    Returns:
        OutstandingSummary: Rows sorted by party then item, with totals.
    """
    role = PartyRole(role)
    rows = [
        OutstandingView(role, row.party_id, row.item_id, row.payment_due, row.quantity_due, row.last_updated)
        for row in core_logic.table_rows(context, OUTSTANDING_SHEETS[role])
        if include_settled or row.payment_due != ZERO or row.quantity_due != ZERO
    ]
    rows.sort(key=lambda view: (view.party_id, view.item_id))
    summary = OutstandingSummary(
        role=role,
        rows=tuple(rows),
        total_payment_due=sum((view.payment_due for view in rows), ZERO),
        total_quantity_due=sum((view.quantity_due for view in rows), ZERO),
    )
    log.debug("Built %s outstanding summary with %d rows", role.value, len(rows))
    return summary


def seller_ledger(context: RuntimeContext, seller_id: str, item_id: str) -> SellerLedger:
    """Chronological statement of one seller for one item.

    Raises:
        MissingReferenceError: If the seller or item is unknown.
    """
    outstanding = balances.get_outstanding(context, PartyRole.SELLER, seller_id, item_id)
    entries = [
        (balances.sales_session_date(context, entry.session_id), position, entry)
        for position, entry in enumerate(balances.sales_entries_for(context, seller_id, item_id))
    ]
    entries.sort(key=lambda item: (item[0], item[1]))
    lines = tuple(
        SellerLedgerLine(
            entry_id=entry.entry_id,
            session_date=day,
            total_quantity=entry.total_quantity,
            total_amount=entry.total_amount,
            amount_paid=entry.amount_paid,
            discount=entry.discount,
            crates_returned=entry.crates_returned,
            running_payment_outstanding=entry.running_payment_outstanding,
            running_quantity_outstanding=entry.running_quantity_outstanding,
            line_items=tuple(cascade.list_sales_line_items(context, entry.entry_id)),
        )
        for day, _, entry in entries
    )
    payments = tuple(
        sorted(balances.seller_payments_for(context, seller_id, item_id), key=lambda payment: payment.payment_date)
    )
    return SellerLedger(
        seller_id=seller_id,
        item_id=item_id,
        opening=balances.get_opening_balance(context, PartyRole.SELLER, seller_id, item_id),
        lines=lines,
        payments=payments,
        outstanding=outstanding,
    )


def stock_report(context: RuntimeContext, on_date: Optional[str] = None) -> List[StockReportLine]:
    """Stock of every active item with stock on ``on_date`` (default today)."""
    lines: List[StockReportLine] = []
    for item in core_logic.list_items(context):
        for level in inventory.get_available_stock(context, item.item_id, on_date):
            lines.append(StockReportLine(item.item_id, item.item_name, level.variety_name, level.stock, level.avg_rate))
    return lines


def daily_summary(context: RuntimeContext, on_date: Optional[str] = None) -> DailySummary:
    day = core_logic.normalize_date(on_date)
    procurement = core_logic.index_rows(
        context, SheetName.PROCUREMENT_SESSIONS, "by_date", lambda row: row.session_date
    ).get(day)
    sales = core_logic.index_rows(context, SheetName.SALES_SESSIONS, "by_date", lambda row: row.session_date).get(day)
    return DailySummary(
        day=day,
        procurement=procurement[0] if procurement else None,
        sales=sales[0] if sales else None,
    )


def supplier_ledger(context: RuntimeContext, supplier_id: str, item_id: str) -> SupplierLedger:
    """Chronological statement of one supplier for one item.

    Procurement lots, payments and damage compensation are merged by date
    and walked from the opening balance. On a shared date procurement comes
    first, then payments, then damage.

    Raises:
        MissingReferenceError: If the supplier or item is unknown.
    """
    outstanding = balances.get_outstanding(context, PartyRole.SUPPLIER, supplier_id, item_id)
    opening = balances.get_opening_balance(context, PartyRole.SUPPLIER, supplier_id, item_id)
    movements = []
    for entry in balances.procurement_entries_for(context, supplier_id, item_id):
        day = cascade.get_procurement_session(context, entry.session_id).session_date
        movements.append(
            (day, 0, entry.entry_id, f"{entry.variety_name} {entry.quantity} @ {entry.rate}",
             entry.total_amount, ZERO, entry.quantity)
        )
    for payment in balances.supplier_payments_for(context, supplier_id, item_id):
        movements.append(
            (payment.payment_date, 1, payment.payment_id, payment.notes or "Payment",
             ZERO, payment.amount_paid, -payment.crates_returned)
        )
    for damage in balances.damage_entries_for(context, supplier_id, item_id):
        movements.append(
            (damage.damage_date, 2, damage.damage_id,
             f"{damage.variety_name} damaged {damage.damaged_quantity}",
             ZERO, damage.supplier_discount_amount, -damage.damaged_returned_quantity)
        )
    movements.sort(key=lambda movement: (movement[0], movement[1]))

    running_payment = opening.opening_payment_due if opening is not None else ZERO
    running_quantity = opening.opening_quantity_due if opening is not None else ZERO
    kinds = ("procurement", "payment", "damage")
    lines: List[SupplierLedgerLine] = []
    for day, order, reference, description, debit, credit, quantity_change in movements:
        running_payment += debit - credit
        running_quantity += quantity_change
        lines.append(
            SupplierLedgerLine(
                day=day,
                kind=kinds[order],
                reference=reference,
                description=description,
                debit=debit,
                credit=credit,
                quantity_change=quantity_change,
                running_payment_outstanding=running_payment,
                running_quantity_outstanding=running_quantity,
            )
        )
    return SupplierLedger(
        supplier_id=supplier_id,
        item_id=item_id,
        opening=opening,
        lines=tuple(lines),
        outstanding=outstanding,
    )


def profit_analysis(
    context: RuntimeContext, start_date: str, end_date: str, *, item_id: Optional[str] = None
) -> ProfitAnalysis:
    """Gross profit of the sessions dated within ``start_date``..``end_date``.

    Without ``item_id`` the session totals are summed; with it only that
    item's entries count. The margin is a percentage of sales and is zero
    when nothing was sold.

    Raises:
        ValidationError: If a date is malformed or the range is reversed.
        MissingReferenceError: If ``item_id`` is unknown.
    """
    start = core_logic.normalize_date(start_date, field_name="Start date")
    end = core_logic.normalize_date(end_date, field_name="End date")
    if start > end:
        raise ValidationError(f"Start date {start} is after end date {end}")
    if item_id is not None:
        core_logic.get_item(context, item_id)

    def in_range(row) -> bool:
        return start <= row.session_date <= end

    sales_sessions = [row for row in core_logic.table_rows(context, SheetName.SALES_SESSIONS) if in_range(row)]
    procurement_sessions = [
        row for row in core_logic.table_rows(context, SheetName.PROCUREMENT_SESSIONS) if in_range(row)
    ]
    if item_id is None:
        total_sales = sum((row.total_sales_amount for row in sales_sessions), ZERO)
        total_procurement = sum((row.total_amount for row in procurement_sessions), ZERO)
    else:
        sales_ids = {row.session_id for row in sales_sessions}
        procurement_ids = {row.session_id for row in procurement_sessions}
        total_sales = sum(
            (
                row.total_amount
                for row in core_logic.table_rows(context, SheetName.SALES_ENTRIES)
                if row.item_id == item_id and row.session_id in sales_ids
            ),
            ZERO,
        )
        total_procurement = sum(
            (
                row.total_amount
                for row in core_logic.table_rows(context, SheetName.PROCUREMENT_ENTRIES)
                if row.item_id == item_id and row.session_id in procurement_ids
            ),
            ZERO,
        )
    gross_profit = total_sales - total_procurement
    margin = (gross_profit / total_sales * 100).quantize(PERCENT_QUANTUM) if total_sales > ZERO else ZERO
    log.debug("Profit analysis %s..%s item=%s: sales=%s procurement=%s", start, end, item_id, total_sales, total_procurement)
    return ProfitAnalysis(
        start_date=start,
        end_date=end,
        item_id=item_id,
        total_sales=total_sales,
        total_procurement=total_procurement,
        gross_profit=gross_profit,
        profit_margin=margin,
    )


def daily_dues(context: RuntimeContext, item_id: str, on_date: Optional[str] = None) -> DailyDues:
    """Sales of ``item_id`` on one date (default today), one line per entry, sorted by seller name.

    Raises:
        MissingReferenceError: If the item is unknown.
    """
    item = core_logic.get_item(context, item_id)
    day = core_logic.normalize_date(on_date)
    sessions = core_logic.index_rows(
        context, SheetName.SALES_SESSIONS, "by_date", lambda row: row.session_date
    ).get(day, [])
    session_ids = {session.session_id for session in sessions}
    names: Dict[str, str] = {}
    lines: List[DuesLine] = []
    for entry in core_logic.table_rows(context, SheetName.SALES_ENTRIES):
        if entry.item_id != item_id or entry.session_id not in session_ids:
            continue
        if entry.seller_id not in names:
            names[entry.seller_id] = core_logic.get_seller(context, entry.seller_id).seller_name
        lines.append(
            DuesLine(
                seller_id=entry.seller_id,
                seller_name=names[entry.seller_id],
                entry_id=entry.entry_id,
                total_quantity=entry.total_quantity,
                total_amount=entry.total_amount,
                amount_paid=entry.amount_paid,
                discount=entry.discount,
                crates_returned=entry.crates_returned,
                running_payment_outstanding=entry.running_payment_outstanding,
                running_quantity_outstanding=entry.running_quantity_outstanding,
                line_items=tuple(cascade.list_sales_line_items(context, entry.entry_id)),
            )
        )
    lines.sort(key=lambda line: (line.seller_name, line.seller_id))
    return DailyDues(
        day=day,
        item_id=item.item_id,
        item_name=item.item_name,
        unit_name=item.unit_name,
        show_crates=item.quantity_kind != QuantityKind.WEIGHT.value,
        lines=tuple(lines),
        total_amount=sum((line.total_amount for line in lines), ZERO),
        total_payment_outstanding=sum((line.running_payment_outstanding for line in lines), ZERO),
    )


# ---------------------------------------------------------------------------
# Plain-text rendering
# ---------------------------------------------------------------------------


def render_outstanding(summary: OutstandingSummary) -> List[str]:
    label = "Supplier" if summary.role is PartyRole.SUPPLIER else "Seller"
    lines = [f"{label:<16} {'Item':<16} {'Payment due':>14} {'Quantity due':>14}"]
    for view in summary.rows:
        lines.append(f"{view.party_id:<16} {view.item_id:<16} {view.payment_due:>14} {view.quantity_due:>14}")
    lines.append(f"{'Total':<33} {summary.total_payment_due:>14} {summary.total_quantity_due:>14}")
    return lines


def render_seller_ledger(ledger: SellerLedger) -> List[str]:
    lines = [f"Ledger for seller {ledger.seller_id}, item {ledger.item_id}"]
    if ledger.opening is not None:
        lines.append(
            f"  Opening from {ledger.opening.effective_from_date}: "
            f"payment={ledger.opening.opening_payment_due} quantity={ledger.opening.opening_quantity_due}"
        )
    for line in ledger.lines:
        lines.append(
            f"  {line.session_date} {line.entry_id} qty={line.total_quantity} amount={line.total_amount} "
            f"paid={line.amount_paid} discount={line.discount} crates={line.crates_returned} "
            f"-> running payment={line.running_payment_outstanding} quantity={line.running_quantity_outstanding}"
        )
        for item in line.line_items:
            lines.append(f"      {item.variety_name}: {item.quantity} @ {item.sale_rate} = {item.amount}")
    for payment in ledger.payments:
        lines.append(
            f"  {payment.payment_date} {payment.payment_id} received={payment.amount_received} "
            f"crates={payment.crates_returned}"
        )
    lines.append(
        f"  Outstanding: payment={ledger.outstanding.payment_due} quantity={ledger.outstanding.quantity_due}"
    )
    return lines


def render_stock(report: List[StockReportLine]) -> List[str]:
    if not report:
        return ["No stock on hand."]
    lines = [f"{'Item':<16} {'Variety':<16} {'Stock':>12} {'Avg rate':>12}"]
    for line in report:
        lines.append(f"{line.item_id:<16} {line.variety_name:<16} {line.stock:>12} {line.avg_rate:>12}")
    return lines


def render_daily_summary(summary: DailySummary) -> List[str]:
    lines = [f"Summary for {summary.day}"]
    if summary.procurement is None:
        lines.append("  Procurement: none")
    else:
        lines.append(
            f"  Procurement: {summary.procurement.total_suppliers} supplier(s), "
            f"total {summary.procurement.total_amount}"
        )
    if summary.sales is None:
        lines.append("  Sales: none")
    else:
        lines.append(
            f"  Sales: {summary.sales.total_sellers} seller(s), total {summary.sales.total_sales_amount}"
        )
    return lines


def render_supplier_ledger(ledger: SupplierLedger) -> List[str]:
    lines = [f"Ledger for supplier {ledger.supplier_id}, item {ledger.item_id}"]
    if ledger.opening is not None:
        lines.append(
            f"  Opening from {ledger.opening.effective_from_date}: "
            f"payment={ledger.opening.opening_payment_due} quantity={ledger.opening.opening_quantity_due}"
        )
    for line in ledger.lines:
        lines.append(
            f"  {line.day} {line.kind:<11} {line.reference} {line.description} "
            f"debit={line.debit} credit={line.credit} qty={line.quantity_change} "
            f"-> running payment={line.running_payment_outstanding} quantity={line.running_quantity_outstanding}"
        )
    lines.append(
        f"  Outstanding: payment={ledger.outstanding.payment_due} quantity={ledger.outstanding.quantity_due}"
    )
    return lines


def render_profit_analysis(analysis: ProfitAnalysis) -> List[str]:
    scope = f" for item {analysis.item_id}" if analysis.item_id else ""
    return [
        f"Profit from {analysis.start_date} to {analysis.end_date}{scope}",
        f"  Sales:        {analysis.total_sales:>14}",
        f"  Procurement:  {analysis.total_procurement:>14}",
        f"  Gross profit: {analysis.gross_profit:>14}",
        f"  Margin:       {analysis.profit_margin:>13}%",
    ]


def render_daily_dues(dues: DailyDues) -> List[str]:
    lines = [f"Dues for {dues.item_name} ({dues.item_id}) on {dues.day}"]
    if not dues.lines:
        lines.append("  No sales.")
        return lines
    for line in dues.lines:
        crates = f" crates={line.crates_returned}" if dues.show_crates else ""
        lines.append(
            f"  {line.seller_name:<16} qty={line.total_quantity} amount={line.total_amount} "
            f"paid={line.amount_paid} discount={line.discount}{crates} "
            f"-> owes payment={line.running_payment_outstanding} quantity={line.running_quantity_outstanding}"
        )
        for item in line.line_items:
            lines.append(f"      {item.variety_name}: {item.quantity} @ {item.sale_rate} = {item.amount}")
    lines.append(f"  Total sold {dues.total_amount}, outstanding after these sales {dues.total_payment_outstanding}")
    return lines
