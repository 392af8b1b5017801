"""Integrity auditor for the outstanding balance cache and seller running balances.

The auditor never trusts derived state: it recomputes every aggregate from
the ledger sheets and compares it against the cached rows. Findings are
returned, not raised, so a caller can print them and decide whether to
repair.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Set, Tuple

from . import balances, core_logic, log
from .constants import OPENING_BALANCE_SHEETS, OUTSTANDING_SHEETS, PartyRole, SheetName
from .core_logic import RuntimeContext, unit_of_work


Pair = Tuple[str, str]

_SUPPLIER_LEDGER_SHEETS = (SheetName.PROCUREMENT_ENTRIES, SheetName.SUPPLIER_PAYMENTS, SheetName.DAMAGE_ENTRIES)
_SELLER_LEDGER_SHEETS = (SheetName.SALES_ENTRIES, SheetName.SELLER_PAYMENTS)


@dataclass(frozen=True)
class IntegrityMismatch:
    """One divergence between derived state and the ledger.

    ``kind`` is ``"aggregate"`` for a cache row with wrong figures,
    ``"missing"`` for an absent cache row that should owe something and
    ``"running"`` for a stale running balance on a sales entry.
    """

    role: PartyRole
    party_id: str
    item_id: str
    kind: str
    expected: Tuple[Decimal, Decimal]
    actual: Optional[Tuple[Decimal, Decimal]]
    message: str
    entry_id: Optional[str] = None


@dataclass
class IntegrityReport:
    issues_found: int = 0
    repairs_applied: int = 0
    issues: List[IntegrityMismatch] = field(default_factory=list)
    repairs: List[str] = field(default_factory=list)
    message: str = ""


def _party_of(row) -> str:
    return getattr(row, "supplier_id", None) or getattr(row, "seller_id", None) or row.party_id


def collect_pairs(context: RuntimeContext, role: PartyRole) -> List[Pair]:
    """Every (party, item) pair with ledger activity, an opening balance or a cache row."""
    sheets: Iterable[SheetName] = _SUPPLIER_LEDGER_SHEETS if role is PartyRole.SUPPLIER else _SELLER_LEDGER_SHEETS
    pairs: Set[Pair] = set()
    for sheet in (*sheets, OPENING_BALANCE_SHEETS[role], OUTSTANDING_SHEETS[role]):
        for row in core_logic.table_rows(context, sheet):
            pairs.add((_party_of(row), row.item_id))
    return sorted(pairs)


def _outside(expected: Decimal, actual: Decimal, tolerance: Decimal) -> bool:
    return abs(expected - actual) > tolerance


def _check_aggregate(
    context: RuntimeContext, role: PartyRole, party_id: str, item_id: str, tolerance: Decimal
) -> Optional[IntegrityMismatch]:
    expected = balances.compute_outstanding(context, role, party_id, item_id)
    cached = balances.get_cached_outstanding(context, role, party_id, item_id)
    figures = (expected.payment_due, expected.quantity_due)
    if cached is None:
        if expected.is_zero():
            return None
        return IntegrityMismatch(
            role,
            party_id,
            item_id,
            "missing",
            figures,
            None,
            f"{role.value} {party_id}/{item_id}: no cached outstanding, expected "
            f"payment={expected.payment_due} quantity={expected.quantity_due}",
        )
    if not (
        _outside(expected.payment_due, cached.payment_due, tolerance)
        or _outside(expected.quantity_due, cached.quantity_due, tolerance)
    ):
        return None
    return IntegrityMismatch(
        role,
        party_id,
        item_id,
        "aggregate",
        figures,
        (cached.payment_due, cached.quantity_due),
        f"{role.value} {party_id}/{item_id}: cached payment={cached.payment_due} "
        f"quantity={cached.quantity_due}, expected payment={expected.payment_due} "
        f"quantity={expected.quantity_due}",
    )


def _check_running(
    context: RuntimeContext, seller_id: str, item_id: str, tolerance: Decimal
) -> List[IntegrityMismatch]:
    findings: List[IntegrityMismatch] = []
    for balance in balances.compute_running_balances(context, seller_id, item_id):
        entry = core_logic.find_record(context, SheetName.SALES_ENTRIES, balance.entry_id)
        if not (
            _outside(balance.payment_outstanding, entry.running_payment_outstanding, tolerance)
            or _outside(balance.quantity_outstanding, entry.running_quantity_outstanding, tolerance)
        ):
            continue
        findings.append(
            IntegrityMismatch(
                PartyRole.SELLER,
                seller_id,
                item_id,
                "running",
                (balance.payment_outstanding, balance.quantity_outstanding),
                (entry.running_payment_outstanding, entry.running_quantity_outstanding),
                f"sales entry {entry.entry_id} ({balance.session_date}): running "
                f"payment={entry.running_payment_outstanding} quantity={entry.running_quantity_outstanding}, "
                f"expected payment={balance.payment_outstanding} quantity={balance.quantity_outstanding}",
                entry_id=entry.entry_id,
            )
        )
    return findings


def _repair(context: RuntimeContext, issues: List[IntegrityMismatch]) -> List[str]:
    repairs: List[str] = []
    restamped: Set[Pair] = set()
    with unit_of_work(context, "run_integrity_check"):
        for issue in issues:
            if issue.kind == "running":
                pair = (issue.party_id, issue.item_id)
                if pair in restamped:
                    continue
                restamped.add(pair)
                changed = balances.recalculate_all_transactions_from_date(
                    context, issue.party_id, issue.item_id, balances.EARLIEST_DATE
                )
                repairs.append(f"Restamped {changed} running balance(s) for seller {issue.party_id}/{issue.item_id}")
            else:
                view = balances.recalculate_outstanding(context, issue.role, issue.party_id, issue.item_id)
                repairs.append(
                    f"Rewrote {issue.role.value} outstanding {issue.party_id}/{issue.item_id}: "
                    f"payment={view.payment_due} quantity={view.quantity_due}"
                )
    return repairs


def run_integrity_check(context: RuntimeContext, *, repair: bool = False) -> IntegrityReport:
    """Recompute every outstanding figure from the ledger and diff it against the cache.

    Args:
        context (RuntimeContext): Active runtime context.
        repair (bool): When ``True`` overwrite wrong cache rows and restamp
            stale running balances inside a single unit of work.

    Returns:
        IntegrityReport: Findings and, when repairing, the repairs applied.
    """
    tolerance = context.settings.balance_tolerance
    issues: List[IntegrityMismatch] = []
    for role in PartyRole:
        for party_id, item_id in collect_pairs(context, role):
            finding = _check_aggregate(context, role, party_id, item_id, tolerance)
            if finding is not None:
                issues.append(finding)
            if role is PartyRole.SELLER:
                issues.extend(_check_running(context, party_id, item_id, tolerance))

    for issue in issues:
        log.warning("Integrity mismatch: %s", issue.message)

    report = IntegrityReport(issues_found=len(issues), issues=issues)
    if repair and issues:
        report.repairs = _repair(context, issues)
        report.repairs_applied = len(report.repairs)

    if not issues:
        report.message = "No discrepancies found"
    elif repair:
        report.message = f"Found {len(issues)} discrepancies; applied {report.repairs_applied} repair(s)"
    else:
        report.message = f"Found {len(issues)} discrepancies; run with repair to fix them"
    log.info("Integrity check finished: %s", report.message)
    return report

