"""Tests for the integrity auditor."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from conftest import DAY1, DAY2, ITEM, SELLER, SUPPLIER
from produce_ledger import auditor, balances, cascade, core_logic, data_manager
from produce_ledger.constants import PartyRole, SheetName


@pytest.fixture
def busy_ledger(ledger, procure, sell):
    procure("100", "10")
    sell([("Desi", "40", "15")], day=DAY1, paid="500")
    sell([("Desi", "10", "15")], day=DAY2)
    cascade.add_supplier_payment(ledger, cascade.SupplierPaymentCommand(SUPPLIER, ITEM, "200"))
    return ledger


def _tamper_outstanding(context, role, party_id, **changes):
    sheet = SheetName.SUPPLIER_OUTSTANDING if role is PartyRole.SUPPLIER else SheetName.SELLER_OUTSTANDING
    row = balances.get_cached_outstanding(context, role, party_id, ITEM)
    core_logic.replace_record(context, sheet, replace(row, **changes))


def test_clean_ledger_has_no_findings(busy_ledger):
    report = auditor.run_integrity_check(busy_ledger)

    assert report.issues_found == 0
    assert report.issues == []
    assert report.message == "No discrepancies found"


def test_collect_pairs_covers_ledger_and_cache(busy_ledger):
    cascade.set_opening_balance(
        busy_ledger, cascade.OpeningBalanceCommand(PartyRole.SELLER, "SEL2", ITEM, "10", "0", DAY1)
    )

    assert auditor.collect_pairs(busy_ledger, PartyRole.SUPPLIER) == [(SUPPLIER, ITEM)]
    assert auditor.collect_pairs(busy_ledger, PartyRole.SELLER) == [(SELLER, ITEM), ("SEL2", ITEM)]


def test_wrong_cached_aggregate_is_reported_and_repaired(busy_ledger):
    _tamper_outstanding(busy_ledger, PartyRole.SUPPLIER, SUPPLIER, payment_due=Decimal("1"))

    report = auditor.run_integrity_check(busy_ledger)

    assert report.issues_found == 1
    (issue,) = report.issues
    assert (issue.role, issue.kind, issue.expected, issue.actual) == (
        PartyRole.SUPPLIER,
        "aggregate",
        (Decimal("800"), Decimal("100")),
        (Decimal("1"), Decimal("100")),
    )
    assert "run with repair" in report.message
    assert balances.get_outstanding(busy_ledger, PartyRole.SUPPLIER, SUPPLIER, ITEM).payment_due == Decimal("1")

    repaired = auditor.run_integrity_check(busy_ledger, repair=True)

    assert repaired.repairs_applied == 1
    assert balances.get_outstanding(busy_ledger, PartyRole.SUPPLIER, SUPPLIER, ITEM).payment_due == Decimal("800")
    assert auditor.run_integrity_check(busy_ledger).issues_found == 0


def test_missing_cache_row_is_reported(busy_ledger):
    key = data_manager.balance_key(SELLER, ITEM)
    core_logic.remove_record(busy_ledger, SheetName.SELLER_OUTSTANDING, key)

    report = auditor.run_integrity_check(busy_ledger, repair=True)

    assert [issue.kind for issue in report.issues] == ["missing"]
    assert report.issues[0].actual is None
    view = balances.get_outstanding(busy_ledger, PartyRole.SELLER, SELLER, ITEM)
    assert (view.payment_due, view.quantity_due) == (Decimal("250"), Decimal("50"))


def test_stale_running_balances_are_restamped_once_per_pair(busy_ledger):
    for entry in core_logic.table_rows(busy_ledger, SheetName.SALES_ENTRIES):
        core_logic.replace_record(
            busy_ledger, SheetName.SALES_ENTRIES, replace(entry, running_quantity_outstanding=Decimal("999"))
        )

    report = auditor.run_integrity_check(busy_ledger, repair=True)

    assert [issue.kind for issue in report.issues] == ["running", "running"]
    assert all(issue.entry_id for issue in report.issues)
    assert report.repairs_applied == 1
    assert report.message == "Found 2 discrepancies; applied 1 repair(s)"
    stamps = [row.running_quantity_outstanding for row in core_logic.table_rows(busy_ledger, SheetName.SALES_ENTRIES)]
    assert stamps == [Decimal("40"), Decimal("50")]


def test_differences_within_tolerance_are_ignored(busy_ledger):
    _tamper_outstanding(busy_ledger, PartyRole.SELLER, SELLER, payment_due=Decimal("250.005"))

    assert auditor.run_integrity_check(busy_ledger).issues_found == 0


def test_settled_pair_without_cache_row_is_not_a_finding(ledger):
    cascade.set_opening_balance(ledger, cascade.OpeningBalanceCommand(PartyRole.SUPPLIER, SUPPLIER, ITEM, "0", "0", DAY1))
    core_logic.remove_record(ledger, SheetName.SUPPLIER_OUTSTANDING, data_manager.balance_key(SUPPLIER, ITEM))

    assert auditor.run_integrity_check(ledger).issues_found == 0
