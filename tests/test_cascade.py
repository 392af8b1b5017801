"""Behavioral tests for the cascade orchestrator."""

from __future__ import annotations

import random
from decimal import Decimal

import pytest

from conftest import DAY1, DAY2, ITEM, SELLER, SUPPLIER, assert_stock_chain
from produce_ledger import auditor, balances, cascade, core_logic, inventory
from produce_ledger.constants import PartyRole, SheetName, WarningLevel


def _live(context, variety="Desi"):
    row = inventory.get_current_row(context, ITEM, variety)
    return row.current_stock if row is not None else Decimal("0")


def _supplier_due(context, supplier_id=SUPPLIER):
    view = balances.get_outstanding(context, PartyRole.SUPPLIER, supplier_id, ITEM)
    return view.payment_due, view.quantity_due


def _seller_due(context, seller_id=SELLER):
    view = balances.get_outstanding(context, PartyRole.SELLER, seller_id, ITEM)
    return view.payment_due, view.quantity_due


# ---------------------------------------------------------------------------
# Procurement
# ---------------------------------------------------------------------------


def test_add_procurement_cascades_everywhere(ledger, procure):
    entry = procure("100", "10")

    session = cascade.get_procurement_session(ledger, entry.session_id)
    assert session.session_date == DAY1
    assert (session.total_suppliers, session.total_amount) == (1, Decimal("1000"))
    assert entry.total_amount == Decimal("1000")
    assert _live(ledger) == Decimal("100")
    assert inventory.get_item_type(ledger, ITEM, "Desi").is_active
    assert _supplier_due(ledger) == (Decimal("1000"), Decimal("100"))


def test_procurements_on_one_date_share_a_session(ledger, procure):
    first = procure("10", "10")
    second = procure("5", "20", supplier_id="SUP2")
    third = procure("5", "20")

    assert first.session_id == second.session_id == third.session_id
    session = cascade.get_procurement_session(ledger, first.session_id)
    assert (session.total_suppliers, session.total_amount) == (2, Decimal("300"))
    assert len(core_logic.table_rows(ledger, SheetName.PROCUREMENT_SESSIONS)) == 1


@pytest.mark.parametrize(
    ("quantity", "rate"),
    [("0", "10"), ("-5", "10"), ("5", "-1")],
)
def test_add_procurement_rejects_bad_numbers(ledger, procure, quantity, rate):
    with pytest.raises(core_logic.ValidationError):
        procure(quantity, rate)


def test_add_procurement_rejects_future_date(ledger, procure):
    with pytest.raises(core_logic.ValidationError):
        procure("10", "10", day="2024-03-11")


def test_add_procurement_requires_active_supplier(ledger, procure):
    core_logic.set_party_active(ledger, PartyRole.SUPPLIER, SUPPLIER, False)

    with pytest.raises(core_logic.BusinessRuleViolation):
        procure("10", "10")
    with pytest.raises(core_logic.MissingReferenceError):
        procure("10", "10", supplier_id="ghost")
    assert core_logic.table_rows(ledger, SheetName.PROCUREMENT_SESSIONS) == []


def test_update_procurement_same_variety_shifts_stock(ledger, procure, sell):
    entry = procure("100", "10")
    sell([("Desi", "30", "15")])

    result = cascade.update_procurement_entry(ledger, entry.entry_id, cascade.ProcurementUpdate(quantity="80"))

    assert _live(ledger) == Decimal("50")
    assert (result.outstanding.payment_due, result.outstanding.quantity_due) == (Decimal("800"), Decimal("80"))
    assert cascade.get_procurement_entry(ledger, entry.entry_id).total_amount == Decimal("800")
    assert cascade.get_procurement_session(ledger, entry.session_id).total_amount == Decimal("800")


def test_update_procurement_rate_reweights_average(ledger, procure):
    entry = procure("100", "10")
    procure("100", "20")

    cascade.update_procurement_entry(ledger, entry.entry_id, cascade.ProcurementUpdate(rate="14"))

    assert inventory.get_current_row(ledger, ITEM, "Desi").weighted_avg_rate == Decimal("17")
    assert _supplier_due(ledger)[0] == Decimal("3400")


def test_update_procurement_below_sold_quantity_is_rejected(ledger, procure, sell):
    entry = procure("100", "10")
    sell([("Desi", "30", "15")])

    with pytest.raises(core_logic.InventoryViolation):
        cascade.update_procurement_entry(ledger, entry.entry_id, cascade.ProcurementUpdate(quantity="20"))

    assert cascade.get_procurement_entry(ledger, entry.entry_id).quantity == Decimal("100")
    assert _live(ledger) == Decimal("70")


def test_update_procurement_moves_lot_to_new_variety(ledger, procure):
    entry = procure("100", "10")

    cascade.update_procurement_entry(ledger, entry.entry_id, cascade.ProcurementUpdate(variety_name="Hybrid"))

    assert _live(ledger, "Desi") == Decimal("0")
    assert _live(ledger, "Hybrid") == Decimal("100")
    assert not inventory.get_item_type(ledger, ITEM, "Desi").is_active
    assert inventory.get_item_type(ledger, ITEM, "Hybrid").is_active
    assert inventory.get_daily_row(ledger, DAY1, ITEM, "Hybrid").purchased_today == Decimal("100")


def test_update_procurement_unknown_entry(ledger):
    with pytest.raises(core_logic.MissingReferenceError):
        cascade.update_procurement_entry(ledger, "PE-missing", cascade.ProcurementUpdate(quantity="1"))


def test_delete_procurement_removes_lot_and_empty_session(ledger, procure):
    entry = procure("100", "10")

    result = cascade.delete_procurement_entry(ledger, entry.entry_id)

    assert "session" in result.message
    assert core_logic.table_rows(ledger, SheetName.PROCUREMENT_SESSIONS) == []
    assert _live(ledger) == Decimal("0")
    assert (result.outstanding.payment_due, result.outstanding.quantity_due) == (Decimal("0"), Decimal("0"))


def test_delete_procurement_keeps_session_with_other_entries(ledger, procure):
    entry = procure("100", "10")
    other = procure("50", "10", supplier_id="SUP2")

    cascade.delete_procurement_entry(ledger, entry.entry_id)

    session = cascade.get_procurement_session(ledger, other.session_id)
    assert (session.total_suppliers, session.total_amount) == (1, Decimal("500"))


def test_delete_procurement_with_sold_stock_requires_force(ledger, procure, sell):
    entry = procure("100", "10", day=DAY1)
    sell([("Desi", "60", "15")], day=DAY2)

    with pytest.raises(core_logic.InventoryViolation):
        cascade.delete_procurement_entry(ledger, entry.entry_id)
    assert _live(ledger) == Decimal("40")

    cascade.delete_procurement_entry(ledger, entry.entry_id, force=True)

    assert _live(ledger) == Decimal("0")
    later = inventory.get_daily_row(ledger, DAY2, ITEM, "Desi")
    assert (later.opening_stock, later.closing_stock) == (Decimal("0"), Decimal("0"))
    assert _supplier_due(ledger) == (Decimal("0"), Decimal("0"))
    assert_stock_chain(ledger)


def test_forced_delete_then_sale_delete_leaves_only_recorded_stock(ledger, procure, sell):
    entry = procure("100", "10", day=DAY1)
    sale = sell([("Desi", "80", "15")], day=DAY2)
    cascade.delete_procurement_entry(ledger, entry.entry_id, force=True)
    procure("50", "12", day="2024-03-03")

    cascade.delete_sales_entry(ledger, sale.entry_id)

    rows = [
        (row.inventory_date, row.opening_stock, row.purchased_today, row.sold_today, row.closing_stock)
        for row in inventory.daily_history(ledger, ITEM, "Desi")
    ]
    assert rows == [
        (DAY1, Decimal("0"), Decimal("0"), Decimal("0"), Decimal("0")),
        (DAY2, Decimal("0"), Decimal("0"), Decimal("0"), Decimal("0")),
        ("2024-03-03", Decimal("0"), Decimal("50"), Decimal("0"), Decimal("50")),
    ]
    assert _live(ledger) == Decimal("50")
    assert inventory.get_current_row(ledger, ITEM, "Desi").weighted_avg_rate == Decimal("12")
    assert_stock_chain(ledger)


def test_procurement_after_forced_delete_covers_the_short_day(ledger, procure, sell):
    entry = procure("100", "10", day=DAY1)
    sell([("Desi", "80", "15")], day=DAY2)
    cascade.delete_procurement_entry(ledger, entry.entry_id, force=True)

    procure("90", "10", day=DAY1)

    assert inventory.get_daily_row(ledger, DAY2, ITEM, "Desi").closing_stock == Decimal("10")
    assert _live(ledger) == Decimal("10")
    assert_stock_chain(ledger)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def test_add_sales_entry_with_several_varieties(ledger, procure, sell):
    procure("50", "10", variety="Desi")
    procure("50", "12", variety="Hybrid")

    entry = sell([("Desi", "10", "15"), ("Hybrid", "5", "20")], paid="100", discount="10", crates="3")

    assert (entry.total_quantity, entry.total_amount) == (Decimal("15"), Decimal("250"))
    lines = cascade.list_sales_line_items(ledger, entry.entry_id)
    assert [(line.variety_name, line.amount) for line in lines] == [("Desi", Decimal("150")), ("Hybrid", Decimal("100"))]
    assert (_live(ledger, "Desi"), _live(ledger, "Hybrid")) == (Decimal("40"), Decimal("45"))
    assert _seller_due(ledger) == (Decimal("140"), Decimal("12"))
    assert (entry.running_payment_outstanding, entry.running_quantity_outstanding) == (Decimal("140"), Decimal("12"))


def test_sales_session_counts_distinct_sellers(ledger, procure, sell):
    procure("100", "10")
    first = sell([("Desi", "10", "15")])
    sell([("Desi", "10", "15")])
    sell([("Desi", "10", "15")], seller_id="SEL2")

    session = cascade.get_sales_session(ledger, first.session_id)
    assert (session.total_sellers, session.total_sales_amount) == (2, Decimal("450"))


def test_failed_line_leaves_no_partial_sale(ledger, procure, sell):
    """A sale whose second line overdraws stock must not keep the first line."""

    procure("50", "10", variety="Desi")
    procure("5", "10", variety="Hybrid")

    with pytest.raises(core_logic.InventoryViolation):
        sell([("Desi", "10", "15"), ("Hybrid", "6", "15")])

    assert _live(ledger, "Desi") == Decimal("50")
    assert core_logic.table_rows(ledger, SheetName.SALES_LINE_ITEMS) == []
    assert balances.get_cached_outstanding(ledger, PartyRole.SELLER, SELLER, ITEM) is None


def test_add_sales_entry_rejects_empty_lines_and_inactive_seller(ledger, procure, sell):
    procure("10", "10")
    with pytest.raises(core_logic.ValidationError):
        sell([])

    core_logic.set_party_active(ledger, PartyRole.SELLER, SELLER, False)
    with pytest.raises(core_logic.BusinessRuleViolation):
        sell([("Desi", "1", "15")])


def test_update_sales_lines_frees_old_stock_first(ledger, procure, sell):
    procure("100", "10")
    entry = sell([("Desi", "40", "15")])

    cascade.update_sales_entry(
        ledger, entry.entry_id, cascade.SalesUpdate(line_items=[cascade.SaleLine("Desi", "100", "15")])
    )

    assert _live(ledger) == Decimal("0")
    assert cascade.get_sales_entry(ledger, entry.entry_id).total_amount == Decimal("1500")

    with pytest.raises(core_logic.InventoryViolation):
        cascade.update_sales_entry(
            ledger, entry.entry_id, cascade.SalesUpdate(line_items=[cascade.SaleLine("Desi", "101", "15")])
        )
    assert _live(ledger) == Decimal("0")
    assert len(cascade.list_sales_line_items(ledger, entry.entry_id)) == 1


def test_update_sales_payment_restamps_running_balance(ledger, procure, sell):
    procure("100", "10")
    first = sell([("Desi", "40", "15")], day=DAY1, paid="500")
    second = sell([("Desi", "10", "15")], day=DAY2)

    result = cascade.update_sales_entry(ledger, first.entry_id, cascade.SalesUpdate(amount_paid="600"))

    assert cascade.get_sales_entry(ledger, first.entry_id).running_payment_outstanding == Decimal("0")
    assert cascade.get_sales_entry(ledger, second.entry_id).running_payment_outstanding == Decimal("150")
    assert result.outstanding.payment_due == Decimal("150")


def test_delete_sales_entry_restores_stock_and_session(ledger, procure, sell):
    procure("100", "10")
    entry = sell([("Desi", "40", "15")])

    result = cascade.delete_sales_entry(ledger, entry.entry_id, force=True)

    assert _live(ledger) == Decimal("100")
    assert core_logic.table_rows(ledger, SheetName.SALES_SESSIONS) == []
    assert core_logic.table_rows(ledger, SheetName.SALES_LINE_ITEMS) == []
    assert result.outstanding.payment_due == Decimal("0")
    with pytest.raises(core_logic.MissingReferenceError):
        cascade.get_sales_entry(ledger, entry.entry_id)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def test_supplier_payment_lifecycle(ledger, procure):
    procure("100", "10")

    payment = cascade.add_supplier_payment(
        ledger, cascade.SupplierPaymentCommand(SUPPLIER, ITEM, "300", "20", payment_date=DAY2)
    )
    assert _supplier_due(ledger) == (Decimal("700"), Decimal("80"))

    cascade.update_supplier_payment(ledger, payment.payment_id, cascade.SupplierPaymentUpdate(amount_paid="500"))
    assert _supplier_due(ledger) == (Decimal("500"), Decimal("80"))

    cascade.delete_supplier_payment(ledger, payment.payment_id)
    assert _supplier_due(ledger) == (Decimal("1000"), Decimal("100"))


def test_payment_must_settle_something(ledger, procure):
    procure("100", "10")
    with pytest.raises(core_logic.ValidationError):
        cascade.add_supplier_payment(ledger, cascade.SupplierPaymentCommand(SUPPLIER, ITEM, "0", "0"))

    payment = cascade.add_supplier_payment(ledger, cascade.SupplierPaymentCommand(SUPPLIER, ITEM, "0", "5"))
    with pytest.raises(core_logic.ValidationError):
        cascade.update_supplier_payment(ledger, payment.payment_id, cascade.SupplierPaymentUpdate(crates_returned="0"))


def test_payments_accept_inactive_but_not_unknown_parties(ledger):
    core_logic.set_party_active(ledger, PartyRole.SELLER, SELLER, False)

    cascade.add_seller_payment(ledger, cascade.SellerPaymentCommand(SELLER, ITEM, "50"))
    assert _seller_due(ledger) == (Decimal("-50"), Decimal("0"))

    with pytest.raises(core_logic.MissingReferenceError):
        cascade.add_seller_payment(ledger, cascade.SellerPaymentCommand("ghost", ITEM, "50"))


def test_payment_dated_in_future_is_rejected(ledger):
    with pytest.raises(core_logic.ValidationError):
        cascade.add_supplier_payment(
            ledger, cascade.SupplierPaymentCommand(SUPPLIER, ITEM, "10", payment_date="2024-03-11")
        )


def test_seller_payment_update_and_delete_restamp(ledger, procure, sell):
    procure("100", "10")
    sell([("Desi", "10", "10")], day=DAY1)
    later = sell([("Desi", "10", "10")], day="2024-03-03")
    payment = cascade.add_seller_payment(
        ledger, cascade.SellerPaymentCommand(SELLER, ITEM, "50", payment_date="2024-03-05")
    )
    assert cascade.get_sales_entry(ledger, later.entry_id).running_payment_outstanding == Decimal("200")

    cascade.update_seller_payment(ledger, payment.payment_id, cascade.SellerPaymentUpdate(payment_date=DAY2))
    assert cascade.get_sales_entry(ledger, later.entry_id).running_payment_outstanding == Decimal("150")

    result = cascade.delete_seller_payment(ledger, payment.payment_id)
    assert cascade.get_sales_entry(ledger, later.entry_id).running_payment_outstanding == Decimal("200")
    assert result.outstanding.payment_due == Decimal("200")


# ---------------------------------------------------------------------------
# Damage
# ---------------------------------------------------------------------------


def test_damage_return_leaves_stock_and_lowers_supplier_due(ledger, procure):
    procure("100", "10")

    damage = cascade.record_damage_entry(
        ledger, cascade.DamageCommand(SUPPLIER, ITEM, "Desi", "10", "6", "40", damage_date=DAY2)
    )

    assert _live(ledger) == Decimal("94")
    assert inventory.get_daily_row(ledger, DAY2, ITEM, "Desi").purchased_today == Decimal("-6")
    assert _supplier_due(ledger) == (Decimal("960"), Decimal("94"))

    cascade.delete_damage_entry(ledger, damage.damage_id)

    assert _live(ledger) == Decimal("100")
    assert _supplier_due(ledger) == (Decimal("1000"), Decimal("100"))


def test_damage_discount_only_keeps_stock(ledger, procure):
    procure("100", "10")

    cascade.record_damage_entry(ledger, cascade.DamageCommand(SUPPLIER, ITEM, "Desi", "5", "0", "25"))

    assert _live(ledger) == Decimal("100")
    assert _supplier_due(ledger) == (Decimal("975"), Decimal("100"))


def test_damage_return_cannot_exceed_damaged(ledger, procure):
    procure("100", "10")
    with pytest.raises(core_logic.ValidationError):
        cascade.record_damage_entry(ledger, cascade.DamageCommand(SUPPLIER, ITEM, "Desi", "5", "6"))


def test_damage_return_cannot_exceed_stock(ledger, procure):
    procure("5", "10")
    with pytest.raises(core_logic.InventoryViolation):
        cascade.record_damage_entry(ledger, cascade.DamageCommand(SUPPLIER, ITEM, "Desi", "8", "8"))
    assert core_logic.table_rows(ledger, SheetName.DAMAGE_ENTRIES) == []


# ---------------------------------------------------------------------------
# Deletion impact analysis
# ---------------------------------------------------------------------------


def test_procurement_impact_without_dependants_is_low(ledger, procure):
    entry = procure("100", "10")

    impact = cascade.analyze_procurement_deletion(ledger, entry.entry_id)

    assert impact.can_delete
    assert impact.warning_level is WarningLevel.LOW
    assert impact.restrictions == ()
    assert any("session" in effect for effect in impact.cascade_effects)


def test_procurement_impact_with_covered_sales_is_medium(ledger, procure, sell):
    entry = procure("100", "10")
    procure("100", "10")
    sell([("Desi", "50", "15")], day=DAY2)

    impact = cascade.analyze_procurement_deletion(ledger, entry.entry_id)

    assert impact.can_delete
    assert impact.warning_level is WarningLevel.MEDIUM


def test_procurement_impact_with_shortfall_is_high(ledger, procure, sell):
    entry = procure("100", "10")
    sell([("Desi", "50", "15")], day=DAY2)

    impact = cascade.analyze_procurement_deletion(ledger, entry.entry_id)

    assert not impact.can_delete
    assert impact.warning_level is WarningLevel.HIGH
    assert len(impact.restrictions) == 1
    assert _live(ledger) == Decimal("50")


def test_sales_impact_flags_later_siblings(ledger, procure, sell):
    procure("100", "10")
    first = sell([("Desi", "10", "15")], day=DAY1)
    second = sell([("Desi", "10", "15")], day=DAY2)

    assert cascade.analyze_sales_deletion(ledger, first.entry_id).warning_level is WarningLevel.MEDIUM
    last = cascade.analyze_sales_deletion(ledger, second.entry_id)
    assert last.warning_level is WarningLevel.LOW
    assert last.can_delete


# ---------------------------------------------------------------------------
# Opening balances
# ---------------------------------------------------------------------------


def test_opening_balance_requires_known_party(ledger):
    command = cascade.OpeningBalanceCommand(PartyRole.SUPPLIER, "ghost", ITEM, "10", "1", DAY1)
    with pytest.raises(core_logic.MissingReferenceError):
        cascade.set_opening_balance(ledger, command)


def test_supplier_opening_balance_feeds_aggregate(ledger, procure):
    procure("10", "10")
    result = cascade.set_opening_balance(
        ledger, cascade.OpeningBalanceCommand("supplier", SUPPLIER, ITEM, "250", "4", DAY1)
    )

    assert (result.outstanding.payment_due, result.outstanding.quantity_due) == (Decimal("350"), Decimal("14"))


# ---------------------------------------------------------------------------
# Conservation under random operations
# ---------------------------------------------------------------------------


def test_random_operations_conserve_stock_and_balances(ledger, procure, sell):
    """Whatever succeeds or fails, derived state must agree with the ledger rows."""

    rng = random.Random(20240301)
    days = ["2024-03-01", "2024-03-02", "2024-03-03", "2024-03-04"]
    varieties = ["Desi", "Hybrid"]
    procurements, sales, payments, damages = [], [], [], []
    for _ in range(120):
        roll = rng.random()
        day = rng.choice(days)
        variety = rng.choice(varieties)
        seller = rng.choice([SELLER, "SEL2"])
        try:
            if roll < 0.2:
                entry = procure(str(rng.randint(1, 30)), str(rng.randint(5, 15)), day=day, variety=variety)
                procurements.append(entry.entry_id)
            elif roll < 0.28 and procurements:
                changes = cascade.ProcurementUpdate(
                    quantity=str(rng.randint(1, 30)),
                    rate=str(rng.randint(5, 15)),
                    variety_name=rng.choice(varieties),
                )
                cascade.update_procurement_entry(ledger, rng.choice(procurements), changes)
            elif roll < 0.34 and procurements:
                entry_id = rng.choice(procurements)
                cascade.delete_procurement_entry(ledger, entry_id)
                procurements.remove(entry_id)
            elif roll < 0.56:
                entry = sell(
                    [(variety, str(rng.randint(1, 20)), "20")], day=day, paid=str(rng.randint(0, 50)), seller_id=seller
                )
                sales.append(entry.entry_id)
            elif roll < 0.64 and sales:
                changes = cascade.SalesUpdate(
                    amount_paid=str(rng.randint(0, 50)),
                    line_items=[cascade.SaleLine(variety, str(rng.randint(1, 20)), "18")],
                )
                cascade.update_sales_entry(ledger, rng.choice(sales), changes)
            elif roll < 0.7 and sales:
                entry_id = rng.choice(sales)
                cascade.delete_sales_entry(ledger, entry_id)
                sales.remove(entry_id)
            elif roll < 0.78:
                command = cascade.SellerPaymentCommand(seller, ITEM, str(rng.randint(1, 40)), payment_date=day)
                payments.append(cascade.add_seller_payment(ledger, command).payment_id)
            elif roll < 0.81 and payments:
                changes = cascade.SellerPaymentUpdate(amount_received=str(rng.randint(1, 40)), payment_date=day)
                cascade.update_seller_payment(ledger, rng.choice(payments), changes)
            elif roll < 0.84 and payments:
                payment_id = rng.choice(payments)
                cascade.delete_seller_payment(ledger, payment_id)
                payments.remove(payment_id)
            elif roll < 0.94:
                damaged = rng.randint(1, 10)
                command = cascade.DamageCommand(
                    SUPPLIER, ITEM, variety, str(damaged), str(rng.randint(0, damaged)), str(rng.randint(0, 20)), day
                )
                damages.append(cascade.record_damage_entry(ledger, command).damage_id)
            elif damages:
                damage_id = rng.choice(damages)
                cascade.delete_damage_entry(ledger, damage_id)
                damages.remove(damage_id)
        except core_logic.InventoryViolation:
            pass

    for variety in varieties:
        procured = sum(
            (row.quantity for row in core_logic.table_rows(ledger, SheetName.PROCUREMENT_ENTRIES) if row.variety_name == variety),
            Decimal("0"),
        )
        sold = sum(
            (row.quantity for row in core_logic.table_rows(ledger, SheetName.SALES_LINE_ITEMS) if row.variety_name == variety),
            Decimal("0"),
        )
        returned = sum(
            (
                row.damaged_returned_quantity
                for row in core_logic.table_rows(ledger, SheetName.DAMAGE_ENTRIES)
                if row.variety_name == variety
            ),
            Decimal("0"),
        )
        assert _live(ledger, variety) == procured - sold - returned
        assert_stock_chain(ledger, variety)

    for supplier in (SUPPLIER, "SUP2"):
        cached = balances.get_outstanding(ledger, PartyRole.SUPPLIER, supplier, ITEM)
        computed = balances.compute_supplier_outstanding(ledger, supplier, ITEM)
        assert (cached.payment_due, cached.quantity_due) == (computed.payment_due, computed.quantity_due)
    for seller in (SELLER, "SEL2"):
        cached = balances.get_outstanding(ledger, PartyRole.SELLER, seller, ITEM)
        computed = balances.compute_seller_outstanding(ledger, seller, ITEM)
        assert (cached.payment_due, cached.quantity_due) == (computed.payment_due, computed.quantity_due)
        assert balances.recalculate_all_transactions_from_date(ledger, seller, ITEM, balances.EARLIEST_DATE) == 0
    assert auditor.run_integrity_check(ledger).issues_found == 0
