"""Type registry and dual inventory store.

Stock is tracked per (item, variety) in two views that must agree:

* ``CurrentInventory`` holds the live stock and is the answer for today.
* ``DailyInventory`` holds one dated row per (date, item, variety) and is the
  answer for any other date.

A row's ``purchased_today`` and ``sold_today`` counters are the net of the
movements recorded on its date. Every movement dated ``D`` adjusts the ``D``
counters and then re-derives the chain from ``D`` forward: opening stock
from the previous row's closing, closing stock from the counters, and the
weighted purchase rate from the lots procured on each date. The live row
mirrors the latest daily row. Reads never search backward.
Movements that would leave any affected stock figure below zero raise
:class:`~produce_ledger.core_logic.InventoryViolation` unless the caller
explicitly forces the change, in which case the short rows close at zero.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from . import core_logic, data_manager, log
from .constants import RATE_QUANTUM, ZERO, SheetName
from .core_logic import RuntimeContext


@dataclass(frozen=True)
class StockLevel:
    """Stock of one variety as of a given date."""

    variety_name: str
    stock: Decimal
    avg_rate: Decimal


def blend_rate(base_quantity: Decimal, base_rate: Decimal, quantity: Decimal, rate: Decimal) -> Decimal:
    """Weight a new lot into an average purchase rate.

    ``(old_stock*old_avg + qty*rate) / (old_stock + qty)``, quantized to four
    decimals, never negative, and zero when nothing is left to average over.
    """
    total = base_quantity + quantity
    if total <= ZERO:
        return ZERO
    value = base_quantity * base_rate + quantity * rate
    return max(value / total, ZERO).quantize(RATE_QUANTUM)


# ---------------------------------------------------------------------------
# Type registry
# ---------------------------------------------------------------------------


def get_item_type(context: RuntimeContext, item_id: str, variety_name: str) -> Optional[data_manager.ItemTypeRow]:
    return core_logic.find_record(context, SheetName.ITEM_TYPES, data_manager.inventory_key(item_id, variety_name))


def list_item_types(
    context: RuntimeContext,
    item_id: str,
    *,
    include_inactive: bool = False,
) -> List[data_manager.ItemTypeRow]:
    """Return the varieties registered for ``item_id`` in first-seen order."""
    index = core_logic.index_rows(context, SheetName.ITEM_TYPES, "by_item", lambda row: row.item_id)
    rows = [row for row in index.get(item_id, []) if include_inactive or row.is_active]
    return sorted(rows, key=lambda row: (row.first_seen_date, row.variety_name))


def touch_item_type(context: RuntimeContext, item_id: str, variety_name: str, on_date: str) -> data_manager.ItemTypeRow:
    """Register a procured variety or widen its seen-window and reactivate it."""

    existing = get_item_type(context, item_id, variety_name)
    if existing is None:
        row = data_manager.ItemTypeRow(
            type_key=data_manager.inventory_key(item_id, variety_name),
            item_id=item_id,
            variety_name=variety_name,
            first_seen_date=on_date,
            last_seen_date=on_date,
            is_active=True,
        )
        core_logic.insert_record(context, SheetName.ITEM_TYPES, row)
        log.info("Registered variety '%s' for item '%s' (first seen %s)", variety_name, item_id, on_date)
        return row

    row = replace(
        existing,
        first_seen_date=min(existing.first_seen_date, on_date),
        last_seen_date=max(existing.last_seen_date, on_date),
        is_active=True,
    )
    if row != existing:
        core_logic.replace_record(context, SheetName.ITEM_TYPES, row)
    return row


def deactivate_if_empty(context: RuntimeContext, item_id: str, variety_name: str) -> bool:
    """Mark a variety inactive when it has no live stock left.

    Returns:
        bool: ``True`` when the variety was deactivated by this call.
    """
    item_type = get_item_type(context, item_id, variety_name)
    if item_type is None or not item_type.is_active:
        return False
    current = get_current_row(context, item_id, variety_name)
    if current is not None and current.current_stock > ZERO:
        return False
    core_logic.replace_record(context, SheetName.ITEM_TYPES, replace(item_type, is_active=False))
    log.info("Variety '%s' of item '%s' deactivated (no stock left)", variety_name, item_id)
    return True


def _reactivate_if_stocked(context: RuntimeContext, item_id: str, variety_name: str) -> None:
    item_type = get_item_type(context, item_id, variety_name)
    if item_type is not None and not item_type.is_active:
        core_logic.replace_record(context, SheetName.ITEM_TYPES, replace(item_type, is_active=True))
        log.info("Variety '%s' of item '%s' reactivated", variety_name, item_id)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_current_row(context: RuntimeContext, item_id: str, variety_name: str) -> Optional[data_manager.CurrentInventoryRow]:
    return core_logic.find_record(
        context, SheetName.CURRENT_INVENTORY, data_manager.inventory_key(item_id, variety_name)
    )


def get_daily_row(
    context: RuntimeContext, on_date: str, item_id: str, variety_name: str
) -> Optional[data_manager.DailyInventoryRow]:
    return core_logic.find_record(
        context, SheetName.DAILY_INVENTORY, data_manager.snapshot_key(on_date, item_id, variety_name)
    )


def daily_history(context: RuntimeContext, item_id: str, variety_name: str) -> List[data_manager.DailyInventoryRow]:
    """Return the daily rows of one (item, variety) ordered by date."""
    index = core_logic.index_rows(
        context,
        SheetName.DAILY_INVENTORY,
        "by_item_variety",
        lambda row: (row.item_id, row.variety_name),
    )
    return sorted(index.get((item_id, variety_name), []), key=lambda row: row.inventory_date)


def get_available_stock(context: RuntimeContext, item_id: str, on_date: Optional[str] = None) -> List[StockLevel]:
    """Return the varieties of ``item_id`` with stock as of ``on_date``.

    Today is answered from ``CurrentInventory``. Earlier dates are answered
    only from the ``DailyInventory`` rows of that exact date; a variety
    without such a row has no stock on that date. Later dates have no stock.

    Args:
        context (RuntimeContext): Active runtime context.
        item_id (str): Registered item id.
        on_date (str | None): ``YYYY-MM-DD`` date, defaults to today.

    Returns:
        list[StockLevel]: Varieties with positive stock, sorted by name.

    Raises:
        MissingReferenceError: If the item is unknown.
        ValidationError: If ``on_date`` is malformed.
    """
    core_logic.get_item(context, item_id)
    day = core_logic.normalize_date(on_date)
    today = core_logic.today_iso()
    if day > today:
        return []

    levels: List[StockLevel] = []
    if day == today:
        index = core_logic.index_rows(context, SheetName.CURRENT_INVENTORY, "by_item", lambda row: row.item_id)
        for row in index.get(item_id, []):
            if row.current_stock > ZERO:
                levels.append(StockLevel(row.variety_name, row.current_stock, row.weighted_avg_rate))
    else:
        index = core_logic.index_rows(
            context,
            SheetName.DAILY_INVENTORY,
            "by_date_item",
            lambda row: (row.inventory_date, row.item_id),
        )
        for row in index.get((day, item_id), []):
            if row.closing_stock > ZERO:
                levels.append(StockLevel(row.variety_name, row.closing_stock, row.weighted_avg_purchase_rate))
    return sorted(levels, key=lambda level: level.variety_name)


def find_shortfall(
    context: RuntimeContext,
    item_id: str,
    variety_name: str,
    on_date: str,
    quantity: Decimal,
) -> Optional[str]:
    """Describe why removing ``quantity`` dated ``on_date`` would break stock.

    Checks the closing stock of the ``on_date`` row (or the stock it would be
    seeded with), of every later row, and the live stock.

    Returns:
        str | None: Human-readable reason, or ``None`` when removal is safe.
    """
    if quantity <= ZERO:
        return None
    label = f"{item_id}/{variety_name}"
    history = daily_history(context, item_id, variety_name)
    row = next((r for r in history if r.inventory_date == on_date), None)
    if row is not None:
        available = row.opening_stock + row.purchased_today - row.sold_today
    else:
        earlier = [r for r in history if r.inventory_date < on_date]
        available = earlier[-1].closing_stock if earlier else ZERO
    if available - quantity < ZERO:
        return f"Insufficient stock for {label} on {on_date}: available {available}, requested {quantity}"

    for later in history:
        if later.inventory_date > on_date and later.closing_stock - quantity < ZERO:
            return (
                f"Removing {quantity} of {label} dated {on_date} would leave "
                f"{later.closing_stock - quantity} on {later.inventory_date}"
            )

    current = get_current_row(context, item_id, variety_name)
    live = current.current_stock if current is not None else ZERO
    if live - quantity < ZERO:
        return f"Insufficient live stock for {label}: available {live}, requested {quantity}"
    return None


# ---------------------------------------------------------------------------
# Movements
# ---------------------------------------------------------------------------


def _procured_lots(context: RuntimeContext, item_id: str, variety_name: str) -> Dict[str, List[Tuple[Decimal, Decimal]]]:
    """Group the recorded ``(quantity, rate)`` lots of one pair by session date."""
    index = core_logic.index_rows(
        context,
        SheetName.PROCUREMENT_ENTRIES,
        "by_item_variety",
        lambda row: (row.item_id, row.variety_name),
    )
    lots: Dict[str, List[Tuple[Decimal, Decimal]]] = defaultdict(list)
    for entry in index.get((item_id, variety_name), []):
        session = core_logic.find_record(context, SheetName.PROCUREMENT_SESSIONS, entry.session_id)
        lots[session.session_date].append((entry.quantity, entry.rate))
    return lots


def rechain_stock(
    context: RuntimeContext,
    item_id: str,
    variety_name: str,
    from_date: Optional[str] = None,
) -> data_manager.CurrentInventoryRow:
    """Re-derive the daily chain of one pair from ``from_date`` on and mirror it into live stock.

    Every row opens with the closing stock of the row before it and closes at
    ``opening + purchased - sold``, clamped at zero. A clamp therefore lives
    only in the figures of the row that needed it and is re-evaluated on the
    next pass, instead of being carried forward as a stale delta. The rate
    of a row blends the carried rate with the lots procured on that date, so
    a backdated lot re-weights every later row as well. Rows before
    ``from_date`` are left untouched and seed the walk.

    Returns:
        data_manager.CurrentInventoryRow: The refreshed live row, equal to
            the latest daily row.
    """
    lots = _procured_lots(context, item_id, variety_name)
    stock = ZERO
    rate = ZERO
    for row in daily_history(context, item_id, variety_name):
        if from_date is not None and row.inventory_date < from_date:
            stock, rate = row.closing_stock, row.weighted_avg_purchase_rate
            continue
        day_rate = rate if stock > ZERO else ZERO
        base = stock
        for quantity, lot_rate in lots.get(row.inventory_date, []):
            day_rate = blend_rate(base, day_rate, quantity, lot_rate)
            base += quantity
        closing = stock + row.purchased_today - row.sold_today
        if closing < ZERO:
            log.warning(
                "Stock of %s/%s on %s would be %s; clamped at zero", item_id, variety_name, row.inventory_date, closing
            )
            closing = ZERO
        updated = replace(row, opening_stock=stock, closing_stock=closing, weighted_avg_purchase_rate=day_rate)
        if updated != row:
            core_logic.replace_record(context, SheetName.DAILY_INVENTORY, updated)
        stock, rate = closing, day_rate

    stamp = core_logic.timestamp_iso()
    current = get_current_row(context, item_id, variety_name)
    if current is None:
        current = data_manager.CurrentInventoryRow(
            inventory_key=data_manager.inventory_key(item_id, variety_name),
            item_id=item_id,
            variety_name=variety_name,
            current_stock=ZERO,
            weighted_avg_rate=ZERO,
            last_updated=stamp,
        )
        core_logic.insert_record(context, SheetName.CURRENT_INVENTORY, current)
    live = replace(current, current_stock=stock, weighted_avg_rate=rate, last_updated=stamp)
    core_logic.replace_record(context, SheetName.CURRENT_INVENTORY, live)
    return live


def _move_stock(
    context: RuntimeContext,
    item_id: str,
    variety_name: str,
    on_date: str,
    *,
    purchased: Decimal = ZERO,
    sold: Decimal = ZERO,
    force: bool = False,
) -> data_manager.CurrentInventoryRow:
    """Apply one stock movement to both inventory views.

    ``purchased`` and ``sold`` are signed deltas of the ``on_date`` row's
    counters. The chain is then re-derived from ``on_date`` forward, which
    carries the movement into every later row and into the live stock.
    """
    net = purchased - sold
    if net < ZERO:
        shortfall = find_shortfall(context, item_id, variety_name, on_date, -net)
        if shortfall is not None:
            if not force:
                log.warning("Inventory violation: %s", shortfall)
                raise core_logic.InventoryViolation(shortfall)
            log.warning("Forced past inventory check, clamping at zero: %s", shortfall)

    row = get_daily_row(context, on_date, item_id, variety_name)
    if row is None:
        row = data_manager.DailyInventoryRow(
            snapshot_key=data_manager.snapshot_key(on_date, item_id, variety_name),
            inventory_date=on_date,
            item_id=item_id,
            variety_name=variety_name,
            opening_stock=ZERO,
            purchased_today=ZERO,
            sold_today=ZERO,
            closing_stock=ZERO,
            weighted_avg_purchase_rate=ZERO,
        )
        core_logic.insert_record(context, SheetName.DAILY_INVENTORY, row)

    sold_today = row.sold_today + sold
    if sold_today < ZERO:
        log.warning("Sold counter for %s/%s on %s would drop below zero; clamping", item_id, variety_name, on_date)
        sold_today = ZERO
    core_logic.replace_record(
        context,
        SheetName.DAILY_INVENTORY,
        replace(row, purchased_today=row.purchased_today + purchased, sold_today=sold_today),
    )

    live = rechain_stock(context, item_id, variety_name, on_date)
    if live.current_stock > ZERO:
        _reactivate_if_stocked(context, item_id, variety_name)
    log.debug(
        "Stock %s/%s on %s moved by %s (live stock now %s)",
        item_id,
        variety_name,
        on_date,
        net,
        live.current_stock,
    )
    return live


def apply_procurement(
    context: RuntimeContext, item_id: str, variety_name: str, quantity: Decimal, on_date: str
) -> data_manager.CurrentInventoryRow:
    """Add a procured lot to both views.

    The lot must already be recorded: its rate is read back from the
    procurement entries when the chain is re-weighted.
    """
    return _move_stock(context, item_id, variety_name, on_date, purchased=quantity)


def adjust_procurement(
    context: RuntimeContext,
    item_id: str,
    variety_name: str,
    on_date: str,
    *,
    old_quantity: Decimal,
    new_quantity: Decimal,
) -> data_manager.CurrentInventoryRow:
    """Replace a recorded lot by an edited one of the same variety.

    Only the quantity delta is validated, never forced: an edit must not
    create negative stock.
    """
    return _move_stock(context, item_id, variety_name, on_date, purchased=new_quantity - old_quantity)


def remove_procurement(
    context: RuntimeContext,
    item_id: str,
    variety_name: str,
    quantity: Decimal,
    on_date: str,
    *,
    force: bool = False,
) -> data_manager.CurrentInventoryRow:
    """Take a lot that is no longer recorded back out of both views."""
    return _move_stock(context, item_id, variety_name, on_date, purchased=-quantity, force=force)


def apply_sale(
    context: RuntimeContext, item_id: str, variety_name: str, quantity: Decimal, on_date: str
) -> data_manager.CurrentInventoryRow:
    """Move ``quantity`` from closing/live stock into ``sold_today``."""
    return _move_stock(context, item_id, variety_name, on_date, sold=quantity)


def reverse_sale(
    context: RuntimeContext, item_id: str, variety_name: str, quantity: Decimal, on_date: str
) -> data_manager.CurrentInventoryRow:
    """Exact inverse of :func:`apply_sale`."""
    return _move_stock(context, item_id, variety_name, on_date, sold=-quantity)


def apply_damage_return(
    context: RuntimeContext, item_id: str, variety_name: str, quantity: Decimal, on_date: str
) -> data_manager.CurrentInventoryRow:
    """Send damaged stock back to the supplier as a negative purchase."""
    return _move_stock(context, item_id, variety_name, on_date, purchased=-quantity)


def reverse_damage_return(
    context: RuntimeContext, item_id: str, variety_name: str, quantity: Decimal, on_date: str
) -> data_manager.CurrentInventoryRow:
    return _move_stock(context, item_id, variety_name, on_date, purchased=quantity)
