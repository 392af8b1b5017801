"""Business logic foundation for the produce ledger.

This module owns the runtime context shared by every ledger operation: the
settings, the live workbook, the per-sheet caches and the lock that turns
each top-level mutation into a single all-or-nothing unit of work. It also
hosts the registry of items, suppliers and sellers and the validation
helpers the cascade relies on. All I/O goes through the data access layer.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ZERO, PartyRole, QuantityKind, SheetName


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced entry, session, party or item is unknown."""


NotFound = MissingReferenceError


class InventoryViolation(BusinessRuleViolation):
    """Raised when an operation would drive closing or current stock below zero."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed quantities, rates, amounts or dates."""


@dataclass
class RuntimeContext:
    """Container for configuration and workbook references used by the ledger.

    The workbook handle is replaced when a unit of work rolls back, which is
    why the context is mutable. ``_lock`` serializes mutations across threads.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    _depth: int = field(default=0, repr=False, compare=False)


_ID_SEQUENCE = itertools.count()


def _resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def today_iso() -> str:
    """Return today's calendar date in ``YYYY-MM-DD`` form (UTC)."""

    return _resolve_timestamp().date().isoformat()


def timestamp_iso() -> str:
    return _resolve_timestamp().isoformat(timespec="seconds")


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-free identifier.

    Args:
        prefix (str): Short designator of the record type, e.g. ``"PE"``.
        when (datetime | None): Timestamp embedded in the identifier. Defaults
            to the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{seq:04d}``.

    The trailing sequence number keeps identifiers unique when several rows
    are created within the same microsecond, as happens during a cascade.
    """
    when = _resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{next(_ID_SEQUENCE) % 10_000:04d}"


def normalize_date(value: Union[str, date, None], *, field_name: str = "date") -> str:
    """Normalize a calendar date into the ``YYYY-MM-DD`` form used by every sheet.

    Args:
        value (str | date | None): Caller-supplied date. ``None`` resolves to
            today.
        field_name (str): Name used in error messages.

    Returns:
        str: ISO calendar date.

    Raises:
        ValidationError: If ``value`` is a ``datetime`` (time components drift
            across timezones) or a string that is not a valid ISO date.
    """
    if value is None:
        return today_iso()
    if isinstance(value, date):
        if type(value) is not date:
            log.warning("Rejected %s with a time component: %r", field_name, value)
            raise ValidationError(f"{field_name} must be a calendar date, not a timestamp")
        return value.isoformat()
    text = str(value).strip()
    try:
        parsed = date.fromisoformat(text)
    except ValueError as exc:
        log.warning("Rejected malformed %s: %r", field_name, value)
        raise ValidationError(f"{field_name} must use the YYYY-MM-DD form, got {value!r}") from exc
    if parsed.isoformat() != text:
        raise ValidationError(f"{field_name} must use the YYYY-MM-DD form, got {value!r}")
    return text


def require_not_future(day: str, *, what: str) -> None:
    """Reject ledger events dated after today."""
    if day > today_iso():
        log.warning("Rejected future-dated %s on %s", what, day)
        raise ValidationError(f"{what} cannot be dated in the future ({day})")


def to_decimal(value: Union[Decimal, int, str, float], *, field_name: str) -> Decimal:
    """Coerce user input into a finite :class:`~decimal.Decimal`."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValidationError(f"{field_name} is not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def require_positive_quantity(quantity: Decimal, *, field_name: str = "Quantity") -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    if quantity <= ZERO:
        log.error("%s validation failed: %s", field_name, quantity)
        raise ValidationError(f"{field_name} must be greater than zero")


def require_nonnegative(amount: Decimal, *, field_name: str = "Amount") -> None:
    """Validate that a monetary value or crate count is not negative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("%s validation failed: %s", field_name, amount)
        raise ValidationError(f"{field_name} must be zero or positive")


def require_variety_name(variety_name: str) -> str:
    name = (variety_name or "").strip()
    if not name:
        raise ValidationError("Variety name must not be empty")
    return name


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are keyed by sheet name and hold the parsed rows plus any index
    built over them, so repeated lookups never rescan the worksheet.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Calling without names drops every bucket, which is what a rollback needs.
    """

    if not names:
        context._cache.clear()
        log.debug("Invalidated all cache buckets")
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def _ensure_table_cache(context: RuntimeContext, sheet: SheetName) -> Dict[str, Any]:
    """Populate the bucket of ``sheet`` with ``all`` rows and a ``by_id`` lookup."""

    bucket = _get_cache_bucket(context, sheet.value)
    if "all" not in bucket:
        rows = list(data_manager.iter_records(context.workbook, sheet))
        bucket["all"] = rows
        bucket["by_id"] = {data_manager.serialize_record(row)[0]: row for row in rows}
        log.debug("Populated %s cache with %d entries", sheet.value, len(rows))
    return bucket


def table_rows(context: RuntimeContext, sheet: SheetName) -> List[Any]:
    """Return a copy of every row of ``sheet`` in insertion order."""

    return list(_ensure_table_cache(context, sheet)["all"])


def find_record(context: RuntimeContext, sheet: SheetName, key: str) -> Optional[Any]:
    """Return the row of ``sheet`` identified by ``key``, or ``None``."""

    return _ensure_table_cache(context, sheet)["by_id"].get(key)


def index_rows(
    context: RuntimeContext,
    sheet: SheetName,
    name: str,
    key_fn: Callable[[Any], Hashable],
) -> Dict[Hashable, List[Any]]:
    """Group the rows of ``sheet`` by ``key_fn`` and cache the grouping as ``name``.

    Groups keep insertion order, which the running-balance walk relies on
    as its tie-break within a date. The index is dropped together with the
    sheet's bucket on the next write.
    """

    bucket = _ensure_table_cache(context, sheet)
    index_name = f"index:{name}"
    if index_name not in bucket:
        grouped: Dict[Hashable, List[Any]] = {}
        for row in bucket["all"]:
            grouped.setdefault(key_fn(row), []).append(row)
        bucket[index_name] = grouped
    return bucket[index_name]


def insert_record(context: RuntimeContext, sheet: SheetName, record: Any) -> Any:
    data_manager.append_record(context.workbook, sheet, record)
    _invalidate_cache(context, sheet.value)
    return record


def replace_record(context: RuntimeContext, sheet: SheetName, record: Any) -> Any:
    data_manager.update_record(context.workbook, sheet, record)
    _invalidate_cache(context, sheet.value)
    return record


def remove_record(context: RuntimeContext, sheet: SheetName, key: str) -> None:
    data_manager.delete_record(context.workbook, sheet, key)
    _invalidate_cache(context, sheet.value)


@contextmanager
def unit_of_work(context: RuntimeContext, label: str) -> Iterator[RuntimeContext]:
    """Run a top-level mutation atomically against the in-memory workbook.

    The context lock is held for the whole block. On entry the workbook is
    snapshotted; if the block raises, the snapshot replaces the workbook, all
    caches are dropped and the exception propagates. Nested units join the
    outermost one, so only the outer block decides the outcome.

    Args:
        context (RuntimeContext): Context whose workbook is mutated.
        label (str): Operation name used in log messages.

    Yields:
        RuntimeContext: The same context, for convenience.
    """

    with context._lock:
        if context._depth:
            context._depth += 1
            try:
                yield context
            finally:
                context._depth -= 1
            return

        snapshot = data_manager.snapshot_workbook(context.workbook)
        context._depth = 1
        try:
            yield context
        except Exception:
            context.workbook = data_manager.restore_workbook(snapshot)
            _invalidate_cache(context)
            log.error("Rolled back '%s'; workbook restored to its previous state", label)
            raise
        finally:
            context._depth = 0


# ---------------------------------------------------------------------------
# Runtime lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the
            current working directory.

    Returns:
        RuntimeContext: Context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
        KeyError: If the workbook lacks a registered sheet.
        ValueError: If a sheet header does not match its table definition.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    data_manager.validate_workbook(context.workbook)
    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist the in-memory workbook to the configured data file."""
    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a fresh context over the workbook on disk, dropping unsaved edits.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Registry: items, suppliers, sellers
# ---------------------------------------------------------------------------


_PARTY_SHEETS = {
    PartyRole.SUPPLIER: SheetName.SUPPLIERS,
    PartyRole.SELLER: SheetName.SELLERS,
}


def _require_identifier(value: str, label: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{label} must not be empty")
    if "::" in text:
        raise ValidationError(f"{label} must not contain '::'")
    return text


def add_item(
    context: RuntimeContext,
    *,
    item_id: str,
    item_name: str,
    quantity_kind: Union[QuantityKind, str] = QuantityKind.CRATE,
    unit_name: str = "crate",
    is_active: bool = True,
) -> data_manager.ItemRow:
    """Register a new item.

    Raises:
        BusinessRuleViolation: If ``item_id`` is already registered.
        ValidationError: If the identifier is blank or the quantity kind is
            unknown.
    """
    item_id = _require_identifier(item_id, "Item id")
    try:
        kind = QuantityKind(quantity_kind)
    except ValueError as exc:
        raise ValidationError(f"Unknown quantity kind: {quantity_kind}") from exc
    with unit_of_work(context, "add_item"):
        if find_record(context, SheetName.ITEMS, item_id) is not None:
            raise BusinessRuleViolation(f"Item '{item_id}' already exists")
        row = data_manager.ItemRow(item_id, item_name.strip(), kind.value, unit_name.strip(), is_active)
        insert_record(context, SheetName.ITEMS, row)
    log.info("Registered item '%s' (%s, %s)", item_id, kind.value, unit_name)
    return row


def _add_party(
    context: RuntimeContext,
    role: PartyRole,
    party_id: str,
    name: str,
    contact_info: Optional[str],
    is_active: bool,
) -> Any:
    party_id = _require_identifier(party_id, f"{role.value.title()} id")
    sheet = _PARTY_SHEETS[role]
    row_type = data_manager.TABLES[sheet].row_type
    with unit_of_work(context, f"add_{role.value}"):
        if find_record(context, sheet, party_id) is not None:
            raise BusinessRuleViolation(f"{role.value.title()} '{party_id}' already exists")
        row = row_type(party_id, name.strip(), contact_info, is_active)
        insert_record(context, sheet, row)
    log.info("Registered %s '%s'", role.value, party_id)
    return row


def add_supplier(
    context: RuntimeContext,
    *,
    supplier_id: str,
    supplier_name: str,
    contact_info: Optional[str] = None,
    is_active: bool = True,
) -> data_manager.SupplierRow:
    return _add_party(context, PartyRole.SUPPLIER, supplier_id, supplier_name, contact_info, is_active)


def add_seller(
    context: RuntimeContext,
    *,
    seller_id: str,
    seller_name: str,
    contact_info: Optional[str] = None,
    is_active: bool = True,
) -> data_manager.SellerRow:
    return _add_party(context, PartyRole.SELLER, seller_id, seller_name, contact_info, is_active)


def lookup_record(context: RuntimeContext, sheet: SheetName, key: str, label: str) -> Any:
    row = find_record(context, sheet, key)
    if row is None:
        log.warning("%s lookup failed for id '%s'", label, key)
        raise MissingReferenceError(f"Unknown {label.lower()} id: {key}")
    return row


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item by id.

    Raises:
        MissingReferenceError: If ``item_id`` is not registered.
    """
    return lookup_record(context, SheetName.ITEMS, item_id, "Item")


def get_supplier(context: RuntimeContext, supplier_id: str) -> data_manager.SupplierRow:
    return lookup_record(context, SheetName.SUPPLIERS, supplier_id, "Supplier")


def get_seller(context: RuntimeContext, seller_id: str) -> data_manager.SellerRow:
    return lookup_record(context, SheetName.SELLERS, seller_id, "Seller")


def get_party(context: RuntimeContext, role: PartyRole, party_id: str) -> Any:
    if role is PartyRole.SUPPLIER:
        return get_supplier(context, party_id)
    return get_seller(context, party_id)


def list_items(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.ItemRow]:
    return [row for row in table_rows(context, SheetName.ITEMS) if include_inactive or row.is_active]


def list_suppliers(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.SupplierRow]:
    return [row for row in table_rows(context, SheetName.SUPPLIERS) if include_inactive or row.is_active]


def list_sellers(context: RuntimeContext, *, include_inactive: bool = False) -> List[data_manager.SellerRow]:
    return [row for row in table_rows(context, SheetName.SELLERS) if include_inactive or row.is_active]


def set_item_active(context: RuntimeContext, item_id: str, is_active: bool) -> data_manager.ItemRow:
    with unit_of_work(context, "set_item_active"):
        row = replace(get_item(context, item_id), is_active=is_active)
        replace_record(context, SheetName.ITEMS, row)
    log.info("Item '%s' marked %s", item_id, "active" if is_active else "inactive")
    return row


def set_party_active(context: RuntimeContext, role: PartyRole, party_id: str, is_active: bool) -> Any:
    with unit_of_work(context, f"set_{role.value}_active"):
        row = replace(get_party(context, role, party_id), is_active=is_active)
        replace_record(context, _PARTY_SHEETS[role], row)
    log.info("%s '%s' marked %s", role.value.title(), party_id, "active" if is_active else "inactive")
    return row


def require_active_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item and refuse new ledger activity on inactive ones."""
    item = get_item(context, item_id)
    if not item.is_active:
        log.warning("Attempted ledger entry on inactive item '%s'", item_id)
        raise BusinessRuleViolation(f"Item '{item_id}' is inactive")
    return item


def require_active_party(context: RuntimeContext, role: PartyRole, party_id: str) -> Any:
    party = get_party(context, role, party_id)
    if not party.is_active:
        log.warning("Attempted ledger entry with inactive %s '%s'", role.value, party_id)
        raise BusinessRuleViolation(f"{role.value.title()} '{party_id}' is inactive")
    return party
