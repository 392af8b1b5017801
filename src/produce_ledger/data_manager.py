"""Data access layer for the produce ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, snapshotting and persisting the
   Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows of any table registered in :data:`TABLES`.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import astuple, dataclass
from decimal import Decimal, InvalidOperation
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_BALANCE_TOLERANCE, SheetName


CONFIG_FILE_NAME = "config.ini"

# Column kinds understood by :func:`deserialize_record`.
TEXT = "text"
OPTIONAL_TEXT = "optional"
DECIMAL = "decimal"
INTEGER = "integer"
FLAG = "flag"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    balance_tolerance: Decimal = DEFAULT_BALANCE_TOLERANCE


@dataclass(frozen=True)
class ItemRow:
    """Row of the ``Items`` sheet."""

    item_id: str
    item_name: str
    quantity_kind: str
    unit_name: str
    is_active: bool


@dataclass(frozen=True)
class SupplierRow:
    """Row of the ``Suppliers`` sheet."""

    supplier_id: str
    supplier_name: str
    contact_info: Optional[str]
    is_active: bool


@dataclass(frozen=True)
class SellerRow:
    """Row of the ``Sellers`` sheet."""

    seller_id: str
    seller_name: str
    contact_info: Optional[str]
    is_active: bool


@dataclass(frozen=True)
class ItemTypeRow:
    """Known variety of an item and the window in which it was procured."""

    type_key: str
    item_id: str
    variety_name: str
    first_seen_date: str
    last_seen_date: str
    is_active: bool


@dataclass(frozen=True)
class CurrentInventoryRow:
    """Live stock for one (item, variety) pair."""

    inventory_key: str
    item_id: str
    variety_name: str
    current_stock: Decimal
    weighted_avg_rate: Decimal
    last_updated: str


@dataclass(frozen=True)
class DailyInventoryRow:
    """Dated stock snapshot for one (date, item, variety) triple."""

    snapshot_key: str
    inventory_date: str
    item_id: str
    variety_name: str
    opening_stock: Decimal
    purchased_today: Decimal
    sold_today: Decimal
    closing_stock: Decimal
    weighted_avg_purchase_rate: Decimal


@dataclass(frozen=True)
class ProcurementSessionRow:
    session_id: str
    session_date: str
    total_suppliers: int
    total_amount: Decimal
    status: str


@dataclass(frozen=True)
class ProcurementEntryRow:
    entry_id: str
    session_id: str
    supplier_id: str
    item_id: str
    variety_name: str
    quantity: Decimal
    rate: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class SalesSessionRow:
    session_id: str
    session_date: str
    total_sellers: int
    total_sales_amount: Decimal
    status: str


@dataclass(frozen=True)
class SalesEntryRow:
    """One seller's purchase of one item within a sales session.

    ``running_payment_outstanding`` and ``running_quantity_outstanding`` are
    stamped by the balance recalculator and never set by callers.
    """

    entry_id: str
    session_id: str
    seller_id: str
    item_id: str
    total_quantity: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    discount: Decimal
    crates_returned: Decimal
    running_payment_outstanding: Decimal
    running_quantity_outstanding: Decimal


@dataclass(frozen=True)
class SalesLineItemRow:
    line_item_id: str
    entry_id: str
    variety_name: str
    quantity: Decimal
    sale_rate: Decimal
    amount: Decimal


@dataclass(frozen=True)
class SupplierPaymentRow:
    payment_id: str
    payment_date: str
    supplier_id: str
    item_id: str
    amount_paid: Decimal
    crates_returned: Decimal
    notes: Optional[str]


@dataclass(frozen=True)
class SellerPaymentRow:
    payment_id: str
    payment_date: str
    seller_id: str
    item_id: str
    amount_received: Decimal
    crates_returned: Decimal
    notes: Optional[str]


@dataclass(frozen=True)
class DamageEntryRow:
    damage_id: str
    damage_date: str
    supplier_id: str
    item_id: str
    variety_name: str
    damaged_quantity: Decimal
    damaged_returned_quantity: Decimal
    supplier_discount_amount: Decimal


@dataclass(frozen=True)
class OpeningBalanceRow:
    """Manually entered starting debt of a party for one item."""

    balance_key: str
    party_id: str
    item_id: str
    opening_payment_due: Decimal
    opening_quantity_due: Decimal
    effective_from_date: str
    created_date: str
    last_modified_date: str


@dataclass(frozen=True)
class OutstandingRow:
    """Cached aggregate outstanding of a party for one item."""

    balance_key: str
    party_id: str
    item_id: str
    payment_due: Decimal
    quantity_due: Decimal
    last_updated: str


@dataclass(frozen=True)
class TableSpec:
    """Binding between a worksheet, its header row and its row dataclass.

    ``columns`` pairs each header title with the kind used to coerce raw cell
    values, in the same order as the fields of ``row_type``. The first column
    is always the lookup key of the sheet.
    """

    sheet: SheetName
    row_type: type
    columns: Tuple[Tuple[str, str], ...]

    @property
    def headers(self) -> Tuple[str, ...]:
        return tuple(header for header, _ in self.columns)

    @property
    def key_column(self) -> str:
        return self.columns[0][0]


_OPENING_COLUMNS = (
    ("BalanceKey", TEXT),
    ("PartyID", TEXT),
    ("ItemID", TEXT),
    ("OpeningPaymentDue", DECIMAL),
    ("OpeningQuantityDue", DECIMAL),
    ("EffectiveFromDate", TEXT),
    ("CreatedDate", TEXT),
    ("LastModifiedDate", TEXT),
)

_OUTSTANDING_COLUMNS = (
    ("BalanceKey", TEXT),
    ("PartyID", TEXT),
    ("ItemID", TEXT),
    ("PaymentDue", DECIMAL),
    ("QuantityDue", DECIMAL),
    ("LastUpdated", TEXT),
)


def _party_columns(prefix: str) -> Tuple[Tuple[str, str], ...]:
    return ((f"{prefix}ID", TEXT), (f"{prefix}Name", TEXT), ("ContactInfo", OPTIONAL_TEXT), ("IsActive", FLAG))


TABLES: Dict[SheetName, TableSpec] = {
    spec.sheet: spec
    for spec in (
        TableSpec(
            SheetName.ITEMS,
            ItemRow,
            (
                ("ItemID", TEXT),
                ("ItemName", TEXT),
                ("QuantityKind", TEXT),
                ("UnitName", TEXT),
                ("IsActive", FLAG),
            ),
        ),
        TableSpec(SheetName.SUPPLIERS, SupplierRow, _party_columns("Supplier")),
        TableSpec(SheetName.SELLERS, SellerRow, _party_columns("Seller")),
        TableSpec(
            SheetName.ITEM_TYPES,
            ItemTypeRow,
            (
                ("TypeKey", TEXT),
                ("ItemID", TEXT),
                ("VarietyName", TEXT),
                ("FirstSeenDate", TEXT),
                ("LastSeenDate", TEXT),
                ("IsActive", FLAG),
            ),
        ),
        TableSpec(
            SheetName.CURRENT_INVENTORY,
            CurrentInventoryRow,
            (
                ("InventoryKey", TEXT),
                ("ItemID", TEXT),
                ("VarietyName", TEXT),
                ("CurrentStock", DECIMAL),
                ("WeightedAvgRate", DECIMAL),
                ("LastUpdated", TEXT),
            ),
        ),
        TableSpec(
            SheetName.DAILY_INVENTORY,
            DailyInventoryRow,
            (
                ("SnapshotKey", TEXT),
                ("InventoryDate", TEXT),
                ("ItemID", TEXT),
                ("VarietyName", TEXT),
                ("OpeningStock", DECIMAL),
                ("PurchasedToday", DECIMAL),
                ("SoldToday", DECIMAL),
                ("ClosingStock", DECIMAL),
                ("WeightedAvgPurchaseRate", DECIMAL),
            ),
        ),
        TableSpec(
            SheetName.PROCUREMENT_SESSIONS,
            ProcurementSessionRow,
            (
                ("SessionID", TEXT),
                ("SessionDate", TEXT),
                ("TotalSuppliers", INTEGER),
                ("TotalAmount", DECIMAL),
                ("Status", TEXT),
            ),
        ),
        TableSpec(
            SheetName.PROCUREMENT_ENTRIES,
            ProcurementEntryRow,
            (
                ("EntryID", TEXT),
                ("SessionID", TEXT),
                ("SupplierID", TEXT),
                ("ItemID", TEXT),
                ("VarietyName", TEXT),
                ("Quantity", DECIMAL),
                ("Rate", DECIMAL),
                ("TotalAmount", DECIMAL),
            ),
        ),
        TableSpec(
            SheetName.SALES_SESSIONS,
            SalesSessionRow,
            (
                ("SessionID", TEXT),
                ("SessionDate", TEXT),
                ("TotalSellers", INTEGER),
                ("TotalSalesAmount", DECIMAL),
                ("Status", TEXT),
            ),
        ),
        TableSpec(
            SheetName.SALES_ENTRIES,
            SalesEntryRow,
            (
                ("EntryID", TEXT),
                ("SessionID", TEXT),
                ("SellerID", TEXT),
                ("ItemID", TEXT),
                ("TotalQuantity", DECIMAL),
                ("TotalAmount", DECIMAL),
                ("AmountPaid", DECIMAL),
                ("Discount", DECIMAL),
                ("CratesReturned", DECIMAL),
                ("RunningPaymentOutstanding", DECIMAL),
                ("RunningQuantityOutstanding", DECIMAL),
            ),
        ),
        TableSpec(
            SheetName.SALES_LINE_ITEMS,
            SalesLineItemRow,
            (
                ("LineItemID", TEXT),
                ("EntryID", TEXT),
                ("VarietyName", TEXT),
                ("Quantity", DECIMAL),
                ("SaleRate", DECIMAL),
                ("Amount", DECIMAL),
            ),
        ),
        TableSpec(
            SheetName.SUPPLIER_PAYMENTS,
            SupplierPaymentRow,
            (
                ("PaymentID", TEXT),
                ("PaymentDate", TEXT),
                ("SupplierID", TEXT),
                ("ItemID", TEXT),
                ("AmountPaid", DECIMAL),
                ("CratesReturned", DECIMAL),
                ("Notes", OPTIONAL_TEXT),
            ),
        ),
        TableSpec(
            SheetName.SELLER_PAYMENTS,
            SellerPaymentRow,
            (
                ("PaymentID", TEXT),
                ("PaymentDate", TEXT),
                ("SellerID", TEXT),
                ("ItemID", TEXT),
                ("AmountReceived", DECIMAL),
                ("CratesReturned", DECIMAL),
                ("Notes", OPTIONAL_TEXT),
            ),
        ),
        TableSpec(
            SheetName.DAMAGE_ENTRIES,
            DamageEntryRow,
            (
                ("DamageID", TEXT),
                ("DamageDate", TEXT),
                ("SupplierID", TEXT),
                ("ItemID", TEXT),
                ("VarietyName", TEXT),
                ("DamagedQuantity", DECIMAL),
                ("DamagedReturnedQuantity", DECIMAL),
                ("SupplierDiscountAmount", DECIMAL),
            ),
        ),
        TableSpec(SheetName.SUPPLIER_OPENING_BALANCES, OpeningBalanceRow, _OPENING_COLUMNS),
        TableSpec(SheetName.SELLER_OPENING_BALANCES, OpeningBalanceRow, _OPENING_COLUMNS),
        TableSpec(SheetName.SUPPLIER_OUTSTANDING, OutstandingRow, _OUTSTANDING_COLUMNS),
        TableSpec(SheetName.SELLER_OUTSTANDING, OutstandingRow, _OUTSTANDING_COLUMNS),
    )
}


def inventory_key(item_id: str, variety_name: str) -> str:
    """Key shared by the ``ItemTypes`` and ``CurrentInventory`` sheets."""
    return f"{item_id}::{variety_name}"


def snapshot_key(inventory_date: str, item_id: str, variety_name: str) -> str:
    return f"{inventory_date}::{item_id}::{variety_name}"


def balance_key(party_id: str, item_id: str) -> str:
    """Key shared by the opening-balance and outstanding sheets."""
    return f"{party_id}::{item_id}"


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of individual entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``BusinessName`` and
    ``SchemaVersion``. ``[Ledger] BalanceTolerance`` is optional and defaults
    to :data:`~produce_ledger.constants.DEFAULT_BALANCE_TOLERANCE`. Relative
    data file paths are anchored to ``base_path`` (or the current working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``BalanceTolerance`` is not a non-negative number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    tolerance_raw = parser.get("Ledger", "BalanceTolerance", fallback=str(DEFAULT_BALANCE_TOLERANCE))
    try:
        tolerance = Decimal(tolerance_raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid BalanceTolerance: {tolerance_raw!r}") from exc
    if tolerance < 0:
        raise ValueError(f"BalanceTolerance must not be negative: {tolerance_raw!r}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        balance_tolerance=tolerance,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` without exposing a half-written file.

    The workbook is first written to a temporary file in the destination
    directory which then atomically replaces the target. Parent directories
    are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    handle, temp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(handle)
    temp_path = Path(temp_name)
    try:
        workbook.save(temp_path)
        os.replace(temp_path, dest)
    finally:
        if temp_path.exists():
            temp_path.unlink()


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def snapshot_workbook(workbook: Workbook) -> bytes:
    """Serialize the workbook into memory so it can be restored later.

    Args:
        workbook (Workbook): Workbook whose current state should be captured.

    Returns:
        bytes: The complete ``.xlsx`` payload.
    """

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def restore_workbook(snapshot: bytes) -> Workbook:
    """Rebuild a workbook from a payload produced by :func:`snapshot_workbook`."""

    return openpyxl.load_workbook(BytesIO(snapshot))


def validate_workbook(workbook: Workbook) -> None:
    """Check that every registered sheet exists with the expected header row.

    Args:
        workbook (Workbook): Workbook to inspect.

    Raises:
        KeyError: If a registered sheet is missing.
        ValueError: If a sheet's header row differs from its :class:`TableSpec`.
    """

    for sheet, spec in TABLES.items():
        if sheet.value not in workbook.sheetnames:
            raise KeyError(f"Workbook is missing sheet: {sheet.value}")
        found = tuple(cell.value for cell in workbook[sheet.value][1])[: len(spec.columns)]
        if found != spec.headers:
            raise ValueError(
                f"Unexpected header on sheet '{sheet.value}': expected {list(spec.headers)}, found {list(found)}"
            )
    log.debug("Validated layout of %d sheets", len(TABLES))


def iter_records(workbook: Workbook, sheet: SheetName) -> Iterable[Any]:
    """Iterate over the typed records stored on ``sheet``.

    The header row and fully empty rows are skipped; every other row is
    converted through :func:`deserialize_record`. Records are yielded in sheet
    order, which is also insertion order.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        sheet (SheetName): Registered sheet to read.

    Yields:
        Row dataclass instances of the sheet's :class:`TableSpec`.
    """

    spec = TABLES[sheet]
    for raw in workbook[sheet.value].iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize_record(spec, raw)


def append_record(workbook: Workbook, sheet: SheetName, record: Any) -> None:
    """Append ``record`` as a new row at the bottom of ``sheet``."""

    _require_row_type(sheet, record)
    workbook[sheet.value].append(serialize_record(record))


def update_record(workbook: Workbook, sheet: SheetName, record: Any) -> None:
    """Overwrite the row whose key matches ``record``'s key.

    The row keeps its position, so insertion order is preserved across
    updates.

    Args:
        workbook (Workbook): Workbook containing the sheet.
        sheet (SheetName): Registered sheet holding the row.
        record: Replacement dataclass; its first field is the lookup key.

    Raises:
        KeyError: If no row carries the record's key.
    """

    spec = _require_row_type(sheet, record)
    values = serialize_record(record)
    row_index = locate_row(workbook, sheet.value, spec.key_column, values[0])
    if row_index is None:
        raise KeyError(f"{sheet.value} row not found: {values[0]}")

    worksheet = workbook[sheet.value]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(worksheet[1])}
    for header, value in zip(spec.headers, values):
        worksheet.cell(row=row_index, column=header_map[header], value=value)


def delete_record(workbook: Workbook, sheet: SheetName, key: str) -> None:
    """Remove the row identified by ``key`` and close the gap.

    Raises:
        KeyError: If no row carries ``key``.
    """

    spec = TABLES[sheet]
    row_index = locate_row(workbook, sheet.value, spec.key_column, key)
    if row_index is None:
        raise KeyError(f"{sheet.value} row not found: {key}")
    workbook[sheet.value].delete_rows(row_index)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the column storing the lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_record(record: Any) -> list[object]:
    """Convert a row dataclass into its worksheet column ordering.

    Decimal values stay :class:`~decimal.Decimal` so ``openpyxl`` stores them as
    numbers.
    """

    return list(astuple(record))


def deserialize_record(spec: TableSpec, raw_row: Sequence[object]) -> Any:
    """Convert a raw worksheet row into the dataclass registered for ``spec``.

    Each cell is coerced according to its column kind: decimals through
    ``Decimal(str(raw))`` (blank cells become zero), integers through ``int``,
    flags through ``bool``, optional text stays ``None`` when blank and plain
    text defaults to an empty string. Short rows are padded with blanks.

    Args:
        spec (TableSpec): Table the row belongs to.
        raw_row (Sequence[object]): Raw cell values in worksheet order.

    Returns:
        The populated row dataclass.
    """

    padded = list(raw_row[: len(spec.columns)])
    padded.extend([None] * (len(spec.columns) - len(padded)))
    values = [_coerce(kind, raw) for (_, kind), raw in zip(spec.columns, padded)]
    return spec.row_type(*values)


def _coerce(kind: str, raw: object) -> object:
    if kind == DECIMAL:
        return Decimal(str(raw)) if raw is not None else Decimal("0")
    if kind == INTEGER:
        return int(raw) if raw is not None else 0
    if kind == FLAG:
        return bool(raw)
    if kind == OPTIONAL_TEXT:
        return str(raw) if raw not in (None, "") else None
    return str(raw) if raw is not None else ""


def _require_row_type(sheet: SheetName, record: Any) -> TableSpec:
    spec = TABLES[sheet]
    if not isinstance(record, spec.row_type):
        raise TypeError(
            f"Sheet '{sheet.value}' stores {spec.row_type.__name__}, got {type(record).__name__}"
        )
    return spec
