"""Enumerations and fixed values shared by the ledger modules.

The workbook layout, the party roles and the handful of numeric constants
used by the balance engine live here so the data layer, the cascade and the
CLI agree on the same identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Bumped whenever a sheet gains, loses or renames a column.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_BALANCE_TOLERANCE = Decimal("0.01")
RATE_QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")


class QuantityKind(str, Enum):
    """How an item is counted when it moves between parties."""

    CRATE = "crate"
    WEIGHT = "weight"
    MIXED = "mixed"


class PartyRole(str, Enum):
    """Counterparty side of a ledger relationship."""

    SUPPLIER = "supplier"
    SELLER = "seller"


class SessionStatus(str, Enum):
    """Lifecycle marker stored on procurement and sales sessions."""

    ACTIVE = "active"
    COMPLETED = "completed"


class WarningLevel(str, Enum):
    """Severity reported by the deletion impact analysis."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SheetName(str, Enum):
    """Workbook sheet names managed by the data layer."""

    ITEMS = "Items"
    SUPPLIERS = "Suppliers"
    SELLERS = "Sellers"
    ITEM_TYPES = "ItemTypes"
    CURRENT_INVENTORY = "CurrentInventory"
    DAILY_INVENTORY = "DailyInventory"
    PROCUREMENT_SESSIONS = "ProcurementSessions"
    PROCUREMENT_ENTRIES = "ProcurementEntries"
    SALES_SESSIONS = "SalesSessions"
    SALES_ENTRIES = "SalesEntries"
    SALES_LINE_ITEMS = "SalesLineItems"
    SUPPLIER_PAYMENTS = "SupplierPayments"
    SELLER_PAYMENTS = "SellerPayments"
    DAMAGE_ENTRIES = "DamageEntries"
    SUPPLIER_OPENING_BALANCES = "SupplierOpeningBalances"
    SELLER_OPENING_BALANCES = "SellerOpeningBalances"
    SUPPLIER_OUTSTANDING = "SupplierOutstanding"
    SELLER_OUTSTANDING = "SellerOutstanding"


OPENING_BALANCE_SHEETS = {
    PartyRole.SUPPLIER: SheetName.SUPPLIER_OPENING_BALANCES,
    PartyRole.SELLER: SheetName.SELLER_OPENING_BALANCES,
}

OUTSTANDING_SHEETS = {
    PartyRole.SUPPLIER: SheetName.SUPPLIER_OUTSTANDING,
    PartyRole.SELLER: SheetName.SELLER_OUTSTANDING,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_BALANCE_TOLERANCE",
    "RATE_QUANTUM",
    "ZERO",
    "QuantityKind",
    "PartyRole",
    "SessionStatus",
    "WarningLevel",
    "SheetName",
    "OPENING_BALANCE_SHEETS",
    "OUTSTANDING_SHEETS",
]
