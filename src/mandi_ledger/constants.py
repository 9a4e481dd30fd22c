"""Enumerations and workbook schema shared across the mandi ledger modules.

The data access layer (DAL), the business rules and the CLI all read their
identifiers from here so a sheet or status name only ever changes in one
place.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Sentinel customer reference meaning "walk-in sale, no tracked customer".
CASH_SALE = "cash-sale"

DEFAULT_CASH_SALE_NAME = "Cash Sale"
DEFAULT_CURRENCY_SYMBOL = "₹"
DEFAULT_DISPATCH_BASE_URL = "https://wa.me/"

# Named signal broadcast after any balance-affecting write.
REFRESH_CUSTOMERS_SIGNAL = "refresh-customers"


class SaleStatus(str, Enum):
    """Lifecycle of a sale transaction."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TrayStatus(str, Enum):
    """Physical state of the trays issued on a tray transaction."""

    AVAILABLE = "available"
    IN_USE = "in_use"
    MAINTENANCE = "maintenance"


class PricingMode(str, Enum):
    """Whether a rate applies per weight unit or per discrete packaging unit."""

    PER_KG = "per_kg"
    PER_UNIT = "per_unit"


class ItemUnit(str, Enum):
    """Unit an item is stocked and, in per-unit pricing, sold in."""

    KG = "kg"
    BOX = "box"
    PIECE = "piece"
    DOZEN = "dozen"

    @property
    def plural(self) -> str:
        if self in (ItemUnit.KG, ItemUnit.DOZEN):
            return self.value
        if self is ItemUnit.BOX:
            return "boxes"
        return f"{self.value}s"


class OverpaymentPolicy(str, Enum):
    """How a paid amount larger than the total is treated."""

    ALLOW = "allow"
    CLAMP = "clamp"
    REJECT = "reject"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CUSTOMERS = "Customers"
    ITEMS = "Items"
    ITEM_CATEGORIES = "ItemCategories"
    SALE_TRANSACTIONS = "SaleTransactions"
    TRAY_TRANSACTIONS = "TrayTransactions"


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "OwnerID",
        "Name",
        "Phone",
        "Address",
        "Balance",
        "Visible",
        "CreatedAt",
    ],
    SheetName.ITEMS.value: [
        "ItemID",
        "Name",
        "PricePerKg",
        "PricePerUnit",
        "Unit",
        "AvailableStock",
        "CreatedAt",
    ],
    SheetName.ITEM_CATEGORIES.value: [
        "CategoryID",
        "ItemID",
        "Name",
        "PricePerKg",
        "PricePerUnit",
        "Unit",
        "AvailableStock",
        "CreatedAt",
    ],
    SheetName.SALE_TRANSACTIONS.value: [
        "TransactionID",
        "OwnerID",
        "CustomerID",
        "ItemID",
        "CategoryID",
        "Quantity",
        "Rate",
        "PricingMode",
        "TotalAmount",
        "PaidAmount",
        "Status",
        "Notes",
        "CreatedAt",
    ],
    SheetName.TRAY_TRANSACTIONS.value: [
        "TrayTransactionID",
        "OwnerID",
        "CustomerID",
        "TrayNumber",
        "Weight",
        "Rate",
        "TotalAmount",
        "PaidAmount",
        "NumberOfTrays",
        "Status",
        "Notes",
        "CreatedAt",
    ],
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CASH_SALE",
    "DEFAULT_CASH_SALE_NAME",
    "DEFAULT_CURRENCY_SYMBOL",
    "DEFAULT_DISPATCH_BASE_URL",
    "REFRESH_CUSTOMERS_SIGNAL",
    "SaleStatus",
    "TrayStatus",
    "PricingMode",
    "ItemUnit",
    "OverpaymentPolicy",
    "SheetName",
    "SHEET_COLUMNS",
]
