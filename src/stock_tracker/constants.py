"""Enumerations shared across Stock Tracker modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the CLI rely on a single source of truth for the fixed
site names, ledger directions, and workbook layout.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

MAX_PRODUCT_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 200
MAX_RECEIVER_LENGTH = 100

# Sale totals are compared with a tolerance rather than exact equality.
TOTAL_TOLERANCE = Decimal("0.000001")

OPENING_ENTRY_DESCRIPTION = "Initial balance"


class Location(str, Enum):
    """Enumerate the physical sites stock is kept at."""

    ADAMA = "Adama"
    ADDIS_ABABA = "Addis Ababa"
    CHEMICALS = "Chemicals"


class EntryType(str, Enum):
    """Enumerate the directions of a ledger entry."""

    IN = "in"
    OUT = "out"


class StockStatus(str, Enum):
    """Enumerate the stock-level bands reported next to a balance."""

    EMPTY = "empty"
    LOW = "low"
    MEDIUM = "medium"
    GOOD = "good"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    SALES = "Sales"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MAX_PRODUCT_NAME_LENGTH",
    "MAX_DESCRIPTION_LENGTH",
    "MAX_RECEIVER_LENGTH",
    "TOTAL_TOLERANCE",
    "OPENING_ENTRY_DESCRIPTION",
    "Location",
    "EntryType",
    "StockStatus",
    "SheetName",
]
