"""Data access layer for Stock Tracker.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import EntryType, Location, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
SALES_SHEET = SheetName.SALES.value

DEFAULT_CURRENCY = "ETB"
DEFAULT_PAGE_SIZE = 10

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "Location",
        "InitialBalance",
        "Price",
        "DateAdded",
    ],
    TRANSACTIONS_SHEET: [
        "TransactionID",
        "ProductID",
        "Type",
        "Quantity",
        "Date",
        "Description",
        "CreatedAt",
        "UpdatedAt",
    ],
    SALES_SHEET: [
        "SaleID",
        "ProductID",
        "ProductName",
        "Date",
        "Location",
        "Quantity",
        "Price",
        "Total",
        "Description",
        "Receiver",
        "TransactionID",
        "CreatedAt",
        "UpdatedAt",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    currency: str = DEFAULT_CURRENCY
    default_location: Location = Location.ADAMA
    page_size: int = DEFAULT_PAGE_SIZE


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    location: str
    initial_balance: Decimal
    price: Decimal
    date_added: date


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    product_id: str
    entry_type: str
    quantity: Decimal
    date: date
    description: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    product_id: str
    product_name: str
    date: date
    location: str
    quantity: Decimal
    price: Decimal
    total: Decimal
    description: Optional[str]
    receiver: Optional[str]
    transaction_id: Optional[str]
    created_at: str
    updated_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

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

    ``DataFile``, ``BusinessName`` and ``SchemaVersion`` under ``[System]`` are
    mandatory. ``Currency`` and the ``[Defaults]`` entries fall back to the
    module defaults. Relative data file paths are anchored to ``base_path``
    (or the current working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``DefaultLocation`` or ``PageSize`` hold unusable values.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    currency = parser.get("System", "Currency", fallback=DEFAULT_CURRENCY)
    location_raw = parser.get("Defaults", "DefaultLocation", fallback=Location.ADAMA.value)
    try:
        default_location = Location(location_raw)
    except ValueError as exc:
        raise ValueError(f"Unknown default location: {location_raw}") from exc
    page_size = parser.getint("Defaults", "PageSize", fallback=DEFAULT_PAGE_SIZE)
    if page_size < 1:
        raise ValueError(f"PageSize must be at least 1, got {page_size}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        currency=currency,
        default_location=default_location,
        page_size=page_size,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Header and fully empty rows are skipped; every other row is converted with
    :func:`deserialize_product`.
    """

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream ledger entries from the ``Transactions`` worksheet."""

    for raw in _iter_sheet(workbook, TRANSACTIONS_SHEET):
        yield deserialize_transaction(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale records from the ``Sales`` worksheet."""

    for raw in _iter_sheet(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a ledger entry to the ``Transactions`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization so precision is preserved when the workbook is saved.
    """

    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale record to the ``Sales`` worksheet."""

    workbook[SALES_SHEET].append(serialize_sale(record))


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: Mapping[str, Any],
    label: str,
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{label} not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}

    # validate every column before touching the row
    for field in field_values:
        if field not in header_map:
            raise KeyError(f"Unknown {label.lower()} field: {field}")

    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=serialize_cell(value))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Only the specified fields are modified, leaving other columns untouched.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values, "Product")


def update_transaction(workbook: Workbook, transaction_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing ledger entry.

    Raises:
        KeyError: If the entry or any referenced column cannot be found.
    """

    _update_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id, field_values, "Transaction")


def update_sale(workbook: Workbook, sale_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing sale.

    Raises:
        KeyError: If the sale or any referenced column cannot be found.
    """

    _update_row(workbook, SALES_SHEET, "SaleID", sale_id, field_values, "Sale")


def delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> bool:
    """Remove the first row whose ``key_column`` equals ``key_value``.

    Returns:
        bool: ``True`` when a row was removed, ``False`` when nothing matched.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        return False
    workbook[sheet_name].delete_rows(row_index)
    log.debug("Deleted row %d from sheet '%s' (%s=%s)", row_index, sheet_name, key_column, key_value)
    return True


def delete_product(workbook: Workbook, product_id: str) -> bool:
    """Delete the product row identified by ``product_id``."""

    return delete_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)


def delete_transaction(workbook: Workbook, transaction_id: str) -> bool:
    """Delete the ledger entry identified by ``transaction_id``."""

    return delete_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id)


def delete_sale(workbook: Workbook, sale_id: str) -> bool:
    """Delete the sale row identified by ``sale_id``."""

    return delete_row(workbook, SALES_SHEET, "SaleID", sale_id)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    The function constructs a mapping from header titles to column indices,
    verifies that ``key_column`` exists, and scans the worksheet for the first
    row whose value equals ``key_value``. The header row itself is not
    considered during matching.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
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


def serialize_cell(value: Any) -> Any:
    """Convert a Python value into something the worksheet stores verbatim.

    Calendar dates become ``YYYY-MM-DD`` text so Excel never attaches a time
    component, and enum members are stored by value.
    """

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.name,
        record.location,
        record.initial_balance,
        record.price,
        serialize_cell(record.date_added),
    ]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a ledger entry into the ``Transactions`` column order."""

    return [
        record.transaction_id,
        record.product_id,
        record.entry_type,
        record.quantity,
        serialize_cell(record.date),
        record.description,
        record.created_at,
        record.updated_at,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the ``Sales`` column order."""

    return [
        record.sale_id,
        record.product_id,
        record.product_name,
        serialize_cell(record.date),
        record.location,
        record.quantity,
        record.price,
        record.total,
        record.description,
        record.receiver,
        record.transaction_id,
        record.created_at,
        record.updated_at,
    ]


def parse_date_value(raw: object) -> date:
    """Normalise a worksheet or caller supplied value into a calendar date.

    Accepts :class:`~datetime.date`, :class:`~datetime.datetime` (the time part
    is dropped) and ISO strings, either ``YYYY-MM-DD`` or a full timestamp.

    Raises:
        ValueError: If the value cannot be interpreted as a date.
    """

    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text).date()
        except ValueError as exc:
            raise ValueError(f"Invalid date value: {raw!r}") from exc
    raise ValueError(f"Invalid date value: {raw!r}")


def _decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _pad(raw_row: Sequence[object], width: int) -> list[object]:
    values = list(raw_row[:width])
    values.extend([None] * (width - len(values)))
    return values


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric values become :class:`~decimal.Decimal` instances and id/name
    fields are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numbers.
    """

    product_id, name, location, initial_raw, price_raw, date_raw = _pad(
        raw_row, len(SHEET_COLUMNS[PRODUCTS_SHEET]))

    return ProductRow(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        location=str(location) if location is not None else "",
        initial_balance=_decimal(initial_raw),
        price=_decimal(price_raw, "0.00"),
        date_added=parse_date_value(date_raw) if date_raw is not None else date.min,
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed ledger entry.

    The entry type is normalised to its lowercase enum value so rows typed by
    hand (``IN``/``Out``) still project correctly.
    """

    (
        transaction_id,
        product_id,
        entry_type,
        quantity_raw,
        date_raw,
        description,
        created_at,
        updated_at,
    ) = _pad(raw_row, len(SHEET_COLUMNS[TRANSACTIONS_SHEET]))

    type_text = str(entry_type).strip().lower() if entry_type is not None else ""
    if type_text not in {member.value for member in EntryType}:
        log.warning("Ledger entry '%s' has unknown type '%s'", transaction_id, entry_type)

    return TransactionRow(
        transaction_id=str(transaction_id),
        product_id=str(product_id) if product_id is not None else "",
        entry_type=type_text,
        quantity=_decimal(quantity_raw),
        date=parse_date_value(date_raw) if date_raw is not None else date.min,
        description=_optional_text(description),
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a strongly typed sale record."""

    (
        sale_id,
        product_id,
        product_name,
        date_raw,
        location,
        quantity_raw,
        price_raw,
        total_raw,
        description,
        receiver,
        transaction_id,
        created_at,
        updated_at,
    ) = _pad(raw_row, len(SHEET_COLUMNS[SALES_SHEET]))

    return SaleRow(
        sale_id=str(sale_id),
        product_id=str(product_id) if product_id is not None else "",
        product_name=str(product_name) if product_name is not None else "",
        date=parse_date_value(date_raw) if date_raw is not None else date.min,
        location=str(location) if location is not None else "",
        quantity=_decimal(quantity_raw),
        price=_decimal(price_raw, "0.00"),
        total=_decimal(total_raw, "0.00"),
        description=_optional_text(description),
        receiver=_optional_text(receiver),
        transaction_id=_optional_text(transaction_id),
        created_at=str(created_at) if created_at is not None else "",
        updated_at=str(updated_at) if updated_at is not None else "",
    )
