"""Business logic layer for Stock Tracker.

This module contains the rule engine that keeps the stock ledger and the sale
records consistent. It consumes the Data Access Layer (DAL) for all I/O while
ensuring every mutation passes through the domain rules:

* a product's balance is always projected from the ledger, never stored;
* a sale and its ``out`` ledger entry are written, updated and deleted
  together, with compensating rollback when the second write fails;
* every check-then-write runs inside a per-product critical section so two
  sales of the same product cannot both pass the stock check.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .balance import BalanceSummary, classify_stock, compute_balance, sale_total
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MAX_DESCRIPTION_LENGTH,
    MAX_PRODUCT_NAME_LENGTH,
    MAX_RECEIVER_LENGTH,
    OPENING_ENTRY_DESCRIPTION,
    EntryType,
    Location,
    StockStatus,
)


DateLike = Union[date, str]
NumberLike = Union[Decimal, int, float, str]


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""

    kind = "business_rule"


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when command input is malformed; nothing is written."""

    kind = "validation"


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, ledger entry, or sale is unknown."""

    kind = "not_found"


class InsufficientStockError(BusinessRuleViolation):
    """Raised when an outgoing movement would drive a balance negative."""

    kind = "insufficient_stock"

    def __init__(self, product_id: str, available: Decimal, requested: Decimal) -> None:
        super().__init__(
            f"Insufficient stock for product '{product_id}'. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook, caches and locks used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _product_locks: Dict[str, threading.RLock] = field(default_factory=dict, repr=False, compare=False)
    _registry_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _workbook_lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class ProductBalance:
    """A product together with its projected stock position."""

    product: data_manager.ProductRow
    balance: Decimal
    total_in: Decimal
    total_out: Decimal
    status: StockStatus


@dataclass(frozen=True)
class RecordedSale:
    """A sale record and the ``out`` ledger entry it generated."""

    sale: data_manager.SaleRow
    entry: data_manager.TransactionRow


@dataclass(frozen=True)
class BatchItemError:
    """One failed item of a bulk operation."""

    item_id: str
    kind: str
    message: str


@dataclass(frozen=True)
class BulkDeleteResult:
    """Outcome of a delete-by-date run; failures are reported, not raised."""

    deleted_count: int
    errors: List[BatchItemError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class StockEntryCommand:
    """User intent for adding stock (an ``in`` ledger entry)."""

    product_id: str
    quantity: NumberLike
    date: DateLike
    description: Optional[str] = None


@dataclass(frozen=True)
class OutEntryCommand:
    """User intent for removing stock without recording a sale."""

    product_id: str
    quantity: NumberLike
    date: DateLike
    description: Optional[str] = None


@dataclass(frozen=True)
class StockEntryUpdate:
    """In-place edit of a bare ledger entry; ``None`` keeps the stored value."""

    transaction_id: str
    quantity: Optional[NumberLike] = None
    date: Optional[DateLike] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale.

    ``location`` defaults to the product's own location.
    """

    product_id: str
    quantity: NumberLike
    price: NumberLike
    date: DateLike
    location: Optional[Union[Location, str]] = None
    description: Optional[str] = None
    receiver: Optional[str] = None


@dataclass(frozen=True)
class SaleUpdate:
    """Edit of a sale and its paired entry; ``None`` keeps the stored value."""

    sale_id: str
    quantity: Optional[NumberLike] = None
    price: Optional[NumberLike] = None
    date: Optional[DateLike] = None
    description: Optional[str] = None
    receiver: Optional[str] = None
    product_id: Optional[str] = None
    location: Optional[Union[Location, str]] = None


@dataclass(frozen=True)
class SalesBatchItem:
    product_id: str
    quantity: NumberLike
    price: NumberLike = Decimal("0")
    receiver: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class SalesBatchCommand:
    """Several sales sharing a date, a location and a default description."""

    date: DateLike
    location: Union[Location, str]
    items: Sequence[SalesBatchItem]
    description: Optional[str] = None


@dataclass(frozen=True)
class StockBatchItem:
    product_id: str
    quantity: NumberLike
    description: Optional[str] = None


@dataclass(frozen=True)
class StockBatchCommand:
    """Several stock-in entries sharing a date, a location and a description."""

    date: DateLike
    location: Union[Location, str]
    items: Sequence[StockBatchItem]
    description: Optional[str] = None


@dataclass(frozen=True)
class _PreparedSale:
    product: data_manager.ProductRow
    quantity: Decimal
    price: Decimal
    date: date
    location: Location
    description: Optional[str]
    receiver: Optional[str]


def _resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``T20240101120000000000-1a2b3c``.

    The timestamp keeps identifiers in creation order; the random suffix keeps
    them unique when several rows are written within the same microsecond.
    """

    when = when or _resolve_timestamp()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Caches and locks
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    with context._workbook_lock:
        for name in names:
            context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context._workbook_lock:
        bucket = _get_cache_bucket(context, "products")
        if "all" not in bucket:
            all_products = list(data_manager.iter_products(context.workbook))
            bucket["all"] = all_products
            bucket["by_id"] = {product.product_id: product for product in all_products}
            log.debug("Populated products cache with %d entries", len(all_products))
        return bucket


def _ensure_transactions_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context._workbook_lock:
        bucket = _get_cache_bucket(context, "transactions")
        if "all" not in bucket:
            all_entries = list(data_manager.iter_transactions(context.workbook))
            by_product: Dict[str, List[data_manager.TransactionRow]] = {}
            for entry in all_entries:
                by_product.setdefault(entry.product_id, []).append(entry)
            bucket["all"] = all_entries
            bucket["by_id"] = {entry.transaction_id: entry for entry in all_entries}
            bucket["by_product"] = by_product
            log.debug("Populated transactions cache with %d entries", len(all_entries))
        return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    with context._workbook_lock:
        bucket = _get_cache_bucket(context, "sales")
        if "all" not in bucket:
            all_sales = list(data_manager.iter_sales(context.workbook))
            bucket["all"] = all_sales
            bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
            bucket["by_transaction"] = {
                sale.transaction_id: sale for sale in all_sales if sale.transaction_id is not None
            }
            log.debug("Populated sales cache with %d entries", len(all_sales))
        return bucket


def _lock_for(context: RuntimeContext, product_id: str) -> threading.RLock:
    with context._registry_lock:
        lock = context._product_locks.get(product_id)
        if lock is None:
            lock = threading.RLock()
            context._product_locks[product_id] = lock
        return lock


@contextmanager
def product_critical_section(context: RuntimeContext, *product_ids: str) -> Iterator[None]:
    """Serialise check-then-write sequences for the given products.

    Locks are taken in sorted id order so commands touching several products
    cannot deadlock each other. Commands on unrelated products run freely.
    """

    with ExitStack() as stack:
        for product_id in sorted(set(product_ids)):
            stack.enter_context(_lock_for(context, product_id))
        yield


# ---------------------------------------------------------------------------
# Runtime context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

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
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
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

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    with context._workbook_lock:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns a new :class:`RuntimeContext` with empty caches and fresh locks.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _to_decimal(value: NumberLike, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            log.error("%s validation failed: %r", field_name, value)
            raise ValidationError(f"{field_name} must be a number") from exc
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def require_positive_quantity(quantity: NumberLike) -> Decimal:
    """Validate that a quantity is strictly positive and return it as ``Decimal``.

    Direction is carried by the entry type, so callers always submit
    magnitudes.

    Raises:
        ValidationError: If ``quantity`` is not a number or is not above zero.
    """
    value = _to_decimal(quantity, "Quantity")
    if value <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")
    return value


def require_nonnegative_money(amount: NumberLike, field_name: str = "Amount") -> Decimal:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValidationError: If ``amount`` is negative or not a number.
    """
    value = _to_decimal(amount, field_name)
    if value < Decimal("0"):
        log.error("%s validation failed: %s", field_name, amount)
        raise ValidationError(f"{field_name} must be zero or positive")
    return value


def require_location(value: Union[Location, str, None]) -> Location:
    """Resolve a location name into the :class:`Location` enum."""
    if isinstance(value, Location):
        return value
    try:
        return Location(str(value).strip())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in Location)
        log.error("Location validation failed: %r", value)
        raise ValidationError(f"Invalid location '{value}'. Expected one of: {allowed}") from exc


def require_date(value: DateLike) -> date:
    """Resolve a caller supplied date into a calendar date."""
    try:
        return data_manager.parse_date_value(value)
    except ValueError as exc:
        log.error("Date validation failed: %r", value)
        raise ValidationError(f"Invalid date '{value}'. Expected YYYY-MM-DD") from exc


def _optional_text(value: Optional[str], field_name: str, max_length: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        log.error("%s validation failed: %d characters", field_name, len(text))
        raise ValidationError(f"{field_name} cannot exceed {max_length} characters")
    return text


def require_product_name(value: Optional[str]) -> str:
    name = _optional_text(value, "Product name", MAX_PRODUCT_NAME_LENGTH)
    if name is None:
        log.error("Product name validation failed: empty value")
        raise ValidationError("Product name is required")
    return name


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return every product in sheet order."""
    return list(_ensure_products_cache(context)["all"])


def list_transactions(context: RuntimeContext, product_id: Optional[str] = None) -> List[data_manager.TransactionRow]:
    """Return ledger entries in sheet order, optionally for one product."""
    cache = _ensure_transactions_cache(context)
    if product_id is None:
        return list(cache["all"])
    return list(cache["by_product"].get(product_id, []))


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return every sale in sheet order."""
    return list(_ensure_sales_cache(context)["all"])


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    try:
        return _ensure_products_cache(context)["by_id"][product_id]
    except KeyError as exc:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Product not found: {product_id}") from exc


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Retrieve a ledger entry by its identifier.

    Raises:
        MissingReferenceError: If the ledger lacks the supplied identifier.
    """
    try:
        return _ensure_transactions_cache(context)["by_id"][transaction_id]
    except KeyError as exc:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Transaction not found: {transaction_id}") from exc


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Retrieve a sale by its identifier.

    Raises:
        MissingReferenceError: If no sale carries ``sale_id``.
    """
    try:
        return _ensure_sales_cache(context)["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Sale not found: {sale_id}") from exc


def find_sale_for_entry(context: RuntimeContext, transaction_id: str) -> Optional[data_manager.SaleRow]:
    """Return the sale paired with a ledger entry, if any."""
    return _ensure_sales_cache(context)["by_transaction"].get(transaction_id)


def project_product(
    context: RuntimeContext,
    product: data_manager.ProductRow,
    as_of: Optional[date] = None,
) -> ProductBalance:
    """Attach the projected balance to ``product``."""
    summary: BalanceSummary = compute_balance(
        product, list_transactions(context, product.product_id), as_of=as_of)
    return ProductBalance(
        product=product,
        balance=summary.balance,
        total_in=summary.total_in,
        total_out=summary.total_out,
        status=classify_stock(summary.balance, summary.total_in),
    )


def get_product_balance(
    context: RuntimeContext,
    product_id: str,
    as_of: Optional[DateLike] = None,
) -> ProductBalance:
    """Project the current, or as-of-date, balance of one product."""
    product = get_product(context, product_id)
    cutoff = require_date(as_of) if as_of is not None else None
    return project_product(context, product, as_of=cutoff)


def current_balance(context: RuntimeContext, product_id: str) -> Decimal:
    """Return the signed balance of ``product_id`` over its full ledger."""
    product = get_product(context, product_id)
    return compute_balance(product, list_transactions(context, product_id)).balance


# ---------------------------------------------------------------------------
# Row writers
# ---------------------------------------------------------------------------


def _write_entry(
    context: RuntimeContext,
    *,
    product_id: str,
    entry_type: EntryType,
    quantity: Decimal,
    entry_date: date,
    description: Optional[str],
    timestamp: datetime,
) -> data_manager.TransactionRow:
    stamp = timestamp.isoformat()
    entry = data_manager.TransactionRow(
        transaction_id=generate_id("T", when=timestamp),
        product_id=product_id,
        entry_type=entry_type.value,
        quantity=quantity,
        date=entry_date,
        description=description,
        created_at=stamp,
        updated_at=stamp,
    )
    with context._workbook_lock:
        data_manager.append_transaction(context.workbook, entry)
        _invalidate_cache(context, "transactions")
    return entry


def _remove_entry(context: RuntimeContext, transaction_id: str) -> bool:
    with context._workbook_lock:
        removed = data_manager.delete_transaction(context.workbook, transaction_id)
        _invalidate_cache(context, "transactions")
    return removed


def _sale_entry_description(context: RuntimeContext, quantity: Decimal, price: Decimal, description: Optional[str]) -> str:
    if description:
        return description
    return f"Sale of {quantity} units at {price} {context.settings.currency} each"


def _write_sale_pair(context: RuntimeContext, prepared: _PreparedSale, timestamp: datetime) -> RecordedSale:
    """Write the ``out`` entry and the sale; undo the entry if the sale fails."""
    entry = _write_entry(
        context,
        product_id=prepared.product.product_id,
        entry_type=EntryType.OUT,
        quantity=prepared.quantity,
        entry_date=prepared.date,
        description=_sale_entry_description(context, prepared.quantity, prepared.price, prepared.description),
        timestamp=timestamp,
    )
    stamp = timestamp.isoformat()
    sale = data_manager.SaleRow(
        sale_id=generate_id("S", when=timestamp),
        product_id=prepared.product.product_id,
        product_name=prepared.product.name,
        date=prepared.date,
        location=prepared.location.value,
        quantity=prepared.quantity,
        price=prepared.price,
        total=sale_total(prepared.quantity, prepared.price),
        description=prepared.description,
        receiver=prepared.receiver,
        transaction_id=entry.transaction_id,
        created_at=stamp,
        updated_at=stamp,
    )
    try:
        with context._workbook_lock:
            data_manager.append_sale(context.workbook, sale)
            _invalidate_cache(context, "sales")
    except Exception:
        log.error("Sale write failed; removing ledger entry '%s'", entry.transaction_id)
        _remove_entry(context, entry.transaction_id)
        raise
    return RecordedSale(sale=sale, entry=entry)


def _undo_sale(context: RuntimeContext, recorded: RecordedSale) -> None:
    with context._workbook_lock:
        data_manager.delete_sale(context.workbook, recorded.sale.sale_id)
        data_manager.delete_transaction(context.workbook, recorded.entry.transaction_id)
        _invalidate_cache(context, "sales", "transactions")


def _require_stock(context: RuntimeContext, product_id: str, requested: Decimal, *, credit: Decimal = Decimal("0")) -> None:
    available = current_balance(context, product_id) + credit
    if requested > available:
        log.warning(
            "Rejected outgoing movement for product '%s': available=%s requested=%s",
            product_id,
            available,
            requested,
        )
        raise InsufficientStockError(product_id, available, requested)


# ---------------------------------------------------------------------------
# Product commands
# ---------------------------------------------------------------------------


def create_product(
    context: RuntimeContext,
    *,
    name: str,
    location: Union[Location, str],
    initial_balance: NumberLike = Decimal("0"),
    price: NumberLike = Decimal("0"),
    date_added: Optional[DateLike] = None,
    record_opening_entry: bool = False,
) -> ProductBalance:
    """Register a product and return it with its opening projection.

    With ``record_opening_entry`` the opening quantity is carried by a single
    ``in`` entry labelled "Initial balance" and the stored baseline is zero, so
    the opening stock is counted exactly once either way.

    Raises:
        ValidationError: When name, location, balance or price are invalid.
    """
    product_name = require_product_name(name)
    site = require_location(location)
    opening = require_nonnegative_money(initial_balance, "Initial balance")
    unit_price = require_nonnegative_money(price, "Price")
    timestamp = _resolve_timestamp()
    added = require_date(date_added) if date_added is not None else timestamp.date()

    carry_in_ledger = record_opening_entry and opening > 0
    product = data_manager.ProductRow(
        product_id=generate_id("P", when=timestamp),
        name=product_name,
        location=site.value,
        initial_balance=Decimal("0") if carry_in_ledger else opening,
        price=unit_price,
        date_added=added,
    )
    with context._workbook_lock:
        data_manager.append_product(context.workbook, product)
        _invalidate_cache(context, "products")

    if carry_in_ledger:
        _write_entry(
            context,
            product_id=product.product_id,
            entry_type=EntryType.IN,
            quantity=opening,
            entry_date=added,
            description=OPENING_ENTRY_DESCRIPTION,
            timestamp=timestamp,
        )

    log.info(
        "Created product '%s' (%s) at %s with opening balance %s",
        product.product_id,
        product.name,
        product.location,
        opening,
    )
    return project_product(context, product)


def update_product(
    context: RuntimeContext,
    product_id: str,
    *,
    name: Optional[str] = None,
    location: Optional[Union[Location, str]] = None,
    initial_balance: Optional[NumberLike] = None,
    price: Optional[NumberLike] = None,
) -> ProductBalance:
    """Edit product fields directly. Ledger entries are untouched.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: When a supplied field is invalid.
    """
    get_product(context, product_id)
    field_values: Dict[str, Any] = {}
    if name is not None:
        field_values["ProductName"] = require_product_name(name)
    if location is not None:
        field_values["Location"] = require_location(location)
    if initial_balance is not None:
        field_values["InitialBalance"] = require_nonnegative_money(initial_balance, "Initial balance")
    if price is not None:
        field_values["Price"] = require_nonnegative_money(price, "Price")

    if field_values:
        with product_critical_section(context, product_id), context._workbook_lock:
            data_manager.update_product(context.workbook, product_id, field_values=field_values)
            _invalidate_cache(context, "products")
        log.info("Updated product '%s' fields: %s", product_id, ", ".join(field_values))

    return project_product(context, get_product(context, product_id))


def delete_product(context: RuntimeContext, product_id: str) -> Dict[str, int]:
    """Delete a product together with its ledger entries and its sales.

    Returns:
        dict[str, int]: Number of removed ``transactions`` and ``sales``.
    """
    product = get_product(context, product_id)
    with product_critical_section(context, product_id), context._workbook_lock:
        entries = list_transactions(context, product_id)
        sales = [sale for sale in list_sales(context) if sale.product_id == product_id]
        for sale in sales:
            data_manager.delete_sale(context.workbook, sale.sale_id)
        for entry in entries:
            data_manager.delete_transaction(context.workbook, entry.transaction_id)
        data_manager.delete_product(context.workbook, product_id)
        _invalidate_cache(context, "products", "transactions", "sales")

    log.info(
        "Deleted product '%s' (%s) with %d ledger entries and %d sales",
        product_id,
        product.name,
        len(entries),
        len(sales),
    )
    return {"transactions": len(entries), "sales": len(sales)}


# ---------------------------------------------------------------------------
# Ledger commands
# ---------------------------------------------------------------------------


def add_stock_entry(context: RuntimeContext, command: StockEntryCommand) -> data_manager.TransactionRow:
    """Record incoming stock as an ``in`` ledger entry.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: When quantity, date or description are invalid.
    """
    product = get_product(context, command.product_id)
    quantity = require_positive_quantity(command.quantity)
    entry_date = require_date(command.date)
    description = _optional_text(command.description, "Description", MAX_DESCRIPTION_LENGTH)

    with product_critical_section(context, product.product_id):
        entry = _write_entry(
            context,
            product_id=product.product_id,
            entry_type=EntryType.IN,
            quantity=quantity,
            entry_date=entry_date,
            description=description,
            timestamp=_resolve_timestamp(),
        )
    log.info(
        "Recorded IN entry '%s' for product '%s' (quantity=%s, date=%s)",
        entry.transaction_id,
        product.product_id,
        quantity,
        entry_date,
    )
    return entry


def record_out_entry(context: RuntimeContext, command: OutEntryCommand) -> data_manager.TransactionRow:
    """Remove stock without a sale, refusing to go below zero.

    Raises:
        InsufficientStockError: If the quantity exceeds the current balance.
    """
    product = get_product(context, command.product_id)
    quantity = require_positive_quantity(command.quantity)
    entry_date = require_date(command.date)
    description = _optional_text(command.description, "Description", MAX_DESCRIPTION_LENGTH)

    with product_critical_section(context, product.product_id):
        _require_stock(context, product.product_id, quantity)
        entry = _write_entry(
            context,
            product_id=product.product_id,
            entry_type=EntryType.OUT,
            quantity=quantity,
            entry_date=entry_date,
            description=description,
            timestamp=_resolve_timestamp(),
        )
    log.info(
        "Recorded OUT entry '%s' for product '%s' (quantity=%s, date=%s)",
        entry.transaction_id,
        product.product_id,
        quantity,
        entry_date,
    )
    return entry


def _reject_paired_entry(context: RuntimeContext, entry: data_manager.TransactionRow, action: str) -> None:
    sale = find_sale_for_entry(context, entry.transaction_id)
    if sale is not None:
        log.warning("Refused to %s entry '%s' paired with sale '%s'", action, entry.transaction_id, sale.sale_id)
        raise BusinessRuleViolation(
            f"Ledger entry '{entry.transaction_id}' belongs to sale '{sale.sale_id}'; "
            f"{action} the sale instead"
        )


def update_stock_entry(context: RuntimeContext, command: StockEntryUpdate) -> data_manager.TransactionRow:
    """Edit quantity, date or description of a bare ledger entry in place.

    The edit is not re-validated against the balance. Entries that belong to a
    sale are refused so the sale and its entry cannot drift apart.
    """
    entry = get_transaction(context, command.transaction_id)
    _reject_paired_entry(context, entry, "update")

    field_values: Dict[str, Any] = {}
    if command.quantity is not None:
        field_values["Quantity"] = require_positive_quantity(command.quantity)
    if command.date is not None:
        field_values["Date"] = require_date(command.date)
    if command.description is not None:
        field_values["Description"] = _optional_text(command.description, "Description", MAX_DESCRIPTION_LENGTH)
    if not field_values:
        return entry

    field_values["UpdatedAt"] = _resolve_timestamp().isoformat()
    with product_critical_section(context, entry.product_id), context._workbook_lock:
        data_manager.update_transaction(context.workbook, entry.transaction_id, field_values=field_values)
        _invalidate_cache(context, "transactions")
    log.info("Updated ledger entry '%s' fields: %s", entry.transaction_id, ", ".join(field_values))
    return get_transaction(context, entry.transaction_id)


def delete_stock_entry(
    context: RuntimeContext,
    transaction_id: str,
    *,
    product_id: Optional[str] = None,
) -> data_manager.TransactionRow:
    """Delete a bare ledger entry.

    When ``product_id`` is given the entry must belong to that product.

    Raises:
        MissingReferenceError: If the entry is unknown or owned by another
            product.
        BusinessRuleViolation: If the entry is paired with a sale.
    """
    entry = get_transaction(context, transaction_id)
    if product_id is not None and entry.product_id != product_id:
        log.warning("Entry '%s' does not belong to product '%s'", transaction_id, product_id)
        raise MissingReferenceError(f"Transaction not found: {transaction_id}")
    _reject_paired_entry(context, entry, "delete")

    with product_critical_section(context, entry.product_id):
        _remove_entry(context, transaction_id)
    log.info("Deleted ledger entry '%s' for product '%s'", transaction_id, entry.product_id)
    return entry


def clear_product_history(context: RuntimeContext, product_id: str) -> ProductBalance:
    """Delete every ledger entry of a product; the balance falls back to its baseline.

    The baseline is the stored ``initial_balance``. A product created with
    ``record_opening_entry=True`` stores a baseline of 0 and keeps its opening
    stock as a ledger entry, so clearing its history drops the opening stock
    too and leaves a balance of 0.

    Sales pointing at the removed entries are left in place and surface in
    the ledger audit as dangling.
    """
    product = get_product(context, product_id)
    with product_critical_section(context, product_id), context._workbook_lock:
        entries = list_transactions(context, product_id)
        for entry in entries:
            data_manager.delete_transaction(context.workbook, entry.transaction_id)
        _invalidate_cache(context, "transactions")

    dangling = sum(1 for sale in list_sales(context) if sale.product_id == product_id)
    if dangling:
        log.warning("Clearing history of '%s' left %d sales without ledger entries", product_id, dangling)
    log.info("Cleared %d ledger entries for product '%s'", len(entries), product_id)
    return project_product(context, product)


# ---------------------------------------------------------------------------
# Sale commands
# ---------------------------------------------------------------------------


def _prepare_sale(
    context: RuntimeContext,
    *,
    product_id: str,
    quantity: NumberLike,
    price: NumberLike,
    sale_date: DateLike,
    location: Optional[Union[Location, str]],
    description: Optional[str],
    receiver: Optional[str],
) -> _PreparedSale:
    product = get_product(context, product_id)
    site = require_location(location if location is not None else product.location)
    if site.value != product.location:
        log.warning("Product '%s' is stocked at %s, not %s", product_id, product.location, site.value)
        raise ValidationError(
            f"Product '{product.name}' does not belong to location '{site.value}'"
        )
    return _PreparedSale(
        product=product,
        quantity=require_positive_quantity(quantity),
        price=require_nonnegative_money(price, "Price"),
        date=require_date(sale_date),
        location=site,
        description=_optional_text(description, "Description", MAX_DESCRIPTION_LENGTH),
        receiver=_optional_text(receiver, "Receiver", MAX_RECEIVER_LENGTH),
    )


def record_sale(context: RuntimeContext, command: SaleCommand) -> RecordedSale:
    """Record a sale and its ``out`` ledger entry as one logical operation.

    The stock check and both writes happen inside the product's critical
    section. If the sale row cannot be written the ledger entry is removed
    again, so either both rows exist or neither does.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: When any field is invalid.
        InsufficientStockError: If ``quantity`` exceeds the current balance.
    """
    prepared = _prepare_sale(
        context,
        product_id=command.product_id,
        quantity=command.quantity,
        price=command.price,
        sale_date=command.date,
        location=command.location,
        description=command.description,
        receiver=command.receiver,
    )
    with product_critical_section(context, prepared.product.product_id):
        _require_stock(context, prepared.product.product_id, prepared.quantity)
        recorded = _write_sale_pair(context, prepared, _resolve_timestamp())
    log.info(
        "Recorded sale '%s' for product '%s' (quantity=%s, total=%s, entry=%s)",
        recorded.sale.sale_id,
        prepared.product.product_id,
        recorded.sale.quantity,
        recorded.sale.total,
        recorded.entry.transaction_id,
    )
    return recorded


def _paired_entry(context: RuntimeContext, sale: data_manager.SaleRow) -> data_manager.TransactionRow:
    if sale.transaction_id is None:
        log.warning("Sale '%s' has no linked ledger entry", sale.sale_id)
        raise MissingReferenceError(f"Ledger entry for sale '{sale.sale_id}' not found")
    try:
        return get_transaction(context, sale.transaction_id)
    except MissingReferenceError as exc:
        raise MissingReferenceError(
            f"Ledger entry '{sale.transaction_id}' for sale '{sale.sale_id}' not found"
        ) from exc


def update_sale(context: RuntimeContext, update: SaleUpdate) -> RecordedSale:
    """Update a sale and its paired ledger entry together.

    The total is recomputed from the new quantity and price. Only growth is
    checked against stock: the new quantity must fit in the balance that
    excludes this sale's own entry, so edits that keep or lower the quantity
    pass even when the balance is already negative. Without an explicit
    location the sale takes its product's current location.

    Raises:
        MissingReferenceError: If the sale, its entry, or the new product is
            unknown.
        InsufficientStockError: If the new quantity cannot be covered.
    """
    sale = get_sale(context, update.sale_id)
    entry = _paired_entry(context, sale)
    target_id = update.product_id or sale.product_id
    product = get_product(context, target_id)

    quantity = require_positive_quantity(update.quantity) if update.quantity is not None else sale.quantity
    price = require_nonnegative_money(update.price, "Price") if update.price is not None else sale.price
    sale_date = require_date(update.date) if update.date is not None else sale.date
    description = (
        _optional_text(update.description, "Description", MAX_DESCRIPTION_LENGTH)
        if update.description is not None
        else sale.description
    )
    receiver = (
        _optional_text(update.receiver, "Receiver", MAX_RECEIVER_LENGTH)
        if update.receiver is not None
        else sale.receiver
    )
    # without an explicit location the sale follows its product, which may have moved
    site = require_location(update.location if update.location is not None else product.location)
    if site.value != product.location:
        raise ValidationError(f"Product '{product.name}' does not belong to location '{site.value}'")

    product_name = product.name if target_id != sale.product_id else sale.product_name
    stamp = _resolve_timestamp().isoformat()
    entry_values: Dict[str, Any] = {
        "ProductID": target_id,
        "Type": EntryType.OUT,
        "Quantity": quantity,
        "Date": sale_date,
        "Description": _sale_entry_description(context, quantity, price, description),
        "UpdatedAt": stamp,
    }
    sale_values: Dict[str, Any] = {
        "ProductID": target_id,
        "ProductName": product_name,
        "Date": sale_date,
        "Location": site,
        "Quantity": quantity,
        "Price": price,
        "Total": sale_total(quantity, price),
        "Description": description,
        "Receiver": receiver,
        "UpdatedAt": stamp,
    }
    previous_entry: Dict[str, Any] = {
        "ProductID": entry.product_id,
        "Type": entry.entry_type,
        "Quantity": entry.quantity,
        "Date": entry.date,
        "Description": entry.description,
        "UpdatedAt": entry.updated_at,
    }

    with product_critical_section(context, sale.product_id, target_id):
        own_quantity = (
            entry.quantity
            if entry.product_id == target_id and entry.entry_type == EntryType.OUT.value
            else Decimal("0")
        )
        if quantity > own_quantity:
            _require_stock(context, target_id, quantity, credit=own_quantity)
        with context._workbook_lock:
            data_manager.update_transaction(context.workbook, entry.transaction_id, field_values=entry_values)
            try:
                data_manager.update_sale(context.workbook, sale.sale_id, field_values=sale_values)
            except Exception:
                log.error("Sale update failed; restoring ledger entry '%s'", entry.transaction_id)
                data_manager.update_transaction(context.workbook, entry.transaction_id, field_values=previous_entry)
                raise
            finally:
                _invalidate_cache(context, "transactions", "sales")

    log.info(
        "Updated sale '%s' (quantity=%s, price=%s, date=%s)",
        sale.sale_id,
        quantity,
        price,
        sale_date,
    )
    return RecordedSale(sale=get_sale(context, sale.sale_id), entry=get_transaction(context, entry.transaction_id))


def delete_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Delete a sale together with its paired ledger entry.

    Removing the ``out`` entry restores the stock the sale consumed. A sale
    whose entry is already gone is still removed.
    """
    sale = get_sale(context, sale_id)
    with product_critical_section(context, sale.product_id), context._workbook_lock:
        entry = None
        if sale.transaction_id is not None:
            entry = _ensure_transactions_cache(context)["by_id"].get(sale.transaction_id)
        if entry is not None:
            data_manager.delete_transaction(context.workbook, entry.transaction_id)
        else:
            log.warning("Sale '%s' had no ledger entry to remove", sale_id)
        try:
            data_manager.delete_sale(context.workbook, sale_id)
        except Exception:
            if entry is not None:
                log.error("Sale delete failed; restoring ledger entry '%s'", entry.transaction_id)
                data_manager.append_transaction(context.workbook, entry)
            raise
        finally:
            _invalidate_cache(context, "transactions", "sales")

    log.info("Deleted sale '%s' for product '%s' (quantity=%s)", sale_id, sale.product_id, sale.quantity)
    return sale


def delete_sales_for_date(
    context: RuntimeContext,
    sale_date: DateLike,
    location: Union[Location, str],
) -> BulkDeleteResult:
    """Delete every sale of ``location`` on ``sale_date`` with its ledger entry.

    Each sale is deleted on its own; a failure is recorded in the result and
    the remaining sales are still processed.
    """
    target_date = require_date(sale_date)
    site = require_location(location)
    targets = [
        sale for sale in list_sales(context)
        if sale.date == target_date and sale.location == site.value
    ]

    deleted = 0
    errors: List[BatchItemError] = []
    for sale in targets:
        try:
            delete_sale(context, sale.sale_id)
        except Exception as exc:
            log.error("Failed to delete sale '%s': %s", sale.sale_id, exc)
            errors.append(
                BatchItemError(item_id=sale.sale_id, kind=getattr(exc, "kind", "error"), message=str(exc))
            )
        else:
            deleted += 1

    log.info(
        "Deleted %d of %d sales for %s at %s (%d errors)",
        deleted,
        len(targets),
        target_date,
        site.value,
        len(errors),
    )
    return BulkDeleteResult(deleted_count=deleted, errors=errors)


# ---------------------------------------------------------------------------
# Batch operations
# ---------------------------------------------------------------------------


def _require_batch_membership(product: data_manager.ProductRow, site: Location) -> None:
    if product.location != site.value:
        log.warning("Batch rejected: product '%s' is stocked at %s, not %s", product.product_id, product.location, site.value)
        raise ValidationError(
            f"Product '{product.name}' ({product.product_id}) does not belong to location '{site.value}'"
        )


def record_sales_batch(context: RuntimeContext, command: SalesBatchCommand) -> List[RecordedSale]:
    """Record several sales sharing date, location and description.

    The batch is all-or-nothing. Every item is validated, checked for
    location membership, and the summed quantity per product is checked
    against its balance before anything is written. Should a write still fail,
    every sale already written by the batch is removed again.
    """
    site = require_location(command.location)
    sale_date = require_date(command.date)
    if not command.items:
        raise ValidationError("A sales batch needs at least one item")

    prepared: List[_PreparedSale] = []
    for item in command.items:
        product = get_product(context, item.product_id)
        _require_batch_membership(product, site)
        prepared.append(
            _prepare_sale(
                context,
                product_id=item.product_id,
                quantity=item.quantity,
                price=item.price,
                sale_date=sale_date,
                location=site,
                description=item.description if item.description is not None else command.description,
                receiver=item.receiver,
            )
        )

    requested: Dict[str, Decimal] = {}
    for sale in prepared:
        requested[sale.product.product_id] = requested.get(sale.product.product_id, Decimal("0")) + sale.quantity

    created: List[RecordedSale] = []
    with product_critical_section(context, *requested):
        for product_id, quantity in requested.items():
            _require_stock(context, product_id, quantity)
        # one microsecond apart so batch items keep their order by creation time
        started = _resolve_timestamp()
        try:
            for index, sale in enumerate(prepared):
                created.append(_write_sale_pair(context, sale, started + timedelta(microseconds=index)))
        except Exception:
            log.error("Sales batch failed after %d writes; rolling back", len(created))
            for recorded in reversed(created):
                _undo_sale(context, recorded)
            raise

    log.info("Recorded sales batch of %d items for %s at %s", len(created), sale_date, site.value)
    return created


def add_stock_batch(context: RuntimeContext, command: StockBatchCommand) -> List[data_manager.TransactionRow]:
    """Create one ``in`` entry per item for a single date and location.

    Every item's product must belong to the batch location; otherwise the
    whole batch is rejected before any entry is written.
    """
    site = require_location(command.location)
    entry_date = require_date(command.date)
    if not command.items:
        raise ValidationError("A stock batch needs at least one item")

    planned = []
    for item in command.items:
        product = get_product(context, item.product_id)
        _require_batch_membership(product, site)
        description = item.description if item.description is not None else command.description
        planned.append(
            (
                product.product_id,
                require_positive_quantity(item.quantity),
                _optional_text(description, "Description", MAX_DESCRIPTION_LENGTH),
            )
        )

    created: List[data_manager.TransactionRow] = []
    with product_critical_section(context, *(product_id for product_id, _, _ in planned)):
        started = _resolve_timestamp()
        try:
            for index, (product_id, quantity, description) in enumerate(planned):
                created.append(
                    _write_entry(
                        context,
                        product_id=product_id,
                        entry_type=EntryType.IN,
                        quantity=quantity,
                        entry_date=entry_date,
                        description=description,
                        timestamp=started + timedelta(microseconds=index),
                    )
                )
        except Exception:
            log.error("Stock batch failed after %d writes; rolling back", len(created))
            for entry in reversed(created):
                _remove_entry(context, entry.transaction_id)
            raise

    log.info("Recorded stock batch of %d items for %s at %s", len(created), entry_date, site.value)
    return created
