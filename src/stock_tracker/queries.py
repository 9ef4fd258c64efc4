"""Read-only views over products, the ledger and sales.

Nothing in here writes to the workbook. Every figure is recomputed from the
rows cached on the :class:`~stock_tracker.core_logic.RuntimeContext`, so two
calls without an intervening write always agree.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .balance import totals_match
from .constants import EntryType, Location
from .core_logic import (
    DateLike,
    ProductBalance,
    RuntimeContext,
    ValidationError,
    get_product,
    project_product,
    require_date,
    require_location,
)
from . import core_logic


@dataclass(frozen=True)
class Page:
    """One page of a sorted listing."""

    items: List[Any]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


@dataclass(frozen=True)
class SaleDate:
    """A date with at least one countable sale at a location."""

    date: date
    count: int
    total: Decimal


@dataclass(frozen=True)
class SalesSummaryRow:
    date: date
    location: str
    total_sales: Decimal
    total_items: Decimal
    count: int


@dataclass(frozen=True)
class Inconsistency:
    """A disagreement between sales, ledger entries and products."""

    kind: str
    reference_id: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


def _matches(text: Optional[str], search: Optional[str]) -> bool:
    if not search:
        return True
    return search.strip().lower() in (text or "").lower()


def _paginate(items: Sequence[Any], page: int, limit: int) -> Page:
    if page < 1:
        raise ValidationError("Page must be at least 1")
    if limit < 1:
        raise ValidationError("Limit must be at least 1")
    start = (page - 1) * limit
    return Page(items=list(items[start:start + limit]), total=len(items), page=page, limit=limit)


def _newest_first(rows: Sequence[Any]) -> List[Any]:
    # created_at is an ISO timestamp, so string order is time order
    return sorted(rows, key=lambda row: (row.date, row.created_at), reverse=True)


def _optional_location(location: Union[Location, str, None]) -> Optional[str]:
    return require_location(location).value if location is not None else None


def list_products_with_balance(
    context: RuntimeContext,
    *,
    location: Union[Location, str, None] = None,
    search: Optional[str] = None,
) -> List[ProductBalance]:
    """Return matching products with their projected balances.

    Args:
        context (RuntimeContext): Active runtime context.
        location (Location | str | None): Restrict to one site.
        search (str | None): Case-insensitive substring of the product name.

    Returns:
        list[ProductBalance]: Products sorted case-insensitively by name.
    """
    site = _optional_location(location)
    products = [
        product
        for product in core_logic.list_products(context)
        if (site is None or product.location == site) and _matches(product.name, search)
    ]
    products.sort(key=lambda product: product.name.lower())
    return [project_product(context, product) for product in products]


def find_sales(
    context: RuntimeContext,
    *,
    date: Optional[DateLike] = None,
    location: Union[Location, str, None] = None,
    search: Optional[str] = None,
    start_date: Optional[DateLike] = None,
    end_date: Optional[DateLike] = None,
) -> List[data_manager.SaleRow]:
    """Return every matching sale, newest first.

    ``date`` selects a single day; ``start_date`` and ``end_date`` bound an
    inclusive range. ``search`` matches the product name snapshot.
    """
    exact = require_date(date) if date is not None else None
    start = require_date(start_date) if start_date is not None else None
    end = require_date(end_date) if end_date is not None else None
    site = _optional_location(location)

    matched = [
        sale
        for sale in core_logic.list_sales(context)
        if (exact is None or sale.date == exact)
        and (start is None or sale.date >= start)
        and (end is None or sale.date <= end)
        and (site is None or sale.location == site)
        and _matches(sale.product_name, search)
    ]
    return _newest_first(matched)


def list_sales(
    context: RuntimeContext,
    *,
    date: Optional[DateLike] = None,
    location: Union[Location, str, None] = None,
    search: Optional[str] = None,
    start_date: Optional[DateLike] = None,
    end_date: Optional[DateLike] = None,
    page: int = 1,
    limit: Optional[int] = None,
) -> Page:
    """Return one page of :func:`find_sales` results.

    ``limit`` defaults to the configured page size.
    """
    matched = find_sales(
        context,
        date=date,
        location=location,
        search=search,
        start_date=start_date,
        end_date=end_date,
    )
    return _paginate(matched, page, limit if limit is not None else context.settings.page_size)


def list_transactions_for_product(
    context: RuntimeContext,
    product_id: str,
    *,
    page: int = 1,
    limit: Optional[int] = None,
    search: Optional[str] = None,
) -> Page:
    """Return one page of a product's ledger entries, newest first.

    Raises:
        MissingReferenceError: If the product does not exist.
    """
    get_product(context, product_id)
    entries = [
        entry
        for entry in core_logic.list_transactions(context, product_id)
        if _matches(entry.description, search)
    ]
    return _paginate(_newest_first(entries), page, limit if limit is not None else context.settings.page_size)


def list_transactions(
    context: RuntimeContext,
    *,
    location: Union[Location, str, None] = None,
    date: Optional[DateLike] = None,
    entry_type: Union[EntryType, str, None] = None,
) -> List[data_manager.TransactionRow]:
    """Return ledger entries filtered by product location, date and type."""
    site = _optional_location(location)
    day = require_date(date) if date is not None else None
    if entry_type is None:
        direction = None
    else:
        try:
            direction = EntryType(str(getattr(entry_type, "value", entry_type)).lower()).value
        except ValueError as exc:
            raise ValidationError(f"Invalid entry type '{entry_type}'. Expected 'in' or 'out'") from exc

    locations = {product.product_id: product.location for product in core_logic.list_products(context)}
    entries = [
        entry
        for entry in core_logic.list_transactions(context)
        if (site is None or locations.get(entry.product_id) == site)
        and (day is None or entry.date == day)
        and (direction is None or entry.entry_type == direction)
    ]
    return _newest_first(entries)


def list_available_sale_dates(context: RuntimeContext, location: Union[Location, str]) -> List[SaleDate]:
    """Return the dates that have at least one countable sale at ``location``.

    A sale counts only when both its quantity and its total are positive, so a
    day holding nothing but ledger entries or zero-value sales never appears.
    """
    site = require_location(location).value
    buckets: Dict[date, Tuple[int, Decimal]] = {}
    for sale in core_logic.list_sales(context):
        if sale.location != site or sale.quantity <= 0 or sale.total <= 0:
            continue
        count, total = buckets.get(sale.date, (0, Decimal("0")))
        buckets[sale.date] = (count + 1, total + sale.total)

    return [
        SaleDate(date=day, count=count, total=total)
        for day, (count, total) in sorted(buckets.items(), reverse=True)
    ]


def summarize_sales(
    context: RuntimeContext,
    *,
    start_date: Optional[DateLike] = None,
    end_date: Optional[DateLike] = None,
    location: Union[Location, str, None] = None,
) -> List[SalesSummaryRow]:
    """Aggregate sales per date and location.

    Rows are ordered newest date first and, within a date, by location name.
    """
    start = require_date(start_date) if start_date is not None else None
    end = require_date(end_date) if end_date is not None else None
    site = _optional_location(location)

    groups: Dict[Tuple[date, str], List[data_manager.SaleRow]] = {}
    for sale in core_logic.list_sales(context):
        if start is not None and sale.date < start:
            continue
        if end is not None and sale.date > end:
            continue
        if site is not None and sale.location != site:
            continue
        groups.setdefault((sale.date, sale.location), []).append(sale)

    rows = [
        SalesSummaryRow(
            date=day,
            location=site_name,
            total_sales=sum((sale.total for sale in sales), Decimal("0")),
            total_items=sum((sale.quantity for sale in sales), Decimal("0")),
            count=len(sales),
        )
        for (day, site_name), sales in groups.items()
    ]
    rows.sort(key=lambda row: row.location)
    rows.sort(key=lambda row: row.date, reverse=True)
    return rows


def audit_ledger(context: RuntimeContext) -> List[Inconsistency]:
    """Report every place where sales, ledger entries and products disagree.

    Checks performed:

    * a sale whose paired ledger entry is missing;
    * a sale whose entry differs in product, type, quantity or date;
    * a sale whose total is not ``quantity * price``;
    * a ledger entry or sale that references an unknown product;
    * a product whose projected balance is negative.
    """
    findings: List[Inconsistency] = []
    products = {product.product_id: product for product in core_logic.list_products(context)}
    entries = {entry.transaction_id: entry for entry in core_logic.list_transactions(context)}

    for sale in core_logic.list_sales(context):
        if sale.product_id not in products:
            findings.append(Inconsistency(
                kind="unknown_product",
                reference_id=sale.sale_id,
                message=f"Sale '{sale.sale_id}' references unknown product '{sale.product_id}'",
            ))
        entry = entries.get(sale.transaction_id) if sale.transaction_id else None
        if entry is None:
            findings.append(Inconsistency(
                kind="missing_entry",
                reference_id=sale.sale_id,
                message=f"Sale '{sale.sale_id}' has no ledger entry",
                details={"transaction_id": sale.transaction_id},
            ))
        else:
            mismatched = {
                name: (expected, actual)
                for name, expected, actual in (
                    ("product_id", sale.product_id, entry.product_id),
                    ("entry_type", EntryType.OUT.value, entry.entry_type),
                    ("quantity", sale.quantity, entry.quantity),
                    ("date", sale.date, entry.date),
                )
                if expected != actual
            }
            if mismatched:
                findings.append(Inconsistency(
                    kind="entry_mismatch",
                    reference_id=sale.sale_id,
                    message=f"Sale '{sale.sale_id}' disagrees with entry '{entry.transaction_id}' on "
                    + ", ".join(sorted(mismatched)),
                    details=mismatched,
                ))
        if not totals_match(sale.quantity, sale.price, sale.total):
            findings.append(Inconsistency(
                kind="total_mismatch",
                reference_id=sale.sale_id,
                message=f"Sale '{sale.sale_id}' total {sale.total} != {sale.quantity} x {sale.price}",
            ))

    for entry in entries.values():
        if entry.product_id not in products:
            findings.append(Inconsistency(
                kind="unknown_product",
                reference_id=entry.transaction_id,
                message=f"Ledger entry '{entry.transaction_id}' references unknown product '{entry.product_id}'",
            ))

    for product in products.values():
        projection = project_product(context, product)
        if projection.balance < 0:
            findings.append(Inconsistency(
                kind="negative_balance",
                reference_id=product.product_id,
                message=f"Product '{product.name}' has negative balance {projection.balance}",
                details={"balance": projection.balance},
            ))

    if findings:
        log.warning("Ledger audit found %d inconsistencies", len(findings))
    else:
        log.info("Ledger audit found no inconsistencies")
    return findings
