"""Balance projection over the stock ledger.

A product's balance is never stored. It is recomputed from the product's
``initial_balance`` and its ledger entries every time it is read::

    balance   = initial_balance + sum(in) - sum(out)
    total_in  = initial_balance + sum(in)
    total_out = sum(out)

Everything in this module is a pure function over the rows handed to it, so
it can be exercised with hand-built entry lists.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from .constants import TOTAL_TOLERANCE, EntryType, StockStatus
from .data_manager import ProductRow, TransactionRow


@dataclass(frozen=True)
class BalanceSummary:
    """Projection of a product's stock position."""

    balance: Decimal
    total_in: Decimal
    total_out: Decimal


def compute_balance(
    product: ProductRow,
    entries: Iterable[TransactionRow],
    as_of: Optional[date] = None,
) -> BalanceSummary:
    """Project ``product``'s balance from its ledger entries.

    Entries that belong to other products are ignored. When ``as_of`` is
    given only entries dated on or before it are counted. The result is the
    true signed value; a negative balance means the ledger is inconsistent and
    is deliberately left visible.

    Args:
        product (ProductRow): Product whose baseline is used.
        entries (Iterable[TransactionRow]): Candidate ledger entries.
        as_of (date | None): Inclusive cut-off date.

    Returns:
        BalanceSummary: ``balance``, ``total_in`` and ``total_out``.
    """

    in_sum = Decimal("0")
    out_sum = Decimal("0")
    for entry in entries:
        if entry.product_id != product.product_id:
            continue
        if as_of is not None and entry.date > as_of:
            continue
        if entry.entry_type == EntryType.IN.value:
            in_sum += entry.quantity
        elif entry.entry_type == EntryType.OUT.value:
            out_sum += entry.quantity

    return BalanceSummary(
        balance=product.initial_balance + in_sum - out_sum,
        total_in=product.initial_balance + in_sum,
        total_out=out_sum,
    )


def display_balance(summary: BalanceSummary) -> Decimal:
    """Return the balance floored at zero, for presentation only."""

    return max(Decimal("0"), summary.balance)


def classify_stock(balance: Decimal, total_in: Decimal) -> StockStatus:
    """Band a balance relative to everything that ever came in.

    ``empty`` when nothing came in or nothing is left, ``low`` at or below
    20 %, ``medium`` at or below 50 %, ``good`` above that.
    """

    if total_in <= 0 or balance <= 0:
        return StockStatus.EMPTY
    percentage = balance / total_in * 100
    if percentage <= 20:
        return StockStatus.LOW
    if percentage <= 50:
        return StockStatus.MEDIUM
    return StockStatus.GOOD


def sale_total(quantity: Decimal, price: Decimal) -> Decimal:
    """Compute a sale total as ``quantity * price``."""

    return quantity * price


def totals_match(quantity: Decimal, price: Decimal, total: Decimal) -> bool:
    """Check a stored total against ``quantity * price`` within tolerance."""

    return abs(sale_total(quantity, price) - total) <= TOTAL_TOLERANCE
