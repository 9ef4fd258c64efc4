"""Excel report of the sales recorded at one location over a date range."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from . import data_manager, log
from .constants import Location
from .core_logic import DateLike, RuntimeContext, ValidationError, require_date, require_location
from .queries import find_sales


SUMMARY_SHEET = "Summary"
SALES_DATA_SHEET = "Sales Data"

_CENTS = Decimal("0.01")


def default_export_filename(location: Union[Location, str], start_date: DateLike, end_date: DateLike) -> str:
    """Return ``Sales_Export_<Location>_<YYYYMMDD>_to_<YYYYMMDD>.xlsx``."""

    site = require_location(location).value.replace(" ", "_")
    start = require_date(start_date).strftime("%Y%m%d")
    end = require_date(end_date).strftime("%Y%m%d")
    return f"Sales_Export_{site}_{start}_to_{end}.xlsx"


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS)


def _sales_columns(currency: str) -> List[str]:
    return [
        "S.No",
        "Sale ID",
        "Date",
        "Product Name",
        "Product ID",
        "Location",
        "Quantity",
        f"Unit Price ({currency})",
        f"Total Amount ({currency})",
        "Description",
        "Receiver",
        "Created At",
    ]


def _summary_rows(
    sales: Sequence[data_manager.SaleRow],
    *,
    site: str,
    start: str,
    end: str,
    currency: str,
    exported_at: datetime,
) -> List[List[object]]:
    count = len(sales)
    revenue = sum((sale.total for sale in sales), Decimal("0"))
    quantity = sum((sale.quantity for sale in sales), Decimal("0"))

    quantity_by_product: Dict[str, Decimal] = {}
    revenue_by_product: Dict[str, Decimal] = {}
    for sale in sales:
        quantity_by_product[sale.product_name] = quantity_by_product.get(sale.product_name, Decimal("0")) + sale.quantity
        revenue_by_product[sale.product_name] = revenue_by_product.get(sale.product_name, Decimal("0")) + sale.total

    rows: List[List[object]] = [
        ["Sales Export Summary", ""],
        ["Location", site],
        ["Date Range", f"{start} - {end}"],
        ["Exported At", exported_at.strftime("%Y-%m-%d %H:%M:%S")],
        ["", ""],
        ["=== SALES STATISTICS ===", ""],
        ["Total Sales Count", count],
        [f"Total Revenue ({currency})", _money(revenue)],
        ["Total Quantity Sold", quantity],
        [f"Average Sale Value ({currency})", _money(revenue / count)],
        ["Average Quantity per Sale", _money(quantity / count)],
        ["", ""],
        ["=== PRODUCT BREAKDOWN ===", ""],
    ]
    rows.extend([name, qty] for name, qty in quantity_by_product.items())
    rows.append(["", ""])
    rows.append(["=== REVENUE BY PRODUCT ===", ""])
    rows.extend([name, _money(amount)] for name, amount in revenue_by_product.items())
    return rows


def export_sales(
    context: RuntimeContext,
    destination: Path,
    *,
    location: Union[Location, str],
    start_date: DateLike,
    end_date: DateLike,
    exported_at: Optional[datetime] = None,
) -> Path:
    """Write the sales of ``location`` between two dates to an ``.xlsx`` report.

    ``destination`` may be a directory, in which case the file gets the name
    from :func:`default_export_filename`. The report holds a ``Summary`` sheet
    with totals, averages and per-product breakdowns, followed by a
    ``Sales Data`` sheet with one row per sale in chronological order.

    Raises:
        ValidationError: If the range is inverted or holds no sales.
    """

    site = require_location(location)
    start = require_date(start_date)
    end = require_date(end_date)
    if start > end:
        raise ValidationError("Start date must be before or equal to end date")

    sales = list(reversed(find_sales(context, location=site, start_date=start, end_date=end)))
    if not sales:
        log.warning("No sales to export for %s between %s and %s", site.value, start, end)
        raise ValidationError(f"No sales found for {site.value} between {start} and {end}")

    destination = Path(destination).expanduser()
    if destination.is_dir():
        destination = destination / default_export_filename(site, start, end)

    currency = context.settings.currency
    bold_font = Font(bold=True)
    workbook = openpyxl.Workbook()

    summary = workbook.active
    summary.title = SUMMARY_SHEET
    for row in _summary_rows(
        sales,
        site=site.value,
        start=start.isoformat(),
        end=end.isoformat(),
        currency=currency,
        exported_at=exported_at or datetime.now(UTC),
    ):
        summary.append(row)
    summary["A1"].font = bold_font
    summary.column_dimensions["A"].width = 28
    summary.column_dimensions["B"].width = 22

    data_sheet = workbook.create_sheet(title=SALES_DATA_SHEET)
    columns = _sales_columns(currency)
    data_sheet.append(columns)
    for cell in data_sheet[1]:
        cell.font = bold_font
    for index, sale in enumerate(sales, start=1):
        data_sheet.append(
            [
                index,
                sale.sale_id,
                sale.date.isoformat(),
                sale.product_name,
                sale.product_id,
                sale.location,
                sale.quantity,
                sale.price,
                sale.total,
                sale.description or "",
                sale.receiver or "",
                sale.created_at,
            ]
        )
    for column_index, title in enumerate(columns, start=1):
        data_sheet.column_dimensions[get_column_letter(column_index)].width = max(12, len(title) + 4)

    data_manager.save_workbook(workbook, destination)
    log.info("Exported %d sales for %s to '%s'", len(sales), site.value, destination)
    return destination.resolve()
