"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from stock_tracker import constants, data_manager


def _product(product_id: str = "P1", **overrides) -> data_manager.ProductRow:
    values = dict(
        product_id=product_id,
        name="Cement",
        location=constants.Location.ADAMA.value,
        initial_balance=Decimal("10"),
        price=Decimal("5.50"),
        date_added=date(2024, 1, 1),
    )
    values.update(overrides)
    return data_manager.ProductRow(**values)


def _entry(transaction_id: str = "T1", **overrides) -> data_manager.TransactionRow:
    values = dict(
        transaction_id=transaction_id,
        product_id="P1",
        entry_type=constants.EntryType.IN.value,
        quantity=Decimal("4"),
        date=date(2024, 1, 2),
        description="Delivery",
        created_at="2024-01-02T08:00:00+00:00",
        updated_at="2024-01-02T08:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.TransactionRow(**values)


def _sale(sale_id: str = "S1", **overrides) -> data_manager.SaleRow:
    values = dict(
        sale_id=sale_id,
        product_id="P1",
        product_name="Cement",
        date=date(2024, 1, 3),
        location=constants.Location.ADAMA.value,
        quantity=Decimal("2"),
        price=Decimal("5.50"),
        total=Decimal("11.00"),
        description=None,
        receiver="Abebe",
        transaction_id="T9",
        created_at="2024-01-03T09:00:00+00:00",
        updated_at="2024-01-03T09:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.SaleRow(**values)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=stock_master.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Stock"
    assert parser.get("Defaults", "DefaultLocation") == "Adama"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, page_size=25)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.business_name == "Test Stock"
    assert settings.currency == "ETB"
    assert settings.default_location is constants.Location.ADAMA
    assert settings.page_size == 25


def test_parse_settings_applies_defaults_for_optional_entries(tmp_path):
    """Currency and the [Defaults] section are optional."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=data.xlsx\nBusinessName=Shop\nSchemaVersion=1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.currency == data_manager.DEFAULT_CURRENCY
    assert settings.page_size == data_manager.DEFAULT_PAGE_SIZE
    assert settings.data_file == (tmp_path / "data.xlsx").resolve()


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize(
    "defaults",
    ["DefaultLocation = Nairobi\n", "PageSize = 0\n"],
)
def test_parse_settings_rejects_unusable_defaults(tmp_path, defaults):
    """Unknown locations and non-positive page sizes are configuration errors."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=data.xlsx\nBusinessName=Shop\nSchemaVersion=1.0.0\n"
        "[Defaults]\n" + defaults
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert workbook.sheetnames == ["Products", "Transactions", "Sales"]


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file, including parent folders."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product("P2"))
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[data_manager.PRODUCTS_SHEET].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == "P2"


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    """refresh_workbook should return the on-disk state, not the in-memory one."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(original, _product("P3"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original
    assert list(data_manager.iter_products(refreshed)) == []


# ---------------------------------------------------------------------------
# Row operations
# ---------------------------------------------------------------------------


def test_append_and_iter_round_trip_through_disk(master_workbook_path):
    """Rows written by the DAL should read back as equal dataclasses after a save."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product())
    data_manager.append_transaction(workbook, _entry())
    data_manager.append_sale(workbook, _sale())
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_products(reloaded)) == [_product()]
    assert list(data_manager.iter_transactions(reloaded)) == [_entry()]
    assert list(data_manager.iter_sales(reloaded)) == [_sale()]


def test_dates_are_stored_as_iso_text(master_workbook_path):
    """Calendar dates are persisted as YYYY-MM-DD text without a time part."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_transaction(workbook, _entry())
    row = next(workbook[data_manager.TRANSACTIONS_SHEET].iter_rows(min_row=2, values_only=True))
    assert row[4] == "2024-01-02"


def test_iter_transactions_normalises_entry_type_and_skips_blank_rows(master_workbook_path):
    """Hand-typed rows should project correctly and blank rows are ignored."""

    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[data_manager.TRANSACTIONS_SHEET]
    sheet.append(["T1", "P1", "IN", 3, datetime(2024, 2, 1, 15, 30), None, None, None])
    sheet.append([None] * 8)
    sheet.append(["T2", "P1", "Out", 1, "2024-02-02", "Used", None, None])

    rows = list(data_manager.iter_transactions(workbook))

    assert [row.entry_type for row in rows] == ["in", "out"]
    assert rows[0].date == date(2024, 2, 1)
    assert rows[0].description is None
    assert rows[0].created_at == ""


def test_update_transaction_modifies_selected_columns(master_workbook_path):
    """update_transaction should change only the named columns."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_transaction(workbook, _entry())
    data_manager.update_transaction(
        workbook,
        "T1",
        field_values={"Quantity": Decimal("7"), "Date": date(2024, 3, 1), "Type": constants.EntryType.OUT},
    )

    (row,) = list(data_manager.iter_transactions(workbook))
    assert row.quantity == Decimal("7")
    assert row.date == date(2024, 3, 1)
    assert row.entry_type == "out"
    assert row.description == "Delivery"


def test_update_sale_missing_raises(master_workbook_path):
    """Updating a nonexistent sale should surface a KeyError."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.update_sale(workbook, "NOPE", field_values={"Quantity": 1})


def test_update_product_rejects_unknown_columns_before_writing(master_workbook_path):
    """An unknown column must not leave a partially updated row behind."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product())
    with pytest.raises(KeyError):
        data_manager.update_product(workbook, "P1", field_values={"ProductName": "New", "Colour": "red"})

    (row,) = list(data_manager.iter_products(workbook))
    assert row.name == "Cement"


def test_delete_row_removes_only_the_matching_row(master_workbook_path):
    """delete helpers return True on removal and False when nothing matches."""

    workbook = data_manager.open_workbook(master_workbook_path)
    for transaction_id in ("T1", "T2", "T3"):
        data_manager.append_transaction(workbook, _entry(transaction_id))

    assert data_manager.delete_transaction(workbook, "T2") is True
    assert data_manager.delete_transaction(workbook, "T2") is False
    assert [row.transaction_id for row in data_manager.iter_transactions(workbook)] == ["T1", "T3"]


def test_append_after_delete_is_still_visible(master_workbook_path):
    """Rows appended after a deletion are found by iteration and lookup."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_sale(workbook, _sale("S1"))
    data_manager.append_sale(workbook, _sale("S2"))
    data_manager.delete_sale(workbook, "S1")
    data_manager.append_sale(workbook, _sale("S3"))

    assert [row.sale_id for row in data_manager.iter_sales(workbook)] == ["S2", "S3"]
    assert data_manager.locate_row(workbook, data_manager.SALES_SHEET, "SaleID", "S3") is not None


def test_locate_row_returns_row_index(master_workbook_path):
    """locate_row should return the worksheet index of the matching key."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product("P600"))
    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "P600") == 2
    assert data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", "NOPE") is None


def test_locate_row_unknown_column_raises(master_workbook_path):
    """Asking for a column the sheet lacks is a programming error."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "SupplierID", "X")


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def test_serialize_sale_preserves_order():
    """serialize_sale should output values in the Sales column order."""

    serialized = data_manager.serialize_sale(_sale())
    assert len(serialized) == len(data_manager.SHEET_COLUMNS[data_manager.SALES_SHEET])
    assert serialized[:4] == ["S1", "P1", "Cement", "2024-01-03"]
    assert serialized[7] == Decimal("11.00")
    assert serialized[10] == "T9"


def test_serialize_cell_unwraps_enums_and_dates():
    """Enums are stored by value and dates as ISO text."""

    assert data_manager.serialize_cell(constants.Location.ADDIS_ABABA) == "Addis Ababa"
    assert data_manager.serialize_cell(date(2024, 5, 6)) == "2024-05-06"
    assert data_manager.serialize_cell(Decimal("1.5")) == Decimal("1.5")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-01-05", date(2024, 1, 5)),
        ("2024-01-05T23:59:00+03:00", date(2024, 1, 5)),
        (datetime(2024, 1, 5, 12), date(2024, 1, 5)),
        (date(2024, 1, 5), date(2024, 1, 5)),
    ],
)
def test_parse_date_value_accepts_supported_forms(raw, expected):
    """Every accepted representation collapses to a calendar date."""

    assert data_manager.parse_date_value(raw) == expected


@pytest.mark.parametrize("raw", ["05/01/2024", "", 20240105, None])
def test_parse_date_value_rejects_other_values(raw):
    """Anything else is a ValueError."""

    with pytest.raises(ValueError):
        data_manager.parse_date_value(raw)


def test_deserialize_sale_pads_short_rows():
    """Rows written before optional columns existed still deserialize."""

    record = data_manager.deserialize_sale(["S1", "P1", "Cement", "2024-01-03", "Adama", 2, 5, 10])
    assert record.total == Decimal("10")
    assert record.receiver is None
    assert record.transaction_id is None
