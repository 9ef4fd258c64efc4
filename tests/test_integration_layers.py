"""Integration tests describing the end-to-end Stock Tracker workflows.

These scenarios exercise the data access, business logic and CLI layers
together against real workbooks on disk, reloading between steps the way the
command-line tool does between invocations.
"""

from __future__ import annotations

from decimal import Decimal

import openpyxl

from stock_tracker import cli, constants, core_logic, data_manager, queries


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def _load(bundle) -> core_logic.RuntimeContext:
    context = core_logic.load_runtime_context(bundle.config_path)
    core_logic.ensure_schema_version(context)
    return context


def test_sale_lifecycle_flow(runtime_context):
    """Walk through a product, stock, sale and correction cycle with reloads."""

    context = runtime_context
    product = core_logic.create_product(
        context, name="Cement", location=constants.Location.ADAMA, initial_balance=Decimal("10"), price=Decimal("2.5"))
    product_id = product.product.product_id

    # Writes go to disk before subsequent operations, as in the CLI.
    context = _reload(context)
    core_logic.add_stock_entry(context, core_logic.StockEntryCommand(product_id, Decimal("5"), "2024-01-02"))
    recorded = core_logic.record_sale(
        context,
        core_logic.SaleCommand(product_id, Decimal("2"), Decimal("2.5"), "2024-01-03", receiver="Abebe"),
    )

    context = _reload(context)
    assert core_logic.get_product_balance(context, product_id).balance == Decimal("13")
    sale = core_logic.get_sale(context, recorded.sale.sale_id)
    assert sale.total == Decimal("5")
    assert sale.transaction_id == recorded.entry.transaction_id
    assert queries.audit_ledger(context) == []

    core_logic.update_sale(context, core_logic.SaleUpdate(sale.sale_id, quantity=Decimal("4")))
    context = _reload(context)
    assert core_logic.get_product_balance(context, product_id).balance == Decimal("11")
    assert core_logic.get_sale(context, sale.sale_id).total == Decimal("10")

    core_logic.delete_sale(context, sale.sale_id)
    context = _reload(context)
    assert core_logic.get_product_balance(context, product_id).balance == Decimal("15")
    assert core_logic.list_sales(context) == []
    assert queries.audit_ledger(context) == []


def test_opening_entry_survives_reload_flow(runtime_context):
    """An opening entry is written once and counted once after a reload."""

    context = runtime_context
    product = core_logic.create_product(
        context, name="Lime", location="Chemicals", initial_balance=Decimal("8"), record_opening_entry=True)

    context = _reload(context)
    entries = core_logic.list_transactions(context, product.product.product_id)
    assert [entry.description for entry in entries] == [constants.OPENING_ENTRY_DESCRIPTION]
    assert core_logic.get_product_balance(context, product.product.product_id).balance == Decimal("8")


def test_unsaved_changes_are_discarded_on_refresh_flow(runtime_context):
    """Refreshing without persisting drops in-memory writes."""

    context = runtime_context
    product_id = core_logic.create_product(
        context, name="Sand", location="Adama", initial_balance=Decimal("3")).product.product_id
    context = _reload(context)

    core_logic.record_sale(context, core_logic.SaleCommand(product_id, Decimal("3"), Decimal("1"), "2024-01-03"))
    context = core_logic.refresh_context(context)

    assert core_logic.list_sales(context) == []
    assert core_logic.get_product_balance(context, product_id).balance == Decimal("3")


def test_cli_sale_and_reporting_flow(config_factory, capsys):
    """Drive product creation, stock and sales through the CLI entry point."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]

    assert cli.main(base + ["add-product", "--name", "Cement", "--location", "Adama",
                            "--initial-balance", "10", "--price", "450"]) == 0
    product_id = core_logic.list_products(_load(bundle))[0].product_id

    assert cli.main(base + ["add-stock", "--product-id", product_id, "--quantity", "5",
                            "--date", "2024-01-02", "--description", "Truck 7"]) == 0
    assert cli.main(base + ["sale", "--product-id", product_id, "--quantity", "3",
                            "--price", "450", "--date", "2024-01-03", "--receiver", "Abebe"]) == 0
    capsys.readouterr()

    assert cli.main(base + ["products", "--location", "Adama"]) == 0
    assert "balance=12" in capsys.readouterr().out

    assert cli.main(base + ["sales", "--date", "2024-01-03"]) == 0
    output = capsys.readouterr().out
    assert "3 x 450 = 1350" in output
    assert "page 1/1 (1 sales)" in output

    assert cli.main(base + ["sale-dates", "--location", "Adama"]) == 0
    assert "2024-01-03  1 sales  1350 ETB" in capsys.readouterr().out

    assert cli.main(base + ["audit"]) == 0


def test_cli_rejected_sale_leaves_workbook_untouched_flow(config_factory):
    """An oversell exits 2 and nothing is written to disk."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]
    assert cli.main(base + ["add-product", "--name", "Paint", "--location", "Addis Ababa",
                            "--initial-balance", "2"]) == 0
    product_id = core_logic.list_products(_load(bundle))[0].product_id

    assert cli.main(base + ["sale", "--product-id", product_id, "--quantity", "3",
                            "--price", "1", "--date", "2024-01-03"]) == 2
    assert cli.main(base + ["sale", "--product-id", product_id, "--quantity", "1",
                            "--price", "1", "--date", "2024-01-03", "--location", "Adama"]) == 2
    assert cli.main(base + ["sale", "--product-id", "missing", "--quantity", "1",
                            "--price", "1", "--date", "2024-01-03"]) == 2

    context = _load(bundle)
    assert core_logic.list_sales(context) == []
    assert core_logic.list_transactions(context) == []


def test_cli_batches_and_delete_by_date_flow(config_factory, capsys):
    """Batch commands and delete-by-date keep the ledger in step with sales."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]
    for name in ("Cement", "Sand"):
        assert cli.main(base + ["add-product", "--name", name, "--location", "Adama"]) == 0
    acid_args = ["add-product", "--name", "Acid", "--location", "Chemicals", "--initial-balance", "1"]
    assert cli.main(base + acid_args) == 0
    products = {product.name: product.product_id for product in core_logic.list_products(_load(bundle))}

    # one foreign item rejects the whole batch
    assert cli.main(base + ["stock-batch", "--date", "2024-01-01", "--location", "Adama",
                            "--item", f"{products['Cement']}:5", "--item", f"{products['Acid']}:5"]) == 2
    assert core_logic.list_transactions(_load(bundle)) == []

    assert cli.main(base + ["stock-batch", "--date", "2024-01-01", "--location", "Adama",
                            "--description", "Delivery", "--item", f"{products['Cement']}:5",
                            "--item", f"{products['Sand']}:4"]) == 0
    assert cli.main(base + ["sales-batch", "--date", "2024-01-02", "--location", "Adama",
                            "--item", f"{products['Cement']}:2:10:Abebe",
                            "--item", f"{products['Sand']}:1:20"]) == 0

    context = _load(bundle)
    assert len(core_logic.list_sales(context)) == 2
    assert core_logic.get_product_balance(context, products["Cement"]).balance == Decimal("3")

    capsys.readouterr()
    assert cli.main(base + ["delete-sales-for-date", "--date", "2024-01-02", "--location", "Adama"]) == 0
    assert "Deleted 2 sales" in capsys.readouterr().out

    context = _load(bundle)
    assert core_logic.list_sales(context) == []
    assert core_logic.get_product_balance(context, products["Cement"]).balance == Decimal("5")
    assert core_logic.get_product_balance(context, products["Sand"]).balance == Decimal("4")


def test_cli_export_sales_flow(config_factory, tmp_path):
    """export-sales writes a report without touching the master workbook."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]
    assert cli.main(base + ["add-product", "--name", "Cement", "--location", "Adama",
                            "--initial-balance", "10"]) == 0
    product_id = core_logic.list_products(_load(bundle))[0].product_id
    assert cli.main(base + ["sale", "--product-id", product_id, "--quantity", "2",
                            "--price", "3", "--date", "2024-01-03"]) == 0
    master_mtime = bundle.workbook_path.stat().st_mtime_ns

    output_dir = tmp_path / "exports"
    output_dir.mkdir()
    assert cli.main(base + ["export-sales", "--location", "Adama", "--start-date", "2024-01-01",
                            "--end-date", "2024-01-31", "--output", str(output_dir)]) == 0

    report = output_dir / "Sales_Export_Adama_20240101_to_20240131.xlsx"
    assert report.exists()
    assert openpyxl.load_workbook(report).sheetnames == ["Summary", "Sales Data"]
    assert bundle.workbook_path.stat().st_mtime_ns == master_mtime

    assert cli.main(base + ["export-sales", "--location", "Chemicals", "--start-date", "2024-01-01",
                            "--end-date", "2024-01-31", "--output", str(output_dir)]) == 2


def test_hand_edited_workbook_is_flagged_by_cli_audit_flow(config_factory, capsys):
    """Rows edited outside the tool surface in the audit with exit code 1."""

    bundle = config_factory()
    base = ["--config", str(bundle.config_path)]
    assert cli.main(base + ["add-product", "--name", "Cement", "--location", "Adama",
                            "--initial-balance", "10"]) == 0
    product_id = core_logic.list_products(_load(bundle))[0].product_id
    assert cli.main(base + ["sale", "--product-id", product_id, "--quantity", "2",
                            "--price", "3", "--date", "2024-01-03"]) == 0

    context = _load(bundle)
    sale = core_logic.list_sales(context)[0]
    data_manager.delete_transaction(context.workbook, sale.transaction_id)
    core_logic.persist_context(context)
    capsys.readouterr()

    assert cli.main(base + ["audit"]) == 1
    assert f"[missing_entry] {sale.sale_id}" in capsys.readouterr().out
