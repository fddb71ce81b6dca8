"""Tests for runtime wiring and the dashboard collectors."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from stockbook import core_logic
from stockbook.metrics import MetricsCache
from stockbook.schema import ACTIVITY_LOG, CUSTOMERS, ITEMS, SALES, SCHEMAS
from stockbook.store import TabularStore

DASHBOARD_KEYS = {
    "inventory.total_items",
    "inventory.low_stock_count",
    "inventory.stock_value",
    "sales.count",
    "sales.total_revenue",
    "sales.by_payment_type",
    "customers.active_count",
}


def _populate(context):
    store = context.store
    store.insert(ITEMS, {"Name": "Widget", "Quantity": 10, "Unit_Price": 2.5, "Reorder_Level": 5})
    store.insert(ITEMS, {"Name": "Bolt", "Quantity": 3, "Unit_Price": "0.10", "Reorder_Level": 5})
    archived = store.insert(ITEMS, {"Name": "Old", "Quantity": 1, "Unit_Price": 100, "Reorder_Level": 5})
    store.remove(ITEMS, archived)
    store.insert(ITEMS, {"Name": "Loose", "Quantity": 0, "Unit_Price": 1})
    store.insert(SALES, {"Item_ID": "ITM1", "Total": 12.5, "Payment_Type": "Cash"})
    store.insert(SALES, {"Item_ID": "ITM2", "Total": 7.25, "Payment_Type": "Card"})
    store.insert(SALES, {"Item_ID": "ITM3", "Total": 0.25, "Payment_Type": "Cash"})
    store.insert(SALES, {"Item_ID": "ITM3", "Total": 1})
    store.insert(CUSTOMERS, {"Name": "Ana"})
    gone = store.insert(CUSTOMERS, {"Name": "Ben"})
    store.remove(CUSTOMERS, gone)


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


def test_build_runtime_creates_every_sheet(context, workbook):
    """All registered tables exist after wiring."""

    assert set(SCHEMAS) <= set(workbook.sheetnames)
    assert isinstance(context.store, TabularStore)
    assert isinstance(context.metrics, MetricsCache)


def test_build_runtime_applies_settings(context, settings):
    """Lock and store pick up the configured tuning values."""

    assert context.lock.name == settings.store_name
    assert context.store.chunk_size == settings.batch_chunk_size
    assert context.store.lock_timeout_ms == settings.lock_timeout_ms


def test_load_runtime_context_reads_config(runtime_context, config_file):
    """The public loader wires settings from config.ini."""

    settings = runtime_context.settings
    assert settings.store_name == "Test Store"
    assert settings.lock_timeout_ms == 200
    assert settings.category_ttls["sales"] == 90
    assert runtime_context.lock.default_timeout_ms == 200


def test_load_runtime_context_missing_workbook(tmp_path):
    """A config pointing at a missing workbook raises FileNotFoundError."""

    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\nDataFile = nowhere.xlsx\nStoreName = X\nSchemaVersion = 1.0.0\n"
    )

    with pytest.raises(FileNotFoundError):
        core_logic.load_runtime_context(config_path)


def test_ensure_schema_version_rejects_mismatch(config_factory):
    """A different schema version stops the runtime from mutating the workbook."""

    bundle = config_factory(schema_version="0.9.0")
    context = core_logic.load_runtime_context(bundle.config_path)

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(context)


def test_persist_context_saves_records_and_activity(runtime_context, config_file):
    """Persisting flushes the activity log and writes the workbook."""

    record_id = runtime_context.store.insert(ITEMS, {"Name": "Widget"})
    assert runtime_context.activity.pending == 1

    core_logic.persist_context(runtime_context)

    assert runtime_context.activity.pending == 0
    reloaded = core_logic.load_runtime_context(config_file)
    assert reloaded.store.get_by_id(ITEMS, record_id)["Name"] == "Widget"
    logged = reloaded.store.get_all(ACTIVITY_LOG)
    assert [(row["Action"], row["Record_ID"]) for row in logged] == [("INSERT", record_id)]


def test_typed_columns_survive_save_and_reload(runtime_context, config_file):
    """Timestamps and JSON cells read back unchanged from the saved workbook."""

    sold_at = datetime(2025, 3, 1, 9, 0, 0, 123456, tzinfo=UTC)
    sale_id = runtime_context.store.insert(SALES, {"Sale_Date": sold_at, "Notes": {"tags": ["a"]}})
    runtime_context.store.batch_insert(ITEMS, [{"Name": "A"}, {"Name": "B"}])
    core_logic.persist_context(runtime_context)

    reloaded = core_logic.load_runtime_context(config_file)
    sale = reloaded.store.get_by_id(SALES, sale_id)
    assert sale["Sale_Date"] == sold_at
    assert sale["Notes"] == {"tags": ["a"]}
    details = [row["Details"] for row in reloaded.store.get_all(ACTIVITY_LOG) if row["Action"] == "BATCH_INSERT"]
    assert details == [{"count": 2}]


def test_refresh_context_discards_unsaved_changes(runtime_context):
    """Reloading from disk drops in-memory edits."""

    runtime_context.store.insert(ITEMS, {"Name": "Scratch"})

    refreshed = core_logic.refresh_context(runtime_context)

    assert refreshed.store.get_all(ITEMS) == []
    assert refreshed.settings == runtime_context.settings


# ---------------------------------------------------------------------------
# Collectors
# ---------------------------------------------------------------------------


def test_inventory_collectors(context):
    """Inventory aggregates ignore archived items."""

    _populate(context)

    assert core_logic.count_items(context) == 3
    assert core_logic.count_low_stock(context) == 1
    assert core_logic.stock_value(context) == 25.3


def test_sales_collectors(context):
    """Sales aggregates sum totals overall and per payment type."""

    _populate(context)

    assert core_logic.count_sales(context) == 4
    assert core_logic.total_revenue(context) == 21.0
    assert core_logic.revenue_by_payment_type(context) == {"Card": 7.25, "Cash": 12.75, "Unknown": 1.0}


def test_customer_collector(context):
    """Archived customers are not counted as active."""

    _populate(context)

    assert core_logic.count_active_customers(context) == 1


def test_non_numeric_cells_count_as_zero(context):
    """Garbage in numeric columns does not break the aggregates."""

    context.store.insert(SALES, {"Total": "n/a"})
    context.store.insert(SALES, {"Total": 4})

    assert core_logic.total_revenue(context) == 4.0


def test_dashboard_collectors_cover_every_key(context):
    """Every dashboard key has a collector registered on the metrics cache."""

    assert set(core_logic.dashboard_collectors(context)) == DASHBOARD_KEYS


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def test_get_dashboard_refreshes_once_then_serves_cache(context, clock, monkeypatch):
    """The first read computes every metric; later reads use the cache until stale."""

    _populate(context)
    refresher = Mock(wraps=core_logic.refresh_dashboard)
    monkeypatch.setattr(core_logic, "refresh_dashboard", refresher)

    first = core_logic.get_dashboard(context)
    assert set(first) == DASHBOARD_KEYS
    assert first["sales.count"] == 4
    assert first["sales.by_payment_type"] == {"Card": 7.25, "Cash": 12.75, "Unknown": 1.0}
    assert refresher.call_count == 1

    context.store.insert(SALES, {"Total": 5})
    assert core_logic.get_dashboard(context)["sales.count"] == 4
    assert refresher.call_count == 1

    clock.advance(121)
    assert core_logic.get_dashboard(context)["sales.count"] == 5
    assert refresher.call_count == 2


def test_refresh_dashboard_reports_metric_count(context):
    """A full refresh stores one value per dashboard key."""

    result = core_logic.refresh_dashboard(context)

    assert result.success is True
    assert result.metrics_updated == len(DASHBOARD_KEYS)
    assert context.metrics.get_metric("inventory.total_items") == 0


def test_get_dashboard_raises_when_refresh_fails(context):
    """A failing collector surfaces as a RuntimeError."""

    def broken():
        raise ValueError("bad sheet")

    context.metrics.register_collector("inventory.total_items", broken)

    with pytest.raises(RuntimeError, match="bad sheet"):
        core_logic.get_dashboard(context)
