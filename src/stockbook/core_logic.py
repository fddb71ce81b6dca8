"""Runtime wiring for Stockbook.

This module assembles the storage medium, caches, lock, activity log, tabular
store and metrics cache from ``config.ini`` into a :class:`RuntimeContext`.
It also carries the dashboard collectors: the small aggregations whose results
are kept in the metrics cache so front ends do not rescan the sales and
inventory sheets on every request.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .activity_log import ActivityLog
from .cache import ProcessCache, RecordCache
from .clock import Clock, utc_now
from .constants import EXPECTED_SCHEMA_VERSION
from .data_manager import StoreSettings, WorkbookMedium
from .locking import LockCoordinator, lock_path_for
from .metrics import MetricsCache, RefreshResult
from .schema import CUSTOMERS, ITEMS, SALES, SCHEMAS
from .store import Record, TabularStore


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the workbook and every component built on it."""

    settings: StoreSettings
    workbook: Workbook
    medium: WorkbookMedium
    store: TabularStore
    metrics: MetricsCache
    activity: ActivityLog
    lock: LockCoordinator


def build_runtime(settings: StoreSettings, workbook: Workbook, *, clock: Clock = utc_now) -> RuntimeContext:
    """Wire every component around ``workbook`` using ``settings``.

    All registered sheets are created if the workbook lacks them, and the
    dashboard collectors are registered on the metrics cache.
    """

    medium = WorkbookMedium(workbook)
    for schema in SCHEMAS.values():
        medium.ensure_table(schema)

    process_cache = ProcessCache(clock=clock, max_entry_bytes=settings.max_cache_entry_bytes)
    record_cache = RecordCache(process_cache, ttl_seconds=settings.record_cache_ttl, clock=clock)
    lock = LockCoordinator(
        settings.store_name,
        lock_path_for(settings.data_file),
        default_timeout_ms=settings.lock_timeout_ms,
    )
    activity = ActivityLog(
        medium,
        record_cache=record_cache,
        clock=clock,
        buffer_size=settings.activity_buffer_size,
        enabled=settings.activity_log_enabled,
    )
    store = TabularStore(
        medium,
        record_cache,
        lock,
        activity,
        clock=clock,
        chunk_size=settings.batch_chunk_size,
        lock_timeout_ms=settings.lock_timeout_ms,
    )
    metrics = MetricsCache(
        store,
        clock=clock,
        execution_ttl=settings.execution_cache_ttl,
        category_ttls=settings.category_ttls,
    )
    context = RuntimeContext(
        settings=settings,
        workbook=workbook,
        medium=medium,
        store=store,
        metrics=metrics,
        activity=activity,
        lock=lock,
    )
    for key, collector in dashboard_collectors(context).items():
        metrics.register_collector(key, collector)
    return context


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upwards from the current
            working directory.

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
    return build_runtime(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version differs from
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
    """Flush pending activity entries and save the workbook to its configured path."""
    flushed = context.activity.flush()
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s' (%d activity entries)", context.settings.data_file, flushed)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk, discarding unsaved modifications and caches.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime(context.settings, workbook)


# ---------------------------------------------------------------------------
# Dashboard collectors
# ---------------------------------------------------------------------------


def _to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        log.warning("Treating non-numeric cell value %r as zero", value)
        return Decimal("0")


def _is_active(record: Record, archived_value: str) -> bool:
    return record.get("Status") != archived_value


def _active_items(context: RuntimeContext) -> list[Record]:
    return [item for item in context.store.get_all(ITEMS) if _is_active(item, ITEMS.archived_value)]


def count_items(context: RuntimeContext) -> int:
    return len(_active_items(context))


def count_low_stock(context: RuntimeContext) -> int:
    """Count active items whose quantity is at or below their reorder level."""
    return sum(
        1
        for item in _active_items(context)
        if item.get("Reorder_Level") not in (None, "")
        and _to_decimal(item.get("Quantity")) <= _to_decimal(item.get("Reorder_Level"))
    )


def stock_value(context: RuntimeContext) -> float:
    total = sum(
        (_to_decimal(item.get("Quantity")) * _to_decimal(item.get("Unit_Price")) for item in _active_items(context)),
        Decimal("0"),
    )
    return float(total.quantize(Decimal("0.01")))


def count_sales(context: RuntimeContext) -> int:
    return len(context.store.get_all(SALES))


def total_revenue(context: RuntimeContext) -> float:
    total = sum((_to_decimal(sale.get("Total")) for sale in context.store.get_all(SALES)), Decimal("0"))
    return float(total.quantize(Decimal("0.01")))


def revenue_by_payment_type(context: RuntimeContext) -> Dict[str, float]:
    totals: Dict[str, Decimal] = {}
    for sale in context.store.get_all(SALES):
        payment = sale.get("Payment_Type") or "Unknown"
        totals[payment] = totals.get(payment, Decimal("0")) + _to_decimal(sale.get("Total"))
    return {payment: float(amount.quantize(Decimal("0.01"))) for payment, amount in sorted(totals.items())}


def count_active_customers(context: RuntimeContext) -> int:
    return sum(
        1 for customer in context.store.get_all(CUSTOMERS) if _is_active(customer, CUSTOMERS.archived_value)
    )


def dashboard_collectors(context: RuntimeContext) -> Mapping[str, Callable[[], Any]]:
    """Map every tracked dashboard metric key to a zero-argument collector."""
    return {
        "inventory.total_items": lambda: count_items(context),
        "inventory.low_stock_count": lambda: count_low_stock(context),
        "inventory.stock_value": lambda: stock_value(context),
        "sales.count": lambda: count_sales(context),
        "sales.total_revenue": lambda: total_revenue(context),
        "sales.by_payment_type": lambda: revenue_by_payment_type(context),
        "customers.active_count": lambda: count_active_customers(context),
    }


def refresh_dashboard(context: RuntimeContext) -> RefreshResult:
    """Recompute every dashboard metric and store them in one batch."""
    return context.metrics.refresh_all_metrics()


def get_dashboard(context: RuntimeContext) -> Dict[str, Any]:
    """Return every dashboard metric, recomputing them when any is missing or stale."""
    keys = list(dashboard_collectors(context))
    values = context.metrics.get_metrics(keys)
    if any(value is None for value in values.values()):
        log.info("Dashboard metrics missing or stale; refreshing")
        result = refresh_dashboard(context)
        if not result.success:
            raise RuntimeError(f"Dashboard refresh failed: {result.error}")
        values = context.metrics.get_metrics(keys)
    return values
