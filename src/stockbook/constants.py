"""Enumerations and defaults shared across Stockbook modules.

Centralises identifiers so that the storage medium, the tabular store, the
metrics cache and the CLI rely on a single source of truth for sheet names,
metric categories and tuning defaults.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_RECORD_CACHE_TTL = 300
DEFAULT_EXECUTION_CACHE_TTL = 5
DEFAULT_MAX_CACHE_ENTRY_BYTES = 100_000
DEFAULT_LOCK_TIMEOUT_MS = 15_000
DEFAULT_BATCH_CHUNK_SIZE = 50
DEFAULT_ACTIVITY_BUFFER_SIZE = 20
DEFAULT_METRIC_TTL = 300
ARCHIVED_STATUS = "Archived"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the store."""

    ITEMS = "Items"
    SALES = "Sales"
    CUSTOMERS = "Customers"
    DASHBOARD_CACHE = "Dashboard_Cache"
    ACTIVITY_LOG = "Activity_Log"


class MetricCategory(str, Enum):
    """Enumerate metric groups that share a default freshness window."""

    INVENTORY = "inventory"
    SALES = "sales"
    CUSTOMERS = "customers"
    GENERAL = "general"


class ValueType(str, Enum):
    """Type tag persisted next to each cached metric value."""

    SCALAR = "scalar"
    JSON = "json"


CATEGORY_TTLS: dict[str, int] = {
    MetricCategory.INVENTORY.value: 300,
    MetricCategory.SALES.value: 120,
    MetricCategory.CUSTOMERS.value: 600,
    MetricCategory.GENERAL.value: DEFAULT_METRIC_TTL,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_RECORD_CACHE_TTL",
    "DEFAULT_EXECUTION_CACHE_TTL",
    "DEFAULT_MAX_CACHE_ENTRY_BYTES",
    "DEFAULT_LOCK_TIMEOUT_MS",
    "DEFAULT_BATCH_CHUNK_SIZE",
    "DEFAULT_ACTIVITY_BUFFER_SIZE",
    "DEFAULT_METRIC_TTL",
    "ARCHIVED_STATUS",
    "CATEGORY_TTLS",
    "SheetName",
    "MetricCategory",
    "ValueType",
]
