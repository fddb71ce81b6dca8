"""Layered cache of precomputed dashboard metrics.

Metrics live in the ``Dashboard_Cache`` sheet, one row per key, and are read
and written through the :class:`~stockbook.store.TabularStore`. On top of the
sheet sit two tiers:

* an execution cache, a snapshot of the whole sheet kept for a few seconds so
  the fan-out of a single call reads the sheet once;
* per-key freshness, computed lazily from ``Last_Updated`` and
  ``TTL_Seconds`` every time a value is read.

A key moves from absent to fresh on its first write, goes stale once its TTL
has elapsed, and becomes fresh again on the next write. Stale and absent keys
both read as ``None``; callers recompute and write back.

Multi-key writes go through :meth:`MetricsCache.batch_set_metrics`, which
coalesces rows sitting next to each other in the sheet into a single range
write.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime
from operator import itemgetter
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from . import log
from .clock import Clock, format_timestamp, parse_timestamp, utc_now
from .constants import (
    CATEGORY_TTLS,
    DEFAULT_EXECUTION_CACHE_TTL,
    DEFAULT_METRIC_TTL,
    MetricCategory,
    ValueType,
)
from .errors import DecodeFailure, RecordNotFound
from .schema import DASHBOARD_CACHE
from .store import Record, TabularStore

Collector = Callable[[], Any]
MetricEntries = Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]


@dataclass(frozen=True)
class MetricConfig:
    """Static freshness settings of one metric key."""

    category: str = MetricCategory.GENERAL.value
    ttl_seconds: Optional[int] = None


METRIC_CONFIG: Dict[str, MetricConfig] = {
    "inventory.total_items": MetricConfig(MetricCategory.INVENTORY.value),
    "inventory.low_stock_count": MetricConfig(MetricCategory.INVENTORY.value),
    "inventory.stock_value": MetricConfig(MetricCategory.INVENTORY.value),
    "sales.count": MetricConfig(MetricCategory.SALES.value),
    "sales.total_revenue": MetricConfig(MetricCategory.SALES.value),
    "sales.by_payment_type": MetricConfig(MetricCategory.SALES.value, ttl_seconds=300),
    "customers.active_count": MetricConfig(MetricCategory.CUSTOMERS.value),
}


@dataclass(frozen=True)
class MetricRecord:
    """One ``Dashboard_Cache`` row as stored."""

    key: str
    value: Any
    value_type: Optional[str]
    last_updated: Optional[datetime]
    ttl_seconds: Optional[int]
    category: str
    row_position: Optional[int] = None

    @classmethod
    def from_record(cls, record: Record) -> "MetricRecord":
        ttl_raw = record.get("TTL_Seconds")
        try:
            ttl_seconds = None if ttl_raw in (None, "") else int(ttl_raw)
        except (TypeError, ValueError):
            ttl_seconds = None
        return cls(
            key=str(record["Key"]),
            value=record.get("Value"),
            value_type=record.get("Value_Type") or None,
            last_updated=parse_timestamp(record.get("Last_Updated")),
            ttl_seconds=ttl_seconds,
            category=record.get("Category") or MetricCategory.GENERAL.value,
            row_position=record.row_position,
        )


@dataclass(frozen=True)
class MetricStatus:
    key: str
    category: str
    age_seconds: Optional[float]
    ttl_seconds: int
    fresh: bool


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    duration: float
    metrics_updated: int
    error: Optional[str] = None


@dataclass(frozen=True)
class ExecutionCache:
    snapshot: Dict[str, MetricRecord]
    loaded_at: datetime


def encode_value(value: Any) -> Tuple[Any, str]:
    """Return the cell value and type tag used to persist ``value``."""

    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str), ValueType.JSON.value
    if isinstance(value, datetime):
        return format_timestamp(value), ValueType.SCALAR.value
    return value, ValueType.SCALAR.value


def decode_value(raw: Any, value_type: Optional[str]) -> Any:
    """Turn a stored cell back into its Python value.

    Tagged rows are decoded according to their tag. Untagged rows (written by
    hand or by older versions) are decoded when the text starts with ``[`` or
    ``{``.

    Raises:
        DecodeFailure: If the value should be JSON but does not parse.
    """

    if value_type == ValueType.SCALAR.value:
        return raw
    looks_structured = isinstance(raw, str) and raw.lstrip()[:1] in ("[", "{")
    if value_type == ValueType.JSON.value or (value_type is None and looks_structured):
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise DecodeFailure(f"Stored value is not valid JSON: {exc}") from exc
    return raw


def contiguous_runs(positioned: Sequence[Tuple[int, Any]]) -> List[Tuple[int, List[Any]]]:
    """Group ``(position, row)`` pairs sorted by position into maximal consecutive runs."""

    runs: List[Tuple[int, List[Any]]] = []
    previous: Optional[int] = None
    for position, row in positioned:
        if runs and previous is not None and position == previous + 1:
            runs[-1][1].append(row)
        else:
            runs.append((position, [row]))
        previous = position
    return runs


class MetricsCache:
    """Read-through metric cache backed by the ``Dashboard_Cache`` sheet."""

    def __init__(
        self,
        store: TabularStore,
        *,
        clock: Clock = utc_now,
        execution_ttl: int = DEFAULT_EXECUTION_CACHE_TTL,
        category_ttls: Optional[Mapping[str, int]] = None,
        metric_config: Optional[Mapping[str, MetricConfig]] = None,
        collectors: Optional[Mapping[str, Collector]] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._execution_ttl = execution_ttl
        self._category_ttls = dict(CATEGORY_TTLS)
        if category_ttls:
            self._category_ttls.update(category_ttls)
        self._metric_config = dict(METRIC_CONFIG if metric_config is None else metric_config)
        self._collectors: Dict[str, Collector] = dict(collectors or {})
        self._execution: Optional[ExecutionCache] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_metric(self, key: str) -> Any:
        """Return the fresh value stored for ``key``, or ``None`` when absent or stale."""

        record = self._snapshot().get(str(key))
        if record is None:
            return None
        if not self._is_fresh(record, self._clock()):
            log.debug("Metric '%s' is stale", key)
            return None
        return self._decode(record)

    def get_metrics(self, keys: Iterable[str]) -> Dict[str, Any]:
        snapshot = self._snapshot()
        now = self._clock()
        values: Dict[str, Any] = {}
        for key in keys:
            record = snapshot.get(str(key))
            if record is None or not self._is_fresh(record, now):
                values[key] = None
            else:
                values[key] = self._decode(record)
        return values

    def get_metrics_by_category(self, category: str) -> Dict[str, Any]:
        snapshot = self._snapshot()
        now = self._clock()
        return {
            key: self._decode(record)
            for key, record in snapshot.items()
            if record.category == category and self._is_fresh(record, now)
        }

    def metric_status(self) -> List[MetricStatus]:
        now = self._clock()
        statuses = []
        for key, record in self._snapshot().items():
            age = None if record.last_updated is None else (now - record.last_updated).total_seconds()
            statuses.append(
                MetricStatus(
                    key=key,
                    category=record.category,
                    age_seconds=age,
                    ttl_seconds=self._ttl_for(record),
                    fresh=self._is_fresh(record, now),
                )
            )
        return statuses

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_metric(
        self,
        key: str,
        value: Any,
        *,
        ttl_seconds: Optional[int] = None,
        category: Optional[str] = None,
    ) -> None:
        """Store ``value`` for ``key``, overwriting the existing row or appending one."""

        key = str(key)
        row = self._build_row(key, value, self._clock(), ttl_seconds=ttl_seconds, category=category)
        try:
            self._store.update(DASHBOARD_CACHE, key, row)
        except RecordNotFound:
            self._store.insert(DASHBOARD_CACHE, row)
        self.invalidate_execution_cache()
        log.info("Stored metric '%s' (category=%s)", key, row["Category"])

    def batch_set_metrics(self, entries: MetricEntries) -> int:
        """Upsert many metrics with the fewest possible sheet writes.

        Existing keys are rewritten in place, one range write per run of
        consecutive rows; new keys are appended with a single bulk append.
        The end state matches calling :meth:`set_metric` for each entry in
        order. Returns the number of distinct keys written.
        """

        pending: Dict[str, Any] = {str(key): value for key, value in self._iter_entries(entries)}
        if not pending:
            return 0

        positions: Dict[str, int] = {}
        for record in self._store.get_all(DASHBOARD_CACHE, use_cache=False):
            positions.setdefault(str(record["Key"]), record.row_position)

        now = self._clock()
        updates: List[Tuple[int, Dict[str, Any]]] = []
        inserts: List[Dict[str, Any]] = []
        for key, value in pending.items():
            row = self._build_row(key, value, now)
            if key in positions:
                updates.append((positions[key], row))
            else:
                inserts.append(row)

        updates.sort(key=itemgetter(0))
        runs = contiguous_runs(updates)
        for start_row, rows in runs:
            self._store.write_rows(DASHBOARD_CACHE, start_row, rows)
        if inserts:
            self._store.batch_insert(DASHBOARD_CACHE, inserts)

        self.invalidate_execution_cache()
        log.info(
            "Stored %d metrics (%d updated in %d writes, %d inserted)",
            len(pending),
            len(updates),
            len(runs),
            len(inserts),
        )
        return len(pending)

    def remove_metric(self, key: str) -> bool:
        """Delete the row of ``key``; returns ``False`` when it did not exist."""

        try:
            self._store.remove(DASHBOARD_CACHE, str(key), hard_delete=True)
        except RecordNotFound:
            return False
        finally:
            self.invalidate_execution_cache()
        return True

    def invalidate_execution_cache(self) -> None:
        self._execution = None

    # ------------------------------------------------------------------
    # Refresh orchestration
    # ------------------------------------------------------------------

    def register_collector(self, key: str, collector: Collector) -> None:
        self._collectors[str(key)] = collector

    def refresh_all_metrics(self, collectors: Optional[Mapping[str, Collector]] = None) -> RefreshResult:
        """Recompute every tracked metric and store them with one batch write.

        ``collectors`` extends (and overrides) the registered collectors for
        this call. A failing collector aborts the refresh before anything is
        written; the failure is reported on the result.
        """

        started = time.perf_counter()
        sources = dict(self._collectors)
        if collectors:
            sources.update(collectors)
        try:
            values = {key: collector() for key, collector in sources.items()}
            written = self.batch_set_metrics(values)
        except Exception as exc:
            duration = time.perf_counter() - started
            log.exception("Metric refresh failed after %.3fs", duration)
            return RefreshResult(success=False, duration=duration, metrics_updated=0, error=str(exc))
        duration = time.perf_counter() - started
        log.info("Refreshed %d metrics in %.3fs", written, duration)
        return RefreshResult(success=True, duration=duration, metrics_updated=written)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _snapshot(self) -> Dict[str, MetricRecord]:
        now = self._clock()
        cached = self._execution
        if cached is not None and (now - cached.loaded_at).total_seconds() < self._execution_ttl:
            return cached.snapshot
        snapshot: Dict[str, MetricRecord] = {}
        for record in self._store.get_all(DASHBOARD_CACHE, use_cache=False):
            if record.get("Key") is None:
                continue
            metric = MetricRecord.from_record(record)
            snapshot.setdefault(metric.key, metric)
        self._execution = ExecutionCache(snapshot=snapshot, loaded_at=now)
        log.debug("Loaded %d metrics into the execution cache", len(snapshot))
        return snapshot

    def _resolve(self, key: str, ttl_seconds: Optional[int], category: Optional[str]) -> Tuple[int, str]:
        config = self._metric_config.get(key)
        if category is None:
            category = config.category if config else MetricCategory.GENERAL.value
        if ttl_seconds is None:
            if config is not None and config.ttl_seconds is not None:
                ttl_seconds = config.ttl_seconds
            else:
                ttl_seconds = self._category_ttls.get(category, DEFAULT_METRIC_TTL)
        return ttl_seconds, category

    def _build_row(
        self,
        key: str,
        value: Any,
        now: datetime,
        *,
        ttl_seconds: Optional[int] = None,
        category: Optional[str] = None,
    ) -> Dict[str, Any]:
        ttl_seconds, category = self._resolve(key, ttl_seconds, category)
        stored, value_type = encode_value(value)
        return {
            "Key": key,
            "Value": stored,
            "Value_Type": value_type,
            "Last_Updated": format_timestamp(now),
            "TTL_Seconds": ttl_seconds,
            "Category": category,
        }

    def _ttl_for(self, record: MetricRecord) -> int:
        if record.ttl_seconds is not None:
            return record.ttl_seconds
        return self._category_ttls.get(record.category, DEFAULT_METRIC_TTL)

    def _is_fresh(self, record: MetricRecord, now: datetime) -> bool:
        if record.last_updated is None:
            return False
        return (now - record.last_updated).total_seconds() <= self._ttl_for(record)

    @staticmethod
    def _decode(record: MetricRecord) -> Any:
        try:
            return decode_value(record.value, record.value_type)
        except DecodeFailure as exc:
            log.warning("Returning raw value for metric '%s': %s", record.key, exc)
            return record.value

    @staticmethod
    def _iter_entries(entries: MetricEntries) -> Iterable[Tuple[str, Any]]:
        if isinstance(entries, Mapping):
            return entries.items()
        return entries
