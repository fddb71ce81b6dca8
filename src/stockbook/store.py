"""Generic tabular data-access layer over the workbook medium.

:class:`TabularStore` implements CRUD, batch mutation, search, pagination and
identifier generation for any worksheet described by a
:class:`~stockbook.schema.TableSchema`. Reads go through the
:class:`~stockbook.cache.RecordCache` when allowed; every mutation invalidates
the table's cache entry and feeds the :class:`~stockbook.activity_log.ActivityLog`.

Row positions carried by :class:`Record` are only valid until the next
structural change of the table. In-place writes therefore always locate their
target with a fresh, uncached scan immediately before writing.
"""

from __future__ import annotations

import json
import math
import uuid
from collections.abc import Mapping as MappingABC
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .activity_log import ActivityLog
from .cache import RecordCache
from .clock import Clock, format_timestamp, parse_timestamp, utc_now
from .constants import DEFAULT_BATCH_CHUNK_SIZE, DEFAULT_LOCK_TIMEOUT_MS
from .data_manager import FIRST_DATA_ROW, HEADER_ROW, WorkbookMedium
from .errors import LockTimeout, RecordNotFound, ValidationError
from .locking import LockCoordinator, LockToken
from .schema import ACTIVITY_LOG, TableSchema


@dataclass(frozen=True, eq=False)
class Record(MappingABC):
    """Read-only mapping of column name to cell value.

    ``row_position`` is the absolute worksheet row the values were read from.
    Records compare equal to any mapping with the same items; the position is
    ignored for equality.
    """

    data: Mapping[str, Any]
    row_position: Optional[int] = None

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data)


@dataclass(frozen=True)
class ItemResult:
    """Outcome of one item inside a batch mutation."""

    id: str
    success: bool
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Per-item outcomes of a batch mutation, in processing order."""

    results: List[ItemResult] = field(default_factory=list)

    def add(self, item: ItemResult) -> None:
        self.results.append(item)

    @property
    def success(self) -> List[str]:
        return [item.id for item in self.results if item.success]

    @property
    def errors(self) -> List[ItemResult]:
        return [item for item in self.results if not item.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "errors": [{"id": item.id, "error": item.error} for item in self.errors],
        }


@dataclass(frozen=True)
class Page:
    """One page of records plus the arithmetic needed to walk the rest."""

    items: List[Record]
    total: int
    page: int
    page_size: int
    total_pages: int

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


def _cell_text(value: Any) -> str:
    return "" if value is None else str(encode_cell(value)).lower()


def _same_id(cell: Any, record_id: Any) -> bool:
    return cell is not None and str(cell) == str(record_id)


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def json_default(value: Any) -> Any:
    """``json.dumps`` fallback that renders datetimes as ISO-8601 text."""

    if isinstance(value, datetime):
        return format_timestamp(value)
    return str(value)


def encode_cell(value: Any, *, as_json: bool = False) -> Any:
    """Convert a Python value into something a worksheet cell can hold.

    With ``as_json`` every non-blank value is stored as JSON text, which makes
    the cell reversible through :func:`decode_cell`. Otherwise structured
    values become JSON text, datetimes become ISO-8601 strings and everything
    else is stored unchanged.
    """

    if value is None:
        return None
    if as_json or isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=json_default)
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


def decode_cell(schema: TableSchema, column: str, value: Any) -> Any:
    """Reverse :func:`encode_cell` for the typed columns of ``schema``.

    Cells that do not parse (typically edited by hand) are returned as stored.
    """

    if value is None:
        return None
    if column in schema.json_columns and isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            log.debug("Cell '%s' of '%s' is not JSON; returning raw text", column, schema.name)
            return value
    if column in schema.timestamp_columns:
        parsed = parse_timestamp(value)
        return value if parsed is None else parsed
    return value


class TabularStore:
    """CRUD, batch, search and pagination over schema-described worksheets."""

    def __init__(
        self,
        medium: WorkbookMedium,
        record_cache: RecordCache,
        lock: LockCoordinator,
        activity: Optional[ActivityLog] = None,
        *,
        clock: Clock = utc_now,
        chunk_size: int = DEFAULT_BATCH_CHUNK_SIZE,
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    ) -> None:
        self.medium = medium
        self._record_cache = record_cache
        self._lock = lock
        self._activity = activity
        self._clock = clock
        self.chunk_size = max(1, chunk_size)
        self.lock_timeout_ms = lock_timeout_ms

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all(
        self,
        schema: TableSchema,
        *,
        use_cache: bool = True,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Record]:
        """Return every record of ``schema``, optionally filtered.

        Filters map column names to case-insensitive substrings; an empty or
        ``None`` filter value matches everything. The unfiltered row set is
        what gets cached.
        """

        rows = self._record_cache.get(schema.name) if use_cache else None
        if rows is None:
            rows = self._read_records(schema)
            if use_cache:
                self._record_cache.put(schema.name, rows)
        return self._apply_filters(schema, rows, filters)

    def get_by_id(
        self,
        schema: TableSchema,
        record_id: Any,
        preloaded: Optional[Mapping[str, Record]] = None,
        *,
        use_cache: bool = True,
    ) -> Optional[Record]:
        """Return the record whose identifier equals ``record_id`` or ``None``.

        With ``preloaded`` (as produced by :meth:`get_by_ids`) the lookup is a
        dictionary access and never touches the workbook.
        """

        if preloaded is not None:
            return preloaded.get(str(record_id))
        for record in self.get_all(schema, use_cache=use_cache):
            if _same_id(record.get(schema.id_column), record_id):
                return record
        return None

    def get_by_ids(self, schema: TableSchema, ids: Iterable[Any]) -> Dict[str, Record]:
        """Resolve many identifiers with a single table read.

        Returns a mapping keyed by the identifier's string form containing only
        the requested identifiers that exist.
        """

        wanted = {str(record_id) for record_id in ids}
        found: Dict[str, Record] = {}
        if not wanted:
            return found
        for record in self.get_all(schema):
            key = record.get(schema.id_column)
            if key is None:
                continue
            key = str(key)
            if key in wanted and key not in found:
                found[key] = record
        return found

    def search(self, schema: TableSchema, query: str, fields: Optional[Sequence[str]] = None) -> List[Record]:
        """Case-insensitive substring search across ``fields`` (default: all columns)."""

        columns = tuple(fields) if fields else schema.columns
        for column in columns:
            schema.column_index(column)
        rows = self.get_all(schema)
        needle = (query or "").strip().lower()
        if not needle:
            return rows
        return [
            record
            for record in rows
            if any(needle in _cell_text(record.get(column)) for column in columns)
        ]

    def get_paginated(
        self,
        schema: TableSchema,
        *,
        page: int = 1,
        page_size: int = 50,
        reverse_order: bool = False,
    ) -> Page:
        """Read one page of rows without scanning the whole table.

        Forward pages walk the sheet top-down. Reverse pages walk it bottom-up
        so page 1 holds the newest rows, newest first.

        Raises:
            ValidationError: If ``page_size`` is smaller than 1.
        """

        if page_size < 1:
            raise ValidationError(f"page_size must be at least 1, got {page_size}")
        page = max(1, int(page))

        handle = self.medium.ensure_table(schema)
        total = self.medium.row_count(handle)
        last_row = total + HEADER_ROW
        total_pages = math.ceil(total / page_size)

        if reverse_order:
            skip = (page - 1) * page_size
            start = max(FIRST_DATA_ROW, last_row - skip - page_size + 1)
            count = min(page_size, (last_row - skip) - start + 1)
        else:
            start = FIRST_DATA_ROW + (page - 1) * page_size
            count = min(page_size, last_row - start + 1)

        if count <= 0:
            return Page(items=[], total=total, page=page, page_size=page_size, total_pages=total_pages)

        raw_rows = self.medium.read_rows(handle, start, count)
        items = [
            self._to_record(schema, raw, start + offset)
            for offset, raw in enumerate(raw_rows)
            if any(value is not None for value in raw)
        ]
        if reverse_order:
            items.reverse()
        return Page(items=items, total=total, page=page, page_size=page_size, total_pages=total_pages)

    # ------------------------------------------------------------------
    # Single-record writes
    # ------------------------------------------------------------------

    def insert(self, schema: TableSchema, data: Mapping[str, Any]) -> str:
        """Append one record and return its identifier.

        Raises:
            ValidationError: For unknown columns, or when no identifier is
                supplied and the schema has no ``id_prefix``.
        """

        values = self._prepare_new(schema, data)
        handle = self.medium.ensure_table(schema)
        self.medium.append_rows(handle, [self._serialize(schema, values)])
        record_id = str(values[schema.id_column])
        self.invalidate(schema)
        self._record_activity("INSERT", schema, record_id)
        log.info("Inserted record '%s' into '%s'", record_id, schema.name)
        return record_id

    def update(self, schema: TableSchema, record_id: Any, updates: Mapping[str, Any]) -> Record:
        """Merge ``updates`` over the stored record and rewrite its row.

        Raises:
            RecordNotFound: If no row carries ``record_id``.
            ValidationError: For unknown columns or an identifier change.
        """

        self._check_columns(schema, updates)
        new_id = updates.get(schema.id_column)
        if new_id is not None and str(new_id) != str(record_id):
            raise ValidationError(f"Identifier of '{record_id}' in '{schema.name}' cannot be changed")

        current = self._locate(schema, record_id)
        merged = current.to_dict()
        merged.update(updates)
        self._stamp_modified(schema, merged)

        handle = self.medium.ensure_table(schema)
        row = self._serialize(schema, merged)
        self.medium.write_range(handle, current.row_position, [row])
        self.invalidate(schema)
        self._record_activity("UPDATE", schema, record_id, {"fields": sorted(updates)})
        log.info("Updated record '%s' in '%s'", record_id, schema.name)
        return self._to_record(schema, row, current.row_position)

    def remove(self, schema: TableSchema, record_id: Any, *, hard_delete: bool = False) -> bool:
        """Delete or archive one record.

        Hard deletes remove the physical row. Soft deletes set the schema's
        status column to its archived value; schemas without one are left
        untouched. Returns ``True`` when the workbook changed.

        Raises:
            RecordNotFound: If no row carries ``record_id``.
        """

        current = self._locate(schema, record_id)
        handle = self.medium.ensure_table(schema)
        changed = self._delete_located(schema, handle, current, hard_delete=hard_delete)
        self.invalidate(schema)
        action = "DELETE" if hard_delete else ("ARCHIVE" if changed else "REMOVE")
        self._record_activity(action, schema, record_id)
        if changed:
            log.info("Removed record '%s' from '%s' (%s)", record_id, schema.name, action.lower())
        else:
            log.warning("Soft delete of '%s' ignored: '%s' has no status column", record_id, schema.name)
        return changed

    # ------------------------------------------------------------------
    # Batch writes
    # ------------------------------------------------------------------

    def batch_insert(self, schema: TableSchema, records: Sequence[Mapping[str, Any]]) -> List[str]:
        """Append many records with one bulk write and return their identifiers."""

        if not records:
            return []
        prepared = [self._prepare_new(schema, data) for data in records]
        handle = self.medium.ensure_table(schema)
        self.medium.append_rows(handle, [self._serialize(schema, values) for values in prepared])
        ids = [str(values[schema.id_column]) for values in prepared]
        self.invalidate(schema)
        self._record_activity("BATCH_INSERT", schema, None, {"count": len(ids)})
        log.info("Inserted %d records into '%s'", len(ids), schema.name)
        return ids

    def batch_update(
        self,
        schema: TableSchema,
        updates: Sequence[Tuple[Any, Mapping[str, Any]]],
        *,
        chunk_size: Optional[int] = None,
        lock_timeout_ms: Optional[int] = None,
    ) -> BatchResult:
        """Apply ``(id, changes)`` pairs chunk by chunk under the lock.

        A failing item is recorded and the chunk carries on. The lock is held
        for one chunk at a time.

        Raises:
            LockTimeout: If a chunk cannot obtain the lock. Earlier chunks stay
                applied and are available on the exception's ``partial``.
        """

        items = list(updates)
        result = BatchResult()
        for chunk in _chunks(items, chunk_size or self.chunk_size):
            token = self._acquire_for_batch(schema, "update", result, len(items), lock_timeout_ms)
            try:
                for record_id, changes in chunk:
                    try:
                        self.update(schema, record_id, changes)
                    except Exception as exc:  # reported per item
                        log.warning("Batch update of '%s' in '%s' failed: %s", record_id, schema.name, exc)
                        result.add(ItemResult(str(record_id), False, str(exc)))
                    else:
                        result.add(ItemResult(str(record_id), True))
            finally:
                self._lock.release(token)
        log.info(
            "Batch update on '%s': %d succeeded, %d failed",
            schema.name,
            len(result.success),
            len(result.errors),
        )
        return result

    def batch_delete(
        self,
        schema: TableSchema,
        ids: Sequence[Any],
        *,
        hard_delete: bool = False,
        chunk_size: Optional[int] = None,
        lock_timeout_ms: Optional[int] = None,
    ) -> BatchResult:
        """Delete or archive many records.

        Positions are resolved with one scan and processed from the bottom of
        the sheet upwards, so removing a row never shifts a row still waiting
        to be removed.

        Raises:
            LockTimeout: As for :meth:`batch_update`.
        """

        result = BatchResult()
        by_id: Dict[str, Record] = {}
        for record in self._read_records(schema):
            key = record.get(schema.id_column)
            if key is not None:
                by_id.setdefault(str(key), record)

        targets: List[Record] = []
        seen = set()
        for record_id in ids:
            key = str(record_id)
            if key in seen:
                continue
            seen.add(key)
            record = by_id.get(key)
            if record is None:
                missing = RecordNotFound(f"Record '{key}' not found in '{schema.name}'")
                result.add(ItemResult(key, False, str(missing)))
            else:
                targets.append(record)
        targets.sort(key=lambda record: record.row_position, reverse=True)

        handle = self.medium.ensure_table(schema)
        action = "BATCH_DELETE" if hard_delete else "BATCH_ARCHIVE"
        try:
            for chunk in _chunks(targets, chunk_size or self.chunk_size):
                token = self._acquire_for_batch(schema, "delete", result, len(seen), lock_timeout_ms)
                try:
                    for record in chunk:
                        record_id = str(record[schema.id_column])
                        try:
                            self._delete_located(schema, handle, record, hard_delete=hard_delete)
                        except Exception as exc:  # reported per item
                            log.warning("Batch delete of '%s' in '%s' failed: %s", record_id, schema.name, exc)
                            result.add(ItemResult(record_id, False, str(exc)))
                        else:
                            result.add(ItemResult(record_id, True))
                finally:
                    self._lock.release(token)
                    self.invalidate(schema)
        finally:
            self._record_activity(
                action,
                schema,
                None,
                {"count": len(result.success), "failed": len(result.errors)},
            )
        log.info(
            "Batch delete on '%s': %d succeeded, %d failed",
            schema.name,
            len(result.success),
            len(result.errors),
        )
        return result

    def write_rows(self, schema: TableSchema, start_row: int, records: Sequence[Mapping[str, Any]]) -> None:
        """Overwrite a contiguous block of full rows starting at ``start_row``.

        Callers must derive ``start_row`` from a scan taken after the last
        structural change of the table.
        """

        if not records:
            return
        for data in records:
            self._check_columns(schema, data)
        handle = self.medium.ensure_table(schema)
        self.medium.write_range(handle, start_row, [self._serialize(schema, data) for data in records])
        self.invalidate(schema)
        self._record_activity("BULK_WRITE", schema, None, {"start_row": start_row, "count": len(records)})
        log.debug("Wrote %d contiguous rows to '%s' at row %d", len(records), schema.name, start_row)

    def invalidate(self, schema: TableSchema) -> None:
        self._record_cache.invalidate(schema.name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def generate_id(self, schema: TableSchema) -> str:
        """Build ``id_prefix`` plus an opaque random suffix.

        Raises:
            ValidationError: If the schema declares no ``id_prefix``.
        """

        if not schema.id_prefix:
            raise ValidationError(f"Table '{schema.name}' requires an explicit '{schema.id_column}'")
        return f"{schema.id_prefix}{uuid.uuid4().hex[:10].upper()}"

    def _read_records(self, schema: TableSchema) -> List[Record]:
        handle = self.medium.ensure_table(schema)
        return [
            self._to_record(schema, raw, FIRST_DATA_ROW + offset)
            for offset, raw in enumerate(self.medium.read_range(handle))
            if any(value is not None for value in raw)
        ]

    def _locate(self, schema: TableSchema, record_id: Any) -> Record:
        for record in self._read_records(schema):
            if _same_id(record.get(schema.id_column), record_id):
                return record
        raise RecordNotFound(
            f"Record '{record_id}' not found in '{schema.name}'",
            details={"table": schema.name, "id": str(record_id)},
        )

    def _delete_located(self, schema: TableSchema, handle: Worksheet, record: Record, *, hard_delete: bool) -> bool:
        if hard_delete:
            self.medium.delete_row(handle, record.row_position)
            return True
        if schema.status_column is None:
            return False
        values = record.to_dict()
        values[schema.status_column] = schema.archived_value
        self._stamp_modified(schema, values)
        self.medium.write_range(handle, record.row_position, [self._serialize(schema, values)])
        return True

    def _acquire_for_batch(
        self,
        schema: TableSchema,
        operation: str,
        result: BatchResult,
        total: int,
        timeout_ms: Optional[int],
    ) -> LockToken:
        try:
            return self._lock.acquire(self.lock_timeout_ms if timeout_ms is None else timeout_ms)
        except LockTimeout as exc:
            log.error(
                "Batch %s on '%s' aborted after %d of %d items: %s",
                operation,
                schema.name,
                len(result.results),
                total,
                exc,
            )
            raise LockTimeout(
                f"Batch {operation} on '{schema.name}' aborted: {exc.message}",
                details={"table": schema.name, "processed": len(result.results), "total": total},
                partial=result,
            ) from exc

    def _prepare_new(self, schema: TableSchema, data: Mapping[str, Any]) -> Dict[str, Any]:
        self._check_columns(schema, data)
        values = {column: data.get(column) for column in schema.columns}
        if _is_blank(values[schema.id_column]):
            values[schema.id_column] = self.generate_id(schema)
        if schema.date_columns:
            now = self._clock()
            for column in schema.date_columns:
                if _is_blank(values[column]):
                    values[column] = now
        return values

    def _stamp_modified(self, schema: TableSchema, values: Dict[str, Any]) -> None:
        if schema.modified_column is not None:
            values[schema.modified_column] = self._clock()

    @staticmethod
    def _check_columns(schema: TableSchema, data: Mapping[str, Any]) -> None:
        unknown = sorted(set(data) - set(schema.columns))
        if unknown:
            raise ValidationError(
                f"Unknown column(s) for '{schema.name}': {', '.join(unknown)}",
                details={"table": schema.name, "columns": unknown},
            )

    @staticmethod
    def _serialize(schema: TableSchema, values: Mapping[str, Any]) -> List[Any]:
        return [
            encode_cell(values.get(column), as_json=column in schema.json_columns)
            for column in schema.columns
        ]

    @staticmethod
    def _to_record(schema: TableSchema, raw: Sequence[Any], position: int) -> Record:
        values = {
            column: decode_cell(schema, column, raw[index] if index < len(raw) else None)
            for index, column in enumerate(schema.columns)
        }
        return Record(values, position)

    @staticmethod
    def _apply_filters(
        schema: TableSchema,
        rows: List[Record],
        filters: Optional[Mapping[str, Any]],
    ) -> List[Record]:
        if not filters:
            return list(rows)
        active = {
            column: str(needle).lower()
            for column, needle in filters.items()
            if not _is_blank(needle)
        }
        for column in active:
            schema.column_index(column)
        return [
            record
            for record in rows
            if all(needle in _cell_text(record.get(column)) for column, needle in active.items())
        ]

    def _record_activity(
        self,
        action: str,
        schema: TableSchema,
        record_id: Optional[Any],
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self._activity is None or schema.name == ACTIVITY_LOG.name:
            return
        self._activity.record(action, schema.name, record_id, details)
