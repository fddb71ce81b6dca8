"""Append-only audit trail fed by every tabular store mutation.

Entries are buffered in memory and written to the ``Activity_Log`` sheet in
bulk, either when the buffer fills up or when :meth:`ActivityLog.flush` is
called (the runtime layer flushes before saving the workbook). Each flush drops
the cached ``Activity_Log`` rows so store reads see the new entries.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from . import log
from .clock import Clock, format_timestamp, utc_now
from .cache import RecordCache
from .constants import DEFAULT_ACTIVITY_BUFFER_SIZE
from .data_manager import WorkbookMedium
from .schema import ACTIVITY_LOG


@dataclass(frozen=True)
class ActivityEntry:
    """One audit row waiting to be written."""

    log_id: str
    timestamp: str
    action: str
    table: str
    record_id: Optional[str]
    details: Optional[str]

    def as_row(self) -> list[object]:
        return [self.log_id, self.timestamp, self.action, self.table, self.record_id, self.details]


class ActivityLog:
    """Buffered writer for the ``Activity_Log`` worksheet."""

    def __init__(
        self,
        medium: WorkbookMedium,
        *,
        record_cache: Optional[RecordCache] = None,
        clock: Clock = utc_now,
        buffer_size: int = DEFAULT_ACTIVITY_BUFFER_SIZE,
        enabled: bool = True,
    ) -> None:
        self._medium = medium
        self._record_cache = record_cache
        self._clock = clock
        self._buffer_size = max(1, buffer_size)
        self._enabled = enabled
        self._buffer: List[ActivityEntry] = []

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(
        self,
        action: str,
        table: str,
        record_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if not self._enabled:
            return
        entry = ActivityEntry(
            log_id=f"{ACTIVITY_LOG.id_prefix}{uuid.uuid4().hex[:10].upper()}",
            timestamp=format_timestamp(self._clock()),
            action=action,
            table=table,
            record_id=None if record_id is None else str(record_id),
            details=json.dumps(dict(details), default=str, sort_keys=True) if details else None,
        )
        self._buffer.append(entry)
        if len(self._buffer) >= self._buffer_size:
            self.flush()

    def flush(self) -> int:
        """Write every buffered entry in one bulk append and return how many were written."""

        if not self._buffer:
            return 0
        entries, self._buffer = self._buffer, []
        handle = self._medium.ensure_table(ACTIVITY_LOG)
        self._medium.append_rows(handle, [entry.as_row() for entry in entries])
        if self._record_cache is not None:
            self._record_cache.invalidate(ACTIVITY_LOG.name)
        log.debug("Flushed %d activity log entries", len(entries))
        return len(entries)
