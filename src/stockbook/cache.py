"""Process-local caches used by the tabular store.

:class:`ProcessCache` is a small key/bytes store with per-entry TTLs and an
entry size ceiling. :class:`RecordCache` layers a cache-aside policy on top of
it: a table's complete row set is cached under one key after a read miss and
dropped wholesale whenever that table is written.
"""

from __future__ import annotations

import pickle
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from . import log
from .clock import Clock, utc_now
from .constants import DEFAULT_MAX_CACHE_ENTRY_BYTES, DEFAULT_RECORD_CACHE_TTL
from .errors import CacheWriteFailure

if TYPE_CHECKING:
    from .store import Record


RECORD_KEY_PREFIX = "records:"


class ProcessCache:
    """In-memory key/bytes cache with lazy TTL expiry."""

    def __init__(self, *, clock: Clock = utc_now, max_entry_bytes: int = DEFAULT_MAX_CACHE_ENTRY_BYTES) -> None:
        self._clock = clock
        self._max_entry_bytes = max_entry_bytes
        self._entries: Dict[str, Tuple[bytes, datetime]] = {}

    def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return payload

    def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``.

        Raises:
            CacheWriteFailure: If ``value`` is not bytes or exceeds the
                configured entry size.
        """

        if not isinstance(value, (bytes, bytearray)):
            raise CacheWriteFailure(f"Cache values must be bytes, got {type(value).__name__}")
        if len(value) > self._max_entry_bytes:
            raise CacheWriteFailure(
                f"Cache entry '{key}' is {len(value)} bytes; limit is {self._max_entry_bytes}",
                details={"key": key, "size": len(value)},
            )
        self._entries[key] = (bytes(value), self._clock() + timedelta(seconds=ttl_seconds))

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


@dataclass(frozen=True)
class CacheEntry:
    """Complete row set of one table captured at ``cached_at``."""

    table_key: str
    rows: Tuple["Record", ...]
    cached_at: datetime


class RecordCache:
    """Cache-aside wrapper that stores whole tables in a :class:`ProcessCache`."""

    def __init__(
        self,
        process_cache: ProcessCache,
        *,
        ttl_seconds: int = DEFAULT_RECORD_CACHE_TTL,
        clock: Clock = utc_now,
    ) -> None:
        self._process_cache = process_cache
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def key_for(table: str) -> str:
        return f"{RECORD_KEY_PREFIX}{table}"

    def get(self, table: str) -> Optional[List["Record"]]:
        """Return the cached rows of ``table`` or ``None`` on a miss."""

        key = self.key_for(table)
        payload = self._process_cache.get(key)
        if payload is None:
            log.debug("Record cache miss for '%s'", table)
            return None
        try:
            entry = pickle.loads(payload)
        except (pickle.UnpicklingError, EOFError, AttributeError, TypeError) as exc:
            log.warning("Discarding unreadable record cache entry for '%s': %s", table, exc)
            self._process_cache.remove(key)
            return None
        age = (self._clock() - entry.cached_at).total_seconds()
        if age >= self._ttl_seconds:
            log.debug("Record cache entry for '%s' expired (age=%.1fs)", table, age)
            self._process_cache.remove(key)
            return None
        log.debug("Record cache hit for '%s' (%d rows)", table, len(entry.rows))
        return list(entry.rows)

    def put(self, table: str, rows: List["Record"]) -> bool:
        """Cache ``rows`` for ``table``; failures are logged and reported as ``False``."""

        entry = CacheEntry(table_key=table, rows=tuple(rows), cached_at=self._clock())
        try:
            payload = pickle.dumps(entry, protocol=pickle.HIGHEST_PROTOCOL)
            self._process_cache.put(self.key_for(table), payload, self._ttl_seconds)
        except (CacheWriteFailure, pickle.PicklingError, TypeError) as exc:
            log.warning("Unable to cache rows for '%s'; continuing uncached: %s", table, exc)
            return False
        return True

    def invalidate(self, table: str) -> None:
        log.debug("Invalidating record cache for '%s'", table)
        self._process_cache.remove(self.key_for(table))
