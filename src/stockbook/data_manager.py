"""Data access primitives for Stockbook.

This module provides the low-level helpers that read from and write to the
master workbook. Record semantics belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Range operations: :class:`WorkbookMedium` exposes a worksheet as a
   range-oriented medium (append rows, read a range, write a range, delete a
   row, count rows) that the tabular store builds on.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    CATEGORY_TTLS,
    DEFAULT_ACTIVITY_BUFFER_SIZE,
    DEFAULT_BATCH_CHUNK_SIZE,
    DEFAULT_EXECUTION_CACHE_TTL,
    DEFAULT_LOCK_TIMEOUT_MS,
    DEFAULT_MAX_CACHE_ENTRY_BYTES,
    DEFAULT_RECORD_CACHE_TTL,
)
from .errors import ValidationError
from .schema import TableSchema


CONFIG_FILE_NAME = "config.ini"
HEADER_ROW = 1
FIRST_DATA_ROW = 2


@dataclass(frozen=True)
class StoreSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    record_cache_ttl: int = DEFAULT_RECORD_CACHE_TTL
    execution_cache_ttl: int = DEFAULT_EXECUTION_CACHE_TTL
    max_cache_entry_bytes: int = DEFAULT_MAX_CACHE_ENTRY_BYTES
    lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS
    batch_chunk_size: int = DEFAULT_BATCH_CHUNK_SIZE
    activity_log_enabled: bool = True
    activity_buffer_size: int = DEFAULT_ACTIVITY_BUFFER_SIZE
    category_ttls: Mapping[str, int] = field(default_factory=lambda: dict(CATEGORY_TTLS))


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the store behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _get_int(parser: configparser.ConfigParser, section: str, option: str, fallback: int) -> int:
    try:
        value = parser.getint(section, option, fallback=fallback)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for [{section}] {option}: {exc}") from exc
    if value < 0:
        raise ValueError(f"[{section}] {option} must not be negative")
    return value


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> StoreSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`StoreSettings`.

    The ``[System]`` section is mandatory. The ``[Cache]``, ``[Locking]``,
    ``[ActivityLog]`` and ``[Metrics]`` sections are optional and fall back to
    the defaults in :mod:`stockbook.constants`. Relative ``DataFile`` entries
    are expanded against ``base_path`` (or the current working directory) and
    resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor directory for a relative ``DataFile``.

    Returns:
        StoreSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If a numeric option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    category_ttls: Dict[str, int] = dict(CATEGORY_TTLS)
    if parser.has_section("Metrics"):
        for category in parser.options("Metrics"):
            category_ttls[category] = _get_int(parser, "Metrics", category, CATEGORY_TTLS.get(category, 0))

    try:
        activity_enabled = parser.getboolean("ActivityLog", "Enabled", fallback=True)
    except ValueError as exc:
        raise ValueError(f"Invalid boolean for [ActivityLog] Enabled: {exc}") from exc

    return StoreSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        record_cache_ttl=_get_int(parser, "Cache", "RecordTTL", DEFAULT_RECORD_CACHE_TTL),
        execution_cache_ttl=_get_int(parser, "Cache", "ExecutionTTL", DEFAULT_EXECUTION_CACHE_TTL),
        max_cache_entry_bytes=_get_int(parser, "Cache", "MaxEntryBytes", DEFAULT_MAX_CACHE_ENTRY_BYTES),
        lock_timeout_ms=_get_int(parser, "Locking", "TimeoutMs", DEFAULT_LOCK_TIMEOUT_MS),
        batch_chunk_size=max(1, _get_int(parser, "Locking", "ChunkSize", DEFAULT_BATCH_CHUNK_SIZE)),
        activity_log_enabled=activity_enabled,
        activity_buffer_size=max(1, _get_int(parser, "ActivityLog", "BufferSize", DEFAULT_ACTIVITY_BUFFER_SIZE)),
        category_ttls=category_ttls,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


class WorkbookMedium:
    """Range-oriented view over the worksheets of one workbook.

    Row indices are absolute, 1-based worksheet rows. Row 1 always holds the
    header, so data rows start at :data:`FIRST_DATA_ROW`. Handles returned by
    :meth:`ensure_table` are the ``openpyxl`` worksheets themselves.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def ensure_table(self, schema: TableSchema) -> Worksheet:
        """Return the worksheet for ``schema``, creating it when missing.

        A new or blank sheet receives a bold header row. An existing header
        must match the schema column order exactly.

        Raises:
            ValidationError: If the existing header disagrees with ``schema``.
        """

        if schema.name in self.workbook.sheetnames:
            sheet = self.workbook[schema.name]
        else:
            sheet = self.workbook.create_sheet(title=schema.name)
            log.info("Created worksheet '%s'", schema.name)

        header = self._header(sheet, len(schema.columns))
        if all(value is None for value in header):
            bold_font = Font(bold=True)
            for column_index, column_name in enumerate(schema.columns, start=1):
                cell = sheet.cell(row=HEADER_ROW, column=column_index, value=column_name)
                cell.font = bold_font
        elif tuple(header) != tuple(schema.columns):
            raise ValidationError(
                f"Header of sheet '{schema.name}' does not match its schema",
                details={"expected": list(schema.columns), "found": list(header)},
            )
        return sheet

    def last_row(self, handle: Worksheet) -> int:
        """Return the index of the last non-empty row (``1`` for header-only sheets)."""

        row = handle.max_row
        while row > HEADER_ROW:
            values = next(handle.iter_rows(min_row=row, max_row=row, values_only=True))
            if any(value is not None for value in values):
                break
            row -= 1
        return row

    def row_count(self, handle: Worksheet) -> int:
        """Return the number of data rows below the header."""

        return self.last_row(handle) - HEADER_ROW

    def read_range(self, handle: Worksheet) -> List[List[Any]]:
        """Read every data row of the worksheet as lists of raw cell values."""

        return self.read_rows(handle, FIRST_DATA_ROW, self.row_count(handle))

    def read_rows(self, handle: Worksheet, start_row: int, count: int) -> List[List[Any]]:
        """Read exactly ``count`` rows starting at absolute row ``start_row``."""

        if count <= 0:
            return []
        if start_row < FIRST_DATA_ROW:
            raise ValueError(f"Data rows start at {FIRST_DATA_ROW}, got {start_row}")
        width = max(handle.max_column, 1)
        return [
            list(raw)
            for raw in handle.iter_rows(
                min_row=start_row,
                max_row=start_row + count - 1,
                max_col=width,
                values_only=True,
            )
        ]

    def append_rows(self, handle: Worksheet, rows: Sequence[Sequence[Any]]) -> int:
        """Append ``rows`` after the last non-empty row and return the first index used."""

        start = self.last_row(handle) + 1
        self.write_range(handle, start, rows)
        return start

    def write_range(self, handle: Worksheet, start_row: int, rows: Sequence[Sequence[Any]]) -> None:
        """Overwrite a contiguous block of rows beginning at ``start_row``."""

        if start_row < FIRST_DATA_ROW:
            raise ValueError(f"Refusing to overwrite the header row (start_row={start_row})")
        for offset, row in enumerate(rows):
            for column_index, value in enumerate(row, start=1):
                handle.cell(row=start_row + offset, column=column_index, value=value)

    def delete_row(self, handle: Worksheet, row_index: int) -> None:
        """Remove a physical row, shifting every subsequent row up by one."""

        if row_index < FIRST_DATA_ROW:
            raise ValueError(f"Refusing to delete the header row (row_index={row_index})")
        handle.delete_rows(row_index)

    @staticmethod
    def _header(sheet: Worksheet, width: int) -> List[Any]:
        return list(next(sheet.iter_rows(min_row=HEADER_ROW, max_row=HEADER_ROW, max_col=width, values_only=True)))
