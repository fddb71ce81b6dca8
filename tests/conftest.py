"""Shared pytest fixtures and utilities for Stockbook tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stockbook import constants, core_logic, data_manager  # noqa: E402
from stockbook.activity_log import ActivityLog  # noqa: E402
from stockbook.cache import ProcessCache, RecordCache  # noqa: E402
from stockbook.locking import LockCoordinator  # noqa: E402
from stockbook.metrics import MetricsCache  # noqa: E402
from stockbook.schema import TableSchema  # noqa: E402
from stockbook.setup_excel import create_master_workbook  # noqa: E402
from stockbook.store import TabularStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
START_TIME = datetime(2025, 3, 1, 9, 0, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Locking]\n"
    "TimeoutMs = 200\n"
    "ChunkSize = 50\n\n"
    "[Metrics]\n"
    "sales = 90\n"
)

THINGS = TableSchema(name="Things", columns=("Thing_ID", "Label"), id_prefix="TH")


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# In-memory store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def workbook() -> openpyxl.Workbook:
    return openpyxl.Workbook()


@pytest.fixture
def medium(workbook) -> data_manager.WorkbookMedium:
    return data_manager.WorkbookMedium(workbook)


@pytest.fixture
def process_cache(clock) -> ProcessCache:
    return ProcessCache(clock=clock)


@pytest.fixture
def record_cache(process_cache, clock) -> RecordCache:
    return RecordCache(process_cache, ttl_seconds=60, clock=clock)


@pytest.fixture
def lock(tmp_path: Path) -> LockCoordinator:
    return LockCoordinator("test", tmp_path / "test.lock", default_timeout_ms=100)


@pytest.fixture
def activity(medium, record_cache, clock) -> ActivityLog:
    return ActivityLog(medium, record_cache=record_cache, clock=clock, buffer_size=1000)


@pytest.fixture
def store(medium, record_cache, lock, activity, clock) -> TabularStore:
    return TabularStore(medium, record_cache, lock, activity, clock=clock, lock_timeout_ms=100)


@pytest.fixture
def metrics(store, clock) -> MetricsCache:
    return MetricsCache(store, clock=clock, execution_ttl=5)


@pytest.fixture
def things() -> TableSchema:
    return THINGS


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.StoreSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.StoreSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def context(settings, workbook, clock) -> core_logic.RuntimeContext:
    """Assemble a runtime context around an in-memory workbook."""

    return core_logic.build_runtime(settings, workbook, clock=clock)


# ---------------------------------------------------------------------------
# On-disk fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stockbook-cli", description="Stockbook CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")
