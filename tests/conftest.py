from __future__ import annotations

import logging
import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from clinic_sync.application import sync_context
from clinic_sync.application.dao_factory import DaoFactory, DaoSet
from clinic_sync.core.metrics import MetricsRegistry
from clinic_sync.domain.models import PersistenceType
from clinic_sync.infrastructure.db import get_memory_connection
from clinic_sync.infrastructure.migrations import run_migrations
from clinic_sync.infrastructure.repos_csv import build_csv_daos
from clinic_sync.infrastructure.repos_sqlite import build_sqlite_daos
from tests.fakes import FakeStore


@pytest.fixture(autouse=True)
def _sync_flag_limpio():
    sync_context.end_sync()
    yield
    sync_context.end_sync()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def fake_stores() -> dict[PersistenceType, FakeStore]:
    return {PersistenceType.FILE: FakeStore(), PersistenceType.RELATIONAL: FakeStore()}


@pytest.fixture
def fake_factory(fake_stores: dict[PersistenceType, FakeStore]) -> DaoFactory:
    return DaoFactory({kind: (lambda store=store: store.daos) for kind, store in fake_stores.items()})


@pytest.fixture
def connection() -> sqlite3.Connection:
    conn = get_memory_connection()
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def sqlite_daos(connection: sqlite3.Connection) -> DaoSet:
    return build_sqlite_daos(connection)


@pytest.fixture
def csv_dir(tmp_path: Path) -> Path:
    return tmp_path / "csv"


@pytest.fixture
def csv_daos(csv_dir: Path) -> DaoSet:
    return build_csv_daos(csv_dir)


@pytest.fixture(params=[PersistenceType.FILE, PersistenceType.RELATIONAL], ids=["csv", "sqlite"])
def store_daos(request, csv_dir: Path, connection: sqlite3.Connection) -> DaoSet:
    if request.param is PersistenceType.FILE:
        return build_csv_daos(csv_dir)
    return build_sqlite_daos(connection)


@pytest.fixture
def real_factory(csv_dir: Path, connection: sqlite3.Connection) -> DaoFactory:
    return DaoFactory(
        {
            PersistenceType.FILE: lambda: build_csv_daos(csv_dir),
            PersistenceType.RELATIONAL: lambda: build_sqlite_daos(connection),
        }
    )


@pytest.fixture
def root_logging():
    root_logger = logging.getLogger()
    handlers, level = list(root_logger.handlers), root_logger.level
    yield root_logger
    for handler in list(root_logger.handlers):
        if handler not in handlers:
            root_logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(level)
