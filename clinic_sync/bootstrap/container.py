from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

from clinic_sync.application.cross_persistence_observer import CrossPersistenceSyncObserver
from clinic_sync.application.dao_factory import DaoFactory
from clinic_sync.application.initial_sync import InitialSyncManager, InitialSyncReport
from clinic_sync.bootstrap.settings import resolve_data_dir
from clinic_sync.domain.models import PersistenceType, StoreConfig
from clinic_sync.infrastructure.db import DB_FILENAME, get_connection
from clinic_sync.infrastructure.local_config import StoreConfigStore
from clinic_sync.infrastructure.migrations import run_migrations
from clinic_sync.infrastructure.repos_csv import build_csv_daos
from clinic_sync.infrastructure.repos_sqlite import build_sqlite_daos

logger = logging.getLogger(__name__)

CSV_SUBDIR = "file"
DB_SUBDIR = "relational"

ConnectionFactory = Callable[[Path], sqlite3.Connection]


@dataclass
class AppContainer:
    config: StoreConfig
    factory: DaoFactory
    connection: sqlite3.Connection
    initial_sync_manager: InitialSyncManager
    initial_sync_report: InitialSyncReport | None = None

    def close(self) -> None:
        self.factory.disarm_sync()
        self.connection.close()


def _resolve_paths(config: StoreConfig, data_dir: Path) -> tuple[Path, Path]:
    csv_dir = Path(config.csv_dir) if config.csv_dir else data_dir / CSV_SUBDIR
    db_path = Path(config.db_path) if config.db_path else data_dir / DB_SUBDIR / DB_FILENAME
    return csv_dir, db_path


def build_container(
    data_dir: Path | None = None,
    *,
    primary: PersistenceType | None = None,
    run_initial_sync: bool = True,
    connection_factory: ConnectionFactory = get_connection,
) -> AppContainer:
    """Cablea los dos almacenes, arma los observers y reconcilia al arrancar.

    La sincronización inicial corre antes de devolver el contenedor, es decir,
    antes de que cualquier código anfitrión pueda escribir.
    """
    resolved_dir = resolve_data_dir(data_dir)
    config = StoreConfigStore(resolved_dir).load()
    if primary is not None:
        config = replace(config, primary=PersistenceType.parse(primary))
    csv_dir, db_path = _resolve_paths(config, resolved_dir)

    connection = connection_factory(db_path)
    run_migrations(connection)

    factory = DaoFactory(
        {
            PersistenceType.FILE: lambda: build_csv_daos(csv_dir),
            PersistenceType.RELATIONAL: lambda: build_sqlite_daos(connection),
        },
        persistence_type=config.primary,
    )
    if config.sync_enabled:
        factory.arm_sync(lambda kind: CrossPersistenceSyncObserver(kind, factory))

    manager = InitialSyncManager(factory)
    container = AppContainer(config=config, factory=factory, connection=connection, initial_sync_manager=manager)
    logger.info(
        "container_ready",
        extra={
            "extra": {
                "primary": config.primary.value,
                "sync_enabled": config.sync_enabled,
                "csv_dir": str(csv_dir),
                "db_path": str(db_path),
            }
        },
    )

    if config.sync_enabled and run_initial_sync:
        try:
            container.initial_sync_report = manager.perform_initial_sync(config.primary)
        except Exception:
            container.close()
            raise
    return container
