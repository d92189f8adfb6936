from __future__ import annotations

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """Par ``NNN_nombre.up.sql`` / ``NNN_nombre.down.sql``."""

    version: int
    name: str
    up_path: Path
    down_path: Path

    def script(self, direction: str) -> str:
        path = self.up_path if direction == "up" else self.down_path
        return path.read_text(encoding="utf-8")

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.script("up").encode("utf-8")).hexdigest()


def discover_migrations(schema_dir: Path = SCHEMA_DIR) -> list[Migration]:
    migrations: list[Migration] = []
    for up_path in sorted(schema_dir.glob("*.up.sql")):
        stem = up_path.name.removesuffix(".up.sql")
        version, _, name = stem.partition("_")
        down_path = up_path.with_name(f"{stem}.down.sql")
        if not down_path.exists():
            raise FileNotFoundError(f"Migration {up_path.name} has no down script: {down_path.name}")
        migrations.append(Migration(int(version), name, up_path, down_path))
    return migrations


class MigrationRunner:
    """Aplica y revierte el esquema del almacén relacional.

    El historial vive en ``schema_migrations`` (con checksum del script up) y
    ``PRAGMA user_version`` refleja siempre la última versión aplicada.
    """

    def __init__(self, connection: sqlite3.Connection, schema_dir: Path = SCHEMA_DIR) -> None:
        self.connection = connection
        self.migrations = discover_migrations(schema_dir)
        self._ensure_history()

    def apply_all(self) -> list[int]:
        applied = self._applied()
        done: list[int] = []
        for migration in self.migrations:
            if migration.version not in applied:
                self._run(migration, "up")
                done.append(migration.version)
        return done

    def rollback(self, steps: int = 1) -> list[int]:
        by_version = {migration.version: migration for migration in self.migrations}
        latest = sorted(self._applied(), reverse=True)[:steps]
        for version in latest:
            self._run(by_version[version], "down")
        return latest

    def status(self) -> list[dict[str, object]]:
        applied = self._applied()
        return [
            {
                "version": migration.version,
                "name": migration.name,
                "applied": migration.version in applied,
                "drifted": migration.version in applied and applied[migration.version] != migration.checksum,
            }
            for migration in self.migrations
        ]

    def _ensure_history(self) -> None:
        with self.connection:
            self.connection.execute(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                " version INTEGER PRIMARY KEY, name TEXT NOT NULL,"
                " checksum TEXT NOT NULL, applied_at TEXT NOT NULL)"
            )

    def _applied(self) -> dict[int, str]:
        rows = self.connection.execute("SELECT version, checksum FROM schema_migrations").fetchall()
        return {int(row[0]): str(row[1]) for row in rows}

    def _run(self, migration: Migration, direction: str) -> None:
        script = migration.script(direction)
        with self.connection:
            if script.strip():
                self.connection.executescript(script)
            if direction == "up":
                self.connection.execute(
                    "INSERT INTO schema_migrations (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
                    (
                        migration.version,
                        migration.name,
                        migration.checksum,
                        datetime.now(timezone.utc).isoformat(timespec="seconds"),
                    ),
                )
            else:
                self.connection.execute("DELETE FROM schema_migrations WHERE version = ?", (migration.version,))
            current = self.connection.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations").fetchone()[0]
            self.connection.execute(f"PRAGMA user_version = {int(current)}")
        logger.info("schema_migration_%s %04d %s", direction, migration.version, migration.name)


def run_migrations(connection: sqlite3.Connection) -> list[int]:
    applied = MigrationRunner(connection).apply_all()
    # executescript deja foreign_keys como estaba antes del script.
    connection.execute("PRAGMA foreign_keys=ON")
    return applied
