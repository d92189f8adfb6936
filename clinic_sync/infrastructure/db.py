from __future__ import annotations

import sqlite3
from pathlib import Path

DB_FILENAME = "clinic.db"
DEFAULT_BUSY_TIMEOUT_MS = 30000

_FILE_PRAGMAS = ("journal_mode=WAL", "synchronous=NORMAL")


def default_db_path() -> Path:
    return Path(__file__).resolve().parents[2] / "data" / "relational" / DB_FILENAME


def _prepare(connection: sqlite3.Connection, pragmas: tuple[str, ...] = ()) -> sqlite3.Connection:
    connection.row_factory = sqlite3.Row
    # Sin foreign_keys=ON no hay borrado en cascada de citas.
    for pragma in ("foreign_keys=ON", *pragmas):
        connection.execute(f"PRAGMA {pragma}")
    return connection


def get_connection(
    db_path: Path | None = None,
    *,
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
) -> sqlite3.Connection:
    """Conexión al fichero del almacén relacional, compartible entre hilos.

    Los DAO serializan el acceso con el lock de su ``SqliteSession``.
    """
    path = Path(db_path) if db_path else default_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(path, check_same_thread=False, timeout=max(1.0, busy_timeout_ms / 1000))
    return _prepare(connection, (*_FILE_PRAGMAS, f"busy_timeout={int(busy_timeout_ms)}"))


def get_memory_connection() -> sqlite3.Connection:
    return _prepare(sqlite3.connect(":memory:", check_same_thread=False))
