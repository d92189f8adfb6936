from __future__ import annotations

import csv
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Callable, Iterable, Iterator, TypeVar

from clinic_sync.core.errors import PersistenceError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

Row = dict[str, str]

USERS_HEADER = ("username", "password_hash", "first_name", "last_name", "user_type", "gender")
PATIENTS_HEADER = ("username", "birth_date", "psychologist")
PSYCHOLOGISTS_HEADER = ("username", "office", "hourly_cost")
APPOINTMENTS_HEADER = ("id", "date", "time", "description", "notified", "patient_username")


class CsvTable:
    """Un fichero CSV con cabecera fija; se reescribe entero en cada cambio."""

    def __init__(self, path: Path, header: Iterable[str]) -> None:
        self.path = path
        self.header = tuple(header)

    def read_rows(self) -> list[Row]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8", newline="") as handle:
            reader = csv.DictReader(handle)
            if reader.fieldnames is not None and tuple(reader.fieldnames) != self.header:
                raise csv.Error(f"Unexpected header in {self.path.name}: {reader.fieldnames}")
            return [{column: row.get(column) or "" for column in self.header} for row in reader]

    def write_rows(self, rows: Iterable[Row]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        with temp_path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=self.header)
            writer.writeheader()
            for row in rows:
                writer.writerow({column: row.get(column, "") for column in self.header})
        os.replace(temp_path, self.path)

    def append_row(self, row: Row) -> None:
        rows = self.read_rows()
        rows.append(row)
        self.write_rows(rows)

    def ensure_exists(self) -> None:
        if not self.path.exists():
            self.write_rows([])

    def snapshot(self) -> bytes | None:
        return self.path.read_bytes() if self.path.exists() else None

    def restore(self, content: bytes | None) -> None:
        if content is None:
            self.path.unlink(missing_ok=True)
            return
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        temp_path.write_bytes(content)
        os.replace(temp_path, self.path)


class CsvDatabase:
    """Directorio con los cuatro ficheros del almacén de ficheros.

    Un ``RLock`` serializa lectura-modificación-escritura entre los DAO que
    comparten el directorio; los errores de E/S se traducen a
    ``PersistenceError``.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.lock = RLock()
        self.users = CsvTable(self.base_dir / "users.csv", USERS_HEADER)
        self.patients = CsvTable(self.base_dir / "patients.csv", PATIENTS_HEADER)
        self.psychologists = CsvTable(self.base_dir / "psychologists.csv", PSYCHOLOGISTS_HEADER)
        self.appointments = CsvTable(self.base_dir / "appointments.csv", APPOINTMENTS_HEADER)

    def tables(self) -> tuple[CsvTable, ...]:
        return (self.users, self.patients, self.psychologists, self.appointments)

    def initialize(self) -> None:
        self.run(lambda: [table.ensure_exists() for table in self.tables()], context="csv.initialize")
        logger.info("csv_store_ready", extra={"extra": {"base_dir": str(self.base_dir)}})

    @contextmanager
    def atomic(self, *tables: CsvTable) -> Iterator[None]:
        """Todo o nada sobre varios ficheros: ante cualquier fallo se restaura su contenido previo."""
        with self.lock:
            snapshots = [(table, table.snapshot()) for table in tables]
            try:
                yield
            except Exception:
                for table, content in snapshots:
                    try:
                        table.restore(content)
                    except OSError:
                        logger.exception("csv_restore_failed", extra={"extra": {"file": table.path.name}})
                raise

    def run(self, operation: Callable[[], _T], *, context: str, tables: Iterable[CsvTable] = ()) -> _T:
        """Ejecuta ``operation`` bajo el lock; los ficheros de ``tables`` cambian todos o ninguno."""
        with self.lock:
            try:
                with self.atomic(*tables):
                    return operation()
            except (OSError, csv.Error) as exc:
                raise PersistenceError(f"CSV failure in {context}: {exc}") from exc
