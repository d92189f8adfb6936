from __future__ import annotations

import sqlite3

import pytest

from clinic_sync.infrastructure.migrations import MigrationRunner, discover_migrations, run_migrations


def _tables(connection: sqlite3.Connection) -> set[str]:
    rows = connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {row[0] for row in rows}


def test_run_migrations_crea_el_esquema_y_es_idempotente() -> None:
    connection = sqlite3.connect(":memory:")

    first = run_migrations(connection)
    second = run_migrations(connection)

    assert first == [1, 2]
    assert second == []
    assert {"users", "patients", "psychologists", "appointments", "schema_migrations"} <= _tables(connection)
    assert connection.execute("PRAGMA user_version").fetchone()[0] == 2
    assert connection.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def test_rollback_y_status() -> None:
    connection = sqlite3.connect(":memory:")
    runner = MigrationRunner(connection)
    runner.apply_all()

    rolled_back = runner.rollback(steps=2)

    assert rolled_back == [2, 1]
    assert "patients" not in _tables(connection)
    assert [item["applied"] for item in runner.status()] == [False, False]
    assert connection.execute("PRAGMA user_version").fetchone()[0] == 0


def test_status_detecta_script_modificado_tras_aplicar(tmp_path) -> None:
    (tmp_path / "001_demo.up.sql").write_text("CREATE TABLE demo (id INTEGER);", encoding="utf-8")
    (tmp_path / "001_demo.down.sql").write_text("DROP TABLE demo;", encoding="utf-8")
    connection = sqlite3.connect(":memory:")
    MigrationRunner(connection, tmp_path).apply_all()

    (tmp_path / "001_demo.up.sql").write_text("CREATE TABLE demo (id INTEGER, extra TEXT);", encoding="utf-8")

    assert MigrationRunner(connection, tmp_path).status() == [
        {"version": 1, "name": "demo", "applied": True, "drifted": True}
    ]


def test_falta_script_down_es_error(tmp_path) -> None:
    (tmp_path / "001_demo.up.sql").write_text("CREATE TABLE demo (id INTEGER);", encoding="utf-8")

    with pytest.raises(FileNotFoundError):
        discover_migrations(tmp_path)
