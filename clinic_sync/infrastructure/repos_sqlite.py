from __future__ import annotations

import contextlib
import logging
import sqlite3
import time as time_module
import uuid
from datetime import date, time
from decimal import Decimal
from threading import RLock
from typing import Callable, Iterable, Iterator, TypeVar

from clinic_sync.application.dao_factory import DaoSet
from clinic_sync.application.notifications import DaoOperation, EntityType
from clinic_sync.application.observable_dao import ObservableDao
from clinic_sync.core.errors import DuplicateKeyError, EntityNotFoundError, PersistenceError
from clinic_sync.core.passwords import check_password
from clinic_sync.domain.models import (
    Appointment,
    AppointmentCreation,
    Patient,
    PatientCreation,
    Psychologist,
    PsychologistCreation,
    User,
    UserCreation,
    UserProfile,
    UserType,
)

logger = logging.getLogger(__name__)

_LOCKED_RETRY_BACKOFF_SECONDS = (0.05, 0.15, 0.3)
_T = TypeVar("_T")

PATIENT_SELECT = """
    SELECT u.username, u.first_name, u.last_name, u.gender, p.birth_date, p.psychologist
    FROM patients p
    JOIN users u ON u.username = p.username
"""

PSYCHOLOGIST_SELECT = """
    SELECT u.username, u.first_name, u.last_name, u.gender, s.office, s.hourly_cost
    FROM psychologists s
    JOIN users u ON u.username = s.username
"""

APPOINTMENT_SELECT = "SELECT a.id, a.date, a.time, a.description, a.notified FROM appointments a"


def _is_locked_operational_error(error: sqlite3.OperationalError) -> bool:
    return "locked" in str(error).lower()


def _run_with_locked_retry(operation: Callable[[], _T], *, context: str) -> _T:
    for attempt, delay_seconds in enumerate(_LOCKED_RETRY_BACKOFF_SECONDS, start=1):
        try:
            return operation()
        except sqlite3.OperationalError as error:
            if not _is_locked_operational_error(error):
                raise
            logger.warning(
                "SQLite locked in %s (attempt=%s/%s); retrying in %.0fms",
                context,
                attempt,
                len(_LOCKED_RETRY_BACKOFF_SECONDS),
                delay_seconds * 1000,
            )
            time_module.sleep(delay_seconds)

    return operation()


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        username=row["username"],
        name=row["first_name"],
        surname=row["last_name"],
        gender=row["gender"] or "",
        user_type=UserType(row["user_type"]),
    )


def _row_to_patient(row: sqlite3.Row) -> Patient:
    return Patient(
        username=row["username"],
        name=row["first_name"],
        surname=row["last_name"],
        gender=row["gender"] or "",
        birthday=date.fromisoformat(row["birth_date"]),
        psychologist=row["psychologist"] or None,
    )


def _row_to_psychologist(row: sqlite3.Row) -> Psychologist:
    return Psychologist(
        username=row["username"],
        name=row["first_name"],
        surname=row["last_name"],
        gender=row["gender"] or "",
        office=row["office"] or "",
        hourly_cost=Decimal(row["hourly_cost"] or "0"),
    )


def _row_to_appointment(row: sqlite3.Row) -> Appointment:
    return Appointment(
        id=int(row["id"]),
        date=date.fromisoformat(row["date"]),
        time=time.fromisoformat(row["time"]),
        description=row["description"] or "",
        notified=bool(row["notified"]),
    )


class SqliteSession:
    """Conexión compartida por los cuatro DAO relacionales de un almacén.

    Serializa el acceso con un ``RLock`` (la conexión se abre con
    ``check_same_thread=False``), reintenta los bloqueos de SQLite y traduce
    ``sqlite3.Error`` a ``PersistenceError``.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection
        self.lock = RLock()

    def run(self, operation: Callable[[], _T], *, context: str) -> _T:
        with self.lock:
            try:
                return _run_with_locked_retry(operation, context=context)
            except sqlite3.Error as exc:
                raise PersistenceError(f"SQLite failure in {context}: {exc}") from exc

    def fetch_one(self, sql: str, params: Iterable[object], *, context: str) -> sqlite3.Row | None:
        return self.run(lambda: self.connection.execute(sql, tuple(params)).fetchone(), context=context)

    def fetch_all(self, sql: str, params: Iterable[object], *, context: str) -> list[sqlite3.Row]:
        return self.run(lambda: self.connection.execute(sql, tuple(params)).fetchall(), context=context)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Escritura atómica; dentro de otra transacción se anida con SAVEPOINT."""
        if self.connection.in_transaction:
            savepoint = f"sp_{uuid.uuid4().hex}"
            self.connection.execute(f"SAVEPOINT {savepoint}")
            try:
                yield self.connection.cursor()
            except Exception:
                self.connection.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self.connection.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            self.connection.execute(f"RELEASE SAVEPOINT {savepoint}")
            return

        self.connection.execute("BEGIN")
        try:
            yield self.connection.cursor()
        except Exception:
            self.connection.rollback()
            raise
        self.connection.commit()


def _user_exists(cursor: sqlite3.Cursor, username: str) -> bool:
    return cursor.execute("SELECT 1 FROM users WHERE username = ?", (username,)).fetchone() is not None


def _insert_user_row(cursor: sqlite3.Cursor, user: UserCreation | PatientCreation | PsychologistCreation) -> None:
    cursor.execute(
        """
        INSERT INTO users (username, password_hash, first_name, last_name, user_type, gender)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (user.username, user.password_hash, user.name, user.surname, user.user_type.value, user.gender),
    )


def _update_user_row(cursor: sqlite3.Cursor, profile: UserProfile) -> None:
    if profile.password_hash is None:
        cursor.execute(
            "UPDATE users SET first_name = ?, last_name = ?, gender = ?, user_type = ? WHERE username = ?",
            (profile.name, profile.surname, profile.gender, profile.user_type.value, profile.username),
        )
        return
    cursor.execute(
        """
        UPDATE users SET first_name = ?, last_name = ?, gender = ?, user_type = ?, password_hash = ?
        WHERE username = ?
        """,
        (
            profile.name,
            profile.surname,
            profile.gender,
            profile.user_type.value,
            profile.password_hash,
            profile.username,
        ),
    )


def _detach_patients(cursor: sqlite3.Cursor, psychologist_username: str) -> None:
    cursor.execute("UPDATE patients SET psychologist = NULL WHERE psychologist = ?", (psychologist_username,))


class UserDaoSQLite(ObservableDao):
    def __init__(self, session: SqliteSession) -> None:
        super().__init__()
        self._session = session

    def save(self, user: UserCreation) -> None:
        def _insert() -> None:
            with self._session.transaction() as cursor:
                if _user_exists(cursor, user.username):
                    raise DuplicateKeyError(EntityType.USER.value, user.username)
                _insert_user_row(cursor, user)

        self._session.run(_insert, context="users.insert")
        self.notify_observers(DaoOperation.INSERT, EntityType.USER, user.username, user)

    def retrieve(self, username: str) -> User | None:
        row = self._session.fetch_one(
            "SELECT username, first_name, last_name, gender, user_type FROM users WHERE username = ?",
            (username,),
            context="users.retrieve",
        )
        return _row_to_user(row) if row is not None else None

    def retrieve_password_hash(self, username: str) -> str | None:
        row = self._session.fetch_one(
            "SELECT password_hash FROM users WHERE username = ?", (username,), context="users.password_hash"
        )
        return row["password_hash"] if row is not None else None

    def retrieve_all(self) -> list[User]:
        rows = self._session.fetch_all(
            "SELECT username, first_name, last_name, gender, user_type FROM users ORDER BY username",
            (),
            context="users.retrieve_all",
        )
        return [_row_to_user(row) for row in rows]

    def is_username_taken(self, username: str) -> bool:
        return self.retrieve(username) is not None

    def verify_credentials(self, username: str, password: str) -> UserType | None:
        row = self._session.fetch_one(
            "SELECT password_hash, user_type FROM users WHERE username = ?", (username,), context="users.credentials"
        )
        if row is None or not check_password(password, row["password_hash"]):
            return None
        return UserType(row["user_type"])

    def update(self, profile: UserProfile) -> None:
        def _update() -> None:
            with self._session.transaction() as cursor:
                if not _user_exists(cursor, profile.username):
                    raise EntityNotFoundError(EntityType.USER.value, profile.username)
                _update_user_row(cursor, profile)

        self._session.run(_update, context="users.update")
        self.notify_observers(DaoOperation.UPDATE, EntityType.USER, profile.username, profile)

    def delete(self, username: str) -> None:
        def _delete() -> None:
            with self._session.transaction() as cursor:
                if not _user_exists(cursor, username):
                    raise EntityNotFoundError(EntityType.USER.value, username)
                _detach_patients(cursor, username)
                # ON DELETE CASCADE arrastra paciente/psicólogo y sus citas.
                cursor.execute("DELETE FROM users WHERE username = ?", (username,))

        self._session.run(_delete, context="users.delete")
        self.notify_observers(DaoOperation.DELETE, EntityType.USER, username)


class PatientDaoSQLite(ObservableDao):
    def __init__(self, session: SqliteSession) -> None:
        super().__init__()
        self._session = session

    def save(self, patient: PatientCreation) -> None:
        def _insert() -> None:
            with self._session.transaction() as cursor:
                if _user_exists(cursor, patient.username):
                    raise DuplicateKeyError(EntityType.PATIENT.value, patient.username)
                _insert_user_row(cursor, patient)
                cursor.execute(
                    "INSERT INTO patients (username, birth_date, psychologist) VALUES (?, ?, ?)",
                    (patient.username, patient.birthday.isoformat(), patient.psychologist or None),
                )

        self._session.run(_insert, context="patients.insert")
        self.notify_observers(DaoOperation.INSERT, EntityType.PATIENT, patient.username, patient)

    def retrieve(self, username: str) -> Patient | None:
        row = self._session.fetch_one(
            f"{PATIENT_SELECT} WHERE p.username = ?", (username,), context="patients.retrieve"
        )
        return _row_to_patient(row) if row is not None else None

    def retrieve_all(self) -> list[Patient]:
        rows = self._session.fetch_all(f"{PATIENT_SELECT} ORDER BY p.username", (), context="patients.retrieve_all")
        return [_row_to_patient(row) for row in rows]

    def retrieve_by_psychologist(self, psychologist_username: str) -> list[Patient]:
        rows = self._session.fetch_all(
            f"{PATIENT_SELECT} WHERE p.psychologist = ? ORDER BY p.username",
            (psychologist_username,),
            context="patients.retrieve_by_psychologist",
        )
        return [_row_to_patient(row) for row in rows]

    def update(self, patient: Patient, profile: UserProfile | None = None) -> None:
        profile = profile or UserProfile.from_patient(patient)

        def _update() -> None:
            with self._session.transaction() as cursor:
                cursor.execute(
                    "UPDATE patients SET birth_date = ?, psychologist = ? WHERE username = ?",
                    (patient.birthday.isoformat(), patient.psychologist or None, patient.username),
                )
                if cursor.rowcount == 0:
                    raise EntityNotFoundError(EntityType.PATIENT.value, patient.username)
                _update_user_row(cursor, profile)

        self._session.run(_update, context="patients.update")
        self.notify_observers(DaoOperation.UPDATE, EntityType.PATIENT, patient.username, patient)

    def delete(self, username: str) -> None:
        def _delete() -> None:
            with self._session.transaction() as cursor:
                row = cursor.execute("SELECT 1 FROM patients WHERE username = ?", (username,)).fetchone()
                if row is None:
                    raise EntityNotFoundError(EntityType.PATIENT.value, username)
                cursor.execute("DELETE FROM users WHERE username = ?", (username,))

        self._session.run(_delete, context="patients.delete")
        self.notify_observers(DaoOperation.DELETE, EntityType.PATIENT, username)


class PsychologistDaoSQLite(ObservableDao):
    def __init__(self, session: SqliteSession) -> None:
        super().__init__()
        self._session = session

    def save(self, psychologist: PsychologistCreation) -> None:
        def _insert() -> None:
            with self._session.transaction() as cursor:
                if _user_exists(cursor, psychologist.username):
                    raise DuplicateKeyError(EntityType.PSYCHOLOGIST.value, psychologist.username)
                _insert_user_row(cursor, psychologist)
                cursor.execute(
                    "INSERT INTO psychologists (username, office, hourly_cost) VALUES (?, ?, ?)",
                    (psychologist.username, psychologist.office, str(psychologist.hourly_cost)),
                )

        self._session.run(_insert, context="psychologists.insert")
        self.notify_observers(DaoOperation.INSERT, EntityType.PSYCHOLOGIST, psychologist.username, psychologist)

    def retrieve(self, username: str) -> Psychologist | None:
        row = self._session.fetch_one(
            f"{PSYCHOLOGIST_SELECT} WHERE s.username = ?", (username,), context="psychologists.retrieve"
        )
        return _row_to_psychologist(row) if row is not None else None

    def retrieve_all(self) -> list[Psychologist]:
        rows = self._session.fetch_all(
            f"{PSYCHOLOGIST_SELECT} ORDER BY s.username", (), context="psychologists.retrieve_all"
        )
        return [_row_to_psychologist(row) for row in rows]

    def update(self, psychologist: Psychologist, profile: UserProfile | None = None) -> None:
        profile = profile or UserProfile.from_psychologist(psychologist)

        def _update() -> None:
            with self._session.transaction() as cursor:
                cursor.execute(
                    "UPDATE psychologists SET office = ?, hourly_cost = ? WHERE username = ?",
                    (psychologist.office, str(psychologist.hourly_cost), psychologist.username),
                )
                if cursor.rowcount == 0:
                    raise EntityNotFoundError(EntityType.PSYCHOLOGIST.value, psychologist.username)
                _update_user_row(cursor, profile)

        self._session.run(_update, context="psychologists.update")
        self.notify_observers(DaoOperation.UPDATE, EntityType.PSYCHOLOGIST, psychologist.username, psychologist)

    def delete(self, username: str) -> None:
        def _delete() -> None:
            with self._session.transaction() as cursor:
                row = cursor.execute("SELECT 1 FROM psychologists WHERE username = ?", (username,)).fetchone()
                if row is None:
                    raise EntityNotFoundError(EntityType.PSYCHOLOGIST.value, username)
                _detach_patients(cursor, username)
                cursor.execute("DELETE FROM users WHERE username = ?", (username,))

        self._session.run(_delete, context="psychologists.delete")
        self.notify_observers(DaoOperation.DELETE, EntityType.PSYCHOLOGIST, username)


class AppointmentDaoSQLite(ObservableDao):
    def __init__(self, session: SqliteSession) -> None:
        super().__init__()
        self._session = session

    def save(self, appointment: Appointment, patient_username: str) -> None:
        def _insert() -> None:
            with self._session.transaction() as cursor:
                if cursor.execute("SELECT 1 FROM appointments WHERE id = ?", (appointment.id,)).fetchone():
                    raise DuplicateKeyError(EntityType.APPOINTMENT.value, appointment.id)
                if not cursor.execute("SELECT 1 FROM patients WHERE username = ?", (patient_username,)).fetchone():
                    raise EntityNotFoundError(EntityType.PATIENT.value, patient_username)
                cursor.execute(
                    """
                    INSERT INTO appointments (id, date, time, description, notified, patient_username)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        appointment.id,
                        appointment.date.isoformat(),
                        appointment.time.isoformat(),
                        appointment.description,
                        1 if appointment.notified else 0,
                        patient_username,
                    ),
                )

        self._session.run(_insert, context="appointments.insert")
        self.notify_observers(
            DaoOperation.INSERT,
            EntityType.APPOINTMENT,
            str(appointment.id),
            AppointmentCreation(appointment, patient_username),
        )

    def retrieve(self, appointment_id: int) -> Appointment | None:
        row = self._session.fetch_one(
            f"{APPOINTMENT_SELECT} WHERE a.id = ?", (appointment_id,), context="appointments.retrieve"
        )
        return _row_to_appointment(row) if row is not None else None

    def retrieve_all(self) -> list[Appointment]:
        rows = self._session.fetch_all(f"{APPOINTMENT_SELECT} ORDER BY a.id", (), context="appointments.retrieve_all")
        return [_row_to_appointment(row) for row in rows]

    def retrieve_by_patient(self, patient_username: str) -> list[Appointment]:
        rows = self._session.fetch_all(
            f"{APPOINTMENT_SELECT} WHERE a.patient_username = ? ORDER BY a.date, a.time, a.id",
            (patient_username,),
            context="appointments.retrieve_by_patient",
        )
        return [_row_to_appointment(row) for row in rows]

    def retrieve_by_psychologist(self, psychologist_username: str) -> list[Appointment]:
        rows = self._session.fetch_all(
            f"""
            {APPOINTMENT_SELECT}
            JOIN patients p ON p.username = a.patient_username
            WHERE p.psychologist = ?
            ORDER BY a.date, a.time, a.id
            """,
            (psychologist_username,),
            context="appointments.retrieve_by_psychologist",
        )
        return [_row_to_appointment(row) for row in rows]

    def retrieve_by_date(self, day: date) -> list[Appointment]:
        rows = self._session.fetch_all(
            f"{APPOINTMENT_SELECT} WHERE a.date = ? ORDER BY a.time, a.id",
            (day.isoformat(),),
            context="appointments.retrieve_by_date",
        )
        return [_row_to_appointment(row) for row in rows]

    def retrieve_unnotified(self, patient_username: str) -> list[Appointment]:
        rows = self._session.fetch_all(
            f"{APPOINTMENT_SELECT} WHERE a.patient_username = ? AND a.notified = 0 ORDER BY a.date, a.time, a.id",
            (patient_username,),
            context="appointments.retrieve_unnotified",
        )
        return [_row_to_appointment(row) for row in rows]

    def update(self, appointment: Appointment) -> None:
        def _update() -> None:
            with self._session.transaction() as cursor:
                cursor.execute(
                    "UPDATE appointments SET date = ?, time = ?, description = ?, notified = ? WHERE id = ?",
                    (
                        appointment.date.isoformat(),
                        appointment.time.isoformat(),
                        appointment.description,
                        1 if appointment.notified else 0,
                        appointment.id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise EntityNotFoundError(EntityType.APPOINTMENT.value, appointment.id)

        self._session.run(_update, context="appointments.update")
        self.notify_observers(DaoOperation.UPDATE, EntityType.APPOINTMENT, str(appointment.id), appointment)

    def update_notification_status(self, appointment_id: int, notified: bool) -> None:
        def _update() -> Appointment:
            with self._session.transaction() as cursor:
                cursor.execute(
                    "UPDATE appointments SET notified = ? WHERE id = ?", (1 if notified else 0, appointment_id)
                )
                if cursor.rowcount == 0:
                    raise EntityNotFoundError(EntityType.APPOINTMENT.value, appointment_id)
                row = cursor.execute(f"{APPOINTMENT_SELECT} WHERE a.id = ?", (appointment_id,)).fetchone()
            return _row_to_appointment(row)

        refreshed = self._session.run(_update, context="appointments.update_notification_status")
        self.notify_observers(DaoOperation.UPDATE, EntityType.APPOINTMENT, str(appointment_id), refreshed)

    def mark_notified(self, appointments: Iterable[Appointment]) -> None:
        for appointment in appointments:
            self.update_notification_status(appointment.id, True)

    def delete(self, appointment_id: int) -> None:
        def _delete() -> None:
            with self._session.transaction() as cursor:
                cursor.execute("DELETE FROM appointments WHERE id = ?", (appointment_id,))
                if cursor.rowcount == 0:
                    raise EntityNotFoundError(EntityType.APPOINTMENT.value, appointment_id)

        self._session.run(_delete, context="appointments.delete")
        self.notify_observers(DaoOperation.DELETE, EntityType.APPOINTMENT, str(appointment_id))

    def exists(self, appointment_id: int) -> bool:
        return self.retrieve(appointment_id) is not None

    def next_id(self) -> int:
        row = self._session.fetch_one(
            "SELECT COALESCE(MAX(id), 0) + 1 AS next_id FROM appointments", (), context="appointments.next_id"
        )
        return int(row["next_id"]) if row is not None else 1


def build_sqlite_daos(connection: sqlite3.Connection) -> DaoSet:
    session = SqliteSession(connection)
    return DaoSet(
        users=UserDaoSQLite(session),
        patients=PatientDaoSQLite(session),
        psychologists=PsychologistDaoSQLite(session),
        appointments=AppointmentDaoSQLite(session),
    )
