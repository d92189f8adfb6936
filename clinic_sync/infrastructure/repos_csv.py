from __future__ import annotations

import logging
from datetime import date, time
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable

from clinic_sync.application.dao_factory import DaoSet
from clinic_sync.application.notifications import DaoOperation, EntityType
from clinic_sync.application.observable_dao import ObservableDao
from clinic_sync.core.errors import DuplicateKeyError, EntityNotFoundError
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
from clinic_sync.infrastructure.csv_tables import CsvDatabase, Row

logger = logging.getLogger(__name__)


def _bool_to_text(value: bool) -> str:
    return "true" if value else "false"


def _bool_from_text(value: str) -> bool:
    return value.strip().lower() in {"true", "1", "yes"}


def _user_row(user: UserCreation | PatientCreation | PsychologistCreation) -> Row:
    return {
        "username": user.username,
        "password_hash": user.password_hash,
        "first_name": user.name,
        "last_name": user.surname,
        "user_type": user.user_type.value,
        "gender": user.gender,
    }


def _apply_profile(row: Row, profile: UserProfile) -> Row:
    updated = dict(row)
    updated.update(
        first_name=profile.name,
        last_name=profile.surname,
        gender=profile.gender,
        user_type=profile.user_type.value,
    )
    if profile.password_hash is not None:
        updated["password_hash"] = profile.password_hash
    return updated


def _row_to_user(row: Row) -> User:
    return User(
        username=row["username"],
        name=row["first_name"],
        surname=row["last_name"],
        gender=row["gender"],
        user_type=UserType(row["user_type"]),
    )


def _row_to_patient(user_row: Row, patient_row: Row) -> Patient:
    return Patient(
        username=patient_row["username"],
        name=user_row["first_name"],
        surname=user_row["last_name"],
        gender=user_row["gender"],
        birthday=date.fromisoformat(patient_row["birth_date"]),
        psychologist=patient_row["psychologist"] or None,
    )


def _row_to_psychologist(user_row: Row, psychologist_row: Row) -> Psychologist:
    return Psychologist(
        username=psychologist_row["username"],
        name=user_row["first_name"],
        surname=user_row["last_name"],
        gender=user_row["gender"],
        office=psychologist_row["office"],
        hourly_cost=Decimal(psychologist_row["hourly_cost"] or "0"),
    )


def _appointment_row(appointment: Appointment, patient_username: str) -> Row:
    return {
        "id": str(appointment.id),
        "date": appointment.date.isoformat(),
        "time": appointment.time.isoformat(),
        "description": appointment.description,
        "notified": _bool_to_text(appointment.notified),
        "patient_username": patient_username,
    }


def _row_to_appointment(row: Row) -> Appointment:
    return Appointment(
        id=int(row["id"]),
        date=date.fromisoformat(row["date"]),
        time=time.fromisoformat(row["time"]),
        description=row["description"],
        notified=_bool_from_text(row["notified"]),
    )


def _appointment_sort_key(row: Row) -> tuple[str, str, int]:
    return (row["date"], row["time"], int(row["id"]))


def _remove_user_cascade(database: CsvDatabase, username: str) -> None:
    """Equivalente al ``ON DELETE CASCADE`` del almacén relacional."""
    database.users.write_rows(row for row in database.users.read_rows() if row["username"] != username)
    database.patients.write_rows(row for row in database.patients.read_rows() if row["username"] != username)
    database.psychologists.write_rows(
        row for row in database.psychologists.read_rows() if row["username"] != username
    )
    database.appointments.write_rows(
        row for row in database.appointments.read_rows() if row["patient_username"] != username
    )


def _detach_patients(database: CsvDatabase, psychologist_username: str) -> None:
    rows = database.patients.read_rows()
    if not any(row["psychologist"] == psychologist_username for row in rows):
        return
    detached = 0
    for row in rows:
        if row["psychologist"] == psychologist_username:
            row["psychologist"] = ""
            detached += 1
    database.patients.write_rows(rows)
    logger.info(
        "csv_patients_detached",
        extra={"extra": {"psychologist": psychologist_username, "patients": detached}},
    )


def _user_rows_by_username(database: CsvDatabase) -> dict[str, Row]:
    return {row["username"]: row for row in database.users.read_rows()}


class UserDaoCsv(ObservableDao):
    def __init__(self, database: CsvDatabase) -> None:
        super().__init__()
        self._db = database

    def save(self, user: UserCreation) -> None:
        def _insert() -> None:
            if user.username in _user_rows_by_username(self._db):
                raise DuplicateKeyError(EntityType.USER.value, user.username)
            self._db.users.append_row(_user_row(user))

        self._db.run(_insert, context="users.insert")
        self.notify_observers(DaoOperation.INSERT, EntityType.USER, user.username, user)

    def _find_row(self, username: str) -> Row | None:
        return self._db.run(lambda: _user_rows_by_username(self._db).get(username), context="users.retrieve")

    def retrieve(self, username: str) -> User | None:
        row = self._find_row(username)
        return _row_to_user(row) if row is not None else None

    def retrieve_password_hash(self, username: str) -> str | None:
        row = self._find_row(username)
        return row["password_hash"] if row is not None else None

    def retrieve_all(self) -> list[User]:
        rows = self._db.run(self._db.users.read_rows, context="users.retrieve_all")
        return [_row_to_user(row) for row in sorted(rows, key=lambda item: item["username"])]

    def is_username_taken(self, username: str) -> bool:
        return self._find_row(username) is not None

    def verify_credentials(self, username: str, password: str) -> UserType | None:
        row = self._find_row(username)
        if row is None or not check_password(password, row["password_hash"]):
            return None
        return UserType(row["user_type"])

    def update(self, profile: UserProfile) -> None:
        def _update() -> None:
            rows = self._db.users.read_rows()
            index = next((i for i, row in enumerate(rows) if row["username"] == profile.username), None)
            if index is None:
                raise EntityNotFoundError(EntityType.USER.value, profile.username)
            rows[index] = _apply_profile(rows[index], profile)
            self._db.users.write_rows(rows)

        self._db.run(_update, context="users.update")
        self.notify_observers(DaoOperation.UPDATE, EntityType.USER, profile.username, profile)

    def delete(self, username: str) -> None:
        def _delete() -> None:
            if username not in _user_rows_by_username(self._db):
                raise EntityNotFoundError(EntityType.USER.value, username)
            _detach_patients(self._db, username)
            _remove_user_cascade(self._db, username)

        self._db.run(_delete, context="users.delete", tables=self._db.tables())
        self.notify_observers(DaoOperation.DELETE, EntityType.USER, username)


class PatientDaoCsv(ObservableDao):
    def __init__(self, database: CsvDatabase) -> None:
        super().__init__()
        self._db = database

    def save(self, patient: PatientCreation) -> None:
        def _insert() -> None:
            if patient.username in _user_rows_by_username(self._db):
                raise DuplicateKeyError(EntityType.PATIENT.value, patient.username)
            self._db.users.append_row(_user_row(patient))
            self._db.patients.append_row(
                {
                    "username": patient.username,
                    "birth_date": patient.birthday.isoformat(),
                    "psychologist": patient.psychologist or "",
                }
            )

        self._db.run(_insert, context="patients.insert", tables=(self._db.users, self._db.patients))
        self.notify_observers(DaoOperation.INSERT, EntityType.PATIENT, patient.username, patient)

    def _load(self) -> list[Patient]:
        users = _user_rows_by_username(self._db)
        patients = [
            _row_to_patient(users[row["username"]], row)
            for row in self._db.patients.read_rows()
            if row["username"] in users
        ]
        return sorted(patients, key=lambda item: item.username)

    def retrieve(self, username: str) -> Patient | None:
        patients = self._db.run(self._load, context="patients.retrieve")
        return next((patient for patient in patients if patient.username == username), None)

    def retrieve_all(self) -> list[Patient]:
        return self._db.run(self._load, context="patients.retrieve_all")

    def retrieve_by_psychologist(self, psychologist_username: str) -> list[Patient]:
        patients = self._db.run(self._load, context="patients.retrieve_by_psychologist")
        return [patient for patient in patients if patient.psychologist == psychologist_username]

    def update(self, patient: Patient, profile: UserProfile | None = None) -> None:
        profile = profile or UserProfile.from_patient(patient)

        def _update() -> None:
            patient_rows = self._db.patients.read_rows()
            index = next((i for i, row in enumerate(patient_rows) if row["username"] == patient.username), None)
            if index is None:
                raise EntityNotFoundError(EntityType.PATIENT.value, patient.username)
            patient_rows[index] = {
                "username": patient.username,
                "birth_date": patient.birthday.isoformat(),
                "psychologist": patient.psychologist or "",
            }
            user_rows = [
                _apply_profile(row, profile) if row["username"] == patient.username else row
                for row in self._db.users.read_rows()
            ]
            self._db.patients.write_rows(patient_rows)
            self._db.users.write_rows(user_rows)

        self._db.run(_update, context="patients.update", tables=(self._db.users, self._db.patients))
        self.notify_observers(DaoOperation.UPDATE, EntityType.PATIENT, patient.username, patient)

    def delete(self, username: str) -> None:
        def _delete() -> None:
            if not any(row["username"] == username for row in self._db.patients.read_rows()):
                raise EntityNotFoundError(EntityType.PATIENT.value, username)
            _remove_user_cascade(self._db, username)

        self._db.run(_delete, context="patients.delete", tables=self._db.tables())
        self.notify_observers(DaoOperation.DELETE, EntityType.PATIENT, username)


class PsychologistDaoCsv(ObservableDao):
    def __init__(self, database: CsvDatabase) -> None:
        super().__init__()
        self._db = database

    def save(self, psychologist: PsychologistCreation) -> None:
        def _insert() -> None:
            if psychologist.username in _user_rows_by_username(self._db):
                raise DuplicateKeyError(EntityType.PSYCHOLOGIST.value, psychologist.username)
            self._db.users.append_row(_user_row(psychologist))
            self._db.psychologists.append_row(
                {
                    "username": psychologist.username,
                    "office": psychologist.office,
                    "hourly_cost": str(psychologist.hourly_cost),
                }
            )

        self._db.run(
            _insert, context="psychologists.insert", tables=(self._db.users, self._db.psychologists)
        )
        self.notify_observers(DaoOperation.INSERT, EntityType.PSYCHOLOGIST, psychologist.username, psychologist)

    def _load(self) -> list[Psychologist]:
        users = _user_rows_by_username(self._db)
        psychologists = [
            _row_to_psychologist(users[row["username"]], row)
            for row in self._db.psychologists.read_rows()
            if row["username"] in users
        ]
        return sorted(psychologists, key=lambda item: item.username)

    def retrieve(self, username: str) -> Psychologist | None:
        psychologists = self._db.run(self._load, context="psychologists.retrieve")
        return next((item for item in psychologists if item.username == username), None)

    def retrieve_all(self) -> list[Psychologist]:
        return self._db.run(self._load, context="psychologists.retrieve_all")

    def update(self, psychologist: Psychologist, profile: UserProfile | None = None) -> None:
        profile = profile or UserProfile.from_psychologist(psychologist)

        def _update() -> None:
            rows = self._db.psychologists.read_rows()
            index = next((i for i, row in enumerate(rows) if row["username"] == psychologist.username), None)
            if index is None:
                raise EntityNotFoundError(EntityType.PSYCHOLOGIST.value, psychologist.username)
            rows[index] = {
                "username": psychologist.username,
                "office": psychologist.office,
                "hourly_cost": str(psychologist.hourly_cost),
            }
            user_rows = [
                _apply_profile(row, profile) if row["username"] == psychologist.username else row
                for row in self._db.users.read_rows()
            ]
            self._db.psychologists.write_rows(rows)
            self._db.users.write_rows(user_rows)

        self._db.run(
            _update, context="psychologists.update", tables=(self._db.users, self._db.psychologists)
        )
        self.notify_observers(DaoOperation.UPDATE, EntityType.PSYCHOLOGIST, psychologist.username, psychologist)

    def delete(self, username: str) -> None:
        def _delete() -> None:
            if not any(row["username"] == username for row in self._db.psychologists.read_rows()):
                raise EntityNotFoundError(EntityType.PSYCHOLOGIST.value, username)
            _detach_patients(self._db, username)
            _remove_user_cascade(self._db, username)

        self._db.run(_delete, context="psychologists.delete", tables=self._db.tables())
        self.notify_observers(DaoOperation.DELETE, EntityType.PSYCHOLOGIST, username)


class AppointmentDaoCsv(ObservableDao):
    def __init__(self, database: CsvDatabase) -> None:
        super().__init__()
        self._db = database

    def save(self, appointment: Appointment, patient_username: str) -> None:
        def _insert() -> None:
            if any(int(row["id"]) == appointment.id for row in self._db.appointments.read_rows()):
                raise DuplicateKeyError(EntityType.APPOINTMENT.value, appointment.id)
            if not any(row["username"] == patient_username for row in self._db.patients.read_rows()):
                raise EntityNotFoundError(EntityType.PATIENT.value, patient_username)
            self._db.appointments.append_row(_appointment_row(appointment, patient_username))

        self._db.run(_insert, context="appointments.insert")
        self.notify_observers(
            DaoOperation.INSERT,
            EntityType.APPOINTMENT,
            str(appointment.id),
            AppointmentCreation(appointment, patient_username),
        )

    def _select(self, context: str, predicate: Callable[[Row], bool] = lambda row: True) -> list[Appointment]:
        rows = self._db.run(self._db.appointments.read_rows, context=context)
        return [_row_to_appointment(row) for row in sorted(rows, key=_appointment_sort_key) if predicate(row)]

    def retrieve(self, appointment_id: int) -> Appointment | None:
        matches = self._select("appointments.retrieve", lambda row: int(row["id"]) == appointment_id)
        return matches[0] if matches else None

    def retrieve_all(self) -> list[Appointment]:
        return sorted(self._select("appointments.retrieve_all"), key=lambda item: item.id)

    def retrieve_by_patient(self, patient_username: str) -> list[Appointment]:
        return self._select("appointments.retrieve_by_patient", lambda row: row["patient_username"] == patient_username)

    def retrieve_by_psychologist(self, psychologist_username: str) -> list[Appointment]:
        patients = self._db.run(self._db.patients.read_rows, context="appointments.retrieve_by_psychologist")
        owned = {row["username"] for row in patients if row["psychologist"] == psychologist_username}
        return self._select("appointments.retrieve_by_psychologist", lambda row: row["patient_username"] in owned)

    def retrieve_by_date(self, day: date) -> list[Appointment]:
        return self._select("appointments.retrieve_by_date", lambda row: row["date"] == day.isoformat())

    def retrieve_unnotified(self, patient_username: str) -> list[Appointment]:
        return self._select(
            "appointments.retrieve_unnotified",
            lambda row: row["patient_username"] == patient_username and not _bool_from_text(row["notified"]),
        )

    def _replace(self, appointment_id: int, change: Callable[[Row], Row]) -> Appointment:
        rows = self._db.appointments.read_rows()
        index = next((i for i, row in enumerate(rows) if int(row["id"]) == appointment_id), None)
        if index is None:
            raise EntityNotFoundError(EntityType.APPOINTMENT.value, appointment_id)
        rows[index] = change(rows[index])
        self._db.appointments.write_rows(rows)
        return _row_to_appointment(rows[index])

    def update(self, appointment: Appointment) -> None:
        self._db.run(
            lambda: self._replace(
                appointment.id, lambda row: _appointment_row(appointment, row["patient_username"])
            ),
            context="appointments.update",
        )
        self.notify_observers(DaoOperation.UPDATE, EntityType.APPOINTMENT, str(appointment.id), appointment)

    def update_notification_status(self, appointment_id: int, notified: bool) -> None:
        refreshed = self._db.run(
            lambda: self._replace(appointment_id, lambda row: {**row, "notified": _bool_to_text(notified)}),
            context="appointments.update_notification_status",
        )
        self.notify_observers(DaoOperation.UPDATE, EntityType.APPOINTMENT, str(appointment_id), refreshed)

    def mark_notified(self, appointments: Iterable[Appointment]) -> None:
        for appointment in appointments:
            self.update_notification_status(appointment.id, True)

    def delete(self, appointment_id: int) -> None:
        def _delete() -> None:
            rows = self._db.appointments.read_rows()
            remaining = [row for row in rows if int(row["id"]) != appointment_id]
            if len(remaining) == len(rows):
                raise EntityNotFoundError(EntityType.APPOINTMENT.value, appointment_id)
            self._db.appointments.write_rows(remaining)

        self._db.run(_delete, context="appointments.delete")
        self.notify_observers(DaoOperation.DELETE, EntityType.APPOINTMENT, str(appointment_id))

    def exists(self, appointment_id: int) -> bool:
        return self.retrieve(appointment_id) is not None

    def next_id(self) -> int:
        rows = self._db.run(self._db.appointments.read_rows, context="appointments.next_id")
        return max((int(row["id"]) for row in rows), default=0) + 1


def build_csv_daos(base_dir: Path) -> DaoSet:
    database = CsvDatabase(base_dir)
    database.initialize()
    return DaoSet(
        users=UserDaoCsv(database),
        patients=PatientDaoCsv(database),
        psychologists=PsychologistDaoCsv(database),
        appointments=AppointmentDaoCsv(database),
    )
