from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from typing import Any

from clinic_sync.application.dao_factory import DaoSet
from clinic_sync.application.notifications import DaoOperation, EntityType
from clinic_sync.application.observable_dao import ObservableDao
from clinic_sync.core.errors import DuplicateKeyError, EntityNotFoundError
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

# Hash bcrypt fijo (coste 4) para no pagar gensalt en cada test.
HASH_FIJO = "$2b$04$abcdefghijklmnopqrstuu5Ip4rX3vFvZL1b9cHqC9bT0Y7S0vQ2W"


def crear_psicologo(username: str = "psy1", **overrides: Any) -> PsychologistCreation:
    data: dict[str, Any] = {
        "username": username,
        "password_hash": HASH_FIJO,
        "name": "Ana",
        "surname": "Ruiz",
        "gender": "F",
        "office": "Consulta 1",
        "hourly_cost": Decimal("45.50"),
    }
    data.update(overrides)
    return PsychologistCreation(**data)


def crear_paciente(username: str = "pat1", **overrides: Any) -> PatientCreation:
    data: dict[str, Any] = {
        "username": username,
        "password_hash": HASH_FIJO,
        "name": "Luis",
        "surname": "Pérez",
        "gender": "M",
        "birthday": date(1990, 5, 17),
        "psychologist": "psy1",
    }
    data.update(overrides)
    return PatientCreation(**data)


def crear_cita(appointment_id: int = 1, **overrides: Any) -> Appointment:
    data: dict[str, Any] = {
        "id": appointment_id,
        "date": date(2025, 3, 10),
        "time": time(10, 30),
        "description": "Primera sesión",
        "notified": False,
    }
    data.update(overrides)
    return Appointment(**data)


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, str, Any]] = []

    def on_after_insert(self, entity_type: str, entity_id: str, entity: Any) -> None:
        self.events.append(("INSERT", entity_type, entity_id, entity))

    def on_after_update(self, entity_type: str, entity_id: str, entity: Any) -> None:
        self.events.append(("UPDATE", entity_type, entity_id, entity))

    def on_after_delete(self, entity_type: str, entity_id: str) -> None:
        self.events.append(("DELETE", entity_type, entity_id, None))


class _FakeDao(ObservableDao):
    """DAO en memoria que cuenta escrituras y notifica como uno real."""

    entity_type: EntityType

    def __init__(self, store: "FakeStore") -> None:
        super().__init__()
        self._store = store
        self.calls: list[tuple[str, Any]] = []

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self._store.fail_on == (type(self).__name__, name):
            raise RuntimeError(f"{name} failed on purpose")

    def writes(self, name: str | None = None) -> int:
        return len([call for call in self.calls if name is None or call[0] == name])


class FakeUserDao(_FakeDao):
    def save(self, user: UserCreation) -> None:
        self._record("save", user)
        if user.username in self._store.users:
            raise DuplicateKeyError("User", user.username)
        self._store.users[user.username] = (user.to_model(), user.password_hash)
        self.notify_observers(DaoOperation.INSERT, EntityType.USER, user.username, user)

    def retrieve(self, username: str) -> User | None:
        entry = self._store.users.get(username)
        return entry[0] if entry else None

    def retrieve_password_hash(self, username: str) -> str | None:
        entry = self._store.users.get(username)
        return entry[1] if entry else None

    def retrieve_all(self) -> list[User]:
        return [entry[0] for entry in self._store.users.values()]

    def is_username_taken(self, username: str) -> bool:
        return username in self._store.users

    def verify_credentials(self, username: str, password: str) -> UserType | None:
        return None

    def update(self, profile: UserProfile) -> None:
        self._record("update", profile)
        if profile.username not in self._store.users:
            raise EntityNotFoundError("User", profile.username)
        previous_hash = self._store.users[profile.username][1]
        user = User(profile.username, profile.name, profile.surname, profile.gender, profile.user_type)
        self._store.users[profile.username] = (user, profile.password_hash or previous_hash)
        self.notify_observers(DaoOperation.UPDATE, EntityType.USER, profile.username, profile)

    def delete(self, username: str) -> None:
        self._record("delete", username)
        if self._store.users.pop(username, None) is None:
            raise EntityNotFoundError("User", username)
        self._store.patients.pop(username, None)
        self._store.psychologists.pop(username, None)
        self.notify_observers(DaoOperation.DELETE, EntityType.USER, username)


class FakePatientDao(_FakeDao):
    def save(self, patient: PatientCreation) -> None:
        self._record("save", patient)
        if patient.username in self._store.patients:
            raise DuplicateKeyError("Patient", patient.username)
        self._store.patients[patient.username] = patient.to_model()
        self._store.users[patient.username] = (
            User(patient.username, patient.name, patient.surname, patient.gender, UserType.PATIENT),
            patient.password_hash,
        )
        self.notify_observers(DaoOperation.INSERT, EntityType.PATIENT, patient.username, patient)

    def retrieve(self, username: str) -> Patient | None:
        return self._store.patients.get(username)

    def retrieve_all(self) -> list[Patient]:
        return list(self._store.patients.values())

    def retrieve_by_psychologist(self, psychologist_username: str) -> list[Patient]:
        return [item for item in self._store.patients.values() if item.psychologist == psychologist_username]

    def update(self, patient: Patient, profile: UserProfile | None = None) -> None:
        self._record("update", patient, profile)
        if patient.username not in self._store.patients:
            raise EntityNotFoundError("Patient", patient.username)
        self._store.patients[patient.username] = patient
        if profile is not None and profile.password_hash is not None:
            user = self._store.users[patient.username][0]
            self._store.users[patient.username] = (user, profile.password_hash)
        self.notify_observers(DaoOperation.UPDATE, EntityType.PATIENT, patient.username, patient)

    def delete(self, username: str) -> None:
        self._record("delete", username)
        if self._store.patients.pop(username, None) is None:
            raise EntityNotFoundError("Patient", username)
        self._store.users.pop(username, None)
        for key in [key for key, owner in self._store.appointment_owner.items() if owner == username]:
            self._store.appointments.pop(key, None)
            self._store.appointment_owner.pop(key, None)
        self.notify_observers(DaoOperation.DELETE, EntityType.PATIENT, username)


class FakePsychologistDao(_FakeDao):
    def save(self, psychologist: PsychologistCreation) -> None:
        self._record("save", psychologist)
        if psychologist.username in self._store.psychologists:
            raise DuplicateKeyError("Psychologist", psychologist.username)
        self._store.psychologists[psychologist.username] = psychologist.to_model()
        self._store.users[psychologist.username] = (
            User(
                psychologist.username,
                psychologist.name,
                psychologist.surname,
                psychologist.gender,
                UserType.PSYCHOLOGIST,
            ),
            psychologist.password_hash,
        )
        self.notify_observers(DaoOperation.INSERT, EntityType.PSYCHOLOGIST, psychologist.username, psychologist)

    def retrieve(self, username: str) -> Psychologist | None:
        return self._store.psychologists.get(username)

    def retrieve_all(self) -> list[Psychologist]:
        return list(self._store.psychologists.values())

    def update(self, psychologist: Psychologist, profile: UserProfile | None = None) -> None:
        self._record("update", psychologist, profile)
        if psychologist.username not in self._store.psychologists:
            raise EntityNotFoundError("Psychologist", psychologist.username)
        self._store.psychologists[psychologist.username] = psychologist
        self.notify_observers(DaoOperation.UPDATE, EntityType.PSYCHOLOGIST, psychologist.username, psychologist)

    def delete(self, username: str) -> None:
        self._record("delete", username)
        if self._store.psychologists.pop(username, None) is None:
            raise EntityNotFoundError("Psychologist", username)
        self._store.users.pop(username, None)
        self.notify_observers(DaoOperation.DELETE, EntityType.PSYCHOLOGIST, username)


class FakeAppointmentDao(_FakeDao):
    def save(self, appointment: Appointment, patient_username: str) -> None:
        self._record("save", appointment, patient_username)
        if appointment.id in self._store.appointments:
            raise DuplicateKeyError("Appointment", appointment.id)
        if patient_username not in self._store.patients:
            raise EntityNotFoundError("Patient", patient_username)
        self._store.appointments[appointment.id] = appointment
        self._store.appointment_owner[appointment.id] = patient_username
        self.notify_observers(
            DaoOperation.INSERT,
            EntityType.APPOINTMENT,
            str(appointment.id),
            AppointmentCreation(appointment, patient_username),
        )

    def retrieve(self, appointment_id: int) -> Appointment | None:
        return self._store.appointments.get(appointment_id)

    def retrieve_all(self) -> list[Appointment]:
        return list(self._store.appointments.values())

    def retrieve_by_patient(self, patient_username: str) -> list[Appointment]:
        return [
            appointment
            for key, appointment in self._store.appointments.items()
            if self._store.appointment_owner.get(key) == patient_username
        ]

    def update(self, appointment: Appointment) -> None:
        self._record("update", appointment)
        if appointment.id not in self._store.appointments:
            raise EntityNotFoundError("Appointment", appointment.id)
        self._store.appointments[appointment.id] = appointment
        self.notify_observers(DaoOperation.UPDATE, EntityType.APPOINTMENT, str(appointment.id), appointment)

    def delete(self, appointment_id: int) -> None:
        self._record("delete", appointment_id)
        if self._store.appointments.pop(appointment_id, None) is None:
            raise EntityNotFoundError("Appointment", appointment_id)
        self._store.appointment_owner.pop(appointment_id, None)
        self.notify_observers(DaoOperation.DELETE, EntityType.APPOINTMENT, str(appointment_id))


class FakeStore:
    def __init__(self) -> None:
        self.users: dict[str, tuple[User, str]] = {}
        self.patients: dict[str, Patient] = {}
        self.psychologists: dict[str, Psychologist] = {}
        self.appointments: dict[int, Appointment] = {}
        self.appointment_owner: dict[int, str] = {}
        self.fail_on: tuple[str, str] | None = None
        self.daos = DaoSet(
            users=FakeUserDao(self),
            patients=FakePatientDao(self),
            psychologists=FakePsychologistDao(self),
            appointments=FakeAppointmentDao(self),
        )

    def total_writes(self) -> int:
        return sum(dao.writes() for dao in self.daos.observables())


