from __future__ import annotations

from datetime import date
from typing import Any, Iterable, Protocol

from clinic_sync.domain.models import (
    Appointment,
    Patient,
    PatientCreation,
    Psychologist,
    PsychologistCreation,
    User,
    UserCreation,
    UserProfile,
    UserType,
)


class DaoObserver(Protocol):
    def on_after_insert(self, entity_type: str, entity_id: str, entity: Any) -> None:
        ...

    def on_after_update(self, entity_type: str, entity_id: str, entity: Any) -> None:
        ...

    def on_after_delete(self, entity_type: str, entity_id: str) -> None:
        ...


class ObservableDaoPort(Protocol):
    def add_observer(self, observer: DaoObserver) -> None:
        ...

    def remove_observer(self, observer: DaoObserver) -> None:
        ...

    def notify_observers(self, operation: Any, entity_type: str, entity_id: str, entity: Any) -> None:
        ...


class UserDao(ObservableDaoPort, Protocol):
    def save(self, user: UserCreation) -> None:
        ...

    def retrieve(self, username: str) -> User | None:
        ...

    def retrieve_password_hash(self, username: str) -> str | None:
        ...

    def retrieve_all(self) -> list[User]:
        ...

    def is_username_taken(self, username: str) -> bool:
        ...

    def verify_credentials(self, username: str, password: str) -> UserType | None:
        ...

    def update(self, profile: UserProfile) -> None:
        ...

    def delete(self, username: str) -> None:
        ...


class PatientDao(ObservableDaoPort, Protocol):
    def save(self, patient: PatientCreation) -> None:
        ...

    def retrieve(self, username: str) -> Patient | None:
        ...

    def retrieve_all(self) -> list[Patient]:
        ...

    def retrieve_by_psychologist(self, psychologist_username: str) -> list[Patient]:
        ...

    def update(self, patient: Patient, profile: UserProfile | None = None) -> None:
        ...

    def delete(self, username: str) -> None:
        ...


class PsychologistDao(ObservableDaoPort, Protocol):
    def save(self, psychologist: PsychologistCreation) -> None:
        ...

    def retrieve(self, username: str) -> Psychologist | None:
        ...

    def retrieve_all(self) -> list[Psychologist]:
        ...

    def update(self, psychologist: Psychologist, profile: UserProfile | None = None) -> None:
        ...

    def delete(self, username: str) -> None:
        ...


class AppointmentDao(ObservableDaoPort, Protocol):
    def save(self, appointment: Appointment, patient_username: str) -> None:
        ...

    def retrieve(self, appointment_id: int) -> Appointment | None:
        ...

    def retrieve_all(self) -> list[Appointment]:
        ...

    def retrieve_by_patient(self, patient_username: str) -> list[Appointment]:
        ...

    def retrieve_by_psychologist(self, psychologist_username: str) -> list[Appointment]:
        ...

    def retrieve_by_date(self, day: date) -> list[Appointment]:
        ...

    def retrieve_unnotified(self, patient_username: str) -> list[Appointment]:
        ...

    def update(self, appointment: Appointment) -> None:
        ...

    def update_notification_status(self, appointment_id: int, notified: bool) -> None:
        ...

    def mark_notified(self, appointments: Iterable[Appointment]) -> None:
        ...

    def delete(self, appointment_id: int) -> None:
        ...

    def exists(self, appointment_id: int) -> bool:
        ...

    def next_id(self) -> int:
        ...
