from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal
from enum import Enum
from typing import Optional


class PersistenceType(str, Enum):
    """Los dos almacenes intercambiables sobre los que puede correr la aplicación."""

    FILE = "file"
    RELATIONAL = "relational"

    def opposite(self) -> "PersistenceType":
        return PersistenceType.RELATIONAL if self is PersistenceType.FILE else PersistenceType.FILE

    @classmethod
    def parse(cls, value: str | "PersistenceType") -> "PersistenceType":
        if isinstance(value, PersistenceType):
            return value
        normalized = str(value).strip().lower()
        aliases = {"csv": cls.FILE, "sqlite": cls.RELATIONAL, "sql": cls.RELATIONAL, "mysql": cls.RELATIONAL}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class UserType(str, Enum):
    PATIENT = "PATIENT"
    PSYCHOLOGIST = "PSYCHOLOGIST"


@dataclass(frozen=True, eq=False)
class User:
    """Usuario identificado únicamente por ``username``.

    La igualdad es deliberadamente estrecha (sólo clave natural); para comparar
    el contenido de dos registros se usa ``domain.equivalence``.
    """

    username: str
    name: str
    surname: str
    gender: str
    user_type: UserType

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, User):
            return NotImplemented
        return self.username == other.username

    def __hash__(self) -> int:
        return hash(self.username)


@dataclass(frozen=True, eq=False)
class Patient:
    username: str
    name: str
    surname: str
    gender: str
    birthday: date
    psychologist: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Patient):
            return NotImplemented
        return self.username == other.username

    def __hash__(self) -> int:
        return hash(self.username)


@dataclass(frozen=True, eq=False)
class Psychologist:
    username: str
    name: str
    surname: str
    gender: str
    office: str
    hourly_cost: Decimal

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Psychologist):
            return NotImplemented
        return self.username == other.username

    def __hash__(self) -> int:
        return hash(self.username)


@dataclass(frozen=True, eq=False)
class Appointment:
    """Cita identificada por su id entero; pertenece siempre a un paciente."""

    id: int
    date: date
    time: time
    description: str
    notified: bool = False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Appointment):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)


@dataclass(frozen=True)
class UserCreation:
    """Payload de alta completo, secreto incluido (siempre ya hasheado)."""

    username: str
    password_hash: str = field(repr=False)
    name: str
    surname: str
    gender: str
    user_type: UserType

    def to_model(self) -> User:
        return User(self.username, self.name, self.surname, self.gender, self.user_type)


@dataclass(frozen=True)
class PatientCreation:
    username: str
    password_hash: str = field(repr=False)
    name: str
    surname: str
    gender: str
    birthday: date
    psychologist: Optional[str] = None

    @property
    def user_type(self) -> UserType:
        return UserType.PATIENT

    @classmethod
    def from_model(cls, patient: Patient, password_hash: str) -> "PatientCreation":
        return cls(
            username=patient.username,
            password_hash=password_hash,
            name=patient.name,
            surname=patient.surname,
            gender=patient.gender,
            birthday=patient.birthday,
            psychologist=patient.psychologist,
        )

    def to_model(self) -> Patient:
        return Patient(
            username=self.username,
            name=self.name,
            surname=self.surname,
            gender=self.gender,
            birthday=self.birthday,
            psychologist=self.psychologist,
        )


@dataclass(frozen=True)
class PsychologistCreation:
    username: str
    password_hash: str = field(repr=False)
    name: str
    surname: str
    gender: str
    office: str
    hourly_cost: Decimal

    @property
    def user_type(self) -> UserType:
        return UserType.PSYCHOLOGIST

    @classmethod
    def from_model(cls, psychologist: Psychologist, password_hash: str) -> "PsychologistCreation":
        return cls(
            username=psychologist.username,
            password_hash=password_hash,
            name=psychologist.name,
            surname=psychologist.surname,
            gender=psychologist.gender,
            office=psychologist.office,
            hourly_cost=psychologist.hourly_cost,
        )

    def to_model(self) -> Psychologist:
        return Psychologist(
            username=self.username,
            name=self.name,
            surname=self.surname,
            gender=self.gender,
            office=self.office,
            hourly_cost=self.hourly_cost,
        )


@dataclass(frozen=True)
class AppointmentCreation:
    """Una cita no se puede replicar sin saber a qué paciente pertenece."""

    appointment: Appointment
    patient_username: str


@dataclass(frozen=True)
class UserProfile:
    """Perfil actualizable de un usuario.

    ``password_hash=None`` significa "conservar el hash almacenado". Un cambio
    de contraseña viaja ya hasheado y la réplica lo guarda tal cual; nunca se
    transporta la contraseña en claro.
    """

    username: str
    name: str
    surname: str
    gender: str
    user_type: UserType
    password_hash: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_patient(cls, patient: Patient, password_hash: str | None = None) -> "UserProfile":
        return cls(patient.username, patient.name, patient.surname, patient.gender, UserType.PATIENT, password_hash)

    @classmethod
    def from_psychologist(cls, psychologist: Psychologist, password_hash: str | None = None) -> "UserProfile":
        return cls(
            psychologist.username,
            psychologist.name,
            psychologist.surname,
            psychologist.gender,
            UserType.PSYCHOLOGIST,
            password_hash,
        )

    @classmethod
    def from_user(cls, user: User, password_hash: str | None = None) -> "UserProfile":
        return cls(user.username, user.name, user.surname, user.gender, user.user_type, password_hash)


@dataclass(frozen=True)
class StoreConfig:
    primary: PersistenceType = PersistenceType.RELATIONAL
    sync_enabled: bool = True
    csv_dir: str = ""
    db_path: str = ""
