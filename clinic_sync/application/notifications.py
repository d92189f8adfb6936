from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class DaoOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    """Conjunto cerrado de entidades sincronizables."""

    USER = "User"
    PATIENT = "Patient"
    PSYCHOLOGIST = "Psychologist"
    APPOINTMENT = "Appointment"

    @classmethod
    def resolve(cls, tag: "str | EntityType") -> "EntityType | None":
        if isinstance(tag, EntityType):
            return tag
        try:
            return cls(tag)
        except ValueError:
            return None


@dataclass(frozen=True)
class DaoNotification:
    """Registro (operación, entidad, id, payload) emitido tras cada escritura local.

    INSERT lleva el payload de creación, UPDATE la instantánea del modelo y
    DELETE sólo la clave (``payload`` es ``None``).
    """

    operation: DaoOperation
    entity_type: str
    entity_id: str
    payload: Any = None

    def __post_init__(self) -> None:
        if self.operation is DaoOperation.DELETE and self.payload is not None:
            raise ValueError("DELETE notifications carry only the entity key")


def entity_tag(entity_type: "str | EntityType") -> str:
    """Etiqueta textual estable (``str()`` de un Enum mixto incluye el nombre de la clase)."""
    if isinstance(entity_type, EntityType):
        return entity_type.value
    return str(entity_type)
