"""Equivalencia de datos entre registros con la misma clave natural.

Es un predicado distinto de ``__eq__``: la identidad de las entidades sólo
mira la clave, mientras que la reconciliación necesita saber si TODOS los
campos no clave coinciden para decidir si hay que sobrescribir.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from clinic_sync.domain.models import Appointment, Patient, Psychologist, User


def _text(value: str | None) -> str:
    return (value or "").strip()


def _same_amount(left: Any, right: Any) -> bool:
    try:
        return Decimal(str(left)) == Decimal(str(right))
    except (InvalidOperation, ValueError):
        return str(left) == str(right)


def users_equivalent(left: User, right: User) -> bool:
    return (
        left.username == right.username
        and left.name == right.name
        and left.surname == right.surname
        and left.gender == right.gender
        and left.user_type == right.user_type
    )


def patients_equivalent(left: Patient, right: Patient) -> bool:
    # Psicólogo vacío y ausente son lo mismo: el CSV no distingue None de "".
    return (
        left.username == right.username
        and left.name == right.name
        and left.surname == right.surname
        and left.gender == right.gender
        and _text(left.psychologist) == _text(right.psychologist)
        and left.birthday == right.birthday
    )


def psychologists_equivalent(left: Psychologist, right: Psychologist) -> bool:
    return (
        left.username == right.username
        and left.name == right.name
        and left.surname == right.surname
        and left.gender == right.gender
        and _text(left.office) == _text(right.office)
        and _same_amount(left.hourly_cost, right.hourly_cost)
    )


def appointments_equivalent(left: Appointment, right: Appointment) -> bool:
    return (
        left.id == right.id
        and left.date == right.date
        and left.time == right.time
        and left.description == right.description
        and left.notified == right.notified
    )


def is_data_equivalent(left: object, right: object) -> bool:
    """Despacho genérico; registros de tipos distintos nunca son equivalentes."""
    if left is right:
        return True
    if left is None or right is None or type(left) is not type(right):
        return False
    if isinstance(left, Patient):
        return patients_equivalent(left, right)  # type: ignore[arg-type]
    if isinstance(left, Psychologist):
        return psychologists_equivalent(left, right)  # type: ignore[arg-type]
    if isinstance(left, Appointment):
        return appointments_equivalent(left, right)  # type: ignore[arg-type]
    if isinstance(left, User):
        return users_equivalent(left, right)  # type: ignore[arg-type]
    raise TypeError(f"Unsupported entity for data equivalence: {type(left).__name__}")
