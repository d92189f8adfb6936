from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from clinic_sync.application import sync_context
from clinic_sync.application.dao_factory import DaoFactory
from clinic_sync.application.notifications import DaoOperation, EntityType, entity_tag
from clinic_sync.core.metrics import MetricsSink, metrics_registry
from clinic_sync.core.observability import OperationContext, log_operational_error
from clinic_sync.domain.models import (
    Appointment,
    AppointmentCreation,
    Patient,
    PatientCreation,
    PersistenceType,
    Psychologist,
    PsychologistCreation,
    User,
    UserCreation,
    UserProfile,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_Handler = Callable[[str, Any], None]


class ReplicationPayloadError(TypeError):
    pass


def _expect(payload: Any, expected: type[_T], entity_type: EntityType, operation: DaoOperation) -> _T:
    if not isinstance(payload, expected):
        raise ReplicationPayloadError(
            f"{operation.value} {entity_type.value} expects {expected.__name__}, got {type(payload).__name__}"
        )
    return payload


class CrossPersistenceSyncObserver:
    """Replica en el almacén opuesto cada escritura observada en ``source_type``.

    Se crea una instancia por almacén origen. La escritura original ya es
    durable cuando llega la notificación, así que cualquier fallo al replicar
    se registra (log + métrica) y se descarta: nunca vuelve al llamante ni
    revierte el origen.
    """

    def __init__(
        self,
        source_type: PersistenceType,
        factory: DaoFactory,
        *,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._source_type = source_type
        self._target_type = source_type.opposite()
        self._factory = factory
        self._metrics = metrics or metrics_registry
        self._handlers: dict[DaoOperation, dict[EntityType, _Handler]] = {
            DaoOperation.INSERT: {
                EntityType.USER: self._insert_user,
                EntityType.PATIENT: self._insert_patient,
                EntityType.PSYCHOLOGIST: self._insert_psychologist,
                EntityType.APPOINTMENT: self._insert_appointment,
            },
            DaoOperation.UPDATE: {
                EntityType.USER: self._update_user,
                EntityType.PATIENT: self._update_patient,
                EntityType.PSYCHOLOGIST: self._update_psychologist,
                EntityType.APPOINTMENT: self._update_appointment,
            },
            DaoOperation.DELETE: {
                EntityType.USER: self._delete_user,
                EntityType.PATIENT: self._delete_patient,
                EntityType.PSYCHOLOGIST: self._delete_psychologist,
                EntityType.APPOINTMENT: self._delete_appointment,
            },
        }

    @property
    def source_type(self) -> PersistenceType:
        return self._source_type

    @property
    def target_type(self) -> PersistenceType:
        return self._target_type

    def on_after_insert(self, entity_type: str, entity_id: str, entity: Any) -> None:
        self._propagate(DaoOperation.INSERT, entity_type, entity_id, entity)

    def on_after_update(self, entity_type: str, entity_id: str, entity: Any) -> None:
        self._propagate(DaoOperation.UPDATE, entity_type, entity_id, entity)

    def on_after_delete(self, entity_type: str, entity_id: str) -> None:
        self._propagate(DaoOperation.DELETE, entity_type, entity_id, None)

    def _propagate(self, operation: DaoOperation, entity_type: str, entity_id: str, payload: Any) -> None:
        if sync_context.is_syncing():
            return
        token = sync_context.start_sync()
        try:
            kind = EntityType.resolve(entity_type)
            handler = self._handlers[operation].get(kind) if kind is not None else None
            if handler is None:
                logger.warning("Sync %s not handled for entity type: %s", operation.value, entity_tag(entity_type))
                self._metrics.incrementar("sync.unhandled_entity_type")
                return
            logger.info(
                "SYNC %s: propagating %s (%s) from %s to %s",
                operation.value,
                kind.value,
                entity_id,
                self._source_type.value,
                self._target_type.value,
            )
            with OperationContext(f"sync.{operation.value.lower()}"):
                handler(entity_id, payload)
            self._metrics.incrementar("sync.replicated")
        except Exception as exc:  # noqa: BLE001
            self._metrics.incrementar("sync.replication_failures")
            self._metrics.incrementar(f"sync.replication_failures.{entity_tag(entity_type)}")
            log_operational_error(
                f"Sync {operation.value} failed",
                exc=exc,
                extra={
                    "operation": operation.value,
                    "entity_type": entity_tag(entity_type),
                    "entity_id": str(entity_id),
                    "source": self._source_type.value,
                    "target": self._target_type.value,
                },
                logger=logger,
            )
        finally:
            sync_context.end_sync(token)

    def _insert_user(self, entity_id: str, payload: Any) -> None:
        user = _expect(payload, UserCreation, EntityType.USER, DaoOperation.INSERT)
        self._factory.user_dao(self._target_type).save(user)

    def _insert_patient(self, entity_id: str, payload: Any) -> None:
        patient = _expect(payload, PatientCreation, EntityType.PATIENT, DaoOperation.INSERT)
        self._factory.patient_dao(self._target_type).save(patient)

    def _insert_psychologist(self, entity_id: str, payload: Any) -> None:
        psychologist = _expect(payload, PsychologistCreation, EntityType.PSYCHOLOGIST, DaoOperation.INSERT)
        self._factory.psychologist_dao(self._target_type).save(psychologist)

    def _insert_appointment(self, entity_id: str, payload: Any) -> None:
        bundle = _expect(payload, AppointmentCreation, EntityType.APPOINTMENT, DaoOperation.INSERT)
        self._factory.appointment_dao(self._target_type).save(bundle.appointment, bundle.patient_username)

    def _update_user(self, entity_id: str, payload: Any) -> None:
        if isinstance(payload, User):
            payload = UserProfile.from_user(payload)
        profile = _expect(payload, UserProfile, EntityType.USER, DaoOperation.UPDATE)
        self._factory.user_dao(self._target_type).update(profile)

    def _update_patient(self, entity_id: str, payload: Any) -> None:
        patient = _expect(payload, Patient, EntityType.PATIENT, DaoOperation.UPDATE)
        # Sin contraseña: las actualizaciones nunca transportan secretos nuevos.
        self._factory.patient_dao(self._target_type).update(patient, UserProfile.from_patient(patient))

    def _update_psychologist(self, entity_id: str, payload: Any) -> None:
        psychologist = _expect(payload, Psychologist, EntityType.PSYCHOLOGIST, DaoOperation.UPDATE)
        self._factory.psychologist_dao(self._target_type).update(
            psychologist, UserProfile.from_psychologist(psychologist)
        )

    def _update_appointment(self, entity_id: str, payload: Any) -> None:
        appointment = _expect(payload, Appointment, EntityType.APPOINTMENT, DaoOperation.UPDATE)
        self._factory.appointment_dao(self._target_type).update(appointment)

    def _delete_user(self, entity_id: str, payload: Any) -> None:
        self._factory.user_dao(self._target_type).delete(entity_id)

    def _delete_patient(self, entity_id: str, payload: Any) -> None:
        self._factory.patient_dao(self._target_type).delete(entity_id)

    def _delete_psychologist(self, entity_id: str, payload: Any) -> None:
        self._factory.psychologist_dao(self._target_type).delete(entity_id)

    def _delete_appointment(self, entity_id: str, payload: Any) -> None:
        self._factory.appointment_dao(self._target_type).delete(int(entity_id))
