from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Hashable, Iterable, TypeVar

from clinic_sync.application import sync_context
from clinic_sync.application.dao_factory import DaoFactory
from clinic_sync.application.notifications import EntityType
from clinic_sync.core.errors import ReconciliationError
from clinic_sync.core.metrics import MetricsSink, medir_tiempo, metrics_registry
from clinic_sync.core.observability import OperationContext, log_event, log_operational_error
from clinic_sync.domain.equivalence import (
    appointments_equivalent,
    patients_equivalent,
    psychologists_equivalent,
)
from clinic_sync.domain.models import (
    Patient,
    PatientCreation,
    PersistenceType,
    Psychologist,
    PsychologistCreation,
    UserProfile,
)

logger = logging.getLogger(__name__)

_E = TypeVar("_E")
_K = TypeVar("_K", bound=Hashable)


@dataclass
class EntitySyncCounts:
    inserted_primary: int = 0
    inserted_secondary: int = 0
    updated_secondary: int = 0
    unchanged: int = 0

    @property
    def writes(self) -> int:
        return self.inserted_primary + self.inserted_secondary + self.updated_secondary


@dataclass
class InitialSyncReport:
    primary: PersistenceType
    secondary: PersistenceType
    correlation_id: str = ""
    duration_ms: int = 0
    counts: dict[str, EntitySyncCounts] = field(
        default_factory=lambda: {
            EntityType.PSYCHOLOGIST.value: EntitySyncCounts(),
            EntityType.PATIENT.value: EntitySyncCounts(),
            EntityType.APPOINTMENT.value: EntitySyncCounts(),
        }
    )

    @property
    def total_writes(self) -> int:
        return sum(item.writes for item in self.counts.values())

    def to_dict(self) -> dict[str, object]:
        return {
            "primary": self.primary.value,
            "secondary": self.secondary.value,
            "correlation_id": self.correlation_id,
            "duration_ms": self.duration_ms,
            "total_writes": self.total_writes,
            "counts": {name: asdict(item) for name, item in self.counts.items()},
        }


def _outer_join(
    primary_items: Iterable[_E],
    secondary_items: Iterable[_E],
    key: Callable[[_E], _K],
) -> list[tuple[_K, _E | None, _E | None]]:
    primary_map = {key(item): item for item in primary_items}
    secondary_map = {key(item): item for item in secondary_items}
    all_keys = sorted(primary_map.keys() | secondary_map.keys(), key=str)
    return [(item_key, primary_map.get(item_key), secondary_map.get(item_key)) for item_key in all_keys]


class InitialSyncManager:
    """Reconciliación completa (no incremental) entre los dos almacenes.

    Para cada tipo de entidad hace un outer join por clave natural:

    - sólo en primario: se inserta en secundario;
    - sólo en secundario: se inserta en primario;
    - en ambos pero con datos distintos: gana el primario, se sobrescribe el
      secundario (no hay merge campo a campo);
    - en ambos y equivalentes: no se hace nada.

    Orden fijo: psicólogos, pacientes y después citas por paciente, porque una
    cita sólo se puede insertar si su paciente ya existe en el destino. Todo el
    proceso corre dentro de ``sync_scope`` para que sus escrituras no disparen
    la replicación en tiempo real.
    """

    def __init__(self, factory: DaoFactory, *, metrics: MetricsSink | None = None) -> None:
        self._factory = factory
        self._metrics = metrics or metrics_registry

    @medir_tiempo("latency.initial_sync_ms")
    def perform_initial_sync(self, primary_type: PersistenceType) -> InitialSyncReport:
        primary_type = PersistenceType.parse(primary_type)
        secondary_type = primary_type.opposite()
        report = InitialSyncReport(primary=primary_type, secondary=secondary_type)

        with OperationContext("initial_sync") as operation, sync_context.sync_scope():
            report.correlation_id = operation.correlation_id
            log_event(
                logger,
                "initial_sync_started",
                {"primary": primary_type.value, "secondary": secondary_type.value},
            )
            try:
                self._sync_psychologists(primary_type, secondary_type, report)
                synced_patients = self._sync_patients(primary_type, secondary_type, report)
                self._sync_appointments(synced_patients, primary_type, secondary_type, report)
            except Exception as exc:
                report.duration_ms = operation.elapsed_ms
                self._metrics.incrementar("initial_sync.failures")
                log_operational_error(
                    "Initial synchronization failed",
                    exc=exc,
                    extra={"primary": primary_type.value, "partial_report": report.to_dict()},
                    logger=logger,
                )
                raise ReconciliationError(
                    f"Initial synchronization {primary_type.value} -> {secondary_type.value} aborted: {exc}"
                ) from exc

            report.duration_ms = operation.elapsed_ms
            self._metrics.incrementar("initial_sync.runs")
            self._metrics.incrementar("initial_sync.writes", report.total_writes)
            log_event(logger, "initial_sync_finished", report.to_dict())
        return report

    def _sync_psychologists(
        self,
        primary: PersistenceType,
        secondary: PersistenceType,
        report: InitialSyncReport,
    ) -> None:
        logger.info("Synchronizing psychologists...")
        counts = report.counts[EntityType.PSYCHOLOGIST.value]
        primary_dao = self._factory.psychologist_dao(primary)
        secondary_dao = self._factory.psychologist_dao(secondary)

        joined = _outer_join(primary_dao.retrieve_all(), secondary_dao.retrieve_all(), lambda item: item.username)
        for username, primary_psy, secondary_psy in joined:
            if primary_psy is not None and secondary_psy is None:
                logger.info("Sync: copying psychologist %s from %s to %s", username, primary.value, secondary.value)
                secondary_dao.save(self._psychologist_creation(primary_psy, primary))
                counts.inserted_secondary += 1
            elif primary_psy is None and secondary_psy is not None:
                logger.info("Sync: copying psychologist %s from %s to %s", username, secondary.value, primary.value)
                primary_dao.save(self._psychologist_creation(secondary_psy, secondary))
                counts.inserted_primary += 1
            elif not psychologists_equivalent(primary_psy, secondary_psy):
                logger.info(
                    "Sync conflict: different data for psychologist %s. Primary source %s takes precedence.",
                    username,
                    primary.value,
                )
                profile = UserProfile.from_psychologist(primary_psy, self._password_hash(primary, username))
                secondary_dao.update(primary_psy, profile)
                counts.updated_secondary += 1
            else:
                counts.unchanged += 1

    def _sync_patients(
        self,
        primary: PersistenceType,
        secondary: PersistenceType,
        report: InitialSyncReport,
    ) -> list[Patient]:
        logger.info("Synchronizing patients...")
        counts = report.counts[EntityType.PATIENT.value]
        primary_dao = self._factory.patient_dao(primary)
        secondary_dao = self._factory.patient_dao(secondary)

        joined = _outer_join(primary_dao.retrieve_all(), secondary_dao.retrieve_all(), lambda item: item.username)
        for username, primary_patient, secondary_patient in joined:
            if primary_patient is not None and secondary_patient is None:
                logger.info("Sync: copying patient %s from %s to %s", username, primary.value, secondary.value)
                secondary_dao.save(self._patient_creation(primary_patient, primary))
                counts.inserted_secondary += 1
            elif primary_patient is None and secondary_patient is not None:
                logger.info("Sync: copying patient %s from %s to %s", username, secondary.value, primary.value)
                primary_dao.save(self._patient_creation(secondary_patient, secondary))
                counts.inserted_primary += 1
            elif not patients_equivalent(primary_patient, secondary_patient):
                logger.info(
                    "Sync conflict: different data for patient %s. Primary source %s takes precedence.",
                    username,
                    primary.value,
                )
                profile = UserProfile.from_patient(primary_patient, self._password_hash(primary, username))
                secondary_dao.update(primary_patient, profile)
                counts.updated_secondary += 1
            else:
                counts.unchanged += 1

        # Se relee tras reconciliar: la lista autoritativa ya incluye lo copiado.
        return primary_dao.retrieve_all()

    def _sync_appointments(
        self,
        patients: Iterable[Patient],
        primary: PersistenceType,
        secondary: PersistenceType,
        report: InitialSyncReport,
    ) -> None:
        logger.info("Synchronizing appointments...")
        counts = report.counts[EntityType.APPOINTMENT.value]
        primary_dao = self._factory.appointment_dao(primary)
        secondary_dao = self._factory.appointment_dao(secondary)

        for patient in patients:
            username = patient.username
            joined = _outer_join(
                primary_dao.retrieve_by_patient(username),
                secondary_dao.retrieve_by_patient(username),
                lambda item: item.id,
            )
            for appointment_id, primary_app, secondary_app in joined:
                if primary_app is not None and secondary_app is None:
                    logger.info(
                        "Sync: copying appointment %s from %s to %s", appointment_id, primary.value, secondary.value
                    )
                    secondary_dao.save(primary_app, username)
                    counts.inserted_secondary += 1
                elif primary_app is None and secondary_app is not None:
                    logger.info(
                        "Sync: copying appointment %s from %s to %s", appointment_id, secondary.value, primary.value
                    )
                    primary_dao.save(secondary_app, username)
                    counts.inserted_primary += 1
                elif not appointments_equivalent(primary_app, secondary_app):
                    logger.info(
                        "Sync conflict: different data for appointment %s. Primary source %s takes precedence.",
                        appointment_id,
                        primary.value,
                    )
                    secondary_dao.update(primary_app)
                    counts.updated_secondary += 1
                else:
                    counts.unchanged += 1

    def _password_hash(self, source: PersistenceType, username: str) -> str | None:
        return self._factory.user_dao(source).retrieve_password_hash(username) or None

    def _patient_creation(self, patient: Patient, source: PersistenceType) -> PatientCreation:
        return PatientCreation.from_model(patient, self._password_hash(source, patient.username) or "")

    def _psychologist_creation(self, psychologist: Psychologist, source: PersistenceType) -> PsychologistCreation:
        return PsychologistCreation.from_model(psychologist, self._password_hash(source, psychologist.username) or "")


def perform_initial_sync(factory: DaoFactory, primary_type: PersistenceType) -> InitialSyncReport:
    return InitialSyncManager(factory).perform_initial_sync(primary_type)
