from __future__ import annotations

import logging
from dataclasses import replace

import pytest

from clinic_sync.application import sync_context
from clinic_sync.application.cross_persistence_observer import CrossPersistenceSyncObserver
from clinic_sync.application.notifications import EntityType
from clinic_sync.domain.models import PersistenceType, UserCreation, UserProfile, UserType
from tests.fakes import HASH_FIJO, crear_cita, crear_paciente, crear_psicologo

FILE = PersistenceType.FILE
RELATIONAL = PersistenceType.RELATIONAL


@pytest.fixture
def armed_factory(fake_factory, metrics):
    fake_factory.arm_sync(lambda kind: CrossPersistenceSyncObserver(kind, fake_factory, metrics=metrics))
    return fake_factory


def test_insert_en_un_almacen_aparece_en_el_otro(armed_factory, fake_stores) -> None:
    armed_factory.psychologist_dao(FILE).save(crear_psicologo())
    armed_factory.patient_dao(FILE).save(crear_paciente())
    armed_factory.appointment_dao(FILE).save(crear_cita(1), "pat1")

    relational = fake_stores[RELATIONAL]
    assert relational.psychologists["psy1"].office == "Consulta 1"
    assert relational.patients["pat1"].psychologist == "psy1"
    assert relational.appointment_owner[1] == "pat1"
    # El secreto viaja ya hasheado: nunca se vuelve a hashear.
    assert relational.users["pat1"][1] == HASH_FIJO


def test_cada_escritura_provoca_exactamente_una_escritura_remota(armed_factory, fake_stores) -> None:
    armed_factory.patient_dao(RELATIONAL).save(crear_paciente(psychologist=None))

    assert fake_stores[FILE].daos.patients.writes() == 1
    assert fake_stores[RELATIONAL].daos.patients.writes() == 1


def test_sin_bucle_de_replicacion(armed_factory, fake_stores) -> None:
    patient_dao = armed_factory.patient_dao(FILE)
    patient_dao.save(crear_paciente(psychologist=None))
    patient = fake_stores[FILE].patients["pat1"]

    patient_dao.update(replace(patient, name="Luisa"))
    patient_dao.delete("pat1")

    assert fake_stores[FILE].daos.patients.writes() == 3
    assert fake_stores[RELATIONAL].daos.patients.writes() == 3
    assert "pat1" not in fake_stores[RELATIONAL].patients


def test_update_y_delete_de_cita_se_replican(armed_factory, fake_stores) -> None:
    armed_factory.patient_dao(RELATIONAL).save(crear_paciente(psychologist=None))
    appointment_dao = armed_factory.appointment_dao(RELATIONAL)
    appointment_dao.save(crear_cita(3), "pat1")

    appointment_dao.update(replace(crear_cita(3), notified=True, description="Revisión"))
    assert fake_stores[FILE].appointments[3].notified is True
    assert fake_stores[FILE].appointments[3].description == "Revisión"

    appointment_dao.delete(3)
    assert 3 not in fake_stores[FILE].appointments


def test_usuario_se_replica_en_alta_modificacion_y_baja(armed_factory, fake_stores) -> None:
    user_dao = armed_factory.user_dao(FILE)
    user_dao.save(UserCreation("u1", HASH_FIJO, "Eva", "Gil", "F", UserType.PATIENT))

    user_dao.update(UserProfile("u1", "Eva", "Gómez", "F", UserType.PATIENT))
    assert fake_stores[RELATIONAL].users["u1"][0].surname == "Gómez"
    assert fake_stores[RELATIONAL].users["u1"][1] == HASH_FIJO

    user_dao.delete("u1")
    assert "u1" not in fake_stores[RELATIONAL].users


def test_actualizacion_de_paciente_no_transporta_secreto(armed_factory, fake_stores) -> None:
    armed_factory.patient_dao(FILE).save(crear_paciente(psychologist=None))
    patient = fake_stores[FILE].patients["pat1"]

    armed_factory.patient_dao(FILE).update(replace(patient, surname="Nuevo"))

    _, args = fake_stores[RELATIONAL].daos.patients.calls[-1]
    assert args[1].password_hash is None


def test_fallo_remoto_no_afecta_al_origen_y_se_registra(armed_factory, fake_stores, metrics, caplog) -> None:
    fake_stores[RELATIONAL].fail_on = ("FakePatientDao", "save")

    with caplog.at_level(logging.ERROR):
        armed_factory.patient_dao(FILE).save(crear_paciente(psychologist=None))

    assert "pat1" in fake_stores[FILE].patients
    assert "pat1" not in fake_stores[RELATIONAL].patients
    assert metrics.contador("sync.replication_failures") == 1
    assert metrics.contador("sync.replication_failures.Patient") == 1
    failure = next(record for record in caplog.records if record.getMessage() == "Sync INSERT failed")
    assert failure.exc_info is not None
    assert failure.extra["source"] == "file"
    assert failure.extra["target"] == "relational"
    assert failure.extra["entity_id"] == "pat1"
    assert sync_context.is_syncing() is False


def test_error_de_dominio_remoto_tambien_se_traga(armed_factory, fake_stores, metrics) -> None:
    # La cita referencia un paciente que sólo existe en el origen.
    fake_stores[FILE].daos.patients.save(crear_paciente(psychologist=None))

    armed_factory.appointment_dao(FILE).save(crear_cita(9), "pat1")

    assert 9 in fake_stores[FILE].appointments
    assert 9 not in fake_stores[RELATIONAL].appointments
    assert metrics.contador("sync.replication_failures.Appointment") == 1


def test_tipo_de_entidad_desconocido_se_ignora(fake_factory, fake_stores, metrics, caplog) -> None:
    observer = CrossPersistenceSyncObserver(FILE, fake_factory, metrics=metrics)

    with caplog.at_level(logging.WARNING):
        observer.on_after_insert("Invoice", "1", object())
        observer.on_after_delete("Invoice", "1")

    assert fake_stores[RELATIONAL].total_writes() == 0
    assert metrics.contador("sync.unhandled_entity_type") == 2
    assert any("Invoice" in record.getMessage() for record in caplog.records if record.levelno == logging.WARNING)


def test_payload_de_tipo_incorrecto_es_fallo_de_replicacion(fake_factory, fake_stores, metrics) -> None:
    observer = CrossPersistenceSyncObserver(FILE, fake_factory, metrics=metrics)

    observer.on_after_insert(EntityType.PATIENT.value, "pat1", {"username": "pat1"})

    assert fake_stores[RELATIONAL].total_writes() == 0
    assert metrics.contador("sync.replication_failures") == 1


def test_no_propaga_mientras_hay_sincronizacion_en_curso(fake_factory, fake_stores, metrics) -> None:
    observer = CrossPersistenceSyncObserver(FILE, fake_factory, metrics=metrics)

    with sync_context.sync_scope():
        observer.on_after_insert(EntityType.PATIENT.value, "pat1", crear_paciente())

    assert fake_stores[RELATIONAL].total_writes() == 0
    assert metrics.contador("sync.replicated") == 0


def test_replicacion_no_toca_el_selector(armed_factory) -> None:
    armed_factory.select(FILE)

    armed_factory.psychologist_dao(FILE).save(crear_psicologo())

    assert armed_factory.persistence_type is FILE


def test_observer_conoce_origen_y_destino(fake_factory) -> None:
    observer = CrossPersistenceSyncObserver(RELATIONAL, fake_factory)

    assert observer.source_type is RELATIONAL
    assert observer.target_type is FILE


def test_borrado_de_cita_solo_necesita_el_id(fake_factory, fake_stores) -> None:
    relational = fake_stores[RELATIONAL].daos
    relational.patients.save(crear_paciente(psychologist=None))
    relational.appointments.save(crear_cita(42), "pat1")
    observer = CrossPersistenceSyncObserver(FILE, fake_factory)

    observer.on_after_delete("Appointment", "42")

    assert 42 not in fake_stores[RELATIONAL].appointments
    assert sync_context.is_syncing() is False
