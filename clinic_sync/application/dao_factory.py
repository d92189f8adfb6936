from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from threading import RLock
from typing import Callable

from clinic_sync.core.errors import InfraError
from clinic_sync.domain.models import PersistenceType
from clinic_sync.domain.ports import (
    AppointmentDao,
    DaoObserver,
    ObservableDaoPort,
    PatientDao,
    PsychologistDao,
    UserDao,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DaoSet:
    """Los cuatro DAO de un mismo almacén."""

    users: UserDao
    patients: PatientDao
    psychologists: PsychologistDao
    appointments: AppointmentDao

    def observables(self) -> tuple[ObservableDaoPort, ...]:
        return (self.users, self.patients, self.psychologists, self.appointments)


DaoSetBuilder = Callable[[], DaoSet]
ObserverFactory = Callable[[PersistenceType], DaoObserver]


class DaoFactory:
    """Resuelve DAO por tipo de persistencia y conecta los observers de sync.

    Toda resolución acepta el tipo destino como argumento explícito. El tipo
    "seleccionado" sólo es el valor por defecto para el código anfitrión; el
    motor de sincronización nunca lo lee ni lo modifica.
    """

    def __init__(
        self,
        builders: Mapping[PersistenceType, DaoSetBuilder],
        *,
        persistence_type: PersistenceType = PersistenceType.RELATIONAL,
    ) -> None:
        missing = set(PersistenceType) - set(builders)
        if missing:
            raise InfraError(f"Missing DAO builders for: {sorted(kind.value for kind in missing)}")
        self._builders = dict(builders)
        self._persistence_type = persistence_type
        self._cache: dict[PersistenceType, DaoSet] = {}
        self._observers: dict[PersistenceType, DaoObserver] = {}
        self._lock = RLock()

    @property
    def persistence_type(self) -> PersistenceType:
        return self._persistence_type

    def select(self, persistence_type: PersistenceType) -> PersistenceType:
        """Cambia el almacén por defecto y devuelve el anterior."""
        with self._lock:
            previous = self._persistence_type
            self._persistence_type = persistence_type
            return previous

    @contextmanager
    def using(self, persistence_type: PersistenceType) -> Iterator["DaoFactory"]:
        previous = self.select(persistence_type)
        try:
            yield self
        finally:
            self.select(previous)

    def daos(self, persistence_type: PersistenceType | None = None) -> DaoSet:
        kind = persistence_type or self._persistence_type
        with self._lock:
            dao_set = self._cache.get(kind)
            if dao_set is None:
                dao_set = self._builders[kind]()
                self._cache[kind] = dao_set
                observer = self._observers.get(kind)
                if observer is not None:
                    self._attach(dao_set, observer)
                logger.debug("dao_set_built", extra={"extra": {"persistence_type": kind.value}})
            return dao_set

    def user_dao(self, persistence_type: PersistenceType | None = None) -> UserDao:
        return self.daos(persistence_type).users

    def patient_dao(self, persistence_type: PersistenceType | None = None) -> PatientDao:
        return self.daos(persistence_type).patients

    def psychologist_dao(self, persistence_type: PersistenceType | None = None) -> PsychologistDao:
        return self.daos(persistence_type).psychologists

    def appointment_dao(self, persistence_type: PersistenceType | None = None) -> AppointmentDao:
        return self.daos(persistence_type).appointments

    def arm_sync(self, observer_factory: ObserverFactory) -> None:
        """Registra un observer por almacén origen (ya construido o futuro)."""
        with self._lock:
            for kind in PersistenceType:
                if kind in self._observers:
                    continue
                observer = observer_factory(kind)
                self._observers[kind] = observer
                if kind in self._cache:
                    self._attach(self._cache[kind], observer)
        logger.info("real_time_sync_armed")

    def disarm_sync(self) -> None:
        with self._lock:
            for kind, observer in self._observers.items():
                dao_set = self._cache.get(kind)
                if dao_set is None:
                    continue
                for dao in dao_set.observables():
                    dao.remove_observer(observer)
            self._observers.clear()
        logger.info("real_time_sync_disarmed")

    @property
    def sync_armed(self) -> bool:
        with self._lock:
            return bool(self._observers)

    def observer_for(self, persistence_type: PersistenceType) -> DaoObserver | None:
        with self._lock:
            return self._observers.get(persistence_type)

    @staticmethod
    def _attach(dao_set: DaoSet, observer: DaoObserver) -> None:
        for dao in dao_set.observables():
            dao.add_observer(observer)
