from __future__ import annotations

import logging
from threading import Lock
from typing import Any

from clinic_sync.application.notifications import DaoNotification, DaoOperation, entity_tag
from clinic_sync.domain.ports import DaoObserver

logger = logging.getLogger(__name__)


class ObservableDao:
    """Base de cualquier DAO concreto que quiera publicar lo que escribió.

    Las implementaciones llaman a ``notify_observers`` justo después de que la
    escritura local haya tenido éxito (nunca antes). La difusión es best-effort:
    el fallo de un observer se registra y no impide avisar al resto.
    """

    def __init__(self) -> None:
        self._observers: list[DaoObserver] = []
        self._observers_lock = Lock()

    def add_observer(self, observer: DaoObserver) -> None:
        with self._observers_lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def remove_observer(self, observer: DaoObserver) -> None:
        with self._observers_lock:
            if observer in self._observers:
                self._observers.remove(observer)

    @property
    def observers(self) -> tuple[DaoObserver, ...]:
        with self._observers_lock:
            return tuple(self._observers)

    def notify_observers(
        self,
        operation: DaoOperation,
        entity_type: str,
        entity_id: str,
        entity: Any = None,
    ) -> None:
        try:
            notification = DaoNotification(DaoOperation(operation), entity_tag(entity_type), str(entity_id), entity)
        except ValueError:
            # La escritura local ya está hecha; solo se pierde el aviso.
            logger.exception(
                "observer_notification_dropped",
                extra={
                    "extra": {
                        "operation": getattr(operation, "value", operation),
                        "entity_type": entity_tag(entity_type),
                        "entity_id": str(entity_id),
                    }
                },
            )
            return
        self.publish(notification)

    def publish(self, notification: DaoNotification) -> None:
        # Copia: un observer puede (des)registrar observers mientras se notifica.
        for observer in self.observers:
            try:
                if notification.operation is DaoOperation.INSERT:
                    observer.on_after_insert(notification.entity_type, notification.entity_id, notification.payload)
                elif notification.operation is DaoOperation.UPDATE:
                    observer.on_after_update(notification.entity_type, notification.entity_id, notification.payload)
                else:
                    observer.on_after_delete(notification.entity_type, notification.entity_id)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "observer_notification_failed",
                    extra={
                        "extra": {
                            "operation": notification.operation.value,
                            "entity_type": notification.entity_type,
                            "entity_id": notification.entity_id,
                            "observer": type(observer).__name__,
                        }
                    },
                )
