from __future__ import annotations


class AppError(Exception):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    """Fallo de acceso a datos en cualquiera de los dos almacenes."""


class DuplicateKeyError(PersistenceError):
    def __init__(self, entity_type: str, key: object) -> None:
        super().__init__(f"{entity_type} already exists: {key}")
        self.entity_type = entity_type
        self.key = key


class EntityNotFoundError(PersistenceError):
    def __init__(self, entity_type: str, key: object) -> None:
        super().__init__(f"{entity_type} not found: {key}")
        self.entity_type = entity_type
        self.key = key


class ReconciliationError(InfraError):
    """La sincronización inicial se abortó; lo escrito antes del fallo se conserva."""
