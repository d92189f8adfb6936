from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar, Token
from time import perf_counter
from typing import Any

_correlation_id: ContextVar[str | None] = ContextVar("clinic_sync_correlation_id", default=None)
_operation: ContextVar[str | None] = ContextVar("clinic_sync_operation", default=None)

operational_logger = logging.getLogger("clinic_sync.operational_error")


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def bind_correlation_id(correlation_id: str | None) -> Token[str | None]:
    return _correlation_id.set(correlation_id)


def current_operation() -> str | None:
    return _operation.get()


class OperationContext:
    """Une bajo un mismo correlation id todo lo que se loguea dentro del bloque.

    Anidado reutiliza el id activo, de modo que una réplica disparada durante la
    sincronización inicial queda en la misma traza; ``reuse_active=False``
    fuerza un id nuevo. El nombre de la operación viaja con cada registro.
    """

    def __init__(self, operation_name: str, *, reuse_active: bool = True) -> None:
        self.operation_name = operation_name
        active = _correlation_id.get() if reuse_active else None
        self.correlation_id = active or new_correlation_id()
        self._tokens: tuple[Token[str | None], Token[str | None]] | None = None
        self._started = perf_counter()

    def __enter__(self) -> "OperationContext":
        self._started = perf_counter()
        self._tokens = (_correlation_id.set(self.correlation_id), _operation.set(self.operation_name))
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        if self._tokens is None:
            return
        correlation_token, operation_token = self._tokens
        _operation.reset(operation_token)
        _correlation_id.reset(correlation_token)
        self._tokens = None

    @property
    def elapsed_ms(self) -> int:
        return int((perf_counter() - self._started) * 1000)


def _with_context(payload: dict[str, Any]) -> dict[str, Any]:
    fields = dict(payload)
    fields.setdefault("correlation_id", get_correlation_id())
    operation = current_operation()
    if operation:
        fields.setdefault("operation", operation)
    return fields


def log_event(logger: logging.Logger, event_name: str, payload: dict[str, Any]) -> dict[str, Any]:
    event = {"event": event_name, **_with_context({}), "payload": payload}
    logger.info(event_name, extra={"correlation_id": event["correlation_id"], "extra": event})
    return event


def log_operational_error(
    message: str,
    *,
    exc: BaseException,
    extra: dict[str, Any] | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """ERROR con traza completa; acaba también en ``error_operativo.log``."""
    metadata = _with_context(extra or {})
    (logger or operational_logger).error(
        message,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"correlation_id": metadata["correlation_id"], "extra": metadata},
    )
