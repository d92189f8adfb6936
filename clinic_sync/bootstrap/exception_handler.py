from __future__ import annotations

import json
import logging
import sys
import traceback
import uuid
from dataclasses import asdict, dataclass
from types import TracebackType
from typing import Callable

from clinic_sync.bootstrap.logging import CRASH_LOG_NAME
from clinic_sync.bootstrap.settings import resolve_log_dir
from clinic_sync.core.observability import bind_correlation_id, get_correlation_id, new_correlation_id

EXIT_UNEXPECTED_ERROR = 2


def generar_id_incidente() -> str:
    return f"INC-{uuid.uuid4().hex[:12].upper()}"


@dataclass(frozen=True)
class Incidente:
    incident_id: str
    correlation_id: str
    error_type: str
    error_message: str
    stacktrace: str

    @classmethod
    def desde_excepcion(
        cls,
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_traceback: TracebackType | None,
    ) -> "Incidente":
        correlation_id = get_correlation_id()
        if not correlation_id:
            correlation_id = new_correlation_id()
            bind_correlation_id(correlation_id)
        return cls(
            incident_id=generar_id_incidente(),
            correlation_id=correlation_id,
            error_type=exc_type.__name__,
            error_message=str(exc_value),
            stacktrace="".join(traceback.format_exception(exc_type, exc_value, exc_traceback)),
        )


def _volcar_en_crash_log(incidente: Incidente) -> None:
    crash_file = resolve_log_dir() / CRASH_LOG_NAME
    with crash_file.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(asdict(incidente), ensure_ascii=False) + "\n")


def manejar_excepcion_global(
    exc_type: type[BaseException], exc_value: BaseException, exc_traceback: TracebackType | None
) -> str:
    """Registra la excepción como CRITICAL y devuelve el id de incidente.

    Si el propio logging falla, el incidente se escribe a mano en ``crash.log``.
    """
    incidente = Incidente.desde_excepcion(exc_type, exc_value, exc_traceback)
    logger = logging.getLogger("clinic_sync.global_exception")
    try:
        logger.critical(
            "Unhandled exception. incident_id=%s",
            incidente.incident_id,
            exc_info=(exc_type, exc_value, exc_traceback),
            extra={
                "incident_id": incidente.incident_id,
                "correlation_id": incidente.correlation_id,
                "extra": {"incident_id": incidente.incident_id, "error_type": incidente.error_type},
            },
        )
    except Exception:  # noqa: BLE001
        _volcar_en_crash_log(incidente)
    return incidente.incident_id


def ejecutar_con_guardia(entrypoint: Callable[[], int]) -> int:
    """Ejecuta el CLI; lo inesperado se convierte en incidente y código 2."""
    try:
        return entrypoint()
    except Exception:  # noqa: BLE001
        exc_type, exc_value, exc_traceback = sys.exc_info()
        incident_id = manejar_excepcion_global(exc_type, exc_value, exc_traceback)
        sys.stderr.write(f"Error inesperado. ID de incidente: {incident_id}\n")
        return EXIT_UNEXPECTED_ERROR
