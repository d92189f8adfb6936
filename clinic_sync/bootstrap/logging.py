from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from clinic_sync.core.observability import current_operation, get_correlation_id
from clinic_sync.core.redactor_secretos import LoggingSecretsFilter

DEFAULT_LOG_MAX_BYTES = 1_048_576
DEFAULT_LOG_BACKUP_COUNT = 10
MAIN_LOG_NAME = "clinic_sync.log"
ERROR_OPERATIVO_LOG_NAME = "error_operativo.log"
CRASH_LOG_NAME = "crash.log"
LOG_MAX_BYTES_ENV = "CLINIC_SYNC_LOG_MAX_BYTES"


class JsonLinesFormatter(logging.Formatter):
    """Un objeto JSON por línea, con correlation id y operación en curso."""

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "modulo": record.module,
            "funcion": record.funcName,
            "mensaje": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        operation = current_operation()
        if operation:
            event["operation"] = operation
        payload_extra = getattr(record, "extra", None)
        if isinstance(payload_extra, dict) and payload_extra:
            event["extra"] = payload_extra
        if record.exc_info:
            event["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False, default=str)


class LevelBandFilter(logging.Filter):
    """Deja pasar sólo registros con ``minimum <= levelno <= maximum``."""

    def __init__(self, minimum: int, maximum: int = logging.CRITICAL) -> None:
        super().__init__()
        self.minimum = minimum
        self.maximum = maximum

    def filter(self, record: logging.LogRecord) -> bool:
        return self.minimum <= record.levelno <= self.maximum


@dataclass(frozen=True)
class LogFile:
    name: str
    minimum: int | None
    maximum: int = logging.CRITICAL


# ``minimum=None`` sigue el nivel general pasado a configure_logging.
LOG_FILES = (
    LogFile(MAIN_LOG_NAME, None),
    LogFile(ERROR_OPERATIVO_LOG_NAME, logging.ERROR, logging.ERROR),
    LogFile(CRASH_LOG_NAME, logging.CRITICAL),
)


def _max_bytes_from_env() -> int:
    raw_value = os.getenv(LOG_MAX_BYTES_ENV, "")
    return int(raw_value) if raw_value.strip().isdigit() else DEFAULT_LOG_MAX_BYTES


def _file_handler(log_dir: Path, spec: LogFile, *, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = RotatingFileHandler(
        log_dir / spec.name,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    minimum = level if spec.minimum is None else spec.minimum
    handler.setLevel(minimum)
    handler.setFormatter(JsonLinesFormatter())
    # Los filtros de handler se aplican también a lo que propagan los loggers hijos.
    handler.addFilter(LoggingSecretsFilter())
    handler.addFilter(LevelBandFilter(minimum, spec.maximum))
    return handler


def configure_logging(
    log_dir: Path,
    *,
    max_bytes: int | None = None,
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
    level: int = logging.INFO,
) -> None:
    """Sustituye los handlers del logger raíz por los tres ficheros JSONL rotativos."""
    log_dir.mkdir(parents=True, exist_ok=True)
    resolved_max_bytes = max_bytes or _max_bytes_from_env()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(level)
    for spec in LOG_FILES:
        root_logger.addHandler(
            _file_handler(log_dir, spec, level=level, max_bytes=resolved_max_bytes, backup_count=backup_count)
        )


def write_crash_log(exc_type: type[BaseException], exc: BaseException, tb: Any, log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.getLogger("clinic_sync.crash").critical(
        "Unhandled exception",
        exc_info=(exc_type, exc, tb),
        extra={"extra": {"python": sys.version, "executable": sys.executable, "cwd": str(Path.cwd())}},
    )
    return log_dir / CRASH_LOG_NAME


def install_exception_hook(log_dir: Path) -> None:
    def _handler(exc_type, exc, tb) -> None:
        try:
            write_crash_log(exc_type, exc, tb, log_dir)
        except OSError:
            sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _handler
