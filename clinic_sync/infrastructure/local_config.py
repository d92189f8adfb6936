from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from clinic_sync.domain.models import PersistenceType, StoreConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"


class StoreConfigStore:
    """Lee y escribe ``config.json`` con el almacén primario y el estado del sync.

    Un fichero ausente o ilegible nunca impide arrancar: se usan los valores
    por defecto y se deja constancia en el log.
    """

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir
        self._config_path = base_dir / CONFIG_FILENAME

    @property
    def path(self) -> Path:
        return self._config_path

    def load(self) -> StoreConfig:
        if not self._config_path.exists():
            return StoreConfig()
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("No se pudo leer config.json, se usan valores por defecto: %s", exc)
            return StoreConfig()
        if not isinstance(payload, dict):
            logger.warning("config.json no contiene un objeto, se usan valores por defecto")
            return StoreConfig()
        return StoreConfig(
            primary=self._parse_primary(payload.get("primary")),
            sync_enabled=self._parse_bool(payload.get("sync_enabled"), default=True),
            csv_dir=str(payload.get("csv_dir") or "").strip(),
            db_path=str(payload.get("db_path") or "").strip(),
        )

    def save(self, config: StoreConfig) -> StoreConfig:
        payload = {
            "primary": config.primary.value,
            "sync_enabled": config.sync_enabled,
            "csv_dir": config.csv_dir,
            "db_path": config.db_path,
        }
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        return config

    @staticmethod
    def _parse_primary(value: Any) -> PersistenceType:
        if value is None or value == "":
            return PersistenceType.RELATIONAL
        try:
            return PersistenceType.parse(str(value))
        except ValueError:
            logger.warning("primary desconocido en config.json: %r; se usa relational", value)
            return PersistenceType.RELATIONAL

    @staticmethod
    def _parse_bool(value: Any, *, default: bool) -> bool:
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        normalized = str(value).strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False
        logger.warning("sync_enabled inválido en config.json: %r; se usa %s", value, default)
        return default
