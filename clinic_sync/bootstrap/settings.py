from __future__ import annotations

import os
import tempfile
from pathlib import Path

LOG_DIR_ENV = "CLINIC_SYNC_LOG_DIR"
DATA_DIR_ENV = "CLINIC_SYNC_DATA_DIR"


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _first_writable(candidates: list[Path]) -> Path | None:
    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue
    return None


def resolve_log_dir() -> Path:
    candidates: list[Path] = []
    env_dir = os.environ.get(LOG_DIR_ENV)
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "ClinicSync" / "logs")

    resolved = _first_writable(candidates)
    if resolved is not None:
        return resolved

    fallback = project_root()
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def resolve_data_dir(override: str | Path | None = None) -> Path:
    """Directorio con ``config.json``, la base SQLite y los CSV."""
    candidates: list[Path] = []
    if override:
        candidates.append(Path(override))
    env_dir = os.environ.get(DATA_DIR_ENV)
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "data")
    candidates.append(Path(tempfile.gettempdir()) / "ClinicSync" / "data")

    resolved = _first_writable(candidates)
    if resolved is None:
        raise OSError(f"No writable data directory among: {[str(path) for path in candidates]}")
    return resolved
