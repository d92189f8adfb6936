from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

# Claves cuyo valor nunca se escribe en logs, ni siquiera como hash.
SECRET_KEYS = frozenset({"password", "password_hash", "passwd", "pwd", "secret", "token"})

_BCRYPT_HASH = re.compile(r"\$2[abxy]?\$\d{2}\$[./A-Za-z0-9]{53}")
_SECRET_ASSIGNMENT = re.compile(
    r'(?i)("?(?:' + "|".join(sorted(SECRET_KEYS, key=len, reverse=True)) + r')"?\s*[:=]\s*)'
    r'("[^"]*"|\'[^\']*\'|[^,\s}\])]+)'
)


def redactar_texto(texto: str) -> str:
    sin_hashes = _BCRYPT_HASH.sub("<REDACTED_HASH>", texto)
    return _SECRET_ASSIGNMENT.sub(r"\1<REDACTED>", sin_hashes)


def redactar_valor(value: Any, *, key: object = None) -> Any:
    if key is not None and str(key).lower() in SECRET_KEYS:
        return "<REDACTED>"
    if isinstance(value, str):
        return redactar_texto(value)
    if isinstance(value, Mapping):
        return {item_key: redactar_valor(item, key=item_key) for item_key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redactar_valor(item) for item in value]
    return value


class LoggingSecretsFilter(logging.Filter):
    """Quita hashes bcrypt y pares ``password=...`` de mensaje, args y ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redactar_texto(record.msg)
        if isinstance(record.args, Mapping):
            record.args = redactar_valor(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redactar_valor(value) for value in record.args)

        extra_payload = getattr(record, "extra", None)
        if isinstance(extra_payload, Mapping):
            record.extra = redactar_valor(extra_payload)
        return True
