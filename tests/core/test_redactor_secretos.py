from __future__ import annotations

import logging

from clinic_sync.core.redactor_secretos import LoggingSecretsFilter, redactar_texto, redactar_valor

HASH = "$2b$12$" + "a" * 53


def test_redacta_hash_bcrypt() -> None:
    assert redactar_texto(f"stored {HASH} for pat1") == "stored <REDACTED_HASH> for pat1"


def test_redacta_pares_clave_valor() -> None:
    texto = 'password=hunter2 token: "abc" user=pat1'

    redactado = redactar_texto(texto)

    assert "hunter2" not in redactado
    assert "abc" not in redactado
    assert "user=pat1" in redactado


def test_filtro_redacta_mensaje_args_y_extra() -> None:
    record = logging.LogRecord(
        name="tests",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="login user=%s hash=%s",
        args=("pat1", HASH),
        exc_info=None,
    )
    record.extra = {"password_hash": HASH, "username": "pat1"}

    assert LoggingSecretsFilter().filter(record) is True

    assert record.extra == {"password_hash": "<REDACTED>", "username": "pat1"}
    assert HASH not in record.getMessage()


def test_redacta_claves_secretas_anidadas() -> None:
    payload = {"partial_report": {"users": [{"username": "pat1", "password": "hunter2"}]}, "note": HASH}

    redactado = redactar_valor(payload)

    assert redactado["partial_report"]["users"][0] == {"username": "pat1", "password": "<REDACTED>"}
    assert redactado["note"] == "<REDACTED_HASH>"
