"""Marca de reentrancia de la sincronización.

Mientras una propagación está en curso, las escrituras que ella misma provoca
en el otro almacén vuelven a notificar a sus observers; la marca evita que
esas notificaciones se repliquen de vuelta (ping-pong infinito).

La marca vive en un ``ContextVar``: cada hilo y cada tarea asyncio ven su
propio valor, de modo que dos propagaciones concurrentes no se interfieren.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

_SYNCING: ContextVar[bool] = ContextVar("clinic_sync_syncing", default=False)


def start_sync() -> Token[bool]:
    return _SYNCING.set(True)


def end_sync(token: Token[bool] | None = None) -> None:
    if token is None:
        _SYNCING.set(False)
        return
    try:
        _SYNCING.reset(token)
    except (ValueError, RuntimeError):
        # Token de otro contexto o ya consumido: se limpia igualmente.
        _SYNCING.set(False)


def is_syncing() -> bool:
    return _SYNCING.get()


@contextmanager
def sync_scope() -> Iterator[None]:
    token = start_sync()
    try:
        yield
    finally:
        end_sync(token)
