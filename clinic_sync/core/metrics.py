from __future__ import annotations

from dataclasses import dataclass
from functools import wraps
from threading import Lock
from time import perf_counter
from typing import Any, Callable, Protocol


class MetricsSink(Protocol):
    """Punto de inyección para observar la replicación sin tocar el canal de errores."""

    def incrementar(self, nombre: str, valor: int = 1) -> None:
        ...

    def registrar_tiempo(self, nombre: str, milisegundos: float) -> None:
        ...


@dataclass
class TimingStats:
    count: int = 0
    total: float = 0.0
    last: float = 0.0
    max: float = 0.0

    def add(self, milisegundos: float) -> None:
        self.count += 1
        self.total += milisegundos
        self.last = milisegundos
        self.max = max(self.max, milisegundos)

    def as_dict(self) -> dict[str, float]:
        return {
            "count": self.count,
            "last": self.last,
            "avg": self.total / self.count if self.count else 0.0,
            "max": self.max,
        }


class MetricsRegistry:
    """Contadores y latencias en memoria del proceso; seguro entre hilos."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, int] = {}
        self._timings: dict[str, TimingStats] = {}

    def contador(self, nombre: str) -> int:
        with self._lock:
            return self._counters.get(nombre, 0)

    def contadores(self, prefijo: str = "") -> dict[str, int]:
        with self._lock:
            return {name: value for name, value in self._counters.items() if name.startswith(prefijo)}

    def incrementar(self, nombre: str, valor: int = 1) -> None:
        with self._lock:
            self._counters[nombre] = self._counters.get(nombre, 0) + valor

    def registrar_tiempo(self, nombre: str, milisegundos: float) -> None:
        with self._lock:
            self._timings.setdefault(nombre, TimingStats()).add(milisegundos)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "timings_ms": {name: stats.as_dict() for name, stats in self._timings.items()},
            }


metrics_registry = MetricsRegistry()


def medir_tiempo(nombre_metrica: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Latencia en ``nombre_metrica``; las salidas por excepción cuentan en ``<nombre>.errores``."""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            # Se resuelve en cada llamada para poder sustituir el registro global.
            registry = metrics_registry
            inicio = perf_counter()
            try:
                return func(*args, **kwargs)
            except Exception:
                registry.incrementar(f"{nombre_metrica}.errores")
                raise
            finally:
                registry.registrar_tiempo(nombre_metrica, (perf_counter() - inicio) * 1000)

        return wrapper

    return decorator
