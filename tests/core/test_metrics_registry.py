from __future__ import annotations

from threading import Thread

import pytest

from clinic_sync.core import metrics


def test_incrementar_contador() -> None:
    registry = metrics.MetricsRegistry()

    registry.incrementar("sync.replicated")
    registry.incrementar("sync.replicated", 2)

    assert registry.contador("sync.replicated") == 3
    assert registry.contador("no.existe") == 0


def test_contadores_filtra_por_prefijo() -> None:
    registry = metrics.MetricsRegistry()
    registry.incrementar("sync.replication_failures")
    registry.incrementar("sync.replication_failures.Patient")
    registry.incrementar("initial_sync.runs")

    assert registry.contadores("sync.") == {
        "sync.replication_failures": 1,
        "sync.replication_failures.Patient": 1,
    }


def test_snapshot_devuelve_datos_coherentes() -> None:
    registry = metrics.MetricsRegistry()

    registry.incrementar("initial_sync.runs")
    registry.registrar_tiempo("latency.initial_sync_ms", 10)
    registry.registrar_tiempo("latency.initial_sync_ms", 30)

    snapshot = registry.snapshot()

    assert snapshot["counters"]["initial_sync.runs"] == 1
    assert snapshot["timings_ms"]["latency.initial_sync_ms"]["count"] == 2
    assert snapshot["timings_ms"]["latency.initial_sync_ms"]["avg"] == 20
    assert snapshot["timings_ms"]["latency.initial_sync_ms"]["max"] == 30


def test_reset_vacia_registro() -> None:
    registry = metrics.MetricsRegistry()
    registry.incrementar("x")
    registry.registrar_tiempo("y", 1.0)

    registry.reset()

    assert registry.snapshot() == {"counters": {}, "timings_ms": {}}


def test_decorator_cuenta_errores_y_relanza(monkeypatch) -> None:
    registry = metrics.MetricsRegistry()
    monkeypatch.setattr(metrics, "metrics_registry", registry)

    @metrics.medir_tiempo("latency.falla_ms")
    def _operacion() -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        _operacion()

    assert registry.contador("latency.falla_ms.errores") == 1
    assert registry.snapshot()["timings_ms"]["latency.falla_ms"]["count"] == 1


def test_thread_safety_basica() -> None:
    registry = metrics.MetricsRegistry()

    def _worker() -> None:
        for _ in range(200):
            registry.incrementar("sync.replicated")

    threads = [Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.contador("sync.replicated") == 1600
