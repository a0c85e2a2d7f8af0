"""
Fixtures compartidos – LubriSaaS

- Engine SQLite en memoria por test (StaticPool: una sola conexión compartida)
- Factory de sesiones igual a la de producción (make_session_factory)
- PlanRegistry propio por test (sin cache compartido entre tests)
- Base SQLite en archivo + `parallel` para pruebas con hilos reales
- TestClient con overrides de dependencias (sin lifespan: no toca la DB real)
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from lubrisaas.database import init_db, make_engine, make_session_factory, run_transaction
from lubrisaas.deps import get_plan_registry, get_session_factory
from lubrisaas.services.services_plans import PlanRegistry, seed_default_plans
from lubrisaas.services.services_subscriptions import create_lubricentro


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    factory = make_session_factory(engine)
    run_transaction(factory, seed_default_plans, label="test.seed")
    return factory


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def registry():
    return PlanRegistry(ttl_seconds=300)


# =============================================================================
# CONCURRENCIA (SQLite en archivo: cada hilo con su propia conexión)
# =============================================================================

@pytest.fixture
def file_factory(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'lubrisaas.db'}")
    init_db(bind=eng)
    factory = make_session_factory(eng)
    run_transaction(factory, seed_default_plans, label="test.seed")
    yield factory
    eng.dispose()


@pytest.fixture
def shared_registry(file_factory):
    """Registry con el catálogo ya cargado: los hilos no compiten por la carga."""
    registry = PlanRegistry(ttl_seconds=300)
    session = file_factory()
    try:
        registry.get_catalogue(session)
    finally:
        session.close()
    return registry


@pytest.fixture
def parallel():
    """
    Corre fn(i) en n hilos que arrancan juntos (Barrier).
    Devuelve (resultados, excepciones).
    """

    def _run(n, fn):
        barrier = threading.Barrier(n)
        lock = threading.Lock()
        results, errors = [], []

        def worker(i):
            barrier.wait()
            try:
                value = fn(i)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            else:
                with lock:
                    results.append(value)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        assert not any(t.is_alive() for t in threads)
        return results, errors

    return _run


# =============================================================================
# HELPERS
# =============================================================================

@pytest.fixture
def tx(session_factory):
    """Ejecuta fn(db) en una transacción confirmada."""

    def _run(fn):
        return run_transaction(session_factory, fn, label="test")

    return _run


@pytest.fixture
def read(session_factory):
    """
    Ejecuta fn(db) en una sesión de solo lectura que se cierra al salir.
    StaticPool comparte la conexión: nunca dejar una sesión abierta entre tx.
    """

    def _run(fn):
        session = session_factory()
        try:
            return fn(session)
        finally:
            session.close()

    return _run


@pytest.fixture
def trial_account(tx, now):
    return tx(lambda db: create_lubricentro(db, nombre_fantasia="Lubri Test", email="Test@Lubri.com", now=now))


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def client(session_factory, registry):
    from main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_plan_registry] = lambda: registry
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
