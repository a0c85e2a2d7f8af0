"""
run_transaction: commit, reintento ante conflicto, agotamiento y errores de dominio.
Una violación UNIQUE es conflicto; un CHECK roto se propaga sin reintento.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from lubrisaas.database import is_write_conflict, run_transaction
from lubrisaas.errors import ConflictRetryExhausted, InvalidState
from lubrisaas.models import Auditoria, Distribuidor
from lubrisaas.services.services_audit import audit
from lubrisaas.services.services_credits import create_distributor


def _locked() -> OperationalError:
    return OperationalError("UPDATE lubricentros", {}, Exception("database is locked"))


def _unique_race() -> IntegrityError:
    return IntegrityError(
        "INSERT INTO uso_mensual", {},
        Exception("UNIQUE constraint failed: uso_mensual.lubricentro_id, uso_mensual.periodo"),
    )


def _count_audit(read, accion: str) -> int:
    return read(lambda db: db.query(Auditoria).filter(Auditoria.accion == accion).count())


def test_commits_result(session_factory, read):
    reg = run_transaction(session_factory, lambda db: audit(db, action="test.commit"))

    assert reg.id is not None
    assert _count_audit(read, "test.commit") == 1


def test_retries_on_stale_data_then_succeeds(session_factory, read):
    calls = {"n": 0}

    def body(db):
        calls["n"] += 1
        audit(db, action="test.retry")
        if calls["n"] < 3:
            raise StaleDataError("version mismatch")
        return "ok"

    assert run_transaction(session_factory, body, max_attempts=5) == "ok"
    assert calls["n"] == 3
    # Los intentos fallidos se descartan: solo queda el del intento exitoso
    assert _count_audit(read, "test.retry") == 1


def test_exhausted_attempts_raise_conflict_retry_exhausted(session_factory, read):
    calls = {"n": 0}

    def body(db):
        calls["n"] += 1
        audit(db, action="test.exhausted")
        raise _locked()

    with pytest.raises(ConflictRetryExhausted):
        run_transaction(session_factory, body, max_attempts=3)

    assert calls["n"] == 3
    assert _count_audit(read, "test.exhausted") == 0


def test_domain_error_rolls_back_without_retry(session_factory, read):
    calls = {"n": 0}

    def body(db):
        calls["n"] += 1
        audit(db, action="test.domain")
        raise InvalidState("no")

    with pytest.raises(InvalidState):
        run_transaction(session_factory, body, max_attempts=5)

    assert calls["n"] == 1
    assert _count_audit(read, "test.domain") == 0


def test_non_conflict_operational_error_propagates(session_factory):
    def body(db):
        raise OperationalError("SELECT", {}, Exception("no such table: foo"))

    with pytest.raises(OperationalError):
        run_transaction(session_factory, body, max_attempts=5)


def test_is_write_conflict():
    assert is_write_conflict(StaleDataError("x"))
    assert is_write_conflict(_locked())
    assert not is_write_conflict(OperationalError("SELECT", {}, Exception("syntax error")))
    assert not is_write_conflict(ValueError("x"))
    assert is_write_conflict(_unique_race())
    assert not is_write_conflict(
        IntegrityError("UPDATE distribuidores", {}, Exception("CHECK constraint failed: ck_dist_creditos_balance"))
    )


def test_retries_on_unique_race(session_factory, read):
    calls = {"n": 0}

    def body(db):
        calls["n"] += 1
        audit(db, action="test.unique")
        if calls["n"] == 1:
            raise _unique_race()
        return "ok"

    assert run_transaction(session_factory, body, max_attempts=3) == "ok"
    assert calls["n"] == 2
    assert _count_audit(read, "test.unique") == 1


def test_check_violation_propagates_without_retry(session_factory, read):
    calls = {"n": 0}

    def body(db):
        calls["n"] += 1
        dist = create_distributor(db, name="Descuadrado SA")
        # saldo que no cuadra con comprados - usados
        dist.credits_available = 5
        db.flush()

    with pytest.raises(IntegrityError):
        run_transaction(session_factory, body, max_attempts=5)

    assert calls["n"] == 1
    assert read(lambda db: db.query(Distribuidor).filter(Distribuidor.name == "Descuadrado SA").count()) == 0
