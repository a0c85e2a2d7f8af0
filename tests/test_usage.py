"""
Usage meter: can_consume por modo, consume_one atómico, límites de usuarios.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from lubrisaas.database import run_transaction
from lubrisaas.errors import LimitExceeded
from lubrisaas.models import Lubricentro, UsoMensual
from lubrisaas.services.services_subscriptions import activate, create_lubricentro, deactivate
from lubrisaas.services.services_usage import (
    UNLIMITED,
    WarningLevel,
    add_user,
    can_add_user,
    can_consume,
    consume_one,
    get_subscription_info,
    get_usage_history,
    warning_level,
)


def _get(read, lub_id):
    return read(lambda db: db.get(Lubricentro, lub_id))


def _check(read, registry, lub_id, now):
    return read(lambda db: can_consume(db, db.get(Lubricentro, lub_id), registry, now=now))


def _set_used(tx, lub_id, used):
    def body(db):
        db.get(Lubricentro, lub_id).services_used_this_month = used

    tx(body)


# =============================================================================
# WARNING LEVEL
# =============================================================================

@pytest.mark.parametrize(
    "remaining,level",
    [
        (0, WarningLevel.CRITICAL),
        (2, WarningLevel.CRITICAL),
        (3, WarningLevel.LOW),
        (5, WarningLevel.LOW),
        (6, WarningLevel.NONE),
        (UNLIMITED, WarningLevel.NONE),
    ],
)
def test_warning_level(remaining, level):
    assert warning_level(remaining) == level


# =============================================================================
# TRIAL
# =============================================================================

def test_trial_limit_scenario(tx, read, registry, trial_account, now):
    check = _check(read, registry, trial_account.id, now)
    assert check.allowed and check.remaining == 10

    for i in range(10):
        result = tx(lambda db: consume_one(db, trial_account.id, registry, now=now))
        assert result.remaining == 9 - i

    check = _check(read, registry, trial_account.id, now)
    assert not check.allowed
    assert check.code == "trial_limit_reached"
    assert check.remaining == 0

    with pytest.raises(LimitExceeded):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    lub = _get(read, trial_account.id)
    assert lub.services_used_this_month == 10
    assert lub.services_used_total == 10
    assert read(lambda db: get_usage_history(db, trial_account.id)) == {"2026-03": 10}


def test_trial_expired(tx, read, registry, trial_account):
    _set_used(tx, trial_account.id, 3)
    at_end = trial_account.trial_ends_at
    check = _check(read, registry, trial_account.id, at_end)

    assert not check.allowed
    assert check.code == "trial_expired"
    # el saldo del trial se informa igual aunque ya no se pueda consumir
    assert check.remaining == 7

    before_end = _check(read, registry, trial_account.id, at_end - timedelta(seconds=1))
    assert before_end.allowed


def test_inactive_never_consumes(tx, read, registry, trial_account, now):
    tx(lambda db: deactivate(db, trial_account.id, now=now))

    check = _check(read, registry, trial_account.id, now)
    assert not check.allowed
    assert check.code == "inactive"

    with pytest.raises(LimitExceeded):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))


# =============================================================================
# RECURRENTE
# =============================================================================

def test_monthly_ceiling_at_49_of_50(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "basic", registry, now=now))
    _set_used(tx, trial_account.id, 49)

    check = _check(read, registry, trial_account.id, now)
    assert check.allowed and check.remaining == 1
    assert check.warning_level == WarningLevel.CRITICAL

    after = tx(lambda db: consume_one(db, trial_account.id, registry, now=now))
    assert not after.allowed
    assert after.code == "monthly_limit_reached"
    assert after.remaining == 0

    with pytest.raises(LimitExceeded):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    assert _get(read, trial_account.id).services_used_this_month == 50


def test_unlimited_plan(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "enterprise", registry, now=now))
    _set_used(tx, trial_account.id, 10_000)

    check = _check(read, registry, trial_account.id, now)
    assert check.allowed
    assert check.remaining == UNLIMITED
    assert check.unlimited
    assert check.warning_level == WarningLevel.NONE

    after = tx(lambda db: consume_one(db, trial_account.id, registry, now=now))
    assert after.remaining == UNLIMITED


def test_unresolvable_plan_is_typed_result(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "basic", registry, now=now))

    def orphan(db):
        db.get(Lubricentro, trial_account.id).plan_id = "retirado"

    tx(orphan)

    check = _check(read, registry, trial_account.id, now)
    assert not check.allowed
    assert check.code == "plan_not_found"


# =============================================================================
# PAQUETE
# =============================================================================

def test_bundle_consumption_keeps_balance(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN50", registry, now=now))

    for _ in range(3):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    lub = _get(read, trial_account.id)
    assert lub.services_remaining == 47
    assert lub.services_used_total == 3
    assert lub.services_used_total + lub.services_remaining == lub.total_services_contracted


def test_bundle_exhausted_and_expired(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN50", registry, now=now))

    def drain(db):
        lub = db.get(Lubricentro, trial_account.id)
        lub.services_used_total = 50
        lub.services_remaining = 0

    tx(drain)

    check = _check(read, registry, trial_account.id, now)
    assert not check.allowed and check.code == "bundle_exhausted"
    with pytest.raises(LimitExceeded):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    lub = _get(read, trial_account.id)
    late = _check(read, registry, trial_account.id, lub.bundle_expires_at)
    assert late.code == "bundle_expired"


# =============================================================================
# USUARIOS
# =============================================================================

def test_user_limits(tx, read, registry, trial_account, now):
    # trial: 2 usuarios, la cuenta nace con 1
    check = read(lambda db: can_add_user(db, db.get(Lubricentro, trial_account.id), registry))
    assert check.allowed and check.limit == 2 and check.remaining == 1

    after = tx(lambda db: add_user(db, trial_account.id, registry))
    assert not after.allowed and after.code == "user_limit_reached"

    with pytest.raises(LimitExceeded):
        tx(lambda db: add_user(db, trial_account.id, registry))

    tx(lambda db: activate(db, trial_account.id, "premium", registry, now=now))
    check = read(lambda db: can_add_user(db, db.get(Lubricentro, trial_account.id), registry))
    assert check.allowed and check.limit == 5 and check.remaining == 3

    explicit = read(
        lambda db: can_add_user(db, db.get(Lubricentro, trial_account.id), registry, current_user_count=5)
    )
    assert not explicit.allowed


def test_subscription_info(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN100", registry, now=now))

    info = read(lambda db: get_subscription_info(db, db.get(Lubricentro, trial_account.id), registry, now=now))

    assert info["plan_name"] == "Paquete 100 servicios"
    assert info["services_limit"] == 100
    assert info["services_remaining"] == 100
    assert info["max_users"] == 3
    assert info["days_remaining"] > 170
    assert info["consume"]["allowed"] is True


def test_activation_resets_month_history(tx, read, registry, trial_account, now):
    for _ in range(4):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    tx(lambda db: activate(db, trial_account.id, "basic", registry, now=now))

    rows = read(lambda db: db.query(UsoMensual).filter(UsoMensual.lubricentro_id == trial_account.id).all())
    assert [(r.periodo, r.servicios) for r in rows] == [("2026-03", 0)]


def test_parallel_consume_at_ceiling(file_factory, shared_registry, parallel, now):
    lub = run_transaction(file_factory, lambda db: create_lubricentro(db, nombre_fantasia="Lubri Tope", now=now))
    run_transaction(file_factory, lambda db: activate(db, lub.id, "basic", shared_registry, now=now))

    def at_49(db):
        db.get(Lubricentro, lub.id).services_used_this_month = 49

    run_transaction(file_factory, at_49)

    def attempt(i):
        return run_transaction(file_factory, lambda db: consume_one(db, lub.id, shared_registry, now=now))

    results, errors = parallel(8, attempt)

    assert len(results) == 1
    assert len(errors) == 7
    assert all(isinstance(exc, LimitExceeded) for exc in errors), errors

    db = file_factory()
    try:
        assert db.get(Lubricentro, lub.id).services_used_this_month == 50
    finally:
        db.close()
