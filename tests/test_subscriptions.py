"""
Máquina de estados de suscripción: alta, activación, trial, baja, pagos, paquetes.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from dateutil.relativedelta import relativedelta

from lubrisaas.errors import AccountNotFound, InvalidState, PlanNotFound
from lubrisaas.models import HistorialRenovacion, Lubricentro, Pago
from lubrisaas.models.enums import (
    HistorialAccion,
    LubricentroEstado,
    MotivoInactivacion,
    PagoEstado,
    PeriodoRenovacion,
    PlanTipo,
)
from lubrisaas.models.saas import ModoInactivo, ModoPaquete, ModoRecurrente, ModoTrial
from lubrisaas.services.services_audit import AuditAction, list_audit
from lubrisaas.services.services_subscriptions import (
    PaymentInput,
    activate,
    deactivate,
    expire_now,
    extend_trial,
    purchase_additional_services,
    record_payment,
    renew_now,
    reset_monthly_counter,
    reset_to_trial,
)
from lubrisaas.services.services_usage import consume_one


def _get(read, lub_id):
    return read(lambda db: db.get(Lubricentro, lub_id))


def _actions(read, lub_id):
    rows = read(
        lambda db: db.query(HistorialRenovacion)
        .filter(HistorialRenovacion.lubricentro_id == lub_id)
        .order_by(HistorialRenovacion.id.asc())
        .all()
    )
    return [r.action for r in rows]


# =============================================================================
# ALTA
# =============================================================================

def test_new_account_starts_in_trial(read, trial_account, now):
    lub = _get(read, trial_account.id)

    assert lub.status == LubricentroEstado.TRIAL
    assert lub.trial_ends_at == now + timedelta(days=7)
    assert lub.email == "test@lubri.com"
    assert lub.plan_id is None
    assert isinstance(lub.modo, ModoTrial)

    entries = read(lambda db: list_audit(db, lubricentro_id=lub.id))
    assert [e.accion for e in entries] == [AuditAction.ACCOUNT_CREATE]


# =============================================================================
# ACTIVACIÓN
# =============================================================================

def test_activate_recurring_monthly(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "basic", registry, actor="admin", now=now))

    lub = _get(read, trial_account.id)
    assert lub.status == LubricentroEstado.ACTIVE
    assert lub.plan_kind == PlanTipo.RECURRING
    assert lub.billing_cycle_end == now + relativedelta(months=1)
    assert lub.next_payment_date == lub.billing_cycle_end
    assert lub.payment_status == PagoEstado.PENDING
    assert lub.auto_renewal is True
    assert lub.trial_ends_at is None
    assert lub.services_used_this_month == 0
    assert isinstance(lub.modo, ModoRecurrente)
    assert _actions(read, lub.id) == [HistorialAccion.ACTIVATION]


def test_activate_semiannual_with_payment(tx, read, registry, trial_account, now):
    tx(
        lambda db: activate(
            db,
            trial_account.id,
            "premium",
            registry,
            renewal_period=PeriodoRenovacion.SEMIANNUAL,
            payment=PaymentInput(amount=22500, method="Transfer", reference="TRX-1"),
            now=now,
        )
    )

    lub = _get(read, trial_account.id)
    assert lub.billing_cycle_end == now + relativedelta(months=6)
    assert lub.renewal_period == PeriodoRenovacion.SEMIANNUAL
    assert lub.payment_status == PagoEstado.PAID
    assert lub.payment_method == "transfer"

    pagos = read(lambda db: db.query(Pago).filter(Pago.lubricentro_id == lub.id).all())
    assert [(p.amount, p.reference) for p in pagos] == [(22500.0, "TRX-1")]


def test_activate_bundle(tx, read, registry, trial_account, now):
    for _ in range(2):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    tx(lambda db: activate(db, trial_account.id, "PLAN100", registry, now=now))

    lub = _get(read, trial_account.id)
    assert lub.plan_kind == PlanTipo.BUNDLE
    assert lub.total_services_contracted == 100
    assert lub.services_remaining == 100
    assert lub.services_used_total == 0
    assert lub.bundle_expires_at == now + relativedelta(months=6)
    assert lub.billing_cycle_end == lub.bundle_expires_at
    assert lub.auto_renewal is False
    assert isinstance(lub.modo, ModoPaquete)


def test_activate_unknown_plan_leaves_account_untouched(tx, read, registry, trial_account, now):
    with pytest.raises(PlanNotFound):
        tx(lambda db: activate(db, trial_account.id, "no-existe", registry, now=now))

    lub = _get(read, trial_account.id)
    assert lub.status == LubricentroEstado.TRIAL
    assert lub.version == trial_account.version


def test_unknown_account(tx, registry):
    with pytest.raises(AccountNotFound):
        tx(lambda db: activate(db, 9999, "basic", registry))


# =============================================================================
# TRIAL
# =============================================================================

def test_trial_extension_compounds_from_current_end(tx, read, trial_account, now):
    tx(lambda db: extend_trial(db, trial_account.id, 3, now=now))
    # Aunque pase el tiempo, se suma al fin actual y no a "ahora"
    tx(lambda db: extend_trial(db, trial_account.id, 5, now=now + timedelta(days=2)))

    lub = _get(read, trial_account.id)
    assert lub.trial_ends_at == now + timedelta(days=7 + 3 + 5)
    assert _actions(read, lub.id) == [HistorialAccion.TRIAL_EXTENSION, HistorialAccion.TRIAL_EXTENSION]


def test_trial_extension_rules(tx, registry, trial_account, now):
    with pytest.raises(InvalidState):
        tx(lambda db: extend_trial(db, trial_account.id, 0, now=now))

    tx(lambda db: activate(db, trial_account.id, "basic", registry, now=now))
    with pytest.raises(InvalidState):
        tx(lambda db: extend_trial(db, trial_account.id, 5, now=now))


def test_reset_to_trial_from_bundle(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN50", registry, now=now))
    later = now + timedelta(days=30)

    tx(lambda db: reset_to_trial(db, trial_account.id, actor="admin", now=later))

    lub = _get(read, trial_account.id)
    assert lub.status == LubricentroEstado.TRIAL
    assert lub.trial_ends_at == later + timedelta(days=7)
    assert lub.plan_id is None
    assert lub.plan_kind is None
    assert lub.total_services_contracted is None
    assert lub.billing_cycle_end is None

    with pytest.raises(InvalidState):
        tx(lambda db: reset_to_trial(db, trial_account.id, now=later))


# =============================================================================
# BAJA / CONTADORES / PAGOS
# =============================================================================

def test_deactivate_non_payment(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "basic", registry, now=now))
    tx(lambda db: deactivate(db, trial_account.id, MotivoInactivacion.NON_PAYMENT, now=now, notes="sin pago"))

    lub = _get(read, trial_account.id)
    assert lub.status == LubricentroEstado.INACTIVE
    assert lub.inactive_reason == MotivoInactivacion.NON_PAYMENT
    assert lub.inactive_since == now
    assert lub.payment_status == PagoEstado.OVERDUE
    assert lub.auto_renewal is False
    assert isinstance(lub.modo, ModoInactivo)
    assert lub.modo.previous_plan_id == "basic"

    with pytest.raises(InvalidState):
        tx(lambda db: deactivate(db, trial_account.id, now=now))

    # inactive -> active
    lub = tx(lambda db: activate(db, trial_account.id, "starter", registry, now=now))
    assert lub.status == LubricentroEstado.ACTIVE
    assert lub.inactive_reason is None


def test_reset_monthly_counter_keeps_bundle_balance(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN50", registry, now=now))
    for _ in range(3):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    tx(lambda db: reset_monthly_counter(db, trial_account.id, actor="admin", now=now))

    lub = _get(read, trial_account.id)
    assert lub.services_used_this_month == 0
    assert lub.services_remaining == 47
    assert lub.status == LubricentroEstado.ACTIVE
    assert lub.last_manual_reset_at == now
    assert _actions(read, lub.id)[-1] == HistorialAccion.MANUAL_RESET


def test_record_payment_never_changes_status(tx, read, trial_account, now):
    pago = tx(lambda db: record_payment(db, trial_account.id, amount=1500, method="MercadoPago", now=now))

    lub = _get(read, trial_account.id)
    assert pago.amount == 1500.0
    assert pago.currency == "ARS"
    assert lub.status == LubricentroEstado.TRIAL
    assert lub.payment_status == PagoEstado.PAID
    assert lub.last_payment_at == now

    with pytest.raises(InvalidState):
        tx(lambda db: record_payment(db, trial_account.id, amount=-1, method="cash"))


# =============================================================================
# RENOVACIÓN / VENCIMIENTO MANUAL
# =============================================================================

def test_manual_renew_and_expire(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "basic", registry, now=now))
    first_end = now + relativedelta(months=1)

    lub = tx(lambda db: renew_now(db, trial_account.id, actor="admin", now=now + timedelta(days=3)))
    assert lub.billing_cycle_end == first_end + relativedelta(months=1)
    assert lub.renewal_count == 1

    lub = tx(lambda db: expire_now(db, trial_account.id, now=now + timedelta(days=4)))
    assert lub.status == LubricentroEstado.INACTIVE
    assert lub.inactive_reason == MotivoInactivacion.SUBSCRIPTION_EXPIRED

    with pytest.raises(InvalidState):
        tx(lambda db: renew_now(db, trial_account.id, now=now))


def test_bundle_is_not_renewable(tx, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN50", registry, now=now))

    with pytest.raises(InvalidState):
        tx(lambda db: renew_now(db, trial_account.id, now=now))


# =============================================================================
# SERVICIOS ADICIONALES
# =============================================================================

def test_purchase_additional_services(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN50", registry, now=now))
    for _ in range(3):
        tx(lambda db: consume_one(db, trial_account.id, registry, now=now))

    expiry = now + relativedelta(months=6)
    tx(
        lambda db: purchase_additional_services(
            db,
            trial_account.id,
            20,
            payment=PaymentInput(amount=700, method="cash"),
            now=now + timedelta(days=10),
        )
    )

    lub = _get(read, trial_account.id)
    assert lub.total_services_contracted == 70
    assert lub.services_remaining == 67
    assert lub.services_used_total == 3
    assert lub.bundle_expires_at == expiry + relativedelta(months=6)
    assert lub.billing_cycle_end == lub.bundle_expires_at
    assert lub.payment_status == PagoEstado.PAID


def test_additional_services_reactivate_expired_bundle(tx, read, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "PLAN50", registry, now=now))
    tx(lambda db: expire_now(db, trial_account.id, now=now + relativedelta(months=6)))

    later = now + relativedelta(months=8)
    tx(lambda db: purchase_additional_services(db, trial_account.id, 10, now=later))

    lub = _get(read, trial_account.id)
    assert lub.status == LubricentroEstado.ACTIVE
    assert lub.bundle_expires_at == later + relativedelta(months=6)
    assert lub.services_remaining == 60


def test_additional_services_require_bundle(tx, registry, trial_account, now):
    tx(lambda db: activate(db, trial_account.id, "basic", registry, now=now))

    with pytest.raises(InvalidState):
        tx(lambda db: purchase_additional_services(db, trial_account.id, 10, now=now))
