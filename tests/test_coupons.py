"""
Cupones: emisión contra créditos, validación + vencimiento perezoso, canje exactly-once.
"""

from __future__ import annotations

import re
from datetime import timedelta

import pytest
from dateutil.relativedelta import relativedelta

from lubrisaas.database import run_transaction
from lubrisaas.errors import (
    AccountNotFound,
    AlreadyUsed,
    ConflictRetryExhausted,
    CouponNotFound,
    Expired,
    InsufficientCredits,
    InvalidState,
)
from lubrisaas.models import Cupon, Distribuidor, Lubricentro, Pago
from lubrisaas.models.enums import CuponEstado, LubricentroEstado, PagoEstado, PlanTipo
from lubrisaas.plans import SPONSORED_BUNDLE_PLAN_ID, SPONSORED_PLAN_ID
from lubrisaas.services.services_audit import AuditAction, list_audit
from lubrisaas.services.services_coupons import (
    CouponBenefits,
    delete_coupon,
    generate_code,
    issue_coupon,
    issue_coupon_batch,
    list_coupons,
    normalize_code,
    redeem_coupon,
    validate_coupon,
)
from lubrisaas.services.services_credits import create_distributor, purchase_credits
from lubrisaas.services.services_subscriptions import create_lubricentro


BUNDLE_BENEFITS = CouponBenefits(membership_months=3, total_services_contracted=100)
UNLIMITED_BENEFITS = CouponBenefits(membership_months=1, unlimited_services=True)


@pytest.fixture
def distributor(tx, session_factory, now):
    dist = tx(lambda db: create_distributor(db, name="Lubrimax SA", email="ventas@lubrimax.com"))
    purchase_credits(session_factory, dist.id, 10, now=now)
    return dist


def _dist(read, dist_id):
    return read(lambda db: db.get(Distribuidor, dist_id))


def _coupon(read, code):
    return read(lambda db: db.get(Cupon, code))


# =============================================================================
# CÓDIGOS
# =============================================================================

def test_generate_code_format(now):
    code = generate_code("lubr", now, choice=lambda alphabet: alphabet[0])
    assert code == "LUBR-2026-AAAAAA"

    assert re.fullmatch(r"HISMA-2026-[A-Z0-9]{6}", generate_code("HISMA", now))
    assert normalize_code("  hisma-2026-abc123 ") == "HISMA-2026-ABC123"


# =============================================================================
# EMISIÓN
# =============================================================================

def test_issue_consumes_one_credit(session_factory, read, distributor, now):
    cupon = issue_coupon(session_factory, distributor.id, BUNDLE_BENEFITS, validity_days=30, now=now)

    assert cupon.code.startswith("LUBR-2026-")
    assert cupon.status == CuponEstado.ACTIVE
    assert cupon.valid_until == now + timedelta(days=30)
    assert cupon.distributor_name == "Lubrimax SA"

    dist = _dist(read, distributor.id)
    assert dist.credits_available == 9
    assert dist.credits_used == 1
    assert dist.credits_purchased == 10
    assert dist.credits_available == dist.credits_purchased - dist.credits_used
    assert dist.total_coupons_generated == 1


def test_issue_batch_and_insufficient_credits(session_factory, read, distributor, now):
    cupones = issue_coupon_batch(session_factory, distributor.id, UNLIMITED_BENEFITS, quantity=4, now=now)
    assert len({c.code for c in cupones}) == 4
    assert _dist(read, distributor.id).credits_available == 6

    with pytest.raises(InsufficientCredits) as exc:
        issue_coupon_batch(session_factory, distributor.id, UNLIMITED_BENEFITS, quantity=7, now=now)
    assert exc.value.available == 6

    # Nada escrito por el intento fallido
    dist = _dist(read, distributor.id)
    assert dist.credits_available == 6
    assert len(read(lambda db: list_coupons(db, distributor_id=distributor.id))) == 4


def test_issue_without_credits(tx, session_factory, read, now):
    dist = tx(lambda db: create_distributor(db, name="Sin Saldo"))

    with pytest.raises(InsufficientCredits):
        issue_coupon(session_factory, dist.id, UNLIMITED_BENEFITS, now=now)

    assert read(lambda db: list_coupons(db, distributor_id=dist.id)) == []


def test_admin_coupon_costs_nothing(session_factory, read, now):
    cupon = issue_coupon(session_factory, None, UNLIMITED_BENEFITS, now=now)

    assert cupon.code.startswith("HISMA-2026-")
    assert cupon.distributor_id is None
    assert cupon.is_admin_coupon
    assert cupon.distributor_name == "Administración"
    assert cupon.valid_until == now + timedelta(days=90)

    admin = read(lambda db: list_coupons(db, admin_only=True))
    assert [c.code for c in admin] == [cupon.code]


def test_invalid_benefits_rejected(session_factory, distributor, now):
    with pytest.raises(InvalidState):
        issue_coupon(session_factory, distributor.id, {"membership_months": 0}, now=now)


# =============================================================================
# VALIDACIÓN
# =============================================================================

def test_validate_outcomes(session_factory, tx, read, trial_account, registry, now):
    cupon = issue_coupon(session_factory, None, BUNDLE_BENEFITS, now=now)

    missing = tx(lambda db: validate_coupon(db, "NOPE-2026-XXXXXX", now=now))
    assert not missing.valid
    assert missing.reason == "not_found"
    assert missing.message == "El código de cupón no existe"

    valid = tx(lambda db: validate_coupon(db, cupon.code.lower(), now=now))
    assert valid.valid
    assert valid.reason == "valid"
    assert valid.benefits["total_services_contracted"] == 100

    redeem_coupon(session_factory, cupon.code, trial_account.id, registry=registry, now=now)

    used = tx(lambda db: validate_coupon(db, cupon.code, now=now))
    assert not used.valid
    assert used.reason == "already_used"


def test_lazy_expiry_is_idempotent(session_factory, tx, read, now):
    cupon = issue_coupon(session_factory, None, UNLIMITED_BENEFITS, validity_days=1, now=now)
    later = now + timedelta(days=2)

    first = tx(lambda db: validate_coupon(db, cupon.code, now=later))
    second = tx(lambda db: validate_coupon(db, cupon.code, now=later))

    assert first.reason == second.reason == "expired"
    assert _coupon(read, cupon.code).status == CuponEstado.EXPIRED

    expirations = read(lambda db: list_audit(db, action=AuditAction.COUPON_EXPIRE))
    assert len(expirations) == 1


def test_validate_does_not_expire_valid_coupon(session_factory, tx, read, now):
    cupon = issue_coupon(session_factory, None, UNLIMITED_BENEFITS, validity_days=1, now=now)

    tx(lambda db: validate_coupon(db, cupon.code, now=now + timedelta(hours=23)))

    assert _coupon(read, cupon.code).status == CuponEstado.ACTIVE


# =============================================================================
# CANJE
# =============================================================================

def test_redeem_bundle_coupon_scenario(session_factory, read, registry, distributor, trial_account, now):
    cupon = issue_coupon(session_factory, distributor.id, BUNDLE_BENEFITS, now=now)

    result = redeem_coupon(session_factory, cupon.code, trial_account.id, registry=registry, actor="operador", now=now)

    expires = now + relativedelta(months=3)
    assert result.plan_id == SPONSORED_BUNDLE_PLAN_ID
    assert result.plan_kind == PlanTipo.BUNDLE
    assert result.sponsorship_expires_at == expires
    assert result.services_remaining == 100

    lub = read(lambda db: db.get(Lubricentro, trial_account.id))
    assert lub.status == LubricentroEstado.ACTIVE
    assert lub.plan_kind == PlanTipo.BUNDLE
    assert lub.total_services_contracted == 100
    assert lub.services_remaining == 100
    assert lub.services_used_total == 0
    assert lub.bundle_expires_at == expires
    assert lub.billing_cycle_end == expires
    assert lub.auto_renewal is False
    assert lub.payment_method == "coupon"
    assert lub.payment_status == PagoEstado.PAID
    assert lub.sponsorship["coupon_code"] == cupon.code
    assert lub.sponsorship["distributor_id"] == distributor.id

    used = _coupon(read, cupon.code)
    assert used.status == CuponEstado.USED
    assert used.used_by["lubricentro_id"] == trial_account.id
    assert used.used_by["activated_by"] == "operador"

    dist = _dist(read, distributor.id)
    assert dist.total_coupons_used == 1
    assert dist.active_lubricentros == 1
    assert dist.credits_available == 9

    pagos = read(lambda db: db.query(Pago).filter(Pago.lubricentro_id == trial_account.id).all())
    assert [(p.amount, p.method, p.coupon_code) for p in pagos] == [(0.0, "coupon", cupon.code)]


def test_redeem_unlimited_coupon_extends_from_current_sponsorship(session_factory, read, registry, trial_account, now):
    first = issue_coupon(session_factory, None, UNLIMITED_BENEFITS, now=now)
    second = issue_coupon(session_factory, None, CouponBenefits(membership_months=2), now=now)

    redeem_coupon(session_factory, first.code, trial_account.id, registry=registry, now=now)
    result = redeem_coupon(
        session_factory, second.code, trial_account.id, registry=registry, now=now + timedelta(days=10)
    )

    # La membresía se acumula desde el vencimiento vigente
    assert result.sponsorship_expires_at == now + relativedelta(months=1) + relativedelta(months=2)
    assert result.plan_id == SPONSORED_PLAN_ID

    lub = read(lambda db: db.get(Lubricentro, trial_account.id))
    assert lub.plan_kind == PlanTipo.RECURRING
    assert lub.billing_cycle_end == result.sponsorship_expires_at
    assert lub.auto_renewal is False
    assert lub.total_services_contracted is None


def test_redeem_errors(session_factory, read, registry, trial_account, now):
    with pytest.raises(CouponNotFound):
        redeem_coupon(session_factory, "NOPE-2026-XXXXXX", trial_account.id, registry=registry, now=now)

    cupon = issue_coupon(session_factory, None, UNLIMITED_BENEFITS, validity_days=5, now=now)

    with pytest.raises(AccountNotFound):
        redeem_coupon(session_factory, cupon.code, 9999, registry=registry, now=now)
    assert _coupon(read, cupon.code).status == CuponEstado.ACTIVE

    with pytest.raises(Expired):
        redeem_coupon(session_factory, cupon.code, trial_account.id, registry=registry, now=now + timedelta(days=6))

    lub = read(lambda db: db.get(Lubricentro, trial_account.id))
    assert lub.status == LubricentroEstado.TRIAL


def test_redeem_twice_fails_with_already_used(session_factory, tx, registry, now):
    cupon = issue_coupon(session_factory, None, UNLIMITED_BENEFITS, now=now)
    a = tx(lambda db: create_lubricentro(db, nombre_fantasia="A", now=now))
    b = tx(lambda db: create_lubricentro(db, nombre_fantasia="B", now=now))

    redeem_coupon(session_factory, cupon.code, a.id, registry=registry, now=now)
    with pytest.raises(AlreadyUsed):
        redeem_coupon(session_factory, cupon.code, b.id, registry=registry, now=now)


def test_concurrent_redemption_is_exactly_once(file_factory, shared_registry, parallel, now):
    cupon = issue_coupon(file_factory, None, UNLIMITED_BENEFITS, now=now)
    accounts = [
        run_transaction(file_factory, lambda db, i=i: create_lubricentro(db, nombre_fantasia=f"Lubri {i}", now=now)).id
        for i in range(8)
    ]

    def attempt(i):
        redeem_coupon(file_factory, cupon.code, accounts[i], registry=shared_registry, now=now)
        return accounts[i]

    winners, errors = parallel(len(accounts), attempt)

    assert len(winners) == 1
    assert len(errors) == len(accounts) - 1
    assert not any(isinstance(exc, ConflictRetryExhausted) for exc in errors)
    assert all(isinstance(exc, AlreadyUsed) for exc in errors), errors

    db = file_factory()
    try:
        used = db.get(Cupon, cupon.code)
        assert used.status == CuponEstado.USED
        assert used.used_by["lubricentro_id"] == winners[0]
        assert db.query(Pago).filter(Pago.coupon_code == cupon.code).count() == 1
        active = db.query(Lubricentro).filter(Lubricentro.status == LubricentroEstado.ACTIVE).all()
        assert [lub.id for lub in active] == winners
    finally:
        db.close()


def test_concurrent_lazy_expiry_audits_once(file_factory, parallel, now):
    cupon = issue_coupon(file_factory, None, UNLIMITED_BENEFITS, validity_days=1, now=now)
    later = now + timedelta(days=2)

    def attempt(i):
        return run_transaction(file_factory, lambda db: validate_coupon(db, cupon.code, now=later))

    results, errors = parallel(8, attempt)

    assert errors == []
    assert {r.reason for r in results} == {"expired"}

    db = file_factory()
    try:
        assert db.get(Cupon, cupon.code).status == CuponEstado.EXPIRED
        assert len(list_audit(db, action=AuditAction.COUPON_EXPIRE)) == 1
    finally:
        db.close()


# =============================================================================
# BORRADO
# =============================================================================

def test_delete_coupon_is_audited(session_factory, tx, read, now):
    cupon = issue_coupon(session_factory, None, UNLIMITED_BENEFITS, now=now)

    tx(lambda db: delete_coupon(db, cupon.code, actor="admin"))

    assert _coupon(read, cupon.code) is None
    entries = read(lambda db: list_audit(db, action=AuditAction.COUPON_DELETE))
    assert len(entries) == 1 and entries[0].usuario == "admin"

    with pytest.raises(CouponNotFound):
        tx(lambda db: delete_coupon(db, cupon.code))
