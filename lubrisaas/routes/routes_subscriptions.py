# lubrisaas/routes/routes_subscriptions.py
"""
Suscripción y uso por lubricentro – LubriSaaS (JSON)

✔ Alta (trial), activación, desactivación, extensión de trial, reinicio a trial
✔ Pagos, reset de contador, renovación / vencimiento manual
✔ Consulta y consumo de servicios (usage meter), chequeo de usuarios
✔ Mutaciones vía run_transaction (reintento ante conflicto de escritura)
✔ La auditoría vive en services_* (source of truth), no en rutas
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lubrisaas.database import run_transaction
from lubrisaas.deps import get_actor, get_db, get_plan_registry, get_session_factory
from lubrisaas.logging_config import logger
from lubrisaas.models import Lubricentro
from lubrisaas.models.time import as_iso
from lubrisaas.schemas import (
    ActivateIn,
    AdditionalServicesIn,
    DeactivateIn,
    ExtendTrialIn,
    LubricentroCreate,
    PaymentIn,
    ResetTrialIn,
)
from lubrisaas.services.services_plans import PlanRegistry
from lubrisaas.services.services_subscriptions import (
    activate,
    create_lubricentro,
    deactivate,
    expire_now,
    extend_trial,
    get_history,
    list_payments,
    purchase_additional_services,
    record_payment,
    renew_now,
    reset_monthly_counter,
    reset_to_trial,
)
from lubrisaas.services.services_usage import (
    add_user,
    can_add_user,
    can_consume,
    consume_one,
    get_lubricentro_or_raise,
    get_subscription_info,
    get_usage_history,
)


router = APIRouter(prefix="/lubricentros", tags=["lubricentros"])


# =========================================================
# SERIALIZACIÓN
# =========================================================

def lubricentro_as_dict(lub: Lubricentro) -> dict[str, Any]:
    return {
        "id": lub.id,
        "nombre_fantasia": lub.nombre_fantasia,
        "email": lub.email,
        "status": lub.status.value,
        "modo": type(lub.modo).__name__,
        "plan_id": lub.plan_id,
        "plan_kind": lub.plan_kind.value if lub.plan_kind else None,
        "trial_ends_at": as_iso(lub.trial_ends_at),
        "billing_cycle_end": as_iso(lub.billing_cycle_end),
        "next_payment_date": as_iso(lub.next_payment_date),
        "renewal_period": lub.renewal_period.value if lub.renewal_period else None,
        "auto_renewal": bool(lub.auto_renewal),
        "payment_status": lub.payment_status.value if lub.payment_status else None,
        "payment_method": lub.payment_method,
        "last_payment_at": as_iso(lub.last_payment_at),
        "total_services_contracted": lub.total_services_contracted,
        "services_remaining": lub.services_remaining,
        "bundle_expires_at": as_iso(lub.bundle_expires_at),
        "services_used_this_month": lub.services_used_this_month,
        "services_used_total": lub.services_used_total,
        "active_user_count": lub.active_user_count,
        "sponsorship": lub.sponsorship,
        "renewal_count": lub.renewal_count,
        "last_renewal_at": as_iso(lub.last_renewal_at),
        "inactive_reason": lub.inactive_reason.value if lub.inactive_reason else None,
        "inactive_since": as_iso(lub.inactive_since),
    }


def _ok(lub: Lubricentro, **extra) -> dict[str, Any]:
    return {"ok": True, "lubricentro": lubricentro_as_dict(lub), **extra}


# =========================================================
# ALTA / CONSULTA
# =========================================================

@router.post("", status_code=201)
def create_lubricentro_route(
    body: LubricentroCreate,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: create_lubricentro(db, nombre_fantasia=body.nombre_fantasia, email=body.email, actor=actor),
        label="account.create",
    )
    logger.info("[SUBS] lubricentro creado id=%s trial_ends_at=%s", lub.id, as_iso(lub.trial_ends_at))
    return _ok(lub)


@router.get("/{lubricentro_id}")
def get_lubricentro_route(lubricentro_id: int, db: Session = Depends(get_db)):
    return _ok(get_lubricentro_or_raise(db, lubricentro_id))


@router.get("/{lubricentro_id}/subscription")
def subscription_info_route(
    lubricentro_id: int,
    db: Session = Depends(get_db),
    registry: PlanRegistry = Depends(get_plan_registry),
):
    lub = get_lubricentro_or_raise(db, lubricentro_id)
    return {"ok": True, "subscription": get_subscription_info(db, lub, registry)}


@router.get("/{lubricentro_id}/history")
def history_route(lubricentro_id: int, limit: int = 50, db: Session = Depends(get_db)):
    rows = get_history(db, lubricentro_id, limit=limit)
    return {
        "ok": True,
        "history": [
            {
                "action": h.action.value,
                "details": h.details,
                "actor": h.actor,
                "timestamp": as_iso(h.created_at),
            }
            for h in rows
        ],
    }


@router.get("/{lubricentro_id}/payments")
def payments_route(lubricentro_id: int, limit: int = 50, db: Session = Depends(get_db)):
    rows = list_payments(db, lubricentro_id, limit=limit)
    return {
        "ok": True,
        "payments": [
            {
                "id": p.id,
                "amount": p.amount,
                "currency": p.currency,
                "method": p.method,
                "reference": p.reference,
                "coupon_code": p.coupon_code,
                "date": as_iso(p.created_at),
            }
            for p in rows
        ],
    }


# =========================================================
# USO
# =========================================================

@router.get("/{lubricentro_id}/usage/check")
def usage_check_route(
    lubricentro_id: int,
    db: Session = Depends(get_db),
    registry: PlanRegistry = Depends(get_plan_registry),
):
    lub = get_lubricentro_or_raise(db, lubricentro_id)
    return {"ok": True, **can_consume(db, lub, registry).as_dict()}


@router.post("/{lubricentro_id}/usage/consume")
def usage_consume_route(
    lubricentro_id: int,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
):
    check = run_transaction(
        session_factory,
        lambda db: consume_one(db, lubricentro_id, registry),
        label="usage.consume",
    )
    return {"ok": True, **check.as_dict()}


@router.get("/{lubricentro_id}/usage/history")
def usage_history_route(lubricentro_id: int, db: Session = Depends(get_db)):
    get_lubricentro_or_raise(db, lubricentro_id)
    return {"ok": True, "usage_history": get_usage_history(db, lubricentro_id)}


@router.get("/{lubricentro_id}/users/check")
def users_check_route(
    lubricentro_id: int,
    current: Optional[int] = None,
    db: Session = Depends(get_db),
    registry: PlanRegistry = Depends(get_plan_registry),
):
    lub = get_lubricentro_or_raise(db, lubricentro_id)
    return {"ok": True, **can_add_user(db, lub, registry, current_user_count=current).as_dict()}


@router.post("/{lubricentro_id}/users")
def users_add_route(
    lubricentro_id: int,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
):
    check = run_transaction(
        session_factory,
        lambda db: add_user(db, lubricentro_id, registry),
        label="users.add",
    )
    return {"ok": True, **check.as_dict()}


# =========================================================
# TRANSICIONES
# =========================================================

@router.post("/{lubricentro_id}/activate")
def activate_route(
    lubricentro_id: int,
    body: ActivateIn,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: activate(
            db,
            lubricentro_id,
            body.plan_id,
            registry,
            renewal_period=body.renewal_period,
            payment=body.payment.to_input() if body.payment else None,
            actor=actor,
        ),
        label="subscription.activate",
    )
    logger.info("[SUBS] activate lubricentro_id=%s plan=%s actor=%s", lub.id, lub.plan_id, actor)
    return _ok(lub)


@router.post("/{lubricentro_id}/deactivate")
def deactivate_route(
    lubricentro_id: int,
    body: DeactivateIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: deactivate(db, lubricentro_id, body.reason, actor=actor, notes=body.notes),
        label="subscription.deactivate",
    )
    logger.info("[SUBS] deactivate lubricentro_id=%s reason=%s actor=%s", lub.id, body.reason.value, actor)
    return _ok(lub)


@router.post("/{lubricentro_id}/extend-trial")
def extend_trial_route(
    lubricentro_id: int,
    body: ExtendTrialIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: extend_trial(db, lubricentro_id, body.days, actor=actor),
        label="trial.extend",
    )
    return _ok(lub)


@router.post("/{lubricentro_id}/reset-trial")
def reset_trial_route(
    lubricentro_id: int,
    body: ResetTrialIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: reset_to_trial(db, lubricentro_id, days=body.days, actor=actor),
        label="subscription.reset_trial",
    )
    return _ok(lub)


@router.post("/{lubricentro_id}/payments", status_code=201)
def record_payment_route(
    lubricentro_id: int,
    body: PaymentIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    def _tx(db: Session):
        pago = record_payment(
            db,
            lubricentro_id,
            amount=body.amount,
            method=body.method,
            reference=body.reference,
            actor=actor,
        )
        return pago, get_lubricentro_or_raise(db, lubricentro_id)

    pago, lub = run_transaction(session_factory, _tx, label="payment.record")
    logger.info("[SUBS] pago lubricentro_id=%s amount=%s method=%s", lub.id, pago.amount, pago.method)
    return _ok(lub, payment_id=pago.id)


@router.post("/{lubricentro_id}/reset-counter")
def reset_counter_route(
    lubricentro_id: int,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: reset_monthly_counter(db, lubricentro_id, actor=actor),
        label="usage.reset",
    )
    return _ok(lub)


@router.post("/{lubricentro_id}/renew")
def renew_route(
    lubricentro_id: int,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: renew_now(db, lubricentro_id, actor=actor),
        label="subscription.renew",
    )
    logger.info("[SUBS] renew manual lubricentro_id=%s hasta=%s", lub.id, as_iso(lub.billing_cycle_end))
    return _ok(lub)


@router.post("/{lubricentro_id}/expire")
def expire_route(
    lubricentro_id: int,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: expire_now(db, lubricentro_id, actor=actor),
        label="subscription.expire",
    )
    logger.info("[SUBS] expire manual lubricentro_id=%s", lub.id)
    return _ok(lub)


@router.post("/{lubricentro_id}/additional-services")
def additional_services_route(
    lubricentro_id: int,
    body: AdditionalServicesIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    lub = run_transaction(
        session_factory,
        lambda db: purchase_additional_services(
            db,
            lubricentro_id,
            body.quantity,
            payment=body.payment.to_input() if body.payment else None,
            actor=actor,
        ),
        label="bundle.topup",
    )
    return _ok(lub)
