# lubrisaas/services/services_subscriptions.py
"""
services_subscriptions.py – LubriSaaS

✔ Máquina de estados de la cuenta: trial / active / inactive
✔ Activación de planes recurrentes (mensual / semestral) y paquetes
✔ Extensión de trial acumulativa (desde el fin actual, no desde ahora)
✔ Pagos append-only (registrar un pago NUNCA cambia el estado)
✔ Primitivas renew_billing_cycle / expire_subscription compartidas
  por acciones manuales y el batch de renovaciones
✔ Historial de renovaciones + auditoría en la misma transacción

=========================================================
TRANSICIONES
=========================================================
  trial    -> active     (activate / canje de cupón)
  trial    -> inactive   (deactivate / trial vencido)
  active   -> inactive   (deactivate / expire)
  inactive -> active     (activate / canje / compra de servicios)
  active   -> trial      (reset_to_trial, administrativo)
  inactive -> trial      (reset_to_trial, administrativo)

Todas las funciones:
- reciben db: Session y hacen flush (el commit lo hace run_transaction)
- fallan con AccountNotFound si la cuenta no existe
- rechazan (InvalidState) en vez de corregir silenciosamente
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy.orm import Session

from lubrisaas.config import settings
from lubrisaas.errors import InvalidState
from lubrisaas.models import HistorialRenovacion, Lubricentro, Pago
from lubrisaas.models.enums import (
    HistorialAccion,
    LubricentroEstado,
    MotivoInactivacion,
    PagoEstado,
    PeriodoRenovacion,
    PlanTipo,
)
from lubrisaas.models.time import add_months, as_iso, utcnow
from lubrisaas.services.services_audit import AuditAction, audit
from lubrisaas.services.services_plans import PlanRegistry
from lubrisaas.services.services_usage import get_lubricentro_or_raise, set_month_usage


# Extensión de un paquete al comprar servicios adicionales
BUNDLE_TOPUP_MONTHS = 6


# =========================================================
# TIPOS
# =========================================================

@dataclass(frozen=True)
class PaymentInput:
    amount: float
    method: str
    reference: Optional[str] = None


# =========================================================
# HELPERS INTERNOS
# =========================================================

def _history(
    db: Session,
    lub: Lubricentro,
    *,
    action: HistorialAccion,
    details: str,
    actor: str,
    now: datetime,
) -> HistorialRenovacion:
    entry = HistorialRenovacion(
        lubricentro_id=lub.id,
        action=action,
        details=details,
        actor=actor or "sistema",
        created_at=now,
    )
    db.add(entry)
    return entry


def _period(value: Union[str, PeriodoRenovacion, None]) -> PeriodoRenovacion:
    if value is None:
        return PeriodoRenovacion.MONTHLY
    try:
        return PeriodoRenovacion(value)
    except ValueError:
        raise InvalidState(f"Período de renovación inválido: {value}")


# =========================================================
# ALTA
# =========================================================

def create_lubricentro(
    db: Session,
    *,
    nombre_fantasia: str,
    email: Optional[str] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    """Nueva cuenta: siempre nace en trial."""
    ts = now or utcnow()
    nombre = (nombre_fantasia or "").strip()
    if not nombre:
        raise InvalidState("El nombre de fantasía es requerido")

    lub = Lubricentro(
        nombre_fantasia=nombre,
        email=(email or "").strip().lower() or None,
        services_used_this_month=0,
        services_used_total=0,
        active_user_count=1,
        renewal_count=0,
        created_at=ts,
    )
    lub.set_trial_fields(now=ts, trial_days=settings.TRIAL_DURATION_DAYS)
    db.add(lub)
    db.flush()

    audit(
        db,
        action=AuditAction.ACCOUNT_CREATE,
        actor=actor,
        lubricentro_id=lub.id,
        payload={"nombre_fantasia": nombre, "trial_ends_at": as_iso(lub.trial_ends_at)},
    )
    return lub


# =========================================================
# ACTIVACIÓN
# =========================================================

def activate(
    db: Session,
    lubricentro_id: int,
    plan_id: str,
    registry: PlanRegistry,
    *,
    renewal_period: Union[str, PeriodoRenovacion, None] = PeriodoRenovacion.MONTHLY,
    payment: Optional[PaymentInput] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    """
    Activa un plan.

    - recurrente: ciclo = ahora + 1 ó 6 meses, pago pendiente (o pagado si viene pago),
      auto-renovación activa, uso del mes en cero
    - paquete: vence ahora + validity_months, remaining = total, used_total = 0,
      sin auto-renovación
    - plan inexistente -> PlanNotFound (la cuenta no se toca)
    """
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)
    spec = registry.resolve(db, plan_id)
    if not spec.is_active:
        raise InvalidState(f"El plan {spec.id} no está disponible")

    prev_status = lub.status
    period = _period(renewal_period)

    if spec.is_bundle:
        total = int(spec.total_services or 0)
        if total <= 0:
            raise InvalidState(f"El plan {spec.id} no define cantidad de servicios")
        expires = add_months(ts, int(spec.validity_months or 1))
        lub.set_bundle_fields(plan_id=spec.id, total_services=total, expires_at=expires)
        detail = f"plan={spec.id} paquete={total} servicios vence={expires.date().isoformat()}"
    else:
        cycle_end = add_months(ts, period.months)
        lub.set_recurring_fields(
            plan_id=spec.id,
            renewal_period=period,
            cycle_end=cycle_end,
            auto_renewal=True,
        )
        detail = f"plan={spec.id} periodo={period.value} ciclo_hasta={cycle_end.date().isoformat()}"

    lub.payment_status = PagoEstado.PENDING
    lub.subscription_started_at = ts
    db.flush()

    set_month_usage(db, lub.id, ts, 0)

    if payment is not None:
        record_payment(
            db,
            lub.id,
            amount=payment.amount,
            method=payment.method,
            reference=payment.reference,
            actor=actor,
            now=ts,
        )

    _history(db, lub, action=HistorialAccion.ACTIVATION, details=detail, actor=actor, now=ts)
    audit(
        db,
        action=AuditAction.SUBSCRIPTION_ACTIVATE,
        actor=actor,
        lubricentro_id=lub.id,
        payload={
            "from_status": prev_status.value,
            "plan_id": spec.id,
            "plan_kind": spec.kind.value,
            "renewal_period": None if spec.is_bundle else period.value,
            "paid": payment is not None,
        },
    )
    db.flush()
    return lub


# =========================================================
# TRIAL
# =========================================================

def extend_trial(
    db: Session,
    lubricentro_id: int,
    days: int,
    *,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    """Suma días al fin ACTUAL del trial (extensiones sucesivas se acumulan)."""
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)

    if lub.status != LubricentroEstado.TRIAL:
        raise InvalidState("Solo se puede extender el período de prueba de cuentas en trial")

    d = int(days or 0)
    if d < 1:
        raise InvalidState("La extensión debe ser de al menos 1 día")

    prev_end = lub.trial_ends_at or ts
    lub.trial_ends_at = prev_end + timedelta(days=d)
    db.flush()

    _history(
        db,
        lub,
        action=HistorialAccion.TRIAL_EXTENSION,
        details=f"+{d} días ({as_iso(prev_end)} -> {as_iso(lub.trial_ends_at)})",
        actor=actor,
        now=ts,
    )
    audit(
        db,
        action=AuditAction.TRIAL_EXTEND,
        actor=actor,
        lubricentro_id=lub.id,
        payload={"days": d, "trial_ends_at": as_iso(lub.trial_ends_at)},
    )
    db.flush()
    return lub


def reset_to_trial(
    db: Session,
    lubricentro_id: int,
    *,
    days: Optional[int] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    """Reinicio administrativo a trial (active/inactive -> trial)."""
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)

    if lub.status == LubricentroEstado.TRIAL:
        raise InvalidState("La cuenta ya está en período de prueba; use extend_trial")

    prev_status = lub.status
    prev_plan = lub.plan_id
    lub.set_trial_fields(now=ts, trial_days=days or settings.TRIAL_DURATION_DAYS)
    lub.sponsorship = None
    db.flush()

    set_month_usage(db, lub.id, ts, 0)

    audit(
        db,
        action=AuditAction.SUBSCRIPTION_RESET_TRIAL,
        actor=actor,
        lubricentro_id=lub.id,
        payload={
            "from_status": prev_status.value,
            "previous_plan_id": prev_plan,
            "trial_ends_at": as_iso(lub.trial_ends_at),
        },
    )
    db.flush()
    return lub


# =========================================================
# DESACTIVACIÓN / CONTADORES / PAGOS
# =========================================================

def deactivate(
    db: Session,
    lubricentro_id: int,
    reason: Union[str, MotivoInactivacion] = MotivoInactivacion.MANUAL,
    *,
    actor: str = "sistema",
    now: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Lubricentro:
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)

    if lub.status == LubricentroEstado.INACTIVE:
        raise InvalidState("La cuenta ya está inactiva")

    motivo = MotivoInactivacion(reason)
    prev_status = lub.status

    lub.status = LubricentroEstado.INACTIVE
    lub.inactive_reason = motivo
    lub.inactive_since = ts
    lub.auto_renewal = False
    if motivo == MotivoInactivacion.NON_PAYMENT:
        lub.payment_status = PagoEstado.OVERDUE
    db.flush()

    audit(
        db,
        action=AuditAction.SUBSCRIPTION_DEACTIVATE,
        actor=actor,
        lubricentro_id=lub.id,
        payload={"from_status": prev_status.value, "reason": motivo.value, "notes": notes},
    )
    return lub


def reset_monthly_counter(
    db: Session,
    lubricentro_id: int,
    *,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    """Pone en cero el uso del mes. No toca status ni services_remaining."""
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)

    prev = int(lub.services_used_this_month or 0)
    lub.services_used_this_month = 0
    lub.last_manual_reset_at = ts
    db.flush()

    set_month_usage(db, lub.id, ts, 0)

    _history(
        db,
        lub,
        action=HistorialAccion.MANUAL_RESET,
        details=f"servicios del mes {prev} -> 0",
        actor=actor,
        now=ts,
    )
    audit(db, action=AuditAction.USAGE_RESET, actor=actor, lubricentro_id=lub.id, payload={"previous": prev})
    db.flush()
    return lub


def record_payment(
    db: Session,
    lubricentro_id: int,
    *,
    amount: float,
    method: str,
    reference: Optional[str] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Pago:
    """Registra un pago. Nunca cambia el status de la cuenta."""
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)

    amt = float(amount)
    if amt < 0:
        raise InvalidState("El monto del pago no puede ser negativo")
    m = (method or "").strip().lower()
    if not m:
        raise InvalidState("El método de pago es requerido")

    pago = Pago(
        lubricentro_id=lub.id,
        amount=amt,
        currency=settings.DEFAULT_CURRENCY,
        method=m,
        reference=reference,
        status="completed",
        created_by=actor,
        created_at=ts,
    )
    db.add(pago)

    lub.last_payment_at = ts
    lub.payment_status = PagoEstado.PAID
    lub.payment_method = m
    db.flush()

    audit(
        db,
        action=AuditAction.PAYMENT_RECORD,
        actor=actor,
        lubricentro_id=lub.id,
        payload={"amount": amt, "method": m, "reference": reference},
    )
    return pago


# =========================================================
# PRIMITIVAS DE CICLO (manual + batch)
# =========================================================

def renew_billing_cycle(
    db: Session,
    lub: Lubricentro,
    *,
    now: Optional[datetime] = None,
    actor: str = "sistema",
    renewal_type: str = "automatic",
) -> Lubricentro:
    """
    Renueva un ciclo: uso del mes a cero, ciclo avanzado un período desde
    el fin anterior, pago al día, renewal_count + 1, historial 'renewed'.
    """
    ts = now or utcnow()

    if lub.status != LubricentroEstado.ACTIVE:
        raise InvalidState("Solo se renuevan cuentas activas")
    if lub.plan_kind == PlanTipo.BUNDLE:
        raise InvalidState("Los paquetes de servicios no se renuevan; compre servicios adicionales")

    period = lub.renewal_period or PeriodoRenovacion.MONTHLY
    base = lub.billing_cycle_end or ts
    new_end = add_months(base, period.months)

    lub.services_used_this_month = 0
    lub.billing_cycle_end = new_end
    lub.next_payment_date = new_end
    lub.payment_status = PagoEstado.PAID
    lub.last_renewal_at = ts
    lub.renewal_count = int(lub.renewal_count or 0) + 1
    db.flush()

    _history(db, lub, action=HistorialAccion.RENEWED, details=renewal_type, actor=actor, now=ts)
    audit(
        db,
        action=AuditAction.SUBSCRIPTION_RENEW,
        actor=actor,
        lubricentro_id=lub.id,
        payload={
            "renewal_type": renewal_type,
            "previous_end": as_iso(base),
            "billing_cycle_end": as_iso(new_end),
            "renewal_count": lub.renewal_count,
        },
    )
    db.flush()
    return lub


def expire_subscription(
    db: Session,
    lub: Lubricentro,
    *,
    now: Optional[datetime] = None,
    actor: str = "sistema",
) -> Lubricentro:
    """Vence la suscripción: inactive, overdue, sin auto-renovación, historial 'expired'."""
    ts = now or utcnow()

    if lub.status != LubricentroEstado.ACTIVE:
        raise InvalidState("Solo se vencen cuentas activas")

    lub.status = LubricentroEstado.INACTIVE
    lub.payment_status = PagoEstado.OVERDUE
    lub.auto_renewal = False
    lub.inactive_reason = MotivoInactivacion.SUBSCRIPTION_EXPIRED
    lub.inactive_since = ts
    db.flush()

    _history(
        db,
        lub,
        action=HistorialAccion.EXPIRED,
        details=f"ciclo vencido {as_iso(lub.billing_cycle_end)}",
        actor=actor,
        now=ts,
    )
    audit(
        db,
        action=AuditAction.SUBSCRIPTION_EXPIRE,
        actor=actor,
        lubricentro_id=lub.id,
        payload={"plan_id": lub.plan_id, "billing_cycle_end": as_iso(lub.billing_cycle_end)},
    )
    db.flush()
    return lub


def renew_now(
    db: Session,
    lubricentro_id: int,
    *,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    lub = get_lubricentro_or_raise(db, lubricentro_id)
    return renew_billing_cycle(db, lub, now=now, actor=actor, renewal_type="manual")


def expire_now(
    db: Session,
    lubricentro_id: int,
    *,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    lub = get_lubricentro_or_raise(db, lubricentro_id)
    return expire_subscription(db, lub, now=now, actor=actor)


# =========================================================
# PAQUETES: SERVICIOS ADICIONALES
# =========================================================

def purchase_additional_services(
    db: Session,
    lubricentro_id: int,
    quantity: int,
    *,
    payment: Optional[PaymentInput] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> Lubricentro:
    """
    Suma servicios a un paquete: total += q, remaining += q (used no cambia)
    y extiende el vencimiento 6 meses desde max(ahora, vencimiento actual).
    """
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)

    if lub.plan_kind != PlanTipo.BUNDLE:
        raise InvalidState("La cuenta no tiene un plan por servicios")
    q = int(quantity or 0)
    if q < 1:
        raise InvalidState("La cantidad de servicios debe ser mayor a 0")

    base = max(ts, lub.bundle_expires_at or ts)
    new_expiry = add_months(base, BUNDLE_TOPUP_MONTHS)
    prev_status = lub.status

    lub.total_services_contracted = int(lub.total_services_contracted or 0) + q
    lub.services_remaining = int(lub.services_remaining or 0) + q
    lub.bundle_expires_at = new_expiry
    lub.billing_cycle_end = new_expiry
    lub.status = LubricentroEstado.ACTIVE
    lub.inactive_reason = None
    lub.inactive_since = None
    db.flush()

    if payment is not None:
        record_payment(
            db,
            lub.id,
            amount=payment.amount,
            method=payment.method,
            reference=payment.reference,
            actor=actor,
            now=ts,
        )
    else:
        lub.payment_status = PagoEstado.PAID

    _history(
        db,
        lub,
        action=HistorialAccion.ACTIVATION,
        details=f"+{q} servicios adicionales, vence {new_expiry.date().isoformat()}",
        actor=actor,
        now=ts,
    )
    audit(
        db,
        action=AuditAction.BUNDLE_TOPUP,
        actor=actor,
        lubricentro_id=lub.id,
        payload={
            "from_status": prev_status.value,
            "quantity": q,
            "total_services_contracted": lub.total_services_contracted,
            "services_remaining": lub.services_remaining,
            "bundle_expires_at": as_iso(new_expiry),
        },
    )
    db.flush()
    return lub


# =========================================================
# CONSULTAS
# =========================================================

def get_history(db: Session, lubricentro_id: int, *, limit: int = 50) -> list[HistorialRenovacion]:
    get_lubricentro_or_raise(db, lubricentro_id)
    return (
        db.query(HistorialRenovacion)
        .filter(HistorialRenovacion.lubricentro_id == lubricentro_id)
        .order_by(HistorialRenovacion.created_at.desc(), HistorialRenovacion.id.desc())
        .limit(int(limit))
        .all()
    )


def list_payments(db: Session, lubricentro_id: int, *, limit: int = 50) -> list[Pago]:
    get_lubricentro_or_raise(db, lubricentro_id)
    return (
        db.query(Pago)
        .filter(Pago.lubricentro_id == lubricentro_id)
        .order_by(Pago.created_at.desc(), Pago.id.desc())
        .limit(int(limit))
        .all()
    )
