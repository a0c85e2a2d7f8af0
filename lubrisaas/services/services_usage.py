# lubrisaas/services/services_usage.py
"""
services_usage.py – LubriSaaS

✔ can_consume: "¿puedo registrar un servicio más?" (resultado tipado, nunca lanza)
✔ consume_one: UPDATE atómico condicional (evita lost update y sobreconsumo)
✔ Historial de uso por período YYYY-MM (UniqueConstraint + SAVEPOINT + retry)
✔ Chequeo de usuarios contra max_users (sin caso ilimitado)
✔ Nivel de advertencia solo para UI (no afecta can_consume)

Señal de ilimitado:
- Plan:       max_monthly_services = None
- Resultados: remaining = UNLIMITED (-1)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lubrisaas.config import settings
from lubrisaas.errors import AccountNotFound, LimitExceeded
from lubrisaas.models import Lubricentro, UsoMensual
from lubrisaas.models.enums import LubricentroEstado, PlanTipo
from lubrisaas.models.time import as_iso, month_key, utcnow
from lubrisaas.services.services_plans import PlanRegistry


UNLIMITED = -1

# Motivos legibles (UI)
REASON_OK = "Puede agregar servicios"
REASON_INACTIVE = "Suscripción inactiva"
REASON_TRIAL_EXPIRED = "Período de prueba expirado"
REASON_TRIAL_LIMIT = "Límite de servicios del período de prueba alcanzado"
REASON_PLAN_NOT_FOUND = "Plan no encontrado"
REASON_BUNDLE_EXPIRED = "El paquete de servicios está vencido"
REASON_BUNDLE_EXHAUSTED = "No quedan servicios disponibles en el paquete"
REASON_MONTHLY_LIMIT = "Límite mensual de servicios alcanzado"


class WarningLevel(str, enum.Enum):
    NONE = "none"
    LOW = "low"
    CRITICAL = "critical"


def warning_level(remaining: int) -> WarningLevel:
    if remaining == UNLIMITED:
        return WarningLevel.NONE
    if remaining <= 2:
        return WarningLevel.CRITICAL
    if remaining <= 5:
        return WarningLevel.LOW
    return WarningLevel.NONE


# =========================================================
# TIPOS
# =========================================================

@dataclass(frozen=True)
class ConsumeCheck:
    allowed: bool
    reason: str
    remaining: int
    code: str = "ok"

    @property
    def unlimited(self) -> bool:
        return self.remaining == UNLIMITED

    @property
    def warning_level(self) -> WarningLevel:
        return warning_level(self.remaining)

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "code": self.code,
            "remaining": self.remaining,
            "warning_level": self.warning_level.value,
        }


@dataclass(frozen=True)
class UserCheck:
    allowed: bool
    reason: str
    remaining: int
    limit: int
    code: str = "ok"

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "code": self.code,
            "remaining": self.remaining,
            "limit": self.limit,
        }


# =========================================================
# HELPERS
# =========================================================

def get_lubricentro_or_raise(db: Session, lubricentro_id: int) -> Lubricentro:
    lub = db.get(Lubricentro, lubricentro_id)
    if not lub:
        raise AccountNotFound(lubricentro_id)
    return lub


def _get_or_create_month(db: Session, lubricentro_id: int, periodo: str) -> UsoMensual:
    """
    Obtiene la fila de uso del período; si no existe, la crea.
    SAVEPOINT: la colisión unique NO hace rollback de la transacción del caller.
    """

    def _query():
        return (
            db.query(UsoMensual)
            .filter(UsoMensual.lubricentro_id == lubricentro_id)
            .filter(UsoMensual.periodo == periodo)
        )

    row = _query().first()
    if row:
        return row

    last_exc: Optional[IntegrityError] = None
    for _ in range(2):
        try:
            with db.begin_nested():
                row_new = UsoMensual(lubricentro_id=lubricentro_id, periodo=periodo, servicios=0)
                db.add(row_new)
                db.flush()
                return row_new
        except IntegrityError as exc:
            row2 = _query().first()
            if row2:
                return row2
            last_exc = exc

    # colisión UNIQUE persistente: run_transaction reintenta la unidad completa
    raise last_exc


def _increment_month(db: Session, lubricentro_id: int, now: datetime, delta: int = 1) -> None:
    row = _get_or_create_month(db, lubricentro_id, month_key(now))
    db.execute(
        update(UsoMensual)
        .where(UsoMensual.id == row.id)
        .values(servicios=UsoMensual.servicios + int(delta), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


def set_month_usage(db: Session, lubricentro_id: int, now: datetime, value: int = 0) -> None:
    """Fija el contador del período actual (usado por resets y activaciones)."""
    row = _get_or_create_month(db, lubricentro_id, month_key(now))
    row.servicios = max(0, int(value))
    db.flush()


# =========================================================
# CONSULTAS (no lanzan)
# =========================================================

def can_consume(
    db: Session,
    lub: Lubricentro,
    registry: PlanRegistry,
    *,
    now: Optional[datetime] = None,
) -> ConsumeCheck:
    ts = now or utcnow()
    used = int(lub.services_used_this_month or 0)

    if lub.status == LubricentroEstado.INACTIVE:
        return ConsumeCheck(False, REASON_INACTIVE, 0, "inactive")

    if lub.status == LubricentroEstado.TRIAL:
        limit = settings.TRIAL_MAX_SERVICES
        remaining = max(0, limit - used)
        if not lub.trial_ends_at or ts >= lub.trial_ends_at:
            return ConsumeCheck(False, REASON_TRIAL_EXPIRED, remaining, "trial_expired")
        if used >= limit:
            return ConsumeCheck(False, REASON_TRIAL_LIMIT, 0, "trial_limit_reached")
        return ConsumeCheck(True, REASON_OK, remaining)

    spec = registry.find(db, lub.plan_id)
    if spec is None:
        return ConsumeCheck(False, REASON_PLAN_NOT_FOUND, 0, "plan_not_found")

    if lub.plan_kind == PlanTipo.BUNDLE:
        remaining = max(0, int(lub.services_remaining or 0))
        if not lub.bundle_expires_at or ts >= lub.bundle_expires_at:
            return ConsumeCheck(False, REASON_BUNDLE_EXPIRED, remaining, "bundle_expired")
        if remaining <= 0:
            return ConsumeCheck(False, REASON_BUNDLE_EXHAUSTED, 0, "bundle_exhausted")
        return ConsumeCheck(True, REASON_OK, remaining)

    if spec.max_monthly_services is None:
        return ConsumeCheck(True, REASON_OK, UNLIMITED)

    limit = int(spec.max_monthly_services)
    if used >= limit:
        return ConsumeCheck(False, REASON_MONTHLY_LIMIT, 0, "monthly_limit_reached")
    return ConsumeCheck(True, REASON_OK, limit - used)


def can_add_user(
    db: Session,
    lub: Lubricentro,
    registry: PlanRegistry,
    *,
    current_user_count: Optional[int] = None,
) -> UserCheck:
    count = int(lub.active_user_count or 0) if current_user_count is None else int(current_user_count)

    if lub.status == LubricentroEstado.INACTIVE:
        return UserCheck(False, REASON_INACTIVE, 0, 0, "inactive")

    if lub.status == LubricentroEstado.TRIAL:
        limit = settings.TRIAL_MAX_USERS
    else:
        spec = registry.find(db, lub.plan_id)
        if spec is None:
            return UserCheck(False, REASON_PLAN_NOT_FOUND, 0, 0, "plan_not_found")
        limit = int(spec.max_users)

    remaining = max(0, limit - count)
    if count >= limit:
        return UserCheck(False, f"Límite de usuarios alcanzado ({limit})", 0, limit, "user_limit_reached")
    return UserCheck(True, "Puede agregar usuarios", remaining, limit)


def get_usage_history(db: Session, lubricentro_id: int) -> dict[str, int]:
    rows = (
        db.query(UsoMensual.periodo, UsoMensual.servicios)
        .filter(UsoMensual.lubricentro_id == lubricentro_id)
        .order_by(UsoMensual.periodo.asc())
        .all()
    )
    return {str(p): int(s or 0) for p, s in rows}


def get_subscription_info(
    db: Session,
    lub: Lubricentro,
    registry: PlanRegistry,
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Resumen de límites para dashboards."""
    ts = now or utcnow()
    check = can_consume(db, lub, registry, now=ts)
    spec = registry.find(db, lub.plan_id) if lub.plan_id else None

    info: dict[str, Any] = {
        "lubricentro_id": lub.id,
        "status": lub.status.value,
        "plan_id": lub.plan_id,
        "plan_name": spec.name if spec else None,
        "plan_kind": lub.plan_kind.value if lub.plan_kind else None,
        "services_used_this_month": int(lub.services_used_this_month or 0),
        "services_used_total": int(lub.services_used_total or 0),
        "services_limit": None,
        "max_users": settings.TRIAL_MAX_USERS if lub.is_trial else (spec.max_users if spec else None),
        "active_user_count": int(lub.active_user_count or 0),
        "days_remaining": None,
        "payment_status": lub.payment_status.value if lub.payment_status else None,
        "billing_cycle_end": as_iso(lub.billing_cycle_end),
        "auto_renewal": bool(lub.auto_renewal),
        "sponsorship": lub.sponsorship,
        "consume": check.as_dict(),
    }

    end: Optional[datetime] = None
    if lub.is_trial:
        info["services_limit"] = settings.TRIAL_MAX_SERVICES
        end = lub.trial_ends_at
    elif lub.plan_kind == PlanTipo.BUNDLE:
        info["services_limit"] = lub.total_services_contracted
        info["services_remaining"] = lub.services_remaining
        end = lub.bundle_expires_at
    elif spec is not None:
        info["services_limit"] = spec.max_monthly_services
        end = lub.billing_cycle_end

    if end is not None:
        info["days_remaining"] = max(0, (end - ts).days)

    return info


# =========================================================
# MUTACIONES (lanzan)
# =========================================================

def consume_one(
    db: Session,
    lubricentro_id: int,
    registry: PlanRegistry,
    *,
    now: Optional[datetime] = None,
) -> ConsumeCheck:
    """
    Registra UN servicio consumido.

    - Denegado por can_consume -> LimitExceeded (con el motivo)
    - UPDATE condicional: si otro consumidor tomó la última unidad
      (0 filas afectadas) -> LimitExceeded
    - Incrementa uso del mes, uso total, historial YYYY-MM y
      (paquetes) decrementa services_remaining en la misma sentencia
    - No hace commit (lo gestiona el caller)

    Retorna el estado posterior (remaining / warning_level).
    """
    ts = now or utcnow()
    lub = get_lubricentro_or_raise(db, lubricentro_id)

    check = can_consume(db, lub, registry, now=ts)
    if not check.allowed:
        raise LimitExceeded(check.reason, remaining=check.remaining)

    values: dict[str, Any] = {
        "services_used_this_month": Lubricentro.services_used_this_month + 1,
        "services_used_total": Lubricentro.services_used_total + 1,
        "version": Lubricentro.version + 1,
        "updated_at": ts,
    }
    stmt = update(Lubricentro).where(Lubricentro.id == lub.id)

    if lub.status == LubricentroEstado.TRIAL:
        stmt = stmt.where(
            Lubricentro.status == LubricentroEstado.TRIAL,
            Lubricentro.trial_ends_at > ts,
            Lubricentro.services_used_this_month < settings.TRIAL_MAX_SERVICES,
        )
    elif lub.plan_kind == PlanTipo.BUNDLE:
        values["services_remaining"] = Lubricentro.services_remaining - 1
        stmt = stmt.where(
            Lubricentro.status == LubricentroEstado.ACTIVE,
            Lubricentro.plan_kind == PlanTipo.BUNDLE,
            Lubricentro.services_remaining > 0,
            Lubricentro.bundle_expires_at > ts,
        )
    else:
        stmt = stmt.where(
            Lubricentro.status == LubricentroEstado.ACTIVE,
            Lubricentro.plan_id == lub.plan_id,
        )
        if not check.unlimited:
            limit = int(check.remaining) + int(lub.services_used_this_month or 0)
            stmt = stmt.where(Lubricentro.services_used_this_month < limit)

    res = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if res.rowcount != 1:
        raise LimitExceeded("Otro registro tomó el último servicio disponible", remaining=0)

    _increment_month(db, lub.id, ts)
    db.flush()
    db.refresh(lub)

    return can_consume(db, lub, registry, now=ts)


def add_user(
    db: Session,
    lubricentro_id: int,
    registry: PlanRegistry,
) -> UserCheck:
    """Alta de un usuario activo contra max_users (incremento atómico condicional)."""
    lub = get_lubricentro_or_raise(db, lubricentro_id)
    check = can_add_user(db, lub, registry)
    if not check.allowed:
        raise LimitExceeded(check.reason, remaining=0)

    res = db.execute(
        update(Lubricentro)
        .where(Lubricentro.id == lub.id, Lubricentro.active_user_count < check.limit)
        .values(active_user_count=Lubricentro.active_user_count + 1, version=Lubricentro.version + 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise LimitExceeded(f"Límite de usuarios alcanzado ({check.limit})", remaining=0)

    db.flush()
    db.refresh(lub)
    return can_add_user(db, lub, registry)
