# lubrisaas/services/services_coupons.py
"""
services_coupons.py – LubriSaaS

✔ Emisión contra créditos del distribuidor (admin: sin costo)
✔ Código único PREFIJO-AÑO-XXXXXX con reintento ante colisión
✔ Validación de solo lectura + vencimiento perezoso idempotente
✔ Canje atómico y exactly-once: cupón + lubricentro + distribuidor + pago
  en UNA transacción (run_transaction re-ejecuta desde la relectura del cupón)

=========================================================
CANJE (orden dentro de la transacción)
=========================================================
1. Releer el cupón (nunca confiar en una validación previa)
2. used -> AlreadyUsed ; expired / fuera de validez -> Expired
3. Calcular el nuevo modo de la cuenta a partir de los beneficios
4. Cupón -> used + used_by
5. Distribuidor: total_coupons_used + 1, active_lubricentros + 1
6. Pago de monto 0 (method='coupon') + historial + auditoría
7. Commit; conflicto de versión -> todo se repite desde 1
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from dateutil import parser as dtparser
from sqlalchemy import update
from sqlalchemy.orm import Session

from lubrisaas.config import settings
from lubrisaas.database import run_transaction
from lubrisaas.errors import (
    AccountNotFound,
    AlreadyUsed,
    ConflictRetryExhausted,
    CouponNotFound,
    DistributorNotFound,
    Expired,
    InsufficientCredits,
    InvalidState,
)
from lubrisaas.logging_config import logger
from lubrisaas.models import Cupon, Distribuidor, HistorialRenovacion, Lubricentro, Pago
from lubrisaas.models.enums import (
    CuponEstado,
    HistorialAccion,
    PagoEstado,
    PeriodoRenovacion,
    PlanTipo,
)
from lubrisaas.models.time import add_months, as_iso, ensure_tz, utcnow
from lubrisaas.plans import SPONSORED_BUNDLE_PLAN_ID, SPONSORED_PLAN_ID
from lubrisaas.services.services_audit import AuditAction, audit
from lubrisaas.services.services_plans import PlanRegistry
from lubrisaas.services.services_usage import set_month_usage


CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LEN = 6
ADMIN_DISTRIBUTOR_NAME = "Administración"

# Tipos de cupón heredados -> meses de membresía
COUPON_TYPE_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "semiannual": 6,
    "annual": 12,
    "custom": 3,
}

MSG_NOT_FOUND = "El código de cupón no existe"
MSG_USED = "Este cupón ya ha sido utilizado"
MSG_EXPIRED = "Este cupón ha expirado"
MSG_VALID = "Cupón válido y listo para usar"


# =========================================================
# TIPOS
# =========================================================

@dataclass(frozen=True)
class CouponBenefits:
    membership_months: int = 1
    unlimited_services: bool = False
    total_services_contracted: int = 0
    additional_services: int = 0
    max_users: Optional[int] = None
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_bundle(self) -> bool:
        return (not self.unlimited_services) and self.total_services_contracted > 0

    def validate(self) -> None:
        if int(self.membership_months) < 1:
            raise InvalidState("La membresía del cupón debe ser de al menos 1 mes")
        if int(self.total_services_contracted) < 0 or int(self.additional_services) < 0:
            raise InvalidState("La cantidad de servicios del cupón no puede ser negativa")
        if self.max_users is not None and int(self.max_users) < 1:
            raise InvalidState("max_users del cupón debe ser mayor a 0")

    def as_dict(self) -> dict[str, Any]:
        return {
            "membership_months": int(self.membership_months),
            "unlimited_services": bool(self.unlimited_services),
            "total_services_contracted": int(self.total_services_contracted),
            "additional_services": int(self.additional_services),
            "max_users": self.max_users,
            "features": list(self.features),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "CouponBenefits":
        d = data or {}
        return cls(
            membership_months=int(d.get("membership_months") or 1),
            unlimited_services=bool(d.get("unlimited_services", False)),
            total_services_contracted=int(d.get("total_services_contracted") or 0),
            additional_services=int(d.get("additional_services") or 0),
            max_users=d.get("max_users"),
            features=tuple(d.get("features") or ()),
        )

    @classmethod
    def for_type(cls, coupon_type: str, **overrides) -> "CouponBenefits":
        months = COUPON_TYPE_MONTHS.get((coupon_type or "").lower())
        if months is None:
            raise InvalidState(f"Tipo de cupón inválido: {coupon_type}")
        return cls(membership_months=overrides.pop("membership_months", months), **overrides)


@dataclass(frozen=True)
class CouponValidation:
    valid: bool
    message: str
    reason: str
    code: str
    benefits: Optional[dict[str, Any]] = None
    valid_until: Optional[datetime] = None
    distributor_name: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "message": self.message,
            "reason": self.reason,
            "code": self.code,
            "benefits": self.benefits,
            "valid_until": as_iso(self.valid_until),
            "distributor_name": self.distributor_name,
        }


@dataclass(frozen=True)
class RedemptionResult:
    coupon_code: str
    lubricentro_id: int
    plan_id: str
    plan_kind: PlanTipo
    sponsorship_expires_at: datetime
    membership_months: int
    services_remaining: Optional[int]
    payment_id: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "coupon_code": self.coupon_code,
            "lubricentro_id": self.lubricentro_id,
            "plan_id": self.plan_id,
            "plan_kind": self.plan_kind.value,
            "sponsorship_expires_at": as_iso(self.sponsorship_expires_at),
            "membership_months": self.membership_months,
            "services_remaining": self.services_remaining,
            "payment_id": self.payment_id,
        }


# =========================================================
# HELPERS
# =========================================================

def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def generate_code(prefix: str, now: datetime, *, choice: Callable[[str], str] = secrets.choice) -> str:
    suffix = "".join(choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LEN))
    return f"{prefix.strip().upper()}-{now.year}-{suffix}"


def _unique_code(db: Session, prefix: str, now: datetime, pending: set[str]) -> str:
    tries = max(1, int(settings.COUPON_CODE_MAX_TRIES))
    for _ in range(tries):
        code = generate_code(prefix, now)
        if code in pending:
            continue
        if db.get(Cupon, code) is None:
            return code
    raise ConflictRetryExhausted("No se pudo generar un código de cupón único")


def _coerce_benefits(benefits: Union[CouponBenefits, dict, None]) -> CouponBenefits:
    b = benefits if isinstance(benefits, CouponBenefits) else CouponBenefits.from_dict(benefits)
    b.validate()
    return b


def _sponsorship_expiry(lub: Lubricentro) -> Optional[datetime]:
    raw = (lub.sponsorship or {}).get("expires_at")
    if not raw:
        return None
    return ensure_tz(dtparser.isoparse(raw))


def _issue_in_tx(
    db: Session,
    *,
    distributor_id: Optional[int],
    benefits: CouponBenefits,
    quantity: int,
    validity_days: int,
    actor: str,
    now: datetime,
    notes: Optional[str],
) -> list[Cupon]:
    dist: Optional[Distribuidor] = None
    if distributor_id is not None:
        dist = db.get(Distribuidor, distributor_id)
        if not dist:
            raise DistributorNotFound(distributor_id)
        if not dist.activo:
            raise InvalidState("El distribuidor está inactivo")
        # Re-chequeo dentro de la transacción (nunca sobre una lectura previa)
        if int(dist.credits_available or 0) < quantity:
            raise InsufficientCredits(
                f"Créditos insuficientes: disponibles {dist.credits_available}, requeridos {quantity}",
                available=int(dist.credits_available or 0),
            )
        prefix = dist.prefix
        dist_name = dist.name
    else:
        prefix = settings.COUPON_ADMIN_PREFIX
        dist_name = ADMIN_DISTRIBUTOR_NAME

    created: list[Cupon] = []
    pending: set[str] = set()
    for _ in range(quantity):
        code = _unique_code(db, prefix, now, pending)
        pending.add(code)
        cupon = Cupon(
            code=code,
            distributor_id=distributor_id,
            distributor_name=dist_name,
            status=CuponEstado.ACTIVE,
            valid_from=now,
            valid_until=now + timedelta(days=validity_days),
            benefits=benefits.as_dict(),
            generated_by=actor,
            notes=notes,
            created_at=now,
        )
        db.add(cupon)
        created.append(cupon)

    if dist is not None:
        dist.credits_available = int(dist.credits_available) - quantity
        dist.credits_used = int(dist.credits_used) + quantity
        dist.total_coupons_generated = int(dist.total_coupons_generated or 0) + quantity
    db.flush()

    audit(
        db,
        action=AuditAction.COUPON_ISSUE,
        actor=actor,
        payload={
            "distributor_id": distributor_id,
            "codes": [c.code for c in created],
            "benefits": benefits.as_dict(),
            "valid_until": as_iso(created[0].valid_until) if created else None,
        },
    )
    return created


# =========================================================
# EMISIÓN
# =========================================================

def issue_coupon(
    session_factory,
    distributor_id: Optional[int],
    benefits: Union[CouponBenefits, dict, None],
    *,
    validity_days: Optional[int] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> Cupon:
    """
    Emite UN cupón. distributor_id=None -> cupón de administrador (sin créditos).
    Atómico: cupón + descuento de crédito + stats del distribuidor.
    """
    cupones = issue_coupon_batch(
        session_factory,
        distributor_id,
        benefits,
        quantity=1,
        validity_days=validity_days,
        actor=actor,
        now=now,
        notes=notes,
    )
    return cupones[0]


def issue_coupon_batch(
    session_factory,
    distributor_id: Optional[int],
    benefits: Union[CouponBenefits, dict, None],
    *,
    quantity: int = 1,
    validity_days: Optional[int] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> list[Cupon]:
    ts = now or utcnow()
    b = _coerce_benefits(benefits)

    q = int(quantity or 0)
    if q < 1:
        raise InvalidState("La cantidad de cupones debe ser mayor a 0")
    days = int(validity_days or settings.COUPON_DEFAULT_VALIDITY_DAYS)
    if days < 1:
        raise InvalidState("La validez del cupón debe ser de al menos 1 día")

    created = run_transaction(
        session_factory,
        lambda db: _issue_in_tx(
            db,
            distributor_id=distributor_id,
            benefits=b,
            quantity=q,
            validity_days=days,
            actor=actor,
            now=ts,
            notes=notes,
        ),
        label="coupon.issue",
    )

    logger.info(
        "[COUPONS] emitidos=%s distributor_id=%s actor=%s codes=%s",
        len(created), distributor_id, actor, ",".join(c.code for c in created),
    )
    return created


# =========================================================
# VALIDACIÓN (lectura + vencimiento perezoso)
# =========================================================

def validate_coupon(
    db: Session,
    code: str,
    *,
    now: Optional[datetime] = None,
) -> CouponValidation:
    """
    Nunca lanza por estados del cupón: devuelve un resultado tipado.

    Única mutación permitida: un cupón active con valid_until vencido pasa a
    expired con UN UPDATE condicional (WHERE status='active'), por lo que
    llamadas repetidas o concurrentes lo vencen exactamente una vez.
    No hace commit (lo gestiona el caller).
    """
    ts = now or utcnow()
    norm = normalize_code(code)

    cupon = db.get(Cupon, norm) if norm else None
    if cupon is None:
        return CouponValidation(False, MSG_NOT_FOUND, "not_found", norm)

    if cupon.status == CuponEstado.USED:
        return CouponValidation(False, MSG_USED, "already_used", norm, distributor_name=cupon.distributor_name)

    if cupon.status == CuponEstado.EXPIRED:
        return CouponValidation(
            False, MSG_EXPIRED, "expired", norm,
            valid_until=cupon.valid_until, distributor_name=cupon.distributor_name,
        )

    if ts > cupon.valid_until:
        res = db.execute(
            update(Cupon)
            .where(
                Cupon.code == norm,
                Cupon.status == CuponEstado.ACTIVE,
                Cupon.valid_until < ts,
            )
            .values(status=CuponEstado.EXPIRED, version=Cupon.version + 1, updated_at=ts)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            audit(
                db,
                action=AuditAction.COUPON_EXPIRE,
                payload={"code": norm, "valid_until": as_iso(cupon.valid_until)},
            )
        db.flush()
        db.refresh(cupon)
        return CouponValidation(
            False, MSG_EXPIRED, "expired", norm,
            valid_until=cupon.valid_until, distributor_name=cupon.distributor_name,
        )

    return CouponValidation(
        True,
        MSG_VALID,
        "valid",
        norm,
        benefits=CouponBenefits.from_dict(cupon.benefits).as_dict(),
        valid_until=cupon.valid_until,
        distributor_name=cupon.distributor_name,
    )


# =========================================================
# CANJE (atómico, exactly-once)
# =========================================================

def _redeem_in_tx(
    db: Session,
    *,
    code: str,
    lubricentro_id: int,
    registry: PlanRegistry,
    actor: str,
    now: datetime,
) -> RedemptionResult:
    # 1) relectura dentro de la transacción
    cupon = db.get(Cupon, code)
    if cupon is None:
        raise CouponNotFound(code)

    # 2) estado terminal / validez
    if cupon.status == CuponEstado.USED:
        raise AlreadyUsed()
    if cupon.status == CuponEstado.EXPIRED or now > cupon.valid_until:
        raise Expired()

    lub = db.get(Lubricentro, lubricentro_id)
    if lub is None:
        raise AccountNotFound(lubricentro_id)

    # 3) nuevo modo de la cuenta
    b = CouponBenefits.from_dict(cupon.benefits)
    prev_status = lub.status
    current_exp = _sponsorship_expiry(lub)
    base = max(now, current_exp) if current_exp else now
    expires = add_months(base, b.membership_months)

    if b.is_bundle:
        spec = registry.resolve(db, SPONSORED_BUNDLE_PLAN_ID)
        lub.set_bundle_fields(
            plan_id=spec.id,
            total_services=b.total_services_contracted + b.additional_services,
            expires_at=expires,
        )
    else:
        # unlimited_services o sin cantidad: ilimitado durante la membresía
        spec = registry.resolve(db, SPONSORED_PLAN_ID)
        lub.set_recurring_fields(
            plan_id=spec.id,
            renewal_period=PeriodoRenovacion.MONTHLY,
            cycle_end=expires,
            auto_renewal=False,
        )

    lub.payment_method = "coupon"
    lub.payment_status = PagoEstado.PAID
    lub.last_payment_at = now
    lub.subscription_started_at = lub.subscription_started_at or now
    lub.sponsorship = {
        "distributor_id": cupon.distributor_id,
        "distributor_name": cupon.distributor_name,
        "coupon_code": cupon.code,
        "activated_at": as_iso(now),
        "activated_by": actor,
        "expires_at": as_iso(expires),
        "benefits": b.as_dict(),
    }

    # 4) cupón usado
    cupon.status = CuponEstado.USED
    cupon.used_by = {
        "lubricentro_id": lub.id,
        "lubricentro_name": lub.nombre_fantasia,
        "used_at": as_iso(now),
        "activated_by": actor,
    }

    # 5) stats del distribuidor (cupones de admin no tienen distribuidor)
    if cupon.distributor_id is not None:
        dist = db.get(Distribuidor, cupon.distributor_id)
        if dist is not None:
            dist.total_coupons_used = int(dist.total_coupons_used or 0) + 1
            dist.active_lubricentros = int(dist.active_lubricentros or 0) + 1

    # 6) pago de monto 0 + historial + auditoría
    pago = Pago(
        lubricentro_id=lub.id,
        amount=0.0,
        currency=settings.DEFAULT_CURRENCY,
        method="coupon",
        reference=cupon.code,
        coupon_code=cupon.code,
        distributor_id=cupon.distributor_id,
        membership_months=b.membership_months,
        status="completed",
        created_by=actor,
        created_at=now,
    )
    db.add(pago)
    db.flush()

    set_month_usage(db, lub.id, now, 0)

    db.add(
        HistorialRenovacion(
            lubricentro_id=lub.id,
            action=HistorialAccion.ACTIVATION,
            details=f"cupón {cupon.code} ({cupon.distributor_name}) +{b.membership_months} meses",
            actor=actor,
            created_at=now,
        )
    )
    audit(
        db,
        action=AuditAction.COUPON_REDEEM,
        actor=actor,
        lubricentro_id=lub.id,
        payload={
            "code": cupon.code,
            "distributor_id": cupon.distributor_id,
            "from_status": prev_status.value,
            "plan_id": spec.id,
            "sponsorship_expires_at": as_iso(expires),
        },
    )
    db.flush()

    return RedemptionResult(
        coupon_code=cupon.code,
        lubricentro_id=lub.id,
        plan_id=spec.id,
        plan_kind=spec.kind,
        sponsorship_expires_at=expires,
        membership_months=b.membership_months,
        services_remaining=lub.services_remaining,
        payment_id=pago.id,
    )


def redeem_coupon(
    session_factory,
    code: str,
    lubricentro_id: int,
    *,
    registry: PlanRegistry,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> RedemptionResult:
    """
    Canjea un cupón para un lubricentro.
    Errores: CouponNotFound, AlreadyUsed, Expired, AccountNotFound,
    ConflictRetryExhausted. Ningún error deja escrituras parciales.
    """
    ts = now or utcnow()
    norm = normalize_code(code)
    if not norm:
        raise CouponNotFound(norm)

    result = run_transaction(
        session_factory,
        lambda db: _redeem_in_tx(
            db,
            code=norm,
            lubricentro_id=lubricentro_id,
            registry=registry,
            actor=actor,
            now=ts,
        ),
        label="coupon.redeem",
    )

    logger.info(
        "[COUPONS] canje ok code=%s lubricentro_id=%s plan=%s vence=%s actor=%s",
        result.coupon_code, result.lubricentro_id, result.plan_id,
        as_iso(result.sponsorship_expires_at), actor,
    )
    return result


# =========================================================
# CONSULTAS / ADMINISTRACIÓN
# =========================================================

def get_coupon(db: Session, code: str) -> Cupon:
    cupon = db.get(Cupon, normalize_code(code))
    if cupon is None:
        raise CouponNotFound(code)
    return cupon


def list_coupons(
    db: Session,
    *,
    distributor_id: Optional[int] = None,
    status: Union[str, CuponEstado, None] = None,
    admin_only: bool = False,
    limit: int = 100,
) -> list[Cupon]:
    q = db.query(Cupon)
    if distributor_id is not None:
        q = q.filter(Cupon.distributor_id == distributor_id)
    elif admin_only:
        q = q.filter(Cupon.distributor_id.is_(None))
    if status:
        q = q.filter(Cupon.status == CuponEstado(status))
    return q.order_by(Cupon.created_at.desc(), Cupon.code.asc()).limit(int(limit)).all()


def delete_coupon(db: Session, code: str, *, actor: str = "sistema") -> None:
    """Borrado administrativo explícito (único camino que destruye un cupón)."""
    cupon = get_coupon(db, code)
    snapshot = {
        "code": cupon.code,
        "status": cupon.status.value,
        "distributor_id": cupon.distributor_id,
        "used_by": cupon.used_by,
    }
    db.delete(cupon)
    db.flush()
    audit(db, action=AuditAction.COUPON_DELETE, actor=actor, payload=snapshot)


def coupon_as_dict(cupon: Cupon) -> dict[str, Any]:
    return {
        "code": cupon.code,
        "distributor_id": cupon.distributor_id,
        "distributor_name": cupon.distributor_name,
        "status": cupon.status.value,
        "valid_from": as_iso(cupon.valid_from),
        "valid_until": as_iso(cupon.valid_until),
        "benefits": cupon.benefits,
        "used_by": cupon.used_by,
        "generated_by": cupon.generated_by,
        "notes": cupon.notes,
        "created_at": as_iso(cupon.created_at),
    }
