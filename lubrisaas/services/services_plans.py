# lubrisaas/services/services_plans.py
"""
services_plans.py – LubriSaaS

✔ PlanRegistry: resuelve plan_id -> PlanSpec (recurrente o paquete, misma interfaz)
✔ Cache del catálogo completo con TTL (5 min por defecto) + invalidate()
✔ Fallback a la tabla estática (lubrisaas.plans) si el catálogo dinámico falla
✔ Sin singleton: se construye en main.py y se inyecta (tests usan su propio reloj)
✔ Administración de planes (crear / actualizar / activar / eliminar) con historial

Reglas de administración:
- No se elimina un plan referenciado por algún lubricentro (usage_count > 0).
- No se elimina un plan por defecto (is_default).
- En un plan en uso NO se modifican campos de límites: los lubricentros
  que ya lo tienen no cambian retroactivamente. Precio / nombre / features sí.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lubrisaas.config import settings
from lubrisaas.errors import InvalidPlanData, InvalidState, PlanInUse, PlanNotFound
from lubrisaas.logging_config import logger
from lubrisaas.models import HistorialPlan, Lubricentro, Plan
from lubrisaas.models.enums import PeriodoRenovacion, PlanCambio, PlanTipo
from lubrisaas.models.time import utcnow
from lubrisaas.plans import FALLBACK_PLANS, PlanDict
from lubrisaas.services.services_audit import AuditAction, audit


# Campos que definen límites: congelados mientras el plan esté en uso
LIMIT_FIELDS = ("kind", "max_users", "max_monthly_services", "total_services", "validity_months")

EDITABLE_FIELDS = (
    "name",
    "description",
    "kind",
    "price_monthly",
    "price_semiannual",
    "bundle_price",
    "max_users",
    "max_monthly_services",
    "total_services",
    "validity_months",
    "features",
    "is_published",
    "display_order",
)


# =========================================================
# TIPOS
# =========================================================

@dataclass(frozen=True)
class PlanSpec:
    """Definición resuelta de un plan (inmutable)."""

    id: str
    name: str
    kind: PlanTipo
    max_users: int
    max_monthly_services: Optional[int] = None
    total_services: Optional[int] = None
    validity_months: Optional[int] = None
    price_monthly: Optional[float] = None
    price_semiannual: Optional[float] = None
    bundle_price: Optional[float] = None
    features: tuple[str, ...] = field(default_factory=tuple)
    description: Optional[str] = None
    is_active: bool = True
    is_default: bool = False

    @property
    def is_bundle(self) -> bool:
        return self.kind == PlanTipo.BUNDLE

    @property
    def unlimited_services(self) -> bool:
        return self.kind == PlanTipo.RECURRING and self.max_monthly_services is None

    def price_for(self, period: PeriodoRenovacion) -> Optional[float]:
        if self.is_bundle:
            return self.bundle_price
        if period == PeriodoRenovacion.SEMIANNUAL:
            return self.price_semiannual
        return self.price_monthly

    @classmethod
    def from_row(cls, row: Plan) -> "PlanSpec":
        return cls(
            id=row.id,
            name=row.name,
            kind=PlanTipo(row.kind),
            max_users=int(row.max_users),
            max_monthly_services=row.max_monthly_services,
            total_services=row.total_services,
            validity_months=row.validity_months,
            price_monthly=row.price_monthly,
            price_semiannual=row.price_semiannual,
            bundle_price=row.bundle_price,
            features=tuple(row.features or ()),
            description=row.description,
            is_active=bool(row.is_active),
            is_default=bool(row.is_default),
        )

    @classmethod
    def from_dict(cls, data: PlanDict, *, is_default: bool = True) -> "PlanSpec":
        return cls(
            id=data["id"],
            name=data["name"],
            kind=PlanTipo(data.get("kind", "recurring")),
            max_users=int(data.get("max_users", 1)),
            max_monthly_services=data.get("max_monthly_services"),
            total_services=data.get("total_services"),
            validity_months=data.get("validity_months"),
            price_monthly=data.get("price_monthly"),
            price_semiannual=data.get("price_semiannual"),
            bundle_price=data.get("bundle_price"),
            features=tuple(data.get("features") or ()),
            description=data.get("description"),
            is_active=True,
            is_default=is_default,
        )


# =========================================================
# REGISTRY
# =========================================================

class PlanRegistry:
    """
    Catálogo de planes con cache TTL.

    - get_catalogue(db): cache vigente o recarga completa desde `planes`
    - resolve(db, plan_id): PlanSpec o PlanNotFound
    - invalidate(): la próxima resolución ignora el cache
    """

    def __init__(
        self,
        *,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        fallback: Optional[dict[str, PlanDict]] = None,
    ) -> None:
        ttl = settings.PLAN_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.ttl = timedelta(seconds=max(0, int(ttl)))
        self._clock = clock
        self._fallback = {
            pid: PlanSpec.from_dict(data)
            for pid, data in (fallback if fallback is not None else FALLBACK_PLANS).items()
        }
        self._cache: Optional[dict[str, PlanSpec]] = None
        self._loaded_at: Optional[datetime] = None
        self.source: Optional[str] = None  # "db" | "fallback" (solo diagnóstico)

    def invalidate(self) -> None:
        self._cache = None
        self._loaded_at = None

    def _is_fresh(self) -> bool:
        if self._cache is None or self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self.ttl

    def _load(self, db: Session) -> dict[str, PlanSpec]:
        try:
            with db.begin_nested():  # SAVEPOINT: un fallo no rompe la transacción del caller
                rows = db.query(Plan).order_by(Plan.display_order.asc(), Plan.id.asc()).all()
        except SQLAlchemyError as exc:
            logger.warning("[PLANS] catálogo dinámico no disponible, usando fallback error=%s", exc)
            self.source = "fallback"
            return dict(self._fallback)

        if not rows:
            self.source = "fallback"
            return dict(self._fallback)

        self.source = "db"
        return {row.id: PlanSpec.from_row(row) for row in rows}

    def get_catalogue(self, db: Session) -> dict[str, PlanSpec]:
        if not self._is_fresh():
            self._cache = self._load(db)
            self._loaded_at = self._clock()
            logger.debug("[PLANS] catálogo recargado source=%s plans=%s", self.source, len(self._cache))
        return self._cache

    def find(self, db: Session, plan_id: Optional[str]) -> Optional[PlanSpec]:
        if not plan_id:
            return None
        return self.get_catalogue(db).get(plan_id)

    def resolve(self, db: Session, plan_id: Optional[str]) -> PlanSpec:
        spec = self.find(db, plan_id)
        if spec is None:
            raise PlanNotFound(plan_id)
        return spec


# =========================================================
# HELPERS
# =========================================================

def _get_plan_or_raise(db: Session, plan_id: str) -> Plan:
    row = db.get(Plan, plan_id)
    if not row:
        raise PlanNotFound(plan_id)
    return row


def _plan_values(row: Plan, keys=EDITABLE_FIELDS) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k in keys:
        v = getattr(row, k)
        out[k] = v.value if isinstance(v, PlanTipo) else v
    return out


def _record_change(
    db: Session,
    *,
    plan_id: str,
    change_type: PlanCambio,
    old_values: Optional[dict],
    new_values: Optional[dict],
    actor: str,
    reason: Optional[str] = None,
) -> None:
    db.add(
        HistorialPlan(
            plan_id=plan_id,
            change_type=change_type,
            old_values=old_values,
            new_values=new_values,
            reason=reason,
            actor=actor,
            created_at=utcnow(),
        )
    )


def validate_plan_data(data: dict[str, Any]) -> list[str]:
    """Retorna la lista de errores (vacía = válido)."""
    errors: list[str] = []

    if not str(data.get("name") or "").strip():
        errors.append("El nombre del plan es requerido")

    try:
        kind = PlanTipo(data.get("kind") or PlanTipo.RECURRING)
    except ValueError:
        return errors + [f"Tipo de plan inválido: {data.get('kind')}"]

    max_users = data.get("max_users")
    if max_users is None or int(max_users) < 1:
        errors.append("El número máximo de usuarios debe ser mayor a 0")

    if kind == PlanTipo.BUNDLE:
        if not data.get("bundle_price") or float(data["bundle_price"]) <= 0:
            errors.append("El precio del paquete debe ser mayor a 0")
        if not data.get("total_services") or int(data["total_services"]) <= 0:
            errors.append("La cantidad de servicios debe ser mayor a 0")
        vm = data.get("validity_months")
        if vm is None or not (1 <= int(vm) <= 12):
            errors.append("La validez debe estar entre 1 y 12 meses")
        return errors

    pm = float(data.get("price_monthly") or 0)
    ps = float(data.get("price_semiannual") or 0)
    if pm <= 0:
        errors.append("El precio mensual debe ser mayor a 0")
    if ps <= 0:
        errors.append("El precio semestral debe ser mayor a 0")
    if pm > 0 and ps >= pm * 6:
        errors.append("El precio semestral debería ofrecer descuento sobre 6 meses")

    mms = data.get("max_monthly_services")
    if mms is not None and int(mms) <= 0:
        errors.append("El límite mensual de servicios debe ser mayor a 0 (o vacío = ilimitado)")

    return errors


# =========================================================
# API PÚBLICA
# =========================================================

def plan_usage_count(db: Session, plan_id: str) -> int:
    """Lubricentros que referencian el plan (derivado, nunca persistido)."""
    n = db.query(func.count(Lubricentro.id)).filter(Lubricentro.plan_id == plan_id).scalar()
    return int(n or 0)


def list_plans(db: Session, *, include_inactive: bool = True) -> list[Plan]:
    q = db.query(Plan)
    if not include_inactive:
        q = q.filter(Plan.is_active.is_(True))
    return q.order_by(Plan.display_order.asc(), Plan.id.asc()).all()


def seed_default_plans(db: Session) -> int:
    """Inserta los planes de la tabla estática que falten. Retorna cuántos creó."""
    created = 0
    for pid, data in FALLBACK_PLANS.items():
        if db.get(Plan, pid):
            continue
        db.add(
            Plan(
                id=pid,
                name=data["name"],
                description=data.get("description"),
                kind=PlanTipo(data["kind"]),
                price_monthly=data.get("price_monthly"),
                price_semiannual=data.get("price_semiannual"),
                bundle_price=data.get("bundle_price"),
                max_users=data.get("max_users", 1),
                max_monthly_services=data.get("max_monthly_services"),
                total_services=data.get("total_services"),
                validity_months=data.get("validity_months"),
                features=list(data.get("features") or []),
                is_active=True,
                is_published=bool(data.get("is_published", True)),
                is_default=True,
                display_order=int(data.get("display_order", 0)),
                created_by="sistema",
            )
        )
        created += 1
    db.flush()
    return created


def create_plan(
    db: Session,
    data: dict[str, Any],
    *,
    registry: Optional[PlanRegistry] = None,
    actor: str = "sistema",
) -> Plan:
    plan_id = str(data.get("id") or "").strip()
    if not plan_id:
        raise InvalidPlanData(["El ID del plan es requerido"])

    errors = validate_plan_data(data)
    if errors:
        raise InvalidPlanData(errors)

    if db.get(Plan, plan_id):
        raise InvalidState(f"Ya existe un plan con el ID: {plan_id}")

    row = Plan(
        id=plan_id,
        kind=PlanTipo(data.get("kind") or PlanTipo.RECURRING),
        features=list(data.get("features") or []),
        is_active=True,
        is_default=False,
        created_by=actor,
        updated_by=actor,
    )
    for k in EDITABLE_FIELDS:
        if k in ("kind", "features"):
            continue
        if k in data:
            setattr(row, k, data[k])
    if row.is_published is None:
        row.is_published = True
    if row.display_order is None:
        row.display_order = 0

    db.add(row)
    db.flush()

    _record_change(
        db,
        plan_id=plan_id,
        change_type=PlanCambio.CREATED,
        old_values=None,
        new_values=_plan_values(row),
        actor=actor,
        reason="Plan creado",
    )
    audit(db, action=AuditAction.PLAN_CREATE, actor=actor, payload={"plan_id": plan_id})
    db.flush()

    if registry:
        registry.invalidate()
    return row


def update_plan(
    db: Session,
    plan_id: str,
    changes: dict[str, Any],
    *,
    registry: Optional[PlanRegistry] = None,
    actor: str = "sistema",
    reason: Optional[str] = None,
) -> Plan:
    row = _get_plan_or_raise(db, plan_id)

    changes = {
        k: (v.value if isinstance(v, PlanTipo) else v)
        for k, v in (changes or {}).items()
        if k in EDITABLE_FIELDS
    }
    if not changes:
        return row

    before = _plan_values(row)
    touched_limits = [
        k for k in LIMIT_FIELDS
        if k in changes and str(changes[k]) != str(before.get(k))
    ]
    if touched_limits:
        in_use = plan_usage_count(db, plan_id)
        if in_use > 0:
            raise PlanInUse(
                f"El plan está en uso por {in_use} lubricentro(s): "
                f"no se pueden modificar {', '.join(touched_limits)}",
                usage_count=in_use,
            )

    merged = {**before, **changes}
    errors = validate_plan_data(merged)
    if errors:
        raise InvalidPlanData(errors)

    for k, v in changes.items():
        if k == "kind":
            v = PlanTipo(v)
        setattr(row, k, v)
    row.updated_by = actor
    db.flush()

    _record_change(
        db,
        plan_id=plan_id,
        change_type=PlanCambio.UPDATED,
        old_values={k: before.get(k) for k in changes},
        new_values={k: _plan_values(row, (k,))[k] for k in changes},
        actor=actor,
        reason=reason or "Plan actualizado",
    )
    audit(db, action=AuditAction.PLAN_UPDATE, actor=actor, payload={"plan_id": plan_id, "fields": sorted(changes)})
    db.flush()

    if registry:
        registry.invalidate()
    return row


def set_plan_active(
    db: Session,
    plan_id: str,
    active: bool,
    *,
    registry: Optional[PlanRegistry] = None,
    actor: str = "sistema",
) -> Plan:
    row = _get_plan_or_raise(db, plan_id)
    prev = bool(row.is_active)
    if prev == bool(active):
        return row

    row.is_active = bool(active)
    row.updated_by = actor
    db.flush()

    _record_change(
        db,
        plan_id=plan_id,
        change_type=PlanCambio.ACTIVATED if active else PlanCambio.DEACTIVATED,
        old_values={"is_active": prev},
        new_values={"is_active": bool(active)},
        actor=actor,
        reason=f"Plan {'activado' if active else 'desactivado'}",
    )
    audit(db, action=AuditAction.PLAN_STATUS, actor=actor, payload={"plan_id": plan_id, "is_active": bool(active)})
    db.flush()

    if registry:
        registry.invalidate()
    return row


def delete_plan(
    db: Session,
    plan_id: str,
    *,
    registry: Optional[PlanRegistry] = None,
    actor: str = "sistema",
) -> None:
    row = _get_plan_or_raise(db, plan_id)

    in_use = plan_usage_count(db, plan_id)
    if in_use > 0:
        raise PlanInUse(usage_count=in_use)
    if row.is_default:
        raise InvalidState("No se puede eliminar un plan por defecto del sistema")

    snapshot = _plan_values(row)
    db.delete(row)
    db.flush()

    _record_change(
        db,
        plan_id=plan_id,
        change_type=PlanCambio.DELETED,
        old_values=snapshot,
        new_values=None,
        actor=actor,
        reason="Plan eliminado",
    )
    audit(db, action=AuditAction.PLAN_DELETE, actor=actor, payload={"plan_id": plan_id})
    db.flush()

    if registry:
        registry.invalidate()


def list_plan_history(db: Session, plan_id: str, *, limit: int = 50) -> list[HistorialPlan]:
    return (
        db.query(HistorialPlan)
        .filter(HistorialPlan.plan_id == plan_id)
        .order_by(HistorialPlan.created_at.desc(), HistorialPlan.id.desc())
        .limit(int(limit))
        .all()
    )
