# lubrisaas/routes/routes_superadmin.py
"""
Superadmin – LubriSaaS (JSON)

✔ Catálogo de planes: alta, edición, activar/desactivar, borrado, historial
✔ Invalidación manual del cache del PlanRegistry
✔ Job center: renovaciones / vencimientos y trials vencidos
✔ Cupones de administración (sin costo de crédito)
✔ Auditoría filtrable + health básico

Notas:
- La auditoría vive en services_* (source of truth), no en rutas.
- Autenticación / roles fuera de alcance: el actor viene en X-Actor.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from lubrisaas.database import run_transaction
from lubrisaas.deps import get_actor, get_db, get_plan_registry, get_session_factory
from lubrisaas.logging_config import logger
from lubrisaas.models import Plan
from lubrisaas.models.time import as_iso, utcnow
from lubrisaas.schemas import IssueCouponIn, JobIn, PlanIn, PlanStatusIn, PlanUpdate
from lubrisaas.services.services_audit import audit_payload, list_audit
from lubrisaas.services.services_coupons import coupon_as_dict, issue_coupon_batch, list_coupons
from lubrisaas.services.services_plans import (
    PlanRegistry,
    create_plan,
    delete_plan,
    list_plan_history,
    list_plans,
    plan_usage_count,
    set_plan_active,
    update_plan,
)
from lubrisaas.services.services_renewal_job import process_due, process_expired_trials


router = APIRouter(prefix="/superadmin", tags=["superadmin"])


# =========================================================
# HELPERS
# =========================================================

def plan_as_dict(row: Plan, usage_count: Optional[int] = None) -> dict[str, Any]:
    out = {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "kind": row.kind.value,
        "price_monthly": row.price_monthly,
        "price_semiannual": row.price_semiannual,
        "bundle_price": row.bundle_price,
        "max_users": row.max_users,
        "max_monthly_services": row.max_monthly_services,
        "total_services": row.total_services,
        "validity_months": row.validity_months,
        "features": list(row.features or []),
        "is_active": bool(row.is_active),
        "is_published": bool(row.is_published),
        "is_default": bool(row.is_default),
        "display_order": row.display_order,
    }
    if usage_count is not None:
        out["usage_count"] = usage_count
    return out


# =========================================================
# HEALTH
# =========================================================

@router.get("/health")
def health_root(db: Session = Depends(get_db), registry: PlanRegistry = Depends(get_plan_registry)):
    start = utcnow()
    db.execute(text("SELECT 1"))
    elapsed_ms = (utcnow() - start).total_seconds() * 1000

    payload = {
        "status": "ok",
        "timestamp_utc": as_iso(start),
        "elapsed_ms": round(elapsed_ms, 2),
        "db": {"ok": True},
        "plans_source": registry.source,
    }
    logger.info("[HEALTH] status=%s plans_source=%s", payload["status"], registry.source)
    return payload


# =========================================================
# PLANES
# =========================================================

@router.get("/plans")
def list_plans_route(include_inactive: bool = True, db: Session = Depends(get_db)):
    rows = list_plans(db, include_inactive=include_inactive)
    return {"ok": True, "plans": [plan_as_dict(p, plan_usage_count(db, p.id)) for p in rows]}


@router.post("/plans", status_code=201)
def create_plan_route(
    body: PlanIn,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
    actor: str = Depends(get_actor),
):
    row = run_transaction(
        session_factory,
        lambda db: create_plan(db, body.model_dump(), registry=registry, actor=actor),
        label="plan.create",
    )
    logger.info("[PLANS] plan creado id=%s kind=%s actor=%s", row.id, row.kind.value, actor)
    return {"ok": True, "plan": plan_as_dict(row)}


@router.patch("/plans/{plan_id}")
def update_plan_route(
    plan_id: str,
    body: PlanUpdate,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
    actor: str = Depends(get_actor),
):
    changes = body.model_dump(exclude_unset=True)
    reason = changes.pop("reason", None)

    row = run_transaction(
        session_factory,
        lambda db: update_plan(db, plan_id, changes, registry=registry, actor=actor, reason=reason),
        label="plan.update",
    )
    logger.info("[PLANS] plan actualizado id=%s fields=%s actor=%s", plan_id, sorted(changes), actor)
    return {"ok": True, "plan": plan_as_dict(row)}


@router.post("/plans/{plan_id}/status")
def plan_status_route(
    plan_id: str,
    body: PlanStatusIn,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
    actor: str = Depends(get_actor),
):
    row = run_transaction(
        session_factory,
        lambda db: set_plan_active(db, plan_id, body.is_active, registry=registry, actor=actor),
        label="plan.status",
    )
    return {"ok": True, "plan": plan_as_dict(row)}


@router.delete("/plans/{plan_id}")
def delete_plan_route(
    plan_id: str,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
    actor: str = Depends(get_actor),
):
    run_transaction(
        session_factory,
        lambda db: delete_plan(db, plan_id, registry=registry, actor=actor),
        label="plan.delete",
    )
    logger.info("[PLANS] plan eliminado id=%s actor=%s", plan_id, actor)
    return {"ok": True}


@router.get("/plans/{plan_id}/history")
def plan_history_route(plan_id: str, limit: int = 50, db: Session = Depends(get_db)):
    rows = list_plan_history(db, plan_id, limit=limit)
    return {
        "ok": True,
        "history": [
            {
                "change_type": h.change_type.value,
                "old_values": h.old_values,
                "new_values": h.new_values,
                "reason": h.reason,
                "actor": h.actor,
                "timestamp": as_iso(h.created_at),
            }
            for h in rows
        ],
    }


@router.post("/plans/cache/invalidate")
def invalidate_plans_cache(registry: PlanRegistry = Depends(get_plan_registry), actor: str = Depends(get_actor)):
    registry.invalidate()
    logger.info("[PLANS] cache invalidado actor=%s", actor)
    return {"ok": True}


# =========================================================
# JOBS
# =========================================================

@router.post("/jobs/renewals")
def run_renewals_job(
    body: Optional[JobIn] = None,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    params = body or JobIn()
    result = process_due(session_factory, now=params.now, actor=actor, limit=params.limit)
    return {"ok": True, "result": result.as_dict()}


@router.post("/jobs/trials")
def run_trials_job(
    body: Optional[JobIn] = None,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    params = body or JobIn()
    result = process_expired_trials(session_factory, now=params.now, actor=actor, limit=params.limit)
    return {"ok": True, "result": result.as_dict()}


# =========================================================
# CUPONES DE ADMINISTRACIÓN
# =========================================================

@router.post("/coupons", status_code=201)
def issue_admin_coupons(
    body: IssueCouponIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    cupones = issue_coupon_batch(
        session_factory,
        None,
        body.resolve_benefits(),
        quantity=body.quantity,
        validity_days=body.validity_days,
        actor=actor,
        notes=body.notes,
    )
    return {"ok": True, "coupons": [coupon_as_dict(c) for c in cupones]}


@router.get("/coupons")
def list_admin_coupons(status: Optional[str] = None, limit: int = 100, db: Session = Depends(get_db)):
    rows = list_coupons(db, status=status, admin_only=True, limit=limit)
    return {"ok": True, "coupons": [coupon_as_dict(c) for c in rows]}


# =========================================================
# AUDITORÍA
# =========================================================

@router.get("/audit")
def audit_route(
    lubricentro_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    rows = list_audit(db, lubricentro_id=lubricentro_id, action=action, limit=limit)
    return {
        "ok": True,
        "audit": [
            {
                "id": r.id,
                "fecha": as_iso(r.fecha),
                "lubricentro_id": r.lubricentro_id,
                "usuario": r.usuario,
                "accion": r.accion,
                "detalle": audit_payload(r),
            }
            for r in rows
        ],
    }
