# lubrisaas/routes/routes_coupons.py
"""
Cupones y distribuidores – LubriSaaS (JSON)

✔ Validación de cupón (el vencimiento perezoso se confirma en su propia transacción)
✔ Canje atómico para un lubricentro
✔ Distribuidores: alta, compra de créditos, emisión de cupones, stats
✔ Borrado administrativo de cupones
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from lubrisaas.database import run_transaction
from lubrisaas.deps import get_actor, get_db, get_plan_registry, get_session_factory
from lubrisaas.logging_config import logger
from lubrisaas.models import Distribuidor
from lubrisaas.models.time import as_iso
from lubrisaas.schemas import (
    CreditPurchaseIn,
    DistributorCreate,
    IssueCouponIn,
    RedeemCouponIn,
    ValidateCouponIn,
)
from lubrisaas.services.services_coupons import (
    coupon_as_dict,
    delete_coupon,
    get_coupon,
    issue_coupon_batch,
    list_coupons,
    redeem_coupon,
    validate_coupon,
)
from lubrisaas.services.services_credits import (
    calculate_unit_price,
    create_distributor,
    get_distributor_or_raise,
    get_distributor_stats,
    list_credit_purchases,
    purchase_credits,
)
from lubrisaas.services.services_plans import PlanRegistry


router = APIRouter(tags=["cupones"])


def distributor_as_dict(dist: Distribuidor) -> dict:
    return {
        "id": dist.id,
        "name": dist.name,
        "cuit": dist.cuit,
        "email": dist.email,
        "code_prefix": dist.prefix,
        "activo": bool(dist.activo),
        "credits_purchased": int(dist.credits_purchased or 0),
        "credits_used": int(dist.credits_used or 0),
        "credits_available": int(dist.credits_available or 0),
        "total_coupons_generated": int(dist.total_coupons_generated or 0),
        "total_coupons_used": int(dist.total_coupons_used or 0),
        "active_lubricentros": int(dist.active_lubricentros or 0),
        "last_purchase_at": as_iso(dist.last_purchase_at),
    }


# =========================================================
# CUPONES
# =========================================================

@router.post("/coupons/validate")
def validate_coupon_route(body: ValidateCouponIn, session_factory=Depends(get_session_factory)):
    result = run_transaction(
        session_factory,
        lambda db: validate_coupon(db, body.code),
        label="coupon.validate",
    )
    return {"ok": True, **result.as_dict()}


@router.post("/coupons/redeem")
def redeem_coupon_route(
    body: RedeemCouponIn,
    session_factory=Depends(get_session_factory),
    registry: PlanRegistry = Depends(get_plan_registry),
    actor: str = Depends(get_actor),
):
    result = redeem_coupon(
        session_factory,
        body.code,
        body.lubricentro_id,
        registry=registry,
        actor=actor,
    )
    return {"ok": True, "message": "Cupón activado exitosamente", **result.as_dict()}


@router.get("/coupons")
def list_coupons_route(
    distributor_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    rows = list_coupons(db, distributor_id=distributor_id, status=status, limit=limit)
    return {"ok": True, "coupons": [coupon_as_dict(c) for c in rows]}


@router.get("/coupons/{code}")
def get_coupon_route(code: str, db: Session = Depends(get_db)):
    return {"ok": True, "coupon": coupon_as_dict(get_coupon(db, code))}


@router.delete("/coupons/{code}")
def delete_coupon_route(
    code: str,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    run_transaction(
        session_factory,
        lambda db: delete_coupon(db, code, actor=actor),
        label="coupon.delete",
    )
    logger.info("[COUPONS] cupón eliminado code=%s actor=%s", code, actor)
    return {"ok": True}


# =========================================================
# DISTRIBUIDORES
# =========================================================

@router.post("/distributors", status_code=201)
def create_distributor_route(
    body: DistributorCreate,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    dist = run_transaction(
        session_factory,
        lambda db: create_distributor(
            db,
            name=body.name,
            cuit=body.cuit,
            email=body.email,
            code_prefix=body.code_prefix,
            actor=actor,
        ),
        label="distributor.create",
    )
    logger.info("[CREDITS] distribuidor creado id=%s name=%s", dist.id, dist.name)
    return {"ok": True, "distributor": distributor_as_dict(dist)}


@router.get("/distributors/{distributor_id}")
def get_distributor_route(distributor_id: int, db: Session = Depends(get_db)):
    return {"ok": True, "distributor": distributor_as_dict(get_distributor_or_raise(db, distributor_id))}


@router.post("/distributors/{distributor_id}/credits", status_code=201)
def purchase_credits_route(
    distributor_id: int,
    body: CreditPurchaseIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    compra = purchase_credits(
        session_factory,
        distributor_id,
        body.quantity,
        payment=body.to_payment(),
        actor=actor,
    )
    return {
        "ok": True,
        "purchase": {
            "id": compra.id,
            "quantity": compra.quantity,
            "unit_price": compra.unit_price,
            "total_amount": compra.total_amount,
            "date": as_iso(compra.created_at),
        },
    }


@router.get("/distributors/{distributor_id}/credits")
def list_credits_route(distributor_id: int, limit: int = 50, db: Session = Depends(get_db)):
    rows = list_credit_purchases(db, distributor_id, limit=limit)
    return {
        "ok": True,
        "purchases": [
            {
                "id": c.id,
                "quantity": c.quantity,
                "unit_price": c.unit_price,
                "total_amount": c.total_amount,
                "method": c.method,
                "reference": c.reference,
                "invoice_number": c.invoice_number,
                "date": as_iso(c.created_at),
            }
            for c in rows
        ],
    }


@router.get("/distributors/pricing/{quantity}")
def credit_pricing_route(quantity: int):
    unit = calculate_unit_price(quantity)
    return {"ok": True, "quantity": quantity, "unit_price": unit, "total": round(quantity * unit, 2)}


@router.post("/distributors/{distributor_id}/coupons", status_code=201)
def issue_coupons_route(
    distributor_id: int,
    body: IssueCouponIn,
    session_factory=Depends(get_session_factory),
    actor: str = Depends(get_actor),
):
    cupones = issue_coupon_batch(
        session_factory,
        distributor_id,
        body.resolve_benefits(),
        quantity=body.quantity,
        validity_days=body.validity_days,
        actor=actor,
        notes=body.notes,
    )
    return {"ok": True, "coupons": [coupon_as_dict(c) for c in cupones]}


@router.get("/distributors/{distributor_id}/stats")
def distributor_stats_route(distributor_id: int, db: Session = Depends(get_db)):
    return {"ok": True, "stats": get_distributor_stats(db, distributor_id)}
