# lubrisaas/services/services_credits.py
"""
services_credits.py – LubriSaaS

✔ Alta de distribuidores
✔ Compra de créditos atómica (purchased += q, available += q, historial)
✔ Precio unitario escalonado (solo display / registro, no enforcement)
✔ Stats recalculadas desde la colección de cupones (source of truth)

Invariante: credits_available = credits_purchased - credits_used >= 0
(CheckConstraint en DB). Solo la emisión de cupones descuenta créditos.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from lubrisaas.database import run_transaction
from lubrisaas.errors import DistributorNotFound, InvalidState
from lubrisaas.logging_config import logger
from lubrisaas.models import CompraCreditos, Cupon, Distribuidor, Lubricentro
from lubrisaas.models.enums import CuponEstado, LubricentroEstado
from lubrisaas.models.time import as_iso, utcnow
from lubrisaas.services.services_audit import AuditAction, audit


# (cantidad mínima, precio unitario) – de mayor a menor
PRICE_TIERS: tuple[tuple[int, float], ...] = (
    (100, 7.0),
    (50, 8.0),
    (25, 9.0),
    (10, 9.5),
)
BASE_UNIT_PRICE = 10.0


@dataclass(frozen=True)
class CreditPayment:
    method: str = "transfer"
    reference: Optional[str] = None
    invoice_number: Optional[str] = None
    amount: Optional[float] = None  # None -> quantity * unit_price


def calculate_unit_price(quantity: int) -> float:
    q = int(quantity or 0)
    for min_qty, price in PRICE_TIERS:
        if q >= min_qty:
            return price
    return BASE_UNIT_PRICE


def get_distributor_or_raise(db: Session, distributor_id: int) -> Distribuidor:
    dist = db.get(Distribuidor, distributor_id)
    if not dist:
        raise DistributorNotFound(distributor_id)
    return dist


# =========================================================
# DISTRIBUIDORES
# =========================================================

def create_distributor(
    db: Session,
    *,
    name: str,
    cuit: Optional[str] = None,
    email: Optional[str] = None,
    code_prefix: Optional[str] = None,
    actor: str = "sistema",
) -> Distribuidor:
    nombre = (name or "").strip()
    if not nombre:
        raise InvalidState("El nombre del distribuidor es requerido")

    exists = db.query(Distribuidor.id).filter(func.lower(Distribuidor.name) == nombre.lower()).first()
    if exists:
        raise InvalidState(f"Ya existe un distribuidor con el nombre: {nombre}")

    prefix = (code_prefix or "").strip().upper() or None
    if prefix and not prefix.isalnum():
        raise InvalidState("El prefijo de cupones solo admite letras y números")

    dist = Distribuidor(
        name=nombre,
        cuit=cuit,
        email=(email or "").strip().lower() or None,
        code_prefix=prefix,
        activo=True,
        credits_purchased=0,
        credits_used=0,
        credits_available=0,
        total_coupons_generated=0,
        total_coupons_used=0,
        active_lubricentros=0,
    )
    db.add(dist)
    db.flush()

    audit(
        db,
        action=AuditAction.DISTRIBUTOR_CREATE,
        actor=actor,
        payload={"distributor_id": dist.id, "name": nombre, "code_prefix": dist.prefix},
    )
    return dist


# =========================================================
# CRÉDITOS
# =========================================================

def purchase_credits(
    session_factory,
    distributor_id: int,
    quantity: int,
    *,
    payment: Optional[CreditPayment] = None,
    actor: str = "sistema",
    now: Optional[datetime] = None,
) -> CompraCreditos:
    ts = now or utcnow()
    q = int(quantity or 0)
    if q < 1:
        raise InvalidState("La cantidad de créditos debe ser mayor a 0")

    pay = payment or CreditPayment()
    unit_price = calculate_unit_price(q)
    total = float(pay.amount) if pay.amount is not None else round(q * unit_price, 2)

    def _tx(db: Session) -> CompraCreditos:
        dist = get_distributor_or_raise(db, distributor_id)

        dist.credits_purchased = int(dist.credits_purchased or 0) + q
        dist.credits_available = int(dist.credits_available or 0) + q
        dist.last_purchase_at = ts

        compra = CompraCreditos(
            distribuidor_id=dist.id,
            quantity=q,
            unit_price=unit_price,
            total_amount=total,
            method=pay.method,
            reference=pay.reference,
            invoice_number=pay.invoice_number,
            actor=actor,
            created_at=ts,
        )
        db.add(compra)
        db.flush()

        audit(
            db,
            action=AuditAction.CREDITS_PURCHASE,
            actor=actor,
            payload={
                "distributor_id": dist.id,
                "quantity": q,
                "unit_price": unit_price,
                "total_amount": total,
                "credits_available": dist.credits_available,
            },
        )
        return compra

    compra = run_transaction(session_factory, _tx, label="credits.purchase")

    logger.info(
        "[CREDITS] compra distributor_id=%s quantity=%s unit_price=%s total=%s",
        distributor_id, q, unit_price, total,
    )
    return compra


def list_credit_purchases(db: Session, distributor_id: int, *, limit: int = 50) -> list[CompraCreditos]:
    get_distributor_or_raise(db, distributor_id)
    return (
        db.query(CompraCreditos)
        .filter(CompraCreditos.distribuidor_id == distributor_id)
        .order_by(CompraCreditos.created_at.desc(), CompraCreditos.id.desc())
        .limit(int(limit))
        .all()
    )


# =========================================================
# STATS (derivadas de cupones)
# =========================================================

def get_distributor_stats(db: Session, distributor_id: int) -> dict[str, Any]:
    dist = get_distributor_or_raise(db, distributor_id)

    counts = dict(
        db.query(Cupon.status, func.count(Cupon.code))
        .filter(Cupon.distributor_id == distributor_id)
        .group_by(Cupon.status)
        .all()
    )
    active = int(counts.get(CuponEstado.ACTIVE, 0))
    used = int(counts.get(CuponEstado.USED, 0))
    expired = int(counts.get(CuponEstado.EXPIRED, 0))
    generated = active + used + expired

    used_rows = (
        db.query(Cupon.used_by)
        .filter(Cupon.distributor_id == distributor_id, Cupon.status == CuponEstado.USED)
        .all()
    )
    lub_ids = {
        int(u["lubricentro_id"])
        for (u,) in used_rows
        if isinstance(u, dict) and u.get("lubricentro_id") is not None
    }
    active_lubs = 0
    if lub_ids:
        active_lubs = (
            db.query(func.count(Lubricentro.id))
            .filter(Lubricentro.id.in_(lub_ids), Lubricentro.status == LubricentroEstado.ACTIVE)
            .scalar()
            or 0
        )

    return {
        "distributor_id": dist.id,
        "name": dist.name,
        "credits": {
            "purchased": int(dist.credits_purchased),
            "used": int(dist.credits_used),
            "available": int(dist.credits_available),
            "last_purchase_at": as_iso(dist.last_purchase_at),
        },
        "coupons": {
            "generated": generated,
            "active": active,
            "used": used,
            "expired": expired,
        },
        "active_lubricentros": int(active_lubs),
        "conversion_rate": round(used * 100.0 / generated, 2) if generated else 0.0,
    }


def sync_distributor_stats(db: Session, distributor_id: int) -> Distribuidor:
    """Reescribe los contadores denormalizados a partir del recálculo."""
    stats = get_distributor_stats(db, distributor_id)
    dist = get_distributor_or_raise(db, distributor_id)
    dist.total_coupons_generated = stats["coupons"]["generated"]
    dist.total_coupons_used = stats["coupons"]["used"]
    dist.active_lubricentros = stats["active_lubricentros"]
    db.flush()
    return dist
