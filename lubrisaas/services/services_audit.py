# lubrisaas/services/services_audit.py
"""
Servicio de Auditoría – LubriSaaS

✔ Source of truth para eventos de negocio
✔ Independiente de rutas / UI
✔ Usa la transacción del caller (flush, sin commit):
  si la operación hace rollback, su auditoría también
✔ Acciones canónicas
"""

from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from lubrisaas.models import Auditoria
from lubrisaas.models.time import utcnow


# =========================================================
# ACCIONES CANÓNICAS
# =========================================================

class AuditAction:
    # --- Suscripción / estado de cuenta
    ACCOUNT_CREATE = "account.create"
    SUBSCRIPTION_ACTIVATE = "subscription.activate"
    SUBSCRIPTION_DEACTIVATE = "subscription.deactivate"
    SUBSCRIPTION_RENEW = "subscription.renew"
    SUBSCRIPTION_EXPIRE = "subscription.expire"
    SUBSCRIPTION_RESET_TRIAL = "subscription.reset_trial"
    TRIAL_EXTEND = "trial.extend"
    USAGE_RESET = "usage.reset"
    PAYMENT_RECORD = "payment.record"
    BUNDLE_TOPUP = "bundle.topup"

    # --- Cupones / distribuidores
    COUPON_ISSUE = "coupon.issue"
    COUPON_REDEEM = "coupon.redeem"
    COUPON_EXPIRE = "coupon.expire"
    COUPON_DELETE = "coupon.delete"
    DISTRIBUTOR_CREATE = "distributor.create"
    CREDITS_PURCHASE = "credits.purchase"

    # --- Planes
    PLAN_CREATE = "plan.create"
    PLAN_UPDATE = "plan.update"
    PLAN_STATUS = "plan.status"
    PLAN_DELETE = "plan.delete"

    # --- Jobs
    JOB_RENEWAL_PROCESS = "job.renewal_process"
    JOB_TRIAL_PROCESS = "job.trial_process"


def _to_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


# =========================================================
# API PÚBLICA
# =========================================================

def audit(
    db: Session,
    *,
    action: str,
    actor: Optional[str] = None,
    lubricentro_id: Optional[int] = None,
    payload: Any = None,
) -> Auditoria:
    """
    Registra un evento de auditoría en la sesión del caller.
    No hace commit.
    """
    reg = Auditoria(
        lubricentro_id=lubricentro_id,
        usuario=(actor or "sistema"),
        accion=action,
        detalle=_to_json(payload) if payload is not None else None,
        fecha=utcnow(),
    )
    db.add(reg)
    db.flush()
    return reg


def list_audit(
    db: Session,
    *,
    lubricentro_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> list[Auditoria]:
    q = db.query(Auditoria)
    if lubricentro_id is not None:
        q = q.filter(Auditoria.lubricentro_id == lubricentro_id)
    if action:
        q = q.filter(Auditoria.accion == action)
    return q.order_by(Auditoria.fecha.desc(), Auditoria.id.desc()).limit(int(limit)).all()


def audit_payload(reg: Auditoria) -> Any:
    return json.loads(reg.detalle) if reg.detalle else None
