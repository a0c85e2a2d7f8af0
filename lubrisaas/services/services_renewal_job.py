# lubrisaas/services/services_renewal_job.py
"""
services_renewal_job.py – LubriSaaS

Job de renovaciones / vencimientos (disparo manual o scheduler externo):
- Selecciona status=active con billing_cycle_end <= now
- auto_renewal=False -> expire_subscription
- auto_renewal=True  -> renew_billing_cycle
- Mismas primitivas que las acciones manuales (services_subscriptions)
- UNA transacción por lubricentro: el fallo de uno no frena al resto
- Errores por ítem se capturan y se devuelven en el resultado (nunca se ocultan)
- El resultado agregado queda en auditoría + log

Job de trials vencidos:
- status=trial con trial_ends_at <= now -> inactive (trial_expired)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from lubrisaas.database import run_transaction
from lubrisaas.errors import AccountNotFound
from lubrisaas.logging_config import logger
from lubrisaas.models import Lubricentro
from lubrisaas.models.enums import LubricentroEstado, MotivoInactivacion
from lubrisaas.models.time import as_iso, ensure_tz, utcnow
from lubrisaas.services.services_audit import AuditAction, audit
from lubrisaas.services.services_subscriptions import (
    deactivate,
    expire_subscription,
    renew_billing_cycle,
)


DEFAULT_BATCH_SIZE = 500

OUTCOME_RENEWED = "renewed"
OUTCOME_EXPIRED = "expired"
OUTCOME_SKIPPED = "skipped"


# =========================================================
# RESULT
# =========================================================

@dataclass
class ProcessingError:
    lubricentro_id: int
    nombre: Optional[str]
    error: str


@dataclass
class ProcessingResult:
    processed_count: int = 0
    renewed_count: int = 0
    expired_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    errors: list[ProcessingError] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TrialProcessingResult:
    processed_count: int = 0
    expired_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    errors: list[ProcessingError] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


# =========================================================
# HELPERS
# =========================================================

def _q_due(db: Session, *, now: datetime, limit: int) -> list[tuple[int, str]]:
    return (
        db.query(Lubricentro.id, Lubricentro.nombre_fantasia)
        .filter(Lubricentro.status == LubricentroEstado.ACTIVE)
        .filter(Lubricentro.billing_cycle_end.isnot(None))
        .filter(Lubricentro.billing_cycle_end <= now)
        .order_by(Lubricentro.id.asc())
        .limit(int(limit))
        .all()
    )


def _q_trials_due(db: Session, *, now: datetime, limit: int) -> list[tuple[int, str]]:
    return (
        db.query(Lubricentro.id, Lubricentro.nombre_fantasia)
        .filter(Lubricentro.status == LubricentroEstado.TRIAL)
        .filter(Lubricentro.trial_ends_at.isnot(None))
        .filter(Lubricentro.trial_ends_at <= now)
        .order_by(Lubricentro.id.asc())
        .limit(int(limit))
        .all()
    )


def _select(session_factory, query_fn, *, now: datetime, limit: int) -> list[tuple[int, str]]:
    db = session_factory()
    try:
        return [(int(i), n) for i, n in query_fn(db, now=now, limit=limit)]
    finally:
        db.close()


def _process_due_one(db: Session, lubricentro_id: int, *, now: datetime, actor: str) -> str:
    lub = db.get(Lubricentro, lubricentro_id)
    if lub is None:
        raise AccountNotFound(lubricentro_id)

    # Releído dentro de la transacción: pudo cambiar desde la selección
    if lub.status != LubricentroEstado.ACTIVE or not lub.billing_cycle_end or lub.billing_cycle_end > now:
        return OUTCOME_SKIPPED

    if not lub.auto_renewal:
        expire_subscription(db, lub, now=now, actor=actor)
        return OUTCOME_EXPIRED

    renew_billing_cycle(db, lub, now=now, actor=actor, renewal_type="automatic")
    return OUTCOME_RENEWED


def _record_job(session_factory, *, action: str, actor: str, payload: dict) -> None:
    run_transaction(
        session_factory,
        lambda db: audit(db, action=action, actor=actor, payload=payload),
        label=action,
    )


# =========================================================
# JOBS
# =========================================================

def process_due(
    session_factory,
    *,
    now: Optional[datetime] = None,
    actor: str = "sistema",
    limit: int = DEFAULT_BATCH_SIZE,
) -> ProcessingResult:
    """
    Ejecuta 1 ciclo de renovaciones / vencimientos.
    """
    ts = ensure_tz(now) if now else utcnow()
    result = ProcessingResult()

    due = _select(session_factory, _q_due, now=ts, limit=limit)

    logger.info("[JOB] renewals start now=%s batch=%s found=%s", as_iso(ts), limit, len(due))

    for lub_id, nombre in due:
        result.processed_count += 1
        try:
            outcome = run_transaction(
                session_factory,
                lambda db, _id=lub_id: _process_due_one(db, _id, now=ts, actor=actor),
                label=f"renewal:{lub_id}",
            )
        except Exception as exc:
            result.error_count += 1
            result.errors.append(ProcessingError(lubricentro_id=lub_id, nombre=nombre, error=str(exc)))
            logger.exception("[JOB] renewals error lubricentro_id=%s", lub_id)
            continue

        if outcome == OUTCOME_RENEWED:
            result.renewed_count += 1
            logger.info("[JOB] renewed lubricentro_id=%s", lub_id)
        elif outcome == OUTCOME_EXPIRED:
            result.expired_count += 1
            logger.info("[JOB] expired lubricentro_id=%s", lub_id)
        else:
            result.skipped_count += 1

    payload = {"now": as_iso(ts), **result.as_dict()}
    _record_job(session_factory, action=AuditAction.JOB_RENEWAL_PROCESS, actor=actor, payload=payload)

    logger.info(
        "[JOB] renewals end processed=%s renewed=%s expired=%s skipped=%s errors=%s",
        result.processed_count,
        result.renewed_count,
        result.expired_count,
        result.skipped_count,
        result.error_count,
    )
    return result


def process_expired_trials(
    session_factory,
    *,
    now: Optional[datetime] = None,
    actor: str = "sistema",
    limit: int = DEFAULT_BATCH_SIZE,
) -> TrialProcessingResult:
    ts = ensure_tz(now) if now else utcnow()
    result = TrialProcessingResult()

    due = _select(session_factory, _q_trials_due, now=ts, limit=limit)
    logger.info("[JOB] trials start now=%s found=%s", as_iso(ts), len(due))

    def _one(db: Session, lub_id: int) -> bool:
        lub = db.get(Lubricentro, lub_id)
        if lub is None:
            raise AccountNotFound(lub_id)
        if lub.status != LubricentroEstado.TRIAL or not lub.trial_ends_at or lub.trial_ends_at > ts:
            return False
        deactivate(db, lub_id, MotivoInactivacion.TRIAL_EXPIRED, actor=actor, now=ts)
        return True

    for lub_id, nombre in due:
        result.processed_count += 1
        try:
            expired = run_transaction(
                session_factory,
                lambda db, _id=lub_id: _one(db, _id),
                label=f"trial:{lub_id}",
            )
        except Exception as exc:
            result.error_count += 1
            result.errors.append(ProcessingError(lubricentro_id=lub_id, nombre=nombre, error=str(exc)))
            logger.exception("[JOB] trials error lubricentro_id=%s", lub_id)
            continue

        if expired:
            result.expired_count += 1
        else:
            result.skipped_count += 1

    _record_job(
        session_factory,
        action=AuditAction.JOB_TRIAL_PROCESS,
        actor=actor,
        payload={"now": as_iso(ts), **result.as_dict()},
    )
    logger.info(
        "[JOB] trials end processed=%s expired=%s errors=%s",
        result.processed_count, result.expired_count, result.error_count,
    )
    return result
