"""
Modelos SaaS – LubriSaaS

✔ Lubricentro (cuenta tenant) con estado trial / active / inactive
✔ Planes recurrentes (mensual / semestral) y paquetes de servicios
✔ Uso mensual por período YYYY-MM (unique por lubricentro + período)
✔ Pagos y bitácora de renovaciones append-only
✔ Concurrencia optimista (version_id_col) en documentos mutables

=========================================================
CONTRATO DE MODOS (una sola combinación de campos válida)
=========================================================
- TRIAL:       trial_ends_at != None ; sin plan ni campos de ciclo/paquete
- RECURRENTE:  status=active, plan_kind=recurring, billing_cycle_end != None
               campos de paquete = None
- PAQUETE:     status=active, plan_kind=bundle
               services_used_total + services_remaining == total_services_contracted
- INACTIVO:    status=inactive; conserva plan/ciclo anteriores como referencia

Los setters set_trial_fields / set_recurring_fields / set_bundle_fields
limpian los campos de los otros modos; `modo` expone la vista tipada.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import Enum as SAEnum

from lubrisaas.database import Base
from lubrisaas.models.enums import (
    HistorialAccion,
    LubricentroEstado,
    MotivoInactivacion,
    PagoEstado,
    PeriodoRenovacion,
    PlanCambio,
    PlanTipo,
)
from lubrisaas.models.time import UTCDateTime, utcnow


# =========================================================
# VISTA TIPADA DE MODOS (no DB)
# =========================================================

@dataclass(frozen=True)
class ModoTrial:
    trial_ends_at: datetime


@dataclass(frozen=True)
class ModoRecurrente:
    plan_id: str
    renewal_period: PeriodoRenovacion
    billing_cycle_end: datetime
    next_payment_date: Optional[datetime]
    auto_renewal: bool
    payment_status: Optional[PagoEstado]


@dataclass(frozen=True)
class ModoPaquete:
    plan_id: str
    total_services_contracted: int
    services_remaining: int
    services_used: int
    bundle_expires_at: datetime


@dataclass(frozen=True)
class ModoInactivo:
    reason: Optional[MotivoInactivacion]
    since: Optional[datetime]
    previous_plan_id: Optional[str]


Modo = Union[ModoTrial, ModoRecurrente, ModoPaquete, ModoInactivo]


# =========================================================
# PLAN
# =========================================================

class Plan(Base):
    __tablename__ = "planes"
    __table_args__ = (
        CheckConstraint("max_users >= 1", name="ck_plan_max_users_pos"),
        Index("ix_planes_activo_orden", "is_active", "display_order"),
    )

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    kind = Column(SAEnum(PlanTipo, name="plan_tipo_enum"), nullable=False, default=PlanTipo.RECURRING)

    # Recurrente
    price_monthly = Column(Float, nullable=True)
    price_semiannual = Column(Float, nullable=True)
    max_monthly_services = Column(Integer, nullable=True)  # None = ilimitado

    # Paquete
    bundle_price = Column(Float, nullable=True)
    total_services = Column(Integer, nullable=True)
    validity_months = Column(Integer, nullable=True)

    max_users = Column(Integer, nullable=False, default=1)
    features = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True)
    is_published = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    display_order = Column(Integer, nullable=False, default=0)

    created_by = Column(String, nullable=True)
    updated_by = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}


class HistorialPlan(Base):
    """Cambios de plan (sin FK: el historial sobrevive al borrado del plan)."""

    __tablename__ = "historial_planes"

    id = Column(Integer, primary_key=True)
    plan_id = Column(String(64), nullable=False, index=True)
    change_type = Column(SAEnum(PlanCambio, name="plan_cambio_enum"), nullable=False)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    reason = Column(String, nullable=True)
    actor = Column(String, nullable=False, default="sistema")
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)


# =========================================================
# LUBRICENTRO
# =========================================================

class Lubricentro(Base):
    __tablename__ = "lubricentros"
    __table_args__ = (
        CheckConstraint("services_used_this_month >= 0", name="ck_lub_uso_mes_nonneg"),
        CheckConstraint("services_remaining IS NULL OR services_remaining >= 0", name="ck_lub_restantes_nonneg"),
        CheckConstraint(
            "plan_kind IS NULL OR plan_kind != 'BUNDLE' "
            "OR services_used_total + services_remaining = total_services_contracted",
            name="ck_lub_paquete_balance",
        ),
        # Cola del batch de renovaciones
        Index("ix_lub_status_ciclo", "status", "billing_cycle_end"),
        Index("ix_lub_status_trial", "status", "trial_ends_at"),
    )

    id = Column(Integer, primary_key=True)
    nombre_fantasia = Column(String, nullable=False, index=True)
    email = Column(String, nullable=True)

    status = Column(
        SAEnum(LubricentroEstado, name="lubricentro_estado_enum"),
        nullable=False,
        default=LubricentroEstado.TRIAL,
        index=True,
    )

    # =========================
    # PLAN
    # =========================
    plan_id = Column(String(64), nullable=True, index=True)
    plan_kind = Column(SAEnum(PlanTipo, name="plan_tipo_enum"), nullable=True)

    # =========================
    # TRIAL
    # =========================
    trial_ends_at = Column(UTCDateTime, nullable=True)

    # =========================
    # RECURRENTE
    # =========================
    billing_cycle_end = Column(UTCDateTime, nullable=True)
    next_payment_date = Column(UTCDateTime, nullable=True)
    renewal_period = Column(SAEnum(PeriodoRenovacion, name="periodo_renovacion_enum"), nullable=True)
    auto_renewal = Column(Boolean, nullable=False, default=False)

    payment_status = Column(SAEnum(PagoEstado, name="pago_estado_enum"), nullable=True)
    payment_method = Column(String, nullable=True)
    last_payment_at = Column(UTCDateTime, nullable=True)

    # =========================
    # PAQUETE
    # =========================
    total_services_contracted = Column(Integer, nullable=True)
    services_remaining = Column(Integer, nullable=True)
    bundle_expires_at = Column(UTCDateTime, nullable=True)

    # =========================
    # USO
    # =========================
    services_used_this_month = Column(Integer, nullable=False, default=0)
    services_used_total = Column(Integer, nullable=False, default=0)
    active_user_count = Column(Integer, nullable=False, default=1)

    # =========================
    # PATROCINIO (cupón)
    # =========================
    sponsorship = Column(JSON, nullable=True)

    # =========================
    # CICLO DE VIDA
    # =========================
    subscription_started_at = Column(UTCDateTime, nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)
    last_renewal_at = Column(UTCDateTime, nullable=True)
    last_manual_reset_at = Column(UTCDateTime, nullable=True)
    inactive_reason = Column(SAEnum(MotivoInactivacion, name="motivo_inactivacion_enum"), nullable=True)
    inactive_since = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    # =========================
    # HELPERS (no DB)
    # =========================
    @property
    def is_trial(self) -> bool:
        return self.status == LubricentroEstado.TRIAL

    @property
    def is_active(self) -> bool:
        return self.status == LubricentroEstado.ACTIVE

    @property
    def is_bundle(self) -> bool:
        return self.plan_kind == PlanTipo.BUNDLE

    @property
    def modo(self) -> Modo:
        if self.status == LubricentroEstado.TRIAL:
            return ModoTrial(trial_ends_at=self.trial_ends_at)

        if self.status == LubricentroEstado.INACTIVE:
            return ModoInactivo(
                reason=self.inactive_reason,
                since=self.inactive_since,
                previous_plan_id=self.plan_id,
            )

        if self.plan_kind == PlanTipo.BUNDLE:
            return ModoPaquete(
                plan_id=self.plan_id,
                total_services_contracted=int(self.total_services_contracted or 0),
                services_remaining=int(self.services_remaining or 0),
                services_used=int(self.services_used_total or 0),
                bundle_expires_at=self.bundle_expires_at,
            )

        return ModoRecurrente(
            plan_id=self.plan_id,
            renewal_period=self.renewal_period or PeriodoRenovacion.MONTHLY,
            billing_cycle_end=self.billing_cycle_end,
            next_payment_date=self.next_payment_date,
            auto_renewal=bool(self.auto_renewal),
            payment_status=self.payment_status,
        )

    # =========================
    # SETTERS DE MODO
    # =========================
    def _clear_bundle_fields(self) -> None:
        self.total_services_contracted = None
        self.services_remaining = None
        self.bundle_expires_at = None

    def _clear_recurring_fields(self) -> None:
        self.billing_cycle_end = None
        self.next_payment_date = None
        self.renewal_period = None
        self.auto_renewal = False

    def set_trial_fields(self, *, now: datetime, trial_days: int) -> None:
        """Trial: sin plan, sin ciclo, sin paquete, contadores en cero."""
        self.status = LubricentroEstado.TRIAL
        self.trial_ends_at = now + timedelta(days=max(0, int(trial_days or 0)))
        self.plan_id = None
        self.plan_kind = None
        self._clear_recurring_fields()
        self._clear_bundle_fields()
        self.payment_status = None
        self.services_used_this_month = 0
        self.inactive_reason = None
        self.inactive_since = None

    def set_recurring_fields(
        self,
        *,
        plan_id: str,
        renewal_period: PeriodoRenovacion,
        cycle_end: datetime,
        auto_renewal: bool,
    ) -> None:
        self.status = LubricentroEstado.ACTIVE
        self.plan_id = plan_id
        self.plan_kind = PlanTipo.RECURRING
        self.trial_ends_at = None
        self._clear_bundle_fields()

        self.renewal_period = renewal_period
        self.billing_cycle_end = cycle_end
        self.next_payment_date = cycle_end
        self.auto_renewal = bool(auto_renewal)
        self.services_used_this_month = 0
        self.inactive_reason = None
        self.inactive_since = None

    def set_bundle_fields(
        self,
        *,
        plan_id: str,
        total_services: int,
        expires_at: datetime,
    ) -> None:
        """Paquete: used_total=0, remaining=total, sin auto-renovación."""
        self.status = LubricentroEstado.ACTIVE
        self.plan_id = plan_id
        self.plan_kind = PlanTipo.BUNDLE
        self.trial_ends_at = None
        self._clear_recurring_fields()

        self.total_services_contracted = int(total_services)
        self.services_remaining = int(total_services)
        self.services_used_total = 0
        self.services_used_this_month = 0
        self.bundle_expires_at = expires_at
        # El batch procesa por billing_cycle_end: el paquete vence con él.
        self.billing_cycle_end = expires_at
        self.inactive_reason = None
        self.inactive_since = None


class UsoMensual(Base):
    """Historial de uso: servicios por lubricentro y período YYYY-MM."""

    __tablename__ = "uso_mensual"
    __table_args__ = (
        UniqueConstraint("lubricentro_id", "periodo", name="uq_uso_mensual_periodo"),
        CheckConstraint("servicios >= 0", name="ck_uso_mensual_nonneg"),
    )

    id = Column(Integer, primary_key=True)
    lubricentro_id = Column(Integer, ForeignKey("lubricentros.id", ondelete="CASCADE"), nullable=False, index=True)
    periodo = Column(String(7), nullable=False)
    servicios = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Pago(Base):
    """Registro de pago append-only (cupón = monto 0, method='coupon')."""

    __tablename__ = "pagos"

    id = Column(Integer, primary_key=True)
    lubricentro_id = Column(Integer, ForeignKey("lubricentros.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=False, default="ARS")
    method = Column(String, nullable=False)
    reference = Column(String, nullable=True)
    coupon_code = Column(String, nullable=True, index=True)
    distributor_id = Column(Integer, nullable=True)
    membership_months = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="completed")
    created_by = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)


class HistorialRenovacion(Base):
    __tablename__ = "historial_renovaciones"
    __table_args__ = (
        Index("ix_hist_renov_lub_fecha", "lubricentro_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    lubricentro_id = Column(Integer, ForeignKey("lubricentros.id", ondelete="CASCADE"), nullable=False)
    action = Column(SAEnum(HistorialAccion, name="historial_accion_enum"), nullable=False, index=True)
    details = Column(Text, nullable=True)
    actor = Column(String, nullable=False, default="sistema")
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
