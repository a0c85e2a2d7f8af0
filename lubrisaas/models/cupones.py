"""
Modelos de cupones y distribuidores – LubriSaaS

✔ Cupón: code = PK (único global), estado terminal used / expired
✔ Distribuidor: ledger de créditos (available = purchased - used >= 0)
✔ Compras de créditos append-only
✔ Concurrencia optimista (version_id_col) en cupón y distribuidor
"""

from __future__ import annotations

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
)
from sqlalchemy.types import Enum as SAEnum

from lubrisaas.database import Base
from lubrisaas.models.enums import CuponEstado
from lubrisaas.models.time import UTCDateTime, utcnow


class Distribuidor(Base):
    __tablename__ = "distribuidores"
    __table_args__ = (
        CheckConstraint("credits_available >= 0", name="ck_dist_creditos_nonneg"),
        CheckConstraint(
            "credits_available = credits_purchased - credits_used",
            name="ck_dist_creditos_balance",
        ),
    )

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, unique=True, index=True)
    cuit = Column(String, nullable=True)
    email = Column(String, nullable=True)
    code_prefix = Column(String(12), nullable=True)
    activo = Column(Boolean, nullable=False, default=True)

    # =========================
    # CRÉDITOS
    # =========================
    credits_purchased = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    credits_available = Column(Integer, nullable=False, default=0)
    last_purchase_at = Column(UTCDateTime, nullable=True)

    # =========================
    # STATS (derivadas, recalculables desde cupones)
    # =========================
    total_coupons_generated = Column(Integer, nullable=False, default=0)
    total_coupons_used = Column(Integer, nullable=False, default=0)
    active_lubricentros = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    @property
    def prefix(self) -> str:
        if self.code_prefix:
            return self.code_prefix.strip().upper()
        letters = "".join(ch for ch in (self.name or "") if ch.isalpha())
        return (letters[:4] or "DIST").upper()


class Cupon(Base):
    __tablename__ = "cupones"
    __table_args__ = (
        Index("ix_cupones_dist_estado", "distributor_id", "status"),
        Index("ix_cupones_estado_validez", "status", "valid_until"),
    )

    code = Column(String(40), primary_key=True)

    # None = cupón emitido por administrador (sin costo de crédito)
    distributor_id = Column(Integer, ForeignKey("distribuidores.id"), nullable=True)
    distributor_name = Column(String, nullable=False)

    status = Column(
        SAEnum(CuponEstado, name="cupon_estado_enum"),
        nullable=False,
        default=CuponEstado.ACTIVE,
    )

    valid_from = Column(UTCDateTime, nullable=False)
    valid_until = Column(UTCDateTime, nullable=False)

    # {membership_months, unlimited_services, total_services_contracted,
    #  additional_services, max_users}
    benefits = Column(JSON, nullable=False)

    # {lubricentro_id, lubricentro_name, used_at, activated_by}
    used_by = Column(JSON, nullable=True)

    generated_by = Column(String, nullable=False, default="sistema")
    notes = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_admin_coupon(self) -> bool:
        return self.distributor_id is None


class CompraCreditos(Base):
    __tablename__ = "compras_creditos"

    id = Column(Integer, primary_key=True)
    distribuidor_id = Column(Integer, ForeignKey("distribuidores.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)
    method = Column(String, nullable=False, default="transfer")
    reference = Column(String, nullable=True)
    invoice_number = Column(String, nullable=True)
    actor = Column(String, nullable=False, default="sistema")
    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
