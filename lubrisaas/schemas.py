# lubrisaas/schemas.py
"""
Payloads JSON de la API – LubriSaaS (pydantic v2)
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from lubrisaas.models.enums import MotivoInactivacion, PeriodoRenovacion, PlanTipo
from lubrisaas.services.services_coupons import CouponBenefits
from lubrisaas.services.services_credits import CreditPayment
from lubrisaas.services.services_subscriptions import PaymentInput


# =========================================================
# LUBRICENTROS / SUSCRIPCIÓN
# =========================================================

class LubricentroCreate(BaseModel):
    nombre_fantasia: str = Field(min_length=1)
    email: Optional[str] = None


class PaymentIn(BaseModel):
    amount: float = Field(ge=0)
    method: str = Field(min_length=1)
    reference: Optional[str] = None

    def to_input(self) -> PaymentInput:
        return PaymentInput(amount=self.amount, method=self.method, reference=self.reference)


class ActivateIn(BaseModel):
    plan_id: str
    renewal_period: PeriodoRenovacion = PeriodoRenovacion.MONTHLY
    payment: Optional[PaymentIn] = None


class DeactivateIn(BaseModel):
    reason: MotivoInactivacion = MotivoInactivacion.MANUAL
    notes: Optional[str] = None


class ExtendTrialIn(BaseModel):
    days: int


class ResetTrialIn(BaseModel):
    days: Optional[int] = Field(default=None, ge=1)


class AdditionalServicesIn(BaseModel):
    quantity: int
    payment: Optional[PaymentIn] = None


# =========================================================
# CUPONES / DISTRIBUIDORES
# =========================================================

class BenefitsIn(BaseModel):
    membership_months: int = Field(default=1, ge=1)
    unlimited_services: bool = False
    total_services_contracted: int = Field(default=0, ge=0)
    additional_services: int = Field(default=0, ge=0)
    max_users: Optional[int] = Field(default=None, ge=1)
    features: list[str] = Field(default_factory=list)

    def to_benefits(self) -> CouponBenefits:
        return CouponBenefits(
            membership_months=self.membership_months,
            unlimited_services=self.unlimited_services,
            total_services_contracted=self.total_services_contracted,
            additional_services=self.additional_services,
            max_users=self.max_users,
            features=tuple(self.features),
        )


class IssueCouponIn(BaseModel):
    benefits: Optional[BenefitsIn] = None
    coupon_type: Optional[str] = None  # monthly | quarterly | semiannual | annual | custom
    validity_days: Optional[int] = Field(default=None, ge=1)
    quantity: int = Field(default=1, ge=1, le=100)
    notes: Optional[str] = None

    def resolve_benefits(self) -> CouponBenefits:
        if self.benefits is not None:
            return self.benefits.to_benefits()
        return CouponBenefits.for_type(self.coupon_type or "monthly", unlimited_services=True)


class ValidateCouponIn(BaseModel):
    code: str


class RedeemCouponIn(BaseModel):
    code: str
    lubricentro_id: int


class DistributorCreate(BaseModel):
    name: str = Field(min_length=1)
    cuit: Optional[str] = None
    email: Optional[str] = None
    code_prefix: Optional[str] = Field(default=None, max_length=12)


class CreditPurchaseIn(BaseModel):
    quantity: int
    method: str = "transfer"
    reference: Optional[str] = None
    invoice_number: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)

    def to_payment(self) -> CreditPayment:
        return CreditPayment(
            method=self.method,
            reference=self.reference,
            invoice_number=self.invoice_number,
            amount=self.amount,
        )


# =========================================================
# PLANES / JOBS
# =========================================================

class PlanIn(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str
    description: Optional[str] = None
    kind: PlanTipo = PlanTipo.RECURRING
    price_monthly: Optional[float] = None
    price_semiannual: Optional[float] = None
    bundle_price: Optional[float] = None
    max_users: int = 1
    max_monthly_services: Optional[int] = None
    total_services: Optional[int] = None
    validity_months: Optional[int] = None
    features: list[str] = Field(default_factory=list)
    is_published: bool = True
    display_order: int = 0


class PlanUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    kind: Optional[PlanTipo] = None
    price_monthly: Optional[float] = None
    price_semiannual: Optional[float] = None
    bundle_price: Optional[float] = None
    max_users: Optional[int] = None
    max_monthly_services: Optional[int] = None
    total_services: Optional[int] = None
    validity_months: Optional[int] = None
    features: Optional[list[str]] = None
    is_published: Optional[bool] = None
    display_order: Optional[int] = None
    reason: Optional[str] = None


class PlanStatusIn(BaseModel):
    is_active: bool


class JobIn(BaseModel):
    now: Optional[datetime] = None
    limit: int = Field(default=500, ge=1, le=5000)
