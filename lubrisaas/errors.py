# lubrisaas/errors.py
"""
Errores de dominio – LubriSaaS

Cada error lleva:
- detail: texto legible (se muestra tal cual en UI)
- code:   clave estable para que la UI distinga el motivo
- status_code: mapeo HTTP usado por el handler de main.py

Las consultas de validación (can_consume, validate_coupon) NO lanzan:
devuelven resultados tipados. Las operaciones que mutan sí lanzan.
"""

from __future__ import annotations


class EntitlementError(Exception):
    """Base de errores del núcleo de entitlements/billing."""

    status_code = 400

    def __init__(self, detail: str, code: str = "entitlement_error"):
        self.detail = detail
        self.code = code
        super().__init__(detail)


# =========================================================
# NOT FOUND
# =========================================================

class NotFound(EntitlementError):
    status_code = 404

    def __init__(self, detail: str = "Recurso no encontrado.", code: str = "not_found"):
        super().__init__(detail, code=code)


class AccountNotFound(NotFound):
    def __init__(self, lubricentro_id=None):
        self.lubricentro_id = lubricentro_id
        super().__init__(
            f"Lubricentro no encontrado (id={lubricentro_id}).",
            code="account_not_found",
        )


class CouponNotFound(NotFound):
    def __init__(self, code_value: str = ""):
        self.coupon_code = code_value
        super().__init__("El código de cupón no existe.", code="coupon_not_found")


class PlanNotFound(NotFound):
    def __init__(self, plan_id=None):
        self.plan_id = plan_id
        super().__init__(f"Plan no encontrado: {plan_id}.", code="plan_not_found")


class DistributorNotFound(NotFound):
    def __init__(self, distributor_id=None):
        self.distributor_id = distributor_id
        super().__init__(
            f"Distribuidor no encontrado (id={distributor_id}).",
            code="distributor_not_found",
        )


# =========================================================
# ESTADO / CUPONES / CRÉDITOS / LÍMITES
# =========================================================

class InvalidState(EntitlementError):
    status_code = 409

    def __init__(self, detail: str = "Operación no permitida para el estado actual."):
        super().__init__(detail, code="invalid_state")


class AlreadyUsed(EntitlementError):
    status_code = 409

    def __init__(self, detail: str = "Este cupón ya ha sido utilizado."):
        super().__init__(detail, code="coupon_already_used")


class Expired(EntitlementError):
    status_code = 410

    def __init__(self, detail: str = "Este cupón ha expirado."):
        super().__init__(detail, code="coupon_expired")


class InsufficientCredits(EntitlementError):
    status_code = 402

    def __init__(
        self,
        detail: str = "No tienes créditos disponibles para generar cupones.",
        available: int = 0,
    ):
        self.available = available
        super().__init__(detail, code="insufficient_credits")


class LimitExceeded(EntitlementError):
    status_code = 429

    def __init__(self, detail: str = "Límite de servicios alcanzado.", remaining: int = 0):
        self.remaining = remaining
        super().__init__(detail, code="limit_exceeded")


class ConflictRetryExhausted(EntitlementError):
    status_code = 503

    def __init__(self, detail: str = "Conflicto de escritura: reintentos agotados."):
        super().__init__(detail, code="conflict_retry_exhausted")


# =========================================================
# PLANES
# =========================================================

class PlanInUse(EntitlementError):
    status_code = 409

    def __init__(
        self,
        detail: str = "No se puede eliminar un plan que está siendo utilizado.",
        usage_count: int = 0,
    ):
        self.usage_count = usage_count
        super().__init__(detail, code="plan_in_use")


class InvalidPlanData(EntitlementError):
    status_code = 422

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Datos de plan inválidos.", code="invalid_plan_data")
