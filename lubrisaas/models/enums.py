# lubrisaas/models/enums.py
from __future__ import annotations
import enum

class LubricentroEstado(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    INACTIVE = "inactive"

class PlanTipo(str, enum.Enum):
    RECURRING = "recurring"
    BUNDLE = "bundle"

class PeriodoRenovacion(str, enum.Enum):
    MONTHLY = "monthly"
    SEMIANNUAL = "semiannual"

    @property
    def months(self) -> int:
        return 6 if self is PeriodoRenovacion.SEMIANNUAL else 1

class PagoEstado(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"
    OVERDUE = "overdue"

class CuponEstado(str, enum.Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"

class HistorialAccion(str, enum.Enum):
    RENEWED = "renewed"
    EXPIRED = "expired"
    MANUAL_RESET = "manual_reset"
    TRIAL_EXTENSION = "trial_extension"
    ACTIVATION = "activation"

class MotivoInactivacion(str, enum.Enum):
    NON_PAYMENT = "non_payment"
    MANUAL = "manual"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    TRIAL_EXPIRED = "trial_expired"

class PlanCambio(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"
