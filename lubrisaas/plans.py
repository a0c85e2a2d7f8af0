# lubrisaas/plans.py
"""
Tabla estática de planes – LubriSaaS

✔ Fallback del catálogo dinámico (tabla `planes`)
✔ Semilla de planes por defecto (is_default=True)
✔ Misma forma para planes recurrentes y paquetes de servicios

Convención de límites:
- max_monthly_services = None  -> servicios ilimitados (recurrente)
- total_services / validity_months -> solo paquetes
"""

from __future__ import annotations

from typing import Literal, Optional, TypedDict


# =========================================================
# TIPOS
# =========================================================

PlanKind = Literal["recurring", "bundle"]


class PlanDict(TypedDict, total=False):
    id: str
    name: str
    description: str
    kind: PlanKind
    price_monthly: Optional[float]
    price_semiannual: Optional[float]
    bundle_price: Optional[float]
    max_users: int
    max_monthly_services: Optional[int]
    total_services: Optional[int]
    validity_months: Optional[int]
    features: list[str]
    is_published: bool
    display_order: int


# Planes que activa el canje de cupones
SPONSORED_PLAN_ID = "sponsored"
SPONSORED_BUNDLE_PLAN_ID = "sponsored_bundle"


# =========================================================
# PLANES RECURRENTES
# =========================================================

FALLBACK_PLANS: dict[str, PlanDict] = {
    "starter": {
        "id": "starter",
        "name": "Plan Iniciante",
        "description": "Ideal para lubricentros que están comenzando",
        "kind": "recurring",
        "price_monthly": 1500,
        "price_semiannual": 8000,
        "max_users": 1,
        "max_monthly_services": 25,
        "features": [
            "Hasta 1 usuario",
            "25 servicios por mes",
            "Gestión básica de clientes",
            "Reportes básicos",
            "Soporte por email",
        ],
        "is_published": True,
        "display_order": 1,
    },
    "basic": {
        "id": "basic",
        "name": "Plan Básico",
        "description": "Perfecto para lubricentros pequeños",
        "kind": "recurring",
        "price_monthly": 2500,
        "price_semiannual": 12000,
        "max_users": 2,
        "max_monthly_services": 50,
        "features": [
            "Hasta 2 usuarios",
            "50 servicios por mes",
            "Gestión completa de clientes",
            "Reportes básicos",
            "Soporte por email",
        ],
        "is_published": True,
        "display_order": 2,
    },
    "premium": {
        "id": "premium",
        "name": "Plan Premium",
        "description": "Para lubricentros en crecimiento",
        "kind": "recurring",
        "price_monthly": 4500,
        "price_semiannual": 22500,
        "max_users": 5,
        "max_monthly_services": 150,
        "features": [
            "Hasta 5 usuarios",
            "150 servicios por mes",
            "Reportes avanzados",
            "Recordatorios automáticos",
            "Soporte prioritario",
        ],
        "is_published": True,
        "display_order": 3,
    },
    "enterprise": {
        "id": "enterprise",
        "name": "Plan Empresarial",
        "description": "Para cadenas de lubricentros",
        "kind": "recurring",
        "price_monthly": 7500,
        "price_semiannual": 37500,
        "max_users": 999,
        "max_monthly_services": None,
        "features": [
            "Usuarios ilimitados",
            "Servicios ilimitados",
            "Múltiples sucursales",
            "Reportes personalizados",
            "Soporte 24/7",
        ],
        "is_published": True,
        "display_order": 4,
    },

    # =========================================================
    # PAQUETES DE SERVICIOS (pago único, sin auto-renovación)
    # =========================================================
    "PLAN50": {
        "id": "PLAN50",
        "name": "Paquete 50 servicios",
        "description": "50 servicios a usar en 6 meses",
        "kind": "bundle",
        "bundle_price": 1800,
        "max_users": 2,
        "total_services": 50,
        "validity_months": 6,
        "features": ["50 servicios", "Validez 6 meses", "Hasta 2 usuarios"],
        "is_published": True,
        "display_order": 10,
    },
    "PLAN100": {
        "id": "PLAN100",
        "name": "Paquete 100 servicios",
        "description": "100 servicios a usar en 6 meses",
        "kind": "bundle",
        "bundle_price": 3200,
        "max_users": 3,
        "total_services": 100,
        "validity_months": 6,
        "features": ["100 servicios", "Validez 6 meses", "Hasta 3 usuarios"],
        "is_published": True,
        "display_order": 11,
    },
    "PLAN250": {
        "id": "PLAN250",
        "name": "Paquete 250 servicios",
        "description": "250 servicios a usar en 12 meses",
        "kind": "bundle",
        "bundle_price": 7000,
        "max_users": 5,
        "total_services": 250,
        "validity_months": 12,
        "features": ["250 servicios", "Validez 12 meses", "Hasta 5 usuarios"],
        "is_published": True,
        "display_order": 12,
    },

    # =========================================================
    # PATROCINADOS (canje de cupón, no publicados)
    # =========================================================
    SPONSORED_PLAN_ID: {
        "id": SPONSORED_PLAN_ID,
        "name": "Membresía patrocinada",
        "description": "Activada con cupón de distribuidor, servicios ilimitados",
        "kind": "recurring",
        "price_monthly": 0,
        "price_semiannual": 0,
        "max_users": 3,
        "max_monthly_services": None,
        "features": ["Servicios ilimitados durante la membresía"],
        "is_published": False,
        "display_order": 90,
    },
    SPONSORED_BUNDLE_PLAN_ID: {
        "id": SPONSORED_BUNDLE_PLAN_ID,
        "name": "Paquete patrocinado",
        "description": "Activado con cupón de distribuidor, cantidad fija de servicios",
        "kind": "bundle",
        "bundle_price": 0,
        "max_users": 3,
        "total_services": 1,  # el cupón define la cantidad real
        "validity_months": 12,
        "features": ["Servicios según cupón"],
        "is_published": False,
        "display_order": 91,
    },
}
