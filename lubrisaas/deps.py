# lubrisaas/deps.py
"""
Dependencies FastAPI – LubriSaaS

- Sesión / factory de sesiones (database.py)
- PlanRegistry construido en main.py (app.state.plan_registry)
- Actor de la acción (header X-Actor; autenticación fuera de alcance)
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from lubrisaas.database import get_db, get_session_factory  # noqa: F401
from lubrisaas.services.services_plans import PlanRegistry


def get_plan_registry(request: Request) -> PlanRegistry:
    return request.app.state.plan_registry


def get_actor(x_actor: Optional[str] = Header(default=None)) -> str:
    return (x_actor or "").strip() or "sistema"
