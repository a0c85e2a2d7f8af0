# lubrisaas/models/__init__.py
"""
Modelos ORM – LubriSaaS

✔ Estados con Enum controlado
✔ Timestamps UTC timezone-aware
✔ Auditoría como source of truth de eventos
"""

from __future__ import annotations

from sqlalchemy import Column, Integer, String, Text

from lubrisaas.database import Base
from lubrisaas.models.time import UTCDateTime, utcnow


class Auditoria(Base):
    __tablename__ = "auditoria"

    id = Column(Integer, primary_key=True)
    fecha = Column(UTCDateTime, default=utcnow, index=True, nullable=False)

    # None = evento global (jobs, planes, distribuidores)
    lubricentro_id = Column(Integer, index=True, nullable=True)
    usuario = Column(String, nullable=False, index=True)
    accion = Column(String, nullable=False, index=True)
    detalle = Column(Text, nullable=True)


from lubrisaas.models.saas import (  # noqa: E402
    HistorialPlan,
    HistorialRenovacion,
    Lubricentro,
    Pago,
    Plan,
    UsoMensual,
)
from lubrisaas.models.cupones import CompraCreditos, Cupon, Distribuidor  # noqa: E402

__all__ = [
    "Auditoria",
    "CompraCreditos",
    "Cupon",
    "Distribuidor",
    "HistorialPlan",
    "HistorialRenovacion",
    "Lubricentro",
    "Pago",
    "Plan",
    "UsoMensual",
]
