# lubrisaas/models/time.py
"""
Tiempo canónico – UTC timezone-aware en todo el sistema.
"""

from __future__ import annotations

from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta
from sqlalchemy.types import DateTime, TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_tz(dt: datetime | None) -> datetime | None:
    """Asegura timezone-aware (UTC). SQLite devuelve datetimes naive."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def add_months(dt: datetime, months: int) -> datetime:
    # Meses calendario: 31-ene + 1 mes = 28/29-feb
    return dt + relativedelta(months=int(months))


def month_key(dt: datetime) -> str:
    """Clave de período de uso: YYYY-MM."""
    return ensure_tz(dt).strftime("%Y-%m")


def as_iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


class UTCDateTime(TypeDecorator):
    """
    DateTime(timezone=True) que siempre persiste en UTC y siempre
    devuelve datetimes tz-aware (también en SQLite).
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_tz(value)

    def process_result_value(self, value, dialect):
        return ensure_tz(value)
