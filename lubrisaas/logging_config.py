# lubrisaas/logging_config.py
"""
Logging – LubriSaaS

Tres destinos:
- consola
- logs/lubrisaas.log   (todo el proceso, rotativo)
- logs/billing.log     (solo eventos de cobro: cupones, créditos, jobs, conflictos de tx)

Los servicios loguean con `logger` y un tag entre corchetes al inicio del
mensaje ([COUPONS], [CREDITS], [JOB], [TX], ...). El tag decide si el registro
va también a billing.log.
"""

from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path

from lubrisaas.config import settings


BASE_DIR = Path(__file__).resolve().parent.parent
LOG_DIR = Path(settings.LOG_DIR) if settings.LOG_DIR else BASE_DIR / "logs"

APP_LOG_FILE = LOG_DIR / "lubrisaas.log"
BILLING_LOG_FILE = LOG_DIR / "billing.log"

BILLING_TAGS = ("[COUPONS]", "[CREDITS]", "[JOB]", "[TX]", "[SUBS]")


class BillingTagFilter(logging.Filter):
    """Deja pasar solo los mensajes con tag de facturación."""

    def __init__(self, tags=BILLING_TAGS):
        super().__init__()
        self.tags = tuple(tags)

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.msg if isinstance(record.msg, str) else str(record.msg)
        return msg.startswith(self.tags)


def _rotating(filename: Path, formatter: str, **extra) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": formatter,
        "filename": str(filename),
        "maxBytes": int(settings.LOG_MAX_MB) * 1024 * 1024,
        "backupCount": int(settings.LOG_BACKUP_COUNT),
        "encoding": "utf-8",
        "level": settings.LOG_LEVEL,
        **extra,
    }


def setup_logging() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    level = settings.LOG_LEVEL

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "billing_only": {"()": BillingTagFilter},
            },
            "formatters": {
                "console": {
                    "format": "%(asctime)s | %(levelname)-7s | %(message)s",
                    "datefmt": "%H:%M:%S",
                },
                "file": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(module)s:%(lineno)d | %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "console",
                    "level": level,
                },
                "app_file": _rotating(APP_LOG_FILE, "file"),
                "billing_file": _rotating(BILLING_LOG_FILE, "file", filters=["billing_only"]),
            },
            "loggers": {
                "lubrisaas": {
                    "level": level,
                    "handlers": ["console", "app_file", "billing_file"],
                    "propagate": False,
                },
                "uvicorn.access": {"level": "WARNING"},
                "sqlalchemy.engine": {"level": "WARNING"},
            },
            "root": {
                "level": "INFO",
                "handlers": ["console", "app_file"],
            },
        }
    )


logger = logging.getLogger("lubrisaas")
