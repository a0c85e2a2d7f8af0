# lubrisaas/config.py
"""
Configuración central de LubriSaaS (pydantic-settings, lee .env).

✔ Entorno: development fuerza debug, staging/production lo apagan
✔ Reglas comerciales: trial, cache de planes, cupones, moneda
✔ Logs: nivel, rotación y archivo de facturación
"""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ----------------------------------------------------------
    # Aplicación
    # ----------------------------------------------------------
    APP_ENV: Literal["development", "staging", "production"] = "development"
    APP_DEBUG: bool = False
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000

    # ----------------------------------------------------------
    # Persistencia
    # ----------------------------------------------------------
    DATABASE_URL: str = "sqlite:///./lubrisaas.db"
    TX_MAX_ATTEMPTS: int = 5  # reintentos de run_transaction ante conflicto
    TX_RETRY_BACKOFF_MS: int = 25  # espera base entre intentos (con jitter)

    # ----------------------------------------------------------
    # Período de prueba
    # ----------------------------------------------------------
    TRIAL_DURATION_DAYS: int = 7
    TRIAL_MAX_SERVICES: int = 10
    TRIAL_MAX_USERS: int = 2

    # ----------------------------------------------------------
    # Catálogo de planes
    # ----------------------------------------------------------
    PLAN_CACHE_TTL_SECONDS: int = 300

    # ----------------------------------------------------------
    # Cupones / pagos
    # ----------------------------------------------------------
    COUPON_DEFAULT_VALIDITY_DAYS: int = 90
    COUPON_ADMIN_PREFIX: str = "HISMA"
    COUPON_CODE_MAX_TRIES: int = 5
    DEFAULT_CURRENCY: str = "ARS"

    # ----------------------------------------------------------
    # Logs
    # ----------------------------------------------------------
    LOG_DIR: Optional[str] = None  # None -> <repo>/logs
    LOG_LEVEL: Optional[str] = None  # None -> DEBUG en development, INFO en el resto
    LOG_MAX_MB: int = 5
    LOG_BACKUP_COUNT: int = 10

    def model_post_init(self, __context) -> None:
        is_dev = self.APP_ENV == "development"
        object.__setattr__(self, "APP_DEBUG", is_dev)

        object.__setattr__(self, "TX_MAX_ATTEMPTS", max(1, int(self.TX_MAX_ATTEMPTS)))
        object.__setattr__(self, "TX_RETRY_BACKOFF_MS", max(0, int(self.TX_RETRY_BACKOFF_MS)))
        object.__setattr__(self, "COUPON_ADMIN_PREFIX", self.COUPON_ADMIN_PREFIX.strip().upper() or "HISMA")
        object.__setattr__(self, "DEFAULT_CURRENCY", self.DEFAULT_CURRENCY.strip().upper())

        if not self.LOG_LEVEL:
            object.__setattr__(self, "LOG_LEVEL", "DEBUG" if is_dev else "INFO")
        else:
            object.__setattr__(self, "LOG_LEVEL", self.LOG_LEVEL.upper())


settings = Settings()
