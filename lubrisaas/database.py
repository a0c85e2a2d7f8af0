# lubrisaas/database.py
"""
Engine / sesiones / transacciones – LubriSaaS

✔ SQLite (local) y Postgres
✔ Dependency FastAPI (get_db / get_session_factory)
✔ run_transaction: unidad atómica con reintento ante conflicto de escritura

=========================================================
CONTRATO run_transaction
=========================================================
- fn(db) recibe una Session NUEVA por intento y NO hace commit.
- Si fn termina bien -> commit de todo lo escrito en el intento.
- Conflicto (version_id obsoleta, violación UNIQUE/PK, "database is locked",
  serialization failure) -> rollback, espera corta con jitter y fn se ejecuta
  otra vez desde cero. Otras IntegrityError (CHECK, FK, NOT NULL) se propagan.
- Errores de dominio (EntitlementError) -> rollback y se propagan sin reintento.
- Agotados los intentos -> ConflictRetryExhausted.
- fn puede ejecutarse más de una vez: nada irreversible adentro
  (sin logs de éxito, sin llamadas externas).
"""

from __future__ import annotations

import random
import time
from typing import Callable, Optional, TypeVar

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from lubrisaas.config import settings
from lubrisaas.errors import ConflictRetryExhausted
from lubrisaas.logging_config import logger


T = TypeVar("T")


# =========================================================
# ENGINE / SESSION
# =========================================================

def make_engine(url: str, **kwargs) -> Engine:
    is_sqlite = url.startswith("sqlite")
    connect_args = {}
    if is_sqlite:
        # SQLite requiere check_same_thread=False; timeout = espera ante lock
        connect_args = {"check_same_thread": False, "timeout": 30}

    eng = create_engine(
        url,
        connect_args=connect_args,
        future=True,
        pool_pre_ping=True,
        **kwargs,
    )

    if is_sqlite:
        # pysqlite: BEGIN explícito para que SAVEPOINT y rollback sean reales
        @event.listens_for(eng, "connect")
        def _sqlite_on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        # IMMEDIATE: el lock de escritura se toma al empezar y los escritores
        # esperan con el busy timeout en lugar de fallar al subir de lock
        @event.listens_for(eng, "begin")
        def _sqlite_on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


def make_session_factory(bind: Engine) -> sessionmaker:
    # expire_on_commit=False: los objetos devueltos por run_transaction
    # siguen legibles después del commit/close.
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
        future=True,
    )


DATABASE_URL = settings.DATABASE_URL

engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)

Base = declarative_base()


# =========================================================
# DEPENDENCIES
# =========================================================

def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_db(session_factory: sessionmaker = Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# =========================================================
# TRANSACCIONES
# =========================================================

_LOCK_MARKERS = ("database is locked", "could not serialize", "deadlock", "busy")
_UNIQUE_MARKERS = ("unique constraint", "duplicate key", "duplicate entry")
_UNIQUE_PGCODE = "23505"


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == _UNIQUE_PGCODE:
        return True
    msg = str(orig if orig is not None else exc).lower()
    return any(m in msg for m in _UNIQUE_MARKERS)


def is_write_conflict(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, IntegrityError):
        # solo carreras de alta (UNIQUE/PK); CHECK y FK son errores reales
        return is_unique_violation(exc)
    if isinstance(exc, OperationalError):
        msg = str(getattr(exc, "orig", exc)).lower()
        return any(m in msg for m in _LOCK_MARKERS)
    return False


def _backoff(attempt: int) -> None:
    base_ms = settings.TX_RETRY_BACKOFF_MS
    if base_ms <= 0:
        return
    time.sleep(random.uniform(0, base_ms * attempt) / 1000.0)


def run_transaction(
    session_factory: Callable[[], Session],
    fn: Callable[[Session], T],
    *,
    max_attempts: Optional[int] = None,
    label: str = "tx",
) -> T:
    attempts = max(1, int(max_attempts or settings.TX_MAX_ATTEMPTS))
    last_exc: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        db = session_factory()
        try:
            result = fn(db)
            db.commit()
            return result
        except (StaleDataError, IntegrityError, OperationalError) as exc:
            db.rollback()
            if not is_write_conflict(exc):
                raise
            last_exc = exc
            logger.warning(
                "[TX] conflicto label=%s intento=%s/%s error=%s",
                label, attempt, attempts, exc.__class__.__name__,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if attempt < attempts:
            _backoff(attempt)

    raise ConflictRetryExhausted(
        f"No se pudo confirmar la operación '{label}' tras {attempts} intentos."
    ) from last_exc


# =========================================================
# INIT DB
# =========================================================

def init_db(bind: Optional[Engine] = None) -> None:
    """
    Importa modelos SOLO aquí (lazy) para registrar todas las tablas en Base,
    evitando imports circulares entre database <-> models <-> services.
    """
    import lubrisaas.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
