# main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from lubrisaas import __version__
from lubrisaas.config import settings
from lubrisaas.database import SessionLocal, init_db, run_transaction
from lubrisaas.errors import EntitlementError
from lubrisaas.logging_config import logger, setup_logging
from lubrisaas.services.services_plans import PlanRegistry, seed_default_plans

# Routers
from lubrisaas.routes.routes_coupons import router as coupons_router
from lubrisaas.routes.routes_subscriptions import router as subscriptions_router
from lubrisaas.routes.routes_superadmin import router as superadmin_router


# ============================
#   APP
# ============================

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()

    created = run_transaction(SessionLocal, seed_default_plans, label="plans.seed")
    if created:
        logger.info("[PLANS] planes por defecto creados=%s", created)

    yield


setup_logging()

app = FastAPI(
    title="LubriSaaS",
    version=__version__,
    debug=settings.APP_DEBUG,
    lifespan=lifespan,
)

app.state.plan_registry = PlanRegistry()

logger.info("LubriSaaS iniciado env=%s", settings.APP_ENV)


# ============================
#   ERRORES DE DOMINIO
# ============================

@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError):
    logger.warning(
        "[API] %s %s -> %s code=%s detail=%s",
        request.method, request.url.path, exc.status_code, exc.code, exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "code": exc.code, "detail": exc.detail},
    )


# ============================
#   ROUTERS
# ============================

app.include_router(subscriptions_router)
app.include_router(coupons_router)
app.include_router(superadmin_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_DEBUG,
    )
