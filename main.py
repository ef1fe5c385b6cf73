"""
main.py
-------
FastAPI application factory and entry point.

Application lifecycle:
  1. App is created by create_application().
  2. lifespan context manager runs on startup / shutdown.
  3. Routers are registered with their URL prefixes.
  4. Global exception handlers normalise tenant, broker and unexpected errors.

Queue consumers run in a separate process (see worker.py).

Run with:
    uvicorn main:app --reload              # development
    uvicorn main:app --workers 4           # production (no --reload)
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commerce.api.routes import admin, auth, orders, products
from commerce.cache.service import CacheService
from commerce.core.config import settings
from commerce.core.exceptions import BrokerUnavailable, TenantNotProvisioned
from commerce.core.logging import configure_logging, get_logger
from commerce.core.redis import close_redis, get_redis
from commerce.db.session import get_registry
from commerce.tenancy.middleware import TenantContextMiddleware

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Startup / shutdown lifecycle hook.

    Startup:
      - Configure structured logging
      - Build the connection registry and the Redis client

    Shutdown:
      - Dispose every tenant engine held by the connection registry
      - Close the Redis connection pool
    """
    configure_logging()
    logger.info(
        "Starting up",
        app=settings.APP_NAME,
        env=settings.APP_ENV,
        debug=settings.DEBUG,
    )
    get_registry()
    get_redis()
    yield
    logger.info("Shutting down, disposing DB engines")
    await get_registry().disconnect_all()
    await close_redis()


def create_application() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-tenant e-commerce backend with a database per tenant, "
            "JWT auth, queued provisioning and tenant-aware caching."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware ───────────────────────────────────────────────────────────
    app.add_middleware(TenantContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Routers ───────────────────────────────────────────────────────────────
    app.include_router(auth.router)
    app.include_router(orders.router)
    app.include_router(admin.router)
    app.include_router(products.router, prefix="/products")
    app.include_router(products.router, prefix="/{tenant_code}/products")

    # ── Global Exception Handlers ─────────────────────────────────────────────

    @app.exception_handler(TenantNotProvisioned)
    async def tenant_not_provisioned_handler(
        request: Request, exc: TenantNotProvisioned
    ) -> JSONResponse:
        logger.warning("Tenant database not provisioned", tenant_code=exc.tenant_code)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": str(exc)},
        )

    @app.exception_handler(BrokerUnavailable)
    async def broker_unavailable_handler(
        request: Request, exc: BrokerUnavailable
    ) -> JSONResponse:
        logger.error("Queue broker unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Job queue is temporarily unavailable"},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    # ── Health Check ──────────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], summary="Service health check")
    async def health() -> dict:
        cache_ok = await CacheService(get_redis()).is_healthy()
        return {
            "status": "ok",
            "app": settings.APP_NAME,
            "env": settings.APP_ENV,
            "cache": "ok" if cache_ok else "unavailable",
        }

    return app


app = create_application()
