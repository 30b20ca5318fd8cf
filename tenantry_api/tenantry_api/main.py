"""FastAPI application entry-point for the Tenantry control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from tenantry_core.state.sqlite_adapter import create_local_tables

from tenantry_api import __version__
from tenantry_api.config import PlatformEnv
from tenantry_api.dependencies import (
    build_token_manager,
    dispose_email_service,
    dispose_engine,
    get_session_factory,
    get_settings,
    get_vault,
    init_email_service,
    init_engine,
)
from tenantry_api.errors import ControlPlaneError
from tenantry_api.middleware.auth import AuthenticationMiddleware
from tenantry_api.middleware.logging import RequestLoggingMiddleware
from tenantry_api.routers import auth, billing, health, onboarding, provisioning, tenants
from tenantry_api.services.billing_service import TenantLockRegistry
from tenantry_api.services.infra_client import build_infra_client
from tenantry_api.services.provisioning_service import ProvisioningService
from tenantry_api.services.tenant_router import TenantRouter, make_default_connector

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the control-plane engine and, in dev or SQLite mode,
      create the tables.
    - Derive the vault key once.
    - Create the application-scoped data-plane router, per-tenant lock
      registry and provisioning orchestrator on ``app.state``.

    On shutdown the orchestrator drains its in-flight runs before the
    router, email client and engine are closed.
    """
    settings = get_settings()

    if settings.structured_logging:
        from tenantry_api.middleware.json_formatter import configure_structured_logging

        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_local_tables(engine)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    vault = get_vault(settings)
    email = init_email_service(settings)
    logger.info("Email delivery %s", "enabled" if email.enabled else "disabled (codes are logged only)")

    session_factory = get_session_factory()
    tenant_router = TenantRouter(
        session_factory,
        vault,
        max_size=settings.router_cache_size,
        connector=make_default_connector(settings.router_connect_timeout),
    )
    app.state.tenant_router = tenant_router
    app.state.tenant_locks = TenantLockRegistry()
    app.state.provisioning = ProvisioningService(
        session_factory,
        vault=vault,
        infra=build_infra_client(settings),
        tenant_router=tenant_router,
    )
    logger.info("Provisioning provider: %s", settings.provisioning_provider.value)

    yield

    await app.state.provisioning.close()
    await tenant_router.close()
    await dispose_email_service()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Tenantry API",
        description="Control plane for multi-tenant onboarding, provisioning and billing.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(AuthenticationMiddleware, token_manager=build_token_manager(settings))
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(auth.router, prefix="/api/v1")
    app.include_router(onboarding.router, prefix="/api/v1")
    app.include_router(provisioning.router, prefix="/api/v1")
    app.include_router(tenants.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")
    app.include_router(billing.webhook_router, prefix="/api/v1")

    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ControlPlaneError)
    async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request", "code": "validation_error"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied", "code": "forbidden"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", type(exc).__name__, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error", "code": "database_error"},
        )

    return app


# Module-level application instance used by ``uvicorn tenantry_api.main:app``.
app = create_app()
