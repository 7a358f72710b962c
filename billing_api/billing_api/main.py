"""FastAPI application entry-point for the billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_engine.errors import (
    BillingError,
    BillingNotFoundError,
    BillingValidationError,
    IdempotencyConflictError,
    StaleEventError,
    SubscriptionExistsError,
    TransientBillingError,
)
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_api import __version__
from billing_api.config import APISettings, PlatformEnv, load_api_settings
from billing_api.dependencies import dispose_engine, dispose_notifier, init_engine, init_notifier
from billing_api.middleware.logging import RequestLoggingMiddleware
from billing_api.middleware.tenant_context import TenantContextMiddleware
from billing_api.routers import cron, features, health, subscriptions, usage, webhooks

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables if they do not exist (dev and local SQLite only;
      production uses Alembic migrations).
    - Initialise the notification service.

    On shutdown:
    - Drain pending notifications.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    # Structured JSON logging for log aggregation.
    if settings.structured_logging:
        from billing_api.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from billing_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    notifier = init_notifier(settings)
    logger.info("Notification service initialised (%s)", "enabled" if notifier.enabled else "disabled")

    yield

    # Shutdown.
    await dispose_notifier()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _billing_error_response(request: Request, exc: BillingError, status_code: int) -> JSONResponse:
    # The detail stays in the logs; callers only see the user message.
    logger.info(
        "%s on %s: %s",
        type(exc).__name__,
        request.url.path,
        exc.detail,
        extra={"billing": {"tenant_id": getattr(request.state, "tenant_id", None), "error": type(exc).__name__}},
    )
    return JSONResponse(status_code=status_code, content={"detail": exc.user_message})


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(IdempotencyConflictError)
    async def idempotency_conflict_handler(request: Request, exc: IdempotencyConflictError) -> JSONResponse:
        return _billing_error_response(request, exc, 409)

    @app.exception_handler(SubscriptionExistsError)
    async def subscription_exists_handler(request: Request, exc: SubscriptionExistsError) -> JSONResponse:
        return _billing_error_response(request, exc, 409)

    @app.exception_handler(StaleEventError)
    async def stale_event_handler(request: Request, exc: StaleEventError) -> JSONResponse:
        return _billing_error_response(request, exc, 409)

    @app.exception_handler(BillingValidationError)
    async def billing_validation_handler(request: Request, exc: BillingValidationError) -> JSONResponse:
        return _billing_error_response(request, exc, 400)

    @app.exception_handler(BillingNotFoundError)
    async def billing_not_found_handler(request: Request, exc: BillingNotFoundError) -> JSONResponse:
        return _billing_error_response(request, exc, 404)

    @app.exception_handler(TransientBillingError)
    async def transient_error_handler(request: Request, exc: TransientBillingError) -> JSONResponse:
        return _billing_error_response(request, exc, 503)

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        return _billing_error_response(request, exc, 400)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Billing API",
        description="Subscription billing, usage metering and payment provider webhooks.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Idempotency-Key",
            "X-Correlation-ID",
            "X-Tenant-ID",
            "X-User-ID",
            "X-User-Role",
            "Accept",
        ],
    )
    app.add_middleware(TenantContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(features.router, prefix="/api/v1")
    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")

    # Infrastructure endpoints, outside versioning.
    app.include_router(health.readiness_router)

    _register_exception_handlers(app)
    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
