"""FastAPI application entry-point for the Propflow API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from propflow_engine.config import PlatformEnv
from propflow_engine.errors import DomainError
from propflow_engine.state.database import upgrade_database
from sqlalchemy.exc import SQLAlchemyError

from propflow_api import __version__
from propflow_api.config import APISettings, load_api_settings
from propflow_api.dependencies import (
    dispose_engine,
    dispose_razorpay_client,
    init_engine,
    init_razorpay_client,
)
from propflow_api.middleware.json_formatter import configure_logging
from propflow_api.middleware.logging import CORRELATION_HEADER, RequestLoggingMiddleware
from propflow_api.routers import cash, health, payments, service_halts, service_instances
from propflow_api.schemas import ErrorBody, ErrorResponse
from propflow_api.services.razorpay_client import RazorpayError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorBody(code=code, message=message, details=details or {}))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    Startup builds the database engine and the Razorpay client.  The schema
    comes from the Alembic migrations when ``run_migrations_on_startup`` is
    set.  Otherwise dev and SQLite deployments get ``create_all`` and every
    other environment expects the schema to be migrated already.
    """
    settings: APISettings = load_api_settings()
    configure_logging(
        structured=settings.structured_logging,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )

    if settings.platform_env is not PlatformEnv.DEV and not settings.razorpay_key_secret.get_secret_value():
        raise RuntimeError(
            f"PROPFLOW_API_RAZORPAY_KEY_SECRET is required in {settings.platform_env.value} mode. Refusing to start."
        )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(upgrade_database, settings.database_url)
        logger.info("Database migrations applied")
    elif settings.platform_env is PlatformEnv.DEV or is_local:
        from propflow_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    init_razorpay_client(settings)
    logger.info("Razorpay client initialised (%s)", settings.razorpay_base_url)

    yield

    await dispose_razorpay_client()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: APISettings | None = None) -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = settings or load_api_settings()

    app = FastAPI(
        title="Propflow API",
        description="Service workflow, halt/resume, cash reconciliation and payments.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Accept",
            "X-Actor-ID",
            CORRELATION_HEADER,
        ],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(service_instances.router, prefix="/api/v1")
    app.include_router(service_halts.router, prefix="/api/v1")
    app.include_router(cash.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
        return _error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RazorpayError)
    async def razorpay_error_handler(request: Request, exc: RazorpayError) -> JSONResponse:
        logger.error("Payment gateway error on %s: %s", request.url.path, exc)
        return _error_response(502, "PAYMENT_GATEWAY_ERROR", "Payment gateway unavailable")

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return _error_response(400, "INVALID_REQUEST", "Invalid request")

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return _error_response(500, "INTERNAL_ERROR", "Internal database error")

    return app


# Module-level application instance used by ``uvicorn propflow_api.main:app``.
app = create_app()
