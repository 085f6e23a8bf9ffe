"""FastAPI dependency injection for settings, the session factory and services."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from propflow_engine.state.database import get_engine, make_session_factory
from propflow_engine.workflow import WorkflowEngine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from propflow_api.config import APISettings, load_api_settings
from propflow_api.services.cash_collection_service import CashCollectionService
from propflow_api.services.job_dispatcher import JobDispatcher, QueueJobDispatcher
from propflow_api.services.payment_service import PaymentService
from propflow_api.services.payment_webhook_service import PaymentWebhookService
from propflow_api.services.razorpay_client import RazorpayClient
from propflow_api.services.service_halt_service import ServiceHaltService
from propflow_api.services.service_instance_service import ServiceInstanceService

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor-ID"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        statement_timeout_ms=settings.database_statement_timeout_ms,
        lock_timeout_ms=settings.database_lock_timeout_ms,
    )
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# Razorpay client
# ---------------------------------------------------------------------------

_razorpay_client: RazorpayClient | None = None


def init_razorpay_client(settings: APISettings) -> RazorpayClient:
    """Create and cache the global :class:`RazorpayClient`."""
    global _razorpay_client  # noqa: PLW0603
    _razorpay_client = RazorpayClient(
        settings.razorpay_key_id,
        settings.razorpay_key_secret.get_secret_value(),
        webhook_secret=settings.razorpay_webhook_secret.get_secret_value(),
        base_url=settings.razorpay_base_url,
        timeout=settings.razorpay_timeout,
    )
    return _razorpay_client


async def dispose_razorpay_client() -> None:
    """Close the Razorpay client's underlying HTTP pool."""
    global _razorpay_client  # noqa: PLW0603
    if _razorpay_client is not None:
        await _razorpay_client.close()
        _razorpay_client = None


def get_razorpay_client() -> RazorpayClient:
    """Return the cached :class:`RazorpayClient` singleton."""
    if _razorpay_client is None:
        raise RuntimeError(
            "Razorpay client has not been initialised. "
            "Ensure init_razorpay_client() is called during application startup."
        )
    return _razorpay_client


RazorpayDep = Annotated[RazorpayClient, Depends(get_razorpay_client)]

# ---------------------------------------------------------------------------
# Jobs and services
# ---------------------------------------------------------------------------


def get_job_dispatcher(session_factory: SessionFactoryDep) -> JobDispatcher:
    return QueueJobDispatcher(session_factory)


DispatcherDep = Annotated[JobDispatcher, Depends(get_job_dispatcher)]


def get_workflow_engine(session_factory: SessionFactoryDep, settings: SettingsDep) -> WorkflowEngine:
    return WorkflowEngine(session_factory, max_step_states=settings.max_step_states)


WorkflowEngineDep = Annotated[WorkflowEngine, Depends(get_workflow_engine)]


def get_service_instance_service(
    session_factory: SessionFactoryDep,
    engine: WorkflowEngineDep,
    dispatcher: DispatcherDep,
) -> ServiceInstanceService:
    return ServiceInstanceService(session_factory, engine, dispatcher)


def get_service_halt_service(
    session_factory: SessionFactoryDep,
    engine: WorkflowEngineDep,
    dispatcher: DispatcherDep,
    settings: SettingsDep,
) -> ServiceHaltService:
    return ServiceHaltService(
        session_factory,
        engine,
        dispatcher,
        halted_services_limit=settings.halted_services_limit,
    )


def get_cash_collection_service(
    session_factory: SessionFactoryDep,
    dispatcher: DispatcherDep,
) -> CashCollectionService:
    return CashCollectionService(session_factory, dispatcher)


def get_payment_service(
    session_factory: SessionFactoryDep,
    razorpay: RazorpayDep,
    dispatcher: DispatcherDep,
    settings: SettingsDep,
) -> PaymentService:
    return PaymentService(
        session_factory,
        razorpay,
        dispatcher,
        default_currency=settings.default_currency,
        payment_link_expiry_minutes=settings.payment_link_expiry_minutes,
        payment_link_callback_url=settings.payment_link_callback_url or None,
    )


def get_payment_webhook_service(
    session_factory: SessionFactoryDep,
    razorpay: RazorpayDep,
    payments: Annotated[PaymentService, Depends(get_payment_service)],
) -> PaymentWebhookService:
    return PaymentWebhookService(session_factory, razorpay, payments)


ServiceInstanceServiceDep = Annotated[ServiceInstanceService, Depends(get_service_instance_service)]
ServiceHaltServiceDep = Annotated[ServiceHaltService, Depends(get_service_halt_service)]
CashServiceDep = Annotated[CashCollectionService, Depends(get_cash_collection_service)]
PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]
PaymentWebhookServiceDep = Annotated[PaymentWebhookService, Depends(get_payment_webhook_service)]

# ---------------------------------------------------------------------------
# Acting user
# ---------------------------------------------------------------------------


def get_actor_id(request: Request) -> str:
    """Return the acting user id from the ``X-Actor-ID`` header."""
    actor_id = request.headers.get(ACTOR_HEADER, "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail=f"{ACTOR_HEADER} header is required")
    return actor_id


ActorDep = Annotated[str, Depends(get_actor_id)]
