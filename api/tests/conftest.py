"""Shared fixtures for Propflow API tests.

Services run against a file-backed SQLite store created per test.  Jobs are
captured by :class:`RecordingJobDispatcher` instead of being queued, and the
Razorpay client talks to an ``httpx.MockTransport`` stub.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from propflow_engine.state.database import make_session_factory
from propflow_engine.state.repository import (
    ServiceDefinitionRepository,
    ServiceInstanceRepository,
    ServiceRequestRepository,
    StateHistoryRepository,
)
from propflow_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from propflow_engine.state.tables import ServiceDefinitionTable, ServiceInstanceTable
from propflow_engine.workflow import WorkflowEngine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from propflow_api.config import APISettings
from propflow_api.dependencies import (
    get_job_dispatcher,
    get_razorpay_client,
    get_session_factory,
    get_settings,
)
from propflow_api.main import create_app
from propflow_api.services.cash_collection_service import CashCollectionService
from propflow_api.services.payment_service import PaymentService
from propflow_api.services.payment_webhook_service import PaymentWebhookService
from propflow_api.services.razorpay_client import RazorpayClient
from propflow_api.services.service_halt_service import ServiceHaltService
from propflow_api.services.service_instance_service import ServiceInstanceService

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"


# ---------------------------------------------------------------------------
# Job capture
# ---------------------------------------------------------------------------


class RecordingJobDispatcher:
    """In-memory :class:`JobDispatcher` that records every enqueue."""

    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []
        self._live_keys: set[str] = set()

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: int | None = None,
        retry_limit: int | None = None,
        retry_backoff: bool = False,
        singleton_key: str | None = None,
    ) -> str | None:
        if singleton_key is not None:
            if singleton_key in self._live_keys:
                return None
            self._live_keys.add(singleton_key)
        job_id = f"job-{len(self.jobs) + 1}"
        self.jobs.append(
            {
                "id": job_id,
                "name": name,
                "payload": payload,
                "delay_seconds": delay_seconds,
                "singleton_key": singleton_key,
            }
        )
        return job_id

    def named(self, name: str) -> list[dict[str, Any]]:
        return [job for job in self.jobs if job["name"] == name]

    def notifications(self, notification_type: str) -> list[dict[str, Any]]:
        return [job for job in self.named("notification.send") if job["payload"].get("type") == notification_type]


# ---------------------------------------------------------------------------
# Razorpay stub
# ---------------------------------------------------------------------------


class RazorpayStub:
    """Handler for ``httpx.MockTransport`` mimicking the orders and payment links APIs."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.fail_with: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method != "POST" or request.url.path not in ("/v1/orders", "/v1/payment_links"):
            return httpx.Response(404, json={"error": {"description": "not found"}})
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": {"description": "stubbed failure"}})
        body = json.loads(request.content)
        self.requests.append(body)
        if request.url.path == "/v1/payment_links":
            return httpx.Response(
                200,
                json={
                    "id": f"plink_{len(self.requests)}",
                    "short_url": f"https://rzp.io/i/link{len(self.requests)}",
                    "amount": body["amount"],
                    "status": "created",
                },
            )
        return httpx.Response(
            200,
            json={
                "id": f"order_{len(self.requests)}",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
            },
        )


def sign_checkout(order_id: str, payment_id: str) -> str:
    return hmac.new(RAZORPAY_KEY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def sign_webhook(body: bytes) -> str:
    return hmac.new(RAZORPAY_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def receipt_payload(receipt_id: str, service_request_id: str, **overrides: Any) -> dict[str, Any]:
    """Return a JSON-ready cash receipt body."""
    payload: dict[str, Any] = {
        "receipt_id": receipt_id,
        "task_id": f"task-{receipt_id}",
        "service_request_id": service_request_id,
        "amount_paise": "50000",
        "customer_name": "Asha Rao",
        "service_name": "Khata transfer",
        "agent_id": "agent-1",
        "gps_lat": 12.9716,
        "gps_lng": 77.5946,
        "signature_hash": "sha256:abc",
        "city_id": "city-1",
        "client_timestamp": datetime(2026, 3, 1, 9, 30, tzinfo=UTC).isoformat(),
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "api.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest_asyncio.fixture()
async def make_definition(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[ServiceDefinitionTable]]:
    counter = {"n": 0}

    async def _make(steps: int = 3, *, sla_business_days: int | None = 10, is_active: bool = True) -> ServiceDefinitionTable:
        counter["n"] += 1
        async with session_factory.begin() as session:
            return await ServiceDefinitionRepository(session).create(
                f"svc-{counter['n']}",
                f"Service {counter['n']}",
                [{"name": f"Step {i}"} for i in range(1, steps + 1)],
                sla_business_days=sla_business_days,
                is_active=is_active,
            )

    return _make


@pytest_asyncio.fixture()
async def make_instance(
    session_factory: async_sessionmaker[AsyncSession],
    make_definition: Callable[..., Awaitable[ServiceDefinitionTable]],
) -> Callable[..., Awaitable[ServiceInstanceTable]]:
    """Store an instance directly at *state* with a creation history row."""

    async def _make(
        state: str = "in_progress",
        *,
        steps: int = 3,
        customer_id: str = "cust-1",
        city_id: str = "city-1",
        metadata: dict[str, Any] | None = None,
    ) -> ServiceInstanceTable:
        definition = await make_definition(steps)
        async with session_factory.begin() as session:
            instance = await ServiceInstanceRepository(session).create(
                customer_id, definition.id, city_id, state=state, metadata=metadata
            )
            await StateHistoryRepository(session).append(
                instance.id, from_state="none", to_state=state, changed_by="seed", reason="seeded"
            )
        return instance

    return _make


@pytest_asyncio.fixture()
async def make_service_request(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[str]]:
    async def _make(*, customer_id: str = "cust-1", city_id: str = "city-1", fee_paise: int | None = 150000) -> str:
        async with session_factory.begin() as session:
            request = await ServiceRequestRepository(session).create(customer_id, city_id, fee_paise=fee_paise)
        return request.id

    return _make


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def dispatcher() -> RecordingJobDispatcher:
    return RecordingJobDispatcher()


@pytest.fixture()
def razorpay_stub() -> RazorpayStub:
    return RazorpayStub()


@pytest_asyncio.fixture()
async def razorpay(razorpay_stub: RazorpayStub) -> AsyncGenerator[RazorpayClient, None]:
    client = RazorpayClient(
        RAZORPAY_KEY_ID,
        RAZORPAY_KEY_SECRET,
        webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        base_url="https://razorpay.test",
        transport=httpx.MockTransport(razorpay_stub),
    )
    yield client
    await client.close()


@pytest.fixture()
def test_settings() -> APISettings:
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        razorpay_key_id=RAZORPAY_KEY_ID,
        razorpay_key_secret=RAZORPAY_KEY_SECRET,
        razorpay_webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        halted_services_limit=10,
    )


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture()
def workflow_engine(session_factory: async_sessionmaker[AsyncSession]) -> WorkflowEngine:
    return WorkflowEngine(session_factory)


@pytest.fixture()
def instance_service(
    session_factory: async_sessionmaker[AsyncSession],
    workflow_engine: WorkflowEngine,
    dispatcher: RecordingJobDispatcher,
) -> ServiceInstanceService:
    return ServiceInstanceService(session_factory, workflow_engine, dispatcher)


@pytest.fixture()
def halt_service(
    session_factory: async_sessionmaker[AsyncSession],
    workflow_engine: WorkflowEngine,
    dispatcher: RecordingJobDispatcher,
) -> ServiceHaltService:
    return ServiceHaltService(session_factory, workflow_engine, dispatcher)


@pytest.fixture()
def cash_service(
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: RecordingJobDispatcher,
) -> CashCollectionService:
    return CashCollectionService(session_factory, dispatcher)


@pytest.fixture()
def payment_service(
    session_factory: async_sessionmaker[AsyncSession],
    razorpay: RazorpayClient,
    dispatcher: RecordingJobDispatcher,
) -> PaymentService:
    return PaymentService(session_factory, razorpay, dispatcher)


@pytest.fixture()
def webhook_service(
    session_factory: async_sessionmaker[AsyncSession],
    razorpay: RazorpayClient,
    payment_service: PaymentService,
) -> PaymentWebhookService:
    return PaymentWebhookService(session_factory, razorpay, payment_service)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    dispatcher: RecordingJobDispatcher,
    razorpay: RazorpayClient,
) -> FastAPI:
    """The application with the test store and stubs injected."""
    application = create_app(test_settings)
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_job_dispatcher] = lambda: dispatcher
    application.dependency_overrides[get_razorpay_client] = lambda: razorpay
    return application


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Helper fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def checkout_signer() -> Callable[[str, str], str]:
    return sign_checkout


@pytest.fixture()
def webhook_signer() -> Callable[[bytes], str]:
    return sign_webhook


@pytest.fixture()
def make_receipt_payload() -> Callable[..., dict[str, Any]]:
    return receipt_payload
