"""Shared fixtures for engine tests.

Each test gets a fresh file-backed SQLite database so guarded updates and
unique indexes behave as they do against a real store.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest_asyncio
from propflow_engine.state.database import make_session_factory
from propflow_engine.state.repository import (
    ServiceDefinitionRepository,
    ServiceInstanceRepository,
    ServiceRequestRepository,
    StateHistoryRepository,
)
from propflow_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from propflow_engine.state.tables import ServiceDefinitionTable, ServiceInstanceTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = get_local_engine(tmp_path / "engine.db")
    await create_local_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture()
async def make_definition(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[ServiceDefinitionTable]]:
    """Factory that stores a service definition with *steps* named steps."""
    counter = {"n": 0}

    async def _make(steps: int = 3, *, sla_business_days: int | None = 10, is_active: bool = True) -> ServiceDefinitionTable:
        counter["n"] += 1
        async with session_factory.begin() as session:
            return await ServiceDefinitionRepository(session).create(
                f"def-{counter['n']}",
                f"Definition {counter['n']}",
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
    """Factory that stores an instance, with its creation history row, at *state*."""

    async def _make(
        state: str = "requested",
        *,
        steps: int = 3,
        customer_id: str = "cust-1",
        city_id: str = "city-1",
        metadata: dict[str, Any] | None = None,
    ) -> ServiceInstanceTable:
        definition = await make_definition(steps)
        async with session_factory.begin() as session:
            instance = await ServiceInstanceRepository(session).create(
                customer_id,
                definition.id,
                city_id,
                state=state,
                metadata=metadata or {},
            )
            await StateHistoryRepository(session).append(
                instance.id,
                from_state="none",
                to_state=state,
                changed_by="seed",
                reason="seeded",
            )
        return instance

    return _make


@pytest_asyncio.fixture()
async def service_request_id(session_factory: async_sessionmaker[AsyncSession]) -> str:
    async with session_factory.begin() as session:
        request = await ServiceRequestRepository(session).create("cust-1", "city-1", fee_paise=150000)
    return request.id
