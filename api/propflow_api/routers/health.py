"""Liveness and readiness probes.

``GET /api/v1/health`` always answers 200 and reports each dependency.
``GET /ready`` is mounted without the version prefix and answers 503 until
the database accepts a query.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from propflow_api import __version__
from propflow_api.dependencies import SessionFactoryDep, SettingsDep

logger = logging.getLogger(__name__)

# Probes must answer well inside an orchestrator's own timeout.
_DB_PROBE_TIMEOUT = 2.0

router = APIRouter(tags=["health"])
readiness_router = APIRouter(tags=["infrastructure"])


async def _ping_database(session_factory: SessionFactoryDep) -> bool:
    async def _select_one() -> None:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_select_one(), timeout=_DB_PROBE_TIMEOUT)
    except Exception as exc:
        logger.warning("Database probe failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health(session_factory: SessionFactoryDep, settings: SettingsDep) -> dict[str, Any]:
    db_ok = await _ping_database(session_factory)
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if db_ok else "degraded",
        "razorpay": "configured" if settings.razorpay_key_secret.get_secret_value() else "unconfigured",
    }


@readiness_router.get("/ready")
async def ready(session_factory: SessionFactoryDep) -> JSONResponse:
    if await _ping_database(session_factory):
        return JSONResponse({"status": "ready", "version": __version__, "checks": {"db": "ok"}})
    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "version": __version__, "checks": {"db": "unavailable"}},
    )
