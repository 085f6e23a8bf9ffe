"""API router modules for the Propflow service."""

from __future__ import annotations

from propflow_api.routers import cash, health, payments, service_halts, service_instances

__all__ = [
    "cash",
    "health",
    "payments",
    "service_halts",
    "service_instances",
]
