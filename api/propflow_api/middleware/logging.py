"""Access logging and correlation ids.

Every request gets one ``propflow_api.access`` record once the response
is ready.  The record carries the structured fields under the ``request``
attribute, which :class:`~propflow_api.middleware.json_formatter.JSONFormatter`
lifts into the JSON line.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("propflow_api.access")

CORRELATION_HEADER: str = "X-Correlation-ID"
ACTOR_HEADER: str = "X-Actor-ID"

# Webhook signatures and credentials never reach the log.
_REDACTED_HEADERS: frozenset[str] = frozenset(
    {"authorization", "cookie", "x-api-key", "x-razorpay-signature"}
)


def _redacted_headers(request: Request) -> dict[str, str]:
    return {
        name: "***" if name.lower() in _REDACTED_HEADERS else value for name, value in request.headers.items()
    }


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _access_record(request: Request, status_code: int, started: float, correlation_id: str) -> dict[str, Any]:
    return {
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query or None,
        "status_code": status_code,
        "duration_ms": round((time.monotonic() - started) * 1000, 2),
        "client": request.client.host if request.client else None,
        "correlation_id": correlation_id,
        "actor_id": request.headers.get(ACTOR_HEADER, "anonymous"),
        "headers": _redacted_headers(request),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and log its outcome.

    The id comes from ``X-Correlation-ID`` when the caller sends one and
    is a fresh UUID-4 otherwise.  It is stored on ``request.state`` and
    echoed on the response.  A request that raises is logged as a 500.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        started = time.monotonic()

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            logger.log(
                _level_for(status_code),
                "%s %s -> %d",
                request.method,
                request.url.path,
                status_code,
                extra={"request": _access_record(request, status_code, started, correlation_id)},
            )
