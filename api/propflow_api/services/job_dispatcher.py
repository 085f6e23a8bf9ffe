"""Fire-and-forget job dispatch for asynchronous side effects.

Services depend on the narrow :class:`JobDispatcher` protocol.  The
production implementation, :class:`QueueJobDispatcher`, writes rows into the
Postgres-backed ``jobs`` table in its own transaction, so a dispatch never
joins or rolls back the caller's already committed work.

Usage::

    await emit_job(
        dispatcher,
        JobName.NOTIFICATION_SEND,
        {"type": NotificationType.SERVICE_HALTED, "serviceInstanceId": instance_id},
        retry_limit=3,
    )

:func:`emit_job` logs dispatch failures and never raises them.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from propflow_engine.state.repository import JobRepository
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class JobName(str, Enum):
    """Named jobs consumed by the background workers."""

    SLA_CHECK = "sla.check"
    NOTIFICATION_SEND = "notification.send"
    STATUS_DOCUMENT_WRITE = "status-document.write"
    CASH_RECEIPT_RECORDED = "cash.receipt-recorded"


class NotificationType(str, Enum):
    SERVICE_STATE_CHANGE = "service_state_change"
    SERVICE_HALTED = "service_halted"
    SERVICE_RESUMED = "service_resumed"
    CASH_DEPOSIT_PENDING = "cash_deposit_pending"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_LINK = "payment_link"


@runtime_checkable
class JobDispatcher(Protocol):
    """Anything that can enqueue a named job."""

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
        """Enqueue a job and return its id, or ``None`` if de-duplicated."""
        ...


class QueueJobDispatcher:
    """Writes jobs into the ``jobs`` table.

    Parameters
    ----------
    session_factory:
        Factory for the short transaction each enqueue runs in.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

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
        run_after = datetime.now(UTC)
        if delay_seconds:
            run_after += timedelta(seconds=delay_seconds)
        async with self._session_factory.begin() as session:
            job_id = await JobRepository(session).enqueue(
                str(name),
                payload,
                run_after=run_after,
                retry_limit=retry_limit or 0,
                retry_backoff=retry_backoff,
                singleton_key=singleton_key,
            )
        if job_id is not None:
            logger.debug("Enqueued job %s id=%s", name, job_id)
        return job_id


async def emit_job(
    dispatcher: JobDispatcher,
    name: JobName | str,
    payload: dict[str, Any],
    **options: Any,
) -> str | None:
    """Enqueue a job, logging and swallowing any failure.

    Parameters
    ----------
    dispatcher:
        Target dispatcher.
    name:
        Job name.
    payload:
        JSON-serialisable job payload.
    **options:
        Forwarded to :meth:`JobDispatcher.enqueue`.

    Returns
    -------
    str | None
        The job id, or ``None`` when de-duplicated or when dispatch failed.
    """
    job_name = name.value if isinstance(name, JobName) else name
    try:
        return await dispatcher.enqueue(job_name, payload, **options)
    except Exception:
        logger.exception("Failed to enqueue job %s", job_name)
        return None


def notification_payload(notification_type: NotificationType, **data: Any) -> dict[str, Any]:
    """Build the payload for a ``notification.send`` job."""
    return {"type": notification_type.value, **data}
