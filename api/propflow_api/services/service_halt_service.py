"""Halt and resume of service instances.

Halting snapshots the current node into a typed halt context (and mirrors it
as ``metadata.preHaltState``) in the same transaction as the transition to
``halted``.  Resuming picks the target in this order:

1. the explicit ``resume_to_state`` argument,
2. the halt context's ``pre_halt_state``,
3. ``metadata.preHaltState`` on the instance,
4. ``in_progress``.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

from propflow_engine.errors import AlreadyHalted, CannotHalt, HaltFailed, InstanceNotFound, NotHalted, ResumeFailed
from propflow_engine.models.halt import HaltContext, HaltReason
from propflow_engine.models.workflow import FixedState, StateHistoryEntry, TransitionResult
from propflow_engine.state.repository import (
    HaltContextRepository,
    ServiceInstanceRepository,
    StateHistoryRepository,
)
from propflow_engine.state.tables import ServiceInstanceTable
from propflow_engine.workflow import WorkflowEngine, is_haltable
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow_api.services.job_dispatcher import (
    JobDispatcher,
    JobName,
    NotificationType,
    emit_job,
    notification_payload,
)

logger = logging.getLogger(__name__)

_HALTED = FixedState.HALTED.value
_DEFAULT_RESUME_STATE = FixedState.IN_PROGRESS.value


class HaltOutcome(BaseModel):
    transition: TransitionResult
    halt_context: HaltContext


class ResumeOutcome(BaseModel):
    transition: TransitionResult
    resumed_to: str


class ServiceHaltService:
    """Pause service instances for an external reason and resume them later.

    Parameters
    ----------
    session_factory:
        Factory for the transactions each operation runs in.
    engine:
        Workflow engine that applies the transitions.
    dispatcher:
        Target for notification and status-document jobs.
    halted_services_limit:
        Maximum rows returned by :meth:`get_halted_services`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: WorkflowEngine,
        dispatcher: JobDispatcher,
        *,
        halted_services_limit: int = 50,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._dispatcher = dispatcher
        self._halted_services_limit = halted_services_limit

    async def halt_service(
        self,
        service_instance_id: str,
        reason: HaltReason,
        description: str,
        halted_by: str,
        expected_resume_date: date | None = None,
        required_actions: list[str] | None = None,
    ) -> HaltOutcome:
        """Halt an instance that is in a haltable state.

        Raises
        ------
        InstanceNotFound
            If the instance does not exist.
        AlreadyHalted
            If the instance is already halted.
        CannotHalt
            If the current state is not haltable.
        HaltFailed
            If the transition itself was refused (e.g. a concurrent change).
        """
        reason = HaltReason(reason)
        actions = list(required_actions or [])
        async with self._session_factory.begin() as session:
            instance = await ServiceInstanceRepository(session).get_for_update(service_instance_id)
            if instance is None:
                raise InstanceNotFound(details={"serviceInstanceId": service_instance_id})
            if instance.state == _HALTED:
                raise AlreadyHalted(details={"serviceInstanceId": service_instance_id})
            if not is_haltable(instance.state):
                raise CannotHalt(
                    f"Cannot halt service in state: {instance.state}",
                    details={"currentState": instance.state},
                )

            pre_halt_state = instance.state
            await HaltContextRepository(session).save(
                service_instance_id,
                pre_halt_state=pre_halt_state,
                halt_reason=reason.value,
                halt_description=description,
                halted_by=halted_by,
                expected_resume_date=expected_resume_date,
                required_actions=actions,
            )
            result = await self._engine.transition_in_session(
                session,
                service_instance_id,
                _HALTED,
                halted_by,
                reason=f"Halted: {reason.value} - {description}",
                metadata={
                    "preHaltState": pre_halt_state,
                    "haltReason": reason.value,
                    "haltDescription": description,
                    "expectedResumeDate": expected_resume_date.isoformat() if expected_resume_date else None,
                    "requiredActions": actions,
                },
            )
            if not result.success:
                # Raising inside the transaction discards the saved context.
                raise HaltFailed(result.error, details={"from": result.from_state})

        logger.info("Halted service instance %s (%s) by %s", service_instance_id, reason.value, halted_by)

        now = datetime.now(UTC).isoformat()
        await emit_job(
            self._dispatcher,
            JobName.NOTIFICATION_SEND,
            notification_payload(
                NotificationType.SERVICE_HALTED,
                serviceInstanceId=service_instance_id,
                reason=reason.value,
                haltedBy=halted_by,
            ),
        )
        await emit_job(
            self._dispatcher,
            JobName.STATUS_DOCUMENT_WRITE,
            {
                "collection": "service_events",
                "documentId": service_instance_id,
                "data": {
                    "currentStatus": _HALTED,
                    "haltReason": reason.value,
                    "lastUpdatedAt": now,
                },
                "arrayUnionFields": {
                    "events": {
                        "type": NotificationType.SERVICE_HALTED.value,
                        "reason": reason.value,
                        "description": description,
                        "timestamp": now,
                        "haltedBy": halted_by,
                    }
                },
            },
        )
        return HaltOutcome(
            transition=result,
            halt_context=HaltContext(
                service_instance_id=service_instance_id,
                pre_halt_state=pre_halt_state,
                halt_reason=reason,
                halt_description=description,
                halted_by=halted_by,
                expected_resume_date=expected_resume_date,
                required_actions=actions,
            ),
        )

    async def resume_service(
        self,
        service_instance_id: str,
        resumed_by: str,
        resume_to_state: str | None = None,
        notes: str | None = None,
    ) -> ResumeOutcome:
        """Resume a halted instance.

        Raises
        ------
        InstanceNotFound
            If the instance does not exist.
        NotHalted
            If the instance is not currently halted.
        ResumeFailed
            If the transition to the resolved target was refused.
        """
        async with self._session_factory.begin() as session:
            instance = await ServiceInstanceRepository(session).get_for_update(service_instance_id)
            if instance is None:
                raise InstanceNotFound(details={"serviceInstanceId": service_instance_id})
            if instance.state != _HALTED:
                raise NotHalted(details={"currentState": instance.state})

            context = await HaltContextRepository(session).get(service_instance_id)
            target = self._resolve_resume_target(instance, context.pre_halt_state if context else None, resume_to_state)

            result = await self._engine.transition_in_session(
                session,
                service_instance_id,
                target,
                resumed_by,
                reason=f"Resumed: {notes or 'Service resumed'}",
            )
            if not result.success:
                raise ResumeFailed(result.error, details={"from": result.from_state, "to": target})

        logger.info("Resumed service instance %s to %s by %s", service_instance_id, target, resumed_by)

        await emit_job(
            self._dispatcher,
            JobName.NOTIFICATION_SEND,
            notification_payload(
                NotificationType.SERVICE_RESUMED,
                serviceInstanceId=service_instance_id,
                resumedTo=target,
            ),
        )
        return ResumeOutcome(transition=result, resumed_to=target)

    @staticmethod
    def _resolve_resume_target(
        instance: ServiceInstanceTable,
        context_state: str | None,
        explicit: str | None,
    ) -> str:
        metadata: dict[str, Any] = instance.metadata_json or {}
        return explicit or context_state or metadata.get("preHaltState") or _DEFAULT_RESUME_STATE

    async def get_halt_history(self, service_instance_id: str) -> list[StateHistoryEntry]:
        """Return transitions into or out of ``halted``, newest first."""
        async with self._session_factory() as session:
            rows = await StateHistoryRepository(session).list_touching_state(service_instance_id, _HALTED)
        return [StateHistoryEntry.model_validate(row) for row in rows]

    async def get_halted_services(self, city_id: str) -> list[ServiceInstanceTable]:
        """Return a city's halted instances, most recently updated first."""
        async with self._session_factory() as session:
            return await ServiceInstanceRepository(session).list_in_state_by_recent_update(
                city_id, _HALTED, limit=self._halted_services_limit
            )

    async def get_halt_context(self, service_instance_id: str) -> HaltContext | None:
        async with self._session_factory() as session:
            row = await HaltContextRepository(session).get(service_instance_id)
        return HaltContext.model_validate(row) if row is not None else None
