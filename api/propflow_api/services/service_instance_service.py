"""Service instance lifecycle: creation, transitions and reads.

Creation writes the instance and its synthetic ``none -> requested`` history
row in one transaction.  Every later state change goes through the
:class:`~propflow_engine.workflow.WorkflowEngine`.  Jobs are emitted after
commit and never roll anything back.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from propflow_engine.errors import DefinitionNotFound, InstanceAlreadyExists, InstanceNotFound, InvalidTransition
from propflow_engine.models.workflow import (
    INITIAL_FROM_STATE,
    FixedState,
    StateHistoryEntry,
    StateInfo,
    TransitionFailure,
    TransitionResult,
)
from propflow_engine.state.repository import (
    ServiceDefinitionRepository,
    ServiceInstanceRepository,
    StateHistoryRepository,
)
from propflow_engine.state.tables import ServiceDefinitionTable, ServiceInstanceTable
from propflow_engine.workflow import TERMINAL_STATES, WorkflowEngine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow_api.services.job_dispatcher import (
    JobDispatcher,
    JobName,
    NotificationType,
    emit_job,
    notification_payload,
)

logger = logging.getLogger(__name__)

_TERMINAL_STATE_NAMES = sorted(s.value for s in TERMINAL_STATES)


def status_document_payload(
    instance: ServiceInstanceTable,
    definition: ServiceDefinitionTable | None,
    *,
    updated_by: str | None = None,
    event: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the real-time status document written for client apps."""
    steps = ((definition.definition or {}).get("steps") or []) if definition is not None else []
    index = instance.current_step_index
    current_step = steps[index].get("name") if 0 <= index < len(steps) else None
    payload: dict[str, Any] = {
        "collection": "service_events",
        "documentId": instance.id,
        "data": {
            "serviceInstanceId": instance.id,
            "customerId": instance.customer_id,
            "currentStatus": instance.state,
            "currentStep": current_step,
            "stepProgress": index + 1,
            "totalSteps": len(steps),
            "lastUpdatedAt": datetime.now(UTC).isoformat(),
        },
    }
    if updated_by is not None:
        payload["data"]["lastUpdatedBy"] = updated_by
    if event is not None:
        payload["arrayUnionFields"] = {"events": event}
    return payload


class ServiceInstanceService:
    """Create service instances and move them through their workflow.

    Parameters
    ----------
    session_factory:
        Factory for the transactions each operation runs in.
    engine:
        Workflow engine that owns state transitions.
    dispatcher:
        Target for side-effect jobs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: WorkflowEngine,
        dispatcher: JobDispatcher,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._dispatcher = dispatcher

    async def create_instance(
        self,
        customer_id: str,
        service_definition_id: str,
        city_id: str,
        created_by: str,
        metadata: dict[str, Any] | None = None,
    ) -> ServiceInstanceTable:
        """Create an instance at ``requested``.

        Raises
        ------
        DefinitionNotFound
            If the definition is missing or inactive.
        InstanceAlreadyExists
            If the customer already has a non-terminal instance of it.
        """
        try:
            async with self._session_factory.begin() as session:
                definition = await ServiceDefinitionRepository(session).get_active(service_definition_id)
                if definition is None:
                    raise DefinitionNotFound(details={"serviceDefinitionId": service_definition_id})

                instances = ServiceInstanceRepository(session)
                existing = await instances.find_active(customer_id, service_definition_id, _TERMINAL_STATE_NAMES)
                if existing is not None:
                    raise InstanceAlreadyExists(details={"existingInstanceId": existing.id})

                instance = await instances.create(
                    customer_id,
                    service_definition_id,
                    city_id,
                    state=FixedState.REQUESTED.value,
                    metadata={**(metadata or {}), "createdBy": created_by},
                )
                await StateHistoryRepository(session).append(
                    instance.id,
                    from_state=INITIAL_FROM_STATE,
                    to_state=FixedState.REQUESTED.value,
                    changed_by=created_by,
                    reason="Service instance created",
                )
        except IntegrityError as exc:
            # A concurrent create won the partial unique index.
            raise InstanceAlreadyExists(
                details={"customerId": customer_id, "serviceDefinitionId": service_definition_id}
            ) from exc

        logger.info(
            "Created service instance %s for customer %s (definition %s)",
            instance.id,
            customer_id,
            service_definition_id,
        )

        sla_days = definition.sla_business_days
        if sla_days:
            await emit_job(
                self._dispatcher,
                JobName.SLA_CHECK,
                {
                    "serviceInstanceId": instance.id,
                    "slaBusinessDays": sla_days,
                    "startedAt": datetime.now(UTC).isoformat(),
                },
                singleton_key=f"sla-check-{instance.id}",
            )
        await emit_job(
            self._dispatcher,
            JobName.STATUS_DOCUMENT_WRITE,
            status_document_payload(instance, definition),
            singleton_key=f"status-document-{instance.id}-requested",
        )
        return instance

    async def transition_state(
        self,
        instance_id: str,
        new_state: str,
        changed_by: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Transition an instance, raising on a refused transition.

        Raises
        ------
        InstanceNotFound
            If the instance does not exist.
        InvalidTransition
            For any other refused transition, with ``{from, to}`` details.
        """
        result = await self._engine.transition(instance_id, new_state, changed_by, reason, metadata)
        if not result.success:
            if result.failure is TransitionFailure.NOT_FOUND:
                raise InstanceNotFound(details={"serviceInstanceId": instance_id})
            raise InvalidTransition(
                result.error,
                details={"from": result.from_state, "to": result.to_state},
            )

        async with self._session_factory() as session:
            instance = await ServiceInstanceRepository(session).get(instance_id)
            definition = (
                await ServiceDefinitionRepository(session).get(instance.service_definition_id)
                if instance is not None
                else None
            )

        if instance is not None:
            await emit_job(
                self._dispatcher,
                JobName.STATUS_DOCUMENT_WRITE,
                status_document_payload(
                    instance,
                    definition,
                    updated_by=changed_by,
                    event={
                        "type": "state_transition",
                        "from": result.from_state,
                        "to": result.to_state,
                        "changedBy": changed_by,
                        "timestamp": datetime.now(UTC).isoformat(),
                    },
                ),
            )
            await emit_job(
                self._dispatcher,
                JobName.NOTIFICATION_SEND,
                notification_payload(
                    NotificationType.SERVICE_STATE_CHANGE,
                    serviceInstanceId=instance_id,
                    customerId=instance.customer_id,
                    fromState=result.from_state,
                    toState=result.to_state,
                ),
            )
        return result

    async def get_instance(self, instance_id: str) -> tuple[ServiceInstanceTable, StateInfo]:
        """Return the instance row and its workflow snapshot.

        Raises
        ------
        InstanceNotFound
            If the instance does not exist.
        """
        state = await self._engine.get_state(instance_id)
        if state is None:
            raise InstanceNotFound(details={"serviceInstanceId": instance_id})
        async with self._session_factory() as session:
            instance = await ServiceInstanceRepository(session).get(instance_id)
        if instance is None:
            raise InstanceNotFound(details={"serviceInstanceId": instance_id})
        return instance, state

    async def get_history(self, instance_id: str) -> list[StateHistoryEntry]:
        return await self._engine.get_history(instance_id)

    async def list_instances(
        self,
        city_id: str,
        *,
        state: str | None = None,
        limit: int = 20,
        cursor: str | None = None,
    ) -> tuple[list[ServiceInstanceTable], str | None]:
        """Return one page of a city's instances and the next cursor."""
        limit = max(1, min(limit, 100))
        async with self._session_factory() as session:
            rows = await ServiceInstanceRepository(session).list_by_city(
                city_id, state=state, limit=limit + 1, cursor=cursor
            )
        has_more = len(rows) > limit
        page = rows[:limit]
        next_cursor = page[-1].id if has_more and page else None
        return page, next_cursor
