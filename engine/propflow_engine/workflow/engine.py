"""Workflow engine: the only writer of ``service_instances.state``.

Every transition runs as read-check-write inside one transaction:

1. Read the instance with ``SELECT ... FOR UPDATE``.
2. Check the edge against the :class:`StateGraph` for the instance's
   definition.
3. Apply a guarded ``UPDATE ... WHERE id = :id AND state = :read_state``
   and append one history row.

A guarded update that touches zero rows means a concurrent transition won;
the caller gets ``success=False`` rather than an exception.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from propflow_engine.models.workflow import (
    StateHistoryEntry,
    StateInfo,
    StepState,
    TransitionFailure,
    TransitionResult,
    parse_state,
    state_name,
)
from propflow_engine.state.repository import (
    ServiceDefinitionRepository,
    ServiceInstanceRepository,
    StateHistoryRepository,
)
from propflow_engine.state.tables import ServiceDefinitionTable
from propflow_engine.workflow.state_graph import (
    StateGraph,
    build_state_list,
    get_all_active_states,
    is_terminal,
)

logger = logging.getLogger(__name__)


def _step_label(definition: ServiceDefinitionTable | None, step: StepState) -> str:
    steps = ((definition.definition or {}).get("steps") or []) if definition is not None else []
    if 0 <= step.step_index < len(steps):
        label = steps[step.step_index].get("name")
        if label:
            return str(label)
    return step.name


class WorkflowEngine:
    """Drive service instances through their state graph.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each public call runs in.
    max_step_states:
        Upper bound on step nodes reported by :meth:`get_all_active_states`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_step_states: int = 20,
    ) -> None:
        self._session_factory = session_factory
        self._max_step_states = max_step_states

    async def transition(
        self,
        service_instance_id: str,
        new_state: str,
        changed_by: str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Move an instance to *new_state* in its own transaction."""
        async with self._session_factory.begin() as session:
            return await self.transition_in_session(
                session,
                service_instance_id,
                new_state,
                changed_by,
                reason=reason,
                metadata=metadata,
            )

    async def transition_in_session(
        self,
        session: AsyncSession,
        service_instance_id: str,
        new_state: str,
        changed_by: str,
        *,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Apply a transition inside the caller's transaction.

        Callers that persist related rows (halt context, notifications
        ledger) use this so both commit or roll back together.  Nothing is
        written when the result is unsuccessful.

        Parameters
        ----------
        session:
            Session with an open transaction.
        service_instance_id:
            Instance to move.
        new_state:
            Target node name, e.g. ``"assigned"`` or ``"step_2"``.
        changed_by:
            Actor id recorded on the history row.
        reason:
            Free-text reason recorded on the history row.
        metadata:
            Keys merged into the instance metadata bag and stored on the
            history row.

        Returns
        -------
        TransitionResult
            ``success=False`` with ``error`` set for unknown instances,
            unknown or illegal targets and lost races.
        """
        instances = ServiceInstanceRepository(session)
        instance = await instances.get_for_update(service_instance_id)
        if instance is None:
            logger.warning("Transition rejected: instance %s not found", service_instance_id)
            return TransitionResult(
                success=False,
                service_instance_id=service_instance_id,
                from_state="",
                to_state=new_state,
                failure=TransitionFailure.NOT_FOUND,
                error=f"Service instance {service_instance_id} not found",
            )

        from_state = instance.state
        try:
            target = parse_state(new_state)
        except ValueError as exc:
            return self._reject(
                service_instance_id, from_state, new_state, TransitionFailure.UNKNOWN_STATE, str(exc)
            )

        if is_terminal(from_state):
            return self._reject(
                service_instance_id,
                from_state,
                new_state,
                TransitionFailure.TERMINAL_STATE,
                f"Cannot transition from terminal state {from_state}",
            )

        definition = await ServiceDefinitionRepository(session).get(instance.service_definition_id)
        graph = StateGraph(definition.total_steps if definition is not None else 0)
        if not graph.can_transition(from_state, target):
            valid = ", ".join(graph.valid_transitions(from_state)) or "none"
            return self._reject(
                service_instance_id,
                from_state,
                new_state,
                TransitionFailure.INVALID_TRANSITION,
                f"Invalid transition from {from_state} to {new_state}. Valid transitions: {valid}",
            )

        to_state = state_name(target)
        merged_metadata: dict[str, Any] | None = None
        if metadata:
            merged_metadata = {**(instance.metadata_json or {}), **metadata}
        step_index = target.step_index if isinstance(target, StepState) else None

        updated = await instances.guarded_update_state(
            service_instance_id,
            expected_state=from_state,
            new_state=to_state,
            current_step_index=step_index,
            metadata=merged_metadata,
        )
        if updated == 0:
            return self._reject(
                service_instance_id,
                from_state,
                to_state,
                TransitionFailure.CONCURRENT_CHANGE,
                f"Concurrent state change: instance is no longer in {from_state}",
            )

        history = await StateHistoryRepository(session).append(
            service_instance_id,
            from_state=from_state,
            to_state=to_state,
            changed_by=changed_by,
            reason=reason,
            metadata=metadata,
        )
        logger.info(
            "Service instance %s transitioned %s -> %s by %s",
            service_instance_id,
            from_state,
            to_state,
            changed_by,
        )
        return TransitionResult(
            success=True,
            service_instance_id=service_instance_id,
            from_state=from_state,
            to_state=to_state,
            history_id=history.id,
        )

    @staticmethod
    def _reject(
        instance_id: str,
        from_state: str,
        to_state: str,
        failure: TransitionFailure,
        error: str,
    ) -> TransitionResult:
        logger.warning("Transition rejected for %s: %s", instance_id, error)
        return TransitionResult(
            success=False,
            service_instance_id=instance_id,
            from_state=from_state,
            to_state=to_state,
            failure=failure,
            error=error,
        )

    async def get_state(self, service_instance_id: str) -> StateInfo | None:
        """Return a snapshot of the instance's position, or ``None`` if absent."""
        async with self._session_factory() as session:
            instance = await ServiceInstanceRepository(session).get(service_instance_id)
            if instance is None:
                return None
            definition = await ServiceDefinitionRepository(session).get(instance.service_definition_id)

        total_steps = definition.total_steps if definition is not None else 0
        current = parse_state(instance.state)
        step_name = _step_label(definition, current) if isinstance(current, StepState) else None
        return StateInfo(
            service_instance_id=instance.id,
            current_state=instance.state,
            current_step_index=instance.current_step_index,
            current_step_name=step_name,
            total_steps=total_steps,
            state_list=build_state_list(total_steps),
            valid_transitions=StateGraph(total_steps).valid_transitions(current),
            is_terminal=is_terminal(current),
        )

    async def get_history(self, service_instance_id: str) -> list[StateHistoryEntry]:
        """Return every transition for the instance, newest first."""
        async with self._session_factory() as session:
            rows = await StateHistoryRepository(session).list_for_instance(service_instance_id)
        return [StateHistoryEntry.model_validate(row) for row in rows]

    def build_state_list(self, total_steps: int) -> list[str]:
        return build_state_list(total_steps)

    def get_all_active_states(self, max_steps: int | None = None) -> list[str]:
        return get_all_active_states(max_steps if max_steps is not None else self._max_step_states)
