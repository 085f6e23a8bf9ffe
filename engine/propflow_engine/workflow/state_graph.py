"""Transition graph for service instances.

The graph is parameterised by the number of steps in the instance's service
definition.  Step nodes are matched as a class (any :class:`StepState`) so
the edge table never needs string pattern matching.

::

    requested -> assigned -> payment_pending -> paid -> in_progress
        -> step_1 -> ... -> step_N -> completed -> delivered

``assigned`` may also skip straight to ``in_progress`` when the fee is
collected in cash by the field agent.

Any haltable node may move to ``halted``; ``halted`` may move back to any
haltable node, to ``refund_pending`` or to ``cancelled``.
"""

from __future__ import annotations

from propflow_engine.models.workflow import (
    FixedState,
    ServiceState,
    StepState,
    parse_state,
    state_name,
)

TERMINAL_STATES: frozenset[FixedState] = frozenset({FixedState.CANCELLED, FixedState.DELIVERED})

# Fixed nodes that may be halted.  Every step node is haltable as well.
HALTABLE_FIXED_STATES: frozenset[FixedState] = frozenset(
    {FixedState.IN_PROGRESS, FixedState.PAYMENT_PENDING, FixedState.PAID}
)

_FIXED_EDGES: dict[FixedState, tuple[FixedState, ...]] = {
    FixedState.REQUESTED: (FixedState.ASSIGNED, FixedState.CANCELLED),
    FixedState.ASSIGNED: (FixedState.PAYMENT_PENDING, FixedState.IN_PROGRESS, FixedState.CANCELLED),
    FixedState.PAYMENT_PENDING: (FixedState.PAID, FixedState.HALTED, FixedState.CANCELLED),
    FixedState.PAID: (FixedState.IN_PROGRESS, FixedState.HALTED),
    FixedState.COMPLETED: (FixedState.DELIVERED,),
    FixedState.REFUND_PENDING: (FixedState.CANCELLED,),
    FixedState.CANCELLED: (),
    FixedState.DELIVERED: (),
}


def is_terminal(state: str | ServiceState) -> bool:
    parsed = parse_state(state)
    return isinstance(parsed, FixedState) and parsed in TERMINAL_STATES


def is_haltable(state: str | ServiceState) -> bool:
    """Return ``True`` if *state* may be paused.

    All step nodes qualify regardless of their position in the definition.
    """
    parsed = parse_state(state)
    if isinstance(parsed, StepState):
        return True
    return parsed in HALTABLE_FIXED_STATES


def build_state_list(total_steps: int) -> list[str]:
    """Return the ordered happy-path node names for a definition.

    Parameters
    ----------
    total_steps:
        Number of steps in the service definition.

    Returns
    -------
    list[str]
        ``requested`` through ``delivered`` with ``step_1..step_N`` between
        ``in_progress`` and ``completed``.
    """
    states = [
        FixedState.REQUESTED.value,
        FixedState.ASSIGNED.value,
        FixedState.PAYMENT_PENDING.value,
        FixedState.PAID.value,
        FixedState.IN_PROGRESS.value,
    ]
    states.extend(StepState(number=n).name for n in range(1, total_steps + 1))
    states.extend([FixedState.COMPLETED.value, FixedState.DELIVERED.value])
    return states


def get_all_active_states(max_steps: int = 20) -> list[str]:
    """Return every non-terminal node name, with step nodes up to *max_steps*."""
    states = [s.value for s in FixedState if s not in TERMINAL_STATES]
    states.extend(StepState(number=n).name for n in range(1, max_steps + 1))
    return states


class StateGraph:
    """Edges of the workflow for a definition with *total_steps* steps."""

    def __init__(self, total_steps: int = 0) -> None:
        if total_steps < 0:
            raise ValueError(f"total_steps must be >= 0, got {total_steps}")
        self.total_steps = total_steps

    def _after_work(self, step_number: int) -> ServiceState:
        if step_number < self.total_steps:
            return StepState(number=step_number + 1)
        return FixedState.COMPLETED

    def _resume_targets(self) -> list[ServiceState]:
        targets: list[ServiceState] = [
            FixedState.PAYMENT_PENDING,
            FixedState.PAID,
            FixedState.IN_PROGRESS,
        ]
        targets.extend(StepState(number=n) for n in range(1, self.total_steps + 1))
        return targets

    def successors(self, current: str | ServiceState) -> list[ServiceState]:
        """Return every node reachable in one edge from *current*.

        Raises
        ------
        ValueError
            If *current* is not a recognised state name.
        """
        parsed = parse_state(current)
        if isinstance(parsed, StepState):
            return [self._after_work(parsed.number), FixedState.HALTED]
        if parsed is FixedState.IN_PROGRESS:
            return [self._after_work(0), FixedState.HALTED]
        if parsed is FixedState.HALTED:
            return [*self._resume_targets(), FixedState.REFUND_PENDING, FixedState.CANCELLED]
        return list(_FIXED_EDGES[parsed])

    def valid_transitions(self, current: str | ServiceState) -> list[str]:
        return [state_name(s) for s in self.successors(current)]

    def can_transition(self, current: str | ServiceState, target: str | ServiceState) -> bool:
        try:
            target_parsed = parse_state(target)
        except ValueError:
            return False
        return target_parsed in self.successors(current)

    def is_valid_resume_target(self, target: str | ServiceState) -> bool:
        try:
            return parse_state(target) in self._resume_targets()
        except ValueError:
            return False
