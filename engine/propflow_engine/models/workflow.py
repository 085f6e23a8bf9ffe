"""Service workflow state and transition result models.

A service instance's state is either one of the fixed lifecycle nodes
(:class:`FixedState`) or a dynamic step node (:class:`StepState`) rendered
as ``step_<n>``.  Step numbers are 1-based; an instance at ``step_n`` has
``current_step_index == n - 1`` and ``-1`` before any step begins.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

_STEP_RE = re.compile(r"^step_(\d+)$")


class FixedState(str, Enum):
    """Fixed lifecycle nodes of a service instance."""

    REQUESTED = "requested"
    ASSIGNED = "assigned"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    HALTED = "halted"
    REFUND_PENDING = "refund_pending"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class StepState(BaseModel):
    """A dynamic per-definition step node, e.g. ``step_3``."""

    model_config = ConfigDict(frozen=True)

    number: int = Field(..., ge=1, description="1-based step number.")

    @property
    def name(self) -> str:
        return f"step_{self.number}"

    @property
    def step_index(self) -> int:
        return self.number - 1

    def __str__(self) -> str:
        return self.name


ServiceState = Union[FixedState, StepState]

# Sentinel written as ``from_state`` on the creation history row.
INITIAL_FROM_STATE = "none"


def parse_state(value: str | FixedState | StepState) -> ServiceState:
    """Parse a persisted state name into its tagged form.

    Raises
    ------
    ValueError
        If *value* is neither a fixed node nor a ``step_<n>`` name with n >= 1.
    """
    if isinstance(value, (FixedState, StepState)):
        return value
    match = _STEP_RE.match(value)
    if match:
        number = int(match.group(1))
        if number < 1:
            raise ValueError(f"Step numbers start at 1, got {value!r}")
        return StepState(number=number)
    try:
        return FixedState(value)
    except ValueError:
        raise ValueError(f"Unknown service state: {value!r}") from None


def state_name(state: ServiceState) -> str:
    """Return the persisted string form of *state*."""
    if isinstance(state, StepState):
        return state.name
    return state.value


def is_step_state(value: str | ServiceState) -> bool:
    try:
        return isinstance(parse_state(value), StepState)
    except ValueError:
        return False


class TransitionFailure(str, Enum):
    """Why a transition was refused."""

    NOT_FOUND = "not_found"
    UNKNOWN_STATE = "unknown_state"
    TERMINAL_STATE = "terminal_state"
    INVALID_TRANSITION = "invalid_transition"
    CONCURRENT_CHANGE = "concurrent_change"


class TransitionResult(BaseModel):
    """Outcome of a workflow transition.

    Expected failures (unknown instance, terminal state, illegal edge,
    concurrent change) come back with ``success=False``, a ``failure`` tag
    and an ``error`` message instead of raising.
    """

    success: bool
    service_instance_id: str
    from_state: str
    to_state: str
    history_id: str | None = None
    failure: TransitionFailure | None = None
    error: str | None = None


class StateInfo(BaseModel):
    """Read-only snapshot of an instance's position in its workflow."""

    service_instance_id: str
    current_state: str
    current_step_index: int
    current_step_name: str | None = None
    total_steps: int
    state_list: list[str]
    valid_transitions: list[str]
    is_terminal: bool


class StateHistoryEntry(BaseModel):
    """One row of the append-only transition log."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    service_instance_id: str
    from_state: str
    to_state: str
    changed_by: str
    reason: str | None = None
    metadata_json: dict[str, Any] | None = None
    created_at: datetime
