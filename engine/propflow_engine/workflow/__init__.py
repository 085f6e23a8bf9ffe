"""Service-instance workflow: state graph and transition engine."""

from propflow_engine.workflow.engine import WorkflowEngine
from propflow_engine.workflow.state_graph import (
    HALTABLE_FIXED_STATES,
    TERMINAL_STATES,
    StateGraph,
    build_state_list,
    get_all_active_states,
    is_haltable,
    is_terminal,
)

__all__ = [
    "HALTABLE_FIXED_STATES",
    "TERMINAL_STATES",
    "StateGraph",
    "WorkflowEngine",
    "build_state_list",
    "get_all_active_states",
    "is_haltable",
    "is_terminal",
]
