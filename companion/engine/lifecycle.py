"""Agent lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    STARTING ──> IDLE <──> BUSY <──> COMPACTING
        │          │         │            │
        └──────────┴─────────┴────────────┴──> EXITED | KILLED | FAILED

    EXITED | KILLED | FAILED ──> STARTING  (explicit relaunch only)
"""
from __future__ import annotations

from .models import AgentState, TERMINAL_STATES

_TERMINAL = set(TERMINAL_STATES)

VALID_TRANSITIONS: dict[AgentState, set[AgentState]] = {
    AgentState.STARTING: {
        AgentState.IDLE,
        AgentState.BUSY,
        AgentState.COMPACTING,
    } | _TERMINAL,
    AgentState.IDLE: {
        AgentState.BUSY,
        AgentState.COMPACTING,
    } | _TERMINAL,
    AgentState.BUSY: {
        AgentState.IDLE,
        AgentState.COMPACTING,
    } | _TERMINAL,
    AgentState.COMPACTING: {
        AgentState.IDLE,
        AgentState.BUSY,
    } | _TERMINAL,
    AgentState.EXITED: {AgentState.STARTING},  # relaunch
    AgentState.KILLED: {AgentState.STARTING},  # relaunch
    AgentState.FAILED: {AgentState.STARTING},  # relaunch
}


def validate_transition(current: AgentState, target: AgentState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def is_terminal(state: AgentState) -> bool:
    return state in TERMINAL_STATES
