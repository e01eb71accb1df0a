"""Typed domain events relayed between agent processes and observers.

Each event is a dataclass; ``event_to_dict`` turns it into the wire
payload ``{"type": ..., "agent": ..., ...fields}`` pushed to observers,
and ``dict_to_event`` parses such a payload back.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentEvent:
    """Base event. ``agent`` is empty for session-level events."""
    event_type: str = ""
    agent: str = ""


@dataclass
class TextDelta(AgentEvent):
    event_type: str = "text_delta"
    text: str = ""


@dataclass
class MessageComplete(AgentEvent):
    event_type: str = "message_complete"
    text: str = ""
    summary: str | None = None
    message_id: str | None = None


@dataclass
class PermissionRequested(AgentEvent):
    event_type: str = "permission_request"
    request_id: str = ""
    tool_name: str = ""
    input: dict = field(default_factory=dict)
    description: str | None = None


@dataclass
class PlanRequested(AgentEvent):
    event_type: str = "plan_request"
    request_id: str = ""
    plan: str = ""


@dataclass
class TaskUpdated(AgentEvent):
    event_type: str = "task_update"
    tasks: list = field(default_factory=list)


@dataclass
class StateChanged(AgentEvent):
    event_type: str = "state_change"
    state: str = ""
    previous: str | None = None
    exit_code: int | None = None
    reason: str | None = None
    stderr: list | None = None


@dataclass
class ProcessError(AgentEvent):
    """The agent process reported an error of its own."""
    event_type: str = "process_error"
    message: str = ""


@dataclass
class ProtocolError(AgentEvent):
    """A line of agent output could not be decoded."""
    event_type: str = "protocol_error"
    raw: str = ""
    reason: str = ""


@dataclass
class MessageAdded(AgentEvent):
    """A message was appended to an agent's history."""
    event_type: str = "message"
    message: dict = field(default_factory=dict)


@dataclass
class AgentSpawned(AgentEvent):
    event_type: str = "agent_spawned"
    descriptor: dict = field(default_factory=dict)


@dataclass
class ApprovalResolved(AgentEvent):
    event_type: str = "approval_resolved"
    request_id: str = ""
    kind: str = ""
    status: str = ""


@dataclass
class SessionSnapshot(AgentEvent):
    """First payload sent to a newly attached observer."""
    event_type: str = "snapshot"
    session: dict = field(default_factory=dict)


@dataclass
class SessionClosed(AgentEvent):
    event_type: str = "session_closed"
    session_id: str = ""


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "text_delta": TextDelta,
    "message_complete": MessageComplete,
    "permission_request": PermissionRequested,
    "plan_request": PlanRequested,
    "task_update": TaskUpdated,
    "state_change": StateChanged,
    "process_error": ProcessError,
    "protocol_error": ProtocolError,
    "message": MessageAdded,
    "agent_spawned": AgentSpawned,
    "approval_resolved": ApprovalResolved,
    "snapshot": SessionSnapshot,
    "session_closed": SessionClosed,
}


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to the observer payload."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    d["type"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert an observer payload back to a typed event dataclass."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    filtered["event_type"] = event_type
    return cls(**filtered)
