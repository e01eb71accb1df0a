"""Line-oriented JSON protocol spoken by agent processes.

Decoding: agent stdout is a stream of newline-delimited JSON records.
``ProtocolDecoder`` turns arbitrary read chunks into typed events,
keeping only a carry-over buffer for a record split across reads.
A line that cannot be decoded becomes a ``ProtocolError`` event and
decoding continues with the next line.

Two record vocabularies are understood:

- the canonical one (``text_delta``, ``message_complete``,
  ``permission_request``, ``plan_request``, ``task_update``,
  ``state_change``, ``error``), and
- the agent CLI's stream-json output (``stream_event``, ``assistant``,
  ``control_request``, ``system``, ``result``).

Encoding: helpers that build the records written to agent stdin.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any

from companion.adapters.events import (
    AgentEvent,
    MessageComplete,
    PermissionRequested,
    PlanRequested,
    ProcessError,
    ProtocolError,
    StateChanged,
    TaskUpdated,
    TextDelta,
)
from .models import AgentState

logger = logging.getLogger(__name__)

# Raw content attached to a ProtocolError is truncated to this many chars.
MAX_RAW_CHARS = 2000
READ_CHUNK_SIZE = 64 * 1024

PLAN_TOOL_NAME = "ExitPlanMode"
TASK_TOOL_NAME = "TodoWrite"

# States an agent may announce about itself; terminal states are
# decided by the supervisor from the process exit, never by output.
_ANNOUNCEABLE_STATES = {
    AgentState.IDLE.value,
    AgentState.BUSY.value,
    AgentState.COMPACTING.value,
}

# Well-formed records that carry nothing for observers.
_IGNORED_TYPES = {
    "user",
    "keep_alive",
    "control_response",
    "control_cancel_request",
}


# ── Record handlers ──


def _text_delta(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    return [TextDelta(agent=agent, text=str(record["text"]))]


def _message_complete(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    return [MessageComplete(
        agent=agent,
        text=str(record.get("text") or ""),
        summary=record.get("summary"),
        message_id=record.get("id"),
    )]


def _permission_request(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    tool_input = record.get("input") or {}
    if not isinstance(tool_input, dict):
        raise TypeError("input must be an object")
    return [PermissionRequested(
        agent=agent,
        request_id=str(record["request_id"]),
        tool_name=str(record.get("tool_name") or ""),
        input=tool_input,
        description=record.get("description"),
    )]


def _plan_request(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    return [PlanRequested(
        agent=agent,
        request_id=str(record["request_id"]),
        plan=str(record.get("plan") or ""),
    )]


def _task_update(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    tasks = record["tasks"]
    if not isinstance(tasks, list):
        raise TypeError("tasks must be a list")
    return [TaskUpdated(agent=agent, tasks=tasks)]


def _state_change(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    state = record["state"]
    if state not in _ANNOUNCEABLE_STATES:
        raise ValueError(f"state {state!r} cannot be announced by an agent")
    return [StateChanged(agent=agent, state=state, reason=record.get("reason"))]


def _error(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    return [ProcessError(agent=agent, message=str(record.get("message") or ""))]


def _stream_event(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    event = record["event"]
    if event.get("type") != "content_block_delta":
        return []
    delta = event.get("delta") or {}
    if delta.get("type") != "text_delta":
        return []
    return [TextDelta(agent=agent, text=str(delta.get("text") or ""))]


def _assistant(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    message = record["message"]
    content = message.get("content") or []
    if isinstance(content, str):
        content = [{"type": "text", "text": content}]
    texts: list[str] = []
    events: list[AgentEvent] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            texts.append(str(block.get("text") or ""))
        elif block.get("type") == "tool_use" and block.get("name") == TASK_TOOL_NAME:
            todos = (block.get("input") or {}).get("todos")
            if isinstance(todos, list):
                events.append(TaskUpdated(agent=agent, tasks=todos))
    text = "".join(texts)
    if text:
        events.insert(0, MessageComplete(
            agent=agent,
            text=text,
            message_id=message.get("id"),
        ))
    return events


def _control_request(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    request = record["request"]
    if request.get("subtype") != "can_use_tool":
        return []
    request_id = str(record["request_id"])
    tool_name = str(request["tool_name"])
    tool_input = request.get("input") or {}
    if not isinstance(tool_input, dict):
        raise TypeError("input must be an object")
    if tool_name == PLAN_TOOL_NAME:
        return [PlanRequested(
            agent=agent,
            request_id=request_id,
            plan=str(tool_input.get("plan") or ""),
        )]
    return [PermissionRequested(
        agent=agent,
        request_id=request_id,
        tool_name=tool_name,
        input=tool_input,
        description=request.get("description"),
    )]


def _system(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    subtype = record.get("subtype")
    if subtype == "init":
        return [StateChanged(agent=agent, state=AgentState.IDLE.value, reason="init")]
    if subtype == "status":
        # Compaction happens mid-turn; the turn resumes once it clears.
        if record.get("status") == "compacting":
            state = AgentState.COMPACTING.value
        else:
            state = AgentState.BUSY.value
        return [StateChanged(agent=agent, state=state, reason="status")]
    return []


def _result(record: dict[str, Any], agent: str) -> list[AgentEvent]:
    events: list[AgentEvent] = []
    if record.get("is_error"):
        detail = record.get("result") or record.get("errors") or record.get("subtype")
        events.append(ProcessError(agent=agent, message=str(detail or "error")))
    events.append(StateChanged(
        agent=agent,
        state=AgentState.IDLE.value,
        reason=str(record.get("subtype") or "result"),
    ))
    return events


_HANDLERS: dict[str, Callable[[dict[str, Any], str], list[AgentEvent]]] = {
    "text_delta": _text_delta,
    "message_complete": _message_complete,
    "permission_request": _permission_request,
    "plan_request": _plan_request,
    "task_update": _task_update,
    "state_change": _state_change,
    "error": _error,
    "stream_event": _stream_event,
    "assistant": _assistant,
    "control_request": _control_request,
    "system": _system,
    "result": _result,
}


def _protocol_error(agent: str, raw: str, reason: str) -> list[AgentEvent]:
    return [ProtocolError(agent=agent, raw=raw[:MAX_RAW_CHARS], reason=reason)]


def decode_line(line: str, agent: str = "") -> list[AgentEvent]:
    """Decode one complete record line into zero or more events.

    Never raises: anything undecodable comes back as a ProtocolError.
    """
    line = line.strip()
    if not line:
        return []
    try:
        record = json.loads(line)
    except json.JSONDecodeError as exc:
        return _protocol_error(agent, line, f"invalid JSON: {exc.msg}")
    if not isinstance(record, dict):
        return _protocol_error(agent, line, "record is not a JSON object")

    kind = record.get("type")
    if kind is not None and not isinstance(kind, str):
        return _protocol_error(agent, line, "record type must be a string")
    handler = _HANDLERS.get(kind) if kind is not None else None
    if handler is None:
        if kind in _IGNORED_TYPES:
            return []
        return _protocol_error(agent, line, f"unknown record type: {kind!r}")
    try:
        return handler(record, agent)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        return _protocol_error(agent, line, f"malformed {kind} record: {exc!r}")


class ProtocolDecoder:
    """Incremental decoder for one agent's output stream."""

    def __init__(self, agent: str = "") -> None:
        self.agent = agent
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Bytes held back waiting for the rest of a record."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[AgentEvent]:
        """Consume a chunk of output, returning events for complete lines."""
        self._buffer.extend(data)
        events: list[AgentEvent] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buffer[:idx])
            del self._buffer[:idx + 1]
            events.extend(self._decode_raw(raw))
        return events

    def flush(self) -> list[AgentEvent]:
        """Decode a final unterminated record at end of stream."""
        if not self._buffer:
            return []
        raw = bytes(self._buffer)
        self._buffer.clear()
        return self._decode_raw(raw)

    def _decode_raw(self, raw: bytes) -> list[AgentEvent]:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return _protocol_error(
                self.agent, raw.decode("utf-8", errors="replace"), "invalid UTF-8",
            )
        return decode_line(text, self.agent)


async def decode_stream(
    reader: asyncio.StreamReader,
    agent: str = "",
    chunk_size: int = READ_CHUNK_SIZE,
) -> AsyncIterator[AgentEvent]:
    """Lazily decode an agent's stdout until EOF."""
    decoder = ProtocolDecoder(agent)
    while True:
        chunk = await reader.read(chunk_size)
        if not chunk:
            break
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event


# ── Encoding ──


def encode_record(record: dict[str, Any]) -> bytes:
    """Serialize one record as a single newline-terminated line."""
    return (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")


def user_message(text: str) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {
            "role": "user",
            "content": [{"type": "text", "text": text}],
        },
    }


def _control_response(request_id: str, response: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "control_response",
        "response": {
            "subtype": "success",
            "request_id": request_id,
            "response": response,
        },
    }


def permission_response(
    request_id: str,
    approve: bool,
    *,
    updated_input: dict[str, Any] | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    if approve:
        body: dict[str, Any] = {"behavior": "allow", "updatedInput": updated_input or {}}
    else:
        body = {"behavior": "deny", "message": message or "Denied by user"}
    return _control_response(request_id, body)


def plan_response(
    request_id: str,
    approve: bool,
    *,
    feedback: str | None = None,
    plan_input: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Answer a plan gate. Feedback travels with a rejection."""
    if approve:
        return permission_response(request_id, True, updated_input=plan_input)
    return permission_response(
        request_id, False, message=feedback or "Plan rejected by user",
    )


def interrupt_request(request_id: str | None = None) -> dict[str, Any]:
    return {
        "type": "control_request",
        "request_id": request_id or str(uuid.uuid4()),
        "request": {"subtype": "interrupt"},
    }
