"""Fan-out of session events to live observers.

Each observer owns a bounded asyncio.Queue drained by its transport
(a WebSocket handler, or a test). The bridge never awaits an
observer: delivery is ``put_nowait`` and an observer whose queue is
full is dropped instead of stalling everyone else.

Attaching snapshots the session from the registry and queues the
replay before registering the observer, with no suspension point in
between, so a live event is either part of the replay or delivered
after it, never both and never neither.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from companion.engine.models import ApprovalKind, make_id
from .events import (
    AgentEvent,
    MessageAdded,
    PermissionRequested,
    PlanRequested,
    SessionClosed,
    SessionSnapshot,
    TaskUpdated,
    TextDelta,
    event_to_dict,
)

if TYPE_CHECKING:
    from companion.engine.registry import SessionRegistry
    from companion.shared.models.message import Approval

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000

_CLOSED = object()


class Observer:
    """A live subscriber to one session, optionally filtered to one agent."""

    def __init__(
        self,
        session_id: str,
        agent: str | None = None,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.id = make_id()
        self.session_id = session_id
        self.agent = agent
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def wants(self, payload: dict[str, Any]) -> bool:
        """Agent-filtered observers still get session-level payloads."""
        if self.agent is None:
            return True
        agent = payload.get("agent")
        return not agent or agent == self.agent

    def deliver(self, payload: dict[str, Any]) -> bool:
        """Queue a payload without waiting. False if the observer is gone."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # A full queue means no reader is blocked waiting; it will see
        # the closed flag once it has drained what is queued.
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> dict[str, Any] | None:
        """Next payload, or None once the observer is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        return None if item is _CLOSED else item

    def get_nowait(self) -> dict[str, Any] | None:
        """Next queued payload, or None if nothing is queued."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return None if item is _CLOSED else item

    def drain(self) -> list[dict[str, Any]]:
        """Everything currently queued, without waiting."""
        items: list[dict[str, Any]] = []
        while True:
            item = self.get_nowait()
            if item is None:
                return items
            items.append(item)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self.get()
            if item is None:
                return
            yield item

    def __repr__(self) -> str:
        return (
            f"Observer(id={self.id[:8]}, session={self.session_id[:8]}, "
            f"agent={self.agent!r}, closed={self._closed})"
        )


class EventBridge:
    """Per-session observer sets with replay-then-live delivery."""

    def __init__(
        self,
        registry: SessionRegistry,
        max_queue: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._registry = registry
        self.max_queue = max_queue
        self._observers: dict[str, dict[str, Observer]] = {}

    def observer_count(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._observers.get(session_id, {}))
        return sum(len(obs) for obs in self._observers.values())

    def attach(self, session_id: str, agent: str | None = None) -> Observer:
        """Register an observer after queueing the session replay.

        Raises SessionNotFoundError / UnknownAgentError for unknown targets.
        """
        self._registry.get(session_id)
        if agent is not None:
            self._registry.get_agent(session_id, agent)
        replay = self._build_replay(session_id, agent)
        # Room for the whole replay on top of the live backlog bound.
        observer = Observer(session_id, agent, maxsize=self.max_queue + len(replay))
        for payload in replay:
            observer.deliver(payload)
        self._observers.setdefault(session_id, {})[observer.id] = observer
        logger.info(
            "Observer %s attached session=%s agent=%s replay=%d",
            observer.id[:8], session_id[:8], agent or "*", len(replay),
        )
        return observer

    def detach(self, observer: Observer) -> None:
        """Drop an observer. Session state is untouched."""
        observers = self._observers.get(observer.session_id)
        if observers is not None:
            observers.pop(observer.id, None)
            if not observers:
                del self._observers[observer.session_id]
        observer.close()
        logger.info(
            "Observer %s detached session=%s",
            observer.id[:8], observer.session_id[:8],
        )

    def broadcast(self, session_id: str, event: AgentEvent | dict[str, Any]) -> int:
        """Deliver one payload to every current observer of the session.

        Returns the number of observers it reached. Observers that cannot
        take it are dropped once the pass is over.
        """
        payload = event_to_dict(event) if isinstance(event, AgentEvent) else event
        observers = list(self._observers.get(session_id, {}).values())
        failed: list[Observer] = []
        delivered = 0
        for observer in observers:
            if not observer.wants(payload):
                continue
            if observer.deliver(payload):
                delivered += 1
            else:
                failed.append(observer)
        for observer in failed:
            logger.warning(
                "Dropping observer %s session=%s (queue full or closed, %d pending)",
                observer.id[:8], session_id[:8], observer.pending,
            )
            self.detach(observer)
        return delivered

    def close_session(self, session_id: str) -> int:
        """Force-disconnect every observer of a session."""
        observers = list(self._observers.pop(session_id, {}).values())
        payload = event_to_dict(SessionClosed(session_id=session_id))
        for observer in observers:
            observer.deliver(payload)
            observer.close()
        if observers:
            logger.info(
                "Closed %d observer(s) of session=%s", len(observers), session_id[:8],
            )
        return len(observers)

    def close_all(self) -> None:
        for session_id in list(self._observers):
            self.close_session(session_id)

    # ── Replay ──

    def _build_replay(self, session_id: str, agent: str | None) -> list[dict[str, Any]]:
        registry = self._registry
        payloads = [event_to_dict(SessionSnapshot(session=registry.describe(session_id)))]
        replayed: list[AgentEvent] = []

        for message in registry.messages(session_id, agent):
            replayed.append(MessageAdded(agent=message.agent, message=message.to_dict()))
        for name, text in registry.streams(session_id).items():
            if text and (agent is None or name == agent):
                replayed.append(TextDelta(agent=name, text=text))
        for name, tasks in registry.tasks(session_id, agent).items():
            if tasks:
                replayed.append(TaskUpdated(agent=name, tasks=[t.to_dict() for t in tasks]))
        for approval in registry.pending_approvals(session_id, agent):
            replayed.append(approval_event(approval))

        for event in replayed:
            payload = event_to_dict(event)
            payload["replay"] = True
            payloads.append(payload)
        return payloads


def approval_event(approval: Approval) -> AgentEvent:
    """Rebuild the request event for a pending approval."""
    payload = approval.payload
    if approval.kind == ApprovalKind.PLAN:
        return PlanRequested(
            agent=approval.agent,
            request_id=approval.request_id,
            plan=str(payload.get("plan") or ""),
        )
    return PermissionRequested(
        agent=approval.agent,
        request_id=approval.request_id,
        tool_name=str(payload.get("tool_name") or ""),
        input=dict(payload.get("input") or {}),
        description=payload.get("description"),
    )
