"""In-memory catalogue of sessions and everything they own.

Sessions hold their agent records; the per-agent message buffers,
streaming buffers, pending approvals, task lists and connection
status live in maps rooted here and keyed by session id, so removing
a session drops all of them in one place.

All mutation happens on the event loop thread without awaiting, so no
locking is needed.
"""
from __future__ import annotations

import logging
from collections import deque

from companion.shared.models.agent import AgentRecord
from companion.shared.models.message import Approval, Message, TaskItem
from companion.shared.models.session import Session
from .errors import DuplicateNameError, SessionNotFoundError, UnknownAgentError
from .lifecycle import validate_transition
from .models import (
    AgentState,
    ApprovalKind,
    ApprovalStatus,
    ConnectionStatus,
    SessionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 500


class SessionRegistry:
    """Owns Session, Agent, Message, Approval and Task records."""

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.max_messages = max_messages
        self._sessions: dict[str, Session] = {}
        self._messages: dict[str, dict[str, deque[Message]]] = {}
        self._streams: dict[str, dict[str, str]] = {}
        self._approvals: dict[str, dict[str, Approval]] = {}
        self._tasks: dict[str, dict[str, list[TaskItem]]] = {}
        self._connection: dict[str, dict[str, ConnectionStatus]] = {}

    # ── Sessions ──

    def create(
        self,
        cwd: str,
        label: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        session = Session(cwd=cwd, label=label)
        if session_id:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} already exists")
            session.session_id = session_id
        sid = session.session_id
        self._sessions[sid] = session
        self._messages[sid] = {}
        self._streams[sid] = {}
        self._approvals[sid] = {}
        self._tasks[sid] = {}
        self._connection[sid] = {}
        logger.info("Session created session=%s cwd=%s", sid[:8], cwd)
        return session

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def find(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def remove(self, session_id: str) -> Session:
        """Remove a session and everything it owns."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._messages.pop(session_id, None)
        self._streams.pop(session_id, None)
        self._approvals.pop(session_id, None)
        self._tasks.pop(session_id, None)
        self._connection.pop(session_id, None)
        session.status = SessionStatus.CLOSED
        for agent in session.agents.values():
            agent.handle = None
        session.agents.clear()
        logger.info("Session removed session=%s", session_id[:8])
        return session

    # ── Agents ──

    def add_agent(self, agent: AgentRecord) -> AgentRecord:
        """Register a new agent. Name must be unused in the session."""
        session = self.get(agent.session_id)
        if agent.name in session.agents:
            raise DuplicateNameError(session.session_id, agent.name)
        session.agents[agent.name] = agent
        self._messages[session.session_id].setdefault(
            agent.name, deque(maxlen=self.max_messages),
        )
        self._connection[session.session_id][agent.name] = ConnectionStatus.CONNECTING
        return agent

    def get_agent(self, session_id: str, name: str) -> AgentRecord:
        agent = self.get(session_id).agents.get(name)
        if agent is None:
            raise UnknownAgentError(session_id, name)
        return agent

    def set_agent_state(
        self, session_id: str, name: str, new_state: AgentState,
    ) -> AgentState:
        """Apply a validated transition; returns the previous state.

        Raises ValueError for a transition the lifecycle forbids.
        """
        agent = self.get_agent(session_id, name)
        old_state = agent.state
        if old_state == new_state:
            return old_state
        validate_transition(old_state, new_state)
        agent.state = new_state
        logger.info(
            "Agent %s session=%s: %s -> %s",
            name, session_id[:8], old_state.value, new_state.value,
        )
        return old_state

    # ── Messages ──

    def append_message(self, session_id: str, message: Message) -> Message:
        """Append to the agent's history; oldest entries fall off the cap."""
        self.get_agent(session_id, message.agent)
        buffer = self._messages[session_id].setdefault(
            message.agent, deque(maxlen=self.max_messages),
        )
        buffer.append(message)
        return message

    def messages(self, session_id: str, name: str | None = None) -> list[Message]:
        """History for one agent, or for the whole session in time order."""
        self.get(session_id)
        buffers = self._messages[session_id]
        if name is not None:
            self.get_agent(session_id, name)
            return list(buffers.get(name, ()))
        merged = [m for buf in buffers.values() for m in buf]
        merged.sort(key=lambda m: m.timestamp)
        return merged

    # ── Streaming buffers ──

    def append_stream(self, session_id: str, name: str, text: str) -> str:
        streams = self._streams[self.get(session_id).session_id]
        streams[name] = streams.get(name, "") + text
        return streams[name]

    def take_stream(self, session_id: str, name: str) -> str:
        """Return and clear the partial reply buffer."""
        self.get(session_id)
        return self._streams[session_id].pop(name, "")

    def streams(self, session_id: str) -> dict[str, str]:
        self.get(session_id)
        return dict(self._streams[session_id])

    # ── Approvals ──

    def add_pending_approval(self, session_id: str, approval: Approval) -> Approval:
        self.get_agent(session_id, approval.agent)
        pending = self._approvals[session_id]
        if approval.request_id in pending:
            logger.warning(
                "Duplicate approval request_id=%s ignored", approval.request_id[:8],
            )
            return pending[approval.request_id]
        pending[approval.request_id] = approval
        return approval

    def get_approval(self, session_id: str, request_id: str) -> Approval | None:
        self.get(session_id)
        return self._approvals[session_id].get(request_id)

    def resolve_approval(
        self,
        session_id: str,
        request_id: str,
        approved: bool,
        *,
        agent: str | None = None,
        kind: ApprovalKind | None = None,
    ) -> Approval | None:
        """Resolve a pending approval at most once.

        Returns None, touching nothing, when the id is unknown (already
        resolved or expired) or belongs to another agent or kind.
        """
        pending = self._approvals[self.get(session_id).session_id]
        approval = pending.get(request_id)
        if approval is None:
            return None
        if agent is not None and approval.agent != agent:
            return None
        if kind is not None and approval.kind != kind:
            return None
        del pending[request_id]
        approval.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.DENIED
        return approval

    def pending_approvals(
        self, session_id: str, name: str | None = None,
    ) -> list[Approval]:
        self.get(session_id)
        approvals = list(self._approvals[session_id].values())
        if name is not None:
            approvals = [a for a in approvals if a.agent == name]
        return approvals

    def expire_approvals(self, session_id: str, name: str) -> list[Approval]:
        """Drop every pending approval of an agent whose process ended."""
        pending = self._approvals[self.get(session_id).session_id]
        expired = [a for a in pending.values() if a.agent == name]
        for approval in expired:
            del pending[approval.request_id]
            approval.status = ApprovalStatus.EXPIRED
        return expired

    # ── Tasks ──

    def set_tasks(self, session_id: str, name: str, tasks: list[TaskItem]) -> list[TaskItem]:
        self.get_agent(session_id, name)
        self._tasks[session_id][name] = list(tasks)
        return tasks

    def tasks(self, session_id: str, name: str | None = None) -> dict[str, list[TaskItem]]:
        self.get(session_id)
        all_tasks = self._tasks[session_id]
        if name is not None:
            return {name: list(all_tasks.get(name, []))}
        return {k: list(v) for k, v in all_tasks.items()}

    # ── Connection status ──

    def set_connection_status(
        self, session_id: str, name: str, status: ConnectionStatus,
    ) -> None:
        self.get_agent(session_id, name)
        self._connection[session_id][name] = status

    def connection_status(self, session_id: str) -> dict[str, ConnectionStatus]:
        self.get(session_id)
        return dict(self._connection[session_id])

    def describe(self, session_id: str) -> dict:
        """Serializable session descriptor including live bookkeeping."""
        session = self.get(session_id)
        data = session.to_dict()
        connection = self._connection[session_id]
        for agent in data["agents"]:
            status = connection.get(agent["name"])
            agent["connection"] = status.value if status else None
        data["pendingApprovals"] = [
            a.to_dict() for a in self._approvals[session_id].values()
        ]
        data["messageCount"] = sum(len(b) for b in self._messages[session_id].values())
        data["updatedAt"] = utcnow().isoformat()
        return data
