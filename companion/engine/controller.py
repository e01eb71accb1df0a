"""Agent controller: routes caller intents to agent processes.

Owns the wiring between the three stateful parts of the core:

- ``ProcessSupervisor`` runs the agent processes and calls back with
  decoded events and exits,
- ``SessionRegistry`` records what those events mean,
- ``EventBridge`` pushes them to observers.

Event and exit callbacks run synchronously on the reader task, so the
registry update and the broadcast for one event happen together and
per-agent delivery order equals decode order. While a user message
to an agent is being written, that agent's output is held and applied,
still in decode order, once the write has finished.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from companion.adapters.event_bridge import EventBridge
from companion.adapters.events import (
    AgentEvent,
    AgentSpawned,
    ApprovalResolved,
    MessageAdded,
    MessageComplete,
    PermissionRequested,
    PlanRequested,
    ProcessError,
    ProtocolError,
    StateChanged,
    TaskUpdated,
    TextDelta,
)
from companion.shared.models.agent import AgentRecord
from companion.shared.models.message import Approval, Message, TaskItem
from companion.shared.models.session import Session
from companion.shared.services.env_store import EnvStore
from .config import EngineConfig
from .errors import (
    DuplicateNameError,
    EnvBundleError,
    NotRunningError,
    RelaunchError,
    SessionNotFoundError,
    SpawnError,
)
from .models import (
    AgentConfig,
    AgentState,
    ApprovalKind,
    ConnectionStatus,
    Sender,
    SessionStatus,
    utcnow,
)
from .protocol import interrupt_request, permission_response, plan_response
from .registry import SessionRegistry
from .supervisor import (
    EXIT_EXITED,
    EXIT_KILLED,
    ProcessExit,
    ProcessHandle,
    ProcessSupervisor,
)

logger = logging.getLogger(__name__)

_EXIT_STATES = {
    EXIT_EXITED: AgentState.EXITED,
    EXIT_KILLED: AgentState.KILLED,
}


class AgentController:
    """Session and agent operations exposed to the route layer."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        registry: SessionRegistry | None = None,
        bridge: EventBridge | None = None,
        env_store: EnvStore | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.registry = registry or SessionRegistry(max_messages=self.config.max_messages)
        self.bridge = bridge or EventBridge(
            self.registry, max_queue=self.config.observer_queue_size,
        )
        self.env_store = env_store or EnvStore(self.config.env_dir)
        self.supervisor = ProcessSupervisor(
            self._on_process_event,
            self._on_process_exit,
            grace_timeout=self.config.grace_timeout_seconds,
            kill_timeout=self.config.kill_timeout_seconds,
            write_timeout=self.config.write_timeout_seconds,
        )
        self._relaunching: set[tuple[str, str]] = set()
        # Sends in progress per agent, and output held back until they end.
        self._in_flight: dict[tuple[str, str], int] = {}
        self._held: dict[tuple[str, str], list[tuple[Callable, ProcessHandle, Any]]] = {}

    # ── Sessions ──

    def create_session(
        self,
        cwd: str | None = None,
        label: str | None = None,
    ) -> Session:
        path = Path(cwd or self.config.default_cwd).expanduser()
        return self.registry.create(str(path.resolve()), label=label)

    def get_session(self, session_id: str) -> Session:
        return self.registry.get(session_id)

    def list_sessions(self) -> list[Session]:
        return self.registry.list()

    async def remove_session(self, session_id: str) -> None:
        """Kill every agent, disconnect observers, then drop the session."""
        session = self.registry.get(session_id)
        session.status = SessionStatus.CLOSING
        handles = [
            a.handle for a in session.agents.values()
            if a.handle is not None and a.handle.running
        ]
        if handles:
            await asyncio.gather(*(self.supervisor.kill(h) for h in handles))
        self.bridge.close_session(session_id)
        self.registry.remove(session_id)

    async def kill_session(self, session_id: str) -> Session:
        """Kill every running agent but keep the session and its history."""
        session = self.registry.get(session_id)
        names = [
            name for name, a in session.agents.items()
            if a.handle is not None and a.handle.running
        ]
        if names:
            await asyncio.gather(*(self.kill_agent(session_id, n) for n in names))
        logger.info("Killed %d agent(s) in session %s", len(names), session_id[:8])
        return session

    async def shutdown(self) -> None:
        """Kill every agent process of every session."""
        for session in self.registry.list():
            session.status = SessionStatus.CLOSING
        await self.supervisor.shutdown()
        self.bridge.close_all()
        logger.info("Controller shut down")

    # ── Agents ──

    def _load_bundle(self, slug: str | None) -> dict[str, str] | None:
        if not slug:
            return None
        bundle = self.env_store.get(slug)
        if bundle is not None:
            return bundle.variables
        if self.config.strict_env_bundles:
            raise EnvBundleError(slug, "not found or unreadable")
        logger.warning("Environment bundle %r not found; spawning without it", slug)
        return None

    async def spawn_agent(
        self,
        session_id: str,
        name: str,
        config: AgentConfig,
    ) -> AgentRecord:
        """Start a named agent in a session.

        A terminal agent of the same name is reused: its history stays
        and the new configuration replaces the old one.
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("Agent name is required")
        session = self.registry.get(session_id)
        existing = session.agents.get(name)
        if existing is not None and (existing.is_active or (session_id, name) in self._relaunching):
            raise DuplicateNameError(session_id, name)

        env = config.build_env(self._load_bundle(config.env_slug))

        if existing is None:
            record = self.registry.add_agent(AgentRecord(name, session_id, config))
        else:
            record = existing
            previous = self.registry.set_agent_state(session_id, name, AgentState.STARTING)
            record.config = config
            self._reset_exit(record)
            self.registry.set_connection_status(session_id, name, ConnectionStatus.CONNECTING)
            self.bridge.broadcast(session_id, StateChanged(
                agent=name,
                state=AgentState.STARTING.value,
                previous=previous.value,
                reason="respawn",
            ))

        try:
            handle = await self.supervisor.spawn(
                name, config, session_id=session_id, env=env,
            )
        except SpawnError as exc:
            self._mark_spawn_failed(session_id, record, str(exc))
            raise
        return self._adopt_handle(session_id, record, handle)

    async def relaunch_agent(self, session_id: str, name: str) -> AgentRecord:
        """Restart an agent with its original configuration.

        A live agent is killed first. History is preserved.
        """
        record = self.registry.get_agent(session_id, name)
        key = (session_id, name)
        if key in self._relaunching:
            raise RelaunchError(name, "relaunch already in progress")
        if record.state == AgentState.STARTING and record.handle is None:
            raise RelaunchError(name, "agent is still starting")
        self._relaunching.add(key)
        try:
            handle = record.handle
            if handle is not None:
                new_handle = await self.supervisor.relaunch(handle)
            else:
                env = record.config.build_env(self._load_bundle(record.config.env_slug))
                new_handle = await self.supervisor.spawn(
                    name, record.config, session_id=session_id, env=env,
                )
        except SpawnError as exc:
            self._mark_spawn_failed(session_id, record, str(exc))
            raise
        finally:
            self._relaunching.discard(key)

        if record.is_active:
            # The old instance has not reported its exit yet.
            logger.warning("Relaunch of %s found the previous process still active", name)
            self.registry.set_agent_state(session_id, name, AgentState.KILLED)
        previous = self.registry.set_agent_state(session_id, name, AgentState.STARTING)
        record.relaunch_count += 1
        self._reset_exit(record)
        self.registry.set_connection_status(session_id, name, ConnectionStatus.CONNECTING)
        self.bridge.broadcast(session_id, StateChanged(
            agent=name,
            state=AgentState.STARTING.value,
            previous=previous.value,
            reason="relaunch",
        ))
        return self._adopt_handle(session_id, record, new_handle)

    def _adopt_handle(
        self, session_id: str, record: AgentRecord, handle: ProcessHandle,
    ) -> AgentRecord:
        """Attach a freshly spawned process to its record."""
        session = self.registry.find(session_id)
        if session is None or session.agents.get(record.name) is not record:
            # Session removed while the process was starting.
            asyncio.ensure_future(self.supervisor.kill(handle))
            raise SessionNotFoundError(session_id)
        record.handle = handle
        self.bridge.broadcast(session_id, AgentSpawned(
            agent=record.name, descriptor=record.to_dict(),
        ))
        return record

    def _mark_spawn_failed(self, session_id: str, record: AgentRecord, error: str) -> None:
        record.error = error
        record.handle = None
        if record.state != AgentState.STARTING:
            return
        previous = self.registry.set_agent_state(session_id, record.name, AgentState.FAILED)
        record.exited_at = utcnow()
        self.registry.set_connection_status(session_id, record.name, ConnectionStatus.DISCONNECTED)
        self.bridge.broadcast(session_id, StateChanged(
            agent=record.name,
            state=AgentState.FAILED.value,
            previous=previous.value,
            reason="spawn_failed",
        ))

    @staticmethod
    def _reset_exit(record: AgentRecord) -> None:
        record.exit_code = None
        record.exited_at = None
        record.error = None
        record.shutdown_requested = False

    def _running_handle(self, record: AgentRecord) -> ProcessHandle:
        handle = record.handle
        if not record.is_active or handle is None or not handle.accepting_input:
            raise NotRunningError(record.name, record.state.value)
        return handle

    async def send(
        self,
        session_id: str,
        name: str,
        text: str,
        summary: str | None = None,
    ) -> Message:
        """Deliver a user message to an agent and mark it busy.

        The message is recorded only once the write succeeded. Output the
        agent produces meanwhile is held back and applied afterwards, so
        history never shows a reply ahead of the message it answers.
        """
        if not text:
            raise ValueError("message is required")
        record = self.registry.get_agent(session_id, name)
        handle = self._running_handle(record)

        key = (session_id, name)
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        try:
            await self.supervisor.send(handle, text)
            message = self.registry.append_message(
                session_id, Message(Sender.USER, text, agent=name, summary=summary),
            )
            self.bridge.broadcast(session_id, MessageAdded(agent=name, message=message.to_dict()))
            if record.state in (AgentState.STARTING, AgentState.IDLE):
                self._transition(session_id, name, AgentState.BUSY, reason="user_message")
        finally:
            self._release(key)
        logger.info(
            "Message sent to %s session=%s chars=%d", name, session_id[:8], len(text),
        )
        return message

    async def send_permission_response(
        self,
        session_id: str,
        name: str,
        request_id: str,
        approve: bool,
        *,
        message: str | None = None,
        updated_input: dict | None = None,
    ) -> bool:
        """Answer a permission request. False if it is no longer pending."""
        record = self.registry.get_agent(session_id, name)
        approval = self.registry.resolve_approval(
            session_id, request_id, approve, agent=name, kind=ApprovalKind.PERMISSION,
        )
        if approval is None:
            logger.warning(
                "Permission response for unknown request %s (agent=%s), ignoring",
                request_id[:8], name,
            )
            return False
        self._broadcast_resolution(session_id, approval)
        if updated_input is None:
            updated_input = approval.payload.get("input") or {}
        record_out = permission_response(
            request_id, approve, updated_input=updated_input, message=message,
        )
        await self.supervisor.send_record(self._running_handle(record), record_out)
        return True

    async def send_plan_approval(
        self,
        session_id: str,
        name: str,
        request_id: str,
        approve: bool,
        feedback: str | None = None,
    ) -> bool:
        """Answer a plan gate. False if it is no longer pending.

        Feedback on a rejection travels with the denial; feedback on an
        approval follows as a user message.
        """
        record = self.registry.get_agent(session_id, name)
        approval = self.registry.resolve_approval(
            session_id, request_id, approve, agent=name, kind=ApprovalKind.PLAN,
        )
        if approval is None:
            logger.warning(
                "Plan approval for unknown request %s (agent=%s), ignoring",
                request_id[:8], name,
            )
            return False
        self._broadcast_resolution(session_id, approval)
        record_out = plan_response(
            request_id,
            approve,
            feedback=feedback,
            plan_input={"plan": approval.payload.get("plan", "")},
        )
        await self.supervisor.send_record(self._running_handle(record), record_out)
        if approve and feedback:
            await self.send(session_id, name, feedback)
        return True

    def _broadcast_resolution(self, session_id: str, approval: Approval) -> None:
        logger.info(
            "Approval %s %s by user (agent=%s kind=%s)",
            approval.request_id[:8], approval.status.value, approval.agent, approval.kind.value,
        )
        self.bridge.broadcast(session_id, ApprovalResolved(
            agent=approval.agent,
            request_id=approval.request_id,
            kind=approval.kind.value,
            status=approval.status.value,
        ))

    async def kill_agent(self, session_id: str, name: str) -> AgentRecord:
        """Force-terminate an agent. A no-op for one that is not running."""
        record = self.registry.get_agent(session_id, name)
        handle = record.handle
        if handle is None or not handle.running:
            logger.debug("kill_agent: %s is not running (state=%s)", name, record.state.value)
            return record
        await self.supervisor.kill(handle)
        # The exit may be held behind a send that has not failed yet.
        self._flush_held((session_id, name))
        return record

    async def send_shutdown_request(self, session_id: str, name: str) -> None:
        """Ask an agent to stop on its own.

        Only the later exit event confirms termination; the agent's
        state is left alone here.
        """
        record = self.registry.get_agent(session_id, name)
        handle = self._running_handle(record)
        record.shutdown_requested = True
        await self.supervisor.send_record(handle, interrupt_request())
        self.supervisor.close_input(handle)
        note = self.registry.append_message(
            session_id, Message(Sender.SYSTEM, "Shutdown requested", agent=name),
        )
        self.bridge.broadcast(session_id, MessageAdded(agent=name, message=note.to_dict()))
        logger.info("Shutdown requested for agent %s session=%s", name, session_id[:8])

    # ── Supervisor callbacks ──

    def _record_for(self, handle: ProcessHandle) -> AgentRecord | None:
        session = self.registry.find(handle.session_id)
        if session is None:
            return None
        record = session.agents.get(handle.name)
        if record is None or record.handle is not handle:
            return None
        return record

    def _transition(
        self,
        session_id: str,
        name: str,
        target: AgentState,
        *,
        reason: str | None = None,
    ) -> bool:
        record = self.registry.get_agent(session_id, name)
        if record.state == target:
            return False
        try:
            previous = self.registry.set_agent_state(session_id, name, target)
        except ValueError as exc:
            logger.warning("Agent %s: %s", name, exc)
            return False
        self.bridge.broadcast(session_id, StateChanged(
            agent=name, state=target.value, previous=previous.value, reason=reason,
        ))
        return True

    def _on_process_event(self, handle: ProcessHandle, event: AgentEvent) -> None:
        if not self._hold(handle, self._apply_event, event):
            self._apply_event(handle, event)

    def _on_process_exit(self, handle: ProcessHandle, outcome: ProcessExit) -> None:
        if not self._hold(handle, self._apply_exit, outcome):
            self._apply_exit(handle, outcome)

    def _hold(self, handle: ProcessHandle, apply: Callable, item: Any) -> bool:
        """Queue output of an agent with a send in progress."""
        key = (handle.session_id, handle.name)
        if key not in self._in_flight:
            return False
        self._held.setdefault(key, []).append((apply, handle, item))
        return True

    def _release(self, key: tuple[str, str]) -> None:
        remaining = self._in_flight.get(key, 0) - 1
        if remaining > 0:
            self._in_flight[key] = remaining
            return
        self._in_flight.pop(key, None)
        self._flush_held(key)

    def _flush_held(self, key: tuple[str, str]) -> None:
        for apply, handle, item in self._held.pop(key, []):
            try:
                apply(handle, item)
            except Exception:
                logger.exception("Error applying held output of agent %s", handle.name)

    def _apply_event(self, handle: ProcessHandle, event: AgentEvent) -> None:
        record = self._record_for(handle)
        if record is None:
            logger.debug("Dropping %s from stale handle %r", event.event_type, handle)
            return
        sid = handle.session_id
        name = handle.name
        registry = self.registry

        if registry.connection_status(sid).get(name) != ConnectionStatus.CONNECTED:
            registry.set_connection_status(sid, name, ConnectionStatus.CONNECTED)
            if record.state == AgentState.STARTING:
                self._transition(sid, name, AgentState.IDLE, reason="connected")

        if isinstance(event, TextDelta):
            registry.append_stream(sid, name, event.text)
        elif isinstance(event, MessageComplete):
            streamed = registry.take_stream(sid, name)
            event.text = event.text or streamed
            message = registry.append_message(sid, Message(
                Sender.AGENT, event.text, agent=name, summary=event.summary,
            ))
            event.message_id = message.id
        elif isinstance(event, PermissionRequested):
            registry.add_pending_approval(sid, Approval(
                request_id=event.request_id,
                kind=ApprovalKind.PERMISSION,
                agent=name,
                payload={
                    "tool_name": event.tool_name,
                    "input": event.input,
                    "description": event.description,
                },
            ))
        elif isinstance(event, PlanRequested):
            registry.add_pending_approval(sid, Approval(
                request_id=event.request_id,
                kind=ApprovalKind.PLAN,
                agent=name,
                payload={"plan": event.plan},
            ))
        elif isinstance(event, TaskUpdated):
            items = [
                TaskItem.from_raw(raw, i)
                for i, raw in enumerate(event.tasks)
                if isinstance(raw, dict)
            ]
            registry.set_tasks(sid, name, items)
            event.tasks = [t.to_dict() for t in items]
        elif isinstance(event, StateChanged):
            self._transition(sid, name, AgentState(event.state), reason=event.reason)
            return
        elif isinstance(event, ProcessError):
            registry.append_message(sid, Message(Sender.SYSTEM, event.message, agent=name))
        elif isinstance(event, ProtocolError):
            logger.warning(
                "Protocol error from agent %s session=%s: %s",
                name, sid[:8], event.reason,
            )

        self.bridge.broadcast(sid, event)

    def _apply_exit(self, handle: ProcessHandle, outcome: ProcessExit) -> None:
        record = self._record_for(handle)
        if record is None:
            logger.debug("Ignoring exit of stale handle %r", handle)
            return
        sid = handle.session_id
        name = handle.name
        registry = self.registry

        partial = registry.take_stream(sid, name)
        if partial:
            message = registry.append_message(sid, Message(
                Sender.AGENT, partial, agent=name, summary="interrupted",
            ))
            self.bridge.broadcast(sid, MessageAdded(agent=name, message=message.to_dict()))

        for approval in registry.expire_approvals(sid, name):
            self.bridge.broadcast(sid, ApprovalResolved(
                agent=name,
                request_id=approval.request_id,
                kind=approval.kind.value,
                status=approval.status.value,
            ))

        target = _EXIT_STATES.get(outcome.reason, AgentState.FAILED)
        previous = registry.set_agent_state(sid, name, target)
        record.exit_code = outcome.returncode
        record.exited_at = utcnow()
        if target == AgentState.FAILED:
            record.error = (
                outcome.stderr_tail[-1] if outcome.stderr_tail
                else f"exited with code {outcome.returncode}"
            )
        registry.set_connection_status(sid, name, ConnectionStatus.DISCONNECTED)
        self.bridge.broadcast(sid, StateChanged(
            agent=name,
            state=target.value,
            previous=previous.value,
            exit_code=outcome.returncode,
            reason=outcome.reason,
            stderr=outcome.stderr_tail or None,
        ))
