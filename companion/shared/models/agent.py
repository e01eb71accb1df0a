"""Agent record: one supervised process plus its conversational state.

Uses engine models as the single source of truth for AgentState.
The record refers to its session by id only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from companion.engine.models import AgentConfig, AgentState, TERMINAL_STATES, utcnow

if TYPE_CHECKING:
    from companion.engine.supervisor import ProcessHandle

__all__ = ["AgentRecord", "AgentState"]


@dataclass
class AgentRecord:
    name: str
    session_id: str
    config: AgentConfig
    state: AgentState = AgentState.STARTING
    created_at: datetime = field(default_factory=utcnow)
    exited_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    relaunch_count: int = 0
    shutdown_requested: bool = False
    # Exclusively owned by this record; never serialized.
    handle: ProcessHandle | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_STATES

    @property
    def pid(self) -> int | None:
        return self.handle.pid if self.handle is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "sessionId": self.session_id,
            "state": self.state.value,
            "pid": self.pid,
            "model": self.config.model,
            "config": self.config.to_dict(),
            "createdAt": self.created_at.isoformat(),
            "exitedAt": self.exited_at.isoformat() if self.exited_at else None,
            "exitCode": self.exit_code,
            "error": self.error,
            "relaunchCount": self.relaunch_count,
            "shutdownRequested": self.shutdown_requested,
        }
