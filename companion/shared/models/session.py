"""Session record: a unit owning one or more named agents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from companion.engine.models import SessionStatus, make_id, utcnow
from companion.shared.models.agent import AgentRecord


@dataclass
class Session:
    cwd: str
    label: str | None = None
    session_id: str = field(default_factory=make_id)
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    agents: dict[str, AgentRecord] = field(default_factory=dict)

    @property
    def active_agents(self) -> list[AgentRecord]:
        return [a for a in self.agents.values() if a.is_active]

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "label": self.label,
            "cwd": self.cwd,
            "state": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "agents": [a.to_dict() for a in self.agents.values()],
        }
