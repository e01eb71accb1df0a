"""Message, approval and task records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from companion.engine.models import (
    ApprovalKind,
    ApprovalStatus,
    Sender,
    TaskStatus,
    make_id,
    utcnow,
)


@dataclass
class Message:
    sender: Sender
    text: str
    agent: str
    summary: str | None = None
    id: str = field(default_factory=make_id)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "from": self.sender.value,
            "agent": self.agent,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.summary:
            data["summary"] = self.summary
        return data


@dataclass
class Approval:
    """A pending permission or plan gate raised by an agent."""
    request_id: str
    kind: ApprovalKind
    agent: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "kind": self.kind.value,
            "agent": self.agent,
            "payload": self.payload,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class TaskItem:
    id: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    active_form: str | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any], index: int) -> TaskItem:
        """Build from an agent task record, tolerating missing fields."""
        try:
            status = TaskStatus(raw.get("status") or "pending")
        except ValueError:
            status = TaskStatus.PENDING
        return cls(
            id=str(raw.get("id") or index + 1),
            description=str(raw.get("content") or raw.get("description") or ""),
            status=status,
            active_form=raw.get("activeForm"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "status": self.status.value,
        }
        if self.active_form:
            data["activeForm"] = self.active_form
        return data
