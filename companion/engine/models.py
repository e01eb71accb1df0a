"""Core enums and spawn configuration for the companion core.

Single source of truth for state/kind enums to avoid circular imports.
Record types (sessions, agents, messages) live in companion.shared.models.
"""
from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AgentState(str, Enum):
    """Agent lifecycle states. See lifecycle.py for transition rules."""
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    COMPACTING = "compacting"
    EXITED = "exited"
    KILLED = "killed"
    FAILED = "failed"


RUNNING_STATES = frozenset({
    AgentState.STARTING,
    AgentState.IDLE,
    AgentState.BUSY,
    AgentState.COMPACTING,
})
TERMINAL_STATES = frozenset({
    AgentState.EXITED,
    AgentState.KILLED,
    AgentState.FAILED,
})


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class Sender(str, Enum):
    """Who authored a message."""
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class ApprovalKind(str, Enum):
    PERMISSION = "permission"
    PLAN = "plan"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ConnectionStatus(str, Enum):
    """Whether the agent process is attached to its output reader."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class PermissionMode(str, Enum):
    """Maps to the agent CLI --permission-mode values."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


def make_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AgentConfig:
    """Everything needed to (re)start one agent process.

    Kept on the agent record so a relaunch can rebuild the exact
    same process without asking the caller again.
    """
    binary: str = "claude"
    cwd: str = "."
    model: str | None = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    api_key: str | None = field(default=None, repr=False)
    base_url: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    env_slug: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    extra_args: list[str] = field(default_factory=list)
    # Full command line override for agents that are not the stock CLI.
    command: list[str] | None = None

    @property
    def executable(self) -> str:
        return self.command[0] if self.command else self.binary

    def build_argv(self, binary_path: str | None = None) -> list[str]:
        """Build the stream-json command line for this agent."""
        if self.command:
            return [binary_path or self.command[0], *self.command[1:]]
        cmd = [
            binary_path or self.binary,
            "--print",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--include-partial-messages",
            "--verbose",
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        if self.permission_mode != PermissionMode.BYPASS:
            # Route approval prompts through stdin/stdout control records.
            cmd.extend(["--permission-prompt-tool", "stdio"])
        cmd.extend(["--permission-mode", self.permission_mode.value])
        if self.allowed_tools:
            cmd.extend(["--allowedTools", ",".join(self.allowed_tools)])
        cmd.extend(self.extra_args)
        return cmd

    def build_env(
        self,
        bundle: dict[str, str] | None = None,
        base: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Merge process env: base, then bundle, then explicit overrides.

        Credentials are applied last so an explicit api_key always wins.
        """
        env = dict(os.environ if base is None else base)
        if bundle:
            env.update({k: str(v) for k, v in bundle.items()})
        env.update({k: str(v) for k, v in self.env.items()})
        if self.api_key:
            env["ANTHROPIC_API_KEY"] = self.api_key
        if self.base_url:
            env["ANTHROPIC_BASE_URL"] = self.base_url
        return env

    def to_dict(self) -> dict[str, Any]:
        return {
            "binary": self.binary,
            "cwd": self.cwd,
            "model": self.model,
            "permissionMode": self.permission_mode.value,
            "hasApiKey": bool(self.api_key),
            "baseUrl": self.base_url,
            "envKeys": sorted(self.env),
            "envSlug": self.env_slug,
            "allowedTools": list(self.allowed_tools),
        }

    @classmethod
    def from_request(
        cls,
        body: dict[str, Any],
        *,
        default_binary: str = "claude",
        default_cwd: str = ".",
        default_model: str | None = None,
    ) -> AgentConfig:
        """Build a config from a validated API request body."""
        mode_raw = body.get("permissionMode") or body.get("permissions")
        try:
            mode = PermissionMode(mode_raw) if mode_raw else PermissionMode.DEFAULT
        except ValueError:
            raise ValueError(f"Unknown permission mode: {mode_raw}") from None
        env = body.get("env") or {}
        if not isinstance(env, dict):
            raise ValueError("env must be an object of name/value pairs")
        return cls(
            binary=body.get("binary") or body.get("claudeBinary") or default_binary,
            cwd=body.get("cwd") or default_cwd,
            model=body.get("model") or default_model,
            permission_mode=mode,
            api_key=body.get("apiKey"),
            base_url=body.get("baseUrl"),
            env={str(k): str(v) for k, v in env.items()},
            env_slug=body.get("envSlug"),
            allowed_tools=_string_list(body, "allowedTools") or [],
            extra_args=_string_list(body, "extraArgs") or [],
            command=_string_list(body, "command"),
        )


def _string_list(body: dict[str, Any], key: str) -> list[str] | None:
    """A list-of-strings field; a bare string is rejected, not split."""
    value = body.get(key)
    if not value:
        return None
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list of strings")
    return [str(item) for item in value]
