"""Companion core engine: process supervision, protocol, state.

Heavier modules (supervisor, registry, controller) are imported lazily
to avoid circular imports with the adapters package.
"""
from __future__ import annotations

from .models import (
    AgentConfig,
    AgentState,
    ApprovalKind,
    ApprovalStatus,
    ConnectionStatus,
    PermissionMode,
    Sender,
    SessionStatus,
    TaskStatus,
)
from .config import EngineConfig
from .errors import (
    CompanionError,
    DuplicateNameError,
    EnvBundleError,
    NotRunningError,
    RelaunchError,
    SessionNotFoundError,
    SpawnError,
    UnknownAgentError,
)

__all__ = [
    # Controller (lazy import to avoid circular deps)
    "AgentController",
    "SessionRegistry",
    "ProcessSupervisor",
    # Models
    "AgentConfig",
    "AgentState",
    "ApprovalKind",
    "ApprovalStatus",
    "ConnectionStatus",
    "PermissionMode",
    "Sender",
    "SessionStatus",
    "TaskStatus",
    # Config
    "EngineConfig",
    "load_yaml_config",
    # Errors
    "CompanionError",
    "DuplicateNameError",
    "EnvBundleError",
    "NotRunningError",
    "RelaunchError",
    "SessionNotFoundError",
    "SpawnError",
    "UnknownAgentError",
]


def __getattr__(name: str):
    if name == "AgentController":
        from .controller import AgentController
        return AgentController
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
