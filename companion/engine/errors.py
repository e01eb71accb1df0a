"""Exception hierarchy for the companion core.

Specific exceptions for each failure mode. Each carries an HTTP
``status`` hint so the route layer can map it without a lookup table.
"""
from __future__ import annotations


class CompanionError(Exception):
    """Base exception for all companion core errors."""

    status: int = 500


class SpawnError(CompanionError):
    """Failed to start an agent process (missing binary, bad cwd)."""

    status = 400

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to spawn agent {name}: {reason}")


class RelaunchError(CompanionError):
    """Agent configuration could not be reconstructed for a relaunch."""

    status = 400

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Cannot relaunch agent {name}: {reason}")


class NotRunningError(CompanionError):
    """Operation targeted an agent whose process is not accepting input."""

    status = 400

    def __init__(self, name: str, state: str | None = None):
        self.name = name
        self.state = state
        suffix = f" (state: {state})" if state else ""
        super().__init__(f"Agent {name} is not running{suffix}")


class DuplicateNameError(CompanionError):
    """An active agent with this name already exists in the session."""

    status = 400

    def __init__(self, session_id: str, name: str):
        self.session_id = session_id
        self.name = name
        super().__init__(
            f"Agent {name} already exists in session {session_id}"
        )


class UnknownAgentError(CompanionError):
    """No agent with this name exists in the session."""

    status = 404

    def __init__(self, session_id: str, name: str):
        self.session_id = session_id
        self.name = name
        super().__init__(f"Agent {name} not found in session {session_id}")


class SessionNotFoundError(CompanionError):
    """No session with this id exists."""

    status = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class EnvBundleError(CompanionError):
    """Environment bundle could not be loaded (strict mode only)."""

    status = 503

    def __init__(self, slug: str, reason: str):
        self.slug = slug
        self.reason = reason
        super().__init__(f"Environment bundle '{slug}' unavailable: {reason}")
