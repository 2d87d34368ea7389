"""Exception hierarchy for the relay engine.

One exception per failure mode. Configuration and spawn failures are
caught by the supervisor and turned into conversational events; routing
failures surface to HTTP callers as 404s.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class ConfigError(RelayError):
    """Config file exists but cannot be read or parsed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid config file {path}: {reason}")


class AgentBinaryNotFoundError(RelayError):
    """Configured agent binary is neither a file nor on PATH."""
    def __init__(self, binary: str):
        self.binary = binary
        super().__init__(f"Claude binary not found at: {binary}")


class AgentLaunchError(RelayError):
    """The OS refused to create the agent process."""
    def __init__(self, session_id: int, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(
            f"Failed to start agent for session {session_id}: {reason}"
        )


class SessionNotFoundError(RelayError):
    """Session id is not resident and has no persisted history."""
    def __init__(self, session_id: int | str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ProjectNotFoundError(RelayError):
    """Requested project record does not exist."""
    def __init__(self, project_id: int | str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class ProjectValidationError(RelayError):
    """Project payload is missing fields or points at a missing path."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
