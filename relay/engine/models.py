"""Core data models for the relay engine.

Enums and small value types shared by the supervisor and registry.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionStatus(str, Enum):
    """Supervisor lifecycle states. See lifecycle.py for transition rules."""
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    DETACHED = "detached"
    STOPPED = "stopped"


class Pool(str, Enum):
    """Registry tier a session id currently lives in."""
    ACTIVE = "active"
    BACKGROUND = "background"
    HISTORY = "history"


@dataclass(frozen=True)
class RetryPolicy:
    """Restart-then-retry policy for stdin writes.

    ``max_restarts`` bounds how many times a send may restart the agent
    before giving up with a terminal error event.
    """
    max_restarts: int = 3
    delay_seconds: float = 0.5
