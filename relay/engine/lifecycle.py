"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    CREATED ──> STARTING ──> RUNNING <──> DETACHED
                   ^            │
                   └────────────┘  (restart after the agent exited)

    Any state ──> STOPPED  (explicit stop / delete / disconnect without
                            background continuation)
"""
from __future__ import annotations

from .models import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.CREATED: {
        SessionStatus.STARTING,
        SessionStatus.STOPPED,
    },
    SessionStatus.STARTING: {
        SessionStatus.RUNNING,
        SessionStatus.STOPPED,
    },
    SessionStatus.RUNNING: {
        SessionStatus.STARTING,  # restart after exit / write failure
        SessionStatus.DETACHED,
        SessionStatus.STOPPED,
    },
    SessionStatus.DETACHED: {
        SessionStatus.RUNNING,
        SessionStatus.STOPPED,
    },
    SessionStatus.STOPPED: set(),
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def is_terminal(state: SessionStatus) -> bool:
    """True once a session can no longer change state."""
    return not VALID_TRANSITIONS.get(state)
