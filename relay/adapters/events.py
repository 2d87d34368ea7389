"""Event types delivered to SSE clients, and the agent payload schema.

Each relay event is a typed dataclass; ``event_to_dict`` turns it into
the JSON frame clients receive (``{"type": ..., ...}``).

Decoded agent stdout is classified by ``classify_payload`` so the
supervisor only needs to know about assistant turns. Anything else is
an ``UnknownPayload`` carried through untouched.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class RelayEvent:
    """Base event sent towards a client."""
    event_type: str = ""


@dataclass
class Connected(RelayEvent):
    event_type: str = "connected"
    session_id: int = 0


@dataclass
class ErrorEvent(RelayEvent):
    event_type: str = "error"
    message: str = ""


@dataclass
class AgentClosed(RelayEvent):
    event_type: str = "claude_closed"
    code: int | None = None


@dataclass
class AgentOutput(RelayEvent):
    """Payload event: a decoded JSON value or a raw text line."""
    event_type: str = "claude_output"
    data: Any = None


# Python field name -> wire key, where they differ.
_WIRE_NAMES = {
    "event_type": "type",
    "session_id": "sessionId",
}


def event_to_dict(event: RelayEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to the dict written to clients."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is None and f not in ("data", "code"):
            continue
        d[_WIRE_NAMES.get(f, f)] = val
    return d


# ── Agent payloads ──


@dataclass
class AgentPayload:
    """A decoded JSON value read from the agent's stdout."""
    raw: Any = None


@dataclass
class AssistantTurn(AgentPayload):
    """``{"type": "assistant", "message": {...}}``: a turn to record."""
    message: Any = None


@dataclass
class UnknownPayload(AgentPayload):
    """Any other shape (system, result, tool events, scalars, ...)."""


def classify_payload(value: Any) -> AgentPayload:
    if isinstance(value, dict) and value.get("type") == "assistant" and value.get("message"):
        return AssistantTurn(raw=value, message=value["message"])
    return UnknownPayload(raw=value)
