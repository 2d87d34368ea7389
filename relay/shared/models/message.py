"""Conversation message model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


# Keys owned by Message itself; everything else in a persisted dict is metadata.
_RESERVED_KEYS = frozenset({"role", "content", "timestamp"})


@dataclass
class Message:
    role: MessageRole
    # Opaque payload: plain text for user turns, the agent's content
    # blocks for assistant turns. Never interpreted.
    content: Any
    timestamp: datetime = field(default_factory=_utcnow)
    # Remaining fields of the agent message (id, model, usage, ...).
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_user_payload(cls, payload: dict[str, Any]) -> Message:
        """Build a user message from the stream-json envelope sent to stdin."""
        inner = payload.get("message")
        content = inner.get("content", "") if isinstance(inner, dict) else ""
        metadata = {"type": payload.get("type", "user")}
        return cls(role=MessageRole.USER, content=content, metadata=metadata)

    @classmethod
    def from_assistant_message(cls, message: Any) -> Message:
        """Build an assistant message from the ``message`` field of an agent event."""
        if not isinstance(message, dict):
            return cls(role=MessageRole.ASSISTANT, content=message)
        metadata = {k: v for k, v in message.items() if k not in _RESERVED_KEYS}
        return cls(
            role=MessageRole.ASSISTANT,
            content=message.get("content"),
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.metadata)
        data["role"] = self.role.value
        data["content"] = self.content
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        raw_ts = data.get("timestamp")
        try:
            timestamp = _ensure_aware(datetime.fromisoformat(raw_ts)) if raw_ts else _utcnow()
        except (TypeError, ValueError):
            timestamp = _utcnow()
        return cls(
            role=MessageRole(data.get("role", "user")),
            content=data.get("content"),
            timestamp=timestamp,
            metadata={k: v for k, v in data.items() if k not in _RESERVED_KEYS},
        )
