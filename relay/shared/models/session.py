"""Session record: the persisted conversation history of one session."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from relay.shared.models.message import Message


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return _utcnow()
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return _utcnow()


@dataclass
class SessionRecord:
    """Holds the durable state of a session.

    Messages are append-only and ``updated_at`` never moves backwards,
    even if the wall clock does.
    """

    session_id: int
    project_id: int | None = None
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        self.touch(message.timestamp)
        return message

    def touch(self, when: datetime | None = None) -> None:
        when = when or _utcnow()
        if when > self.updated_at:
            self.updated_at = when

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "projectId": self.project_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "messageCount": self.message_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "projectId": self.project_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, session_id: int, data: dict[str, Any]) -> SessionRecord:
        project_id = data.get("projectId")
        return cls(
            session_id=session_id,
            project_id=int(project_id) if project_id is not None else None,
            messages=[
                Message.from_dict(m) for m in data.get("messages") or []
                if isinstance(m, dict)
            ],
            created_at=_parse_ts(data.get("createdAt")),
            updated_at=_parse_ts(data.get("updatedAt")),
        )
