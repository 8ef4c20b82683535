"""Data models for storage layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from parley.ai.types import ChatMessage


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass
class SessionRecord:
    """A named local session, shared by every channel that writes to it.

    ``conversation_id`` links the session to a remote conversation of the
    stateful provider; ``None`` means a fresh one is created on the next send.
    """

    id: str
    name: str
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)
    archived: bool = False
    messages: list[ChatMessage] = field(default_factory=list)
    conversation_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def new(cls, name: Optional[str] = None) -> SessionRecord:
        now = _utcnow()
        return cls(
            id=f"session-{to_epoch_ms(now)}-{uuid.uuid4().hex[:6]}",
            name=name or f"Chat {now.astimezone():%H:%M}",
            created_at=now,
            last_used_at=now,
        )

    def touch(self) -> None:
        self.last_used_at = _utcnow()

    def archive(self) -> None:
        self.archived = True
        self.completed_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "createdAt": to_epoch_ms(self.created_at),
            "lastUsedAt": to_epoch_ms(self.last_used_at),
            "archived": self.archived,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.conversation_id is not None:
            data["conversationId"] = self.conversation_id
        if self.completed_at is not None:
            data["completedAt"] = to_epoch_ms(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        completed = data.get("completedAt")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            created_at=from_epoch_ms(data["createdAt"]) if "createdAt" in data else _utcnow(),
            last_used_at=from_epoch_ms(data["lastUsedAt"]) if "lastUsedAt" in data else _utcnow(),
            archived=bool(data.get("archived", False)),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages", [])],
            conversation_id=data.get("conversationId"),
            completed_at=from_epoch_ms(completed) if completed is not None else None,
        )
