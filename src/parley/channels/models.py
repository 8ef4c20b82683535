"""Message models exchanged with channel adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from parley.core.types import InputType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    chat_id: str
    user_id: str
    text: str
    user_display_name: str = ""
    input_type: InputType = InputType.TEXT
    timestamp: datetime = field(default_factory=_utcnow)
    reply_to_message_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    chat_id: str
    text: str
    parse_mode: Optional[str] = None  # "markdown", "html", None
    reply_to_message_id: Optional[str] = None
