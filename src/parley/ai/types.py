"""Message, tool-call and stream event types shared by all providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from parley.core.types import ChannelSource, InputType

Role = Literal["user", "assistant"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """One visible message of a conversation. History is append-only."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=_utcnow)
    source: ChannelSource = ChannelSource.INTERACTIVE
    input_type: Optional[InputType] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
        }
        if self.input_type is not None:
            data["inputType"] = self.input_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        timestamp = data.get("timestamp")
        if isinstance(timestamp, (int, float)):
            # Epoch milliseconds
            parsed = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        elif timestamp:
            parsed = datetime.fromisoformat(str(timestamp))
        else:
            parsed = _utcnow()
        input_type = data.get("inputType")
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            timestamp=parsed,
            source=ChannelSource(data.get("source", ChannelSource.INTERACTIVE)),
            input_type=InputType(input_type) if input_type else None,
        )


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A finalized tool call ready for execution."""

    id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str = ""


@dataclass(slots=True)
class ModelTurn:
    """One model response: assistant text plus any requested tool calls."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    truncated: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ContentDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass(frozen=True, slots=True)
class MessageEvent:
    """A consolidated assistant message re-emitted by the backend."""

    content: str
    tool_calls: tuple[ToolCallDelta, ...] = ()


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    """Backend progress with no content (tool running, reasoning, ...)."""

    kind: str
    detail: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TurnComplete:
    conversation_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str


StreamEvent = Union[ContentDelta, ToolCallDelta, MessageEvent, ActivityEvent, TurnComplete, ErrorEvent]
