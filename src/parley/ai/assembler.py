"""Assemble streamed content and tool-call fragments into model turns."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

from parley.ai.types import (
    ActivityEvent,
    ContentDelta,
    ErrorEvent,
    MessageEvent,
    ModelTurn,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    TurnComplete,
)
from parley.errors import ProviderError
from parley.log import get_logger

logger = get_logger(__name__)

DeltaCallback = Callable[[str], None]
CompleteCallback = Callable[[str], None]


@dataclass
class ToolCallAccumulator:
    """In-flight tool call. id and name are set once; arguments concatenate."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""

    def merge(self, delta: ToolCallDelta) -> None:
        if delta.id and not self.id:
            self.id = delta.id
        if delta.name and not self.name:
            self.name = delta.name
        if delta.arguments:
            self.arguments += delta.arguments

    @property
    def is_empty(self) -> bool:
        return not (self.id or self.name or self.arguments)


def parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    """Parse a JSON argument string. Anything malformed becomes an empty dict."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("tool_arguments_malformed", raw=raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def finalize_tool_calls(accumulators: list[ToolCallAccumulator]) -> list[ToolCall]:
    """Turn accumulators into tool calls with ids unique within the turn."""
    calls: list[ToolCall] = []
    seen: set[str] = set()
    for acc in accumulators:
        call_id = acc.id or f"call_{acc.index}"
        if call_id in seen:
            suffix = 1
            while f"{call_id}_{suffix}" in seen:
                suffix += 1
            call_id = f"{call_id}_{suffix}"
        seen.add(call_id)
        calls.append(
            ToolCall(
                id=call_id,
                name=acc.name,
                arguments=parse_tool_arguments(acc.arguments),
                raw_arguments=acc.arguments,
            )
        )
    return calls


class StreamAssembler:
    """Pure accumulator over an ordered stream of events.

    One assembler covers a whole streaming request, including every tool
    round: the content buffer keeps growing across rounds while tool-call
    accumulators are reset each time a round hands its calls out.

    ``on_complete`` is called at most once per distinct content value, both
    for intermediate consolidated messages and for the final result.
    """

    def __init__(
        self,
        on_delta: Optional[DeltaCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ):
        self._on_delta = on_delta
        self._on_complete = on_complete
        self._buffer = ""
        self._resolved = ""
        self._last_rendered = ""
        self._rendered = False
        self._tool_calls: dict[int, ToolCallAccumulator] = {}
        self._result: Optional[ModelTurn] = None

    @property
    def content(self) -> str:
        """Best content known so far."""
        return self._resolved or self._buffer

    @property
    def result(self) -> Optional[ModelTurn]:
        """The turn produced by the last ``TurnComplete``, if any."""
        return self._result

    def feed(self, event: StreamEvent) -> Optional[ModelTurn]:
        """Consume one event. Returns a turn when the event completes one."""
        match event:
            case ContentDelta(text=text):
                if text:
                    self._buffer += text
                    self._resolved = self._buffer
                    if self._on_delta:
                        self._on_delta(text)
            case ToolCallDelta():
                self._merge_tool_call(event)
            case MessageEvent(content=explicit, tool_calls=calls):
                for call in calls:
                    self._merge_tool_call(call)
                if len(explicit) >= len(self._buffer):
                    self._resolved = explicit
                else:
                    self._resolved = self._buffer
                self._notify(self._resolved)
            case TurnComplete():
                return self._complete_turn()
            case ActivityEvent():
                pass
            case ErrorEvent(message=message):
                raise ProviderError(message or "Session error during streaming")
        return None

    def _merge_tool_call(self, delta: ToolCallDelta) -> None:
        acc = self._tool_calls.get(delta.index)
        if acc is None:
            acc = ToolCallAccumulator(index=delta.index)
            self._tool_calls[delta.index] = acc
        acc.merge(delta)

    def _complete_turn(self) -> ModelTurn:
        pending = [acc for _, acc in sorted(self._tool_calls.items()) if not acc.is_empty]
        self._tool_calls = {}
        if pending:
            turn = ModelTurn(content=self.content, tool_calls=finalize_tool_calls(pending))
        else:
            turn = ModelTurn(content=self.content)
            self._notify(turn.content, final=True)
        self._result = turn
        return turn

    def abort(self, content: Optional[str] = None) -> str:
        """Finish early, reporting *content* or whatever has accumulated."""
        partial = self.content if content is None else content
        self._tool_calls = {}
        self._result = ModelTurn(content=partial)
        self._notify(partial, final=True)
        return partial

    def _notify(self, value: str, final: bool = False) -> None:
        if self._on_complete is None:
            return
        if not value and not final:
            return
        if self._rendered and value == self._last_rendered:
            return
        self._rendered = True
        self._last_rendered = value
        self._on_complete(value)
