"""Stateful provider session backed by the Claude Code CLI."""

from __future__ import annotations

import contextlib
import json
import re
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from parley.ai.assembler import CompleteCallback, DeltaCallback, StreamAssembler
from parley.ai.idle import IdleTimeoutMonitor
from parley.ai.providers.base import ProviderSession
from parley.ai.providers.claude_code import (
    TOOL_RESULT_PREFIX,
    ClaudeCodeBackend,
    ClaudeConversation,
    ConversationInfo,
)
from parley.ai.streaming import watch_stream
from parley.ai.tool_runner import run_tool_loop
from parley.ai.tools.base import Tool
from parley.ai.types import (
    ChatMessage,
    ContentDelta,
    MessageEvent,
    ModelTurn,
    StreamEvent,
    ToolCallDelta,
    TurnComplete,
)
from parley.config import CliProviderConfig
from parley.errors import ConversationNotFoundError
from parley.log import get_logger

logger = get_logger(__name__)

TOOL_CALL_OPEN = "<tool_call>"
TOOL_CALL_CLOSE = "</tool_call>"
TOOL_CALL_PATTERN = re.compile(
    r"<tool_call>\s*(\{.*?\})\s*</tool_call>",
    re.DOTALL,
)


def build_tool_prompt(tools: list[Tool]) -> str:
    """Build a system prompt section that describes available tools for Claude Code CLI."""
    if not tools:
        return ""

    lines = [
        "\n\n--- Available Tools ---",
        "You have access to the following tools. To use a tool, output EXACTLY this format:",
        TOOL_CALL_OPEN,
        '{"tool": "tool_name", "input": {"param1": "value1"}}',
        TOOL_CALL_CLOSE,
        "",
        "You can use multiple tool calls in one response. Wait for tool results before continuing.",
        "When you have the final answer, respond with plain text WITHOUT any <tool_call> tags.",
        "",
        "Tools:",
    ]
    for tool in tools:
        schema = tool.input_schema
        props = schema.get("properties", {})
        param_desc = ", ".join(f'{k}: {v.get("description", "")}' for k, v in props.items())
        lines.append(f"\n### {tool.name}")
        lines.append(f"Description: {tool.description}")
        lines.append(f"Parameters: {param_desc}")
        required = schema.get("required", [])
        if required:
            lines.append(f"Required: {', '.join(required)}")

    return "\n".join(lines)


def split_tool_calls(text: str) -> tuple[str, list[tuple[str, dict[str, Any]]]]:
    """Separate ``<tool_call>`` blocks from visible text."""
    calls: list[tuple[str, dict[str, Any]]] = []
    for match in TOOL_CALL_PATTERN.finditer(text):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            logger.warning("tool_call_parse_error", raw=match.group(1)[:200])
            continue
        name = data.get("tool") if isinstance(data, dict) else None
        if not isinstance(name, str) or not name:
            logger.warning("tool_call_missing_name", raw=match.group(1)[:200])
            continue
        args = data.get("input")
        calls.append((name, args if isinstance(args, dict) else {}))
    return TOOL_CALL_PATTERN.sub("", text).strip(), calls


def render_tool_results(messages: list[dict[str, Any]]) -> str:
    """Render the trailing tool-result messages as the next CLI prompt."""
    parts: list[str] = []
    for message in reversed(messages):
        if message.get("role") != "tool":
            break
        parts.append(f"{TOOL_RESULT_PREFIX} {message['name']}]\n{message['content']}")
    return "\n\n".join(reversed(parts))


def _partial_suffix(text: str, tag: str) -> int:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ToolTagFilter:
    """Hides ``<tool_call>`` blocks from streamed text deltas.

    Text that might be the start of a tag is held back until the next delta
    decides it.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._inside = False

    def feed(self, text: str) -> str:
        self._pending += text
        visible: list[str] = []
        while self._pending:
            if self._inside:
                end = self._pending.find(TOOL_CALL_CLOSE)
                if end == -1:
                    self._pending = self._pending[-(len(TOOL_CALL_CLOSE) - 1):]
                    break
                self._pending = self._pending[end + len(TOOL_CALL_CLOSE):]
                self._inside = False
            else:
                start = self._pending.find(TOOL_CALL_OPEN)
                if start == -1:
                    hold = _partial_suffix(self._pending, TOOL_CALL_OPEN)
                    cut = len(self._pending) - hold
                    visible.append(self._pending[:cut])
                    self._pending = self._pending[cut:]
                    break
                visible.append(self._pending[:start])
                self._pending = self._pending[start + len(TOOL_CALL_OPEN):]
                self._inside = True
        return "".join(visible)

    def flush(self) -> str:
        rest = "" if self._inside else self._pending
        self._pending = ""
        self._inside = False
        return rest


class CliProviderSession(ProviderSession):
    """Provider whose backend keeps the conversation.

    Only new input crosses the process boundary: the prompt on the first
    round, rendered tool results afterwards. The local history mirrors what
    the user saw and survives recreation of an expired conversation.
    """

    def __init__(
        self,
        config: CliProviderConfig,
        tools: Iterable[Tool] = (),
        backend: Optional[ClaudeCodeBackend] = None,
        monitor: Optional[IdleTimeoutMonitor] = None,
    ):
        super().__init__(config, tools)
        self._backend = backend or ClaudeCodeBackend(config)
        self.monitor = monitor or IdleTimeoutMonitor(config.stale_threshold, config.idle_timeout)
        self._conversation: Optional[ClaudeConversation] = None

    @property
    def backend(self) -> ClaudeCodeBackend:
        return self._backend

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation.conversation_id if self._conversation else None

    def set_reconnect_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self.monitor.set_reconnect_callback(callback)

    def update_config(self, **changes: Any) -> None:
        super().update_config(**changes)
        self._backend.config = self._config

    # -- lifecycle ---------------------------------------------------------

    async def _initialize(self) -> None:
        await self._backend.start()

    async def _release(self) -> None:
        await self._drop_conversation()
        await self._backend.stop()

    async def _drop_conversation(self) -> None:
        if self._conversation is not None:
            conversation, self._conversation = self._conversation, None
            await conversation.abort()

    async def _abort_backend(self) -> None:
        if self._conversation is not None:
            await self._conversation.abort()

    async def _push_context(self) -> Any:
        detached, self._conversation = self._conversation, None
        return detached

    async def _pop_context(self, state: Any) -> None:
        await self._drop_conversation()
        self._conversation = state

    # -- conversations -----------------------------------------------------

    async def create_conversation(self, conversation_id: Optional[str] = None) -> str:
        """Replace the active conversation with a fresh one. Clears local history."""
        await self.initialize()
        await self._drop_conversation()
        self._conversation = await self._backend.create_conversation(conversation_id)
        self._history = []
        self.monitor.touch()
        return self._conversation.conversation_id

    async def resume_conversation(self, conversation_id: str, messages: Optional[list[ChatMessage]] = None) -> str:
        """Make *conversation_id* active. Raises ``ConversationNotFoundError``."""
        await self.initialize()
        conversation = await self._backend.resume_conversation(conversation_id)
        await self._drop_conversation()
        self._conversation = conversation
        if messages is not None:
            self._history = list(messages)
        else:
            self._history = self._backend.get_messages(conversation_id)
        self.monitor.touch()
        logger.info("conversation_loaded", conversation_id=conversation_id, messages=len(self._history))
        return conversation_id

    async def load_conversation(self, conversation_id: str, messages: Optional[list[ChatMessage]] = None) -> str:
        """Resume *conversation_id*, or start fresh with *messages* when it is gone.

        Returns the id of the conversation that ended up active.
        """
        try:
            return await self.resume_conversation(conversation_id, messages)
        except ConversationNotFoundError:
            logger.warning("conversation_resume_failed", conversation_id=conversation_id)
        # The old id may be local-only and never known to the CLI, so do not reuse it.
        new_id = await self.create_conversation()
        if messages:
            self._history = list(messages)
        return new_id

    async def list_conversations(self) -> list[ConversationInfo]:
        await self.initialize()
        return await self._backend.list_conversations()

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.initialize()
        await self._backend.delete_conversation(conversation_id)
        if self.conversation_id == conversation_id:
            self._conversation = None
            self._history = []

    async def list_models(self) -> list[str]:
        return await self._backend.list_models()

    # -- requests ----------------------------------------------------------

    def _full_system_prompt(self) -> str:
        return self._system_prompt + build_tool_prompt(self._registry.all_tools())

    async def _events(self, conversation: ClaudeConversation, prompt: str) -> AsyncIterator[StreamEvent]:
        tag_filter = ToolTagFilter()
        index = 0
        turn = conversation.send(prompt, system_prompt=self._full_system_prompt(), model=self._config.model)
        async with contextlib.aclosing(turn) as events:
            async for event in events:
                match event:
                    case ContentDelta(text=text):
                        visible = tag_filter.feed(text)
                        if visible:
                            yield ContentDelta(visible)
                    case MessageEvent(content=content):
                        clean, calls = split_tool_calls(content)
                        deltas = []
                        for name, args in calls:
                            deltas.append(
                                ToolCallDelta(index=index, id=f"call_{index}", name=name, arguments=json.dumps(args))
                            )
                            index += 1
                        yield MessageEvent(clean, tuple(deltas))
                    case TurnComplete():
                        rest = tag_filter.flush()
                        if rest:
                            yield ContentDelta(rest)
                        yield event
                    case _:
                        yield event

    async def _prepare(self) -> ClaudeConversation:
        await self.monitor.ensure_alive(self)
        if self._conversation is None:
            await self.initialize()
            self._conversation = await self._backend.create_conversation()
        self.monitor.touch()
        return self._conversation

    async def _run_turns(self, prompt: str, assembler: StreamAssembler, timeout: float, streaming: bool) -> ModelTurn:
        conversation = await self._prepare()
        abort_event = self.abort_event

        async def invoke(messages: list[dict[str, Any]]) -> ModelTurn:
            turn_prompt = prompt if len(messages) == 1 else render_tool_results(messages)
            turn: Optional[ModelTurn] = None
            events = watch_stream(
                self._events(conversation, turn_prompt),
                timeout,
                abort_event,
                on_event=lambda _: self.monitor.touch(),
                streaming=streaming,
            )
            async with contextlib.aclosing(events):
                async for event in events:
                    turn = assembler.feed(event) or turn
            if turn is None or abort_event.is_set():
                return ModelTurn(content=assembler.content)
            return turn

        try:
            return await run_tool_loop(
                invoke,
                self._registry,
                [{"role": "user", "content": prompt}],
                max_rounds=self._config.max_tool_rounds,
                cancel_event=abort_event,
            )
        finally:
            await conversation.abort()

    async def _send(self, prompt: str) -> str:
        self._append("user", prompt)
        turn = await self._run_turns(prompt, StreamAssembler(), self._config.request_timeout, streaming=False)
        self._append("assistant", turn.content)
        return turn.content

    async def _send_streaming(
        self,
        prompt: str,
        on_delta: DeltaCallback,
        on_complete: Optional[CompleteCallback],
        timeout: float,
    ) -> str:
        self._append("user", prompt)
        assembler = StreamAssembler(on_delta, on_complete)
        turn = await self._run_turns(prompt, assembler, timeout, streaming=True)

        if self.abort_event.is_set():
            content = assembler.abort()
            logger.info("stream_aborted", partial_length=len(content))
        elif turn.truncated:
            content = assembler.abort(turn.content)
        else:
            content = turn.content

        self._append("assistant", content)
        return content
