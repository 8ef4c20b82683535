"""Stateless chat-completions providers built on the openai SDK."""

from __future__ import annotations

import contextlib
import os
from abc import abstractmethod
from typing import Any, AsyncIterator, Iterable, Optional

import openai
from openai import AsyncOpenAI

from parley.ai.assembler import CompleteCallback, DeltaCallback, StreamAssembler, parse_tool_arguments
from parley.ai.providers.base import ProviderSession
from parley.ai.streaming import race_abort, watch_stream
from parley.ai.tool_runner import run_tool_loop
from parley.ai.tools.base import Tool
from parley.ai.types import ContentDelta, ModelTurn, StreamEvent, ToolCall, ToolCallDelta, TurnComplete
from parley.config import OpenAIProviderConfig
from parley.errors import InitializationError, ProviderError, RequestTimeoutError
from parley.log import get_logger

logger = get_logger(__name__)

_CHAT_MODEL_PREFIXES = ("gpt-4", "gpt-3.5", "gpt-5", "o1", "o3")
_EXCLUDED_MODEL_MARKERS = ("codex", "realtime", "audio")


def is_chat_model(model_id: str) -> bool:
    """Chat-completion models with tool support; voice and codex models excluded."""
    lowered = model_id.lower()
    if any(marker in lowered for marker in _EXCLUDED_MODEL_MARKERS):
        return False
    return lowered.startswith(_CHAT_MODEL_PREFIXES)


async def chunk_events(stream: AsyncIterator[Any]) -> AsyncIterator[StreamEvent]:
    """Translate chat-completion chunks into stream events.

    Ends with a single ``TurnComplete`` once the HTTP stream is exhausted.
    """
    async for chunk in stream:
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta
        if delta.content:
            yield ContentDelta(delta.content)
        for tc in delta.tool_calls or ():
            function = tc.function
            yield ToolCallDelta(
                index=tc.index,
                id=tc.id,
                name=function.name if function else None,
                arguments=function.arguments if function else None,
            )
    yield TurnComplete()


class ChatCompletionsSession(ProviderSession):
    """Shared implementation for OpenAI-compatible endpoints.

    The backend keeps no conversation: every request replays the system prompt
    and the full local history.
    """

    def __init__(self, config: Any, tools: Iterable[Tool] = ()):
        super().__init__(config, tools)
        self._client: Optional[AsyncOpenAI] = None

    @abstractmethod
    def _create_client(self) -> AsyncOpenAI: ...

    @property
    def _model_name(self) -> str:
        return self._config.model

    async def _initialize(self) -> None:
        self._client = self._create_client()

    async def _release(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.close()

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            raise InitializationError("Client is not initialized")
        return self._client

    def _build_messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.extend({"role": m.role, "content": m.content} for m in self._history)
        return messages

    def _request_params(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        params: dict[str, Any] = {"model": self._model_name, "messages": messages}
        tools = [tool.to_openai_dict() for tool in self._registry.all_tools()]
        if tools:
            params["tools"] = tools
        if self._config.max_tokens is not None:
            params["max_tokens"] = self._config.max_tokens
        if self._config.temperature is not None:
            params["temperature"] = self._config.temperature
        return params

    async def _complete(self, messages: list[dict[str, Any]]) -> ModelTurn:
        response = await race_abort(
            self.client.chat.completions.create(**self._request_params(messages)),
            self.abort_event,
        )
        if response is None:
            return ModelTurn()

        message = response.choices[0].message
        calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=parse_tool_arguments(tc.function.arguments),
                raw_arguments=tc.function.arguments or "",
            )
            for tc in message.tool_calls or ()
        ]
        if response.usage:
            logger.debug(
                "api_response",
                model=self._model_name,
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
                tool_calls=len(calls),
            )
        return ModelTurn(content=message.content or "", tool_calls=calls)

    async def _send(self, prompt: str) -> str:
        self._append("user", prompt)
        messages = self._build_messages()
        try:
            turn = await run_tool_loop(
                self._complete,
                self._registry,
                messages,
                max_rounds=self._config.max_tool_rounds,
                cancel_event=self.abort_event,
            )
        except openai.APITimeoutError as e:
            raise RequestTimeoutError(self._config.request_timeout) from e
        except openai.APIError as e:
            logger.error("api_error", provider=self.provider_type.value, error=str(e))
            raise ProviderError(f"{self.provider_type.value} API error: {e}") from e

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
        messages = self._build_messages()
        abort_event = self.abort_event
        assembler = StreamAssembler(on_delta, on_complete)

        async def invoke(msgs: list[dict[str, Any]]) -> ModelTurn:
            params = self._request_params(msgs)
            stream = await race_abort(self.client.chat.completions.create(stream=True, **params), abort_event)
            if stream is None:
                return ModelTurn(content=assembler.content)
            turn: Optional[ModelTurn] = None
            events = watch_stream(chunk_events(stream), timeout, abort_event)
            try:
                async with contextlib.aclosing(events):
                    async for event in events:
                        turn = assembler.feed(event) or turn
            finally:
                await stream.close()
            if turn is None or abort_event.is_set():
                return ModelTurn(content=assembler.content)
            return turn

        try:
            turn = await run_tool_loop(
                invoke,
                self._registry,
                messages,
                max_rounds=self._config.max_tool_rounds,
                cancel_event=abort_event,
            )
        except RequestTimeoutError:
            logger.warning("stream_timeout", provider=self.provider_type.value, timeout=timeout)
            raise
        except openai.APITimeoutError as e:
            raise RequestTimeoutError(timeout, streaming=True) from e
        except openai.APIError as e:
            logger.error("api_error", provider=self.provider_type.value, error=str(e))
            raise ProviderError(f"{self.provider_type.value} API error: {e}") from e

        if abort_event.is_set():
            content = assembler.abort()
            logger.info("stream_aborted", partial_length=len(content))
        elif turn.truncated:
            content = assembler.abort(turn.content)
        else:
            content = turn.content

        self._append("assistant", content)
        return content

    async def test_connection(self) -> tuple[bool, Optional[str]]:
        """Make a lightweight request. Returns ``(ok, error_message)``."""
        try:
            await self.initialize()
            await self._probe()
        except Exception as e:
            logger.warning("connection_test_failed", provider=self.provider_type.value, error=str(e))
            return False, str(e)
        return True, None

    async def _probe(self) -> None:
        await self.client.models.list()

    @abstractmethod
    async def list_models(self) -> list[str]: ...


class OpenAIProviderSession(ChatCompletionsSession):
    def __init__(self, config: OpenAIProviderConfig, tools: Iterable[Tool] = ()):
        super().__init__(config, tools)

    def _create_client(self) -> AsyncOpenAI:
        api_key = self._config.api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise InitializationError(
                "OpenAI API key not configured. Set provider.api_key or the OPENAI_API_KEY environment variable."
            )
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self._config.base_url,
            organization=self._config.organization,
            timeout=self._config.request_timeout,
        )

    async def list_models(self) -> list[str]:
        """Chat-capable model ids, sorted. Empty when the listing fails."""
        await self.initialize()
        try:
            page = await self.client.models.list()
        except openai.APIError as e:
            logger.error("list_models_failed", error=str(e))
            return []
        return sorted(m.id for m in page.data if is_chat_model(m.id))
