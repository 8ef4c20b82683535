"""Provider session contract shared by the CLI and HTTP backends."""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from parley.ai.assembler import CompleteCallback, DeltaCallback
from parley.ai.tools.base import Tool
from parley.ai.tools.registry import ToolRegistry
from parley.ai.types import ChatMessage, Role
from parley.core.types import ChannelSource, InputType, ProviderKind
from parley.errors import ContextDepthError, ParleyError, SessionDestroyedError
from parley.log import get_logger

logger = get_logger(__name__)

# Isolated contexts may nest one level (e.g. a sub-agent asking a sub-agent).
MAX_CONTEXT_DEPTH = 2

ErrorCallback = Callable[[Exception], None]


class SessionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SENDING = "sending"
    STREAMING = "streaming"
    DESTROYED = "destroyed"


@dataclass
class _ContextFrame:
    history: list[ChatMessage]
    system_prompt: str
    backend_state: Any


class ProviderSession(ABC):
    """One conversation with an AI backend.

    Sends on a session are serialized: a second ``send_message`` waits for the
    first to finish. History is only ever appended to or replaced as a whole.
    """

    def __init__(self, config: Any, tools: Iterable[Tool] = ()):
        self._config = config
        self._system_prompt: str = config.system_prompt
        self._registry = ToolRegistry(tools)
        self._history: list[ChatMessage] = []
        self._state = SessionState.UNINITIALIZED
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._abort_event: Optional[asyncio.Event] = None
        self._frames: list[_ContextFrame] = []
        self.source = ChannelSource.INTERACTIVE
        self.input_type: Optional[InputType] = None

    # -- backend hooks -----------------------------------------------------

    @abstractmethod
    async def _initialize(self) -> None:
        """Create clients or processes. Raise ``InitializationError`` on failure."""

    @abstractmethod
    async def _release(self) -> None:
        """Release everything ``_initialize`` acquired."""

    @abstractmethod
    async def _send(self, prompt: str) -> str: ...

    @abstractmethod
    async def _send_streaming(
        self,
        prompt: str,
        on_delta: DeltaCallback,
        on_complete: Optional[CompleteCallback],
        timeout: float,
    ) -> str: ...

    async def _abort_backend(self) -> None:
        """Interrupt the in-flight backend request, if the backend supports it."""

    async def _push_context(self) -> Any:
        """Detach backend conversation state before an isolated run."""
        return None

    async def _pop_context(self, state: Any) -> None:
        """Restore what ``_push_context`` detached."""

    # -- identity ----------------------------------------------------------

    @property
    def provider_type(self) -> ProviderKind:
        return ProviderKind(self._config.provider)

    @property
    def model(self) -> str:
        return self._config.model

    @property
    def config(self) -> Any:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def tools(self) -> ToolRegistry:
        return self._registry

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def context_depth(self) -> int:
        return len(self._frames)

    def is_ready(self) -> bool:
        return self._state in (SessionState.READY, SessionState.SENDING, SessionState.STREAMING)

    # -- lifecycle ---------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the backend. Safe to call again once ready."""
        if self._state == SessionState.DESTROYED:
            raise SessionDestroyedError("Session has been destroyed")
        if self.is_ready():
            return

        self._state = SessionState.INITIALIZING
        try:
            await self._initialize()
        except Exception:
            self._state = SessionState.UNINITIALIZED
            try:
                await self._release()
            except Exception as release_error:
                logger.warning("provider_release_failed", error=str(release_error))
            raise
        self._state = SessionState.READY
        logger.info("provider_initialized", provider=self.provider_type.value, model=self.model)

    async def destroy(self) -> None:
        """Abort anything in flight and release the backend. Terminal."""
        if self._state == SessionState.DESTROYED:
            return
        await self.abort()
        try:
            await self._release()
        finally:
            self._history = []
            self._frames = []
            self._state = SessionState.DESTROYED
            logger.info("provider_destroyed", provider=self.provider_type.value)

    def update_config(self, **changes: Any) -> None:
        """Apply config changes. Takes effect from the next request."""
        self._config = self._config.model_copy(update=changes)
        if "system_prompt" in changes:
            self._system_prompt = changes["system_prompt"]

    def set_system_prompt(self, prompt: str) -> None:
        self._system_prompt = prompt

    def set_tools(self, tools: Iterable[Tool]) -> None:
        self._registry = ToolRegistry(tools)

    # -- history -----------------------------------------------------------

    def get_message_history(self) -> list[ChatMessage]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history = []

    def load_history(self, messages: list[ChatMessage]) -> None:
        self._history = list(messages)

    def _append(self, role: Role, content: str) -> ChatMessage:
        message = ChatMessage(
            role=role,
            content=content,
            source=self.source,
            input_type=self.input_type if role == "user" else None,
        )
        self._history = [*self._history, message]
        return message

    # -- requests ----------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _request(self, state: SessionState) -> AsyncIterator[None]:
        if self._state == SessionState.DESTROYED:
            raise SessionDestroyedError("Session has been destroyed")

        # A tool handler running inside this session's own request (an
        # isolated sub-agent run) already holds the lock.
        if self._owner is not None and self._owner is asyncio.current_task():
            if not self._frames:
                raise ParleyError("Nested send outside an isolated context")
            outer_state, outer_abort = self._state, self._abort_event
            self._state = state
            self._abort_event = asyncio.Event()
            try:
                yield
            finally:
                self._state, self._abort_event = outer_state, outer_abort
            return

        async with self._exclusive():
            self._abort_event = asyncio.Event()
            self._state = state
            try:
                yield
            finally:
                self._abort_event = None
                if self._state != SessionState.DESTROYED:
                    self._state = SessionState.READY

    @contextlib.asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        async with self._lock:
            if self._state == SessionState.DESTROYED:
                raise SessionDestroyedError("Session has been destroyed")
            if not self.is_ready():
                await self.initialize()
            self._owner = asyncio.current_task()
            try:
                yield
            finally:
                self._owner = None

    @property
    def abort_event(self) -> asyncio.Event:
        if self._abort_event is None:
            raise ParleyError("No request in flight")
        return self._abort_event

    async def send_message(self, prompt: str) -> str:
        """Send *prompt* and return the final assistant content."""
        async with self._request(SessionState.SENDING):
            logger.info("send_message", provider=self.provider_type.value, prompt_length=len(prompt))
            return await self._send(prompt)

    async def send_message_streaming(
        self,
        prompt: str,
        on_delta: DeltaCallback,
        on_complete: Optional[CompleteCallback] = None,
        timeout: Optional[float] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> str:
        """Stream a response through *on_delta* and return the final content.

        *timeout* is an inactivity window that restarts on every backend event.
        After ``abort()`` the call returns the partial content instead of raising.
        """
        effective_timeout = timeout if timeout is not None else self._config.request_timeout
        try:
            async with self._request(SessionState.STREAMING):
                logger.info(
                    "send_message_streaming",
                    provider=self.provider_type.value,
                    prompt_length=len(prompt),
                )
                return await self._send_streaming(prompt, on_delta, on_complete, effective_timeout)
        except Exception as e:
            if on_error is not None:
                on_error(e)
            raise

    async def abort(self) -> None:
        """Cancel the in-flight request. A no-op when nothing is in flight."""
        if self._state not in (SessionState.SENDING, SessionState.STREAMING):
            return
        logger.info("provider_abort", provider=self.provider_type.value, state=self._state.value)
        if self._abort_event is not None:
            self._abort_event.set()
        await self._abort_backend()

    # -- isolated contexts -------------------------------------------------

    @contextlib.asynccontextmanager
    async def isolated_context(self) -> AsyncIterator[None]:
        """Run with an empty history and detached backend conversation.

        Everything is restored on exit, whether the body succeeds or fails.
        """
        if len(self._frames) >= MAX_CONTEXT_DEPTH:
            raise ContextDepthError(f"Maximum context depth ({MAX_CONTEXT_DEPTH}) exceeded")

        backend_state = await self._push_context()
        self._frames.append(_ContextFrame(self._history, self._system_prompt, backend_state))
        self._history = []
        logger.debug("context_pushed", depth=len(self._frames))
        try:
            yield
        finally:
            frame = self._frames.pop()
            self._history = frame.history
            self._system_prompt = frame.system_prompt
            await self._pop_context(frame.backend_state)
            logger.debug("context_popped", depth=len(self._frames))

    async def run_isolated(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """Answer *prompt* without touching the current conversation."""
        if self._owner is not None and self._owner is asyncio.current_task():
            return await self._run_isolated(prompt, system_prompt)
        async with self._exclusive():
            return await self._run_isolated(prompt, system_prompt)

    async def _run_isolated(self, prompt: str, system_prompt: Optional[str]) -> str:
        async with self.isolated_context():
            if system_prompt is not None:
                self._system_prompt = system_prompt
            return await self.send_message(prompt)
