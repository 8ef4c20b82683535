"""Detect and repair remote conversations the backend silently expired."""

from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

from parley.ai.types import ChatMessage
from parley.config import BACKEND_IDLE_TIMEOUT, SESSION_STALE_THRESHOLD
from parley.errors import ConfigError, SessionStaleError
from parley.log import get_logger

logger = get_logger(__name__)


class Recreatable(Protocol):
    """A session whose remote conversation can be replaced in place."""

    @property
    def conversation_id(self) -> Optional[str]: ...

    def get_message_history(self) -> list[ChatMessage]: ...

    def load_history(self, messages: list[ChatMessage]) -> None: ...

    async def create_conversation(self, conversation_id: Optional[str] = None) -> str: ...


class IdleTimeoutMonitor:
    """Tracks the last backend activity of a stateful session.

    The backend drops conversations after *hard_timeout* seconds without
    traffic and gives no signal when it does. Recreating at *stale_threshold*,
    which must be strictly smaller, means a request never lands on a
    conversation the backend already forgot.
    """

    def __init__(
        self,
        stale_threshold: float = SESSION_STALE_THRESHOLD,
        hard_timeout: float = BACKEND_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        on_reconnect: Optional[Callable[[], None]] = None,
    ):
        if stale_threshold >= hard_timeout:
            raise ConfigError(
                f"stale_threshold ({stale_threshold}s) must be below hard_timeout ({hard_timeout}s)"
            )
        self.stale_threshold = stale_threshold
        self.hard_timeout = hard_timeout
        self._clock = clock
        self._on_reconnect = on_reconnect
        self.last_activity = clock()
        self.recreations = 0

    def set_reconnect_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_reconnect = callback

    def touch(self) -> None:
        """Record activity: a send, or any event received from the backend."""
        self.last_activity = self._clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self.last_activity

    def is_stale(self) -> bool:
        return self.elapsed >= self.stale_threshold

    async def ensure_alive(self, target: Recreatable) -> bool:
        """Recreate *target*'s remote conversation if it has been idle too long.

        Local history survives the recreation; remote context does not.
        Returns True when a recreation happened.
        """
        if target.conversation_id is None or not self.is_stale():
            return False

        idle_minutes = round(self.elapsed / 60)
        logger.info(
            "session_stale_recreating",
            idle_minutes=idle_minutes,
            threshold_minutes=self.stale_threshold / 60,
            conversation_id=target.conversation_id,
        )

        saved_history = target.get_message_history()
        try:
            await target.create_conversation(target.conversation_id)
        except Exception as e:
            logger.error("session_recreate_failed", error=str(e))
            raise SessionStaleError(f"Failed to recreate idle session: {e}") from e

        target.load_history(saved_history)
        self.touch()
        self.recreations += 1

        if self._on_reconnect is not None:
            self._on_reconnect()
        return True
