"""Abstract channel adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from parley.channels.models import IncomingMessage, OutgoingMessage

MessageCallback = Callable[[IncomingMessage], Awaitable[None]]


class ChannelAdapter(ABC):
    """Transport for a background bot channel.

    No transport ships with parley; hosts subclass this for their messenger
    and hand the adapter to the app.
    """

    def __init__(self, channel_id: str, config: dict[str, Any] | None = None):
        self.channel_id = channel_id
        self.config = config or {}
        self._message_callback: MessageCallback | None = None

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and begin receiving messages."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Gracefully disconnect."""
        ...

    @abstractmethod
    async def send_message(self, message: OutgoingMessage) -> None:
        """Send a message to a specific chat."""
        ...

    @abstractmethod
    async def send_typing_indicator(self, chat_id: str) -> None:
        """Show typing/processing indicator."""
        ...

    def on_message(self, callback: MessageCallback) -> None:
        """Register the callback invoked for every incoming message."""
        self._message_callback = callback

    async def dispatch(self, message: IncomingMessage) -> None:
        """Hand a received message to the registered callback."""
        if self._message_callback is not None:
            await self._message_callback(message)

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Return platform identifier string."""
        ...
