"""Background bot channel: commands and messages against the shared active session."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Optional

from parley.ai.providers.base import ProviderSession
from parley.ai.providers.cli import CliProviderSession
from parley.ai.types import ChatMessage
from parley.channels.base import ChannelAdapter
from parley.channels.models import IncomingMessage, OutgoingMessage
from parley.config import BotChannelConfig
from parley.core.reconciler import ConversationReconciler
from parley.core.session import SessionManager
from parley.core.types import ChannelSource, InputType
from parley.errors import ParleyError
from parley.log import get_logger
from parley.storage.models import SessionRecord

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 4000
TYPING_INTERVAL = 4.0

HELP_TEXT = "\n".join(
    [
        "Commands:",
        "/new [name] - Start a new session (archives the current one)",
        "/conv - List CLI conversations",
        "/join <id|name> - Attach the session to a conversation",
        "/leave - Detach the session from its conversation",
        "/status - Connection & config status",
        "/help - This message",
    ]
)


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split a message into chunks that fit within platform limits."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_length:
            chunks.append(text)
            break
        # Try to split at a newline
        split_pos = text.rfind("\n", 0, max_length)
        if split_pos == -1:
            split_pos = max_length
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks


def _time_ago(moment: datetime) -> str:
    seconds = int((datetime.now(timezone.utc) - moment).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


class BotChannelHandler:
    """Handles the full flow: message -> active session -> provider -> reply.

    With the stateful CLI provider the conversation is shared with the
    interactive channel and kept in sync through the reconciler. Stateless
    providers get a dedicated session and the recent transcript replayed in
    every prompt.
    """

    def __init__(
        self,
        adapter: ChannelAdapter,
        provider: ProviderSession,
        session_manager: SessionManager,
        config: BotChannelConfig,
        reconciler: Optional[ConversationReconciler] = None,
    ):
        self._adapter = adapter
        self._provider = provider
        self._session_manager = session_manager
        self._config = config
        if reconciler is None and isinstance(provider, CliProviderSession):
            reconciler = ConversationReconciler(provider, session_manager.repo)
        self._reconciler = reconciler

    async def handle(self, message: IncomingMessage) -> None:
        """Process an incoming message end-to-end."""
        text = message.text.strip()
        if not text:
            return

        if text.startswith("/") and await self._handle_command(message.chat_id, text):
            return

        await self.process_text(message.chat_id, text, message.input_type)

    async def _reply(self, chat_id: str, text: str) -> None:
        for chunk in split_message(text):
            await self._adapter.send_message(OutgoingMessage(chat_id=chat_id, text=chunk))

    # -- commands ------------------------------------------------------------

    async def _handle_command(self, chat_id: str, text: str) -> bool:
        command, _, args = text.partition(" ")
        args = args.strip()
        match command.lower():
            case "/new":
                reply = await self._cmd_new(args)
            case "/leave":
                reply = await self._cmd_leave()
            case "/join":
                reply = await self._cmd_join(args)
            case "/conv":
                reply = await self._cmd_conversations()
            case "/status":
                reply = await self._status_message()
            case "/help" | "/start":
                reply = HELP_TEXT
            case _:
                return False
        await self._reply(chat_id, reply)
        return True

    async def _cmd_new(self, name: str) -> str:
        record = await self._session_manager.new_session(name or None)
        if self._reconciler is None:
            self._provider.clear_history()
        return f"New session: {record.name}\n\nPrevious session archived."

    async def _cmd_leave(self) -> str:
        record = await self._session_manager.get_active()
        if record is None:
            return "No active session."
        if self._reconciler is None:
            return "Conversations are only available with the CLI provider."
        old = await self._reconciler.leave(record)
        if old is None:
            return "This session isn't linked to a conversation."
        return (
            f"Detached from conversation {old[:12]}...\n\n"
            f"Session {record.name} will start a new conversation on the next message."
        )

    async def _cmd_join(self, query: str) -> str:
        if not query:
            return "Usage: /join <conversation-id or session-name>\n\nUse /conv to see available conversations."
        if self._reconciler is None:
            return "/join is only available with the CLI provider."
        record = await self._session_manager.get_active()
        if record is None:
            return "No active session. Send a message first or use /new."
        try:
            match = await self._reconciler.join(record, query)
        except ParleyError as e:
            logger.error("conversation_join_failed", error=str(e))
            return f"Failed to join conversation: {e}"
        if match is None:
            return f'No conversation matching "{query}".\n\nUse /conv to see available conversations.'
        summary = f"\nSummary: {match.summary[:80]}" if match.summary else ""
        return (
            f"Joined conversation {match.conversation_id[:12]}...{summary}\n\n"
            f"Session {record.name} is now linked to this conversation."
        )

    async def _cmd_conversations(self) -> str:
        if not isinstance(self._provider, CliProviderSession):
            return "Conversations are only available with the CLI provider."
        conversations = await self._provider.list_conversations()
        if not conversations:
            return "No conversations found.\n\nStart chatting to create one."

        linked = {
            s.conversation_id: s.name
            for s in await self._session_manager.repo.list_sessions(include_archived=True)
            if s.conversation_id
        }
        lines = []
        for info in conversations[:10]:
            summary = f": {info.summary[:40]}" if info.summary else ""
            link = f" -> {linked[info.conversation_id]}" if info.conversation_id in linked else ""
            lines.append(f"- {info.conversation_id[:12]}{summary} ({_time_ago(info.modified_time)}){link}")
        return "Conversations:\n\n" + "\n".join(lines) + "\n\nUse /join <id> to attach your current session to one."

    async def _status_message(self) -> str:
        record = await self._session_manager.get_active()
        conversation = record.conversation_id if record else None
        lines = [
            "Status:",
            "",
            f"Platform: {self._adapter.platform_name}",
            f"Provider: {self._provider.provider_type.value} ({self._provider.state.value})",
            f"Model: {self._provider.model}",
            f"Tools Loaded: {len(self._provider.tools)}",
            f"Current Session: {record.name if record else 'None (send a message to start)'}"
            f" ({len(record.messages) if record else 0} msgs)",
            f"Conversation: {conversation[:16] + '...' if conversation else '(none, new on next message)'}",
            f"Save Conversations: {'Yes' if self._config.save_conversations else 'No'}",
        ]
        return "\n".join(lines)

    # -- messages ------------------------------------------------------------

    async def _keep_typing(self, chat_id: str) -> None:
        while True:
            await asyncio.sleep(TYPING_INTERVAL)
            try:
                await self._adapter.send_typing_indicator(chat_id)
            except Exception as e:
                logger.debug("typing_indicator_failed", error=str(e))

    async def _append(self, record: SessionRecord, message: ChatMessage, silent: bool = False) -> SessionRecord:
        if not self._config.save_conversations:
            record.messages.append(message)
            self._session_manager.trim(record)
            return record
        return await self._session_manager.append(record, message, silent=silent)

    async def _build_prompt(self, record: SessionRecord, text: str) -> str:
        context = self._config.formatting_context
        if self._reconciler is not None:
            await self._reconciler.reconcile(record, record.messages[:-1])
            return f"{context}\n\n{text}" if context else text

        # Stateless provider: it starts fresh each call, so replay recent history.
        self._provider.clear_history()
        transcript = self._session_manager.build_transcript(record)
        parts = [p for p in (context, transcript, f"User: {text}" if transcript else text) if p]
        return "\n\n".join(parts)

    async def process_text(
        self, chat_id: str, text: str, input_type: InputType = InputType.TEXT
    ) -> Optional[str]:
        """Send *text* through the active session and reply. Returns the response."""
        await self._adapter.send_typing_indicator(chat_id)

        record = await self._session_manager.get_or_create_active()
        # Silent: the conversation binding is about to be synchronized.
        record = await self._append(
            record,
            ChatMessage(role="user", content=text, source=ChannelSource.BOT, input_type=input_type),
            silent=True,
        )

        typing = asyncio.create_task(self._keep_typing(chat_id))
        try:
            prompt = await self._build_prompt(record, text)
            response = await self._provider.send_message(prompt)
        except Exception as e:
            logger.error("ai_error", chat_id=chat_id, error=str(e))
            await self._reply(chat_id, f"An error occurred: {e}")
            return None
        finally:
            typing.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await typing

        if self._reconciler is not None:
            await self._reconciler.sync(record)

        if not response.strip():
            logger.warning("ai_empty_response", chat_id=chat_id)
            await self._reply(chat_id, "The AI returned an empty response. Please try again.")
            return None

        await self._append(record, ChatMessage(role="assistant", content=response, source=ChannelSource.BOT))

        await self._reply(chat_id, response)
        return response
