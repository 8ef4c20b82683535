"""Session manager: selects, creates and archives the shared active session."""

from __future__ import annotations

from typing import Optional

from parley.ai.types import ChatMessage
from parley.config import SessionConfig
from parley.log import get_logger
from parley.storage.models import SessionRecord
from parley.storage.session_repo import SessionRepository

logger = get_logger(__name__)


class SessionManager:
    """One active session at a time, shared by every channel."""

    def __init__(self, repo: SessionRepository, config: Optional[SessionConfig] = None):
        self._repo = repo
        self._config = config or SessionConfig()

    @property
    def repo(self) -> SessionRepository:
        return self._repo

    async def get_active(self) -> Optional[SessionRecord]:
        active_id = await self._repo.get_active_id()
        if active_id is None:
            return None
        record = await self._repo.get(active_id)
        if record is None or record.archived:
            return None
        return record

    async def get_or_create_active(self) -> SessionRecord:
        """Get the active session, creating one when there is none."""
        record = await self.get_active()
        if record is not None:
            return record
        record = SessionRecord.new()
        await self._repo.save(record, silent=True)
        await self._repo.set_active_id(record.id)
        logger.info("session_created", session_id=record.id, name=record.name)
        return record

    async def new_session(self, name: Optional[str] = None) -> SessionRecord:
        """Archive the active session and start a new one."""
        current = await self.get_active()
        if current is not None:
            current.archive()
            await self._repo.save(current)
            logger.info("session_archived", session_id=current.id)

        record = SessionRecord.new(name)
        await self._repo.save(record)
        await self._repo.set_active_id(record.id)
        logger.info("session_created", session_id=record.id, name=record.name)
        return record

    async def switch(self, query: str) -> Optional[SessionRecord]:
        """Make the session whose name matches *query* active (exact, then substring)."""
        query = query.lower()
        sessions = await self._repo.list_sessions()
        match = next((s for s in sessions if s.name.lower() == query), None) or next(
            (s for s in sessions if query in s.name.lower()), None
        )
        if match is None:
            return None
        match.touch()
        await self._repo.save(match)
        await self._repo.set_active_id(match.id)
        logger.info("session_switched", session_id=match.id)
        return match

    async def append(self, record: SessionRecord, message: ChatMessage, silent: bool = False) -> SessionRecord:
        """Append *message* to the stored session and trim it.

        Returns the stored record, which also holds whatever other channels
        appended meanwhile. *record* is refreshed to match.
        """
        stored = await self._repo.append_message(
            record.id, message, keep=self._config.max_messages, silent=silent
        )
        if stored is None:
            # Deleted under us: persist the caller's copy instead.
            record.messages.append(message)
            self.trim(record)
            record.touch()
            await self._repo.save(record, silent=silent)
            return record

        record.messages = stored.messages
        record.last_used_at = stored.last_used_at
        record.conversation_id = stored.conversation_id
        return stored

    def trim(self, record: SessionRecord) -> None:
        """Keep only the most recent ``max_messages`` messages."""
        excess = len(record.messages) - self._config.max_messages
        if excess > 0:
            del record.messages[:excess]

    def build_transcript(self, record: SessionRecord) -> str:
        """Recent history as plain text, for providers that keep no conversation.

        The last message is the prompt being sent and is left out.
        """
        if len(record.messages) <= 1 or self._config.context_messages == 0:
            return ""
        recent = record.messages[-(self._config.context_messages + 1):-1]
        lines = [f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}" for m in recent]
        return "Previous conversation:\n" + "\n".join(lines)
