"""Keep a shared session record bound to the stateful provider's conversation."""

from __future__ import annotations

import asyncio
from typing import Optional

from parley.ai.providers.claude_code import ConversationInfo
from parley.ai.providers.cli import CliProviderSession
from parley.ai.types import ChatMessage
from parley.log import get_logger
from parley.storage.models import SessionRecord
from parley.storage.session_repo import SessionRepository

logger = get_logger(__name__)


class ConversationReconciler:
    """Binds local session ids to remote conversation ids.

    Several channels drive one provider session. Before each send the record's
    bound conversation must be the provider's active one. Binding changes made
    here are saved silently so listeners do not react mid-send, and a
    per-session lock keeps concurrent callers from creating two conversations.
    The binding is last-writer-wins.
    """

    def __init__(self, provider: CliProviderSession, repo: SessionRepository):
        self._provider = provider
        self._repo = repo
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def reconcile(self, record: SessionRecord, history: Optional[list[ChatMessage]] = None) -> str:
        """Make *record*'s conversation active on the provider. Returns its id.

        *history* is what a resumed conversation restores locally; it defaults
        to the record's messages. Callers that already stored the prompt they
        are about to send pass the messages before it.
        """
        async with self.lock_for(record.id):
            if not record.conversation_id:
                # Another channel may have bound it since this copy was loaded.
                stored = await self._repo.get(record.id)
                if stored is not None and stored.conversation_id:
                    record.conversation_id = stored.conversation_id

            if not record.conversation_id:
                conversation_id = await self._provider.create_conversation()
                await self._bind(record, conversation_id)
                logger.info("conversation_bound_new", session_id=record.id, conversation_id=conversation_id)
                return conversation_id

            if self._provider.conversation_id == record.conversation_id:
                return record.conversation_id

            logger.info(
                "conversation_mismatch",
                session_id=record.id,
                active=self._provider.conversation_id,
                expected=record.conversation_id,
            )
            active = await self._provider.load_conversation(
                record.conversation_id, list(record.messages if history is None else history)
            )
            if active != record.conversation_id:
                logger.warning(
                    "conversation_rebound",
                    session_id=record.id,
                    old=record.conversation_id,
                    new=active,
                )
                await self._bind(record, active)
            return active

    async def sync(self, record: SessionRecord) -> None:
        """Pick up a conversation the provider replaced during a send (idle recreation)."""
        active = self._provider.conversation_id
        if active is None or active == record.conversation_id:
            return
        async with self.lock_for(record.id):
            logger.info("conversation_synced", session_id=record.id, conversation_id=active)
            await self._bind(record, active)

    async def join(self, record: SessionRecord, query: str) -> Optional[ConversationInfo]:
        """Bind *record* to an existing conversation by id prefix or linked session name."""
        conversations = await self._provider.list_conversations()
        query = query.lower()
        match = next((c for c in conversations if c.conversation_id.lower().startswith(query)), None)

        if match is None:
            for session in await self._repo.list_sessions(include_archived=True):
                if session.conversation_id and query in session.name.lower():
                    match = next((c for c in conversations if c.conversation_id == session.conversation_id), None)
                    if match is not None:
                        break

        if match is None:
            return None

        async with self.lock_for(record.id):
            record.conversation_id = match.conversation_id
            await self._repo.set_conversation_id(record.id, match.conversation_id)
        logger.info("conversation_joined", session_id=record.id, conversation_id=match.conversation_id)
        return match

    async def leave(self, record: SessionRecord) -> Optional[str]:
        """Detach *record*; the next send creates a fresh conversation. Returns the old id."""
        async with self.lock_for(record.id):
            old = record.conversation_id
            if old is None:
                return None
            record.conversation_id = None
            await self._repo.set_conversation_id(record.id, None)
        logger.info("conversation_left", session_id=record.id, conversation_id=old)
        return old

    async def _bind(self, record: SessionRecord, conversation_id: str) -> None:
        record.conversation_id = conversation_id
        await self._repo.set_conversation_id(record.id, conversation_id, silent=True)
