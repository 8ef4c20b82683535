"""Session repository: persisted session records shared across channels."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from parley.ai.types import ChatMessage
from parley.core.types import ChannelSource, InputType
from parley.log import get_logger
from parley.storage.database import Database
from parley.storage.models import SessionRecord, from_epoch_ms, to_epoch_ms

logger = get_logger(__name__)

ACTIVE_SESSION_KEY = "active_session_id"

SessionListener = Callable[[SessionRecord], None]


class SessionRepository:
    """CRUD over session records and their messages.

    Listeners are told about every save except silent ones. A silent save
    persists state while a conversation binding is being synchronized, when a
    listener reacting to the change (e.g. by loading the session into the
    shared provider) would race the send in progress.
    """

    def __init__(self, db: Database):
        self._db = db
        self._listeners: list[SessionListener] = []

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register a save listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def save(self, record: SessionRecord, silent: bool = False) -> None:
        """Write the record and replace its stored messages."""
        conn = self._db.conn
        await conn.execute(
            """INSERT INTO sessions
               (id, name, created_at, last_used_at, completed_at, archived, conversation_id)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name = excluded.name,
                   last_used_at = excluded.last_used_at,
                   completed_at = excluded.completed_at,
                   archived = excluded.archived,
                   conversation_id = excluded.conversation_id""",
            (
                record.id,
                record.name,
                to_epoch_ms(record.created_at),
                to_epoch_ms(record.last_used_at),
                to_epoch_ms(record.completed_at) if record.completed_at else None,
                int(record.archived),
                record.conversation_id,
            ),
        )
        await conn.execute("DELETE FROM session_messages WHERE session_id = ?", (record.id,))
        await conn.executemany(
            """INSERT INTO session_messages
               (session_id, position, role, content, timestamp, source, input_type)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    record.id,
                    position,
                    message.role,
                    message.content,
                    message.timestamp.isoformat(),
                    message.source.value,
                    message.input_type.value if message.input_type else None,
                )
                for position, message in enumerate(record.messages)
            ],
        )
        await conn.commit()
        logger.debug("session_saved", session_id=record.id, messages=len(record.messages), silent=silent)

        if not silent:
            self._notify(record)

    def _notify(self, record: SessionRecord) -> None:
        for listener in list(self._listeners):
            listener(record)

    async def append_message(
        self,
        session_id: str,
        message: ChatMessage,
        keep: Optional[int] = None,
        silent: bool = False,
    ) -> Optional[SessionRecord]:
        """Append one message after whatever is stored now. Returns the fresh record.

        Other channels may have appended since the caller loaded its copy, so
        the position is computed in the same statement as the insert. With
        *keep*, older messages beyond that count are dropped.
        """
        conn = self._db.conn
        await conn.execute(
            """INSERT INTO session_messages
               (session_id, position, role, content, timestamp, source, input_type)
               SELECT ?, next_position, ?, ?, ?, ?, ?
               FROM (SELECT COALESCE(MAX(position) + 1, 0) AS next_position
                     FROM session_messages WHERE session_id = ?)
               WHERE EXISTS (SELECT 1 FROM sessions WHERE id = ?)""",
            (
                session_id,
                message.role,
                message.content,
                message.timestamp.isoformat(),
                message.source.value,
                message.input_type.value if message.input_type else None,
                session_id,
                session_id,
            ),
        )
        await conn.execute(
            "UPDATE sessions SET last_used_at = ? WHERE id = ?",
            (to_epoch_ms(message.timestamp), session_id),
        )
        if keep is not None:
            await self._trim(session_id, keep)
        await conn.commit()

        record = await self.get(session_id)
        if record is None:
            return None
        logger.debug("message_appended", session_id=session_id, role=message.role, silent=silent)
        if not silent:
            self._notify(record)
        return record

    async def _trim(self, session_id: str, keep: int) -> None:
        cursor = await self._db.conn.execute(
            """DELETE FROM session_messages
               WHERE session_id = ? AND id NOT IN (
                   SELECT id FROM session_messages WHERE session_id = ?
                   ORDER BY position DESC LIMIT ?
               )""",
            (session_id, session_id, keep),
        )
        if cursor.rowcount:
            logger.debug("session_trimmed", session_id=session_id, removed=cursor.rowcount)

    async def set_conversation_id(
        self, session_id: str, conversation_id: Optional[str], silent: bool = False
    ) -> None:
        """Change only the conversation binding, leaving stored messages alone."""
        await self._db.conn.execute(
            "UPDATE sessions SET conversation_id = ? WHERE id = ?", (conversation_id, session_id)
        )
        await self._db.conn.commit()
        if not silent:
            record = await self.get(session_id)
            if record is not None:
                self._notify(record)

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        cursor = await self._db.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return await self._row_to_record(row)

    async def list_sessions(self, include_archived: bool = False) -> list[SessionRecord]:
        """Sessions, most recently used first."""
        if include_archived:
            cursor = await self._db.conn.execute("SELECT * FROM sessions ORDER BY last_used_at DESC")
        else:
            cursor = await self._db.conn.execute(
                "SELECT * FROM sessions WHERE archived = 0 ORDER BY last_used_at DESC"
            )
        rows = await cursor.fetchall()
        return [await self._row_to_record(row) for row in rows]

    async def delete(self, session_id: str) -> bool:
        await self._db.conn.execute("DELETE FROM session_messages WHERE session_id = ?", (session_id,))
        cursor = await self._db.conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await self._db.conn.commit()
        return cursor.rowcount > 0

    async def get_active_id(self) -> Optional[str]:
        cursor = await self._db.conn.execute("SELECT value FROM settings WHERE key = ?", (ACTIVE_SESSION_KEY,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set_active_id(self, session_id: Optional[str]) -> None:
        if session_id is None:
            await self._db.conn.execute("DELETE FROM settings WHERE key = ?", (ACTIVE_SESSION_KEY,))
        else:
            await self._db.conn.execute(
                """INSERT INTO settings (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (ACTIVE_SESSION_KEY, session_id),
            )
        await self._db.conn.commit()

    async def _load_messages(self, session_id: str) -> list[ChatMessage]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM session_messages WHERE session_id = ? ORDER BY position ASC",
            (session_id,),
        )
        rows = await cursor.fetchall()
        return [
            ChatMessage(
                role=row["role"],
                content=row["content"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                source=ChannelSource(row["source"]),
                input_type=InputType(row["input_type"]) if row["input_type"] else None,
            )
            for row in rows
        ]

    async def _row_to_record(self, row) -> SessionRecord:
        return SessionRecord(
            id=row["id"],
            name=row["name"],
            created_at=from_epoch_ms(row["created_at"]),
            last_used_at=from_epoch_ms(row["last_used_at"]),
            completed_at=from_epoch_ms(row["completed_at"]) if row["completed_at"] is not None else None,
            archived=bool(row["archived"]),
            conversation_id=row["conversation_id"],
            messages=await self._load_messages(row["id"]),
        )
