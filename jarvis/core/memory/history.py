"""Conversation history: SQLite-backed persistent conversation storage.

Stores conversations, their messages and the running-summary context
snapshot so a chat can be reopened later with its summary intact.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from uuid import uuid4

import aiosqlite
import structlog

from jarvis.config import get_jarvis_home
from jarvis.core.errors import NotFoundError
from jarvis.core.persistence import ConversationStore
from jarvis.core.types import (
    ASSISTANT_SENDER_ID,
    ContextSnapshot,
    ConversationRecord,
    Role,
    StoredMessage,
)

logger = structlog.get_logger()

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    content TEXT NOT NULL,
    sent_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS contexts (
    conversation_id TEXT PRIMARY KEY,
    context TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);
CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);
"""


class ConversationHistory(ConversationStore):
    """Persistent conversation history stored in SQLite.

    Message roles are not stored: a message is the assistant's when its
    sender is ASSISTANT_SENDER_ID, otherwise it is the user's.
    """

    def __init__(self, db_path: str | None = None, user_id: str = "local") -> None:
        self._db_path = db_path or str(get_jarvis_home() / "history.db")
        self._user_id = user_id
        self._initialized = False

    async def _ensure_db(self) -> None:
        """Initialize database tables if needed."""
        if self._initialized:
            return
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(CREATE_TABLES_SQL)
            await db.commit()
        self._initialized = True

    async def list_conversations(self) -> list[ConversationRecord]:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                """SELECT * FROM conversations WHERE created_by = ?
                   ORDER BY updated_at DESC""",
                (self._user_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_record(dict(row)) for row in rows]

    async def create_conversation(self, title: str) -> ConversationRecord:
        await self._ensure_db()
        now = datetime.now(timezone.utc)
        record = ConversationRecord(
            id=str(uuid4()), title=title, created_at=now, updated_at=now
        )
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """INSERT INTO conversations (id, title, created_by, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (record.id, title, self._user_id, now.isoformat(), now.isoformat()),
            )
            await db.commit()
        logger.debug("conversation_created", conversation_id=record.id)
        return record

    async def get_conversation(self, conversation_id: str) -> ConversationRecord:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM conversations WHERE id = ? AND created_by = ?",
                (conversation_id, self._user_id),
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            raise NotFoundError(
                "Chat not found or access denied.", details=conversation_id, status_code=404
            )
        return _record(dict(row))

    async def get_messages(self, conversation_id: str) -> list[StoredMessage]:
        await self.get_conversation(conversation_id)

        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            ) as cursor:
                rows = await cursor.fetchall()

        messages: list[StoredMessage] = []
        for row in rows:
            r = dict(row)
            role = Role.ASSISTANT if r["sender_id"] == ASSISTANT_SENDER_ID else Role.USER
            messages.append(StoredMessage(
                role=role,
                content=r["content"],
                sender_id=r["sender_id"],
                sent_at=datetime.fromisoformat(r["sent_at"]),
            ))
        return messages

    async def append_messages(
        self, conversation_id: str, messages: Sequence[StoredMessage]
    ) -> None:
        if not messages:
            return
        await self.get_conversation(conversation_id)

        now = datetime.now(timezone.utc).isoformat()
        async with aiosqlite.connect(self._db_path) as db:
            for msg in messages:
                sender = msg.sender_id or (
                    ASSISTANT_SENDER_ID if msg.role == Role.ASSISTANT else self._user_id
                )
                sent_at = msg.sent_at.isoformat() if msg.sent_at else now
                await db.execute(
                    """INSERT INTO messages (conversation_id, sender_id, content, sent_at)
                       VALUES (?, ?, ?, ?)""",
                    (conversation_id, sender, msg.content, sent_at),
                )
            await db.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
            await db.commit()

    async def delete_conversation(self, conversation_id: str) -> bool:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            await db.execute("DELETE FROM contexts WHERE conversation_id = ?", (conversation_id,))
            result = await db.execute(
                "DELETE FROM conversations WHERE id = ? AND created_by = ?",
                (conversation_id, self._user_id),
            )
            await db.commit()
            return result.rowcount > 0

    async def get_context(self, conversation_id: str) -> ContextSnapshot | None:
        await self._ensure_db()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT context FROM contexts WHERE conversation_id = ?",
                (conversation_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        try:
            raw = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("stored_context_corrupt", conversation_id=conversation_id)
            return None
        if not isinstance(raw, dict):
            return None
        return ContextSnapshot.from_dict(raw)

    async def put_context(self, conversation_id: str, snapshot: ContextSnapshot) -> None:
        await self.get_conversation(conversation_id)

        now = datetime.now(timezone.utc).isoformat()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """INSERT INTO contexts (conversation_id, context, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(conversation_id) DO UPDATE SET
                     context = excluded.context,
                     updated_at = excluded.updated_at""",
                (conversation_id, json.dumps(snapshot.to_dict()), now),
            )
            await db.commit()


def _record(row: dict) -> ConversationRecord:
    return ConversationRecord(
        id=row["id"],
        title=row["title"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
