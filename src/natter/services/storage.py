"""SQLite data access layer for conversations, messages and contexts."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Protocol

from ..db import ThreadSafeConnection
from ..models import Context, Conversation, Issuer, Message

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 100


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sanitize_fts_query(query: str) -> str:
    """Escape FTS5 special characters by wrapping in double quotes."""
    safe = query.replace('"', '""')
    return f'"{safe}"'


class Storage(Protocol):
    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def list_conversations(
        self, search: str | None = None, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0
    ) -> list[dict[str, Any]]: ...

    def upsert_conversation(self, conversation: Conversation) -> None: ...

    def delete_conversation(self, conversation_id: str) -> bool: ...

    def get_messages(self, conversation_id: str) -> list[Message]: ...

    def upsert_message(self, conversation_id: str, message: Message) -> None: ...

    def delete_message(self, message_id: str) -> None: ...

    def upsert_context(self, conversation_id: str, context: Context) -> None: ...


_UPSERT_MESSAGE = """
INSERT INTO messages (id, conversation_id, issuer, system, text, token_count, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    issuer = excluded.issuer,
    system = excluded.system,
    text = excluded.text,
    token_count = excluded.token_count,
    created_at = excluded.created_at
"""


def _message_params(conversation_id: str, message: Message) -> tuple:
    return (
        message.id,
        conversation_id,
        message.issuer.name,
        1 if message.is_system() else 0,
        message.text,
        message.token_count,
        _ts(message.created_at),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    issuer = Issuer.system(row["issuer"]) if row["system"] else Issuer.user(row["issuer"])
    return Message(
        id=row["id"],
        issuer=issuer,
        text=row["text"],
        token_count=row["token_count"],
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_context(row: sqlite3.Row) -> Context:
    return Context(
        id=row["id"],
        content=row["content"],
        last_message_id=row["last_message_id"],
        token_count=row["token_count"],
        created_at=_parse_ts(row["created_at"]),
    )


class SqliteStorage:
    def __init__(self, db: ThreadSafeConnection) -> None:
        self.db = db

    def close(self) -> None:
        self.db.close()

    # --- Conversations ---

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self.db.execute_fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        if not row:
            return None
        return Conversation(
            id=row["id"],
            title=row["title"],
            model=row["model"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            messages=self.get_messages(conversation_id),
            contexts=self.get_contexts(conversation_id),
        )

    def list_conversations(
        self,
        search: str | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if search and self.db.has_fts:
            rows = self.db.execute_fetchall(
                """
                SELECT c.id, c.title, c.model, c.created_at, c.updated_at,
                       (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) as message_count
                FROM conversations c
                JOIN conversations_fts fts ON fts.conversation_id = c.id
                WHERE conversations_fts MATCH ?
                ORDER BY c.updated_at DESC
                LIMIT ? OFFSET ?
                """,
                (_sanitize_fts_query(search), limit, offset),
            )
        elif search:
            rows = self.db.execute_fetchall(
                """
                SELECT c.id, c.title, c.model, c.created_at, c.updated_at,
                       (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) as message_count
                FROM conversations c
                WHERE c.title LIKE ?
                ORDER BY c.updated_at DESC
                LIMIT ? OFFSET ?
                """,
                (f"%{search}%", limit, offset),
            )
        else:
            rows = self.db.execute_fetchall(
                """
                SELECT c.id, c.title, c.model, c.created_at, c.updated_at,
                       (SELECT COUNT(*) FROM messages m WHERE m.conversation_id = c.id) as message_count
                FROM conversations c
                ORDER BY c.updated_at DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            )
        return [dict(r) for r in rows]

    def upsert_conversation(self, conversation: Conversation) -> None:
        """Write the conversation row along with all of its messages and contexts."""
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversations (id, title, model, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    model = excluded.model,
                    updated_at = excluded.updated_at
                """,
                (
                    conversation.id,
                    conversation.title,
                    conversation.model,
                    _ts(conversation.created_at),
                    _ts(conversation.updated_at),
                ),
            )
            for message in conversation.messages:
                conn.execute(_UPSERT_MESSAGE, _message_params(conversation.id, message))
            for context in conversation.contexts:
                conn.execute(*self._context_upsert(conversation.id, context))

    def delete_conversation(self, conversation_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        return cursor.rowcount > 0

    def _touch(self, conn: sqlite3.Connection, conversation_id: str) -> None:
        conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (_now(), conversation_id))

    # --- Messages ---

    def get_messages(self, conversation_id: str) -> list[Message]:
        rows = self.db.execute_fetchall(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at",
            (conversation_id,),
        )
        return [_row_to_message(r) for r in rows]

    def upsert_message(self, conversation_id: str, message: Message) -> None:
        with self.db.transaction() as conn:
            conn.execute(_UPSERT_MESSAGE, _message_params(conversation_id, message))
            self._touch(conn, conversation_id)

    def delete_message(self, message_id: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))

    # --- Contexts ---

    @staticmethod
    def _context_upsert(conversation_id: str, context: Context) -> tuple[str, tuple]:
        return (
            """
            INSERT INTO contexts (id, conversation_id, last_message_id, content, token_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_message_id = excluded.last_message_id,
                content = excluded.content,
                token_count = excluded.token_count
            """,
            (
                context.id,
                conversation_id,
                context.last_message_id,
                context.content,
                context.token_count,
                _ts(context.created_at),
            ),
        )

    def get_contexts(self, conversation_id: str) -> list[Context]:
        rows = self.db.execute_fetchall(
            "SELECT * FROM contexts WHERE conversation_id = ? ORDER BY created_at",
            (conversation_id,),
        )
        return [_row_to_context(r) for r in rows]

    def upsert_context(self, conversation_id: str, context: Context) -> None:
        with self.db.transaction() as conn:
            conn.execute(*self._context_upsert(conversation_id, context))
            self._touch(conn, conversation_id)
        logger.debug("Stored context %s for conversation %s", context.id, conversation_id)
