"""SQLite storage for chats and their messages."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .config import DEFAULT_TITLE, TITLE_ELLIPSIS, TITLE_MAX_CHARS
from .errors import ChatNotFound, StoreError
from .models import Chat, ChatSummary, Message, Role

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 100

# Smallest step used to keep updated_at strictly increasing when the clock
# does not move between two appends.
_TICK = 1e-6


class ConversationStore:
    """SQLite-backed storage for chats and messages.

    One connection is shared by the event loop and worker threads, so every
    statement runs under a lock. ``append_message`` is the only operation that
    touches a chat's timestamp and derived title, and it does so in the same
    transaction as the insert.
    """

    def __init__(self, db_path: Path | str):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _migrate(self):
        self.conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '{DEFAULT_TITLE}',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content TEXT NOT NULL,
                created_at REAL NOT NULL,
                FOREIGN KEY (chat_id) REFERENCES chats(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat
                ON messages(chat_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_chats_updated
                ON chats(updated_at);
        """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one IMMEDIATE transaction, wrapping sqlite failures."""
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                logger.error("Could not start transaction", exc_info=True)
                raise StoreError(f"Database unavailable: {e}") from e
            try:
                yield self.conn
            except sqlite3.Error as e:
                self.conn.execute("ROLLBACK")
                logger.error("Transaction rolled back", exc_info=True)
                raise StoreError(f"Database write failed: {e}") from e
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self.conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self.conn.execute("ROLLBACK")
                    logger.error("Commit failed", exc_info=True)
                    raise StoreError(f"Database write failed: {e}") from e

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                logger.error("Database read failed", exc_info=True)
                raise StoreError(f"Database read failed: {e}") from e

    def list_chats(self) -> list[ChatSummary]:
        """All chats, most recently updated first, with a preview of the newest message."""
        with self._reading() as conn:
            rows = conn.execute(
                """SELECT c.id, c.title, c.created_at, c.updated_at,
                          (SELECT COUNT(*) FROM messages m WHERE m.chat_id = c.id) AS message_count,
                          (SELECT m.content FROM messages m WHERE m.chat_id = c.id
                           ORDER BY m.created_at DESC LIMIT 1) AS preview
                   FROM chats c
                   ORDER BY c.updated_at DESC"""
            ).fetchall()

        return [
            ChatSummary(
                id=r["id"],
                title=r["title"],
                created_at=r["created_at"],
                updated_at=r["updated_at"],
                message_count=r["message_count"],
                preview=r["preview"][:PREVIEW_CHARS] if r["preview"] else None,
            )
            for r in rows
        ]

    def get_chat(self, chat_id: str) -> Chat:
        """Get a chat with all its messages, oldest first."""
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM chats WHERE id = ?", (chat_id,)).fetchone()
            if not row:
                raise ChatNotFound(chat_id)
            messages = conn.execute(
                "SELECT * FROM messages WHERE chat_id = ? ORDER BY created_at",
                (chat_id,),
            ).fetchall()

        return Chat(
            id=row["id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            messages=[Message(**dict(m)) for m in messages],
        )

    def get_history(self, chat_id: str) -> list[dict]:
        """Role-tagged message history in the shape the model backend expects."""
        return [{"role": m.role, "content": m.content} for m in self.get_chat(chat_id).messages]

    def create_chat(self) -> Chat:
        now = time.time()
        chat = Chat(id=str(uuid.uuid4()), title=DEFAULT_TITLE, created_at=now, updated_at=now)
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO chats (id, title, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (chat.id, chat.title, chat.created_at, chat.updated_at),
            )
        return chat

    def append_message(self, chat_id: str, role: Role, content: str) -> Message:
        """Insert a message and advance the chat in a single transaction.

        The first user message of a chat that still has the default title
        also becomes the chat's title.
        """
        if not content:
            raise ValueError("Message content must not be empty")

        with self._transaction() as conn:
            chat = conn.execute(
                "SELECT title, updated_at FROM chats WHERE id = ?", (chat_id,)
            ).fetchone()
            if not chat:
                raise ChatNotFound(chat_id)

            created_at = max(time.time(), chat["updated_at"] + _TICK)
            message = Message(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                role=role,
                content=content,
                created_at=created_at,
            )

            title = chat["title"]
            if role == "user" and title == DEFAULT_TITLE:
                has_user_message = conn.execute(
                    "SELECT 1 FROM messages WHERE chat_id = ? AND role = 'user' LIMIT 1",
                    (chat_id,),
                ).fetchone()
                if not has_user_message:
                    title = derive_title(content)

            conn.execute(
                """INSERT INTO messages (id, chat_id, role, content, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (message.id, chat_id, role, content, created_at),
            )
            conn.execute(
                "UPDATE chats SET title = ?, updated_at = ? WHERE id = ?",
                (title, created_at, chat_id),
            )

        return message

    def rename_chat(self, chat_id: str, title: str) -> Chat:
        with self._transaction() as conn:
            cur = conn.execute("UPDATE chats SET title = ? WHERE id = ?", (title, chat_id))
            if cur.rowcount == 0:
                raise ChatNotFound(chat_id)
            row = conn.execute("SELECT * FROM chats WHERE id = ?", (chat_id,)).fetchone()
        return Chat(**dict(row))

    def delete_chat(self, chat_id: str) -> None:
        """Delete a chat; its messages go with it (ON DELETE CASCADE)."""
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
            if cur.rowcount == 0:
                raise ChatNotFound(chat_id)

    def close(self):
        self.conn.close()


def derive_title(content: str) -> str:
    """Title for a chat named after its first user message."""
    text = content.strip()
    if not text:
        return DEFAULT_TITLE
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + TITLE_ELLIPSIS
    return text
