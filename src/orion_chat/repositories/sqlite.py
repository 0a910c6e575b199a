"""SQLite-backed local cache."""

import sqlite3
from pathlib import Path
from typing import List, Optional, Union
from uuid import UUID

import structlog

from ..domain.models import Chat, Message
from .base import LocalCache

logger = structlog.get_logger()


class SqliteLocalCache(LocalCache):
    """Embedded cache storing each row as its JSON document.

    ``created_at``/``updated_at`` are duplicated as epoch seconds so ordering
    happens in SQL. Pass ``":memory:"`` for a throwaway database.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()
        logger.info("sqlite_cache_opened", path=str(db_path))

    def _migrate(self) -> None:
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                created_ts REAL NOT NULL,
                body TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat
                ON messages(chat_id, created_ts);

            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                updated_ts REAL NOT NULL,
                body TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chats_user
                ON chats(user_id, updated_ts);
        """)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _message_row(message: Message):
        return (
            str(message.id),
            str(message.chat_id),
            message.created_at.timestamp(),
            message.model_dump_json(),
        )

    @staticmethod
    def _chat_row(chat: Chat):
        return (str(chat.id), chat.user_id, chat.updated_at.timestamp(), chat.model_dump_json())

    async def get_chat_messages(self, chat_id: UUID) -> List[Message]:
        rows = self.conn.execute(
            "SELECT body FROM messages WHERE chat_id = ? ORDER BY created_ts, rowid",
            (str(chat_id),),
        ).fetchall()
        return [Message.model_validate_json(row["body"]) for row in rows]

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        row = self.conn.execute(
            "SELECT body FROM messages WHERE id = ?", (str(message_id),)
        ).fetchone()
        return Message.model_validate_json(row["body"]) if row else None

    async def put_message(self, message: Message) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO messages (id, chat_id, created_ts, body) VALUES (?, ?, ?, ?)",
            self._message_row(message),
        )
        self.conn.commit()

    async def put_messages(self, messages: List[Message]) -> None:
        self.conn.executemany(
            "INSERT OR REPLACE INTO messages (id, chat_id, created_ts, body) VALUES (?, ?, ?, ?)",
            [self._message_row(m) for m in messages],
        )
        self.conn.commit()

    async def delete_message(self, message_id: UUID) -> None:
        self.conn.execute("DELETE FROM messages WHERE id = ?", (str(message_id),))
        self.conn.commit()

    async def delete_chat_messages(self, chat_id: UUID) -> None:
        self.conn.execute("DELETE FROM messages WHERE chat_id = ?", (str(chat_id),))
        self.conn.commit()

    async def get_chats(self, user_id: str) -> List[Chat]:
        rows = self.conn.execute(
            "SELECT body FROM chats WHERE user_id = ? ORDER BY updated_ts DESC", (user_id,)
        ).fetchall()
        return [Chat.model_validate_json(row["body"]) for row in rows]

    async def put_chat(self, chat: Chat) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO chats (id, user_id, updated_ts, body) VALUES (?, ?, ?, ?)",
            self._chat_row(chat),
        )
        self.conn.commit()

    async def delete_chat(self, chat_id: UUID) -> None:
        self.conn.execute("DELETE FROM messages WHERE chat_id = ?", (str(chat_id),))
        self.conn.execute("DELETE FROM chats WHERE id = ?", (str(chat_id),))
        self.conn.commit()

    async def replace_chats(self, user_id: str, chats: List[Chat]) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM chats WHERE user_id = ?", (user_id,))
            self.conn.executemany(
                "INSERT OR REPLACE INTO chats (id, user_id, updated_ts, body) VALUES (?, ?, ?, ?)",
                [self._chat_row(c) for c in chats],
            )

    async def clear(self) -> None:
        self.conn.executescript("DELETE FROM messages; DELETE FROM chats;")
        self.conn.commit()
