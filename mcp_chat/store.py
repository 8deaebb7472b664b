"""Chat storage with SQLite."""

import json
from pathlib import Path

import aiosqlite

from mcp_chat.config import get_config
from mcp_chat.exceptions import PersistenceError
from mcp_chat.logging import get_logger
from mcp_chat.models import ChatData, ChatSummary, StoredMessage, utcnow_iso

log = get_logger(__name__)

DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 80


def derive_title(messages: list[StoredMessage]) -> str:
    """Title a chat after its first user message."""
    for message in messages:
        if message.role != "user":
            continue
        first_line = (message.content or "").strip().splitlines()
        if first_line and first_line[0].strip():
            title = first_line[0].strip()
            if len(title) > TITLE_MAX_CHARS:
                title = title[: TITLE_MAX_CHARS - 3].rstrip() + "..."
            return title
    return DEFAULT_TITLE


class ChatStore:
    """Chats and their messages, keyed by chat id and owner."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize chat store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.storage.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL DEFAULT '',
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL,
                    chat_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    parts TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    UNIQUE (chat_id, id)
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_chats_user_updated_at ON chats(user_id, updated_at DESC)"
            )
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_chat_seq ON messages(chat_id, seq)"
            )
            await self._db.commit()
        return self._db

    async def save_messages(
        self,
        chat_id: str,
        messages: list[StoredMessage],
        user_id: str | None = None,
    ) -> None:
        """Upsert messages by id, creating the chat on first write.

        A message id that already exists in this chat is overwritten in
        place; it keeps its original position. Ids are unique per chat, so
        the same id in another chat is a separate message.

        Raises:
            PersistenceError: the chat belongs to another user, or the write
                failed and was rolled back
        """
        db = await self._ensure_db()
        owner = user_id or ""

        async with db.execute("SELECT user_id FROM chats WHERE id = ?", (chat_id,)) as cursor:
            row = await cursor.fetchone()
        if row is not None and row[0] != owner:
            log.warning("Rejected write to chat owned by another user", chat_id=chat_id, user_id=owner)
            raise PersistenceError(f"Chat {chat_id} belongs to another user")

        now = utcnow_iso()
        try:
            await db.execute(
                """
                INSERT INTO chats (id, user_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (chat_id, owner, derive_title(messages), now, now),
            )
            await db.executemany(
                """
                INSERT INTO messages (id, chat_id, role, content, parts, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(chat_id, id) DO UPDATE SET
                    role = excluded.role,
                    content = excluded.content,
                    parts = excluded.parts
                """,
                [
                    (
                        message.id,
                        chat_id,
                        message.role,
                        message.content,
                        json.dumps(message.parts, ensure_ascii=False),
                        message.created_at,
                    )
                    for message in messages
                ],
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            raise PersistenceError(f"Failed to save messages for chat {chat_id}: {e}") from e

        log.debug("Saved messages", chat_id=chat_id, count=len(messages))

    async def get_chat(self, chat_id: str, user_id: str | None = None) -> ChatData | None:
        """Load a chat with its messages.

        Returns:
            ChatData, or None when the chat does not exist or belongs to
            another user
        """
        db = await self._ensure_db()

        query = "SELECT id, user_id, title, created_at, updated_at FROM chats WHERE id = ?"
        params: tuple[str, ...] = (chat_id,)
        if user_id is not None:
            query += " AND user_id = ?"
            params = (chat_id, user_id)

        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None

        async with db.execute(
            """
            SELECT id, chat_id, role, content, parts, created_at
            FROM messages
            WHERE chat_id = ?
            ORDER BY seq
            """,
            (chat_id,),
        ) as cursor:
            message_rows = await cursor.fetchall()

        return ChatData(
            id=row[0],
            title=row[2],
            created_at=row[3],
            updated_at=row[4],
            messages=[
                StoredMessage(
                    id=m[0],
                    chat_id=m[1],
                    role=m[2],
                    content=m[3],
                    parts=json.loads(m[4]),
                    created_at=m[5],
                )
                for m in message_rows
            ],
        )

    async def list_chats(self, user_id: str, limit: int = 50) -> list[ChatSummary]:
        """List a user's chats, most recently updated first."""
        db = await self._ensure_db()

        async with db.execute(
            """
            SELECT id, title, created_at, updated_at
            FROM chats
            WHERE user_id = ?
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            ChatSummary(id=row[0], title=row[1], created_at=row[2], updated_at=row[3])
            for row in rows
        ]

    async def delete_chat(self, chat_id: str, user_id: str) -> bool:
        """Delete a chat and its messages.

        Returns:
            True if deleted, False if not found
        """
        db = await self._ensure_db()

        cursor = await db.execute(
            "DELETE FROM chats WHERE id = ? AND user_id = ?",
            (chat_id, user_id),
        )
        deleted = cursor.rowcount > 0
        if deleted:
            await db.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
        await db.commit()
        return deleted

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global chat store
_store: ChatStore | None = None


def get_chat_store() -> ChatStore:
    """Get the global chat store."""
    global _store
    if _store is None:
        _store = ChatStore()
    return _store


def set_chat_store(store: ChatStore | None) -> None:
    """Set the global chat store."""
    global _store
    _store = store
