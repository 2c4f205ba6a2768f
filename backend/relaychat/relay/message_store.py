"""DuckDB-backed message log for the relay server.

Database Schema:
    messages table:
        - id: Message identifier (primary key)
        - session_id: Room the message belongs to
        - author_id: Sender's user ID
        - content_type: 'text' or 'image'
        - content: Message text or image URL
        - ts: Seconds since epoch (DOUBLE)

Pagination walks backward over (ts, id), so two messages that share a
timestamp are never skipped or repeated across pages.

Thread Safety:
    The DuckDB connection is NOT thread-safe. All access goes through the
    event loop thread of the relay process.

Usage:
    store = MessageStore.get_instance()
    store.add(message)
    messages, has_more = store.page("room-1", before=None, limit=50)
"""
import logging
from typing import List, Optional, Tuple

import duckdb

from relaychat.protocol import ContentType, HistoryCursor, Message

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGE_SIZE = 100

_COLUMNS = "id, session_id, author_id, content_type, content, ts"


class MessageStore:
    """Singleton service persisting chat messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "relaychat_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None, max_page_size: int = DEFAULT_MAX_PAGE_SIZE) -> None:
        if db_path:
            self._db_path = db_path
        self.max_page_size = max_page_size
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(
        cls, db_path: Optional[str] = None, max_page_size: int = DEFAULT_MAX_PAGE_SIZE
    ) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
            max_page_size: Page size clamp (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path, max_page_size)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and forget the singleton (tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                session_id VARCHAR NOT NULL,
                author_id VARCHAR NOT NULL,
                content_type VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                ts DOUBLE NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_session_ts
            ON messages (session_id, ts)
        """)

    # =========================================================================
    # Writes
    # =========================================================================

    def add(self, message: Message) -> bool:
        """Persist a message.

        Returns:
            False if a message with the same id was already stored.
        """
        conn = self._get_connection()
        exists = conn.execute("SELECT 1 FROM messages WHERE id = ?", [message.id]).fetchone()
        if exists:
            logger.debug(f"[Store] Duplicate message {message.id} ignored")
            return False
        conn.execute(
            f"INSERT INTO messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            [
                message.id,
                message.sessionId,
                message.authorId,
                message.contentType.value,
                message.content,
                message.timestamp,
            ],
        )
        return True

    def clear(self, session_id: str) -> int:
        """Delete every message of a session. Returns the number removed."""
        removed = self.count(session_id)
        self._get_connection().execute("DELETE FROM messages WHERE session_id = ?", [session_id])
        logger.info(f"[Store] Cleared {removed} messages from session {session_id}")
        return removed

    # =========================================================================
    # Reads
    # =========================================================================

    def page(
        self, session_id: str, before: Optional[str] = None, limit: int = 50
    ) -> Tuple[List[Message], bool]:
        """Return up to ``limit`` messages strictly older than ``before``.

        Args:
            session_id: Room to read.
            before: Encoded HistoryCursor; None for the newest page.
            limit: Page size, clamped to ``max_page_size``.

        Returns:
            Tuple of (messages oldest-first, has_more).

        Raises:
            ValueError: If ``before`` is not a valid cursor or limit < 1.
        """
        if limit < 1:
            raise ValueError("limit must be positive")
        limit = min(limit, self.max_page_size)

        query = f"SELECT {_COLUMNS} FROM messages WHERE session_id = ?"
        params: list = [session_id]
        if before is not None:
            cursor = HistoryCursor.decode(before)
            query += " AND (ts < ? OR (ts = ? AND id < ?))"
            params += [cursor.timestamp, cursor.timestamp, cursor.message_id]
        query += " ORDER BY ts DESC, id DESC LIMIT ?"
        params.append(limit + 1)

        rows = self._get_connection().execute(query, params).fetchall()
        has_more = len(rows) > limit
        messages = [self._row_to_message(row) for row in rows[:limit]]
        messages.reverse()
        return messages, has_more

    def count(self, session_id: str) -> int:
        row = self._get_connection().execute(
            "SELECT COUNT(*) FROM messages WHERE session_id = ?", [session_id]
        ).fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_message(row: tuple) -> Message:
        return Message(
            id=row[0],
            sessionId=row[1],
            authorId=row[2],
            contentType=ContentType(row[3]),
            content=row[4],
            timestamp=row[5],
        )

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
