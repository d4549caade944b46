"""
Persistent Store Adapter: durable storage of threads, messages, summaries
and feedback in SQLite. This store is authoritative; caches sit in front of it.

Every call opens its own connection and runs in a worker thread, so
independent chat flows never share a connection.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, TypeVar

from husky.core.config import Settings, get_settings
from husky.core.errors import NotFoundError, PersistenceError
from husky.core.models import (
    FeedbackEntry,
    Message,
    Role,
    Summary,
    Thread,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    summary_ref TEXT
);
CREATE INDEX IF NOT EXISTS idx_threads_user ON threads(user_id);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES threads(id),
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    text TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    citations TEXT NOT NULL DEFAULT '[]',
    UNIQUE (thread_id, position)
);

CREATE TABLE IF NOT EXISTS summaries (
    thread_id TEXT PRIMARY KEY REFERENCES threads(id),
    text TEXT NOT NULL,
    covered_through_message_id TEXT NOT NULL,
    covered_through_position INTEGER NOT NULL,
    token_count INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feedback (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES threads(id),
    message_id TEXT NOT NULL REFERENCES messages(id),
    rating INTEGER NOT NULL,
    comment TEXT,
    created_at TEXT NOT NULL
);
"""

_MESSAGE_COLUMNS = "id, thread_id, position, role, text, timestamp, citations"


def _row_to_message(row: tuple) -> Message:
    return Message(
        id=row[0],
        thread_id=row[1],
        position=row[2],
        role=Role(row[3]),
        text=row[4],
        timestamp=parse_datetime(row[5]),
        citations=tuple(json.loads(row[6])),
    )


def _row_to_summary(row: tuple) -> Summary:
    return Summary(
        thread_id=row[0],
        text=row[1],
        covered_through_message_id=row[2],
        covered_through_position=row[3],
        token_count=row[4],
        updated_at=parse_datetime(row[5]),
    )


class SQLiteStore:
    def __init__(self, db_path: Optional[Path] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.db_path = db_path or self.settings.sqlite_db_path
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise PersistenceError(f"Store unavailable: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Store operation failed: {e}") from e
        finally:
            conn.close()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    # ── Threads ──────────────────────────────────────────────────────

    def _create_thread(self, thread: Thread) -> Thread:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO threads (id, user_id, created_at, summary_ref) VALUES (?, ?, ?, ?)",
                (thread.id, thread.user_id, format_datetime(thread.created_at), thread.summary_ref),
            )
        return thread

    def _get_thread(self, thread_id: str) -> Optional[Thread]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, user_id, created_at, summary_ref FROM threads WHERE id=?",
                (thread_id,),
            ).fetchone()
        if not row:
            return None
        return Thread(
            id=row[0], user_id=row[1], created_at=parse_datetime(row[2]), summary_ref=row[3]
        )

    def _list_threads(self, user_id: str) -> List[Thread]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT id, user_id, created_at, summary_ref FROM threads "
                "WHERE user_id=? ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [
            Thread(id=r[0], user_id=r[1], created_at=parse_datetime(r[2]), summary_ref=r[3])
            for r in rows
        ]

    async def create_thread(self, thread: Thread) -> Thread:
        return await self._run(self._create_thread, thread)

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        return await self._run(self._get_thread, thread_id)

    async def list_threads(self, user_id: str) -> List[Thread]:
        return await self._run(self._list_threads, user_id)

    # ── Messages ─────────────────────────────────────────────────────

    def _append_message(self, message: Message) -> Message:
        with self._connection() as conn:
            conn.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.thread_id,
                    message.position,
                    message.role.value,
                    message.text,
                    format_datetime(message.timestamp),
                    json.dumps(list(message.citations)),
                ),
            )
        return message

    def _get_message(self, message_id: str) -> Optional[Message]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id=?", (message_id,)
            ).fetchone()
        return _row_to_message(row) if row else None

    def _get_last_message(self, thread_id: str) -> Optional[Message]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_id=? "
                "ORDER BY position DESC LIMIT 1",
                (thread_id,),
            ).fetchone()
        return _row_to_message(row) if row else None

    def _list_messages(self, thread_id: str, after_position: int) -> List[Message]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE thread_id=? AND position>? "
                "ORDER BY position ASC",
                (thread_id, after_position),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    async def append_message(self, message: Message) -> Message:
        """Persist a message. A position already taken in the thread is rejected."""
        return await self._run(self._append_message, message)

    async def get_message(self, message_id: str) -> Optional[Message]:
        return await self._run(self._get_message, message_id)

    async def get_last_message(self, thread_id: str) -> Optional[Message]:
        return await self._run(self._get_last_message, thread_id)

    async def list_messages(self, thread_id: str, after_position: int = 0) -> List[Message]:
        return await self._run(self._list_messages, thread_id, after_position)

    # ── Summaries ────────────────────────────────────────────────────

    def _get_summary(self, thread_id: str) -> Optional[Summary]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT thread_id, text, covered_through_message_id, "
                "covered_through_position, token_count, updated_at "
                "FROM summaries WHERE thread_id=?",
                (thread_id,),
            ).fetchone()
        return _row_to_summary(row) if row else None

    def _put_summary(self, summary: Summary) -> bool:
        with self._connection() as conn:
            covered = conn.execute(
                "SELECT position FROM messages WHERE id=? AND thread_id=?",
                (summary.covered_through_message_id, summary.thread_id),
            ).fetchone()
            if not covered or covered[0] != summary.covered_through_position:
                raise NotFoundError(
                    f"Summary coverage message {summary.covered_through_message_id} "
                    f"not found in thread {summary.thread_id}"
                )
            cursor = conn.execute(
                """
                INSERT INTO summaries (thread_id, text, covered_through_message_id,
                    covered_through_position, token_count, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(thread_id) DO UPDATE SET
                    text=excluded.text,
                    covered_through_message_id=excluded.covered_through_message_id,
                    covered_through_position=excluded.covered_through_position,
                    token_count=excluded.token_count,
                    updated_at=excluded.updated_at
                WHERE excluded.covered_through_position >= summaries.covered_through_position
                """,
                (
                    summary.thread_id,
                    summary.text,
                    summary.covered_through_message_id,
                    summary.covered_through_position,
                    summary.token_count,
                    format_datetime(summary.updated_at),
                ),
            )
            applied = cursor.rowcount > 0
            if applied:
                conn.execute(
                    "UPDATE threads SET summary_ref=? WHERE id=?",
                    (summary.covered_through_message_id, summary.thread_id),
                )
        return applied

    async def get_summary(self, thread_id: str) -> Optional[Summary]:
        return await self._run(self._get_summary, thread_id)

    async def put_summary(self, summary: Summary) -> bool:
        """
        Store the thread's live summary. Returns False when a summary with
        wider coverage is already stored (older results never win).
        """
        return await self._run(self._put_summary, summary)

    # ── Feedback ─────────────────────────────────────────────────────

    def _add_feedback(self, entry: FeedbackEntry) -> FeedbackEntry:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO feedback (id, thread_id, message_id, rating, comment, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.thread_id,
                    entry.message_id,
                    entry.rating,
                    entry.comment,
                    format_datetime(entry.created_at),
                ),
            )
        return entry

    async def add_feedback(self, entry: FeedbackEntry) -> FeedbackEntry:
        return await self._run(self._add_feedback, entry)
