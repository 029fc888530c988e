"""Conversation memory: append-only message log keyed by thread id."""

from __future__ import annotations

import asyncio
import sqlite3
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from .config import config
from .models import Message, Role

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

logger = config.get_logger(__name__)


class ThreadStore:
    """SQLite-backed conversation threads."""

    def __init__(self, db_path: Path = Path("data/threads.db")) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(exist_ok=True, parents=True)
        self._create_tables()

    def _create_tables(self) -> None:
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    thread_id TEXT NOT NULL,
                    role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_thread "
                "ON messages(thread_id, id)"
            )
            conn.commit()

    @staticmethod
    def new_thread_id() -> str:
        return uuid.uuid4().hex

    def append(self, thread_id: str, messages: Sequence[Message]) -> None:
        """Append messages to a thread in one transaction."""
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.executemany(
                (
                    "INSERT INTO messages (thread_id, role, content, created_at) "
                    "VALUES (?, ?, ?, ?)"
                ),
                [
                    (thread_id, str(message.role), message.content, message.created_at)
                    for message in messages
                ],
            )
            conn.commit()
        logger.debug("Appended %d messages to thread %s", len(messages), thread_id)

    def history(self, thread_id: str, limit: int | None = None) -> list[Message]:
        """Return thread messages oldest first.

        Args:
            thread_id: Conversation identifier.
            limit: Keep only the most recent ``limit`` messages.

        Returns:
            Messages in the order they were appended.
        """
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()
            if limit is None:
                cursor.execute(
                    (
                        "SELECT role, content, created_at FROM messages "
                        "WHERE thread_id = ? ORDER BY id"
                    ),
                    (thread_id,),
                )
                rows = cursor.fetchall()
            else:
                cursor.execute(
                    (
                        "SELECT role, content, created_at FROM messages "
                        "WHERE thread_id = ? ORDER BY id DESC LIMIT ?"
                    ),
                    (thread_id, max(0, limit)),
                )
                rows = cursor.fetchall()[::-1]

        return [
            Message(role=Role(role), content=content, created_at=created_at)
            for role, content, created_at in rows
        ]


class ThreadLocks:
    """One asyncio lock per thread so turns run in submission order."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._locks[thread_id]
        if lock.locked():
            logger.info("Thread %s busy; waiting for the previous turn", thread_id)
        async with lock:
            yield

    def is_busy(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()
