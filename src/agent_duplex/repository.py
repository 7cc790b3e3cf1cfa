"""
Session persistence.

A repository stores a session's history together with the context manager's
``removed_message_count`` so that a client reconnecting with the same
session id continues where it left off.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_duplex.logging import get_logger
from agent_duplex.messages import Message

logger = get_logger("repository")


@dataclass
class StoredSession:
    """A persisted session."""

    session_id: str
    history: list[Message] = field(default_factory=list)
    removed_message_count: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def summary(self) -> dict[str, Any]:
        """Metadata only, for listings."""
        return {
            "id": self.session_id,
            "messages": len(self.history),
            "removed_message_count": self.removed_message_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class SessionRepository(ABC):
    """Where session histories are kept between connections."""

    @abstractmethod
    async def save(
        self, session_id: str, history: list[Message], removed_message_count: int
    ) -> None:
        ...

    @abstractmethod
    async def load(self, session_id: str) -> StoredSession | None:
        ...

    @abstractmethod
    async def list_sessions(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...


class InMemorySessionRepository(SessionRepository):
    """Process-local repository. Histories are copied on the way in and out."""

    def __init__(self) -> None:
        self._sessions: dict[str, StoredSession] = {}

    async def save(
        self, session_id: str, history: list[Message], removed_message_count: int
    ) -> None:
        existing = self._sessions.get(session_id)
        now = time.time()
        self._sessions[session_id] = StoredSession(
            session_id=session_id,
            history=[Message.from_dict(m.to_dict()) for m in history],
            removed_message_count=removed_message_count,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )

    async def load(self, session_id: str) -> StoredSession | None:
        stored = self._sessions.get(session_id)
        if stored is None:
            return None
        return StoredSession(
            session_id=stored.session_id,
            history=[Message.from_dict(m.to_dict()) for m in stored.history],
            removed_message_count=stored.removed_message_count,
            created_at=stored.created_at,
            updated_at=stored.updated_at,
        )

    async def list_sessions(self) -> list[dict[str, Any]]:
        ordered = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        return [s.summary() for s in ordered]

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


class SqliteSessionRepository(SessionRepository):
    """
    SQLite-backed repository. Messages are stored as a JSON array.

    Queries run in a worker thread so they never block the event loop.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_dir = Path.home() / ".agent-duplex"
            db_dir.mkdir(parents=True, exist_ok=True)
            db_path = db_dir / "sessions.db"
        self._db_path = str(db_path)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            with conn:
                yield conn

    def _init_db(self) -> None:
        """Initialize database tables."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    created_at REAL,
                    updated_at REAL,
                    removed_count INTEGER DEFAULT 0,
                    history TEXT DEFAULT '[]'
                )
            """)

    def _save(self, session_id: str, history: list[Message], removed_message_count: int) -> None:
        now = time.time()
        data = json.dumps([m.to_dict() for m in history], default=str)
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sessions (id, created_at, updated_at, removed_count, history)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                   updated_at=excluded.updated_at,
                   removed_count=excluded.removed_count,
                   history=excluded.history""",
                (session_id, now, now, removed_message_count, data),
            )

    def _load(self, session_id: str) -> StoredSession | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, created_at, updated_at, removed_count, history"
                " FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return StoredSession(
            session_id=row[0],
            created_at=row[1],
            updated_at=row[2],
            removed_message_count=row[3],
            history=[Message.from_dict(m) for m in json.loads(row[4])],
        )

    def _list(self) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, created_at, updated_at, removed_count, history"
                " FROM sessions ORDER BY updated_at DESC"
            ).fetchall()
        return [
            {
                "id": r[0],
                "messages": len(json.loads(r[4])),
                "removed_message_count": r[3],
                "created_at": r[1],
                "updated_at": r[2],
            }
            for r in rows
        ]

    def _delete(self, session_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cursor.rowcount > 0

    async def save(
        self, session_id: str, history: list[Message], removed_message_count: int
    ) -> None:
        snapshot = list(history)
        await asyncio.to_thread(self._save, session_id, snapshot, removed_message_count)
        logger.debug("Saved session %s (%d messages)", session_id, len(snapshot))

    async def load(self, session_id: str) -> StoredSession | None:
        return await asyncio.to_thread(self._load, session_id)

    async def list_sessions(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._list)

    async def delete(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._delete, session_id)
