from typing import List, Optional
from datetime import datetime
from pathlib import Path
import asyncio
import json
import sqlite3

import structlog

from domain.errors import UpstreamUnavailable
from domain.models.memory import MemoryEntry
from domain.context.memory.vector_memory_store import MemoryBackend

logger = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    subchat_id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    keywords TEXT NOT NULL DEFAULT '[]',
    actions TEXT NOT NULL DEFAULT '[]',
    artifacts TEXT NOT NULL DEFAULT '[]',
    embedding TEXT,
    created_at TEXT NOT NULL,
    merged_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id);
"""

_COLUMNS = (
    "subchat_id, conversation_id, user_id, summary, keywords, actions, "
    "artifacts, embedding, created_at, merged_at"
)


def _to_row(entry: MemoryEntry) -> tuple:
    return (
        entry.subchat_id,
        entry.conversation_id,
        entry.user_id,
        entry.summary,
        json.dumps(entry.keywords),
        json.dumps(entry.actions),
        json.dumps(entry.artifacts),
        json.dumps(entry.embedding) if entry.embedding else None,
        entry.created_at.isoformat(),
        entry.merged_at.isoformat(),
    )


def _from_row(row: sqlite3.Row) -> MemoryEntry:
    return MemoryEntry(
        subchat_id=row["subchat_id"],
        conversation_id=row["conversation_id"],
        user_id=row["user_id"],
        summary=row["summary"],
        keywords=json.loads(row["keywords"]),
        actions=json.loads(row["actions"]),
        artifacts=json.loads(row["artifacts"]),
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
        created_at=datetime.fromisoformat(row["created_at"]),
        merged_at=datetime.fromisoformat(row["merged_at"]),
    )


class SQLiteMemoryBackend(MemoryBackend):
    """Durable memory store in a single SQLite file.

    sqlite3 calls are blocking, so each one runs in a worker thread. A lock
    serializes access to the shared connection.
    """

    supports_vectors = True

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    def _open(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.executescript(_SCHEMA)
        conn.commit()
        return conn

    async def connect(self) -> None:
        async with self._lock:
            if self._conn is None:
                self._conn = await asyncio.to_thread(self._open)
                logger.info("Memory database opened", db_path=self.db_path)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await asyncio.to_thread(self._conn.close)
                self._conn = None

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise UpstreamUnavailable("Memory database is not connected", code="MEMORY_UNAVAILABLE")
        return self._conn

    async def put(self, entry: MemoryEntry) -> None:
        conn = self._require()

        def _write():
            conn.execute(
                f"INSERT OR REPLACE INTO memories ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _to_row(entry)
            )
            conn.commit()

        async with self._lock:
            await asyncio.to_thread(_write)

    async def get(self, entry_id: str) -> Optional[MemoryEntry]:
        conn = self._require()

        def _read():
            return conn.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE subchat_id = ?", (entry_id,)
            ).fetchone()

        async with self._lock:
            row = await asyncio.to_thread(_read)
        return _from_row(row) if row else None

    async def remove(self, entry_id: str) -> bool:
        conn = self._require()

        def _delete():
            cursor = conn.execute("DELETE FROM memories WHERE subchat_id = ?", (entry_id,))
            conn.commit()
            return cursor.rowcount > 0

        async with self._lock:
            return await asyncio.to_thread(_delete)

    async def entries(self, user_id: Optional[str] = None) -> List[MemoryEntry]:
        conn = self._require()

        def _read_all():
            if user_id is None:
                return conn.execute(f"SELECT {_COLUMNS} FROM memories").fetchall()
            return conn.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE user_id = ?", (user_id,)
            ).fetchall()

        async with self._lock:
            rows = await asyncio.to_thread(_read_all)
        return [_from_row(row) for row in rows]
