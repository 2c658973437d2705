"""SQLite-backed log of flushed activity entries, kept for later inspection."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

import aiosqlite

from branchsync.utils import ACTIVITY_DB_PATH, ACTIVITY_RETENTION

if TYPE_CHECKING:
    from branchsync.activity import ActivityEntry

log = logging.getLogger(__name__)


class ActivityLog:
    """Flushed activity entries per turn, kept in SQLite via aiosqlite."""

    def __init__(self, db_path: Path = ACTIVITY_DB_PATH) -> None:
        self._db_path = db_path
        self._schema_ensured = False
        self._conn: aiosqlite.Connection | None = None

    async def _get_conn(self) -> aiosqlite.Connection:
        """Return persistent connection, creating it lazily on first use."""
        if self._conn is not None:
            return self._conn
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self._db_path))
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        if not self._schema_ensured:
            self._schema_ensured = True
            await self._ensure_schema(conn)
        self._conn = conn
        return conn

    async def close(self) -> None:
        """Close the persistent connection. Call on shutdown."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _ensure_schema(self, conn: aiosqlite.Connection) -> None:
        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS activity_entries (
                id               INTEGER PRIMARY KEY AUTOINCREMENT,
                activity_key     TEXT NOT NULL,
                conversation_key TEXT NOT NULL,
                session_id       TEXT,
                entry_type       TEXT NOT NULL,
                tool_name        TEXT,
                entry_json       TEXT NOT NULL,
                created_at       TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_activity_key
                ON activity_entries(activity_key, id);

            CREATE INDEX IF NOT EXISTS idx_activity_conversation
                ON activity_entries(conversation_key, id DESC);
        """)
        await conn.commit()

    async def append(
        self,
        activity_key: str,
        conversation_key: str,
        session_id: str | None,
        entries: Iterable[ActivityEntry],
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (activity_key, conversation_key, session_id, e.type, e.tool, json.dumps(asdict(e)), now)
            for e in entries
        ]
        if not rows:
            return 0
        conn = await self._get_conn()
        await conn.executemany(
            "INSERT INTO activity_entries "
            "(activity_key, conversation_key, session_id, entry_type, tool_name, entry_json, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        # Auto-prune per conversation
        await conn.execute(
            "DELETE FROM activity_entries WHERE conversation_key = ? AND id NOT IN "
            "(SELECT id FROM activity_entries WHERE conversation_key = ? ORDER BY id DESC LIMIT ?)",
            (conversation_key, conversation_key, ACTIVITY_RETENTION),
        )
        await conn.commit()
        return len(rows)

    async def get(self, activity_key: str) -> list[dict[str, Any]]:
        conn = await self._get_conn()
        rows = await (await conn.execute(
            "SELECT entry_json FROM activity_entries WHERE activity_key = ? ORDER BY id",
            (activity_key,),
        )).fetchall()
        return [json.loads(r["entry_json"]) for r in rows]

    async def list_for_conversation(self, conversation_key: str, limit: int = 50) -> list[dict[str, Any]]:
        conn = await self._get_conn()
        rows = await (await conn.execute(
            "SELECT id, activity_key, session_id, entry_type, tool_name, created_at "
            "FROM activity_entries WHERE conversation_key = ? ORDER BY id DESC LIMIT ?",
            (conversation_key, limit),
        )).fetchall()
        return [dict(r) for r in rows]

    async def clear(self, conversation_key: str) -> None:
        conn = await self._get_conn()
        await conn.execute("DELETE FROM activity_entries WHERE conversation_key = ?", (conversation_key,))
        await conn.commit()
