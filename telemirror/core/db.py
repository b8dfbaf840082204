"""SQLite mapping store - delivered records, offsets and activity logs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Sequence

import aiosqlite

from telemirror.core.activity_log import merge_activity_logs
from telemirror.core.models import ActivityEntry

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS delivered_items (
    conversation_key TEXT NOT NULL,
    item_key TEXT NOT NULL,
    message_uuid TEXT NOT NULL,
    delivered_ref TEXT,
    kind TEXT NOT NULL,
    origin TEXT NOT NULL DEFAULT 'mirror',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (conversation_key, item_key)
);
CREATE INDEX IF NOT EXISTS idx_delivered_uuid ON delivered_items(conversation_key, message_uuid);

CREATE TABLE IF NOT EXISTS offsets (
    conversation_key TEXT PRIMARY KEY,
    byte_offset INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS activity_logs (
    activity_key TEXT PRIMARY KEY,
    entries_json TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS sink_inputs (
    conversation_key TEXT NOT NULL,
    message_uuid TEXT NOT NULL,
    PRIMARY KEY (conversation_key, message_uuid)
);
"""


class MappingDb:
    """`MappingStore` backed by SQLite."""

    def __init__(self, db_path: str) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Connect and create tables."""
        target = self.db_path
        if target != ":memory:":
            path = Path(target).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path)
        self._db = await aiosqlite.connect(target)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get database connection, asserting it's initialized.

        Raises:
            RuntimeError: If database not initialized
        """
        if self._db is None:
            raise RuntimeError("Database not initialized - call initialize() first")
        return self._db

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # Delivered records

    async def get_delivered_identifiers(self, conversation_key: str) -> set[str]:
        cursor = await self.conn.execute(
            "SELECT DISTINCT message_uuid FROM delivered_items WHERE conversation_key = ?",
            (conversation_key,),
        )
        rows = await cursor.fetchall()
        return {str(row["message_uuid"]) for row in rows}

    async def record_delivered(  # pylint: disable=too-many-arguments
        self,
        conversation_key: str,
        item_key: str,
        message_uuid: str,
        *,
        delivered_ref: Optional[str] = None,
        kind: str = "text",
        origin: str = "mirror",
    ) -> None:
        """Record one delivered record (idempotent on item_key)."""
        await self.conn.execute(
            """
            INSERT OR IGNORE INTO delivered_items (
                conversation_key, item_key, message_uuid, delivered_ref, kind, origin
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (conversation_key, item_key, message_uuid, delivered_ref, kind, origin),
        )
        await self.conn.commit()

    async def get_delivered_ref(
        self, conversation_key: str, message_uuid: str, *, kind: Optional[str] = None
    ) -> Optional[str]:
        """Sink reference of the item carrying a record, if any.

        With `kind`, only items of that kind ("activity", "text", ...) match.
        """
        query = """
            SELECT delivered_ref FROM delivered_items
            WHERE conversation_key = ? AND message_uuid = ? AND delivered_ref IS NOT NULL
        """
        params: list[str] = [conversation_key, message_uuid]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind)
        cursor = await self.conn.execute(query + " ORDER BY created_at DESC LIMIT 1", params)
        row = await cursor.fetchone()
        return str(row["delivered_ref"]) if row else None

    # Sink-originated input

    async def mark_sink_originated(self, conversation_key: str, message_uuid: str) -> None:
        """Remember that a user input was typed in the sink itself."""
        await self.conn.execute(
            "INSERT OR IGNORE INTO sink_inputs (conversation_key, message_uuid) VALUES (?, ?)",
            (conversation_key, message_uuid),
        )
        await self.conn.commit()

    async def is_sink_originated(self, conversation_key: str, record_uuid: str) -> bool:
        cursor = await self.conn.execute(
            "SELECT 1 FROM sink_inputs WHERE conversation_key = ? AND message_uuid = ?",
            (conversation_key, record_uuid),
        )
        return await cursor.fetchone() is not None

    # Offsets

    async def get_offset(self, conversation_key: str) -> int:
        """Persisted byte offset, 0 when none."""
        cursor = await self.conn.execute(
            "SELECT byte_offset FROM offsets WHERE conversation_key = ?",
            (conversation_key,),
        )
        row = await cursor.fetchone()
        return int(row["byte_offset"]) if row else 0

    async def set_offset(self, conversation_key: str, byte_offset: int) -> int:
        """Advance the offset. Never moves backwards; returns the stored value."""
        await self.conn.execute(
            """
            INSERT INTO offsets (conversation_key, byte_offset, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(conversation_key) DO UPDATE SET
                byte_offset = MAX(offsets.byte_offset, excluded.byte_offset),
                updated_at = CURRENT_TIMESTAMP
            """,
            (conversation_key, byte_offset),
        )
        await self.conn.commit()
        return await self.get_offset(conversation_key)

    # Activity logs

    async def get_activity_log(self, activity_key: str) -> list[ActivityEntry]:
        cursor = await self.conn.execute(
            "SELECT entries_json FROM activity_logs WHERE activity_key = ?",
            (activity_key,),
        )
        row = await cursor.fetchone()
        if not row:
            return []
        raw_entries = json.loads(str(row["entries_json"]))
        return [ActivityEntry.from_dict(item) for item in raw_entries if isinstance(item, dict)]

    async def merge_activity_log(self, activity_key: str, entries: Sequence[ActivityEntry]) -> None:
        """Merge entries into the stored log, deduplicating across runs."""
        merged = merge_activity_logs(await self.get_activity_log(activity_key), entries)
        await self.conn.execute(
            """
            INSERT INTO activity_logs (activity_key, entries_json, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(activity_key) DO UPDATE SET
                entries_json = excluded.entries_json,
                updated_at = CURRENT_TIMESTAMP
            """,
            (activity_key, json.dumps([entry.to_dict() for entry in merged])),
        )
        await self.conn.commit()

    async def reset_conversation(self, conversation_key: str) -> None:
        """Forget everything about a conversation (sink reconfigured)."""
        await self.conn.execute("DELETE FROM delivered_items WHERE conversation_key = ?", (conversation_key,))
        await self.conn.execute("DELETE FROM offsets WHERE conversation_key = ?", (conversation_key,))
        await self.conn.execute("DELETE FROM sink_inputs WHERE conversation_key = ?", (conversation_key,))
        await self.conn.execute(
            "DELETE FROM activity_logs WHERE activity_key LIKE ? ESCAPE '\\'",
            (f"{conversation_key}\\_turn\\_%",),
        )
        await self.conn.commit()
        logger.info("Reset mirror state for %s", conversation_key)
