"""SQLite database management for the Door Access Edge Service.

Provides async database operations using aiosqlite.

Tables:
- access_state: single row holding the access state JSON document
- audit_event: local audit trail of bookmarked events
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from config import get_config

logger = logging.getLogger(__name__)

# Database connection
_db: Optional[aiosqlite.Connection] = None


# --- Schema Definitions ---

# NOTE: exactly one row (id = 1); the document is replaced as a whole per write
SCHEMA_ACCESS_STATE = """
CREATE TABLE IF NOT EXISTS access_state (
    id            INTEGER PRIMARY KEY CHECK (id = 1),
    document      TEXT NOT NULL,
    updated_at    INTEGER NOT NULL
);
"""

SCHEMA_AUDIT_EVENT = """
CREATE TABLE IF NOT EXISTS audit_event (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT NOT NULL,
    message       TEXT NOT NULL,
    tags          TEXT NOT NULL,
    created_at    INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_event_created_at ON audit_event(created_at);
CREATE INDEX IF NOT EXISTS idx_audit_event_name ON audit_event(name);
"""


async def init_db(sqlite_path: Optional[str] = None) -> aiosqlite.Connection:
    """Initialize database connection and create tables.

    Args:
        sqlite_path: Optional database path. Uses configured path if not provided.

    Returns:
        Database connection instance.
    """
    global _db

    db_path = Path(sqlite_path or get_config().storage.sqlite_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Initializing database at: {db_path}")

    _db = await aiosqlite.connect(str(db_path))
    _db.row_factory = aiosqlite.Row

    # WAL keeps readers from blocking the single writer
    await _db.execute("PRAGMA journal_mode = WAL")
    await _db.execute("PRAGMA synchronous = FULL")

    await _db.executescript(SCHEMA_ACCESS_STATE)
    await _db.executescript(SCHEMA_AUDIT_EVENT)
    await _db.commit()

    logger.info("Database initialized successfully")
    return _db


async def get_db() -> aiosqlite.Connection:
    """Get database connection.

    Returns:
        Active database connection.

    Raises:
        RuntimeError: If database not initialized.
    """
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _db


async def close_db() -> None:
    """Close database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed")


# --- Access State Operations ---


async def read_state_document() -> Optional[str]:
    """Read the raw access state document.

    Returns:
        Stored JSON text, or None if nothing has been written yet.
    """
    db = await get_db()

    async with db.execute("SELECT document FROM access_state WHERE id = 1") as cursor:
        row = await cursor.fetchone()
        return row["document"] if row else None


async def write_state_document(document: str) -> None:
    """Replace the access state document in one transaction.

    Args:
        document: Serialized JSON document.
    """
    db = await get_db()
    now = int(time.time())

    await db.execute(
        """
        INSERT INTO access_state (id, document, updated_at)
        VALUES (1, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            document = excluded.document,
            updated_at = excluded.updated_at
        """,
        (document, now),
    )
    await db.commit()


# --- Audit Event Operations ---


async def insert_audit_event(name: str, message: str, tags: list[str]) -> int:
    """Insert audit event record.

    Args:
        name: Short event name.
        message: Full human readable description.
        tags: Normalized tag list.

    Returns:
        ID of inserted record.
    """
    db = await get_db()
    now = int(time.time())

    cursor = await db.execute(
        "INSERT INTO audit_event (name, message, tags, created_at) VALUES (?, ?, ?, ?)",
        (name, message, json.dumps(tags, ensure_ascii=False), now),
    )
    await db.commit()
    return cursor.lastrowid or 0


async def get_audit_count_24h() -> int:
    """Get count of audit events in last 24 hours."""
    db = await get_db()
    day_ago = int(time.time()) - 86400

    async with db.execute(
        "SELECT COUNT(*) as count FROM audit_event WHERE created_at >= ?",
        (day_ago,),
    ) as cursor:
        row = await cursor.fetchone()
        return row["count"] if row else 0


async def cleanup_old_audit_events(max_age_seconds: int) -> int:
    """Remove audit events older than the retention window.

    Args:
        max_age_seconds: Maximum age of events to keep.

    Returns:
        Number of events deleted.
    """
    db = await get_db()
    cutoff = int(time.time()) - max_age_seconds

    cursor = await db.execute("DELETE FROM audit_event WHERE created_at < ?", (cutoff,))
    await db.commit()

    deleted = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
    if deleted > 0:
        logger.info(f"Cleaned up {deleted} old audit events")
    return deleted


async def get_audit_events_paginated(
    page: int = 1,
    limit: int = 50,
    from_ts: Optional[int] = None,
    to_ts: Optional[int] = None,
) -> tuple[list[dict[str, Any]], int]:
    """Get paginated audit events, newest first.

    Args:
        page: Page number (1-based).
        limit: Items per page.
        from_ts: Optional start timestamp filter.
        to_ts: Optional end timestamp filter.

    Returns:
        Tuple of (list of event dicts with decoded tags, total count).
    """
    db = await get_db()
    offset = (page - 1) * limit

    conditions = []
    params: list[Any] = []

    if from_ts:
        conditions.append("created_at >= ?")
        params.append(from_ts)
    if to_ts:
        conditions.append("created_at <= ?")
        params.append(to_ts)

    where_clause = " AND ".join(conditions) if conditions else "1=1"

    async with db.execute(
        f"SELECT COUNT(*) as count FROM audit_event WHERE {where_clause}",
        params,
    ) as cursor:
        row = await cursor.fetchone()
        total = row["count"] if row else 0

    async with db.execute(
        f"""
        SELECT * FROM audit_event
        WHERE {where_clause}
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ) as cursor:
        rows = await cursor.fetchall()

    items = []
    for row in rows:
        item = dict(row)
        item["tags"] = json.loads(item["tags"] or "[]")
        items.append(item)

    return items, total
