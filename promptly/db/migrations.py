"""History store schema creation and versioning.

Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("promptly.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── Completed chat turns ───────────────────────────────────────────
CREATE TABLE IF NOT EXISTS chat_history (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id          TEXT NOT NULL,
    project_id          TEXT NOT NULL,
    mode                TEXT NOT NULL DEFAULT 'enhance',
    timestamp           TEXT NOT NULL,
    request             TEXT NOT NULL,
    response            TEXT NOT NULL,
    message_count       INTEGER DEFAULT 0,
    cached_content_name TEXT,
    model               TEXT DEFAULT '',
    project_path        TEXT DEFAULT '',
    git_url             TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_history_project ON chat_history(project_id, mode, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_history_session ON chat_history(session_id, timestamp DESC);
"""


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("History schema is up to date (version %s)", current_version)
        return

    logger.info("Running history migrations: %s → %s", current_version, SCHEMA_VERSION)
    await db.executescript(_TABLES)
    await db.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    await db.commit()
