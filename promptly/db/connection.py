"""Database connection factory.

Provides a singleton async SQLite connection (WAL mode) for the chat history
store. The store is optional: with no path configured nothing is opened.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import aiosqlite

logger = logging.getLogger("promptly.db")

_connection: Optional[aiosqlite.Connection] = None


async def get_connection(db_path: str) -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    # WAL keeps history reads from blocking the writer.
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info("History database connection established: %s", db_path)
    _connection = conn
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("History database connection closed")
