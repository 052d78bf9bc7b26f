"""SQLite chat history repository."""
from __future__ import annotations

import logging
from typing import Optional

import aiosqlite

from promptly.models import HistoryEntry

logger = logging.getLogger("promptly.db")


class SqliteHistoryRepository:
    """Append-only record of completed chat turns."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def record(
        self,
        entry: HistoryEntry,
        *,
        model: str = "",
        project_path: str = "",
        git_url: str = "",
    ) -> None:
        await self.db.execute(
            """INSERT INTO chat_history (
                session_id, project_id, mode, timestamp, request, response,
                message_count, cached_content_name, model, project_path, git_url
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.sessionId,
                entry.projectId,
                entry.mode,
                entry.timestamp.isoformat(),
                entry.request,
                entry.response,
                entry.messageCount,
                entry.cachedContentName,
                model,
                project_path,
                git_url,
            ),
        )
        await self.db.commit()

    async def list_recent(
        self, project_id: str, mode: Optional[str] = None, limit: int = 10
    ) -> list[HistoryEntry]:
        query = "SELECT * FROM chat_history WHERE project_id = ?"
        params: list = [project_id]
        if mode:
            query += " AND mode = ?"
            params.append(mode)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(max(0, int(limit)))
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [
            HistoryEntry(
                sessionId=row["session_id"],
                projectId=row["project_id"],
                mode=row["mode"],
                timestamp=row["timestamp"],
                request=row["request"],
                response=row["response"],
                messageCount=row["message_count"] or 0,
                cachedContentName=row["cached_content_name"],
            )
            for row in rows
        ]

