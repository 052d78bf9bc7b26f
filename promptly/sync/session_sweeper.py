"""Hourly eviction of idle chat sessions."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from promptly.sessions import SessionRegistry

logger = logging.getLogger("promptly.sessions")


class SessionSweeper:
    def __init__(self, sessions: SessionRegistry, interval_seconds: float, max_age_seconds: float):
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self.max_age_seconds = max_age_seconds
        self._task: Optional[asyncio.Task] = None

    def run_once(self) -> int:
        evicted = self.sessions.evict_idle(self.max_age_seconds)
        logger.info("Session sweep: %d evicted, %d active", evicted, len(self.sessions))
        return evicted

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.run_once()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Session sweeper started (interval=%ss, max idle=%ss)",
            self.interval_seconds,
            self.max_age_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None
