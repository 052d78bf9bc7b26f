"""Keeps every chat session backed by a live, reasonably fresh context cache.

Rebuilds are lazy: the sync loop only flags a project stale, and the next
request that needs the cache pays for the rebuild. A per-project lock
serializes rebuilds, and every caller re-checks after acquiring it so
concurrent requests share a single rebuild.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Iterable

from promptly.cache.context_builder import ContextBuilder
from promptly.cache.prompts import load_prompt
from promptly.cache.provider import ChatProvider, ProviderError, is_cache_expired_error
from promptly.models import CacheHandle, Project
from promptly.observability import record_cache_build, record_cache_expiry_recovery, start_span
from promptly.sessions import ChatSession, SessionKey, SessionRegistry

logger = logging.getLogger("promptly.cache")


class ProjectNotReadyError(RuntimeError):
    def __init__(self, project: Project):
        super().__init__(
            f"Project {project.id} is not ready (status: {project.status})"
            + (f": {project.errorMessage}" if project.errorMessage else "")
        )
        self.project_id = project.id
        self.status = project.status


class CacheBuildError(RuntimeError):
    def __init__(self, project_id: str, message: str):
        super().__init__(f"Failed to build context cache for project {project_id}: {message}")
        self.project_id = project_id


class CacheCoherenceManager:
    def __init__(
        self,
        provider: ChatProvider,
        context_builder: ContextBuilder,
        sessions: SessionRegistry,
        prompts_dir: Path,
        ttl_seconds: int,
    ):
        self.provider = provider
        self.context_builder = context_builder
        self.sessions = sessions
        self.prompts_dir = Path(prompts_dir)
        self.ttl_seconds = ttl_seconds
        self.build_count = 0
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def forget(self, project_id: str) -> None:
        self._locks.pop(project_id, None)

    @staticmethod
    def _require_ready(project: Project) -> None:
        if project.status != "ready":
            raise ProjectNotReadyError(project)

    async def _rebuild(self, project: Project, reason: str) -> CacheHandle:
        """Build a new cache for ``project``. Caller holds the project lock.

        The stale flag is cleared before building so a sync tick that flags
        the project again mid-build is not lost.
        """
        previous = project.cacheHandle
        project.cacheStale = False
        started = time.monotonic()
        logger.info("Building context cache for project %s (reason=%s)", project.id, reason)
        with start_span("cache.build", {"project.id": project.id, "cache.reason": reason}):
            try:
                document = await self.context_builder.build(project.path)
                instruction = load_prompt(self.prompts_dir, project.path, "enhance")
                handle = await self.provider.create_cache(instruction, document, self.ttl_seconds)
            except Exception as exc:
                project.cacheStale = True
                duration_ms = (time.monotonic() - started) * 1000
                record_cache_build(project.id, reason, "failed", duration_ms)
                logger.error("Context cache build failed for project %s: %s", project.id, exc)
                raise CacheBuildError(project.id, str(exc)) from exc
            except BaseException:
                project.cacheStale = True
                raise

        self.build_count += 1
        project.cacheHandle = handle
        cleared = self.sessions.invalidate_for_project(project.id)
        duration_ms = (time.monotonic() - started) * 1000
        record_cache_build(project.id, reason, "success", duration_ms)
        logger.info(
            "Context cache %s ready for project %s in %.0fms (%d session(s) cleared)",
            handle.name,
            project.id,
            duration_ms,
            cleared,
        )
        if previous is not None and previous.name != handle.name and reason != "expired":
            await self.provider.delete_cache(previous)
        return handle

    async def ensure_fresh(self, project: Project) -> CacheHandle:
        """Return a cache handle built from the project's current content."""
        self._require_ready(project)
        async with self._lock_for(project.id):
            if project.cacheHandle is not None and not project.cacheStale:
                return project.cacheHandle
            reason = "stale" if project.cacheHandle is not None else "missing"
            return await self._rebuild(project, reason)

    async def handle_provider_expiry(self, project: Project, failed_cache_name: str) -> CacheHandle:
        """Replace a cache the provider discarded. A no-op rebuild-wise when
        another task already replaced ``failed_cache_name``."""
        async with self._lock_for(project.id):
            current = project.cacheHandle
            if current is not None and current.name != failed_cache_name:
                logger.info(
                    "Cache %s for project %s already replaced by %s",
                    failed_cache_name,
                    project.id,
                    current.name,
                )
                return current
            logger.warning("Context cache %s for project %s expired; rebuilding", failed_cache_name, project.id)
            return await self._rebuild(project, "expired")

    async def refresh(self, project: Project) -> tuple[CacheHandle, int]:
        """Forced rebuild regardless of staleness. Returns the handle and the
        number of sessions that were dropped."""
        self._require_ready(project)
        cleared = self.sessions.invalidate_for_project(project.id)
        async with self._lock_for(project.id):
            handle = await self._rebuild(project, "manual")
        return handle, cleared

    async def get_session(self, key: SessionKey, project: Project) -> ChatSession:
        handle = await self.ensure_fresh(project)
        session = self.sessions.get(key)
        if session is not None and session.cache_name != handle.name:
            self.sessions.remove(key)
        instruction = load_prompt(self.prompts_dir, project.path, key.mode)
        return self.sessions.get_or_create(
            key, lambda: self.provider.start_session(handle, instruction)
        )

    async def send_with_retry(
        self, key: SessionKey, project: Project, message: str
    ) -> tuple[ChatSession, str]:
        """Send one turn; on an expired-cache failure rebuild and retry once."""
        session = await self.get_session(key, project)
        try:
            return session, await self.provider.send(session.provider_session, message)
        except ProviderError as exc:
            if not is_cache_expired_error(exc):
                raise
            failed_cache = session.cache_name
            logger.warning("Chat turn for %s hit expired cache %s: %s", key, failed_cache, exc)

        await self.handle_provider_expiry(project, failed_cache)
        session = await self.get_session(key, project)
        try:
            response = await self.provider.send(session.provider_session, message)
        except ProviderError:
            record_cache_expiry_recovery(project.id, "failed")
            raise
        record_cache_expiry_recovery(project.id, "success")
        return session, response

    def mark_stale(self, project: Project) -> None:
        project.cacheStale = True

    def mark_all_stale(self, projects: Iterable[Project]) -> int:
        count = 0
        for project in projects:
            project.cacheStale = True
            count += 1
        return count

    async def prewarm(self, projects: Iterable[Project]) -> None:
        for project in projects:
            if project.status != "ready":
                continue
            try:
                await self.ensure_fresh(project)
            except CacheBuildError as exc:
                logger.warning("Cache pre-warm failed for project %s: %s", project.id, exc)

    async def discard(self, project: Project) -> None:
        """Forget a project that left the registry and drop its provider cache."""
        self.forget(project.id)
        handle, project.cacheHandle = project.cacheHandle, None
        if handle is not None:
            await self.provider.delete_cache(handle)
