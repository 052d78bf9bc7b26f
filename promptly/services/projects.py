"""Project lifecycle: registry, runtime map, caches and sessions kept in step."""
from __future__ import annotations

import logging
from typing import MutableMapping, Optional

from promptly.cache.coherence import CacheBuildError, CacheCoherenceManager
from promptly.git.urls import DEFAULT_BRANCH, redact_git_url
from promptly.models import Project, ProjectInfo, utc_now
from promptly.project_manager import (
    DuplicateProjectError,
    ProjectNotFoundError,
    ProjectRegistry,
    normalize_entry,
)
from promptly.sessions import SessionRegistry

logger = logging.getLogger("promptly.projects")


class ProjectService:
    def __init__(
        self,
        registry: ProjectRegistry,
        projects: MutableMapping[str, Project],
        coherence: CacheCoherenceManager,
        sessions: SessionRegistry,
        *,
        delete_abandoned_checkouts: bool = False,
    ):
        self.registry = registry
        self.projects = projects
        self.coherence = coherence
        self.sessions = sessions
        self.delete_abandoned_checkouts = delete_abandoned_checkouts

    def list(self) -> list[ProjectInfo]:
        return [project.to_info() for project in self.projects.values()]

    def get(self, project_id: str) -> Project:
        project = self.projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def _build_cache(self, project: Project) -> None:
        """Initial cache for a fresh checkout. Failure leaves the project stale
        so the next chat request retries."""
        if project.status != "ready":
            return
        try:
            await self.coherence.ensure_fresh(project)
        except CacheBuildError as exc:
            project.cacheStale = True
            logger.warning("Initial cache for project %s not built: %s", project.id, exc)

    async def add(
        self, git_url: str, branch: Optional[str] = None, access_token: Optional[str] = None
    ) -> Project:
        project = await self.registry.add(git_url, branch or DEFAULT_BRANCH, access_token)
        self.projects[project.id] = project
        await self._build_cache(project)
        return project

    async def remove(self, project_id: str, *, delete_checkout: bool = False) -> int:
        """Unregister a project. Returns the number of sessions dropped."""
        self.registry.remove(project_id, delete_checkout=delete_checkout)
        cleared = self.sessions.invalidate_for_project(project_id)
        project = self.projects.pop(project_id, None)
        if project is not None:
            await self.coherence.discard(project)
        return cleared

    async def edit(
        self,
        project_id: str,
        git_url: str,
        branch: Optional[str] = None,
        access_token: Optional[str] = None,
        clear_token: bool = False,
    ) -> Project:
        """Change a project's URL, branch or token.

        When the derived id is unchanged the project is updated in place.
        Otherwise the new checkout is cloned first and nothing is persisted
        if that clone fails; the old checkout is abandoned (or deleted).
        """
        current = self.get(project_id)
        if clear_token:
            token = None
        else:
            token = (access_token or "").strip() or current.accessToken
        entry = normalize_entry(git_url, branch or current.branch, token)
        new_id = entry.project_id

        if new_id == project_id:
            self.registry.replace_entry(project_id, entry)
            current.gitUrl = entry.clean_url
            current.branch = entry.effective_branch
            current.lastUpdated = utc_now()
            current.cacheStale = True
            self.sessions.invalidate_for_project(project_id)
            logger.info("Updated project %s in place", project_id)
            return current

        if self.registry.find_index(self.registry.load(), new_id) != -1:
            raise DuplicateProjectError(
                "Another project already uses that Git URL, branch, and access token combination"
            )

        replacement = self.registry.project_for(entry)
        await self.registry.clone_into(replacement, replace=True)
        replacement.status = "ready"
        replacement.lastUpdated = utc_now()

        self.registry.replace_entry(project_id, entry)
        self.projects.pop(project_id, None)
        self.projects[new_id] = replacement
        self.sessions.invalidate_for_project(project_id)
        await self._build_cache(replacement)
        await self.coherence.discard(current)
        # Turns already in flight on the old id may have opened sessions meanwhile.
        self.sessions.invalidate_for_project(project_id)
        if self.delete_abandoned_checkouts:
            self.registry.delete_checkout(project_id)
        logger.info(
            "Project %s replaced by %s (%s, %s)",
            project_id,
            new_id,
            redact_git_url(replacement.gitUrl),
            replacement.branch,
        )
        return replacement

    async def refresh_cache(self, project_id: str) -> tuple[str, int]:
        """Forced cache rebuild. Returns the new cache name and sessions dropped."""
        project = self.get(project_id)
        handle, cleared = await self.coherence.refresh(project)
        return handle.name, cleared
