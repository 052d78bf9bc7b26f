"""Project registry: the durable list of configured repositories.

The JSON configuration file is the source of truth. Runtime state (status,
cache handles, staleness) lives on the in-memory ``Project`` objects that
``initialize_all`` and ``add`` hand back to the caller.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from promptly.git.operations import GitOperationError, GitOperations
from promptly.git.urls import (
    DEFAULT_BRANCH,
    GitUrlError,
    is_https_url,
    redact_git_url,
    split_credentials,
)
from promptly.models import Project, ProjectConfigEntry, ProjectsConfigFile, utc_now

logger = logging.getLogger("promptly.projects")


class ProjectConfigError(ValueError):
    """Rejected configuration (bad URL, token on a non-HTTPS URL)."""


class DuplicateProjectError(ProjectConfigError):
    pass


class ProjectNotFoundError(KeyError):
    def __str__(self) -> str:
        return f"Project not found: {self.args[0]}" if self.args else "Project not found"


def normalize_entry(
    git_url: str, branch: Optional[str] = None, access_token: Optional[str] = None
) -> ProjectConfigEntry:
    """Validate user input and separate any embedded credential from the URL."""
    raw_url = (git_url or "").strip()
    if not raw_url:
        raise ProjectConfigError("Git URL is required")
    clean_url, embedded = split_credentials(raw_url)
    token = (access_token or "").strip() or embedded
    if token and not is_https_url(clean_url):
        raise ProjectConfigError(
            "When using a Personal Access Token, Git URL must use HTTPS format "
            "(e.g., https://github.com/user/repo.git)"
        )
    return ProjectConfigEntry(
        gitUrl=clean_url,
        branch=(branch or "").strip() or DEFAULT_BRANCH,
        accessToken=token or None,
    )


class ProjectRegistry:
    """Mediates add/remove/list against the persisted configuration file."""

    def __init__(self, config_path: Path, checkout_dir: Path, git: GitOperations):
        self.config_path = Path(config_path)
        self.checkout_dir = Path(checkout_dir)
        self.git = git

    # ── persistence ────────────────────────────────────────────────

    def load(self) -> ProjectsConfigFile:
        """Read the configuration; a missing or empty file is an empty list."""
        if not self.config_path.exists():
            return ProjectsConfigFile()
        content = self.config_path.read_text(encoding="utf-8")
        if not content.strip():
            return ProjectsConfigFile()
        return ProjectsConfigFile.model_validate(json.loads(content))

    def save(self, data: ProjectsConfigFile) -> None:
        """Write atomically so a crash mid-write never truncates the registry."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        payload = data.model_dump(exclude_none=True)
        tmp_path = self.config_path.with_name(f".{self.config_path.name}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.config_path)

    def checkout_path(self, project_id: str) -> Path:
        return self.checkout_dir / project_id

    def find_index(self, data: ProjectsConfigFile, project_id: str) -> int:
        for index, entry in enumerate(data.projects):
            if entry.project_id == project_id:
                return index
        return -1

    def project_for(self, entry: ProjectConfigEntry, status: str = "cloning") -> Project:
        project_id = entry.project_id
        return Project(
            gitUrl=entry.clean_url,
            branch=entry.effective_branch,
            path=str(self.checkout_path(project_id)),
            accessToken=entry.token,
            status=status,
        )

    # ── lifecycle ──────────────────────────────────────────────────

    async def clone_into(self, project: Project, *, replace: bool = False) -> None:
        """Clone ``project`` into its path. An existing directory is left untouched
        unless ``replace`` is set."""
        target = Path(project.path)
        if target.exists():
            if not replace:
                logger.info("Project directory already exists: %s", target)
                return
            shutil.rmtree(target)
        try:
            await self.git.clone(project.gitUrl, str(target), project.branch, project.accessToken)
        except GitUrlError as exc:
            raise ProjectConfigError(str(exc)) from exc

    async def _clone_with_status(self, project: Project) -> Project:
        try:
            await self.clone_into(project)
            project.status = "ready"
            project.errorMessage = None
        except (GitOperationError, ProjectConfigError, OSError) as exc:
            logger.error("Failed to clone project %s: %s", project.id, exc)
            project.status = "error"
            project.errorMessage = str(exc)
        project.lastUpdated = utc_now()
        return project

    async def add(
        self,
        git_url: str,
        branch: str = DEFAULT_BRANCH,
        access_token: Optional[str] = None,
    ) -> Project:
        """Register and clone a project.

        Validation and duplicate detection happen before anything is written.
        The entry is persisted before cloning so a crash mid-clone keeps the
        registration; a clone failure yields a project in ``error`` status.
        """
        entry = normalize_entry(git_url, branch, access_token)
        project_id = entry.project_id
        data = self.load()
        if self.find_index(data, project_id) != -1:
            raise DuplicateProjectError(
                f"Project with git URL {entry.gitUrl} and branch {entry.effective_branch} already exists"
            )

        data.projects.append(entry)
        self.save(data)
        logger.info("Registered project %s: %s (%s)", project_id, redact_git_url(entry.gitUrl), entry.effective_branch)

        return await self._clone_with_status(self.project_for(entry))

    def remove(self, project_id: str, *, delete_checkout: bool = False) -> None:
        """Drop the configuration entry. The checkout survives unless asked otherwise."""
        data = self.load()
        remaining = [entry for entry in data.projects if entry.project_id != project_id]
        if len(remaining) == len(data.projects):
            raise ProjectNotFoundError(project_id)
        data.projects = remaining
        self.save(data)
        if delete_checkout:
            self.delete_checkout(project_id)
        logger.info("Removed project %s", project_id)

    def delete_checkout(self, project_id: str) -> None:
        path = self.checkout_path(project_id)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            logger.info("Deleted checkout %s", path)

    def replace_entry(self, project_id: str, entry: ProjectConfigEntry) -> None:
        """Overwrite the entry for ``project_id`` in place, keeping file order."""
        data = self.load()
        index = self.find_index(data, project_id)
        if index == -1:
            raise ProjectNotFoundError(project_id)
        new_id = entry.project_id
        if new_id != project_id and any(
            other.project_id == new_id for i, other in enumerate(data.projects) if i != index
        ):
            raise DuplicateProjectError(
                "Another project already uses that Git URL, branch, and access token combination"
            )
        data.projects[index] = entry
        self.save(data)

    async def initialize_all(self) -> dict[str, Project]:
        """Load configuration and make sure every project has a checkout.

        Raises only on structural failures (unreadable configuration,
        unwritable checkout root); a failed clone marks that project ``error``.
        """
        self.checkout_dir.mkdir(parents=True, exist_ok=True)
        data = self.load()
        projects: dict[str, Project] = {}
        for entry in data.projects:
            project = self.project_for(entry)
            if project.id in projects:
                logger.warning("Skipping duplicate configuration entry for %s", project.id)
                continue
            projects[project.id] = await self._clone_with_status(project)
            logger.info("Initialized project %s: %s [%s]", project.id, redact_git_url(project.gitUrl), project.status)
        return projects
