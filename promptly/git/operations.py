"""Stateless git operations over a checkout path, run through the supervisor."""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from promptly import config
from promptly.git.supervisor import CommandError, CommandResult, ProcessSupervisor
from promptly.git.urls import build_authenticated_url, clean_git_url, redact_git_url

logger = logging.getLogger("promptly.git")


class GitOperationError(Exception):
    """A git operation failed; ``__cause__`` holds the underlying CommandError."""

    def __init__(self, operation: str, repo_path: str, message: str):
        super().__init__(f"git {operation} failed for {repo_path}: {message}")
        self.operation = operation
        self.repo_path = repo_path

    @property
    def timed_out(self) -> bool:
        cause = self.__cause__
        return isinstance(cause, CommandError) and cause.timed_out


def _git_env() -> dict[str, str]:
    env = dict(os.environ)
    # Never block on an interactive credential prompt.
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_ASKPASS", "true")
    return env


class GitOperations:
    """One method per git subcommand, each with its own timeout."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        clone_timeout: float = config.GIT_CLONE_TIMEOUT_SECONDS,
        fetch_timeout: float = config.GIT_FETCH_TIMEOUT_SECONDS,
        pull_timeout: float = config.GIT_PULL_TIMEOUT_SECONDS,
        default_timeout: float = config.GIT_DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = config.GIT_MAX_OUTPUT_BYTES,
    ):
        self.supervisor = supervisor
        self.clone_timeout = clone_timeout
        self.fetch_timeout = fetch_timeout
        self.pull_timeout = pull_timeout
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes

    async def _git(
        self,
        operation: str,
        args: list[str],
        *,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        max_output_bytes: Optional[int] = None,
    ) -> CommandResult:
        try:
            return await self.supervisor.run(
                "git",
                args,
                cwd=cwd,
                env=_git_env(),
                timeout=timeout if timeout is not None else self.default_timeout,
                max_output_bytes=max_output_bytes or self.max_output_bytes,
            )
        except CommandError as exc:
            detail = redact_git_url(exc.stderr.strip() or str(exc))
            raise GitOperationError(operation, cwd or "", detail) from exc

    async def clone(
        self,
        git_url: str,
        target_path: str,
        branch: str,
        access_token: Optional[str] = None,
    ) -> None:
        """Shallow single-branch clone; the stored remote is left credential-free."""
        Path(target_path).parent.mkdir(parents=True, exist_ok=True)
        url = build_authenticated_url(git_url, access_token)
        logger.info("Cloning %s (%s) into %s", redact_git_url(url), branch, target_path)
        try:
            await self._git(
                "clone",
                ["clone", "--branch", branch, "--depth", "1", "--single-branch", url, target_path],
                timeout=self.clone_timeout,
            )
        except GitOperationError as exc:
            exc.repo_path = target_path
            raise
        if access_token:
            await self.set_remote_url(target_path, clean_git_url(git_url))

    async def fetch(self, repo_path: str, remote: str = "origin") -> None:
        await self._git("fetch", ["fetch", remote], cwd=repo_path, timeout=self.fetch_timeout)

    async def rev_parse(self, repo_path: str, ref: str) -> str:
        result = await self._git("rev-parse", ["rev-parse", ref], cwd=repo_path)
        return result.stdout.strip()

    async def pull(self, repo_path: str, branch: str, remote: str = "origin") -> None:
        await self._git("pull", ["pull", remote, branch], cwd=repo_path, timeout=self.pull_timeout)

    async def set_remote_url(self, repo_path: str, url: str, remote: str = "origin") -> None:
        await self._git("remote set-url", ["remote", "set-url", remote, url], cwd=repo_path)

    async def ls_files(self, repo_path: str) -> str:
        result = await self._git("ls-files", ["ls-files"], cwd=repo_path)
        return result.stdout

    @asynccontextmanager
    async def authenticated_remote(
        self, repo_path: str, git_url: str, access_token: Optional[str]
    ) -> AsyncIterator[None]:
        """Point ``origin`` at the token-bearing URL for the duration of the block.

        git persists the remote URL in ``.git/config``, so the token is written
        before every authenticated operation and the clean URL restored after.
        Without a token this is a no-op.
        """
        if not access_token:
            yield
            return
        await self.set_remote_url(repo_path, build_authenticated_url(git_url, access_token))
        try:
            yield
        finally:
            try:
                await self.set_remote_url(repo_path, clean_git_url(git_url))
            except GitOperationError as exc:
                logger.warning("Failed to restore clean remote for %s: %s", repo_path, exc)

    async def has_upstream_changes(self, repo_path: str, branch: str) -> bool:
        """Fetch and compare local HEAD against ``origin/<branch>``."""
        await self.fetch(repo_path)
        local = await self.rev_parse(repo_path, "HEAD")
        remote = await self.rev_parse(repo_path, f"origin/{branch}")
        return local != remote
