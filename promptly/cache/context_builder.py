"""Project context document submitted to the provider cache."""
from __future__ import annotations

import logging
from pathlib import Path

from promptly.git.supervisor import CommandError, ProcessSupervisor

logger = logging.getLogger("promptly.cache")

CONFIG_FILES = (
    "package.json",
    "tsconfig.json",
    "pyproject.toml",
    ".claude/settings.json",
    "README.md",
)
PREVIEW_CHARS = 1000
TREE_LINE_LIMIT = 100
GIT_FILES_MAX_BYTES = 10 * 1024 * 1024
TREE_MAX_BYTES = 1024 * 1024
LISTING_TIMEOUT_SECONDS = 30.0
EXCLUDED_DIRS = ("node_modules", ".git", "dist")


class ContextBuilder:
    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor

    async def _git_files(self, project_dir: str) -> list[str]:
        lines = ["## Git Tracked Files"]
        try:
            result = await self.supervisor.run(
                "git",
                ["ls-files"],
                cwd=project_dir,
                timeout=LISTING_TIMEOUT_SECONDS,
                max_output_bytes=GIT_FILES_MAX_BYTES,
            )
        except CommandError as exc:
            logger.warning("Could not list git tracked files in %s: %s", project_dir, exc)
            lines.append("(Not available - not a git repository or git not installed)\n")
            return lines
        files = result.stdout.strip()
        logger.info("Found %d git-tracked files", len(files.splitlines()))
        lines.extend(["```", files, "```\n"])
        return lines

    async def _directory_tree(self, project_dir: str) -> list[str]:
        args = [".", "-type", "d"]
        for name in EXCLUDED_DIRS:
            args.extend(["-not", "-path", f"*/{name}/*", "-not", "-name", name])
        try:
            result = await self.supervisor.run(
                "find",
                args,
                cwd=project_dir,
                timeout=LISTING_TIMEOUT_SECONDS,
                max_output_bytes=TREE_MAX_BYTES,
            )
        except CommandError as exc:
            logger.warning("Could not get directory structure for %s: %s", project_dir, exc)
            return []
        tree = "\n".join(result.stdout.strip().splitlines()[:TREE_LINE_LIMIT])
        return [f"## Directory Structure (top {TREE_LINE_LIMIT})", "```", tree, "```\n"]

    @staticmethod
    def _config_previews(project_dir: str) -> list[str]:
        lines = ["## Project Configuration Files"]
        for name in CONFIG_FILES:
            path = Path(project_dir) / name
            if not path.is_file():
                continue
            lines.append(f"\n### {name}")
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                lines.append("(Could not read file)")
                continue
            if len(content) > PREVIEW_CHARS:
                content = content[:PREVIEW_CHARS] + "\n...(truncated)"
            lines.extend(["```", content, "```"])
        return lines

    async def build(self, project_dir: str) -> str:
        logger.info("Gathering project context from: %s", project_dir)
        sections = ["# PROJECT CONTEXT", f"Project Directory: {project_dir}\n"]
        sections.extend(await self._git_files(project_dir))
        sections.extend(await self._directory_tree(project_dir))
        sections.extend(self._config_previews(project_dir))
        document = "\n".join(sections)
        logger.info("Gathered %d characters of project context", len(document))
        return document
