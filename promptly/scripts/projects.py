#!/usr/bin/env python3
"""List configured projects with their derived ids.

Usage:
  python -m promptly.scripts.projects
  python -m promptly.scripts.projects --config /srv/promptly/projects.json
  python -m promptly.scripts.projects --json
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from promptly import config
from promptly.git.urls import extract_repo_name, redact_git_url
from promptly.models import ProjectsConfigFile


def load_config(path: Path) -> ProjectsConfigFile:
    if not path.exists():
        return ProjectsConfigFile()
    content = path.read_text(encoding="utf-8")
    if not content.strip():
        return ProjectsConfigFile()
    return ProjectsConfigFile.model_validate(json.loads(content))


def describe(data: ProjectsConfigFile) -> list[dict[str, object]]:
    return [
        {
            "id": entry.project_id,
            "name": extract_repo_name(entry.clean_url),
            "gitUrl": redact_git_url(entry.clean_url),
            "branch": entry.effective_branch,
            "hasAccessToken": bool(entry.token),
        }
        for entry in data.projects
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--config", type=Path, default=config.PROJECTS_CONFIG_PATH, help="projects.json path")
    parser.add_argument("--json", action="store_true", help="emit JSON instead of a table")
    args = parser.parse_args(argv)

    try:
        rows = describe(load_config(args.config))
    except (OSError, ValueError, ValidationError) as exc:
        print(f"Failed to read {args.config}: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        print(f"No projects configured in {args.config}")
        return 0
    for row in rows:
        token = " [token]" if row["hasAccessToken"] else ""
        print(f"{row['id']}  {row['name']:<24} {row['branch']:<16} {row['gitUrl']}{token}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
