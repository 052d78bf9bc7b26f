"""System prompt templates."""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

from promptly import config

logger = logging.getLogger("promptly.cache")

PROMPT_FILES = {
    "enhance": "system-prompt.md",
    "ask": "ask-prompt.md",
}
CLAUDE_PROMPT_FILE = "claude-specific-prompt.md"

_PROJECT_DIR_PLACEHOLDER = "{{PROJECT_DIR}}"
_CLAUDE_PLACEHOLDER = "{{CLAUDE_SPECIFIC_CONTENT}}"
_CLAUDE_PLACEHOLDER_LINE_RE = re.compile(re.escape(_CLAUDE_PLACEHOLDER) + r"\n?")


def render(template: str, project_dir: str, claude_content: Optional[str] = None) -> str:
    """Substitute template placeholders. Without Claude content the placeholder
    is dropped together with its trailing newline."""
    rendered = template.replace(_PROJECT_DIR_PLACEHOLDER, project_dir)
    if claude_content is None:
        return _CLAUDE_PLACEHOLDER_LINE_RE.sub("", rendered)
    return rendered.replace(_CLAUDE_PLACEHOLDER, claude_content)


def _read(path: Path) -> str:
    if not path.is_file():
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read prompt file %s: %s", path, exc)
        return ""


def load_template(prompts_dir: Path, mode: str = "enhance") -> str:
    filename = PROMPT_FILES.get(mode, PROMPT_FILES["enhance"])
    content = _read(Path(prompts_dir) / filename)
    if content:
        return content
    if config.SYSTEM_PROMPT:
        return config.SYSTEM_PROMPT
    logger.info("Using default %s prompt (create %s to customize)", mode, filename)
    return config.DEFAULT_SYSTEM_PROMPT


def load_prompt(prompts_dir: Path, project_dir: str, mode: str = "enhance") -> str:
    """Template for ``mode`` rendered for one checkout.

    Claude-specific guidance is only included for repositories that carry a
    ``.claude`` directory.
    """
    claude_content = None
    if (Path(project_dir) / ".claude").is_dir():
        claude_content = _read(Path(prompts_dir) / CLAUDE_PROMPT_FILE) or None
    return render(load_template(prompts_dir, mode), project_dir, claude_content)
