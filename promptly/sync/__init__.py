"""Background loops: repository synchronization, session sweeping, prompt watching."""

from promptly.sync.prompt_watcher import PromptWatcher
from promptly.sync.repo_watcher import RepoWatcher
from promptly.sync.session_sweeper import SessionSweeper

__all__ = ["PromptWatcher", "RepoWatcher", "SessionSweeper"]
