"""Explicitly owned runtime state, attached to ``app.state.context``."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from promptly import config
from promptly.cache.coherence import CacheCoherenceManager
from promptly.cache.context_builder import ContextBuilder
from promptly.cache.provider import ChatProvider
from promptly.db.repositories.history import SqliteHistoryRepository
from promptly.git.operations import GitOperations
from promptly.git.supervisor import ProcessSupervisor
from promptly.models import Project
from promptly.project_manager import ProjectRegistry
from promptly.services.chat import ChatService
from promptly.services.projects import ProjectService
from promptly.sessions import SessionRegistry
from promptly.sync.prompt_watcher import PromptWatcher
from promptly.sync.repo_watcher import RepoWatcher
from promptly.sync.session_sweeper import SessionSweeper


@dataclass
class AppContext:
    projects: dict[str, Project]
    supervisor: ProcessSupervisor
    git: GitOperations
    registry: ProjectRegistry
    provider: ChatProvider
    sessions: SessionRegistry
    coherence: CacheCoherenceManager
    chat: ChatService
    project_service: ProjectService
    repo_watcher: RepoWatcher
    session_sweeper: SessionSweeper
    prompt_watcher: PromptWatcher
    history: Optional[SqliteHistoryRepository] = None


def build_context(
    *,
    provider: ChatProvider,
    config_path: Path,
    checkout_dir: Path,
    prompts_dir: Path,
    history: Optional[SqliteHistoryRepository] = None,
    supervisor: Optional[ProcessSupervisor] = None,
    git: Optional[GitOperations] = None,
) -> AppContext:
    """Wire every collaborator around one shared project map."""
    supervisor = supervisor or ProcessSupervisor()
    git = git or GitOperations(supervisor)
    projects: dict[str, Project] = {}
    sessions = SessionRegistry()
    registry = ProjectRegistry(config_path, checkout_dir, git)
    coherence = CacheCoherenceManager(
        provider,
        ContextBuilder(supervisor),
        sessions,
        prompts_dir,
        config.CACHE_TTL_SECONDS,
    )
    return AppContext(
        projects=projects,
        supervisor=supervisor,
        git=git,
        registry=registry,
        provider=provider,
        sessions=sessions,
        coherence=coherence,
        chat=ChatService(projects, coherence, sessions, history, model=getattr(provider, "model", "")),
        project_service=ProjectService(
            registry,
            projects,
            coherence,
            sessions,
            delete_abandoned_checkouts=config.DELETE_ABANDONED_CHECKOUTS,
        ),
        repo_watcher=RepoWatcher(projects, git, supervisor, config.REPO_CHECK_INTERVAL_SECONDS),
        session_sweeper=SessionSweeper(
            sessions, config.SESSION_CLEANUP_INTERVAL_SECONDS, config.SESSION_MAX_AGE_SECONDS
        ),
        prompt_watcher=PromptWatcher(
            prompts_dir, lambda _changed: coherence.mark_all_stale(projects.values())
        ),
        history=history,
    )
