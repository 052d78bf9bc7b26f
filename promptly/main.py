"""Promptly FastAPI service: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from promptly import config
from promptly.cache.gemini import GeminiProvider
from promptly.db import connection, migrations
from promptly.db.repositories.history import SqliteHistoryRepository
from promptly.git.urls import redact_git_url
from promptly.observability import (
    initialize as initialize_observability,
    register_active_process_gauge,
    shutdown as shutdown_observability,
)
from promptly.routers.cache import cache_router
from promptly.routers.chat import chat_router
from promptly.routers.projects import projects_router
from promptly.state import AppContext, build_context

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("promptly")


class StartupError(RuntimeError):
    """Structural failure that prevents the service from starting at all."""


async def _startup(app: FastAPI) -> AppContext:
    problems = config.validate()
    if problems:
        raise StartupError("; ".join(problems))

    checkout_dir = Path(config.CHECKOUT_DIR)
    try:
        checkout_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StartupError(f"Checkout directory {checkout_dir} is not usable: {exc}") from exc

    history = None
    if config.HISTORY_DB_PATH:
        db = await connection.get_connection(config.HISTORY_DB_PATH)
        await migrations.run_migrations(db)
        history = SqliteHistoryRepository(db)

    context = build_context(
        provider=GeminiProvider(config.GEMINI_API_KEY),
        config_path=config.PROJECTS_CONFIG_PATH,
        checkout_dir=checkout_dir,
        prompts_dir=config.PROMPTS_DIR,
        history=history,
    )
    context.supervisor.install_shutdown_hook()
    register_active_process_gauge(lambda: context.supervisor.active_count)
    app.state.context = context

    try:
        context.projects.update(await context.registry.initialize_all())
    except (OSError, ValueError) as exc:
        raise StartupError(f"Failed to initialize projects: {exc}") from exc

    for project in context.projects.values():
        logger.info(
            "Project %s: %s (%s) [%s]",
            project.id,
            redact_git_url(project.gitUrl),
            project.branch,
            project.status,
        )
    if config.PREWARM_CACHES:
        await context.coherence.prewarm(list(context.projects.values()))

    await context.repo_watcher.start()
    await context.session_sweeper.start()
    await context.prompt_watcher.start()
    return context


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Promptly starting up")
    initialize_observability(app)
    context = await _startup(app)
    logger.info("Promptly ready with %d project(s)", len(context.projects))

    yield

    logger.info("Promptly shutting down")
    await context.prompt_watcher.stop()
    await context.session_sweeper.stop()
    await context.repo_watcher.stop()
    await context.provider.close()
    killed = context.supervisor.shutdown()
    if killed:
        logger.warning("Killed %d supervised process(es) on shutdown", killed)
    await connection.close_connection()
    shutdown_observability(app)


app = FastAPI(
    title="Promptly API",
    description="Prompt enhancement backed by cached repository context",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(projects_router)
app.include_router(chat_router)
app.include_router(cache_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    context = getattr(app.state, "context", None)
    if context is None:
        return {"status": "starting", "sessions": 0, "activeProcesses": 0, "projects": 0}
    return {
        "status": "ok",
        "sessions": len(context.sessions),
        "activeProcesses": context.supervisor.active_count,
        "projects": len(context.projects),
        "repoWatcher": "running" if context.repo_watcher.is_running else "stopped",
    }
