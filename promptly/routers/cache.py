"""Cache refresh, synchronization and diagnostics API."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request

from promptly.models import CacheRefreshResponse
from promptly.routers.common import DOMAIN_ERRORS, get_context, to_http_error

logger = logging.getLogger("promptly.api")

cache_router = APIRouter(prefix="/api", tags=["cache"])


@cache_router.post("/cache/refresh", response_model=CacheRefreshResponse)
async def refresh_cache(request: Request, projectId: str = Query(..., min_length=1)):
    """Rebuild a project's cache now, bypassing staleness detection."""
    context = get_context(request)
    try:
        cache_name, cleared = await context.project_service.refresh_cache(projectId)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc
    logger.info("Manual cache refresh for project %s: %s", projectId, cache_name)
    return CacheRefreshResponse(
        success=True,
        message="Cache refreshed",
        cachedContentName=cache_name,
        clearedSessions=cleared,
    )


@cache_router.get("/diagnostics")
def get_diagnostics(request: Request) -> dict[str, Any]:
    context = get_context(request)
    return {
        "activeProcesses": context.supervisor.active_count,
        "sessionCount": len(context.sessions),
        "cacheBuilds": context.coherence.build_count,
        "repoWatcher": context.repo_watcher.snapshot(),
        "projects": [
            {
                "id": project.id,
                "status": project.status,
                "errorMessage": project.errorMessage,
                "lastUpdated": project.lastUpdated.isoformat(),
                "cacheStale": project.cacheStale,
                "cacheName": project.cacheHandle.name if project.cacheHandle else None,
                "cacheExpireTime": project.cacheHandle.expireTime if project.cacheHandle else None,
            }
            for project in context.projects.values()
        ],
    }


@cache_router.post("/sync")
async def trigger_sync(request: Request) -> dict[str, Any]:
    """Run one repository check now; skipped while a tick is running."""
    context = get_context(request)
    return await context.repo_watcher.run_once(trigger="api")
