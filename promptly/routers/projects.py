"""API router for project management."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from promptly import config
from promptly.models import (
    AddProjectRequest,
    EditProjectRequest,
    HistoryEntry,
    PromptMode,
    ProjectInfo,
    RemoveProjectResponse,
)
from promptly.routers.common import (
    DOMAIN_ERRORS,
    RateLimiter,
    client_ip,
    get_context,
    to_http_error,
)

projects_router = APIRouter(prefix="/api/projects", tags=["projects"])

project_rate_limiter = RateLimiter(config.PROJECT_RATE_LIMIT, config.PROJECT_RATE_WINDOW_SECONDS)


@projects_router.get("", response_model=list[ProjectInfo])
def list_projects(request: Request):
    """List all configured projects."""
    return get_context(request).project_service.list()


@projects_router.post("", response_model=ProjectInfo)
async def add_project(request: Request, body: AddProjectRequest):
    """Register and clone a project, then build its context cache."""
    if not project_rate_limiter.allow(client_ip(request)):
        raise HTTPException(
            status_code=429,
            detail="Too many project additions. Please try again later.",
        )
    context = get_context(request)
    try:
        project = await context.project_service.add(body.gitUrl, body.branch, body.accessToken)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc
    return project.to_info()


@projects_router.get("/{project_id}", response_model=ProjectInfo)
def get_project(request: Request, project_id: str):
    try:
        return get_context(request).project_service.get(project_id).to_info()
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc


@projects_router.put("/{project_id}", response_model=ProjectInfo)
async def update_project(request: Request, project_id: str, body: EditProjectRequest):
    """Change URL, branch or token. The project id changes with them."""
    context = get_context(request)
    try:
        project = await context.project_service.edit(
            project_id,
            body.gitUrl,
            body.branch,
            body.accessToken,
            clear_token=body.clearToken,
        )
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc
    return project.to_info()


@projects_router.delete("/{project_id}", response_model=RemoveProjectResponse)
async def remove_project(
    request: Request,
    project_id: str,
    deleteCheckout: bool = Query(False),
):
    context = get_context(request)
    try:
        cleared = await context.project_service.remove(project_id, delete_checkout=deleteCheckout)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc
    return RemoveProjectResponse(
        success=True,
        message="Project removed",
        projectId=project_id,
        clearedSessions=cleared,
    )


@projects_router.get("/{project_id}/history", response_model=list[HistoryEntry])
async def project_history(
    request: Request,
    project_id: str,
    mode: Optional[PromptMode] = Query(None),
    limit: int = Query(10, ge=1, le=100),
):
    """Recent completed chat turns, newest first. Empty when history is disabled."""
    context = get_context(request)
    try:
        return await context.chat.project_history(project_id, mode=mode, limit=limit)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc
