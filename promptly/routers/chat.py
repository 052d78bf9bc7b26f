"""API router for chat turns and per-client sessions."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Request

from promptly.models import (
    ChatRequest,
    ChatResponse,
    ClearSessionResponse,
    HistoryResponse,
    PromptMode,
    SessionInfoResponse,
)
from promptly.routers.common import DOMAIN_ERRORS, client_id, get_context, to_http_error

chat_router = APIRouter(prefix="/api", tags=["chat"])


@chat_router.post("/chat/{mode}/{project_id}", response_model=ChatResponse)
async def send_chat_message(request: Request, mode: PromptMode, project_id: str, body: ChatRequest):
    """One chat turn. Expired provider caches are rebuilt and the turn retried once."""
    client = client_id(request)
    context = get_context(request)
    try:
        result = await context.chat.send_message(client, project_id, mode, body.message)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc
    return ChatResponse(
        success=True,
        sessionId=client,
        response=result.response,
        messageCount=result.message_count,
    )


@chat_router.get("/session", response_model=SessionInfoResponse)
def get_session_info(
    request: Request,
    projectId: str = Query(..., min_length=1),
    mode: PromptMode = Query("enhance"),
):
    client = client_id(request)
    try:
        return get_context(request).chat.session_info(client, projectId, mode)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc


@chat_router.get("/session/history", response_model=HistoryResponse)
def get_session_history(
    request: Request,
    projectId: str = Query(..., min_length=1),
    mode: PromptMode = Query("enhance"),
):
    client = client_id(request)
    try:
        return get_context(request).chat.history(client, projectId, mode)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc


@chat_router.post("/session/clear", response_model=ClearSessionResponse)
def clear_session(
    request: Request,
    projectId: str = Query(..., min_length=1),
    mode: Optional[PromptMode] = Query(None),
):
    """Drop this client's session for one mode, or every mode when omitted."""
    client = client_id(request)
    try:
        cleared = get_context(request).chat.clear_sessions(client, projectId, mode)
    except DOMAIN_ERRORS as exc:
        raise to_http_error(exc) from exc
    return ClearSessionResponse(
        success=True,
        message="Session cleared" if cleared else "No active session",
        sessionId=client,
        clearedSessions=cleared,
    )
