"""Shared router plumbing: context lookup, client identity, error mapping."""
from __future__ import annotations

import logging
import time
from collections import deque
from typing import Deque

from fastapi import HTTPException, Request

from promptly import config
from promptly.cache.coherence import CacheBuildError, ProjectNotReadyError
from promptly.cache.provider import ProviderError
from promptly.git.operations import GitOperationError
from promptly.git.supervisor import CommandError
from promptly.project_manager import ProjectConfigError, ProjectNotFoundError
from promptly.services.chat import ChatInputError
from promptly.state import AppContext

logger = logging.getLogger("promptly.api")

SESSION_HEADER = "x-session-id"

DOMAIN_ERRORS = (
    ProjectConfigError,
    ChatInputError,
    ProjectNotFoundError,
    ProjectNotReadyError,
    ProviderError,
    CacheBuildError,
    GitOperationError,
    CommandError,
)


def get_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return context


def client_id(request: Request) -> str:
    value = (request.headers.get(SESSION_HEADER) or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header")
    return value


def client_ip(request: Request, trust_forwarded: bool | None = None) -> str:
    """Rate-limit key. The forwarded header is client-controlled unless a
    trusted proxy in front of the service sets it."""
    if trust_forwarded is None:
        trust_forwarded = config.TRUST_FORWARDED_FOR
    forwarded = request.headers.get("x-forwarded-for") if trust_forwarded else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (ProjectConfigError, ChatInputError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ProjectNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ProjectNotReadyError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ProviderError, CacheBuildError, GitOperationError, CommandError)):
        logger.error("Upstream failure: %s", exc)
        return HTTPException(status_code=502, detail=str(exc))
    logger.exception("Unhandled error", exc_info=exc)
    return HTTPException(status_code=500, detail="Internal server error")


class RateLimiter:
    """Sliding-window limit of ``limit`` calls per ``window_seconds`` per key."""

    def __init__(self, limit: int, window_seconds: float):
        self.limit = limit
        self.window_seconds = window_seconds
        self._hits: dict[str, Deque[float]] = {}

    def allow(self, key: str, now: float | None = None) -> bool:
        now = time.monotonic() if now is None else now
        self._purge(now)
        hits = self._hits.setdefault(key, deque())
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True

    def _purge(self, now: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if not hits:
                del self._hits[key]

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def reset(self) -> None:
        self._hits.clear()
