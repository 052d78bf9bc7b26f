"""Chat provider contract and provider error classification."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from promptly.models import CacheHandle

logger = logging.getLogger("promptly.cache")


class ProviderError(Exception):
    """A provider call failed. ``status_code`` is the HTTP status when known."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"[{self.status_code}] {base}"
        return base


@dataclass
class ProviderSession:
    """Provider-side conversation bound to one cache handle."""
    handle: CacheHandle
    system_instruction: str
    turns: list[dict[str, Any]] = field(default_factory=list)


class ChatProvider(Protocol):
    async def create_cache(
        self, system_instruction: str, context_document: str, ttl_seconds: int
    ) -> CacheHandle: ...

    def start_session(self, handle: CacheHandle, system_instruction: str) -> ProviderSession: ...

    async def send(self, session: ProviderSession, message: str) -> str: ...

    async def delete_cache(self, handle: CacheHandle) -> None: ...

    async def close(self) -> None: ...


_FORBIDDEN_MARKERS = ("403 forbidden", "[403]")
_EXPIRED_CACHE_MARKERS = ("cachedcontent not found", "permission denied")


def is_cache_expired_error(error: BaseException) -> bool:
    """Return True when ``error`` means the provider discarded our context cache.

    Heuristic sourced from observed provider behaviour, not a protocol
    guarantee: there is no dedicated "expired" code, so an expired or evicted
    cache surfaces as HTTP 403 whose message contains "CachedContent not
    found" and/or "permission denied". Both the forbidden status (from
    ``status_code``/``status`` attributes or the message text) and one of the
    message markers must be present. Update this function, and its tests,
    when the provider changes its error shape.
    """
    text = str(error).lower()
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    status_match = status == 403 or any(marker in text for marker in _FORBIDDEN_MARKERS)
    message_match = any(marker in text for marker in _EXPIRED_CACHE_MARKERS)
    if status_match and message_match:
        logger.debug("Detected cache expiration error: %s", text[:200])
        return True
    return False
