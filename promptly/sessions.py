"""In-memory chat sessions keyed by (client session, project, mode)."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, NamedTuple, Optional

from promptly.models import ChatMessage, utc_now

if TYPE_CHECKING:
    from promptly.cache.provider import ProviderSession

logger = logging.getLogger("promptly.sessions")


class SessionKey(NamedTuple):
    client_id: str
    project_id: str
    mode: str

    def __str__(self) -> str:
        return f"{self.client_id}:{self.project_id}:{self.mode}"


@dataclass
class ChatSession:
    key: SessionKey
    provider_session: ProviderSession
    transcript: list[ChatMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    last_used: datetime = field(default_factory=utc_now)

    @property
    def cache_name(self) -> str:
        return self.provider_session.handle.name

    def touch(self) -> None:
        self.last_used = utc_now()


class SessionRegistry:
    """Process-lifetime session map. Nothing here survives a restart."""

    def __init__(self) -> None:
        self._sessions: dict[SessionKey, ChatSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def get(self, key: SessionKey) -> Optional[ChatSession]:
        return self._sessions.get(key)

    def get_or_create(
        self, key: SessionKey, factory: Callable[[], ProviderSession]
    ) -> ChatSession:
        """Return the live session for ``key``, creating one bound to the
        provider session ``factory`` returns. The caller is responsible for
        making the project's cache fresh first."""
        session = self._sessions.get(key)
        if session is None:
            session = ChatSession(key=key, provider_session=factory())
            self._sessions[key] = session
            logger.info("Created chat session %s on cache %s", key, session.cache_name)
        return session

    def sessions(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def remove(self, key: SessionKey) -> bool:
        return self._sessions.pop(key, None) is not None

    def invalidate_for_project(self, project_id: str) -> int:
        keys = [key for key in self._sessions if key.project_id == project_id]
        for key in keys:
            del self._sessions[key]
        if keys:
            logger.info("Invalidated %d session(s) for project %s", len(keys), project_id)
        return len(keys)

    def clear(self, client_id: str, project_id: str, mode: Optional[str] = None) -> int:
        """Drop one client's sessions for a project, for one mode or all modes."""
        keys = [
            key
            for key in self._sessions
            if key.client_id == client_id
            and key.project_id == project_id
            and (mode is None or key.mode == mode)
        ]
        for key in keys:
            del self._sessions[key]
        return len(keys)

    def evict_idle(self, max_age_seconds: float, now: Optional[datetime] = None) -> int:
        cutoff = (now or utc_now()) - timedelta(seconds=max_age_seconds)
        keys = [key for key, session in self._sessions.items() if session.last_used < cutoff]
        for key in keys:
            del self._sessions[key]
        if keys:
            logger.info("Evicted %d idle session(s)", len(keys))
        return len(keys)
