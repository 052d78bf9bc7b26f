"""Chat turns against cache-backed provider sessions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import aiosqlite

from promptly.cache.coherence import CacheCoherenceManager
from promptly.db.repositories.history import SqliteHistoryRepository
from promptly.models import (
    PROMPT_MODES,
    ChatMessage,
    HistoryEntry,
    HistoryResponse,
    Project,
    SessionInfoResponse,
    utc_now,
)
from promptly.project_manager import ProjectNotFoundError
from promptly.sessions import SessionKey, SessionRegistry

logger = logging.getLogger("promptly.sessions")


class ChatInputError(ValueError):
    """Unusable chat input (empty message, unknown mode)."""


@dataclass
class ChatTurnResult:
    key: SessionKey
    response: str
    message_count: int


def clean_message(message: str) -> str:
    # Chat clients wrap prompts in underscores for emphasis.
    return (message or "").strip("_")


class ChatService:
    def __init__(
        self,
        projects: Mapping[str, Project],
        coherence: CacheCoherenceManager,
        sessions: SessionRegistry,
        history: Optional[SqliteHistoryRepository] = None,
        model: str = "",
    ):
        self.projects = projects
        self.coherence = coherence
        self.sessions = sessions
        self.history_repo = history
        self.model = model

    def _project(self, project_id: str) -> Project:
        project = self.projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    @staticmethod
    def _check_mode(mode: str) -> None:
        if mode not in PROMPT_MODES:
            raise ChatInputError(f"Unknown mode {mode!r}; expected one of {', '.join(PROMPT_MODES)}")

    async def send_message(self, client_id: str, project_id: str, mode: str, message: str) -> ChatTurnResult:
        self._check_mode(mode)
        cleaned = clean_message(message)
        if not cleaned.strip():
            raise ChatInputError("Message is required")
        project = self._project(project_id)
        key = SessionKey(client_id, project_id, mode)

        session, response = await self.coherence.send_with_retry(key, project, cleaned)
        session.transcript.append(ChatMessage(role="user", message=cleaned))
        session.transcript.append(ChatMessage(role="model", message=response))
        session.touch()
        message_count = len(session.transcript)

        if self.history_repo is not None:
            entry = HistoryEntry(
                sessionId=client_id,
                projectId=project_id,
                mode=mode,
                timestamp=utc_now(),
                request=cleaned,
                response=response,
                messageCount=message_count,
                cachedContentName=session.cache_name,
            )
            try:
                await self.history_repo.record(
                    entry, model=self.model, project_path=project.path, git_url=project.gitUrl
                )
            except aiosqlite.Error as exc:
                logger.error("Failed to write chat history for %s: %s", key, exc)

        return ChatTurnResult(key=key, response=response, message_count=message_count)

    def session_info(self, client_id: str, project_id: str, mode: str) -> SessionInfoResponse:
        self._check_mode(mode)
        session = self.sessions.get(SessionKey(client_id, project_id, mode))
        if session is None:
            return SessionInfoResponse(
                sessionId=client_id, projectId=project_id, mode=mode, hasActiveSession=False
            )
        return SessionInfoResponse(
            sessionId=client_id,
            projectId=project_id,
            mode=mode,
            hasActiveSession=True,
            messageCount=len(session.transcript),
            createdAt=session.created_at,
            lastUsed=session.last_used,
        )

    def history(self, client_id: str, project_id: str, mode: str) -> HistoryResponse:
        self._check_mode(mode)
        session = self.sessions.get(SessionKey(client_id, project_id, mode))
        transcript = list(session.transcript) if session else []
        return HistoryResponse(
            sessionId=client_id,
            projectId=project_id,
            mode=mode,
            history=transcript,
            messageCount=len(transcript),
        )

    def clear_sessions(self, client_id: str, project_id: str, mode: Optional[str] = None) -> int:
        if mode is not None:
            self._check_mode(mode)
        cleared = self.sessions.clear(client_id, project_id, mode)
        logger.info("Cleared %d session(s) for client on project %s", cleared, project_id)
        return cleared

    async def project_history(
        self, project_id: str, mode: Optional[str] = None, limit: int = 10
    ) -> list[HistoryEntry]:
        self._project(project_id)
        if self.history_repo is None:
            return []
        return await self.history_repo.list_recent(project_id, mode=mode, limit=limit)
