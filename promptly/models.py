"""Pydantic models for configuration, runtime state and the HTTP API."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, computed_field

from promptly.git.urls import (
    DEFAULT_BRANCH,
    extract_repo_name,
    generate_project_id,
    split_credentials,
)

ProjectStatus = Literal["cloning", "ready", "error"]
PromptMode = Literal["enhance", "ask"]
PROMPT_MODES: tuple[str, ...] = ("enhance", "ask")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Persisted configuration (projects.json) ────────────────────────

class ProjectConfigEntry(BaseModel):
    gitUrl: str
    branch: Optional[str] = None
    accessToken: Optional[str] = None

    @property
    def effective_branch(self) -> str:
        return self.branch or DEFAULT_BRANCH

    @property
    def clean_url(self) -> str:
        return split_credentials(self.gitUrl)[0]

    @property
    def token(self) -> Optional[str]:
        # Hand-edited files may still carry the token inside the URL.
        return self.accessToken or split_credentials(self.gitUrl)[1]

    @property
    def project_id(self) -> str:
        return generate_project_id(self.clean_url, self.effective_branch, self.token)


class ProjectsConfigFile(BaseModel):
    projects: list[ProjectConfigEntry] = Field(default_factory=list)


# ── Runtime state ──────────────────────────────────────────────────

class CacheHandle(BaseModel):
    """Provider-side context cache. Untrusted once issued: it may vanish at any time."""
    name: str
    model: str = ""
    expireTime: Optional[str] = None
    createdAt: datetime = Field(default_factory=utc_now)


class Project(BaseModel):
    gitUrl: str  # credential-free canonical form
    branch: str = DEFAULT_BRANCH
    path: str
    accessToken: Optional[str] = Field(default=None, repr=False)
    lastUpdated: datetime = Field(default_factory=utc_now)
    status: ProjectStatus = "cloning"
    errorMessage: Optional[str] = None
    cacheHandle: Optional[CacheHandle] = None
    cacheStale: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def id(self) -> str:
        return generate_project_id(self.gitUrl, self.branch, self.accessToken)

    def to_info(self) -> "ProjectInfo":
        handle = self.cacheHandle
        return ProjectInfo(
            id=self.id,
            name=extract_repo_name(self.gitUrl),
            gitUrl=self.gitUrl,
            branch=self.branch,
            path=self.path,
            lastUpdated=self.lastUpdated,
            status=self.status,
            errorMessage=self.errorMessage,
            hasAccessToken=bool(self.accessToken),
            cacheStale=self.cacheStale,
            cacheName=handle.name if handle else None,
            cacheExpireTime=handle.expireTime if handle else None,
        )


class ChatMessage(BaseModel):
    role: Literal["user", "model"]
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


# ── API payloads ───────────────────────────────────────────────────

class ProjectInfo(BaseModel):
    id: str
    name: str
    gitUrl: str
    branch: str
    path: str
    lastUpdated: datetime
    status: ProjectStatus
    errorMessage: Optional[str] = None
    hasAccessToken: bool = False
    cacheStale: bool = False
    cacheName: Optional[str] = None
    cacheExpireTime: Optional[str] = None


class AddProjectRequest(BaseModel):
    gitUrl: str = Field(..., min_length=1)
    branch: Optional[str] = None
    accessToken: Optional[str] = None


class EditProjectRequest(BaseModel):
    gitUrl: str = Field(..., min_length=1)
    branch: Optional[str] = None
    accessToken: Optional[str] = None
    clearToken: bool = False


class RemoveProjectResponse(BaseModel):
    success: bool
    message: str
    projectId: str
    clearedSessions: int = 0


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    success: bool
    sessionId: str
    response: str
    messageCount: int


class SessionInfoResponse(BaseModel):
    sessionId: str
    projectId: str
    mode: PromptMode
    hasActiveSession: bool
    messageCount: int = 0
    createdAt: Optional[datetime] = None
    lastUsed: Optional[datetime] = None


class HistoryResponse(BaseModel):
    sessionId: str
    projectId: str
    mode: PromptMode
    history: list[ChatMessage] = Field(default_factory=list)
    messageCount: int = 0


class ClearSessionResponse(BaseModel):
    success: bool
    message: str
    sessionId: str
    clearedSessions: int = 0


class CacheRefreshResponse(BaseModel):
    success: bool
    message: str
    cachedContentName: str
    clearedSessions: int


class HistoryEntry(BaseModel):
    sessionId: str
    projectId: str
    mode: PromptMode = "enhance"
    timestamp: datetime
    request: str
    response: str
    messageCount: int = 0
    cachedContentName: Optional[str] = None
