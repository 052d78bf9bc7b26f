"""Git URL normalisation, credential handling and project identity."""
from __future__ import annotations

import hashlib
import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

DEFAULT_BRANCH = "main"
PROJECT_ID_LENGTH = 12

_SCP_LIKE_RE = re.compile(r"^(?:[^@/:]+@)?([^:/]+):(?!//)(.+)$")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_USERINFO_RE = re.compile(r"^[^@/]+@")
_CREDENTIALS_RE = re.compile(r"(https?://)[^/\s@]+@", re.IGNORECASE)


class GitUrlError(ValueError):
    pass


def is_https_url(git_url: str) -> bool:
    return git_url.strip().lower().startswith("https://")


def split_credentials(git_url: str) -> tuple[str, Optional[str]]:
    """Split ``https://TOKEN@host/path`` into the clean URL and the embedded credential.

    Non-HTTP URLs (scp-style or ``ssh://``) are returned unchanged; their user
    part is a login name, not a secret.
    """
    url = git_url.strip()
    if not url.lower().startswith(("https://", "http://")):
        return url, None
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url, None
    userinfo, _, host = parts.netloc.rpartition("@")
    user, _, password = userinfo.partition(":")
    token = password or user or None
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment)), token


def clean_git_url(git_url: str) -> str:
    return split_credentials(git_url)[0]


def redact_git_url(value: str) -> str:
    """Mask credentials in every HTTP(S) URL found in ``value``, including URLs
    embedded in git error output."""
    return _CREDENTIALS_RE.sub(r"\1***@", value)


def build_authenticated_url(git_url: str, access_token: Optional[str]) -> str:
    """Return the URL git should use for an authenticated operation.

    SSH URLs pass through untouched. A token is only ever combined with an
    HTTPS URL; anything else is a configuration error.
    """
    clean = clean_git_url(git_url)
    if not access_token:
        return clean
    if not is_https_url(clean):
        raise GitUrlError("Personal access tokens require an HTTPS Git URL")
    parts = urlsplit(clean)
    return urlunsplit((parts.scheme, f"{access_token}@{parts.netloc}", parts.path, parts.query, parts.fragment))


def normalize_git_url(git_url: str) -> str:
    """Reduce a git URL to ``host/path`` so equivalent transports compare equal."""
    normalized = clean_git_url(git_url).strip().rstrip("/")
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")]
    if not _SCHEME_RE.match(normalized):
        scp = _SCP_LIKE_RE.match(normalized)
        if scp:
            normalized = f"{scp.group(1)}/{scp.group(2)}"
    normalized = _SCHEME_RE.sub("", normalized)
    normalized = _USERINFO_RE.sub("", normalized)
    return normalized.lower()


def generate_project_id(
    git_url: str, branch: str = DEFAULT_BRANCH, access_token: Optional[str] = None
) -> str:
    """Deterministic short id for a (url, branch, token) triple."""
    composite = f"{normalize_git_url(git_url)}#{branch or DEFAULT_BRANCH}"
    if access_token:
        composite = f"{composite}#{access_token}"
    return hashlib.sha256(composite.encode("utf-8")).hexdigest()[:PROJECT_ID_LENGTH]


def extract_repo_name(git_url: str) -> str:
    """``owner/repo`` for display purposes."""
    normalized = normalize_git_url(git_url)
    _, _, path = normalized.partition("/")
    return path or normalized
