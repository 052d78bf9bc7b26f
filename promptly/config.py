"""Promptly service configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Project root (one level up from promptly/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Chat provider
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("PROMPTLY_GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_API_BASE = os.getenv(
    "PROMPTLY_GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta"
)
PROVIDER_TIMEOUT_SECONDS = _env_float("PROMPTLY_PROVIDER_TIMEOUT_SECONDS", 120.0)
CACHE_TTL_SECONDS = _env_int("PROMPTLY_CACHE_TTL_SECONDS", 3600)
PREWARM_CACHES = _env_bool("PROMPTLY_PREWARM_CACHES", True)

# Checkouts + project configuration
CHECKOUT_DIR = os.getenv("PROMPTLY_CHECKOUT_DIR", os.getenv("CHECKOUT_DIR", ""))
PROJECTS_CONFIG_PATH = Path(
    os.getenv("PROMPTLY_PROJECTS_CONFIG", str(PROJECT_ROOT / "projects.json"))
)
DELETE_ABANDONED_CHECKOUTS = _env_bool("PROMPTLY_DELETE_ABANDONED_CHECKOUTS", False)

# Prompt templates
PROMPTS_DIR = Path(os.getenv("PROMPTLY_PROMPTS_DIR", str(PROJECT_ROOT / "prompts")))
SYSTEM_PROMPT = os.getenv("SYSTEM_PROMPT", "")
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

# Chat history store (disabled when empty)
_HISTORY_DIR = os.getenv("HISTORY_DIR", "")
HISTORY_DB_PATH = os.getenv(
    "PROMPTLY_HISTORY_DB_PATH",
    str(Path(_HISTORY_DIR) / "history.db") if _HISTORY_DIR else "",
)

# Background loops
REPO_CHECK_INTERVAL_SECONDS = _env_float("PROMPTLY_REPO_CHECK_INTERVAL_SECONDS", 60.0)
SESSION_MAX_AGE_SECONDS = _env_float("PROMPTLY_SESSION_MAX_AGE_SECONDS", 24 * 60 * 60)
SESSION_CLEANUP_INTERVAL_SECONDS = _env_float("PROMPTLY_SESSION_CLEANUP_INTERVAL_SECONDS", 60 * 60)

# git subprocess limits
GIT_CLONE_TIMEOUT_SECONDS = _env_float("PROMPTLY_GIT_CLONE_TIMEOUT_SECONDS", 300.0)
GIT_FETCH_TIMEOUT_SECONDS = _env_float("PROMPTLY_GIT_FETCH_TIMEOUT_SECONDS", 30.0)
GIT_PULL_TIMEOUT_SECONDS = _env_float("PROMPTLY_GIT_PULL_TIMEOUT_SECONDS", 60.0)
GIT_DEFAULT_TIMEOUT_SECONDS = _env_float("PROMPTLY_GIT_DEFAULT_TIMEOUT_SECONDS", 30.0)
GIT_MAX_OUTPUT_BYTES = _env_int("PROMPTLY_GIT_MAX_OUTPUT_BYTES", 10 * 1024 * 1024)

# Project registration rate limit (per client IP)
PROJECT_RATE_LIMIT = _env_int("PROMPTLY_PROJECT_RATE_LIMIT", 3)
PROJECT_RATE_WINDOW_SECONDS = _env_float("PROMPTLY_PROJECT_RATE_WINDOW_SECONDS", 5 * 60)
# X-Forwarded-For is only meaningful behind a proxy that overwrites it
TRUST_FORWARDED_FOR = _env_bool("PROMPTLY_TRUST_FORWARDED_FOR", True)

# Observability
OTEL_ENABLED = _env_bool("PROMPTLY_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("PROMPTLY_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("PROMPTLY_OTEL_SERVICE_NAME", "promptly")
PROM_PORT = _env_int("PROMPTLY_PROM_PORT", 0)

# Server settings
HOST = os.getenv("PROMPTLY_HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000)


def validate() -> list[str]:
    """Return fatal configuration problems; empty when startup may proceed."""
    problems: list[str] = []
    if not GEMINI_API_KEY:
        problems.append("GEMINI_API_KEY environment variable is required")
    if not CHECKOUT_DIR:
        problems.append(
            "PROMPTLY_CHECKOUT_DIR (or CHECKOUT_DIR) environment variable is required"
        )
    return problems
