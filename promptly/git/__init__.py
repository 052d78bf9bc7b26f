"""git subprocess layer: supervisor, operations and URL identity helpers."""

from promptly.git.operations import GitOperationError, GitOperations
from promptly.git.supervisor import (
    CommandError,
    CommandResult,
    CommandTimeoutError,
    OutputLimitExceededError,
    ProcessSupervisor,
)
from promptly.git.urls import (
    GitUrlError,
    build_authenticated_url,
    clean_git_url,
    generate_project_id,
    normalize_git_url,
    redact_git_url,
)

__all__ = [
    "CommandError",
    "CommandResult",
    "CommandTimeoutError",
    "GitOperationError",
    "GitOperations",
    "GitUrlError",
    "OutputLimitExceededError",
    "ProcessSupervisor",
    "build_authenticated_url",
    "clean_git_url",
    "generate_project_id",
    "normalize_git_url",
    "redact_git_url",
]
