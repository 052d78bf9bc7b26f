"""Observability helpers."""

from promptly.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync_tick,
    record_project_sync,
    record_cache_build,
    record_cache_expiry_recovery,
    register_active_process_gauge,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync_tick",
    "record_project_sync",
    "record_cache_build",
    "record_cache_expiry_recovery",
    "register_active_process_gauge",
]
