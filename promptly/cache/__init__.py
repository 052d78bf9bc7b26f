"""Provider-side context caches: building, coherence and expiry recovery."""

from promptly.cache.coherence import CacheBuildError, CacheCoherenceManager, ProjectNotReadyError
from promptly.cache.context_builder import ContextBuilder
from promptly.cache.gemini import GeminiProvider
from promptly.cache.provider import ChatProvider, ProviderError, ProviderSession, is_cache_expired_error

__all__ = [
    "CacheBuildError",
    "CacheCoherenceManager",
    "ChatProvider",
    "ContextBuilder",
    "GeminiProvider",
    "ProjectNotReadyError",
    "ProviderError",
    "ProviderSession",
    "is_cache_expired_error",
]
