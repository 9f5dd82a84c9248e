"""Response Caching Layer.

Public API:
    CacheBackend          - Abstract base for all backends
    RedisCacheBackend     - Redis-backed production cache
    InMemoryCacheBackend  - Bounded dict-backed cache
    get_cache_backend     - Factory: selects backend from settings

    Artifact              - Generated content + enrichment
    CacheEntry            - Artifact with fingerprint and expiry
    ResponseCache         - Fingerprint-addressed response cache
"""

from docgateway.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)
from docgateway.cache.response_cache import Artifact, CacheEntry, ResponseCache

__all__ = [
    "CacheBackend",
    "RedisCacheBackend",
    "InMemoryCacheBackend",
    "get_cache_backend",
    "Artifact",
    "CacheEntry",
    "ResponseCache",
]
