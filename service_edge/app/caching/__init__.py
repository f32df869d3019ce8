"""
Edge caching package.

In-memory TTL cache with stale fallback and single-flight deduplication
of upstream fetches.
"""

from .ttl_cache import CACHE_TTL, CacheEntry, TTLCache, WarmEntry, make_cache_key

__all__ = ["CACHE_TTL", "CacheEntry", "TTLCache", "WarmEntry", "make_cache_key"]
