"""Cache module for API response caching with per-entry TTLs."""

from .models import CacheEntry
from .registry import CacheRegistry, NamedCache
from .statistics import CacheStatistics
from .ttl_store import CacheStore, TTLCacheStore

__all__ = [
    "CacheEntry",
    "CacheRegistry",
    "CacheStatistics",
    "CacheStore",
    "NamedCache",
    "TTLCacheStore",
]
