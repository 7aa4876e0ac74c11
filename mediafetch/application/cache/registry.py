"""Registry of named API caches shared by the remote clients."""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from .ttl_store import TTLCacheStore
from ...config import Settings
from ...constants import (
    DEFAULT_API_CACHES,
    DEFAULT_CACHE_CHECK_PERIOD_SECONDS,
    DEFAULT_CACHE_TTL_SECONDS,
)
from ...logging import LogEvent, LogRecord, info


@dataclass
class NamedCache:
    """A cache store plus the identity shown in cache administration."""

    id: str
    name: str
    data: TTLCacheStore

    def get_stats(self) -> Dict[str, Any]:
        return self.data.get_stats()

    def flush(self) -> None:
        self.data.flush()
        info(
            LogRecord(
                event=LogEvent.CACHE_EVENT.value,
                message=f"Flushed cache '{self.id}'",
                data={"cache_id": self.id},
            )
        )


class CacheRegistry:
    """
    Owns the named caches for one application instance.

    Constructed once at startup and passed to each provider client, so
    tests can build an isolated registry instead of sharing process state.
    """

    def __init__(
        self,
        caches: Iterable[Tuple[str, str]] = DEFAULT_API_CACHES,
        std_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        check_period: float = DEFAULT_CACHE_CHECK_PERIOD_SECONDS,
        max_keys: Optional[int] = None,
    ) -> None:
        self._std_ttl = std_ttl
        self._check_period = check_period
        self._max_keys = max_keys
        self._caches: Dict[str, NamedCache] = {}
        for cache_id, name in caches:
            self.register(cache_id, name)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheRegistry":
        return cls(
            std_ttl=settings.cache_default_ttl,
            check_period=settings.cache_check_period,
            max_keys=settings.cache_max_keys,
        )

    def register(
        self, cache_id: str, name: str, std_ttl: Optional[float] = None
    ) -> NamedCache:
        """Create a named cache, or return the existing one with that id."""
        existing = self._caches.get(cache_id)
        if existing is not None:
            return existing
        cache = NamedCache(
            id=cache_id,
            name=name,
            data=TTLCacheStore(
                std_ttl=self._std_ttl if std_ttl is None else std_ttl,
                check_period=self._check_period,
                max_keys=self._max_keys,
            ),
        )
        self._caches[cache_id] = cache
        return cache

    def get_cache(self, cache_id: str) -> Optional[NamedCache]:
        return self._caches.get(cache_id)

    def get_all_caches(self) -> Dict[str, NamedCache]:
        return dict(self._caches)

    def flush_all(self) -> None:
        for cache in self._caches.values():
            cache.flush()

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            cache.id: {"name": cache.name, "stats": cache.get_stats()}
            for cache in self._caches.values()
        }
