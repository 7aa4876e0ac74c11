"""In-process TTL cache store with optional LRU bound."""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .models import CacheEntry
from .statistics import CacheStatistics
from ...constants import DEFAULT_CACHE_CHECK_PERIOD_SECONDS, DEFAULT_CACHE_TTL_SECONDS
from ...logging import LogEvent, LogRecord, debug


@runtime_checkable
class CacheStore(Protocol):
    """Minimal contract the remote client needs from a cache store.

    Implementations signal an outage by raising
    :class:`~mediafetch.domain.exceptions.CacheUnavailable`.
    """

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool: ...

    def delete(self, key: str) -> int: ...

    def get_ttl(self, key: str) -> Optional[float]: ...


class TTLCacheStore:
    """
    Dictionary-backed cache whose entries expire after a per-entry TTL.

    Expired entries are dropped lazily on access and in bulk by
    :meth:`prune`, which runs at most once per ``check_period`` seconds
    from the mutating operations. When ``max_keys`` is set the least
    recently used entry is evicted to make room for a new one.
    """

    def __init__(
        self,
        std_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        check_period: float = DEFAULT_CACHE_CHECK_PERIOD_SECONDS,
        max_keys: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if std_ttl < 0:
            raise ValueError(f"std_ttl must not be negative, got {std_ttl}")
        if max_keys is not None and max_keys < 1:
            raise ValueError(f"max_keys must be positive, got {max_keys}")
        self.std_ttl = std_ttl
        self.check_period = check_period
        self.max_keys = max_keys
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._statistics = CacheStatistics(clock=clock)
        self._last_prune = clock()

    def get(self, key: str) -> Optional[Any]:
        entry = self._live_entry(key)
        if entry is None:
            self._statistics.record_miss()
            return None
        self._entries.move_to_end(key)
        entry.update_access()
        self._statistics.record_hit()
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store ``value``; ``ttl=None`` uses ``std_ttl``, ``ttl=0`` never expires."""
        self._maybe_prune()
        lifetime = self.std_ttl if ttl is None else ttl
        expires_at = None if lifetime == 0 else self._clock() + lifetime

        if key in self._entries:
            del self._entries[key]
        elif self.max_keys is not None:
            while len(self._entries) >= self.max_keys:
                self._evict_lru()

        self._entries[key] = CacheEntry(value=value, expires_at=expires_at)
        return True

    def delete(self, key: str) -> int:
        return 1 if self._entries.pop(key, None) is not None else 0

    def has(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def get_ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, ``None`` when missing or unbounded."""
        entry = self._live_entry(key)
        if entry is None:
            return None
        return entry.remaining(self._clock())

    def keys(self) -> List[str]:
        self.prune()
        return list(self._entries.keys())

    def flush(self) -> None:
        self._entries.clear()
        self._statistics.reset()

    def prune(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        self._last_prune = now
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self._statistics.record_expiration(len(expired))
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        stats = self._statistics.get_stats()
        stats.update(
            {
                "keys": len(self._entries),
                "ksize": sum(len(k) for k in self._entries),
                "vsize": sum(e.size_bytes for e in self._entries.values()),
                "max_keys": self.max_keys,
            }
        )
        return stats

    def __len__(self) -> int:
        return len(self._entries)

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._statistics.record_expiration()
            return None
        return entry

    def _maybe_prune(self) -> None:
        if self._clock() - self._last_prune >= self.check_period:
            self.prune()

    def _evict_lru(self) -> None:
        key, entry = self._entries.popitem(last=False)
        self._statistics.record_eviction()
        debug(
            LogRecord(
                event=LogEvent.CACHE_EVENT.value,
                message="Evicted LRU cache entry",
                data={
                    "evicted_key": key[:32],
                    "size_bytes": entry.size_bytes,
                    "access_count": entry.access_count,
                },
            )
        )
