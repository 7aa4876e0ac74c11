"""Hit/miss accounting for a TTL cache store."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict


@dataclass
class CacheStatistics:
    """Counters reported by ``TTLCacheStore.get_stats``.

    ``clock`` is shared with the owning store so uptime follows the same
    time source as entry expiry.
    """

    clock: Callable[[], float] = time.monotonic
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def record_hit(self) -> None:
        self.hits += 1

    def record_miss(self) -> None:
        self.misses += 1

    def record_eviction(self, count: int = 1) -> None:
        self.evictions += count

    def record_expiration(self, count: int = 1) -> None:
        self.expirations += count

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def get_stats(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 3),
            "evictions": self.evictions,
            "expirations": self.expirations,
            "uptime_seconds": round(self.clock() - self.started_at, 1),
        }

    def reset(self) -> None:
        self.hits = self.misses = self.evictions = self.expirations = 0
        self.started_at = self.clock()
