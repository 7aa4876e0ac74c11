"""Data models for the cache module."""

import sys
import time
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class CacheEntry:
    """A cached value and the monotonic time at which it expires."""

    value: Any
    expires_at: Optional[float]
    access_count: int = 0
    last_accessed: float = field(default_factory=time.monotonic)
    size_bytes: int = 0

    def __post_init__(self) -> None:
        if self.size_bytes == 0:
            self.size_bytes = sys.getsizeof(self.value)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.monotonic()) >= self.expires_at

    def remaining(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds left before expiry, ``None`` for entries that never expire."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - (now if now is not None else time.monotonic()))

    def update_access(self) -> None:
        self.access_count += 1
        self.last_accessed = time.monotonic()
