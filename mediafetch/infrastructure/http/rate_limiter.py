"""Client-side rate limiter for outbound provider requests."""

import functools
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

import anyio

from ...constants import DEFAULT_RATE_LIMIT_WINDOW_MS

T = TypeVar("T")

# Shortest re-drain delay, keeps waiters from spinning at the window edge
_MIN_POLL_SECONDS = 0.001


@dataclass(frozen=True)
class RateLimitConfig:
    """Configuration for rate limiting.

    ``id`` lets several clients share one queue through a
    :class:`RateLimiterRegistry`.
    """

    max_requests: int
    per_milliseconds: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError(
                f"max_requests must be positive, got {self.max_requests}"
            )
        if self.per_milliseconds < 1:
            raise ValueError(
                f"per_milliseconds must be positive, got {self.per_milliseconds}"
            )

    @classmethod
    def from_rps(cls, max_rps: int, id: Optional[str] = None) -> "RateLimitConfig":
        """Shorthand for ``max_rps`` requests per 1000 ms."""
        return cls(max_requests=max_rps, per_milliseconds=1000, id=id)

    @property
    def window_seconds(self) -> float:
        return self.per_milliseconds / 1000


@dataclass
class RateLimitMetrics:
    """Metrics for rate limit tracking."""

    total_queued: int = 0
    total_dispatched: int = 0
    total_failed: int = 0
    peak_active: int = 0


class RateLimiter:
    """
    FIFO throttle for an asynchronous callable.

    Each call takes a ticket at the back of the queue. A drain pass hands
    tickets out from the front while fewer than ``max_requests`` calls are
    in flight and fewer than ``max_requests`` were started inside the
    current window. Waiting callers re-run the drain on a timer until the
    queue empties, so progress never depends on a single caller.

    The caller runs its own call once dispatched, which means a failure is
    raised only to that caller and the slot is released either way.

    There is no queue bound and no per-item timeout.
    """

    def __init__(self, config: RateLimitConfig) -> None:
        self.config = config
        self.metrics = RateLimitMetrics()
        self._queue: Deque[anyio.Event] = deque()
        self._dispatch_times: Deque[float] = deque()
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return len(self._queue)

    def wrap(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Return a drop-in replacement for ``func`` that goes through the queue."""

        @functools.wraps(func)
        async def limited(*args: Any, **kwargs: Any) -> T:
            return await self.run(func, *args, **kwargs)

        return limited

    async def run(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        await self._acquire()
        try:
            return await func(*args, **kwargs)
        except Exception:
            self.metrics.total_failed += 1
            raise
        finally:
            self._active -= 1
            self._drain()

    async def _acquire(self) -> None:
        ticket = anyio.Event()
        self._queue.append(ticket)
        self.metrics.total_queued += 1
        try:
            while True:
                delay = self._drain()
                if ticket.is_set():
                    return
                if self.queued > self.config.max_requests:
                    logging.debug(
                        f"Rate limiter '{self.config.id or 'anonymous'}' queue depth "
                        f"{self.queued}, active {self._active}"
                    )
                with anyio.move_on_after(delay):
                    await ticket.wait()
                if ticket.is_set():
                    return
        except BaseException:
            # Cancelled while queued: give back a slot we were handed, or leave the line
            if ticket.is_set():
                self._active -= 1
                self._drain()
            else:
                self._queue.remove(ticket)
            raise

    def _drain(self) -> float:
        """Dispatch what the limits allow and return the next poll delay."""
        now = time.monotonic()
        window = self.config.window_seconds
        limit = self.config.max_requests

        while self._dispatch_times and now - self._dispatch_times[0] >= window:
            self._dispatch_times.popleft()

        while (
            self._queue
            and self._active < limit
            and len(self._dispatch_times) < limit
        ):
            ticket = self._queue.popleft()
            self._active += 1
            self._dispatch_times.append(now)
            self.metrics.total_dispatched += 1
            self.metrics.peak_active = max(self.metrics.peak_active, self._active)
            ticket.set()

        if len(self._dispatch_times) >= limit:
            return max(window - (now - self._dispatch_times[0]), _MIN_POLL_SECONDS)
        return window

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "id": self.config.id,
            "max_requests": self.config.max_requests,
            "per_milliseconds": self.config.per_milliseconds,
            "active": self._active,
            "queued": len(self._queue),
            "total_queued": self.metrics.total_queued,
            "total_dispatched": self.metrics.total_dispatched,
            "total_failed": self.metrics.total_failed,
            "peak_active": self.metrics.peak_active,
        }


class RateLimiterRegistry:
    """Hands out one shared :class:`RateLimiter` per configured ``id``."""

    def __init__(self) -> None:
        self._limiters: Dict[str, RateLimiter] = {}

    def get(self, config: RateLimitConfig) -> RateLimiter:
        if config.id is None:
            return RateLimiter(config)

        limiter = self._limiters.get(config.id)
        if limiter is None:
            limiter = RateLimiter(config)
            self._limiters[config.id] = limiter
            logging.info(
                f"Rate limiter '{config.id}' created with {config.max_requests} "
                f"requests per {config.per_milliseconds}ms"
            )
        elif limiter.config != config:
            logging.warning(
                f"Rate limiter '{config.id}' already exists with "
                f"{limiter.config.max_requests}/{limiter.config.per_milliseconds}ms; "
                f"ignoring {config.max_requests}/{config.per_milliseconds}ms"
            )
        return limiter

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {key: limiter.get_metrics() for key, limiter in self._limiters.items()}
