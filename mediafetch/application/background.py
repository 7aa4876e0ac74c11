"""Detached background work for stale-while-revalidate refreshes."""

from types import TracebackType
from typing import Any, Awaitable, Callable, Optional, Type

import anyio
from anyio.abc import TaskGroup

from ..logging import LogEvent, LogRecord, debug, warning


class BackgroundTasks:
    """
    Task group wrapper that runs fire-and-forget coroutines safely.

    Every spawned coroutine is guarded: an exception is logged here and
    counted, never re-raised into the task group, so one failed refresh
    cannot cancel its siblings or reach the caller that triggered it.

    Use as an async context manager; leaving the block waits for the
    remaining tasks to finish.
    """

    def __init__(self) -> None:
        self._task_group: Optional[TaskGroup] = None
        self._pending = 0
        self._idle: Optional[anyio.Event] = None
        self.completed = 0
        self.failures = 0

    async def __aenter__(self) -> "BackgroundTasks":
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> Optional[bool]:
        task_group, self._task_group = self._task_group, None
        if task_group is None:
            return None
        return await task_group.__aexit__(exc_type, exc, tb)

    @property
    def running(self) -> bool:
        return self._task_group is not None

    @property
    def pending(self) -> int:
        return self._pending

    def spawn(
        self, func: Callable[..., Awaitable[Any]], *args: Any, name: str
    ) -> None:
        """Schedule ``func(*args)`` without waiting for it.

        Raises:
            RuntimeError: If the runner has not been entered.
        """
        if self._task_group is None:
            raise RuntimeError(
                "BackgroundTasks is not running; enter it with 'async with'"
            )
        self._pending += 1
        self._task_group.start_soon(self._run_guarded, func, args, name, name=name)

    async def wait_idle(self) -> None:
        """Block until every spawned task has settled."""
        while self._pending:
            if self._idle is None:
                self._idle = anyio.Event()
            await self._idle.wait()

    async def _run_guarded(
        self, func: Callable[..., Awaitable[Any]], args: tuple, name: str
    ) -> None:
        try:
            await func(*args)
            self.completed += 1
            debug(
                LogRecord(
                    event=LogEvent.CACHE_EVENT.value,
                    message=f"Background task '{name}' completed",
                    data={"task": name},
                )
            )
        except Exception as exc:
            self.failures += 1
            warning(
                LogRecord(
                    event=LogEvent.BACKGROUND_TASK_FAILED.value,
                    message=f"Background task '{name}' failed",
                    data={"task": name},
                ),
                exc,
            )
        finally:
            self._pending -= 1
            if self._pending == 0 and self._idle is not None:
                self._idle.set()
                self._idle = None
