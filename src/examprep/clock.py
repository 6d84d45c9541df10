import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


# --- Time sources ---
class Clock(ABC):
    """Source of the current instant. Always timezone-aware UTC."""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# --- Scheduling ---
class Scheduler(ABC):
    """Runs callbacks and coroutines on the single event loop of the engine."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        """Schedule `callback` after `delay` seconds. Returns an object with `cancel()`."""

    @abstractmethod
    def spawn(self, coro: Coroutine) -> "asyncio.Future":
        """Run `coro` in the background."""


class AsyncioScheduler(Scheduler):
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(delay, callback)

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = self._get_loop().create_task(coro)
        # The loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()!r}")
