"""Cancellable, wall-clock based timers.

Deadlines are absolute wall-clock instants. Sleeping happens in short slices
and the clock is re-read after each slice, so a process that was suspended
(mobile backgrounding, a paused VM) fires overdue timers as soon as it
resumes instead of trusting the original sleep duration.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine, Hashable
from typing import Any

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


async def sleep_until(deadline: float, *, tick: float = 1.0, clock: Clock = time.time) -> None:
    """Sleep until ``clock()`` reaches ``deadline``."""
    tick = max(tick, 0.001)
    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            return
        await asyncio.sleep(min(remaining, tick))


class KeyedTasks:
    """At most one background task per key.

    Spawning under a key that already has a task cancels the old one first.
    Finished tasks remove themselves, so ``active`` only reports pending work.
    """

    def __init__(self, name: str = "timer") -> None:
        self._name = name
        self._tasks: dict[Hashable, asyncio.Task[Any]] = {}

    def spawn(self, key: Hashable, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        self.cancel(key)
        task = asyncio.create_task(coro, name=f"{self._name}:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return task

    def cancel(self, key: Hashable) -> bool:
        """Cancel the task under ``key``; returns whether a task was cancelled.

        A task cancelling its own key (a timer resolving itself) is only
        forgotten, not cancelled, and reports False.
        """
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def active(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def keys(self) -> list[Hashable]:
        return [key for key, task in self._tasks.items() if not task.done()]

    def _forget(self, key: Hashable, done: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is done:
            del self._tasks[key]
        if not done.cancelled() and done.exception() is not None:
            logger.error(
                "%s task %s failed", self._name, key, exc_info=done.exception()
            )

    async def close(self) -> None:
        """Cancel every pending task and wait for them to unwind."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self.keys())
