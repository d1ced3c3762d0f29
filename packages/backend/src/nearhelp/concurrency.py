"""Asyncio primitives for per-key serialization and background delivery.

Learn: Everything runs on one event loop, so a plain dict of locks is
safe to mutate without its own lock: there is no await between looking
a key up and inserting it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Coroutine, Hashable, Optional

import structlog

logger = structlog.get_logger()


class KeyedLock:
    """One asyncio.Lock per key, created on demand and dropped when idle.

    Used to serialize read-check-write sequences on one conversation or
    one post while unrelated keys proceed concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class TaskTracker:
    """Fire-and-forget tasks that are still reachable for shutdown.

    Learn: asyncio only keeps weak references to tasks, so a bare
    create_task() can be garbage collected mid-flight. The tracker holds
    a strong reference until the task finishes and logs anything it
    raised, since nobody awaits these tasks.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None
    ) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task.failed",
                task=task.get_name(),
                error=repr(exc),
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every tracked task, including ones spawned meanwhile."""
        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.warning("background_task.drain_timeout", pending=len(pending))
                return

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
