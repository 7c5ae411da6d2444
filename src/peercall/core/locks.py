"""Task-reentrant session lock."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class SessionLock:
    """Serializes everything that touches a call session.

    Reentrant for the task that holds it, so a UI callback awaited while
    the lock is held may call back into the controller. Other tasks
    (timers, media callbacks, transport handlers, spawned children) wait
    their turn.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task[object] | None = None

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[None]:
        task = asyncio.current_task()
        if task is not None and self._owner is task:
            yield
            return

        async with self._lock:
            self._owner = task
            try:
                yield
            finally:
                self._owner = None
