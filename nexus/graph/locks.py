"""Per-project mutual exclusion for graph writes."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class ProjectLockRegistry:
    """Hands out one ``asyncio.Lock`` per project and drops it once idle."""

    def __init__(self) -> None:
        self.locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters; a lock is only dropped when nobody references it
        self._users: dict[str, int] = {}

    def get_lock(self, project_id: str) -> asyncio.Lock:
        lock = self.locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[project_id] = lock
        return lock

    def prune_lock(self, project_id: str) -> None:
        """Drop the lock entry once no coroutine holds or awaits it."""
        if self._users.get(project_id, 0) > 0:
            return
        self._users.pop(project_id, None)
        self.locks.pop(project_id, None)

    def in_use(self, project_id: str) -> bool:
        return self._users.get(project_id, 0) > 0

    async def run_exclusive(self, project_id: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run *work* while holding the project's lock."""
        lock = self.get_lock(project_id)
        self._users[project_id] = self._users.get(project_id, 0) + 1
        try:
            async with lock:
                return await work()
        finally:
            self._users[project_id] -= 1
            self.prune_lock(project_id)
