"""Fire-and-forget background work whose failures are logged, never raised."""

import asyncio
from collections.abc import Coroutine
from typing import Any

from mnemo.core.logging import get_logger

logger = get_logger("core.background")


class BackgroundTasks:
    """Keeps references to spawned tasks until they finish."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: set[asyncio.Task] = set()
        self.failures = 0
        self.completed = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.name}:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failures += 1
            logger.error(f"Background task {task.get_name()} failed: {exc}")
        else:
            self.completed += 1

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all currently pending tasks (including ones they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
