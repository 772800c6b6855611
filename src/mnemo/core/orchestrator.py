"""Cycle orchestrator - runs periodic memory maintenance on independent timers."""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from mnemo.core.logging import get_logger

logger = get_logger("core.orchestrator")


class TaskPriority(Enum):
    LOW = 1
    NORMAL = 2
    HIGH = 3


@dataclass
class ScheduledTask:
    """A task scheduled for background execution."""

    id: str
    name: str
    callback: Callable
    interval: timedelta | None = None  # None = one-shot
    priority: TaskPriority = TaskPriority.NORMAL
    next_run: datetime = field(default_factory=datetime.now)
    last_run: datetime | None = None
    enabled: bool = True
    running: bool = False
    failures: int = 0


class Orchestrator:
    """Schedules maintenance cycles (consolidation, evolution, security scans)."""

    def __init__(self, tick_seconds: float = 1.0):
        self._tasks: dict[str, ScheduledTask] = {}
        self._running = False
        self._scheduler_task: asyncio.Task | None = None
        self._tick_seconds = tick_seconds

    def schedule_task(
        self,
        task_id: str,
        name: str,
        callback: Callable,
        interval: timedelta | None = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        delay: timedelta | None = None,
    ) -> None:
        """Schedule a background task."""
        next_run = datetime.now()
        if delay:
            next_run += delay

        self._tasks[task_id] = ScheduledTask(
            id=task_id,
            name=name,
            callback=callback,
            interval=interval,
            priority=priority,
            next_run=next_run,
        )
        logger.info(f"Scheduled task: {name} (interval: {interval})")

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a scheduled task."""
        if task_id in self._tasks:
            del self._tasks[task_id]
            return True
        return False

    def list_tasks(self) -> list[dict]:
        return [
            {
                "id": t.id,
                "name": t.name,
                "interval": str(t.interval) if t.interval else None,
                "next_run": t.next_run.isoformat(),
                "last_run": t.last_run.isoformat() if t.last_run else None,
                "failures": t.failures,
            }
            for t in self._tasks.values()
        ]

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            return
        self._running = True
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        """Stop the scheduler loop."""
        self._running = False
        if self._scheduler_task:
            self._scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None
        logger.info("Orchestrator stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def run_pending(self, now: datetime | None = None) -> int:
        """Run every due task once, return how many ran."""
        now = now or datetime.now()
        pending = [
            t for t in self._tasks.values()
            if t.enabled and not t.running and t.next_run <= now
        ]

        # Sort by priority (higher first)
        pending.sort(key=lambda t: t.priority.value, reverse=True)

        for task in pending:
            task.running = True
            try:
                result = task.callback()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                task.failures += 1
                logger.error(f"Task {task.name} failed: {e}")
            finally:
                task.running = False
                task.last_run = datetime.now()

                if task.interval:
                    task.next_run = task.last_run + task.interval
                else:
                    self._tasks.pop(task.id, None)

        return len(pending)

    async def _scheduler_loop(self) -> None:
        while self._running:
            await self.run_pending()
            await asyncio.sleep(self._tick_seconds)
