"""Deferred one-shot tasks with an injectable clock.

Auto-completion checks fire minutes after a tab is reopened. The manager never
sleeps itself: it hands a coroutine to a ``Scheduler``. ``AsyncioScheduler``
runs it on the event loop after a real delay; ``ManualScheduler`` keeps a
virtual clock that tests advance explicitly.

``TaskRegistry`` keys tasks (by insight id) so that scheduling again replaces
the previous task and any code path can cancel it.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()

Callback = Callable[[], Awaitable[None]]


class ScheduledTask:
    """Handle to a scheduled callback. ``cancel()`` is idempotent."""

    def __init__(self, due: datetime, callback: Callback) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.done = False
        self._on_cancel: Optional[Callable[[], None]] = None

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.done)

    def cancel(self) -> None:
        if not self.pending:
            return
        self.cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()

    async def run(self) -> None:
        if not self.pending:
            return
        self.done = True
        await self.callback()


class Scheduler:
    """Clock plus one-shot deferred execution."""

    def now(self) -> datetime:
        raise NotImplementedError

    def call_later(self, delay_seconds: float, callback: Callback) -> ScheduledTask:
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    """Wall clock; callbacks run as tasks on the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay_seconds: float, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(self.now() + timedelta(seconds=delay_seconds), callback)

        async def _sleep_then_run() -> None:
            await asyncio.sleep(delay_seconds)
            try:
                await task.run()
            except Exception as e:
                logger.error("scheduled_task_failed", error=str(e))

        handle = asyncio.get_running_loop().create_task(_sleep_then_run())
        task._on_cancel = handle.cancel
        return task


class ManualScheduler(Scheduler):
    """Virtual clock for tests. Nothing fires until ``advance`` is awaited."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._queue: list[tuple[datetime, int, ScheduledTask]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay_seconds: float, callback: Callback) -> ScheduledTask:
        task = ScheduledTask(self._now + timedelta(seconds=delay_seconds), callback)
        self._queue.append((task.due, next(self._seq), task))
        return task

    @property
    def pending_count(self) -> int:
        return sum(1 for _, _, t in self._queue if t.pending)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every task that comes due, in order."""
        target = self._now + timedelta(seconds=seconds)
        while True:
            due = sorted((e for e in self._queue if e[2].pending and e[0] <= target), key=lambda e: (e[0], e[1]))
            if not due:
                break
            when, _, task = due[0]
            self._queue.remove(due[0])
            self._now = max(self._now, when)
            await task.run()
        self._now = target
        self._queue = [e for e in self._queue if e[2].pending]


class TaskRegistry:
    """At most one pending task per key."""

    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler
        self._tasks: dict[str, ScheduledTask] = {}

    def schedule(self, key: str, delay_seconds: float, callback: Callback) -> ScheduledTask:
        self.cancel(key)

        async def _fire() -> None:
            if self._tasks.get(key) is task:
                del self._tasks[key]
            await callback()

        task = self.scheduler.call_later(delay_seconds, _fire)
        self._tasks[key] = task
        logger.debug("task_scheduled", key=key, due=task.due.isoformat())
        return task

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        logger.debug("task_cancelled", key=key)
        return True

    def is_scheduled(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and task.pending
