"""
============================================================================
Fiat Bridge v1.0.0
Retry Scheduler - Delayed Re-Queue Abstraction
============================================================================

The orchestrator never sleeps for retries. It asks a RetryScheduler to
run a callback after a delay:

- AsyncioRetryScheduler: loop.call_later on the running event loop
- ManualRetryScheduler: callbacks held until the test advances the clock

Callbacks may be plain functions or coroutine functions.

============================================================================
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, Union

from services.conversion_models import utc_now

logger = logging.getLogger(__name__)

RetryCallback = Callable[[], Union[None, Awaitable[None]]]


class RetryScheduler(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC time as seen by this scheduler."""

    @abstractmethod
    def schedule(self, delay_seconds: float, callback: RetryCallback) -> None:
        """Run ``callback`` once after ``delay_seconds``."""

    def cancel_all(self) -> None:
        pass


class AsyncioRetryScheduler(RetryScheduler):
    """Wall-clock scheduler backed by the running event loop."""

    def __init__(self) -> None:
        self._handles: List[asyncio.TimerHandle] = []
        self._tasks: List["asyncio.Task[Any]"] = []

    def now(self) -> datetime:
        return utc_now()

    def schedule(self, delay_seconds: float, callback: RetryCallback) -> None:
        loop = asyncio.get_running_loop()
        self._handles = [h for h in self._handles if not h.cancelled()]
        self._handles.append(
            loop.call_later(max(delay_seconds, 0), self._fire, loop, callback)
        )

    def _fire(self, loop: asyncio.AbstractEventLoop, callback: RetryCallback) -> None:
        try:
            result = callback()
        except Exception as e:
            logger.error(f"[RETRY-SCHEDULER] Retry callback failed | error={e}")
            return
        if inspect.isawaitable(result):
            task = loop.create_task(result)
            self._tasks.append(task)
            task.add_done_callback(self._tasks.remove)

    def cancel_all(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()


@dataclass
class _PendingRetry:
    due_at: datetime
    callback: RetryCallback


class ManualRetryScheduler(RetryScheduler):
    """
    Deterministic scheduler for tests.

    Time only moves through ``advance``. ``fire_all`` runs every pending
    callback regardless of its due time.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or utc_now()
        self._pending: List[_PendingRetry] = []

    def now(self) -> datetime:
        return self._now

    def schedule(self, delay_seconds: float, callback: RetryCallback) -> None:
        self._pending.append(
            _PendingRetry(self._now + timedelta(seconds=delay_seconds), callback)
        )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _run(self, due: List[_PendingRetry]) -> int:
        for item in due:
            result = item.callback()
            if inspect.isawaitable(result):
                await result
        return len(due)

    async def advance(self, seconds: float) -> int:
        """Move the clock forward and run callbacks that became due."""
        self._now = self._now + timedelta(seconds=seconds)
        due = [p for p in self._pending if p.due_at <= self._now]
        self._pending = [p for p in self._pending if p.due_at > self._now]
        return await self._run(sorted(due, key=lambda p: p.due_at))

    async def fire_all(self) -> int:
        due, self._pending = self._pending, []
        return await self._run(due)

    def cancel_all(self) -> None:
        self._pending.clear()


__all__ = [
    "RetryScheduler",
    "AsyncioRetryScheduler",
    "ManualRetryScheduler",
    "RetryCallback",
]
