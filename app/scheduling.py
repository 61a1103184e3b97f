"""
Clock and delayed-task scheduling used by the job queue and the cache.

The queue never sleeps on its own; retries are handed to a scheduler so that
tests can substitute a manually advanced one.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from app.logging_config import get_logger


class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DelayedTaskScheduler(Protocol):
    """
    Runs callbacks after a delay.

    At most one callback is scheduled per key; scheduling an existing key
    replaces it.
    """

    def schedule(self, key: str, delay_seconds: float, callback: Callable[[], None]) -> None:
        ...

    def cancel(self, key: str) -> bool:
        ...

    def cancel_all(self) -> None:
        ...

    def scheduled(self) -> Dict[str, datetime]:
        ...


class LoopScheduler:
    """
    Scheduler built on the running event loop's ``call_later``.

    Callbacks run on the loop thread, so they may mutate loop-owned state
    synchronously.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.logger = get_logger(__name__)
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._due: Dict[str, datetime] = {}

    def schedule(self, key: str, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()

        def fire() -> None:
            self._handles.pop(key, None)
            self._due.pop(key, None)
            callback()

        self._handles[key] = loop.call_later(max(delay_seconds, 0.0), fire)
        self._due[key] = self.clock.now() + timedelta(seconds=delay_seconds)
        self.logger.debug(
            "Task scheduled",
            extra={"task_key": key, "delay_seconds": delay_seconds}
        )

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        self._due.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        self._due.clear()

    def scheduled(self) -> Dict[str, datetime]:
        return dict(self._due)
