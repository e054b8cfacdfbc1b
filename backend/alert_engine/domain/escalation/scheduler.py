from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

PENDING = "pending"
FIRED = "fired"
CANCELLED = "cancelled"

TimerCallback = Callable[["TimerHandle"], Awaitable[None]]


class TimerHandle:
    """A one-shot timer that fires at most once and never after `cancel()`."""

    def __init__(self, key: str, delay_seconds: float, callback: TimerCallback) -> None:
        self.key = key
        self.delay_seconds = delay_seconds
        self._callback = callback
        self._state = PENDING
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def pending(self) -> bool:
        return self._state == PENDING

    def cancel(self) -> bool:
        if self._state != PENDING:
            return False
        self._state = CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def fire(self) -> bool:
        if self._state != PENDING:
            return False
        self._state = FIRED
        try:
            await self._callback(self)
        except Exception:  # noqa: BLE001
            logger.exception("escalation_timer_failed", extra={"extra": {"alert_id": self.key}})
        return True

    def __repr__(self) -> str:
        return f"TimerHandle(key={self.key!r}, delay_seconds={self.delay_seconds}, state={self._state})"


class Scheduler(Protocol):
    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> TimerHandle:
        ...

    async def shutdown(self) -> None:
        ...


class AsyncioScheduler:
    """Runs each timer as its own asyncio task on the running loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, key: str, delay_seconds: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle(key, max(delay_seconds, 0.0), callback)
        task = asyncio.get_running_loop().create_task(self._run(handle), name=f"escalation:{key}")
        handle._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def _run(self, handle: TimerHandle) -> None:
        await asyncio.sleep(handle.delay_seconds)
        # Detach from the handle so a cancel() during delivery does not interrupt it.
        handle._task = None
        await handle.fire()

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
