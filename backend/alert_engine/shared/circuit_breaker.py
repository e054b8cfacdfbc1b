from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, TypeVar

from alert_engine.infra.metrics import metrics

logger = logging.getLogger("alert_engine.circuit")

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreakerOpenError(RuntimeError):
    pass


class CircuitBreaker(Generic[T]):
    """Trips after `failure_threshold` failures inside a sliding window.

    While open every call is rejected with `CircuitBreakerOpenError`; after
    `recovery_time` seconds a limited number of probe calls is let through
    and the first success closes the circuit again.
    """

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_time: float = 30.0,
        window_seconds: float = 60.0,
        half_open_max_calls: int = 1,
        timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_time = max(0.01, recovery_time)
        self.window_seconds = max(0.01, window_seconds)
        self.half_open_max_calls = max(1, half_open_max_calls)
        self.timeout_seconds = None if timeout_seconds is None else max(0.01, timeout_seconds)
        self._clock = clock
        self._state = CLOSED
        self._opened_at = 0.0
        self._failures: Deque[float] = deque()
        self._probes_in_flight = 0
        self._lock = asyncio.Lock()
        metrics.record_circuit_state(self.name, self._state)

    @property
    def state(self) -> str:
        return self._state

    async def call(self, fn: Callable[..., T | Awaitable[T]], *args, **kwargs) -> T:
        await self._acquire()
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                if self.timeout_seconds is None:
                    result = await result
                else:
                    result = await asyncio.wait_for(result, timeout=self.timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            await self._on_failure()
            logger.warning(
                "circuit_failure",
                extra={"extra": {"name": self.name, "state": self._state, "error": type(exc).__name__}},
            )
            raise
        await self._on_success()
        return result  # type: ignore[return-value]

    def _transition(self, state: str) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        if state == OPEN:
            self._opened_at = self._clock()
        if state != HALF_OPEN:
            self._probes_in_flight = 0
        metrics.record_circuit_state(self.name, state)
        logger.info("circuit_state_changed", extra={"extra": {"name": self.name, "from": previous, "to": state}})

    async def _acquire(self) -> None:
        async with self._lock:
            if self._state == OPEN:
                if self._clock() - self._opened_at < self.recovery_time:
                    raise CircuitBreakerOpenError(f"circuit_open:{self.name}")
                self._transition(HALF_OPEN)
            if self._state == HALF_OPEN:
                if self._probes_in_flight >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(f"circuit_half_open_limit:{self.name}")
                self._probes_in_flight += 1

    async def _on_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._state == HALF_OPEN:
                self._transition(OPEN)
                return
            self._failures.append(now)
            while self._failures and self._failures[0] < now - self.window_seconds:
                self._failures.popleft()
            if len(self._failures) >= self.failure_threshold:
                self._failures.clear()
                self._transition(OPEN)

    async def _on_success(self) -> None:
        async with self._lock:
            self._failures.clear()
            self._transition(CLOSED)
