import anyio
import pytest

from alert_engine.shared.circuit_breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker, CircuitBreakerOpenError


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


async def _fail():
    raise RuntimeError("provider down")


async def _ok():
    return "sent"


def test_breaker_opens_after_threshold_and_recovers():
    async def _run():
        clock = FakeMonotonic()
        breaker = CircuitBreaker(name="sms", failure_threshold=2, recovery_time=30, clock=clock)

        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        assert breaker.state == OPEN

        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(_ok)

        clock.value += 31
        assert await breaker.call(_ok) == "sent"
        assert breaker.state == CLOSED

    anyio.run(_run)


def test_failed_trial_call_reopens_the_circuit():
    async def _run():
        clock = FakeMonotonic()
        breaker = CircuitBreaker(name="push", failure_threshold=1, recovery_time=10, clock=clock)

        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        clock.value += 11
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

        assert breaker.state == OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(_ok)

    anyio.run(_run)


def test_failures_outside_window_do_not_trip():
    async def _run():
        clock = FakeMonotonic()
        breaker = CircuitBreaker(name="email", failure_threshold=2, window_seconds=60, clock=clock)

        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        clock.value += 61
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

        assert breaker.state == CLOSED

    anyio.run(_run)


def test_sync_callables_are_supported():
    async def _run():
        breaker = CircuitBreaker(name="sync")

        assert await breaker.call(lambda value: value * 2, 21) == 42

    anyio.run(_run)


def test_half_open_limits_concurrent_trial_calls():
    async def _run():
        clock = FakeMonotonic()
        breaker = CircuitBreaker(name="webhook", failure_threshold=1, recovery_time=5, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        clock.value += 6
        release = anyio.Event()

        async def slow_send():
            await release.wait()
            return "sent"

        async with anyio.create_task_group() as group:
            group.start_soon(breaker.call, slow_send)
            await anyio.sleep(0.01)
            assert breaker.state == HALF_OPEN
            with pytest.raises(CircuitBreakerOpenError):
                await breaker.call(_ok)
            release.set()

        assert breaker.state == CLOSED

    anyio.run(_run)
