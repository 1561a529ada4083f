"""
Unit tests for the circuit breaker.
"""
import pytest

from saathi.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState

from conftest import FakeClock


async def ok():
    return "ok"


async def boom():
    raise RuntimeError("boom")


async def fail_times(breaker, n):
    for _ in range(n):
        with pytest.raises(RuntimeError):
            await breaker.call_async(boom)


@pytest.mark.asyncio
async def test_closed_breaker_passes_calls_through():
    breaker = CircuitBreaker("test")

    assert await breaker.call_async(ok) == "ok"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_stays_closed_below_min_calls():
    breaker = CircuitBreaker("test", min_calls=10)

    await fail_times(breaker, 9)

    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_opens_at_failure_rate_threshold():
    breaker = CircuitBreaker("test", min_calls=10, failure_threshold=0.5)
    for _ in range(5):
        await breaker.call_async(ok)

    await fail_times(breaker, 5)

    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call_async(ok)


@pytest.mark.asyncio
async def test_half_open_probes_then_closes():
    clock = FakeClock()
    breaker = CircuitBreaker("test", min_calls=2, open_seconds=30, probe_every=2, close_after=2, clock=clock)
    await fail_times(breaker, 2)
    assert breaker.state is CircuitState.OPEN

    clock.advance(30)
    assert breaker.state is CircuitState.HALF_OPEN

    # Every second call is a probe; the others are rejected
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call_async(ok)
    assert await breaker.call_async(ok) == "ok"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call_async(ok)
    assert await breaker.call_async(ok) == "ok"

    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failed_probe_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker("test", min_calls=2, open_seconds=30, probe_every=1, clock=clock)
    await fail_times(breaker, 2)
    clock.advance(30)

    await fail_times(breaker, 1)

    assert breaker.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_old_results_leave_the_window():
    clock = FakeClock()
    breaker = CircuitBreaker("test", min_calls=4, window_seconds=60, clock=clock)
    await fail_times(breaker, 3)

    clock.advance(61)
    await fail_times(breaker, 1)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.get_metrics()["recent_failures"] == 1
