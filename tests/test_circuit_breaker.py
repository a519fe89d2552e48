import asyncio

import pytest

from listing_sentinel.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from listing_sentinel.errors import CircuitOpenError, RateLimitedError

pytestmark = pytest.mark.anyio


async def _ok():
    return "ok"


async def _boom():
    raise RuntimeError("upstream down")


def _breaker(clock, **kw):
    cfg = CircuitBreakerConfig(errors_before_open=3, open_duration_ms=1_000, **kw)
    return CircuitBreaker("bithumb", cfg, clock=clock)


async def _fail_times(cb, n):
    for _ in range(n):
        with pytest.raises(RuntimeError):
            await cb.execute(_boom)


class TestCircuitBreakerStateMachine:
    """CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN."""

    async def test_opens_after_threshold(self, clock):
        cb = _breaker(clock)
        await _fail_times(cb, 2)
        assert cb.is_closed()
        await _fail_times(cb, 1)
        assert cb.is_open()
        assert cb.open_count == 1

    async def test_success_resets_consecutive_errors(self, clock):
        cb = _breaker(clock)
        await _fail_times(cb, 2)
        assert await cb.execute(_ok) == "ok"
        await _fail_times(cb, 2)
        assert cb.is_closed()

    async def test_open_fails_fast_without_calling(self, clock):
        cb = _breaker(clock)
        await _fail_times(cb, 3)
        calls = []

        async def op():
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc:
            await cb.execute(op)
        assert calls == []
        assert exc.value.retry_in_ms == pytest.approx(1_000)

    async def test_open_runs_fallback(self, clock):
        cb = _breaker(clock)
        await _fail_times(cb, 3)

        async def fallback():
            return "cached"

        assert await cb.execute(_ok, fallback) == "cached"

    async def test_half_open_success_closes(self, clock):
        cb = _breaker(clock)
        await _fail_times(cb, 3)
        clock.advance(1_001)
        assert await cb.execute(_ok) == "ok"
        assert cb.state is CircuitState.CLOSED
        assert cb.error_count == 0

    async def test_half_open_failure_reopens(self, clock):
        cb = _breaker(clock)
        await _fail_times(cb, 3)
        clock.advance(1_001)
        await _fail_times(cb, 1)
        assert cb.is_open()
        assert cb.open_count == 2
        with pytest.raises(CircuitOpenError):
            await cb.execute(_ok)

    async def test_half_open_admits_a_single_trial_call(self, clock):
        cb = _breaker(clock)
        await _fail_times(cb, 3)
        clock.advance(1_001)
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "ok"

        first = asyncio.create_task(cb.execute(slow))
        await asyncio.sleep(0)
        assert cb.is_half_open()
        with pytest.raises(CircuitOpenError):
            await cb.execute(_ok)
        release.set()
        assert await first == "ok"
        assert cb.is_closed()

    async def test_state_changes_are_logged(self, clock, caplog):
        cb = _breaker(clock)
        with caplog.at_level("WARNING", logger="listing_sentinel.circuit_breaker"):
            await _fail_times(cb, 3)
        assert any(
            "state_change name=bithumb from=CLOSED to=OPEN" in r.getMessage()
            for r in caplog.records
        )

    async def test_excluded_exceptions_are_not_counted(self, clock):
        cb = _breaker(clock, excluded_exceptions=(RateLimitedError,))

        async def throttled():
            raise RateLimitedError("429")

        for _ in range(5):
            with pytest.raises(RateLimitedError):
                await cb.execute(throttled)
        assert cb.is_closed()
        assert cb.error_count == 0

    async def test_cancellation_is_not_counted(self, clock):
        cb = _breaker(clock)

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await cb.execute(cancelled)
        assert cb.error_count == 0


async def test_stats_and_reset(clock):
    cb = _breaker(clock)
    await cb.execute(_ok)
    await _fail_times(cb, 3)
    stats = cb.get_stats()
    assert stats["state"] == "OPEN"
    assert stats["total_requests"] == 4
    assert stats["successful_requests"] == 1
    assert stats["failed_requests"] == 3
    assert stats["cooldown_remaining_ms"] > 0
    cb.reset()
    assert cb.is_closed()
    assert await cb.execute(_ok) == "ok"
