"""
Tests for the resilience wrapper: timeout race, retry with backoff and the
circuit breaker registry.

Run with:  pytest tests/test_resilience.py -v
"""
from __future__ import annotations

import asyncio

import pytest

from deliberator.observer import EventType, event_bus
from deliberator.resilience import (
    CallTimeoutError,
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    RetryPolicy,
    call_with_resilience,
    circuit_breaker_states,
    classify_failure,
    get_circuit_breaker,
    is_rate_limit_error,
    race_timeout,
    reset_all_circuit_breakers,
    retry_with_backoff,
)
from deliberator.schemas import FailureCategory
from tests.conftest import FailingProvider, FlakyProvider


# =====================================================================
# Timeout race
# =====================================================================


class TestRaceTimeout:

    @pytest.mark.asyncio
    async def test_returns_result_when_fast(self):
        async def quick():
            return 42

        assert await race_timeout(quick(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_raises_with_message_when_slow(self):
        async def slow():
            await asyncio.sleep(1.0)

        with pytest.raises(CallTimeoutError, match="too slow"):
            await race_timeout(slow(), 0.02, "too slow")

    @pytest.mark.asyncio
    async def test_losing_call_is_abandoned_not_cancelled(self):
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.05)
            finished.set()
            return "late"

        with pytest.raises(CallTimeoutError):
            await race_timeout(slow(), 0.01)
        await asyncio.wait_for(finished.wait(), timeout=1.0)
        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_call_error_propagates(self):
        async def broken():
            raise ValueError("bad input")

        with pytest.raises(ValueError, match="bad input"):
            await race_timeout(broken(), 1.0)


# =====================================================================
# Retry with backoff
# =====================================================================


class TestRetry:

    def test_delay_schedule_is_capped(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=10.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    @pytest.mark.parametrize("message", [
        "Rate limit reached",
        "HTTP 429",
        "Too Many Requests",
        "Quota exceeded for project",
    ])
    def test_rate_limit_detection(self, message):
        assert is_rate_limit_error(RuntimeError(message))

    def test_other_errors_not_rate_limited(self):
        assert not is_rate_limit_error(RuntimeError("invalid api key"))

    @pytest.mark.asyncio
    async def test_retries_rate_limits_with_growing_delay(self):
        calls = 0
        delays: list[float] = []

        async def fn():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RuntimeError("429 rate limit")
            return "ok"

        result = await retry_with_backoff(
            fn,
            RetryPolicy(max_attempts=3, initial_delay=0.01, multiplier=2.0),
            on_retry=lambda attempt, exc, delay: delays.append(delay),
        )
        assert result == "ok"
        assert calls == 3
        assert delays == [0.01, 0.02]

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await retry_with_backoff(fn, RetryPolicy(initial_delay=0.01))
        assert calls == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            raise RuntimeError(f"rate limit #{calls}")

        with pytest.raises(RuntimeError, match="#3"):
            await retry_with_backoff(fn, RetryPolicy(max_attempts=3, initial_delay=0.001))
        assert calls == 3


class TestClassifyFailure:

    def test_categories(self):
        assert classify_failure(CallTimeoutError("x")) is FailureCategory.TIMEOUT
        assert classify_failure(RuntimeError("429 Too Many Requests")) is FailureCategory.QUOTA
        assert classify_failure(RuntimeError("401 Unauthorized")) is FailureCategory.AUTH
        assert classify_failure(ConnectionError("reset")) is FailureCategory.TRANSIENT
        assert classify_failure(RuntimeError("404 model not found")) is FailureCategory.PERMANENT
        assert classify_failure(CircuitOpenError("m", 3.0)) is FailureCategory.CIRCUIT_OPEN


# =====================================================================
# Circuit breaker
# =====================================================================


async def _ok():
    return "ok"


async def _fail():
    raise RuntimeError("down")


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_fails_fast(self):
        breaker = CircuitBreaker("m", failure_threshold=2, reset_timeout=60.0)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        assert breaker.state is CircuitState.OPEN

        invoked = False

        async def probe():
            nonlocal invoked
            invoked = True
            return "ok"

        with pytest.raises(CircuitOpenError, match="Circuit breaker m is OPEN"):
            await breaker.call(probe)
        assert invoked is False

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("m", failure_threshold=3)
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        assert breaker.failure_count == 1
        await breaker.call(_ok)
        assert breaker.failure_count == 0
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_closes_after_enough_successes(self):
        breaker = CircuitBreaker("m", failure_threshold=1, reset_timeout=0.02, success_threshold=2)
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        assert breaker.state is CircuitState.OPEN

        await asyncio.sleep(0.03)
        await breaker.call(_ok)
        assert breaker.state is CircuitState.HALF_OPEN
        await breaker.call(_ok)
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker("m", failure_threshold=1, reset_timeout=0.02)
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        await asyncio.sleep(0.03)
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)
        assert breaker.state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_request_timeout_counts_as_failure(self):
        breaker = CircuitBreaker("m", request_timeout=0.01)

        async def slow():
            await asyncio.sleep(0.5)

        with pytest.raises(CallTimeoutError):
            await breaker.call(slow)
        assert breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_transitions_published_on_event_bus(self):
        seen = []

        def on_event(event):
            seen.append(event)

        event_bus.subscribe(EventType.CIRCUIT_STATE, on_event)
        try:
            breaker = CircuitBreaker("observed", failure_threshold=1)
            with pytest.raises(RuntimeError):
                await breaker.call(_fail)
        finally:
            event_bus.unsubscribe_all(on_event)

        assert len(seen) == 1
        assert seen[0].payload == {"model": "observed", "from": "closed", "to": "open"}


class TestBreakerRegistry:

    def test_same_name_same_breaker(self):
        a = get_circuit_breaker("gpt", failure_threshold=2)
        b = get_circuit_breaker("gpt", failure_threshold=9)
        assert a is b
        assert a.failure_threshold == 2

    @pytest.mark.asyncio
    async def test_states_and_reset_all(self):
        breaker = get_circuit_breaker("claude", failure_threshold=1)
        with pytest.raises(RuntimeError):
            await breaker.call(_fail)

        states = circuit_breaker_states()
        assert states["claude"]["state"] == "open"
        assert states["claude"]["failure_count"] == 1

        reset_all_circuit_breakers()
        assert circuit_breaker_states()["claude"]["state"] == "closed"


# =====================================================================
# Composition through a provider
# =====================================================================


class TestCallWithResilience:

    @pytest.mark.asyncio
    async def test_provider_retries_rate_limits(self):
        provider = FlakyProvider(fail_count=2)
        provider.retry_policy = RetryPolicy(max_attempts=3, initial_delay=0.001)
        response = await provider.generate("hi")
        assert response.text == "Success!"
        assert provider.call_count == 3
        # the breaker saw one successful outer call
        assert get_circuit_breaker("flaky").failure_count == 0

    @pytest.mark.asyncio
    async def test_per_attempt_timeout(self):
        async def slow():
            await asyncio.sleep(0.5)

        with pytest.raises(CallTimeoutError, match="slowpoke timed out"):
            await call_with_resilience("slowpoke", slow, timeout=0.01)
        assert get_circuit_breaker("slowpoke").failure_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self):
        provider = FailingProvider(name="broken")
        provider.breaker_options = {"failure_threshold": 2, "reset_timeout": 60.0}
        for _ in range(2):
            with pytest.raises(RuntimeError, match="boom"):
                await provider.generate("hi")
        with pytest.raises(CircuitOpenError):
            await provider.generate("hi")
        assert provider.call_count == 2
