"""
Tests for retry_with_backoff and the circuit breaker.
"""

import pytest

from clinicflow.exceptions import FatalError, StoreUnavailable
from clinicflow.resilience import (
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    get_all_circuit_statuses,
    get_circuit_breaker,
    retry_with_backoff,
)


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_delays_double(self):
        sleeps = []
        attempts = []

        async def sleep(delay):
            sleeps.append(delay)

        async def flaky(attempt):
            attempts.append(attempt)
            if attempt < 3:
                raise StoreUnavailable("busy")
            return "ok"

        result = await retry_with_backoff(flaky, max_attempts=3, base_delay=1.0, sleep=sleep)

        assert result == "ok"
        assert attempts == [1, 2, 3]
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_last_error_raised_when_exhausted(self):
        async def sleep(delay):
            return None

        async def always(attempt):
            raise StoreUnavailable(f"attempt {attempt}")

        with pytest.raises(StoreUnavailable, match="attempt 2"):
            await retry_with_backoff(always, max_attempts=2, sleep=sleep)

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates_at_once(self):
        calls = []

        async def fatal(attempt):
            calls.append(attempt)
            raise FatalError("malformed row")

        with pytest.raises(FatalError):
            await retry_with_backoff(fatal, max_attempts=5, retry_on=(StoreUnavailable,))

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_zero_attempts_rejected(self):
        async def noop(attempt):
            return None

        with pytest.raises(ValueError):
            await retry_with_backoff(noop, max_attempts=0)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        circuit = get_circuit_breaker("smtp", CircuitBreakerConfig(failure_threshold=2, recovery_timeout=60))

        async def failing():
            raise ConnectionError("refused")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await circuit.call(failing)

        assert circuit.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await circuit.call(failing)
        assert get_all_circuit_statuses()["smtp"]["state"] == "open"

    @pytest.mark.asyncio
    async def test_half_open_closes_after_successes(self):
        circuit = get_circuit_breaker(
            "model", CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0, success_threshold=2)
        )

        async def failing():
            raise TimeoutError()

        async def working():
            return "ok"

        with pytest.raises(TimeoutError):
            await circuit.call(failing)
        assert circuit.state is CircuitState.OPEN

        assert await circuit.call(working) == "ok"
        assert circuit.state is CircuitState.HALF_OPEN
        await circuit.call(working)
        assert circuit.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        circuit = get_circuit_breaker("calendar", CircuitBreakerConfig(failure_threshold=2))

        async def failing():
            raise ConnectionError()

        async def working():
            return None

        with pytest.raises(ConnectionError):
            await circuit.call(failing)
        await circuit.call(working)

        assert circuit.failure_count == 0

    def test_same_name_same_breaker(self):
        assert get_circuit_breaker("store") is get_circuit_breaker("store")

    @pytest.mark.asyncio
    async def test_errors_outside_trip_on_do_not_count(self):
        circuit = get_circuit_breaker(
            "calendar_api", CircuitBreakerConfig(failure_threshold=1, trip_on=(ConnectionError,))
        )

        async def rejected():
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await circuit.call(rejected)

        assert circuit.state is CircuitState.CLOSED
        assert circuit.failure_count == 0
        assert circuit.get_status()["times_opened"] == 0
