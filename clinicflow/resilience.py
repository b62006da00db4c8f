"""
Failure isolation for outbound calls to the triage model, SMTP and calendar.

A breaker moves CLOSED -> OPEN once `failure_threshold` tripping errors
arrive in a row, rejects calls with CircuitOpenError until
`recovery_timeout` seconds pass, then lets calls through HALF_OPEN and
closes again after `success_threshold` successes. Any failure while
half-open reopens it.

retry_with_backoff implements the pipeline retry policy: delay = base * factor**(attempt - 1).
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from loguru import logger


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    # Errors outside this tuple pass through without counting against the circuit
    trip_on: Tuple[Type[BaseException], ...] = (Exception,)


class CircuitOpenError(Exception):
    """Raised instead of calling a dependency whose circuit is open."""


class CircuitBreaker:
    """
    Guards one outbound dependency.

    Usage:
        circuit = get_circuit_breaker("triage_model")
        text = await circuit.call(client.complete, prompt)
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.times_opened = 0
        self.opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    def _retry_in(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (self.clock() - self.opened_at))

    def _transition(self, state: CircuitState, reason: str) -> None:
        previous, self.state = self.state, state
        if state is CircuitState.OPEN:
            self.opened_at = self.clock()
            self.times_opened += 1
            logger.warning(f"Circuit '{self.name}' {previous.value} -> open: {reason}")
        else:
            logger.info(f"Circuit '{self.name}' {previous.value} -> {state.value}: {reason}")

    async def _admit(self) -> None:
        async with self._lock:
            if self.state is not CircuitState.OPEN:
                return
            wait = self._retry_in()
            if wait > 0:
                raise CircuitOpenError(f"Circuit '{self.name}' is open, retry in {wait:.1f}s")
            self.success_count = 0
            self._transition(CircuitState.HALF_OPEN, "recovery timeout elapsed")

    async def _record(self, error: Optional[BaseException]) -> None:
        async with self._lock:
            if error is None:
                if self.state is CircuitState.HALF_OPEN:
                    self.success_count += 1
                    if self.success_count >= self.config.success_threshold:
                        self.failure_count = 0
                        self._transition(CircuitState.CLOSED, f"{self.success_count} successful probes")
                else:
                    self.failure_count = 0
                return

            self.failure_count += 1
            if self.state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, f"probe failed with {error!r}")
            elif self.state is CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN, f"{self.failure_count} consecutive failures")

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.config.trip_on as e:
            await self._record(e)
            raise
        await self._record(None)
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "times_opened": self.times_opened,
            "retry_in": round(self._retry_in(), 1) if self.state is CircuitState.OPEN else 0,
        }


_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    """Return the process-wide breaker for `name`; config only applies on first use."""
    breaker = _circuit_breakers.get(name)
    if breaker is None:
        config = config or CircuitBreakerConfig()
        config.name = name
        breaker = _circuit_breakers[name] = CircuitBreaker(config)
    return breaker


def get_all_circuit_statuses() -> Dict[str, Dict[str, Any]]:
    return {name: breaker.get_status() for name, breaker in _circuit_breakers.items()}


def reset_all_circuits():
    _circuit_breakers.clear()

async def retry_with_backoff(
    func: Callable[[int], Awaitable[Any]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    factor: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> Any:
    """
    Call func(attempt) until it succeeds or max_attempts is reached.

    Only exceptions in retry_on are retried; anything else propagates at once.
    The last error is re-raised when attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await func(attempt)
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise
            delay = base_delay * (factor ** (attempt - 1))
            logger.warning(f"{label} attempt {attempt}/{max_attempts} failed: {e}; retrying in {delay:.1f}s")
            await sleep(delay)
            attempt += 1
