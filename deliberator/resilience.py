"""
Resilience Wrapper
==================
Primitives that make fan-out to unreliable remote responders safe:

* :func:`race_timeout` races an awaitable against a timer.  The loser is
  *abandoned*, never cancelled; a late exception is retrieved and logged.
* :func:`retry_with_backoff` retries rate-limit failures with exponential
  backoff (``min(initial * multiplier ** (n - 1), max_delay)``).
* :class:`CircuitBreaker` fails fast for a responder that keeps failing.
  Breakers live in a process-wide registry keyed by responder id.

:func:`call_with_resilience` composes them as
``breaker(outer) → retry → timeout(inner) → call``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from deliberator.observer import Event, EventType, event_bus
from deliberator.schemas import FailureCategory

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """Raised without invoking the call while a breaker is open."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(
            f"Circuit breaker {name} is OPEN. Retry in {max(retry_in, 0.0):.1f}s"
        )
        self.name = name
        self.retry_in = retry_in


class CallTimeoutError(TimeoutError):
    """A single remote call lost its race against the timer."""


# ------------------------------------------------------------------ #
#  Timeout race                                                       #
# ------------------------------------------------------------------ #

def _log_abandoned(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned call finished late with %s: %s", type(exc).__name__, exc)


async def race_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    message: str | None = None,
) -> T:
    """Await *awaitable* for at most *timeout* seconds.

    On timeout raises :class:`CallTimeoutError`.  The underlying task keeps
    running in the background and its outcome is discarded.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    finally:
        if not task.done():
            task.add_done_callback(_log_abandoned)
    if task in done:
        return task.result()
    raise CallTimeoutError(message or f"Operation timed out after {timeout}s")


# ------------------------------------------------------------------ #
#  Failure classification                                             #
# ------------------------------------------------------------------ #

_RATE_LIMIT_MARKERS = ("rate limit", "429", "too many requests", "quota exceeded")
_NETWORK_MARKERS = ("network", "connection", "econnrefused", "econnreset", "enotfound")


def is_rate_limit_error(exc: BaseException) -> bool:
    """Only rate-limit failures are worth retrying."""
    msg = str(exc).lower()
    return any(marker in msg for marker in _RATE_LIMIT_MARKERS)


def is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    msg = str(exc).lower()
    return "timeout" in msg or "timed out" in msg


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, ConnectionError):
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in _NETWORK_MARKERS)


def classify_failure(exc: BaseException) -> FailureCategory:
    """Categorise an exception into a retry-relevant failure bucket."""
    if isinstance(exc, CircuitOpenError):
        return FailureCategory.CIRCUIT_OPEN
    if is_timeout_error(exc):
        return FailureCategory.TIMEOUT
    if is_rate_limit_error(exc):
        return FailureCategory.QUOTA

    name = type(exc).__name__.lower()
    msg = str(exc).lower()
    if "auth" in name or "auth" in msg or "401" in msg or "403" in msg:
        return FailureCategory.AUTH
    if "permission" in msg or "api key" in msg or "invalid key" in msg:
        return FailureCategory.AUTH

    if is_network_error(exc):
        return FailureCategory.TRANSIENT
    if "400" in msg or "404" in msg or "invalid" in name:
        return FailureCategory.PERMANENT
    return FailureCategory.TRANSIENT


# ------------------------------------------------------------------ #
#  Retry with backoff                                                 #
# ------------------------------------------------------------------ #

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number *attempt* (1-based)."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    is_retryable: Callable[[BaseException], bool] = is_rate_limit_error,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Call *fn* until it succeeds, a non-retryable error occurs, or attempts run out.

    Parameters
    ----------
    fn : callable
        Zero-argument coroutine factory; called once per attempt.
    policy : RetryPolicy, optional
        Attempt count and delay schedule.
    is_retryable : callable
        Predicate deciding whether an error warrants another attempt.
    on_retry : callable, optional
        Invoked as ``on_retry(attempt, exc, delay)`` before each sleep.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= policy.max_attempts or not is_retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retry %d/%d after %s: %s (delay %.1fs)",
                attempt, policy.max_attempts - 1, type(exc).__name__, exc, delay,
            )
            if on_retry:
                on_retry(attempt, exc, delay)
            await asyncio.sleep(delay)
            attempt += 1


# ------------------------------------------------------------------ #
#  Circuit breaker                                                    #
# ------------------------------------------------------------------ #

class CircuitBreaker:
    """Three-state breaker guarding one responder.

    CLOSED counts failures and opens at ``failure_threshold``.  OPEN fails
    fast until ``reset_timeout`` has elapsed, then lets one call through in
    HALF_OPEN.  HALF_OPEN closes after ``success_threshold`` consecutive
    successes and reopens on any failure.

    Parameters
    ----------
    name : str
        Responder id the breaker protects.
    failure_threshold : int
        Failures that open a closed circuit (default ``5``).
    reset_timeout : float
        Seconds an open circuit waits before a trial call (default ``60``).
    success_threshold : int
        Half-open successes needed to close (default ``2``).
    request_timeout : float
        Every guarded call is raced against this bound (default ``30``).
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 2,
        request_timeout: float = 30.0,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.request_timeout = request_timeout

        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds self._lock.
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        if new_state is CircuitState.OPEN:
            logger.warning("Circuit %s opened after %d failure(s)", self.name, self._failure_count)
        else:
            logger.info("Circuit %s: %s -> %s", self.name, old_state.value, new_state.value)
        event_bus.publish(
            Event(
                EventType.CIRCUIT_STATE,
                message=f"Circuit {self.name}: {old_state.value} -> {new_state.value}",
                payload={"model": self.name, "from": old_state.value, "to": new_state.value},
            )
        )

    def _before_call(self) -> None:
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return
            elapsed = time.monotonic() - (self._last_failure_time or 0.0)
            if elapsed < self.reset_timeout:
                raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
            self._success_count = 0
            self._transition(CircuitState.HALF_OPEN)

    def _on_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._success_count = 0
                    self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            if self._state is CircuitState.HALF_OPEN:
                self._success_count = 0
                self._transition(CircuitState.OPEN)
            elif self._failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Invoke *fn* through the breaker.

        Raises :class:`CircuitOpenError` without invoking *fn* while open.
        """
        self._before_call()
        try:
            result = await race_timeout(
                fn(),
                self.request_timeout,
                f"Circuit breaker {self.name}: request timed out after {self.request_timeout}s",
            )
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._transition(CircuitState.CLOSED)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "last_failure_time": self._last_failure_time,
            }


# ------------------------------------------------------------------ #
#  Process-wide registry                                              #
# ------------------------------------------------------------------ #

_circuit_breakers: dict[str, CircuitBreaker] = {}
_circuit_breakers_lock = threading.Lock()


def get_circuit_breaker(name: str, **options: Any) -> CircuitBreaker:
    """Return the breaker for *name*, creating it on first use.

    *options* only apply when the breaker is created.
    """
    with _circuit_breakers_lock:
        breaker = _circuit_breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, **options)
            _circuit_breakers[name] = breaker
        return breaker


def reset_all_circuit_breakers() -> None:
    with _circuit_breakers_lock:
        breakers = list(_circuit_breakers.values())
    for breaker in breakers:
        breaker.reset()
    logger.info("Reset %d circuit breaker(s)", len(breakers))


def clear_circuit_breakers() -> None:
    """Drop every breaker from the registry."""
    with _circuit_breakers_lock:
        _circuit_breakers.clear()


def circuit_breaker_states() -> dict[str, dict[str, Any]]:
    with _circuit_breakers_lock:
        breakers = list(_circuit_breakers.values())
    return {b.name: b.snapshot() for b in breakers}


# ------------------------------------------------------------------ #
#  Composition                                                        #
# ------------------------------------------------------------------ #

async def call_with_resilience(
    name: str,
    fn: Callable[[], Awaitable[T]],
    timeout: float = 30.0,
    retry_policy: RetryPolicy | None = None,
    breaker_options: dict[str, Any] | None = None,
) -> T:
    """Run *fn* as breaker → retry → timeout → call for responder *name*."""
    breaker = get_circuit_breaker(name, **(breaker_options or {}))

    async def attempt() -> T:
        return await race_timeout(fn(), timeout, f"{name} timed out after {timeout}s")

    return await breaker.call(lambda: retry_with_backoff(attempt, retry_policy))
