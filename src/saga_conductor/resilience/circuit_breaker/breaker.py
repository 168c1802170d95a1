"""Resilience – CircuitBreaker implementation."""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from saga_conductor.resilience.circuit_breaker.errors import CircuitOpenError
from saga_conductor.resilience.circuit_breaker.policy import CircuitBreakerPolicy

T = TypeVar("T")
logger = logging.getLogger(__name__)


class CircuitBreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Asyncio-safe circuit breaker.

    ``CLOSED`` counts consecutive failures; reaching the threshold opens the
    breaker and every call is rejected with :class:`CircuitOpenError` until
    ``timeout_seconds`` have elapsed.  The next call is then let through as a
    single ``HALF_OPEN`` probe: success closes the breaker, failure re-opens it
    and restarts the timeout window.

    Besides exceptions, a returned value counts as a failure when the
    ``is_failure`` predicate passed to :meth:`call` says so.
    """

    def __init__(
        self,
        name: str,
        policy: CircuitBreakerPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._policy = policy or CircuitBreakerPolicy()
        self._clock = clock
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def policy(self) -> CircuitBreakerPolicy:
        return self._policy

    def reset(self) -> None:
        """Force the breaker back to ``CLOSED``."""
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._probe_in_flight = False

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        is_failure: Callable[[T], bool] | None = None,
    ) -> T:
        async with self._lock:
            self._maybe_transition_half_open()
            if self._state == CircuitBreakerState.OPEN:
                raise CircuitOpenError(self.name)
            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name, f"Circuit breaker '{self.name}' probe in flight")
                self._probe_in_flight = True

        try:
            result = await func()
        except Exception as exc:
            async with self._lock:
                if isinstance(exc, self._policy.excluded_exceptions):
                    self._probe_in_flight = False
                else:
                    self._on_failure()
            raise
        except BaseException:
            self._probe_in_flight = False
            raise

        async with self._lock:
            if is_failure is not None and is_failure(result):
                self._on_failure()
            else:
                self._on_success()
        return result

    def _maybe_transition_half_open(self) -> None:
        if (
            self._state == CircuitBreakerState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self._policy.timeout_seconds
        ):
            logger.info("circuit_breaker.half_open name=%s", self.name)
            self._state = CircuitBreakerState.HALF_OPEN
            self._probe_in_flight = False

    def _on_success(self) -> None:
        self._probe_in_flight = False
        if self._state == CircuitBreakerState.HALF_OPEN:
            logger.info("circuit_breaker.closed name=%s", self.name)
            self._state = CircuitBreakerState.CLOSED
            self._opened_at = None
        self._failure_count = 0

    def _on_failure(self) -> None:
        self._probe_in_flight = False
        if self._state == CircuitBreakerState.HALF_OPEN:
            logger.error("circuit_breaker.reopened name=%s", self.name)
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()
            return
        self._failure_count += 1
        logger.warning(
            "circuit_breaker.failure name=%s count=%d threshold=%d",
            self.name, self._failure_count, self._policy.failure_threshold,
        )
        if self._failure_count >= self._policy.failure_threshold:
            logger.error("circuit_breaker.opened name=%s", self.name)
            self._state = CircuitBreakerState.OPEN
            self._opened_at = self._clock()


__all__ = ["CircuitBreaker", "CircuitBreakerState"]
