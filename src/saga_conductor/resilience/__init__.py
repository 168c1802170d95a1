"""Resilience – step retry policy and per-saga-type circuit breaker."""

from saga_conductor.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerPolicy,
    CircuitBreakerState,
    CircuitOpenError,
)
from saga_conductor.resilience.retry import BackoffKind, BackoffStrategy, JitterStrategy, RetryPolicy

__all__ = [
    "BackoffKind",
    "BackoffStrategy",
    "CircuitBreaker",
    "CircuitBreakerPolicy",
    "CircuitBreakerState",
    "CircuitOpenError",
    "JitterStrategy",
    "RetryPolicy",
]
