"""Resilience – per-saga-type circuit breaker around step handler calls."""
from saga_conductor.resilience.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerState
from saga_conductor.resilience.circuit_breaker.errors import CircuitOpenError
from saga_conductor.resilience.circuit_breaker.policy import CircuitBreakerPolicy

__all__ = ["CircuitBreaker", "CircuitBreakerPolicy", "CircuitBreakerState", "CircuitOpenError"]
