"""Resilience – CircuitBreakerPolicy."""
from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from saga_conductor.config.settings import CircuitBreakerSettings


@dataclasses.dataclass
class CircuitBreakerPolicy:
    """Configuration for a circuit breaker.

    ``failure_threshold`` consecutive failures open the breaker for
    ``timeout_seconds``; exceptions listed in ``excluded_exceptions`` pass
    through without being counted.
    """
    failure_threshold: int = 5
    timeout_seconds: float = 60.0
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")

    @classmethod
    def from_settings(cls, settings: CircuitBreakerSettings) -> CircuitBreakerPolicy:
        return cls(
            failure_threshold=settings.failure_threshold,
            timeout_seconds=settings.timeout_seconds,
        )


__all__ = ["CircuitBreakerPolicy"]
