"""Resilience – backoff strategies.

Attempts are 1-based: ``compute(1)`` is the wait after the first failure.
Strategies return the raw delay; clamping to a ceiling is the policy's job.
"""
from __future__ import annotations

import abc
from enum import Enum


class BackoffKind(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class BackoffStrategy(abc.ABC):
    """Compute wait duration (seconds) after the *attempt*-th failure."""

    kind: BackoffKind

    def __init__(self, base_delay: float = 1.0) -> None:
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        self.base_delay = base_delay

    @abc.abstractmethod
    def compute(self, attempt: int) -> float: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_delay={self.base_delay!r})"


class FixedBackoff(BackoffStrategy):
    """Same delay between every attempt."""

    kind = BackoffKind.FIXED

    def compute(self, attempt: int) -> float:  # noqa: ARG002
        return self.base_delay


class LinearBackoff(BackoffStrategy):
    """Delay grows linearly: ``base_delay * attempt``."""

    kind = BackoffKind.LINEAR

    def compute(self, attempt: int) -> float:
        return self.base_delay * max(attempt, 1)


class ExponentialBackoff(BackoffStrategy):
    """Delay grows exponentially: ``base_delay * multiplier^(attempt-1)``."""

    kind = BackoffKind.EXPONENTIAL

    def __init__(self, base_delay: float = 1.0, multiplier: float = 2.0) -> None:
        super().__init__(base_delay)
        self.multiplier = multiplier

    def compute(self, attempt: int) -> float:
        return self.base_delay * (self.multiplier ** (max(attempt, 1) - 1))

    def __repr__(self) -> str:
        return f"ExponentialBackoff(base_delay={self.base_delay!r}, multiplier={self.multiplier!r})"


def backoff_for(kind: BackoffKind | str, base_delay: float, multiplier: float = 2.0) -> BackoffStrategy:
    """Build the strategy named by *kind*."""
    kind = BackoffKind(kind.lower() if isinstance(kind, str) else kind)
    if kind is BackoffKind.FIXED:
        return FixedBackoff(base_delay)
    if kind is BackoffKind.LINEAR:
        return LinearBackoff(base_delay)
    return ExponentialBackoff(base_delay, multiplier)


__all__ = [
    "BackoffKind",
    "BackoffStrategy",
    "ExponentialBackoff",
    "FixedBackoff",
    "LinearBackoff",
    "backoff_for",
]
