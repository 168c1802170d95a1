"""Resilience – jitter strategies."""
from __future__ import annotations

import abc
import random


class JitterStrategy(abc.ABC):
    """Apply randomness to a backoff delay to spread retry storms."""

    @abc.abstractmethod
    def apply(self, delay: float) -> float: ...


class NoJitter(JitterStrategy):
    def apply(self, delay: float) -> float:
        return delay


class ProportionalJitter(JitterStrategy):
    """Uniform random in ``delay ± delay * factor / 2``.

    A factor of 0 returns the delay unchanged.
    """

    def __init__(self, factor: float = 0.1, rng: random.Random | None = None) -> None:
        if not 0.0 <= factor <= 1.0:
            raise ValueError("jitter factor must be within [0, 1]")
        self.factor = factor
        self._rng = rng or random.Random()

    def apply(self, delay: float) -> float:
        if self.factor == 0 or delay == 0:
            return delay
        spread = delay * self.factor
        return delay + spread * (self._rng.random() - 0.5)


__all__ = ["JitterStrategy", "NoJitter", "ProportionalJitter"]
