"""Resilience – RetryPolicy."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from saga_conductor.resilience.retry.backoff import BackoffStrategy, ExponentialBackoff, backoff_for
from saga_conductor.resilience.retry.jitter import JitterStrategy, NoJitter, ProportionalJitter

if TYPE_CHECKING:
    from saga_conductor.config.settings import RetrySettings

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Delay schedule for the per-step attempt loop.

    The nominal delay is the backoff value clamped to ``max_delay``; jitter is
    applied to the clamped value, so a jittered delay may exceed
    ``max_delay`` by at most half the jitter factor.

    ``max_retries`` is the attempt budget to give new steps; the attempt loop
    itself reads the budget recorded on each step.
    """

    def __init__(
        self,
        max_retries: int = 3,
        backoff: BackoffStrategy | None = None,
        max_delay: float = 300.0,
        jitter: JitterStrategy | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.max_retries = max_retries
        self.backoff = backoff or ExponentialBackoff()
        self.max_delay = max_delay
        self.jitter = jitter if jitter is not None else ProportionalJitter(0.1)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        jitter: JitterStrategy = (
            ProportionalJitter(settings.jitter_factor) if settings.jitter_factor else NoJitter()
        )
        return cls(
            max_retries=settings.max_retries,
            backoff=backoff_for(settings.strategy, settings.base_delay_seconds, settings.multiplier),
            max_delay=settings.max_delay_seconds,
            jitter=jitter,
        )

    @classmethod
    def immediate(cls, max_retries: int = 3) -> RetryPolicy:
        """Policy with zero delay between attempts."""
        return cls(max_retries=max_retries, backoff=ExponentialBackoff(base_delay=0.0), jitter=NoJitter())

    def nominal_delay(self, attempt: int) -> float:
        return min(self.backoff.compute(attempt), self.max_delay)

    def compute_delay(self, attempt: int) -> float:
        """Seconds to wait after the *attempt*-th failed attempt."""
        delay = max(self.jitter.apply(self.nominal_delay(attempt)), 0.0)
        logger.debug("retry.delay attempt=%d delay=%.3fs", attempt, delay)
        return delay

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_retries={self.max_retries}, backoff={self.backoff!r}, "
            f"max_delay={self.max_delay})"
        )


__all__ = ["RetryPolicy"]
