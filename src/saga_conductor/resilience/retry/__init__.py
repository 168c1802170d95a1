"""Resilience – retry delays with configurable backoff and jitter strategies."""
from saga_conductor.resilience.retry.backoff import (
    BackoffKind,
    BackoffStrategy,
    ExponentialBackoff,
    FixedBackoff,
    LinearBackoff,
)
from saga_conductor.resilience.retry.jitter import JitterStrategy, NoJitter, ProportionalJitter
from saga_conductor.resilience.retry.policy import RetryPolicy

__all__ = [
    "BackoffKind", "BackoffStrategy", "ExponentialBackoff", "FixedBackoff",
    "JitterStrategy", "LinearBackoff", "NoJitter", "ProportionalJitter", "RetryPolicy",
]
