"""Config settings – saga engine tunables.

Every group is an env-loadable :class:`Settings` dataclass::

    SAGA_RETRY_MAX_RETRIES=5
    SAGA_RETRY_STRATEGY=linear
    SAGA_CIRCUIT_FAILURE_THRESHOLD=10
    SAGA_TIMEOUT_CHECK_INTERVAL_SECONDS=30
    SAGA_MONITOR_STUCK_SAGA_THRESHOLD_SECONDS=3600
"""
from __future__ import annotations

import dataclasses
from typing import ClassVar

from saga_conductor.config.errors import InvalidSettingValueError
from saga_conductor.config.settings.base import Settings
from saga_conductor.config.settings.loaders import EnvSettingsLoader, SettingsLoader

_BACKOFF_STRATEGIES = frozenset({"fixed", "linear", "exponential"})


def _require_positive(name: str, value: float, *, allow_zero: bool = False) -> None:
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidSettingValueError(name, value, "must be positive")


@dataclasses.dataclass
class RetrySettings(Settings):
    """Per-step retry loop defaults."""

    _prefix: ClassVar[str] = "SAGA_RETRY"

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    strategy: str = "exponential"
    multiplier: float = 2.0
    max_delay_seconds: float = 300.0
    jitter_factor: float = 0.1

    def _validate(self) -> None:
        _require_positive("max_retries", self.max_retries)
        _require_positive("base_delay_seconds", self.base_delay_seconds, allow_zero=True)
        _require_positive("max_delay_seconds", self.max_delay_seconds, allow_zero=True)
        if self.strategy.lower() not in _BACKOFF_STRATEGIES:
            raise InvalidSettingValueError(
                "strategy", self.strategy, f"expected one of {sorted(_BACKOFF_STRATEGIES)}"
            )
        if self.multiplier < 1.0:
            raise InvalidSettingValueError("multiplier", self.multiplier, "must be >= 1.0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise InvalidSettingValueError("jitter_factor", self.jitter_factor, "must be within [0, 1]")


@dataclasses.dataclass
class CircuitBreakerSettings(Settings):
    _prefix: ClassVar[str] = "SAGA_CIRCUIT"

    enabled: bool = True
    failure_threshold: int = 5
    timeout_seconds: float = 60.0

    def _validate(self) -> None:
        _require_positive("failure_threshold", self.failure_threshold)
        _require_positive("timeout_seconds", self.timeout_seconds, allow_zero=True)


@dataclasses.dataclass
class TimeoutManagerSettings(Settings):
    _prefix: ClassVar[str] = "SAGA_TIMEOUT"

    check_interval_seconds: float = 60.0

    def _validate(self) -> None:
        _require_positive("check_interval_seconds", self.check_interval_seconds)


@dataclasses.dataclass
class MonitorSettings(Settings):
    """Windows and caps for the saga monitor (all durations in seconds)."""

    _prefix: ClassVar[str] = "SAGA_MONITOR"

    cleanup_interval_seconds: float = 300.0
    metrics_retention_seconds: float = 7 * 24 * 3600.0
    health_check_window_seconds: float = 3600.0
    metrics_window_seconds: float = 24 * 3600.0
    stuck_saga_threshold_seconds: float = 2 * 3600.0
    max_metrics_history: int = 10_000

    def _validate(self) -> None:
        for field in dataclasses.fields(self):
            _require_positive(field.name, getattr(self, field.name))


@dataclasses.dataclass
class SagaSettings:
    """Bundle of every settings group the engine reads."""

    retry: RetrySettings = dataclasses.field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = dataclasses.field(default_factory=CircuitBreakerSettings)
    timeouts: TimeoutManagerSettings = dataclasses.field(default_factory=TimeoutManagerSettings)
    monitor: MonitorSettings = dataclasses.field(default_factory=MonitorSettings)


def load_saga_settings(loader: SettingsLoader | None = None) -> SagaSettings:
    """Load every settings group through *loader* (env by default)."""
    loader = loader or EnvSettingsLoader()
    return SagaSettings(
        retry=loader.load(RetrySettings),
        circuit_breaker=loader.load(CircuitBreakerSettings),
        timeouts=loader.load(TimeoutManagerSettings),
        monitor=loader.load(MonitorSettings),
    )


__all__ = [
    "CircuitBreakerSettings",
    "MonitorSettings",
    "RetrySettings",
    "SagaSettings",
    "TimeoutManagerSettings",
    "load_saga_settings",
]
