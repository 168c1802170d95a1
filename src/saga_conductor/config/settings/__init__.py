"""Config settings – env-based configuration for the saga engine."""
from saga_conductor.config.settings.base import Settings
from saga_conductor.config.settings.loaders import EnvSettingsLoader, SettingsLoader
from saga_conductor.config.settings.saga import (
    CircuitBreakerSettings,
    MonitorSettings,
    RetrySettings,
    SagaSettings,
    TimeoutManagerSettings,
    load_saga_settings,
)

__all__ = [
    "CircuitBreakerSettings",
    "EnvSettingsLoader",
    "MonitorSettings",
    "RetrySettings",
    "SagaSettings",
    "Settings",
    "SettingsLoader",
    "TimeoutManagerSettings",
    "load_saga_settings",
]
