"""Config – env-loaded saga engine tunables."""

from saga_conductor.config.errors import (
    ConfigError,
    InvalidSettingValueError,
    MissingRequiredSettingError,
)
from saga_conductor.config.settings import (
    CircuitBreakerSettings,
    EnvSettingsLoader,
    MonitorSettings,
    RetrySettings,
    SagaSettings,
    Settings,
    SettingsLoader,
    TimeoutManagerSettings,
    load_saga_settings,
)

__all__ = [
    "CircuitBreakerSettings",
    "ConfigError",
    "EnvSettingsLoader",
    "InvalidSettingValueError",
    "MissingRequiredSettingError",
    "MonitorSettings",
    "RetrySettings",
    "SagaSettings",
    "Settings",
    "SettingsLoader",
    "TimeoutManagerSettings",
    "load_saga_settings",
]
