"""Config settings – SettingsLoader port and the environment loader."""
from __future__ import annotations

import abc
import dataclasses
import os
import typing
from collections.abc import Mapping
from typing import Any, TypeVar

from saga_conductor.config.errors import ConfigError, MissingRequiredSettingError
from saga_conductor.config.settings.base import Settings

T = TypeVar("T", bound=Settings)

_TRUE = frozenset({"1", "true", "yes", "on"})


class SettingsLoader(abc.ABC):
    @abc.abstractmethod
    def load(self, settings_class: type[T]) -> T: ...


class EnvSettingsLoader(SettingsLoader):
    """Build a :class:`Settings` group from environment variables.

    Field types drive parsing: ``bool`` accepts ``1/true/yes/on``, numbers
    go through ``int``/``float`` and ``list[str]`` splits on commas.  Fields
    without a variable keep their defaults; a missing required field raises
    :class:`MissingRequiredSettingError`.  *environ* defaults to
    :data:`os.environ`.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def load(self, settings_class: type[T]) -> T:
        environ = os.environ if self._environ is None else self._environ
        hints = typing.get_type_hints(settings_class)
        values: dict[str, Any] = {}

        for field in dataclasses.fields(settings_class):  # type: ignore[arg-type]
            key = settings_class.env_key(field.name)
            raw = environ.get(key)
            if raw is None:
                if _is_required(field):
                    raise MissingRequiredSettingError(key)
                continue
            try:
                values[field.name] = _parse(raw, hints.get(field.name, str))
            except ValueError as exc:
                raise ConfigError(f"Cannot parse {key}={raw!r}: {exc}", cause=exc) from exc

        try:
            return settings_class(**values)
        except ConfigError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Cannot build {settings_class.__name__}: {exc}", cause=exc) from exc


def _is_required(field: dataclasses.Field[Any]) -> bool:
    return field.default is dataclasses.MISSING and field.default_factory is dataclasses.MISSING


def _parse(raw: str, hint: Any) -> Any:
    if hint is bool:
        return raw.strip().lower() in _TRUE
    if hint is int:
        return int(raw)
    if hint is float:
        return float(raw)
    if typing.get_origin(hint) is list:
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


__all__ = ["EnvSettingsLoader", "SettingsLoader"]
