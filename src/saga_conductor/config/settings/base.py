"""Config settings – the env-loadable settings group base."""
from __future__ import annotations

import dataclasses
from typing import ClassVar


@dataclasses.dataclass
class Settings:
    """One group of tunables read from ``<_prefix>_<FIELD>`` variables.

    Subclasses are dataclasses; ``_validate`` runs after construction and
    raises :class:`~saga_conductor.config.InvalidSettingValueError` for
    out-of-range values, whether the group was loaded or built in code.
    """

    _prefix: ClassVar[str] = ""

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        return None

    @classmethod
    def env_key(cls, field_name: str) -> str:
        return f"{cls._prefix}_{field_name}".upper().lstrip("_")


__all__ = ["Settings"]
