"""Observability – structured logging for the saga engine.

Engine components log through structlog with dotted event names
(``saga.step_started``, ``saga.compensated``) and bound ``saga_id``,
``saga_type``, ``step`` and ``correlation_id`` keys::

    logger = get_logger(__name__)
    logger.info("saga.completed", saga_id=str(state.saga_id))

Applications call :meth:`JsonLoggerFactory.configure` once at startup to
render every record (structlog or stdlib) as one JSON line on the root
logger, with payment and credential fields redacted.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import IO, Any

import structlog

DEFAULT_SENSITIVE_FIELDS: frozenset[str] = frozenset(
    {
        "password",
        "secret",
        "token",
        "access_token",
        "refresh_token",
        "api_key",
        "authorization",
        "card_number",
        "cvv",
        "iban",
    }
)


def get_logger(name: str | None = None, **initial_values: Any) -> Any:
    """A structlog logger for *name*, with *initial_values* already bound."""
    logger = structlog.get_logger(name)
    return logger.bind(**initial_values) if initial_values else logger


class SensitiveFieldsFilter:
    """structlog processor replacing values of sensitive keys.

    Keys match case-insensitively at any depth of nested mappings and
    lists, so saga data copied into a log line is covered too.
    """

    REDACTED = "[REDACTED]"

    def __init__(self, sensitive_fields: frozenset[str] | None = None) -> None:
        self._fields = frozenset(f.lower() for f in (sensitive_fields or DEFAULT_SENSITIVE_FIELDS))

    def _is_sensitive(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._fields

    def redact(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Top-level keys only."""
        return {k: self.REDACTED if self._is_sensitive(k) else v for k, v in data.items()}

    def redact_deep(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return {k: self.REDACTED if self._is_sensitive(k) else self._walk(v) for k, v in data.items()}

    def _walk(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return self.redact_deep(value)
        if isinstance(value, list):
            return [self._walk(item) for item in value]
        return value

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG002
        return self.redact_deep(event_dict)


class JsonLoggerFactory:
    """Route structlog and stdlib records through one JSON handler."""

    @staticmethod
    def configure(
        level: int = logging.INFO,
        sensitive_fields: frozenset[str] | None = None,
        stream: IO[str] | None = None,
    ) -> None:
        """Install the JSON root handler.

        Keys in *sensitive_fields*, or :data:`DEFAULT_SENSITIVE_FIELDS` when it is
        ``None``, are redacted from every record.
        """
        pre_chain: list[Any] = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            SensitiveFieldsFilter(sensitive_fields),
        ]

        structlog.configure(
            processors=[
                *pre_chain,
                structlog.processors.StackInfoRenderer(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        handler = logging.StreamHandler(stream)
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                foreign_pre_chain=pre_chain,
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    structlog.processors.JSONRenderer(default=str),
                ],
            )
        )
        root = logging.getLogger()
        root.handlers[:] = [handler]
        root.setLevel(level)


__all__ = [
    "DEFAULT_SENSITIVE_FIELDS",
    "JsonLoggerFactory",
    "SensitiveFieldsFilter",
    "get_logger",
]
