"""Kernel errors – the hierarchy every saga_conductor exception derives from.

::

    BaseError
    ├── DomainError            caller misuse or a broken rule
    │   ├── InvariantViolationError
    │   ├── ValidationError
    │   ├── NotFoundError
    │   └── ConflictError
    ├── ApplicationError       configuration and wiring
    └── InfrastructureError    storage, serialization, remote calls
        ├── SerializationError
        └── PersistenceError

Each error carries a machine ``code`` and renders as one JSON line, so a
failed saga operation can be logged or attached to an event as is.
"""

from __future__ import annotations

import json
from typing import Any


class BaseError(Exception):
    """Root error.

    ``code`` defaults to the class-level ``default_code``; ``detail`` is a
    JSON-safe dict of context; ``cause`` is chained as ``__cause__``.
    """

    default_code: str = "base_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        detail: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.detail: dict[str, Any] = dict(detail or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message, "detail": self.detail}
        if self.cause is not None:
            data["cause"] = repr(self.cause)
        return data

    def __str__(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------


class DomainError(BaseError):
    default_code = "domain_error"


class InvariantViolationError(DomainError):
    """Programmer error: an operation would break a state invariant."""

    default_code = "invariant_violation"


class ValidationError(DomainError):
    """Bad caller input; ``errors`` lists the offending fields."""

    default_code = "validation_error"

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.errors: list[dict[str, Any]] = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}


class NotFoundError(DomainError):
    default_code = "not_found"

    def __init__(self, resource: str, identifier: Any = None, **kwargs: Any) -> None:
        label = resource if identifier is None else f"{resource} '{identifier}'"
        super().__init__(f"{label} not found", **kwargs)
        self.resource = resource
        self.identifier = identifier


class ConflictError(DomainError):
    default_code = "conflict"


# ---------------------------------------------------------------------------
# Application and infrastructure
# ---------------------------------------------------------------------------


class ApplicationError(BaseError):
    default_code = "application_error"


class InfrastructureError(BaseError):
    default_code = "infrastructure_error"


class SerializationError(InfrastructureError):
    """A value could not be turned into (or read back from) a payload."""

    default_code = "serialization_error"

    def __init__(self, message: str, *, payload_type: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.payload_type = payload_type


class PersistenceError(InfrastructureError):
    """A saga store failed to load or save a document."""

    default_code = "persistence_error"


__all__ = [
    "ApplicationError",
    "BaseError",
    "ConflictError",
    "DomainError",
    "InfrastructureError",
    "InvariantViolationError",
    "NotFoundError",
    "PersistenceError",
    "SerializationError",
    "ValidationError",
]
