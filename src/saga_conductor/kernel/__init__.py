"""Kernel – error hierarchy and clock shared by every saga_conductor layer."""

from saga_conductor.kernel.errors import (
    ApplicationError,
    BaseError,
    ConflictError,
    DomainError,
    InfrastructureError,
    InvariantViolationError,
    NotFoundError,
    PersistenceError,
    SerializationError,
    ValidationError,
)
from saga_conductor.kernel.time import Clock, FrozenClock, SystemClock, utc_now

__all__ = [
    "ApplicationError",
    "BaseError",
    "Clock",
    "ConflictError",
    "DomainError",
    "FrozenClock",
    "InfrastructureError",
    "InvariantViolationError",
    "NotFoundError",
    "PersistenceError",
    "SerializationError",
    "SystemClock",
    "ValidationError",
    "utc_now",
]
