"""Application saga – saga-specific errors.

Only programmer misuse and storage failures are raised to callers; step
failures surface as saga status.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from saga_conductor.kernel.errors import (
    ConflictError,
    DomainError,
    InvariantViolationError,
    NotFoundError,
    PersistenceError,
)


class InvalidSagaTransitionError(InvariantViolationError):
    """A status change the saga state machine does not allow."""

    default_code = "invalid_saga_transition"

    def __init__(
        self,
        saga_id: UUID,
        from_status: Any,
        to_status: Any,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Saga '{saga_id}' cannot move from {from_status} to {to_status}",
            detail={"saga_id": str(saga_id), "from": str(from_status), "to": str(to_status)},
        )
        self.saga_id = saga_id
        self.from_status = from_status
        self.to_status = to_status


class StepExecutionError(DomainError):
    """A step exhausted its attempts or its handler reported a failure."""

    default_code = "step_execution_failed"

    def __init__(self, step_name: str, message: str, *, attempts: int = 0) -> None:
        super().__init__(message, detail={"step": step_name, "attempts": attempts})
        self.step_name = step_name
        self.attempts = attempts


class SagaNotFoundError(NotFoundError):
    default_code = "saga_not_found"

    def __init__(self, saga_id: UUID) -> None:
        super().__init__("Saga", saga_id)


class SagaStepNotFoundError(NotFoundError):
    default_code = "saga_step_not_found"

    def __init__(self, saga_id: UUID, step_name: str) -> None:
        super().__init__("Step", step_name, detail={"saga_id": str(saga_id)})
        self.step_name = step_name


class StepHandlerNotFoundError(NotFoundError):
    default_code = "step_handler_not_found"

    def __init__(self, saga_type: str, step_name: str) -> None:
        super().__init__("Step handler", step_name, detail={"saga_type": saga_type})
        self.saga_type = saga_type
        self.step_name = step_name


class SagaTypeNotRegisteredError(NotFoundError):
    default_code = "saga_type_not_registered"

    def __init__(self, saga_type: str) -> None:
        super().__init__("Saga type", saga_type)
        self.saga_type = saga_type


class DuplicateRegistrationError(ConflictError):
    default_code = "duplicate_registration"


class SagaPersistenceError(PersistenceError):
    """Loading or saving a saga document failed."""

    default_code = "saga_persistence_error"


class SagaConcurrencyError(SagaPersistenceError):
    """A save did not advance the stored document's version."""

    default_code = "saga_concurrency_conflict"

    def __init__(self, saga_id: UUID, stored_version: int, incoming_version: int) -> None:
        super().__init__(
            f"Saga '{saga_id}' was modified concurrently "
            f"(stored version {stored_version}, incoming {incoming_version})",
            detail={
                "saga_id": str(saga_id),
                "stored_version": stored_version,
                "incoming_version": incoming_version,
            },
        )
        self.saga_id = saga_id
        self.stored_version = stored_version
        self.incoming_version = incoming_version


__all__ = [
    "DuplicateRegistrationError",
    "InvalidSagaTransitionError",
    "SagaConcurrencyError",
    "SagaNotFoundError",
    "SagaPersistenceError",
    "SagaStepNotFoundError",
    "SagaTypeNotRegisteredError",
    "StepExecutionError",
    "StepHandlerNotFoundError",
]
