"""Application saga – persisted saga document and its state machine.

A :class:`SagaState` is one workflow instance.  It is created by the caller,
mutated by the orchestrator and saved after every mutation; each mutation
ends with exactly one :meth:`SagaState.touch`, so ``version`` counts
mutations since the saga was started.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from saga_conductor.application.saga.errors import InvalidSagaTransitionError, SagaStepNotFoundError
from saga_conductor.application.saga.payload import Payload, decode_payload, payload_of
from saga_conductor.kernel.errors import ValidationError
from saga_conductor.kernel.time import utc_now


class SagaStatus(str, enum.Enum):
    """Lifecycle of a saga instance."""

    NOT_STARTED = "NotStarted"
    RUNNING = "Running"
    """Forward steps are executing."""

    COMPLETED = "Completed"
    FAILED = "Failed"
    """A step failed; moves on to compensation when anything is compensable."""

    COMPENSATING = "Compensating"
    COMPENSATED = "Compensated"
    SUSPENDED = "Suspended"
    """Paused by a handler or caller; only ``resume`` restarts it."""

    TIMED_OUT = "TimedOut"
    ABORTED = "Aborted"


class SagaStepStatus(str, enum.Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    COMPENSATING = "Compensating"
    COMPENSATED = "Compensated"
    COMPENSATION_FAILED = "CompensationFailed"


class TimeoutAction(str, enum.Enum):
    COMPENSATE = "Compensate"
    ABORT = "Abort"


_TRANSITIONS: dict[SagaStatus, frozenset[SagaStatus]] = {
    SagaStatus.NOT_STARTED: frozenset({SagaStatus.RUNNING}),
    SagaStatus.RUNNING: frozenset(
        {
            SagaStatus.COMPLETED,
            SagaStatus.FAILED,
            SagaStatus.COMPENSATING,
            SagaStatus.SUSPENDED,
            SagaStatus.TIMED_OUT,
            SagaStatus.ABORTED,
        }
    ),
    SagaStatus.FAILED: frozenset({SagaStatus.COMPENSATING}),
    SagaStatus.SUSPENDED: frozenset(
        {SagaStatus.RUNNING, SagaStatus.TIMED_OUT, SagaStatus.ABORTED, SagaStatus.COMPENSATING}
    ),
    SagaStatus.TIMED_OUT: frozenset({SagaStatus.COMPENSATING, SagaStatus.ABORTED}),
    SagaStatus.COMPENSATING: frozenset({SagaStatus.COMPENSATED}),
    SagaStatus.COMPLETED: frozenset(),
    SagaStatus.COMPENSATED: frozenset(),
    SagaStatus.ABORTED: frozenset(),
}

STEP_TERMINAL_STATUSES: frozenset[SagaStepStatus] = frozenset(
    {
        SagaStepStatus.COMPLETED,
        SagaStepStatus.FAILED,
        SagaStepStatus.SKIPPED,
        SagaStepStatus.COMPENSATED,
        SagaStepStatus.COMPENSATION_FAILED,
    }
)

ACTIVE_STATUSES: frozenset[SagaStatus] = frozenset(
    {SagaStatus.RUNNING, SagaStatus.SUSPENDED, SagaStatus.COMPENSATING}
)


def can_transition(current: SagaStatus, target: SagaStatus) -> bool:
    return target in _TRANSITIONS[current]


class SagaMetadata(BaseModel):
    initiated_by: str | None = None
    business_context: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    timeout: timedelta | None = None
    timeout_action: str | None = None
    is_critical: bool = False
    priority: int = 1
    parent_saga_id: UUID | None = None
    child_saga_ids: list[UUID] = Field(default_factory=list)


class SagaStep(BaseModel):
    """One named unit of work inside a saga."""

    name: str = Field(min_length=1)
    step_type: str = ""
    status: SagaStepStatus = SagaStepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    input: Payload | None = None
    output: Payload | None = None
    retry_count: int = 0
    max_retries: int = Field(default=3, ge=1)
    timeout: timedelta | None = None
    compensation_action: str | None = None
    is_compensable: bool = True
    error_message: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    def mark(self, status: SagaStepStatus, now: datetime) -> None:
        """Set *status*; timestamps are written only the first time."""
        self.status = status
        if status is SagaStepStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if status in STEP_TERMINAL_STATUSES and self.completed_at is None:
            self.completed_at = now

    @property
    def is_finished(self) -> bool:
        return self.status in (SagaStepStatus.COMPLETED, SagaStepStatus.SKIPPED)

    @property
    def duration(self) -> timedelta | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at


class SagaCompensation(BaseModel):
    step_name: str
    action: str
    status: SagaStepStatus = SagaStepStatus.PENDING
    executed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0
    input: Payload | None = None
    output: Payload | None = None


class SagaState(BaseModel):
    """Persisted document for one saga instance.

    Example::

        state = SagaState(
            saga_type="OrderSaga",
            steps=[SagaStep(name="reserve"), SagaStep(name="charge")],
            metadata=SagaMetadata(timeout=timedelta(minutes=30), timeout_action="Compensate"),
        )
    """

    model_config = ConfigDict(extra="forbid")

    saga_id: UUID = Field(default_factory=uuid4, frozen=True)
    saga_type: str
    status: SagaStatus = SagaStatus.NOT_STARTED
    current_step: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    last_updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    version: int = 0
    correlation_id: str | None = None
    data: dict[str, Payload] = Field(default_factory=dict)
    steps: list[SagaStep] = Field(default_factory=list)
    compensations: list[SagaCompensation] = Field(default_factory=list)
    metadata: SagaMetadata = Field(default_factory=SagaMetadata)

    # ------------------------------------------------------------------
    # Versioning and status
    # ------------------------------------------------------------------

    def touch(self, now: datetime | None = None) -> None:
        self.last_updated_at = now or utc_now()
        self.version += 1

    def transition_to(self, status: SagaStatus) -> None:
        """Move to *status* or raise :class:`InvalidSagaTransitionError`."""
        if not can_transition(self.status, status):
            raise InvalidSagaTransitionError(self.saga_id, self.status, status)
        self.status = status

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.status]

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def duration(self) -> timedelta | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.created_at

    @property
    def deadline(self) -> datetime | None:
        if self.metadata.timeout is None:
            return None
        return self.created_at + self.metadata.timeout

    # ------------------------------------------------------------------
    # Data bag
    # ------------------------------------------------------------------

    def get_data(self, key: str, default: Any = None) -> Any:
        if key not in self.data:
            return default
        return decode_payload(self.data[key])

    def set_data(self, key: str, value: Any, now: datetime | None = None) -> None:
        self.data[key] = payload_of(value)
        self.touch(now)

    def merge_data(self, values: Mapping[str, Any]) -> None:
        """Copy *values* into the bag without touching.

        Used inside larger mutations that touch once at the end.
        """
        for key, value in values.items():
            self.data[key] = payload_of(value)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def add_step(self, step: SagaStep, now: datetime | None = None) -> None:
        if self.get_step(step.name) is not None:
            raise ValidationError(
                f"Saga already has a step named '{step.name}'",
                errors=[{"field": "name", "value": step.name}],
            )
        self.steps.append(step)
        self.touch(now)

    def get_step(self, name: str) -> SagaStep | None:
        return next((s for s in self.steps if s.name == name), None)

    def require_step(self, name: str) -> SagaStep:
        step = self.get_step(name)
        if step is None:
            raise SagaStepNotFoundError(self.saga_id, name)
        return step

    def next_pending_step(self) -> str | None:
        return next((s.name for s in self.steps if s.status is SagaStepStatus.PENDING), None)

    def all_steps_finished(self) -> bool:
        return all(s.is_finished for s in self.steps)

    def get_compensable_steps(self) -> list[SagaStep]:
        """Completed, compensable steps, most recently completed first."""
        indexed = [
            (i, s)
            for i, s in enumerate(self.steps)
            if s.status is SagaStepStatus.COMPLETED and s.is_compensable
        ]
        indexed.sort(key=lambda pair: (pair[1].completed_at or self.created_at, pair[0]), reverse=True)
        return [s for _, s in indexed]

    def can_compensate(self) -> bool:
        return any(s.status is SagaStepStatus.COMPLETED and s.is_compensable for s in self.steps)


__all__ = [
    "ACTIVE_STATUSES",
    "STEP_TERMINAL_STATUSES",
    "SagaCompensation",
    "SagaMetadata",
    "SagaState",
    "SagaStatus",
    "SagaStep",
    "SagaStepStatus",
    "TimeoutAction",
    "can_transition",
]
