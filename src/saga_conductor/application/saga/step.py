"""Application saga – step handlers and their results."""

from __future__ import annotations

import abc
import dataclasses
import enum
from collections.abc import Mapping
from datetime import timedelta
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from saga_conductor.application.saga.context import ExecutionContext
    from saga_conductor.application.saga.state import SagaState


class StepAction(str, enum.Enum):
    """What the orchestrator does after a handler returns."""

    CONTINUE = "Continue"
    COMPLETE = "Complete"
    COMPENSATE = "Compensate"
    SUSPEND = "Suspend"
    ABORT = "Abort"
    RETRY = "Retry"


@dataclasses.dataclass(frozen=True)
class StepResult:
    """Outcome reported by a :class:`SagaStepHandler`.

    Build instances through the factory classmethods rather than the
    constructor.  ``output`` may be any JSON-encodable value, ``str`` or
    ``bytes``; ``data`` entries are merged into the saga's data bag on
    success.
    """

    is_success: bool
    action: StepAction = StepAction.CONTINUE
    output: Any = None
    error_message: str | None = None
    next_step: str | None = None
    should_retry: bool = False
    retry_delay: timedelta | None = None
    data: Mapping[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        """True for a plain failed attempt (not a business decision)."""
        return not self.is_success and self.action is StepAction.CONTINUE

    @classmethod
    def success(
        cls,
        output: Any = None,
        next_step: str | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> StepResult:
        return cls(is_success=True, output=output, next_step=next_step, data=dict(data or {}))

    @classmethod
    def failure(
        cls,
        error_message: str,
        *,
        should_retry: bool = True,
        retry_delay: timedelta | None = None,
    ) -> StepResult:
        return cls(
            is_success=False,
            error_message=error_message,
            should_retry=should_retry,
            retry_delay=retry_delay,
        )

    @classmethod
    def complete(cls, output: Any = None, data: Mapping[str, Any] | None = None) -> StepResult:
        return cls(is_success=True, action=StepAction.COMPLETE, output=output, data=dict(data or {}))

    @classmethod
    def compensate(cls, reason: str) -> StepResult:
        return cls(is_success=False, action=StepAction.COMPENSATE, error_message=reason)

    @classmethod
    def suspend(cls, reason: str) -> StepResult:
        return cls(is_success=False, action=StepAction.SUSPEND, error_message=reason)

    @classmethod
    def abort(cls, reason: str) -> StepResult:
        return cls(is_success=False, action=StepAction.ABORT, error_message=reason)

    @classmethod
    def retry(cls, delay: timedelta | None = None, reason: str | None = None) -> StepResult:
        return cls(
            is_success=False,
            action=StepAction.RETRY,
            error_message=reason,
            should_retry=True,
            retry_delay=delay,
        )


class SagaStepHandler(abc.ABC):
    """Business logic for one named step.

    Subclass and implement :meth:`execute` (the forward action) and
    :meth:`compensate` (the undo invoked when a later step fails).  Raising
    from :meth:`execute` counts as a failed attempt.
    """

    @property
    @abc.abstractmethod
    def step_name(self) -> str:
        """Name of the saga step this handler serves."""

    @abc.abstractmethod
    async def execute(self, state: SagaState, context: ExecutionContext) -> StepResult: ...

    @abc.abstractmethod
    async def compensate(self, state: SagaState, context: ExecutionContext) -> StepResult: ...

    def can_execute(self, state: SagaState) -> bool:  # noqa: ARG002
        return True

    def can_compensate(self, state: SagaState) -> bool:  # noqa: ARG002
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(step_name={self.step_name!r})"


__all__ = ["SagaStepHandler", "StepAction", "StepResult"]
