"""Application saga – lifecycle events and publishers.

Publishing is fire-and-forget from the orchestrator's point of view: a
failing subscriber is logged and never aborts the transition that emitted
the event.
"""

from __future__ import annotations

import abc
import dataclasses
import enum
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from saga_conductor.kernel.time import utc_now
from saga_conductor.observability.logging import get_logger

if TYPE_CHECKING:
    from saga_conductor.application.saga.state import SagaState

logger = get_logger(__name__)


class SagaEventType(str, enum.Enum):
    STARTED = "SagaStarted"
    STEP_STARTED = "SagaStepStarted"
    STEP_COMPLETED = "SagaStepCompleted"
    STEP_FAILED = "SagaStepFailed"
    COMPLETED = "SagaCompleted"
    FAILED = "SagaFailed"
    COMPENSATING = "SagaCompensating"
    COMPENSATED = "SagaCompensated"
    SUSPENDED = "SagaSuspended"
    RESUMED = "SagaResumed"
    TIMED_OUT = "SagaTimedOut"
    ABORTED = "SagaAborted"
    STUCK = "SagaStuck"


FINISHING_EVENT_TYPES: frozenset[SagaEventType] = frozenset(
    {
        SagaEventType.COMPLETED,
        SagaEventType.COMPENSATED,
        SagaEventType.TIMED_OUT,
        SagaEventType.ABORTED,
    }
)


@dataclasses.dataclass(frozen=True)
class SagaEvent:
    saga_id: UUID
    saga_type: str
    event_type: SagaEventType
    data: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    timestamp: datetime = dataclasses.field(default_factory=utc_now)
    correlation_id: str | None = None
    metadata: Mapping[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_state(
        cls,
        state: SagaState,
        event_type: SagaEventType,
        data: Mapping[str, Any] | None = None,
        *,
        timestamp: datetime | None = None,
    ) -> SagaEvent:
        return cls(
            saga_id=state.saga_id,
            saga_type=state.saga_type,
            event_type=event_type,
            data=dict(data or {}),
            timestamp=timestamp or utc_now(),
            correlation_id=state.correlation_id,
            metadata={
                "status": state.status.value,
                "current_step": state.current_step,
                "version": state.version,
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "saga_id": str(self.saga_id),
            "saga_type": self.saga_type,
            "event_type": self.event_type.value,
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "metadata": dict(self.metadata),
        }


class SagaEventPublisher(abc.ABC):
    """Port: deliver saga lifecycle events to the outside world."""

    @abc.abstractmethod
    async def publish(self, event: SagaEvent) -> None: ...


class SagaEventBus(SagaEventPublisher):
    """Fan-out publisher; subscribers are called in registration order.

    Example::

        bus = SagaEventBus()
        bus.subscribe(monitor)
        bus.subscribe(timeout_manager)
        bus.subscribe(KafkaSagaPublisher(...))
    """

    def __init__(self, subscribers: list[SagaEventPublisher] | None = None) -> None:
        self._subscribers: list[SagaEventPublisher] = list(subscribers or [])

    def subscribe(self, subscriber: SagaEventPublisher) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: SagaEventPublisher) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscribers(self) -> tuple[SagaEventPublisher, ...]:
        return tuple(self._subscribers)

    async def publish(self, event: SagaEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber.publish(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "saga.event_subscriber_failed",
                    subscriber=type(subscriber).__name__,
                    event_type=event.event_type.value,
                    saga_id=str(event.saga_id),
                    error=str(exc),
                )


class LoggingSagaEventPublisher(SagaEventPublisher):
    """Writes every event to the structured log."""

    def __init__(self, logger_name: str = "saga_conductor.events") -> None:
        self._log = get_logger(logger_name)

    async def publish(self, event: SagaEvent) -> None:
        self._log.info(
            "saga.event",
            event_type=event.event_type.value,
            saga_id=str(event.saga_id),
            saga_type=event.saga_type,
            correlation_id=event.correlation_id,
            **dict(event.metadata),
        )


__all__ = [
    "FINISHING_EVENT_TYPES",
    "LoggingSagaEventPublisher",
    "SagaEvent",
    "SagaEventBus",
    "SagaEventPublisher",
    "SagaEventType",
]
