"""Application saga – SagaRegistry.

Maps each saga type to its persistence backend, step handlers and the
orchestrator that drives it.  Background services (timeout manager,
monitor health checks, diagnostics) resolve everything through here.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

from saga_conductor.application.saga.errors import DuplicateRegistrationError, SagaTypeNotRegisteredError
from saga_conductor.application.saga.events import SagaEventBus, SagaEventPublisher
from saga_conductor.application.saga.locking import SagaLockManager
from saga_conductor.application.saga.orchestrator import SagaOrchestrator
from saga_conductor.application.saga.state import SagaState
from saga_conductor.application.saga.step import SagaStepHandler
from saga_conductor.application.saga.store import SagaPersistence, SagaStatistics
from saga_conductor.kernel.errors import ValidationError
from saga_conductor.kernel.time import Clock, SystemClock
from saga_conductor.observability.logging import get_logger
from saga_conductor.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerPolicy
from saga_conductor.resilience.retry import RetryPolicy

if TYPE_CHECKING:
    from saga_conductor.config.settings import SagaSettings

logger = get_logger(__name__)


class OrchestratorFactory(Protocol):
    def __call__(
        self,
        saga_type: str,
        persistence: SagaPersistence,
        handlers: Iterable[SagaStepHandler],
        *,
        publisher: SagaEventPublisher | None = ...,
        retry_policy: RetryPolicy | None = ...,
        circuit_breaker: CircuitBreaker | None = ...,
        clock: Clock | None = ...,
        locks: SagaLockManager | None = ...,
    ) -> SagaOrchestrator: ...


@dataclasses.dataclass
class SagaRegistration:
    saga_type: str
    persistence: SagaPersistence
    handlers: tuple[SagaStepHandler, ...]
    orchestrator_factory: OrchestratorFactory
    circuit_breaker: CircuitBreaker | None = None
    retry_policy: RetryPolicy | None = None
    _orchestrator: SagaOrchestrator | None = dataclasses.field(default=None, repr=False)

    @property
    def step_names(self) -> list[str]:
        return [h.step_name for h in self.handlers]


class SagaRegistry:
    """Startup-time registry of saga types.

    Example::

        bus = SagaEventBus()
        registry = SagaRegistry(publisher=bus, circuit_breaker_policy=CircuitBreakerPolicy())
        registry.register("OrderSaga", persistence=store, handlers=[Reserve(), Charge()])
        orchestrator = registry.orchestrator("OrderSaga")
    """

    def __init__(
        self,
        *,
        publisher: SagaEventPublisher | None = None,
        retry_policy: RetryPolicy | None = None,
        circuit_breaker_policy: CircuitBreakerPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._publisher = publisher or SagaEventBus()
        self._retry_policy = retry_policy or RetryPolicy()
        self._circuit_breaker_policy = circuit_breaker_policy
        self._clock = clock or SystemClock()
        self._locks = SagaLockManager()
        self._registrations: dict[str, SagaRegistration] = {}

    @classmethod
    def from_settings(
        cls,
        settings: SagaSettings,
        *,
        publisher: SagaEventPublisher | None = None,
        clock: Clock | None = None,
    ) -> SagaRegistry:
        breaker_policy = (
            CircuitBreakerPolicy.from_settings(settings.circuit_breaker)
            if settings.circuit_breaker.enabled
            else None
        )
        return cls(
            publisher=publisher,
            retry_policy=RetryPolicy.from_settings(settings.retry),
            circuit_breaker_policy=breaker_policy,
            clock=clock,
        )

    @property
    def publisher(self) -> SagaEventPublisher:
        return self._publisher

    @property
    def clock(self) -> Clock:
        return self._clock

    def register(
        self,
        saga_type: str,
        *,
        persistence: SagaPersistence,
        handlers: Iterable[SagaStepHandler],
        orchestrator_factory: OrchestratorFactory | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> SagaRegistration:
        if not saga_type:
            raise ValidationError("saga_type must not be empty")
        if saga_type in self._registrations:
            raise DuplicateRegistrationError(f"Saga type '{saga_type}' is already registered")
        if circuit_breaker is None and self._circuit_breaker_policy is not None:
            circuit_breaker = CircuitBreaker(saga_type, self._circuit_breaker_policy)
        registration = SagaRegistration(
            saga_type=saga_type,
            persistence=persistence,
            handlers=tuple(handlers),
            orchestrator_factory=orchestrator_factory or SagaOrchestrator,
            circuit_breaker=circuit_breaker,
            retry_policy=retry_policy,
        )
        self._registrations[saga_type] = registration
        logger.info("saga.type_registered", saga_type=saga_type, steps=registration.step_names)
        return registration

    def get(self, saga_type: str) -> SagaRegistration:
        registration = self._registrations.get(saga_type)
        if registration is None:
            raise SagaTypeNotRegisteredError(saga_type)
        return registration

    def __contains__(self, saga_type: object) -> bool:
        return saga_type in self._registrations

    def __len__(self) -> int:
        return len(self._registrations)

    def saga_types(self) -> list[str]:
        return list(self._registrations)

    def registrations(self) -> list[SagaRegistration]:
        return list(self._registrations.values())

    def orchestrator(self, saga_type: str) -> SagaOrchestrator:
        """The orchestrator for *saga_type*, built on first use."""
        registration = self.get(saga_type)
        if registration._orchestrator is None:
            registration._orchestrator = registration.orchestrator_factory(
                saga_type,
                registration.persistence,
                registration.handlers,
                publisher=self._publisher,
                retry_policy=registration.retry_policy or self._retry_policy,
                circuit_breaker=registration.circuit_breaker,
                clock=self._clock,
                locks=self._locks,
            )
        return registration._orchestrator

    def persistence(self, saga_type: str) -> SagaPersistence:
        return self.get(saga_type).persistence

    def persistences(self) -> list[SagaPersistence]:
        """Distinct backends, in registration order."""
        seen: list[SagaPersistence] = []
        for registration in self._registrations.values():
            if not any(p is registration.persistence for p in seen):
                seen.append(registration.persistence)
        return seen

    async def find(self, saga_id: UUID) -> SagaState | None:
        """Look *saga_id* up in every registered backend."""
        for persistence in self.persistences():
            state = await persistence.get(saga_id)
            if state is not None:
                return state
        return None

    async def get_statistics(self) -> SagaStatistics:
        statistics = SagaStatistics()
        for persistence in self.persistences():
            statistics = statistics.merge(await persistence.get_statistics())
        return statistics


__all__ = ["OrchestratorFactory", "SagaRegistration", "SagaRegistry"]
