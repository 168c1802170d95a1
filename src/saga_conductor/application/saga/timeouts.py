"""Application saga – SagaTimeoutManager.

Background scanner that finds expired sagas and hands them to their
orchestrator's ``handle_timeout``.  Two sources are merged on every tick:

* an in-process map of ``saga_id -> deadline``, filled from ``SagaStarted``
  events and cleared by finishing events;
* ``get_timed_out_sagas(now)`` on every registered persistence backend, which
  also catches sagas started by other processes or before a restart.

State is always reloaded from persistence before acting.  A saga that is
being driven right now is left for the next tick, and one that changed after
the scan read it is skipped.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from uuid import UUID

from saga_conductor.application.saga.errors import SagaConcurrencyError
from saga_conductor.application.saga.events import (
    FINISHING_EVENT_TYPES,
    SagaEvent,
    SagaEventPublisher,
    SagaEventType,
)
from saga_conductor.application.saga.registry import SagaRegistry
from saga_conductor.application.saga.state import SagaState, SagaStatus
from saga_conductor.application.saga.worker import PeriodicWorker
from saga_conductor.config.settings import TimeoutManagerSettings
from saga_conductor.kernel.time import Clock
from saga_conductor.observability.logging import get_logger

logger = get_logger(__name__)

_TIMEOUT_ELIGIBLE = frozenset({SagaStatus.RUNNING, SagaStatus.SUSPENDED})


class SagaTimeoutManager(PeriodicWorker, SagaEventPublisher):
    """Detects and reacts to sagas past ``created_at + metadata.timeout``.

    Subscribe it to the registry's event bus so deadlines follow the saga
    lifecycle::

        manager = SagaTimeoutManager(registry, interval=30)
        bus.subscribe(manager)
        await manager.start()
    """

    def __init__(
        self,
        registry: SagaRegistry,
        *,
        interval: float = 60.0,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(interval, name="saga-timeout-manager")
        self._registry = registry
        self._clock = clock or registry.clock
        self._deadlines: dict[UUID, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        registry: SagaRegistry,
        settings: TimeoutManagerSettings,
        *,
        clock: Clock | None = None,
    ) -> SagaTimeoutManager:
        return cls(registry, interval=settings.check_interval_seconds, clock=clock)

    # ------------------------------------------------------------------
    # Deadline bookkeeping
    # ------------------------------------------------------------------

    def schedule_timeout(self, state: SagaState) -> datetime | None:
        """Track *state*'s deadline; returns it, or ``None`` when the saga has no timeout."""
        deadline = state.deadline
        if deadline is None:
            return None
        self._schedule(state.saga_id, state.saga_type, deadline)
        return deadline

    def cancel_timeout(self, saga_id: UUID) -> bool:
        with self._lock:
            removed = self._deadlines.pop(saga_id, None) is not None
        if removed:
            logger.debug("saga.timeout_cancelled", saga_id=str(saga_id))
        return removed

    def scheduled(self) -> dict[UUID, datetime]:
        with self._lock:
            return {saga_id: deadline for saga_id, (_, deadline) in self._deadlines.items()}

    def _schedule(self, saga_id: UUID, saga_type: str, deadline: datetime) -> None:
        with self._lock:
            self._deadlines[saga_id] = (saga_type, deadline)
        logger.debug("saga.timeout_scheduled", saga_id=str(saga_id), deadline=deadline.isoformat())

    async def publish(self, event: SagaEvent) -> None:
        if event.event_type is SagaEventType.STARTED:
            seconds = event.data.get("timeout_seconds")
            if seconds is not None:
                self._schedule(event.saga_id, event.saga_type, event.timestamp + timedelta(seconds=seconds))
        elif event.event_type in FINISHING_EVENT_TYPES:
            self.cancel_timeout(event.saga_id)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def run_once(self) -> list[UUID]:
        return await self.check_timeouts()

    async def check_timeouts(self) -> list[UUID]:
        """One scan; returns the ids whose timeout was handled."""
        now = self._clock.now()
        candidates: dict[UUID, SagaState] = {}

        for saga_id in self._expired(now):
            state = await self._registry.find(saga_id)
            if state is None or state.status not in _TIMEOUT_ELIGIBLE:
                self.cancel_timeout(saga_id)
                continue
            candidates[saga_id] = state

        for persistence in self._registry.persistences():
            try:
                expired = await persistence.get_timed_out_sagas(now)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "saga.timeout_scan_failed",
                    persistence=type(persistence).__name__,
                    error=str(exc),
                )
                continue
            for state in expired:
                candidates.setdefault(state.saga_id, state)

        handled: list[UUID] = []
        for saga_id, state in candidates.items():
            if await self._handle(state):
                handled.append(saga_id)
        if handled:
            logger.info("saga.timeouts_handled", count=len(handled))
        return handled

    def _expired(self, now: datetime) -> list[UUID]:
        with self._lock:
            return [saga_id for saga_id, (_, deadline) in self._deadlines.items() if deadline <= now]

    async def _handle(self, state: SagaState) -> bool:
        log = logger.bind(saga_id=str(state.saga_id), saga_type=state.saga_type)
        try:
            orchestrator = self._registry.orchestrator(state.saga_type)
            if orchestrator.is_busy(state.saga_id):
                log.info("saga.timeout_deferred")
                return False
            await orchestrator.handle_timeout(state)
        except SagaConcurrencyError as exc:
            log.info(
                "saga.timeout_skipped",
                stored_version=exc.stored_version,
                incoming_version=exc.incoming_version,
            )
            return False
        except Exception as exc:  # noqa: BLE001
            log.error("saga.timeout_handling_failed", error=str(exc))
            return False
        self.cancel_timeout(state.saga_id)
        log.warning("saga.timeout_handled", status=state.status.value)
        return True


__all__ = ["SagaTimeoutManager"]
