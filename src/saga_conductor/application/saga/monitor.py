"""Application saga – SagaMonitor.

Aggregates saga executions into health and performance figures.  The monitor
is an event subscriber: put it on the orchestrators' :class:`SagaEventBus`
and every lifecycle event is routed to the matching ``track_*`` call.

Three structures are maintained:

* an in-flight :class:`SagaExecution` per active saga;
* a rolling history of finished executions, capped by count
  (``max_metrics_history``) and by age (``metrics_retention``);
* per saga type :class:`SagaTypeMetrics` with per-step aggregates.

A background cleanup tick evicts expired history and reports sagas that
have been active longer than ``stuck_saga_threshold`` as ``SagaStuck``
events.  Stuck sagas are only reported; their state is never changed.
"""

from __future__ import annotations

import dataclasses
import enum
import threading
from collections import deque
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID

from saga_conductor.application.saga.events import SagaEvent, SagaEventPublisher, SagaEventType
from saga_conductor.application.saga.health import PersistenceHealthCheck
from saga_conductor.application.saga.worker import PeriodicWorker
from saga_conductor.config.settings import MonitorSettings
from saga_conductor.kernel.time import Clock, SystemClock
from saga_conductor.observability.health import HealthRegistry, HealthReport
from saga_conductor.observability.logging import get_logger
from saga_conductor.observability.metrics import Metrics, NoopMetrics

if TYPE_CHECKING:
    from saga_conductor.application.saga.registry import SagaRegistry

logger = get_logger(__name__)

HEALTHY_FAILURE_RATE = 0.05
DEGRADED_FAILURE_RATE = 0.15


class ExecutionOutcome(str, enum.Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    COMPENSATED = "Compensated"
    ABORTED = "Aborted"


_FAILURE_OUTCOMES = frozenset({ExecutionOutcome.FAILED, ExecutionOutcome.ABORTED})


class HealthVerdict(str, enum.Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"


def health_verdict(failure_rate: float) -> HealthVerdict:
    if failure_rate <= HEALTHY_FAILURE_RATE:
        return HealthVerdict.HEALTHY
    if failure_rate <= DEGRADED_FAILURE_RATE:
        return HealthVerdict.DEGRADED
    return HealthVerdict.UNHEALTHY


@dataclasses.dataclass
class SagaMonitorOptions:
    cleanup_interval: timedelta = timedelta(minutes=5)
    metrics_retention: timedelta = timedelta(days=7)
    health_check_window: timedelta = timedelta(hours=1)
    metrics_window: timedelta = timedelta(hours=24)
    stuck_saga_threshold: timedelta = timedelta(hours=2)
    max_metrics_history: int = 10_000

    @classmethod
    def from_settings(cls, settings: MonitorSettings) -> SagaMonitorOptions:
        return cls(
            cleanup_interval=timedelta(seconds=settings.cleanup_interval_seconds),
            metrics_retention=timedelta(seconds=settings.metrics_retention_seconds),
            health_check_window=timedelta(seconds=settings.health_check_window_seconds),
            metrics_window=timedelta(seconds=settings.metrics_window_seconds),
            stuck_saga_threshold=timedelta(seconds=settings.stuck_saga_threshold_seconds),
            max_metrics_history=settings.max_metrics_history,
        )


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class StepExecution:
    step_name: str
    started_at: datetime
    completed_at: datetime | None = None
    duration: timedelta | None = None
    error_message: str | None = None


@dataclasses.dataclass
class SagaExecution:
    """In-flight record for one active saga."""

    saga_id: UUID
    saga_type: str
    started_at: datetime
    correlation_id: str | None = None
    current_step: StepExecution | None = None
    completed_steps: list[StepExecution] = dataclasses.field(default_factory=list)
    failed_steps: list[StepExecution] = dataclasses.field(default_factory=list)

    def running_for(self, now: datetime) -> timedelta:
        return now - self.started_at


@dataclasses.dataclass(frozen=True)
class ExecutionSnapshot:
    """A finished execution kept in the rolling history."""

    saga_id: UUID
    saga_type: str
    outcome: ExecutionOutcome
    duration: timedelta
    timestamp: datetime
    step_count: int = 0
    error_message: str | None = None


@dataclasses.dataclass
class StepTypeMetrics:
    step_name: str
    execution_count: int = 0
    failure_count: int = 0
    total_execution_time: timedelta = timedelta(0)
    last_execution_time: datetime | None = None
    last_failure_time: datetime | None = None
    last_failure_reason: str | None = None

    @property
    def success_count(self) -> int:
        return self.execution_count - self.failure_count

    @property
    def success_rate(self) -> float:
        if not self.execution_count:
            return 1.0
        return self.success_count / self.execution_count

    @property
    def average_execution_time(self) -> timedelta:
        if not self.success_count:
            return timedelta(0)
        return self.total_execution_time / self.success_count


@dataclasses.dataclass
class SagaTypeMetrics:
    saga_type: str
    active_sagas: int = 0
    completed_sagas: int = 0
    failed_sagas: int = 0
    total_execution_time: timedelta = timedelta(0)
    last_completion_time: datetime | None = None
    last_failure_time: datetime | None = None
    last_failure_reason: str | None = None
    step_metrics: dict[str, StepTypeMetrics] = dataclasses.field(default_factory=dict)
    _lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def average_execution_time(self) -> timedelta:
        if not self.completed_sagas:
            return timedelta(0)
        return self.total_execution_time / self.completed_sagas

    def step(self, step_name: str) -> StepTypeMetrics:
        metrics = self.step_metrics.get(step_name)
        if metrics is None:
            metrics = self.step_metrics[step_name] = StepTypeMetrics(step_name)
        return metrics

    def snapshot(self) -> SagaTypeMetrics:
        with self._lock:
            return dataclasses.replace(
                self,
                step_metrics={k: dataclasses.replace(v) for k, v in self.step_metrics.items()},
            )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class SagaHealthReport:
    timestamp: datetime
    overall_status: HealthVerdict
    active_saga_count: int
    total_sagas_in_window: int
    failed_sagas_in_window: int
    timed_out_sagas_in_window: int
    success_rate: float
    average_execution_time: timedelta
    longest_running_saga: timedelta | None = None
    persistence: HealthReport | None = None

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "overall_status": self.overall_status.value,
            "active_saga_count": self.active_saga_count,
            "total_sagas_in_window": self.total_sagas_in_window,
            "failed_sagas_in_window": self.failed_sagas_in_window,
            "timed_out_sagas_in_window": self.timed_out_sagas_in_window,
            "success_rate": self.success_rate,
            "average_execution_time_ms": self.average_execution_time.total_seconds() * 1000,
            "longest_running_saga_ms": (
                None
                if self.longest_running_saga is None
                else self.longest_running_saga.total_seconds() * 1000
            ),
            "persistence": None if self.persistence is None else self.persistence.to_dict(),
        }


@dataclasses.dataclass
class SagaPerformanceMetrics:
    timestamp: datetime
    saga_type: str | None = None
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    active_executions: int = 0
    average_execution_time: timedelta = timedelta(0)
    step_metrics: list[StepTypeMetrics] = dataclasses.field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 1.0
        return self.successful_executions / self.total_executions


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class SagaMonitor(PeriodicWorker, SagaEventPublisher):
    """Tracks saga executions and answers health/performance queries.

    Example::

        monitor = SagaMonitor(registry=registry, publisher=alerts)
        bus.subscribe(monitor)
        await monitor.start()
        report = await monitor.get_health_report()
    """

    def __init__(
        self,
        options: SagaMonitorOptions | None = None,
        *,
        clock: Clock | None = None,
        metrics: Metrics | None = None,
        publisher: SagaEventPublisher | None = None,
        registry: SagaRegistry | None = None,
    ) -> None:
        self._options = options or SagaMonitorOptions()
        super().__init__(self._options.cleanup_interval.total_seconds(), name="saga-monitor")
        self._clock = clock or SystemClock()
        self._publisher = publisher
        self._registry = registry
        self._active: dict[UUID, SagaExecution] = {}
        self._history: deque[ExecutionSnapshot] = deque(maxlen=self._options.max_metrics_history)
        self._lock = threading.Lock()
        self._type_metrics: dict[str, SagaTypeMetrics] = {}
        self._type_lock = threading.Lock()

        metrics = metrics or NoopMetrics()
        self._started_counter = metrics.counter("saga_started_total", "Sagas started")
        self._completed_counter = metrics.counter("saga_completed_total", "Sagas completed")
        self._failed_counter = metrics.counter("saga_failed_total", "Sagas failed, aborted or timed out")
        self._duration_histogram = metrics.histogram("saga_duration_ms", "Saga execution time")
        self._step_histogram = metrics.histogram("saga_step_duration_ms", "Step execution time")
        self._active_gauge = metrics.gauge("saga_active", "Sagas currently active")

    @classmethod
    def from_settings(cls, settings: MonitorSettings, **kwargs: Any) -> SagaMonitor:
        return cls(SagaMonitorOptions.from_settings(settings), **kwargs)

    @property
    def options(self) -> SagaMonitorOptions:
        return self._options

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    async def publish(self, event: SagaEvent) -> None:
        data = event.data
        kind = event.event_type
        if kind is SagaEventType.STARTED:
            self.track_saga_started(event.saga_id, event.saga_type, correlation_id=event.correlation_id)
        elif kind is SagaEventType.STEP_STARTED:
            self.track_step_started(event.saga_id, data.get("step_name", ""))
        elif kind is SagaEventType.STEP_COMPLETED:
            if not data.get("skipped"):
                duration_ms = data.get("duration_ms") or 0.0
                self.track_step_completed(
                    event.saga_id,
                    event.saga_type,
                    data.get("step_name", ""),
                    timedelta(milliseconds=duration_ms),
                )
        elif kind is SagaEventType.STEP_FAILED:
            self.track_step_failed(
                event.saga_id, event.saga_type, data.get("step_name", ""), data.get("error") or ""
            )
        elif kind is SagaEventType.COMPLETED:
            self.track_saga_completed(event.saga_id, event.saga_type)
        elif kind is SagaEventType.FAILED:
            self.track_saga_failed(event.saga_id, event.saga_type, data.get("error") or "")
        elif kind is SagaEventType.TIMED_OUT:
            self.track_saga_timed_out(event.saga_id, event.saga_type)
        elif kind is SagaEventType.COMPENSATED:
            self.track_saga_compensated(event.saga_id, event.saga_type)
        elif kind is SagaEventType.ABORTED:
            self.track_saga_aborted(event.saga_id, event.saga_type, data.get("reason") or "")

    # ------------------------------------------------------------------
    # Saga tracking
    # ------------------------------------------------------------------

    def track_saga_started(self, saga_id: UUID, saga_type: str, *, correlation_id: str | None = None) -> None:
        execution = SagaExecution(saga_id, saga_type, self._clock.now(), correlation_id)
        with self._lock:
            if saga_id in self._active:
                return
            self._active[saga_id] = execution
        self._update_type(saga_type, lambda m: setattr(m, "active_sagas", m.active_sagas + 1))
        labels = {"saga_type": saga_type}
        self._started_counter.add(1, labels)
        self._active_gauge.inc(labels)
        logger.debug("saga.monitor_started", saga_id=str(saga_id), saga_type=saga_type)

    def track_saga_completed(self, saga_id: UUID, saga_type: str) -> None:
        snapshot = self._finish(saga_id, ExecutionOutcome.COMPLETED)
        if snapshot is None:
            return

        def update(m: SagaTypeMetrics) -> None:
            m.active_sagas -= 1
            m.completed_sagas += 1
            m.total_execution_time += snapshot.duration
            m.last_completion_time = snapshot.timestamp

        self._update_type(saga_type, update)
        self._completed_counter.add(1, {"saga_type": saga_type})

    def track_saga_failed(self, saga_id: UUID, saga_type: str, reason: str) -> None:
        self._record_failure(saga_id, saga_type, ExecutionOutcome.FAILED, reason)

    def track_saga_aborted(self, saga_id: UUID, saga_type: str, reason: str) -> None:
        self._record_failure(saga_id, saga_type, ExecutionOutcome.ABORTED, reason)

    def track_saga_timed_out(self, saga_id: UUID, saga_type: str) -> None:
        self._record_failure(saga_id, saga_type, ExecutionOutcome.TIMED_OUT, "Saga timed out")

    def track_saga_compensated(self, saga_id: UUID, saga_type: str) -> None:
        """Compensation requested by a step; sagas that failed first were already recorded."""
        snapshot = self._finish(saga_id, ExecutionOutcome.COMPENSATED)
        if snapshot is None:
            return
        self._update_type(saga_type, lambda m: setattr(m, "active_sagas", m.active_sagas - 1))

    def _record_failure(self, saga_id: UUID, saga_type: str, outcome: ExecutionOutcome, reason: str) -> None:
        snapshot = self._finish(saga_id, outcome, error=reason)
        if snapshot is None:
            return

        def update(m: SagaTypeMetrics) -> None:
            m.active_sagas -= 1
            m.failed_sagas += 1
            m.last_failure_time = snapshot.timestamp
            m.last_failure_reason = reason

        self._update_type(saga_type, update)
        self._failed_counter.add(1, {"saga_type": saga_type, "outcome": outcome.value})
        logger.warning(
            "saga.monitor_failure",
            saga_id=str(saga_id),
            saga_type=saga_type,
            outcome=outcome.value,
            reason=reason,
        )

    def _finish(
        self,
        saga_id: UUID,
        outcome: ExecutionOutcome,
        *,
        error: str | None = None,
    ) -> ExecutionSnapshot | None:
        """Move the in-flight record into history; ``None`` when it was not tracked."""
        now = self._clock.now()
        with self._lock:
            execution = self._active.pop(saga_id, None)
            if execution is None:
                return None
            snapshot = ExecutionSnapshot(
                saga_id=saga_id,
                saga_type=execution.saga_type,
                outcome=outcome,
                duration=now - execution.started_at,
                timestamp=now,
                step_count=len(execution.completed_steps) + len(execution.failed_steps),
                error_message=error,
            )
            self._history.append(snapshot)
        labels = {"saga_type": execution.saga_type}
        self._active_gauge.dec(labels)
        self._duration_histogram.record(snapshot.duration.total_seconds() * 1000, labels)
        return snapshot

    # ------------------------------------------------------------------
    # Step tracking
    # ------------------------------------------------------------------

    def track_step_started(self, saga_id: UUID, step_name: str) -> None:
        now = self._clock.now()
        with self._lock:
            execution = self._active.get(saga_id)
            if execution is not None:
                execution.current_step = StepExecution(step_name, now)

    def track_step_completed(self, saga_id: UUID, saga_type: str, step_name: str, duration: timedelta) -> None:
        now = self._clock.now()
        with self._lock:
            execution = self._active.get(saga_id)
            if execution is not None and execution.current_step is not None:
                if execution.current_step.step_name == step_name:
                    step = execution.current_step
                    step.completed_at = now
                    step.duration = duration
                    execution.completed_steps.append(step)
                    execution.current_step = None

        def update(m: SagaTypeMetrics) -> None:
            step = m.step(step_name)
            step.execution_count += 1
            step.total_execution_time += duration
            step.last_execution_time = now

        self._update_type(saga_type, update)
        self._step_histogram.record(
            duration.total_seconds() * 1000, {"saga_type": saga_type, "step": step_name}
        )

    def track_step_failed(self, saga_id: UUID, saga_type: str, step_name: str, error: str) -> None:
        now = self._clock.now()
        with self._lock:
            execution = self._active.get(saga_id)
            if execution is not None and execution.current_step is not None:
                if execution.current_step.step_name == step_name:
                    step = execution.current_step
                    step.completed_at = now
                    step.error_message = error
                    execution.failed_steps.append(step)
                    execution.current_step = None

        def update(m: SagaTypeMetrics) -> None:
            step = m.step(step_name)
            step.execution_count += 1
            step.failure_count += 1
            step.last_failure_time = now
            step.last_failure_reason = error

        self._update_type(saga_type, update)

    def _update_type(self, saga_type: str, update: Callable[[SagaTypeMetrics], None]) -> None:
        with self._type_lock:
            metrics = self._type_metrics.get(saga_type)
            if metrics is None:
                metrics = self._type_metrics[saga_type] = SagaTypeMetrics(saga_type)
        with metrics._lock:
            update(metrics)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_sagas(self) -> list[SagaExecution]:
        with self._lock:
            return [dataclasses.replace(e) for e in self._active.values()]

    def get_recent_executions(self, since: datetime | None = None) -> list[ExecutionSnapshot]:
        with self._lock:
            history = list(self._history)
        if since is None:
            return history
        return [s for s in history if s.timestamp >= since]

    def get_saga_type_metrics(self, saga_type: str) -> SagaTypeMetrics | None:
        with self._type_lock:
            metrics = self._type_metrics.get(saga_type)
        return None if metrics is None else metrics.snapshot()

    def saga_types(self) -> list[str]:
        with self._type_lock:
            return list(self._type_metrics)

    async def get_health_report(self, window: timedelta | None = None) -> SagaHealthReport:
        now = self._clock.now()
        recent = self.get_recent_executions(now - (window or self._options.health_check_window))
        total = len(recent)
        failed = sum(1 for s in recent if s.outcome in _FAILURE_OUTCOMES)
        timed_out = sum(1 for s in recent if s.outcome is ExecutionOutcome.TIMED_OUT)
        success_rate = (total - failed - timed_out) / total if total else 1.0

        with self._lock:
            active_count = len(self._active)
            oldest = min((e.started_at for e in self._active.values()), default=None)

        return SagaHealthReport(
            timestamp=now,
            overall_status=health_verdict((failed + timed_out) / total if total else 0.0),
            active_saga_count=active_count,
            total_sagas_in_window=total,
            failed_sagas_in_window=failed,
            timed_out_sagas_in_window=timed_out,
            success_rate=success_rate,
            average_execution_time=_average(s.duration for s in recent),
            longest_running_saga=None if oldest is None else now - oldest,
            persistence=await self._check_persistence(),
        )

    def get_performance_metrics(self, saga_type: str | None = None) -> SagaPerformanceMetrics:
        now = self._clock.now()
        if saga_type is not None:
            metrics = self.get_saga_type_metrics(saga_type)
            if metrics is None:
                return SagaPerformanceMetrics(timestamp=now, saga_type=saga_type)
            return SagaPerformanceMetrics(
                timestamp=now,
                saga_type=saga_type,
                total_executions=metrics.completed_sagas + metrics.failed_sagas,
                successful_executions=metrics.completed_sagas,
                failed_executions=metrics.failed_sagas,
                active_executions=metrics.active_sagas,
                average_execution_time=metrics.average_execution_time,
                step_metrics=list(metrics.step_metrics.values()),
            )

        recent = self.get_recent_executions(now - self._options.metrics_window)
        with self._lock:
            active = len(self._active)
        return SagaPerformanceMetrics(
            timestamp=now,
            total_executions=len(recent),
            successful_executions=sum(1 for s in recent if s.outcome is ExecutionOutcome.COMPLETED),
            failed_executions=sum(1 for s in recent if s.outcome in _FAILURE_OUTCOMES),
            active_executions=active,
            average_execution_time=_average(s.duration for s in recent),
        )

    async def _check_persistence(self) -> HealthReport | None:
        if self._registry is None:
            return None
        checks = HealthRegistry(
            [PersistenceHealthCheck(t, self._registry.persistence(t)) for t in self._registry.saga_types()]
        )
        return await checks.run_all()

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def run_once(self) -> list[UUID]:
        return await self.run_cleanup()

    async def run_cleanup(self) -> list[UUID]:
        """Evict expired history and report stuck sagas; returns the stuck ids."""
        now = self._clock.now()
        cutoff = now - self._options.metrics_retention
        evicted = 0
        with self._lock:
            while self._history and self._history[0].timestamp < cutoff:
                self._history.popleft()
                evicted += 1
            stuck = [
                dataclasses.replace(e)
                for e in self._active.values()
                if e.running_for(now) > self._options.stuck_saga_threshold
            ]
        if evicted:
            logger.debug("saga.monitor_history_evicted", count=evicted)

        for execution in stuck:
            running_for = execution.running_for(now)
            logger.warning(
                "saga.stuck",
                saga_id=str(execution.saga_id),
                saga_type=execution.saga_type,
                running_for_seconds=running_for.total_seconds(),
            )
            await self._publish_stuck(execution, running_for, now)
        return [e.saga_id for e in stuck]

    async def _publish_stuck(self, execution: SagaExecution, running_for: timedelta, now: datetime) -> None:
        if self._publisher is None:
            return
        event = SagaEvent(
            saga_id=execution.saga_id,
            saga_type=execution.saga_type,
            event_type=SagaEventType.STUCK,
            data={"running_for_seconds": running_for.total_seconds()},
            timestamp=now,
            correlation_id=execution.correlation_id,
        )
        try:
            await self._publisher.publish(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning("saga.publish_failed", saga_id=str(execution.saga_id), error=str(exc))


def _average(durations: Iterable[timedelta]) -> timedelta:
    items = list(durations)
    if not items:
        return timedelta(0)
    return sum(items, timedelta(0)) / len(items)


__all__ = [
    "DEGRADED_FAILURE_RATE",
    "HEALTHY_FAILURE_RATE",
    "ExecutionOutcome",
    "ExecutionSnapshot",
    "HealthVerdict",
    "SagaExecution",
    "SagaHealthReport",
    "SagaMonitor",
    "SagaMonitorOptions",
    "SagaPerformanceMetrics",
    "SagaTypeMetrics",
    "StepExecution",
    "StepTypeMetrics",
    "health_verdict",
]
