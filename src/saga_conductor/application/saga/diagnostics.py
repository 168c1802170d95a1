"""Application saga – SagaDiagnosticService.

Read-only reporting over persisted sagas and the :class:`SagaMonitor`.
Nothing here mutates a saga: ``next_possible_steps`` is computed with
``SagaOrchestrator.can_execute_step``, which is a pure query.
"""

from __future__ import annotations

import dataclasses
import enum
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import TypeAdapter

from saga_conductor.application.saga.errors import SagaNotFoundError
from saga_conductor.application.saga.export import ExportFormat, export_state
from saga_conductor.application.saga.monitor import SagaMonitor, SagaPerformanceMetrics
from saga_conductor.application.saga.payload import Payload
from saga_conductor.application.saga.registry import SagaRegistry
from saga_conductor.application.saga.state import SagaState, SagaStatus, SagaStepStatus
from saga_conductor.kernel.errors import BaseError
from saga_conductor.kernel.time import Clock
from saga_conductor.observability.logging import get_logger

logger = get_logger(__name__)

_DATA_ADAPTER: TypeAdapter[dict[str, Payload]] = TypeAdapter(dict[str, Payload])


class AnomalyType(str, enum.Enum):
    HIGH_FAILURE_RATE = "HighFailureRate"
    SLOW_EXECUTION = "SlowExecution"
    STUCK_SAGA = "StuckSaga"
    HIGH_RETRY_COUNT = "HighRetryCount"
    HIGH_STEP_FAILURE_RATE = "HighStepFailureRate"
    SLOW_STEP = "SlowStep"


class AnomalySeverity(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class DiagnosticStatus(str, enum.Enum):
    HEALTHY = "Healthy"
    WARNING = "Warning"
    CRITICAL = "Critical"
    ERROR = "Error"
    NOT_FOUND = "NotFound"


@dataclasses.dataclass(frozen=True)
class DiagnosticThresholds:
    min_success_rate: float = 0.95
    slow_execution: timedelta = timedelta(minutes=30)
    stuck_saga: timedelta = timedelta(hours=2)
    min_step_success_rate: float = 0.9
    slow_step: timedelta = timedelta(minutes=10)
    long_running_saga: timedelta = timedelta(hours=1)
    retry_ratio: float = 0.5
    """A step is flagged once ``retry_count > max_retries * retry_ratio``."""


@dataclasses.dataclass
class SagaAnomaly:
    anomaly_type: AnomalyType
    severity: AnomalySeverity
    description: str
    detected_at: datetime
    value: float | None = None
    threshold: float | None = None
    saga_type: str | None = None
    saga_id: UUID | None = None
    step_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.anomaly_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "detected_at": self.detected_at.isoformat(),
            "value": self.value,
            "threshold": self.threshold,
            "saga_type": self.saga_type,
            "saga_id": None if self.saga_id is None else str(self.saga_id),
            "step_name": self.step_name,
        }


@dataclasses.dataclass
class StepTrace:
    step_name: str
    step_type: str
    status: SagaStepStatus
    started_at: datetime | None
    completed_at: datetime | None
    duration: timedelta | None
    input: Payload | None
    output: Payload | None
    error_message: str | None
    retry_count: int
    max_retries: int


@dataclasses.dataclass
class CompensationTrace:
    step_name: str
    action: str
    status: SagaStepStatus
    executed_at: datetime | None
    error_message: str | None
    retry_count: int


@dataclasses.dataclass
class SagaExecutionTrace:
    saga_id: UUID
    saga_type: str
    status: SagaStatus
    created_at: datetime
    last_updated_at: datetime
    completed_at: datetime | None
    correlation_id: str | None
    generated_at: datetime
    steps: list[StepTrace] = dataclasses.field(default_factory=list)
    compensations: list[CompensationTrace] = dataclasses.field(default_factory=list)
    data_snapshot: str = "{}"


@dataclasses.dataclass
class SagaDiagnosticReport:
    saga_id: UUID
    generated_at: datetime
    status: DiagnosticStatus = DiagnosticStatus.HEALTHY
    summary: str = ""
    state: SagaState | None = None
    execution_trace: SagaExecutionTrace | None = None
    performance_metrics: SagaPerformanceMetrics | None = None
    anomalies: list[SagaAnomaly] = dataclasses.field(default_factory=list)
    errors: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class StateValidationIssue:
    field: str
    error: str


@dataclasses.dataclass
class PersistenceDebugInfo:
    persistence_type: str
    version: int
    last_save_time: datetime
    total_sagas_in_store: int | None = None
    error_message: str | None = None


@dataclasses.dataclass
class SagaDebugInfo:
    saga_id: UUID
    generated_at: datetime
    current_state: str
    step_definitions: list[str]
    available_handlers: list[str]
    persistence: PersistenceDebugInfo | None
    validation_results: list[StateValidationIssue]
    next_possible_steps: list[str]


class SagaDiagnosticService:
    """Reports, traces, anomaly detection and exports for persisted sagas.

    Example::

        diagnostics = SagaDiagnosticService(registry, monitor)
        report = await diagnostics.generate_report(saga_id)
        if report.status is DiagnosticStatus.CRITICAL:
            ...
    """

    def __init__(
        self,
        registry: SagaRegistry,
        monitor: SagaMonitor,
        *,
        clock: Clock | None = None,
        thresholds: DiagnosticThresholds | None = None,
    ) -> None:
        self._registry = registry
        self._monitor = monitor
        self._clock = clock or registry.clock
        self._thresholds = thresholds or DiagnosticThresholds()

    @property
    def thresholds(self) -> DiagnosticThresholds:
        return self._thresholds

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def generate_report(self, saga_id: UUID) -> SagaDiagnosticReport:
        now = self._clock.now()
        report = SagaDiagnosticReport(saga_id=saga_id, generated_at=now)
        try:
            state = await self._registry.find(saga_id)
            if state is None:
                report.status = DiagnosticStatus.NOT_FOUND
                report.summary = "Saga not found in any registered persistence"
                return report
            report.state = state
            report.execution_trace = self._trace(state)
            report.performance_metrics = self._monitor.get_performance_metrics(state.saga_type)
            report.anomalies = self._saga_anomalies(state, now)
        except BaseError as exc:
            logger.error("saga.diagnostic_report_failed", saga_id=str(saga_id), error=exc.message)
            report.errors.append(exc.message)
        report.status = self._overall_status(report)
        report.summary = self._summary(report, now)
        return report

    async def summarize(self, saga_id: UUID) -> str:
        report = await self.generate_report(saga_id)
        return report.summary

    async def get_execution_trace(self, saga_id: UUID) -> SagaExecutionTrace:
        return self._trace(await self._require(saga_id))

    async def detect_anomalies(
        self,
        saga_type: str | None = None,
        lookback: timedelta | None = None,
    ) -> list[SagaAnomaly]:
        """Fleet-wide anomalies from the monitor's rolling window and step aggregates."""
        limits = self._thresholds
        now = self._clock.now()
        health = await self._monitor.get_health_report(lookback or timedelta(hours=1))
        anomalies: list[SagaAnomaly] = []

        if health.success_rate < limits.min_success_rate:
            anomalies.append(
                SagaAnomaly(
                    AnomalyType.HIGH_FAILURE_RATE,
                    AnomalySeverity.HIGH,
                    f"High failure rate detected: success rate {health.success_rate:.2%}",
                    now,
                    value=health.success_rate,
                    threshold=limits.min_success_rate,
                    saga_type=saga_type,
                )
            )
        if health.average_execution_time > limits.slow_execution:
            anomalies.append(
                SagaAnomaly(
                    AnomalyType.SLOW_EXECUTION,
                    AnomalySeverity.MEDIUM,
                    f"Slow execution detected: average {health.average_execution_time}",
                    now,
                    value=_ms(health.average_execution_time),
                    threshold=_ms(limits.slow_execution),
                    saga_type=saga_type,
                )
            )
        longest = health.longest_running_saga
        if longest is not None and longest > limits.stuck_saga:
            anomalies.append(
                SagaAnomaly(
                    AnomalyType.STUCK_SAGA,
                    AnomalySeverity.HIGH,
                    f"Long-running saga detected: {longest}",
                    now,
                    value=_ms(longest),
                    threshold=_ms(limits.stuck_saga),
                    saga_type=saga_type,
                )
            )

        saga_types = [saga_type] if saga_type is not None else self._monitor.saga_types()
        for name in saga_types:
            anomalies.extend(self._step_anomalies(self._monitor.get_performance_metrics(name), now))
        return anomalies

    async def get_debug_info(self, saga_id: UUID) -> SagaDebugInfo:
        state = await self._require(saga_id)
        available: list[str] = []
        next_steps: list[str] = []
        if state.saga_type in self._registry:
            orchestrator = self._registry.orchestrator(state.saga_type)
            available = list(orchestrator.handlers)
            next_steps = [name for name in available if orchestrator.can_execute_step(state, name)]
        return SagaDebugInfo(
            saga_id=saga_id,
            generated_at=self._clock.now(),
            current_state=state.model_dump_json(indent=2),
            step_definitions=[step.name for step in state.steps],
            available_handlers=available,
            persistence=await self._persistence_info(state),
            validation_results=validate_state(state),
            next_possible_steps=next_steps,
        )

    async def export(self, saga_id: UUID, fmt: ExportFormat = ExportFormat.JSON) -> str:
        return export_state(await self._require(saga_id), fmt)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require(self, saga_id: UUID) -> SagaState:
        state = await self._registry.find(saga_id)
        if state is None:
            raise SagaNotFoundError(saga_id)
        return state

    def _trace(self, state: SagaState) -> SagaExecutionTrace:
        return SagaExecutionTrace(
            saga_id=state.saga_id,
            saga_type=state.saga_type,
            status=state.status,
            created_at=state.created_at,
            last_updated_at=state.last_updated_at,
            completed_at=state.completed_at,
            correlation_id=state.correlation_id,
            generated_at=self._clock.now(),
            steps=[
                StepTrace(
                    step_name=step.name,
                    step_type=step.step_type,
                    status=step.status,
                    started_at=step.started_at,
                    completed_at=step.completed_at,
                    duration=step.duration,
                    input=step.input,
                    output=step.output,
                    error_message=step.error_message,
                    retry_count=step.retry_count,
                    max_retries=step.max_retries,
                )
                for step in state.steps
            ],
            compensations=[
                CompensationTrace(
                    step_name=record.step_name,
                    action=record.action,
                    status=record.status,
                    executed_at=record.executed_at,
                    error_message=record.error_message,
                    retry_count=record.retry_count,
                )
                for record in state.compensations
            ],
            data_snapshot=_DATA_ADAPTER.dump_json(state.data, indent=2).decode(),
        )

    def _saga_anomalies(self, state: SagaState, now: datetime) -> list[SagaAnomaly]:
        limits = self._thresholds
        anomalies: list[SagaAnomaly] = []
        retried = [s.name for s in state.steps if s.retry_count > s.max_retries * limits.retry_ratio]
        if retried:
            anomalies.append(
                SagaAnomaly(
                    AnomalyType.HIGH_RETRY_COUNT,
                    AnomalySeverity.MEDIUM,
                    f"High retry count on steps: {', '.join(retried)}",
                    now,
                    saga_type=state.saga_type,
                    saga_id=state.saga_id,
                    step_name=retried[0] if len(retried) == 1 else None,
                )
            )
        running_for = now - state.created_at
        if state.status is SagaStatus.RUNNING and running_for > limits.long_running_saga:
            anomalies.append(
                SagaAnomaly(
                    AnomalyType.STUCK_SAGA,
                    AnomalySeverity.HIGH,
                    f"Saga has been running for {running_for}",
                    now,
                    value=_ms(running_for),
                    threshold=_ms(limits.long_running_saga),
                    saga_type=state.saga_type,
                    saga_id=state.saga_id,
                )
            )
        return anomalies

    def _step_anomalies(self, metrics: SagaPerformanceMetrics, now: datetime) -> list[SagaAnomaly]:
        limits = self._thresholds
        anomalies: list[SagaAnomaly] = []
        for step in metrics.step_metrics:
            if step.success_rate < limits.min_step_success_rate:
                anomalies.append(
                    SagaAnomaly(
                        AnomalyType.HIGH_STEP_FAILURE_RATE,
                        AnomalySeverity.MEDIUM,
                        f"Step '{step.step_name}' has a high failure rate: success rate {step.success_rate:.2%}",
                        now,
                        value=step.success_rate,
                        threshold=limits.min_step_success_rate,
                        saga_type=metrics.saga_type,
                        step_name=step.step_name,
                    )
                )
            if step.average_execution_time > limits.slow_step:
                anomalies.append(
                    SagaAnomaly(
                        AnomalyType.SLOW_STEP,
                        AnomalySeverity.LOW,
                        f"Step '{step.step_name}' is slow: average {step.average_execution_time}",
                        now,
                        value=_ms(step.average_execution_time),
                        threshold=_ms(limits.slow_step),
                        saga_type=metrics.saga_type,
                        step_name=step.step_name,
                    )
                )
        return anomalies

    async def _persistence_info(self, state: SagaState) -> PersistenceDebugInfo | None:
        if state.saga_type not in self._registry:
            return None
        persistence = self._registry.persistence(state.saga_type)
        info = PersistenceDebugInfo(
            persistence_type=type(persistence).__name__,
            version=state.version,
            last_save_time=state.last_updated_at,
        )
        try:
            statistics = await persistence.get_statistics()
        except BaseError as exc:
            info.error_message = exc.message
        else:
            info.total_sagas_in_store = statistics.total_sagas
        return info

    @staticmethod
    def _overall_status(report: SagaDiagnosticReport) -> DiagnosticStatus:
        if report.errors:
            return DiagnosticStatus.ERROR
        severities = {a.severity for a in report.anomalies}
        if AnomalySeverity.HIGH in severities:
            return DiagnosticStatus.CRITICAL
        if AnomalySeverity.MEDIUM in severities:
            return DiagnosticStatus.WARNING
        return DiagnosticStatus.HEALTHY

    @staticmethod
    def _summary(report: SagaDiagnosticReport, now: datetime) -> str:
        state = report.state
        if state is None:
            if report.errors:
                return f"Error generating report: {'; '.join(report.errors)}"
            return "Saga not found"
        completed = sum(1 for s in state.steps if s.status is SagaStepStatus.COMPLETED)
        lines = [
            f"Saga {state.saga_id} ({state.saga_type})",
            f"Status: {state.status.value}",
            f"Created: {state.created_at:%Y-%m-%d %H:%M:%S}",
        ]
        if state.duration is not None:
            lines.append(f"Duration: {state.duration}")
        else:
            lines.append(f"Running for: {now - state.created_at}")
        lines.append(f"Steps: {len(state.steps)} total, {completed} completed")
        if report.anomalies:
            lines.append(f"Anomalies: {len(report.anomalies)} detected")
        return "\n".join(lines)


def validate_state(state: SagaState) -> list[StateValidationIssue]:
    """Structural checks on a persisted document."""
    issues: list[StateValidationIssue] = []
    if not state.saga_type:
        issues.append(StateValidationIssue("saga_type", "saga_type cannot be empty"))
    if state.version <= 0:
        issues.append(StateValidationIssue("version", "version must be greater than 0"))
    if state.current_step and state.get_step(state.current_step) is None:
        issues.append(
            StateValidationIssue("current_step", f"current_step '{state.current_step}' is not a known step")
        )
    unstarted = [s.name for s in state.steps if s.status is SagaStepStatus.RUNNING and s.started_at is None]
    if unstarted:
        issues.append(
            StateValidationIssue("steps", f"Running steps must have started_at set: {', '.join(unstarted)}")
        )
    if state.is_terminal and state.completed_at is None:
        issues.append(StateValidationIssue("completed_at", f"{state.status.value} saga has no completed_at"))
    names = [s.name for s in state.steps]
    if len(names) != len(set(names)):
        issues.append(StateValidationIssue("steps", "step names must be unique"))
    return issues


def _ms(value: timedelta) -> float:
    return value.total_seconds() * 1000


__all__ = [
    "AnomalySeverity",
    "AnomalyType",
    "CompensationTrace",
    "DiagnosticStatus",
    "DiagnosticThresholds",
    "PersistenceDebugInfo",
    "SagaAnomaly",
    "SagaDebugInfo",
    "SagaDiagnosticReport",
    "SagaDiagnosticService",
    "SagaExecutionTrace",
    "StateValidationIssue",
    "StepTrace",
    "validate_state",
]
