"""Application — saga orchestration engine."""

from saga_conductor.application.saga.context import ExecutionContext
from saga_conductor.application.saga.diagnostics import (
    AnomalySeverity,
    AnomalyType,
    DiagnosticStatus,
    DiagnosticThresholds,
    SagaAnomaly,
    SagaDebugInfo,
    SagaDiagnosticReport,
    SagaDiagnosticService,
    SagaExecutionTrace,
    validate_state,
)
from saga_conductor.application.saga.errors import (
    DuplicateRegistrationError,
    InvalidSagaTransitionError,
    SagaConcurrencyError,
    SagaNotFoundError,
    SagaPersistenceError,
    SagaStepNotFoundError,
    SagaTypeNotRegisteredError,
    StepExecutionError,
    StepHandlerNotFoundError,
)
from saga_conductor.application.saga.events import (
    FINISHING_EVENT_TYPES,
    LoggingSagaEventPublisher,
    SagaEvent,
    SagaEventBus,
    SagaEventPublisher,
    SagaEventType,
)
from saga_conductor.application.saga.export import ExportFormat, export_state
from saga_conductor.application.saga.health import PersistenceHealthCheck
from saga_conductor.application.saga.locking import SagaLockManager
from saga_conductor.application.saga.monitor import (
    HealthVerdict,
    SagaHealthReport,
    SagaMonitor,
    SagaMonitorOptions,
    SagaPerformanceMetrics,
)
from saga_conductor.application.saga.orchestrator import SagaOrchestrator
from saga_conductor.application.saga.payload import BinaryPayload, Payload, TextPayload, decode_payload, payload_of
from saga_conductor.application.saga.registry import SagaRegistration, SagaRegistry
from saga_conductor.application.saga.state import (
    SagaCompensation,
    SagaMetadata,
    SagaState,
    SagaStatus,
    SagaStep,
    SagaStepStatus,
    TimeoutAction,
    can_transition,
)
from saga_conductor.application.saga.step import SagaStepHandler, StepAction, StepResult
from saga_conductor.application.saga.store import InMemorySagaPersistence, SagaPersistence, SagaStatistics
from saga_conductor.application.saga.timeouts import SagaTimeoutManager
from saga_conductor.application.saga.worker import PeriodicWorker

__all__ = [
    "FINISHING_EVENT_TYPES",
    "AnomalySeverity",
    "AnomalyType",
    "BinaryPayload",
    "DiagnosticStatus",
    "DiagnosticThresholds",
    "DuplicateRegistrationError",
    "ExecutionContext",
    "ExportFormat",
    "HealthVerdict",
    "InMemorySagaPersistence",
    "InvalidSagaTransitionError",
    "LoggingSagaEventPublisher",
    "Payload",
    "PeriodicWorker",
    "PersistenceHealthCheck",
    "SagaAnomaly",
    "SagaCompensation",
    "SagaConcurrencyError",
    "SagaDebugInfo",
    "SagaDiagnosticReport",
    "SagaDiagnosticService",
    "SagaEvent",
    "SagaEventBus",
    "SagaEventPublisher",
    "SagaEventType",
    "SagaExecutionTrace",
    "SagaHealthReport",
    "SagaLockManager",
    "SagaMetadata",
    "SagaMonitor",
    "SagaMonitorOptions",
    "SagaNotFoundError",
    "SagaOrchestrator",
    "SagaPerformanceMetrics",
    "SagaPersistence",
    "SagaPersistenceError",
    "SagaRegistration",
    "SagaRegistry",
    "SagaState",
    "SagaStatistics",
    "SagaStatus",
    "SagaStep",
    "SagaStepHandler",
    "SagaStepNotFoundError",
    "SagaStepStatus",
    "SagaTimeoutManager",
    "SagaTypeNotRegisteredError",
    "StepAction",
    "StepExecutionError",
    "StepHandlerNotFoundError",
    "StepResult",
    "TextPayload",
    "TimeoutAction",
    "can_transition",
    "decode_payload",
    "export_state",
    "payload_of",
    "validate_state",
]
