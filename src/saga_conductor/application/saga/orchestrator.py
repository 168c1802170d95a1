"""Application saga – SagaOrchestrator."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any
from uuid import UUID

from saga_conductor.application.saga.context import ExecutionContext
from saga_conductor.application.saga.errors import (
    DuplicateRegistrationError,
    InvalidSagaTransitionError,
    SagaConcurrencyError,
    StepExecutionError,
    StepHandlerNotFoundError,
)
from saga_conductor.application.saga.events import SagaEvent, SagaEventBus, SagaEventPublisher, SagaEventType
from saga_conductor.application.saga.locking import SagaLockManager
from saga_conductor.application.saga.payload import payload_of
from saga_conductor.application.saga.state import (
    SagaCompensation,
    SagaState,
    SagaStatus,
    SagaStep,
    SagaStepStatus,
    TimeoutAction,
)
from saga_conductor.application.saga.step import SagaStepHandler, StepAction, StepResult
from saga_conductor.application.saga.store import SagaPersistence
from saga_conductor.kernel.errors import BaseError, SerializationError, ValidationError
from saga_conductor.kernel.time import Clock, SystemClock
from saga_conductor.observability.logging import get_logger
from saga_conductor.resilience.circuit_breaker import CircuitBreaker, CircuitOpenError
from saga_conductor.resilience.retry import RetryPolicy

logger = get_logger(__name__)

TIMEOUT_REASON = "Saga timed out"
CANCELLED_REASON = "Step execution was cancelled"


def _describe(exc: BaseException) -> str:
    if isinstance(exc, BaseError):
        return exc.message
    return str(exc) or type(exc).__name__


def _parse_timeout_action(value: str | None) -> TimeoutAction | None:
    if not value:
        return None
    for action in TimeoutAction:
        if action.value.lower() == value.strip().lower():
            return action
    return None


class SagaOrchestrator:
    """Drives sagas of one type through their steps.

    Each public operation serializes on the saga id, mutates the given
    :class:`SagaState` in place, saves it after every mutation and returns
    it.  Business outcomes (failure, compensation, abort, timeout) are
    reported through ``state.status``; only misuse and storage failures
    raise.

    Example::

        orchestrator = SagaOrchestrator(
            "OrderSaga",
            persistence=InMemorySagaPersistence(),
            handlers=[ReserveStock(), ChargeCard(), ShipOrder()],
        )
        state = SagaState(saga_type="OrderSaga", steps=[...])
        await orchestrator.start(state)
    """

    def __init__(
        self,
        saga_type: str,
        persistence: SagaPersistence,
        handlers: Iterable[SagaStepHandler],
        *,
        publisher: SagaEventPublisher | None = None,
        retry_policy: RetryPolicy | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        clock: Clock | None = None,
        locks: SagaLockManager | None = None,
    ) -> None:
        if not saga_type:
            raise ValidationError("saga_type must not be empty")
        self._saga_type = saga_type
        self._persistence = persistence
        self._handlers: dict[str, SagaStepHandler] = {}
        for handler in handlers:
            name = handler.step_name
            if not name:
                raise ValidationError(f"{type(handler).__name__} has an empty step_name")
            if name in self._handlers:
                raise DuplicateRegistrationError(
                    f"Step '{name}' already has a handler in saga type '{saga_type}'"
                )
            self._handlers[name] = handler
        self._publisher = publisher or SagaEventBus()
        self._retry_policy = retry_policy or RetryPolicy()
        self._circuit_breaker = circuit_breaker
        self._clock = clock or SystemClock()
        self._locks = locks or SagaLockManager()

    @property
    def saga_type(self) -> str:
        return self._saga_type

    @property
    def handlers(self) -> Mapping[str, SagaStepHandler]:
        return MappingProxyType(self._handlers)

    @property
    def persistence(self) -> SagaPersistence:
        return self._persistence

    @property
    def circuit_breaker(self) -> CircuitBreaker | None:
        return self._circuit_breaker

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def get_handler(self, step_name: str) -> SagaStepHandler:
        handler = self._handlers.get(step_name)
        if handler is None:
            raise StepHandlerNotFoundError(self._saga_type, step_name)
        return handler

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, state: SagaState, context: ExecutionContext | None = None) -> SagaState:
        """Mark the saga running, save it and execute its first step."""
        self._check_state(state)
        if state.correlation_id is None and context is not None:
            state.correlation_id = context.correlation_id
        ctx = context or ExecutionContext.for_saga(state)
        async with self._locks.hold(state.saga_id):
            state.transition_to(SagaStatus.RUNNING)
            now = self._clock.now()
            state.created_at = now
            state.touch(now)
            await self._save(state)
            self._log(state, ctx).info("saga.started", steps=len(state.steps))
            await self._publish(
                state,
                SagaEventType.STARTED,
                {
                    "step_count": len(state.steps),
                    "timeout_seconds": (
                        state.metadata.timeout.total_seconds() if state.metadata.timeout else None
                    ),
                    "timeout_action": state.metadata.timeout_action,
                },
            )
            first = state.next_pending_step()
            if first is not None:
                await self._drive(state, first, ctx)
        return state

    async def continue_at(
        self,
        state: SagaState,
        step_name: str,
        context: ExecutionContext | None = None,
    ) -> SagaState:
        """Execute *step_name* and whatever follows it."""
        self._check_state(state)
        self._check_step_name(step_name)
        ctx = context or ExecutionContext.for_saga(state)
        async with self._locks.hold(state.saga_id):
            if state.status is not SagaStatus.RUNNING:
                raise InvalidSagaTransitionError(
                    state.saga_id,
                    state.status,
                    SagaStatus.RUNNING,
                    f"Saga '{state.saga_id}' is {state.status.value}; only running sagas can continue",
                )
            await self._drive(state, step_name, ctx)
        return state

    async def compensate(self, state: SagaState, context: ExecutionContext | None = None) -> SagaState:
        """Undo completed steps in reverse completion order."""
        self._check_state(state)
        ctx = context or ExecutionContext.for_saga(state)
        async with self._locks.hold(state.saga_id):
            await self._compensate(state, ctx, reason="Compensation requested")
        return state

    async def abort(
        self,
        state: SagaState,
        reason: str,
        context: ExecutionContext | None = None,
    ) -> SagaState:
        self._check_state(state)
        self._check_reason(reason)
        ctx = context or ExecutionContext.for_saga(state)
        async with self._locks.hold(state.saga_id):
            await self._abort(state, reason, ctx)
        return state

    async def suspend(
        self,
        state: SagaState,
        reason: str,
        context: ExecutionContext | None = None,
    ) -> SagaState:
        self._check_state(state)
        self._check_reason(reason)
        ctx = context or ExecutionContext.for_saga(state)
        async with self._locks.hold(state.saga_id):
            await self._suspend(state, reason, ctx)
        return state

    async def resume(self, state: SagaState, context: ExecutionContext | None = None) -> SagaState:
        """Restart a suspended saga at its current step."""
        self._check_state(state)
        ctx = context or ExecutionContext.for_saga(state)
        async with self._locks.hold(state.saga_id):
            if state.status is not SagaStatus.SUSPENDED:
                raise InvalidSagaTransitionError(
                    state.saga_id,
                    state.status,
                    SagaStatus.RUNNING,
                    f"Saga '{state.saga_id}' is {state.status.value}; only suspended sagas can resume",
                )
            state.transition_to(SagaStatus.RUNNING)
            now = self._clock.now()
            state.merge_data({"resumed_at": now.isoformat()})
            state.touch(now)
            await self._save(state)
            self._log(state, ctx).info("saga.resumed")
            await self._publish(state, SagaEventType.RESUMED)
            target = self._resume_target(state) or await self._advance(state, ctx)
            if target is not None:
                await self._drive(state, target, ctx)
        return state

    async def handle_timeout(self, state: SagaState, context: ExecutionContext | None = None) -> SagaState:
        """Mark the saga timed out, then apply ``metadata.timeout_action``.

        Raises :class:`SagaConcurrencyError` when *state* no longer matches the
        stored document, e.g. because the saga finished while this call waited
        for its lock.
        """
        self._check_state(state)
        ctx = context or ExecutionContext.for_saga(state)
        async with self._locks.hold(state.saga_id):
            await self._check_current(state)
            state.transition_to(SagaStatus.TIMED_OUT)
            now = self._clock.now()
            state.completed_at = now
            state.touch(now)
            await self._save(state)
            action = _parse_timeout_action(state.metadata.timeout_action)
            self._log(state, ctx).warning(
                "saga.timed_out", timeout_action=action.value if action else None
            )
            await self._publish(
                state,
                SagaEventType.TIMED_OUT,
                {"timeout_action": state.metadata.timeout_action},
            )
            if action is TimeoutAction.COMPENSATE:
                await self._compensate(state, ctx, reason=TIMEOUT_REASON)
            elif action is TimeoutAction.ABORT:
                await self._abort(state, TIMEOUT_REASON, ctx)
        return state

    def is_busy(self, saga_id: UUID) -> bool:
        """Whether a call is currently driving *saga_id*."""
        return self._locks.is_locked(saga_id)

    def can_execute_step(self, state: SagaState, step_name: str) -> bool:
        """Whether *step_name* could run now; never mutates *state*."""
        self._check_state(state)
        self._check_step_name(step_name)
        if state.status is not SagaStatus.RUNNING:
            return False
        handler = self._handlers.get(step_name)
        return handler is not None and handler.can_execute(state)

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def _drive(self, state: SagaState, step_name: str, ctx: ExecutionContext) -> None:
        next_step: str | None = step_name
        while next_step is not None:
            next_step = await self._execute_step(state, next_step, ctx)

    async def _execute_step(self, state: SagaState, step_name: str, ctx: ExecutionContext) -> str | None:
        """Run one step; return the name of the step to run next, if any."""
        self._check_step_name(step_name)
        step = state.require_step(step_name)
        handler = self._handlers.get(step_name)
        log = self._log(state, ctx).bind(step=step_name)

        if handler is not None and not handler.can_execute(state):
            now = self._clock.now()
            state.current_step = step_name
            step.mark(SagaStepStatus.SKIPPED, now)
            state.touch(now)
            await self._save(state)
            log.info("saga.step_skipped")
            await self._publish(state, SagaEventType.STEP_COMPLETED, {"step_name": step_name, "skipped": True})
            return await self._advance(state, ctx)

        now = self._clock.now()
        state.current_step = step_name
        step.mark(SagaStepStatus.RUNNING, now)
        state.touch(now)
        await self._save(state)
        log.info("saga.step_started", attempt=step.retry_count + 1)
        await self._publish(state, SagaEventType.STEP_STARTED, {"step_name": step_name})

        if handler is None:
            error = StepHandlerNotFoundError(self._saga_type, step_name)
            log.error("saga.step_handler_missing")
            await self._fail(state, step, error.message, ctx)
            return None

        started = time.monotonic()
        try:
            result = await self._execute_with_retry(state, step, handler, ctx)
        except asyncio.CancelledError:
            await self._record_cancellation(state, step, ctx)
            raise
        duration_ms = (time.monotonic() - started) * 1000
        return await self._apply_result(state, step, result, duration_ms, ctx)

    async def _execute_with_retry(
        self,
        state: SagaState,
        step: SagaStep,
        handler: SagaStepHandler,
        ctx: ExecutionContext,
    ) -> StepResult:
        """Invoke *handler* until it stops failing or ``max_retries`` attempts are spent."""
        log = self._log(state, ctx).bind(step=step.name)
        last_error = "Step failed"
        while step.retry_count < step.max_retries:
            retry_delay = None
            try:
                result = await self._invoke(handler, state, ctx)
            except CircuitOpenError as exc:
                log.warning("saga.step_rejected", circuit=exc.circuit_name)
                return StepResult.failure(exc.message, should_retry=False)
            except Exception as exc:  # noqa: BLE001
                last_error = _describe(exc)
                log.warning(
                    "saga.step_attempt_raised",
                    attempt=step.retry_count + 1,
                    error=last_error,
                    exc_type=type(exc).__name__,
                )
            else:
                if not result.is_failure:
                    return result
                last_error = result.error_message or last_error
                if not result.should_retry:
                    return result
                retry_delay = result.retry_delay
                log.warning("saga.step_attempt_failed", attempt=step.retry_count + 1, error=last_error)

            now = self._clock.now()
            step.retry_count += 1
            step.error_message = last_error
            state.touch(now)
            await self._save(state)
            if step.retry_count < step.max_retries:
                delay = (
                    retry_delay.total_seconds()
                    if retry_delay is not None
                    else self._retry_policy.compute_delay(step.retry_count)
                )
                await asyncio.sleep(delay)

        error = StepExecutionError(
            step.name,
            f"Step '{step.name}' failed after {step.retry_count} attempt(s): {last_error}",
            attempts=step.retry_count,
        )
        log.warning("saga.step_exhausted", attempts=error.attempts, code=error.code)
        return StepResult.failure(error.message, should_retry=False)

    async def _invoke(self, handler: SagaStepHandler, state: SagaState, ctx: ExecutionContext) -> StepResult:
        async def call() -> StepResult:
            result = await handler.execute(state, ctx)
            if not isinstance(result, StepResult):
                raise TypeError(
                    f"{type(handler).__name__}.execute returned {type(result).__name__}, expected StepResult"
                )
            return result

        if self._circuit_breaker is None:
            return await call()
        return await self._circuit_breaker.call(call, is_failure=lambda r: r.is_failure)

    async def _apply_result(
        self,
        state: SagaState,
        step: SagaStep,
        result: StepResult,
        duration_ms: float,
        ctx: ExecutionContext,
    ) -> str | None:
        if result.is_failure:
            await self._fail(state, step, result.error_message or "Step failed", ctx)
            return None

        action = result.action
        if action in (StepAction.CONTINUE, StepAction.COMPLETE):
            try:
                output = None if result.output is None else payload_of(result.output)
                data = {key: payload_of(value) for key, value in result.data.items()}
            except SerializationError as exc:
                await self._fail(state, step, exc.message, ctx)
                return None
            now = self._clock.now()
            step.output = output
            step.error_message = None
            step.mark(SagaStepStatus.COMPLETED, now)
            state.data.update(data)
            state.touch(now)
            await self._save(state)
            self._log(state, ctx).info("saga.step_completed", step=step.name, duration_ms=round(duration_ms, 3))
            await self._publish(
                state,
                SagaEventType.STEP_COMPLETED,
                {"step_name": step.name, "duration_ms": duration_ms},
            )
            if action is StepAction.COMPLETE:
                await self._complete(state, ctx)
                return None
            if result.next_step:
                return result.next_step
            return await self._advance(state, ctx)

        reason = result.error_message or f"{action.value} requested by step '{step.name}'"
        if action is StepAction.COMPENSATE:
            now = self._clock.now()
            step.error_message = reason
            step.mark(SagaStepStatus.FAILED, now)
            state.touch(now)
            await self._save(state)
            await self._publish(state, SagaEventType.STEP_FAILED, {"step_name": step.name, "error": reason})
            await self._compensate(state, ctx, reason=reason)
        elif action is StepAction.SUSPEND:
            await self._suspend(state, reason, ctx, step=step)
        elif action is StepAction.ABORT:
            await self._abort(state, reason, ctx, step=step)
        elif action is StepAction.RETRY:
            return await self._schedule_retry(state, step, result, ctx)
        return None

    async def _schedule_retry(
        self,
        state: SagaState,
        step: SagaStep,
        result: StepResult,
        ctx: ExecutionContext,
    ) -> str | None:
        now = self._clock.now()
        step.retry_count += 1
        if step.retry_count >= step.max_retries:
            await self._fail(
                state,
                step,
                f"Step '{step.name}' requested a retry after {step.retry_count} attempt(s); limit reached",
                ctx,
            )
            return None
        if result.error_message:
            step.error_message = result.error_message
        state.touch(now)
        await self._save(state)
        delay = (
            result.retry_delay.total_seconds()
            if result.retry_delay is not None
            else self._retry_policy.compute_delay(step.retry_count)
        )
        self._log(state, ctx).info("saga.step_retry_scheduled", step=step.name, delay=delay)
        await asyncio.sleep(delay)
        return step.name

    async def _advance(self, state: SagaState, ctx: ExecutionContext) -> str | None:
        """Next pending step in declared order; completes the saga once every step is done."""
        next_step = state.next_pending_step()
        if next_step is None and state.all_steps_finished():
            await self._complete(state, ctx)
        return next_step

    def _resume_target(self, state: SagaState) -> str | None:
        step = state.get_step(state.current_step) if state.current_step else None
        if step is not None and step.status in (SagaStepStatus.PENDING, SagaStepStatus.RUNNING):
            return step.name
        return state.next_pending_step()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _complete(self, state: SagaState, ctx: ExecutionContext) -> None:
        state.transition_to(SagaStatus.COMPLETED)
        now = self._clock.now()
        state.completed_at = now
        state.touch(now)
        await self._save(state)
        duration = state.duration
        self._log(state, ctx).info("saga.completed")
        await self._publish(
            state,
            SagaEventType.COMPLETED,
            {"duration_ms": duration.total_seconds() * 1000 if duration else None},
        )

    async def _fail(self, state: SagaState, step: SagaStep, error: str, ctx: ExecutionContext) -> None:
        state.transition_to(SagaStatus.FAILED)
        now = self._clock.now()
        step.error_message = error
        step.mark(SagaStepStatus.FAILED, now)
        state.completed_at = now
        state.touch(now)
        await self._save(state)
        self._log(state, ctx).error("saga.failed", step=step.name, error=error)
        await self._publish(
            state,
            SagaEventType.STEP_FAILED,
            {"step_name": step.name, "error": error, "retry_count": step.retry_count},
        )
        await self._publish(state, SagaEventType.FAILED, {"step_name": step.name, "error": error})
        if state.can_compensate():
            await self._compensate(state, ctx, reason=error)

    async def _compensate(self, state: SagaState, ctx: ExecutionContext, *, reason: str) -> None:
        state.transition_to(SagaStatus.COMPENSATING)
        now = self._clock.now()
        state.touch(now)
        await self._save(state)
        log = self._log(state, ctx)
        log.info("saga.compensating", reason=reason)
        await self._publish(state, SagaEventType.COMPENSATING, {"reason": reason})

        compensated = failed = 0
        for step in state.get_compensable_steps():
            handler = self._handlers.get(step.name)
            if handler is None or not handler.can_compensate(state):
                log.warning("saga.compensation_skipped", step=step.name, handler_missing=handler is None)
                continue
            if await self._compensate_step(state, step, handler, ctx):
                compensated += 1
            else:
                failed += 1

        state.transition_to(SagaStatus.COMPENSATED)
        now = self._clock.now()
        state.completed_at = now
        state.touch(now)
        await self._save(state)
        log.info("saga.compensated", compensated=compensated, failed=failed)
        await self._publish(
            state,
            SagaEventType.COMPENSATED,
            {"compensated_steps": compensated, "failed_compensations": failed},
        )

    async def _compensate_step(
        self,
        state: SagaState,
        step: SagaStep,
        handler: SagaStepHandler,
        ctx: ExecutionContext,
    ) -> bool:
        now = self._clock.now()
        step.mark(SagaStepStatus.COMPENSATING, now)
        state.touch(now)
        await self._save(state)

        record = SagaCompensation(
            step_name=step.name,
            action=step.compensation_action or type(handler).__name__,
            input=step.output,
        )
        output = None
        try:
            result = await handler.compensate(state, ctx)
        except Exception as exc:  # noqa: BLE001
            succeeded, error = False, _describe(exc)
        else:
            succeeded = isinstance(result, StepResult) and result.is_success
            error = None if succeeded else (getattr(result, "error_message", None) or "Compensation failed")
            if isinstance(result, StepResult) and result.output is not None:
                try:
                    output = payload_of(result.output)
                except SerializationError as exc:
                    succeeded, error = False, exc.message

        now = self._clock.now()
        status = SagaStepStatus.COMPENSATED if succeeded else SagaStepStatus.COMPENSATION_FAILED
        record.status = status
        record.executed_at = now
        record.error_message = error
        record.output = output
        step.mark(status, now)
        if error is not None:
            step.error_message = error
            self._log(state, ctx).error("saga.compensation_failed", step=step.name, error=error)
        state.compensations.append(record)
        state.touch(now)
        await self._save(state)
        return succeeded

    async def _abort(
        self,
        state: SagaState,
        reason: str,
        ctx: ExecutionContext,
        *,
        step: SagaStep | None = None,
    ) -> None:
        state.transition_to(SagaStatus.ABORTED)
        now = self._clock.now()
        state.merge_data({"abort_reason": reason})
        state.completed_at = now
        if step is not None:
            step.error_message = reason
            step.mark(SagaStepStatus.FAILED, now)
        state.touch(now)
        await self._save(state)
        self._log(state, ctx).warning("saga.aborted", reason=reason)
        await self._publish(state, SagaEventType.ABORTED, {"reason": reason})

    async def _suspend(
        self,
        state: SagaState,
        reason: str,
        ctx: ExecutionContext,
        *,
        step: SagaStep | None = None,
    ) -> None:
        state.transition_to(SagaStatus.SUSPENDED)
        now = self._clock.now()
        state.merge_data({"suspend_reason": reason, "suspended_at": now.isoformat()})
        if step is not None:
            step.mark(SagaStepStatus.PENDING, now)
        state.touch(now)
        await self._save(state)
        self._log(state, ctx).info("saga.suspended", reason=reason)
        await self._publish(state, SagaEventType.SUSPENDED, {"reason": reason})

    async def _record_cancellation(self, state: SagaState, step: SagaStep, ctx: ExecutionContext) -> None:
        """Fail the saga without running compensation handlers.

        The cancelled task must not start more handler work; completed steps
        stay compensable and the caller can still invoke :meth:`compensate`.
        """
        error = CANCELLED_REASON
        now = self._clock.now()
        step.error_message = error
        step.mark(SagaStepStatus.FAILED, now)
        failed = state.status is SagaStatus.RUNNING
        if failed:
            state.transition_to(SagaStatus.FAILED)
            state.completed_at = now
        state.touch(now)
        await self._save(state)
        self._log(state, ctx).warning("saga.step_cancelled", step=step.name)
        await self._publish(
            state,
            SagaEventType.STEP_FAILED,
            {"step_name": step.name, "error": error, "retry_count": step.retry_count, "cancelled": True},
        )
        if failed:
            await self._publish(
                state,
                SagaEventType.FAILED,
                {"step_name": step.name, "error": error, "cancelled": True},
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_state(self, state: SagaState) -> None:
        if state is None:
            raise ValidationError("A saga state is required")
        if state.saga_type != self._saga_type:
            raise ValidationError(
                f"Orchestrator for '{self._saga_type}' cannot drive saga type '{state.saga_type}'",
                errors=[{"field": "saga_type", "value": state.saga_type}],
            )

    @staticmethod
    def _check_step_name(step_name: str) -> None:
        if not step_name:
            raise ValidationError(
                "step_name must not be empty",
                errors=[{"field": "step_name", "message": "required"}],
            )

    @staticmethod
    def _check_reason(reason: str) -> None:
        if not reason:
            raise ValidationError("reason must not be empty", errors=[{"field": "reason", "message": "required"}])

    async def _save(self, state: SagaState) -> None:
        await self._persistence.save(state)

    async def _check_current(self, state: SagaState) -> None:
        stored = await self._persistence.get(state.saga_id)
        if stored is None:
            return
        if stored.version != state.version or stored.status is not state.status:
            raise SagaConcurrencyError(state.saga_id, stored.version, state.version)

    async def _publish(
        self,
        state: SagaState,
        event_type: SagaEventType,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = SagaEvent.from_state(state, event_type, data, timestamp=self._clock.now())
        try:
            await self._publisher.publish(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "saga.publish_failed",
                saga_id=str(state.saga_id),
                event_type=event_type.value,
                error=str(exc),
            )

    def _log(self, state: SagaState, ctx: ExecutionContext) -> Any:
        return logger.bind(saga_id=str(state.saga_id), saga_type=state.saga_type, **ctx.log_fields())

    def __repr__(self) -> str:
        return f"SagaOrchestrator(saga_type={self._saga_type!r}, steps={sorted(self._handlers)!r})"


__all__ = ["SagaOrchestrator"]
