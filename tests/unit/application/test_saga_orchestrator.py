"""Unit tests for SagaOrchestrator."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from saga_conductor.application.saga import (
    DuplicateRegistrationError,
    ExecutionContext,
    InMemorySagaPersistence,
    InvalidSagaTransitionError,
    SagaConcurrencyError,
    SagaEventBus,
    SagaEventType,
    SagaMetadata,
    SagaMonitor,
    SagaOrchestrator,
    SagaState,
    SagaStatus,
    SagaStep,
    SagaStepNotFoundError,
    SagaStepStatus,
    StepResult,
)
from saga_conductor.kernel.errors import ValidationError
from saga_conductor.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerPolicy
from saga_conductor.resilience.retry import RetryPolicy
from saga_conductor.testing import FakeClock, RecordingEventPublisher, ScriptedStepHandler

SAGA_TYPE = "OrderSaga"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class CountingPersistence(InMemorySagaPersistence):
    def __init__(self) -> None:
        super().__init__()
        self.saves = 0

    async def save(self, state: SagaState) -> None:
        self.saves += 1
        await super().save(state)


class Harness:
    def __init__(
        self,
        *handlers: ScriptedStepHandler,
        circuit_breaker: CircuitBreaker | None = None,
        publisher: RecordingEventPublisher | None = None,
    ) -> None:
        self.clock = FakeClock()
        self.persistence = CountingPersistence()
        self.publisher = publisher or RecordingEventPublisher()
        self.orchestrator = SagaOrchestrator(
            SAGA_TYPE,
            self.persistence,
            handlers,
            publisher=self.publisher,
            retry_policy=RetryPolicy.immediate(),
            circuit_breaker=circuit_breaker,
            clock=self.clock,
        )

    @staticmethod
    def new_saga(*steps: str, status: SagaStatus = SagaStatus.NOT_STARTED, **kwargs) -> SagaState:
        return SagaState(
            saga_type=SAGA_TYPE,
            status=status,
            steps=[SagaStep(name=s) for s in steps],
            **kwargs,
        )


def _statuses(state: SagaState) -> dict[str, SagaStepStatus]:
    return {s.name: s.status for s in state.steps}


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_duplicate_handler_rejected(self) -> None:
        with pytest.raises(DuplicateRegistrationError):
            SagaOrchestrator(
                SAGA_TYPE,
                InMemorySagaPersistence(),
                [ScriptedStepHandler("a"), ScriptedStepHandler("a")],
            )

    def test_empty_saga_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SagaOrchestrator("", InMemorySagaPersistence(), [])

    def test_empty_step_name_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SagaOrchestrator(SAGA_TYPE, InMemorySagaPersistence(), [ScriptedStepHandler("")])

    def test_handlers_view(self) -> None:
        harness = Harness(ScriptedStepHandler("a"), ScriptedStepHandler("b"))
        assert list(harness.orchestrator.handlers) == ["a", "b"]


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------


class TestStart:
    def test_runs_all_steps_to_completion(self) -> None:
        a, b = ScriptedStepHandler("a"), ScriptedStepHandler("b")
        harness = Harness(a, b)
        state = harness.new_saga("a", "b")

        result = asyncio.run(harness.orchestrator.start(state))

        assert result is state
        assert state.status is SagaStatus.COMPLETED
        assert _statuses(state) == {"a": SagaStepStatus.COMPLETED, "b": SagaStepStatus.COMPLETED}
        assert state.completed_at == harness.clock.now()
        assert state.current_step == "b"
        assert (a.execute_calls, b.execute_calls) == (1, 1)
        assert harness.publisher.types == [
            SagaEventType.STARTED,
            SagaEventType.STEP_STARTED,
            SagaEventType.STEP_COMPLETED,
            SagaEventType.STEP_STARTED,
            SagaEventType.STEP_COMPLETED,
            SagaEventType.COMPLETED,
        ]

    def test_version_counts_saves(self) -> None:
        harness = Harness(ScriptedStepHandler("a"), ScriptedStepHandler("b"))
        state = harness.new_saga("a", "b")
        asyncio.run(harness.orchestrator.start(state))
        assert state.version == harness.persistence.saves

    def test_persisted_copy_matches(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert asyncio.run(harness.persistence.get(state.saga_id)) == state

    def test_started_event_carries_timeout(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga(
            "a", metadata=SagaMetadata(timeout=timedelta(minutes=5), timeout_action="Abort")
        )
        asyncio.run(harness.orchestrator.start(state))
        started = harness.publisher.of_type(SagaEventType.STARTED)[0]
        assert started.data == {"step_count": 1, "timeout_seconds": 300.0, "timeout_action": "Abort"}
        assert started.timestamp == state.created_at == harness.clock.now()

    def test_step_output_and_data_recorded(self) -> None:
        harness = Harness(
            ScriptedStepHandler("a", [StepResult.success(output={"id": 9}, data={"reservation": "r-1"})])
        )
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert state.steps[0].output.decode() == {"id": 9}  # type: ignore[union-attr]
        assert state.get_data("reservation") == "r-1"

    def test_context_correlation_id_adopted(self) -> None:
        a = ScriptedStepHandler("a")
        harness = Harness(a)
        state = harness.new_saga("a")
        ctx = ExecutionContext(correlation_id="order-77", initiated_by="alice")
        asyncio.run(harness.orchestrator.start(state, ctx))
        assert state.correlation_id == "order-77"
        assert a.contexts[0] is ctx
        assert all(e.correlation_id == "order-77" for e in harness.publisher.events)

    def test_start_twice_rejected(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        with pytest.raises(InvalidSagaTransitionError):
            asyncio.run(harness.orchestrator.start(state))

    def test_wrong_saga_type_rejected(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        with pytest.raises(ValidationError):
            asyncio.run(harness.orchestrator.start(SagaState(saga_type="InvoiceSaga")))

    def test_no_steps_stays_running(self) -> None:
        harness = Harness()
        state = harness.new_saga()
        asyncio.run(harness.orchestrator.start(state))
        assert state.status is SagaStatus.RUNNING
        assert state.version == 1

    def test_publisher_failure_does_not_interrupt(self) -> None:
        harness = Harness(
            ScriptedStepHandler("a"), publisher=RecordingEventPublisher(fail_with=RuntimeError("broker down"))
        )
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert state.status is SagaStatus.COMPLETED


# ---------------------------------------------------------------------------
# Retries and failure
# ---------------------------------------------------------------------------


class TestRetries:
    def test_transient_errors_retried(self) -> None:
        a = ScriptedStepHandler("a", [RuntimeError("timeout"), RuntimeError("timeout"), StepResult.success()])
        harness = Harness(a)
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert state.status is SagaStatus.COMPLETED
        assert a.execute_calls == 3
        assert state.steps[0].retry_count == 2
        assert state.steps[0].error_message is None

    def test_exhausted_attempts_fail_saga(self) -> None:
        a = ScriptedStepHandler("a", [StepResult.failure("card declined")])
        harness = Harness(a)
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))

        assert a.execute_calls == 3
        assert state.status is SagaStatus.FAILED
        assert state.completed_at is not None
        step = state.steps[0]
        assert step.status is SagaStepStatus.FAILED
        assert step.retry_count == 3
        assert "card declined" in (step.error_message or "")
        failed = harness.publisher.of_type(SagaEventType.STEP_FAILED)[0]
        assert failed.data["retry_count"] == 3

    def test_step_max_retries_respected(self) -> None:
        a = ScriptedStepHandler("a", [RuntimeError("boom")])
        harness = Harness(a)
        state = SagaState(saga_type=SAGA_TYPE, steps=[SagaStep(name="a", max_retries=5)])
        asyncio.run(harness.orchestrator.start(state))
        assert a.execute_calls == 5

    def test_non_retryable_failure_single_attempt(self) -> None:
        a = ScriptedStepHandler("a", [StepResult.failure("invalid address", should_retry=False)])
        harness = Harness(a)
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert a.execute_calls == 1
        assert state.status is SagaStatus.FAILED
        assert state.steps[0].error_message == "invalid address"

    def test_wrong_return_type_counts_as_failed_attempt(self) -> None:
        a = ScriptedStepHandler("a", ["done"])  # type: ignore[list-item]
        harness = Harness(a)
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert a.execute_calls == 3
        assert state.status is SagaStatus.FAILED

    def test_retry_action_reruns_step(self) -> None:
        a = ScriptedStepHandler("a", [StepResult.retry(reason="not ready"), StepResult.success()])
        harness = Harness(a)
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert a.execute_calls == 2
        assert state.steps[0].retry_count == 1
        assert state.status is SagaStatus.COMPLETED

    def test_retry_action_limit(self) -> None:
        a = ScriptedStepHandler("a", [StepResult.retry()])
        harness = Harness(a)
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        assert a.execute_calls == 3
        assert state.status is SagaStatus.FAILED

    def test_failure_compensates_completed_steps(self) -> None:
        a = ScriptedStepHandler("a")
        b = ScriptedStepHandler("b", [StepResult.failure("payment rejected")])
        harness = Harness(a, b)
        state = harness.new_saga("a", "b")
        asyncio.run(harness.orchestrator.start(state))

        assert state.status is SagaStatus.COMPENSATED
        assert b.execute_calls == 3
        assert (a.compensate_calls, b.compensate_calls) == (1, 0)
        assert [c.step_name for c in state.compensations] == ["a"]
        assert state.compensations[0].status is SagaStepStatus.COMPENSATED
        assert _statuses(state) == {"a": SagaStepStatus.COMPENSATED, "b": SagaStepStatus.FAILED}
        types = harness.publisher.types
        assert types.index(SagaEventType.FAILED) < types.index(SagaEventType.COMPENSATING)
        compensated = harness.publisher.of_type(SagaEventType.COMPENSATED)[0]
        assert compensated.data == {"compensated_steps": 1, "failed_compensations": 0}
        assert state.version == harness.persistence.saves

    def test_missing_handler_fails_step(self) -> None:
        a = ScriptedStepHandler("a")
        harness = Harness(a)
        state = harness.new_saga("a", "b")
        asyncio.run(harness.orchestrator.start(state))
        assert state.status is SagaStatus.COMPENSATED
        assert state.require_step("b").error_message == "Step handler 'b' not found"
        assert a.compensate_calls == 1

    def test_open_circuit_fails_without_calling_handler(self) -> None:
        breaker = CircuitBreaker(SAGA_TYPE, CircuitBreakerPolicy(failure_threshold=3, timeout_seconds=600))
        a = ScriptedStepHandler("a", [RuntimeError("inventory down")])
        harness = Harness(a, circuit_breaker=breaker)

        asyncio.run(harness.orchestrator.start(harness.new_saga("a")))
        assert a.execute_calls == 3

        second = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(second))
        assert a.execute_calls == 3
        assert second.status is SagaStatus.FAILED
        assert "OPEN" in (second.steps[0].error_message or "")


# ---------------------------------------------------------------------------
# Step outcomes
# ---------------------------------------------------------------------------


class TestStepOutcomes:
    def test_skipped_when_handler_declines(self) -> None:
        a = ScriptedStepHandler("a", can_execute=False)
        harness = Harness(a, ScriptedStepHandler("b"))
        state = harness.new_saga("a", "b")
        asyncio.run(harness.orchestrator.start(state))
        assert a.execute_calls == 0
        assert state.require_step("a").status is SagaStepStatus.SKIPPED
        assert state.status is SagaStatus.COMPLETED
        skipped = harness.publisher.of_type(SagaEventType.STEP_COMPLETED)[0]
        assert skipped.data == {"step_name": "a", "skipped": True}

    def test_next_step_jump(self) -> None:
        harness = Harness(
            ScriptedStepHandler("a", [StepResult.success(next_step="c")]),
            ScriptedStepHandler("b"),
            ScriptedStepHandler("c"),
        )
        state = harness.new_saga("a", "b", "c")
        asyncio.run(harness.orchestrator.start(state))
        started = [e.data["step_name"] for e in harness.publisher.of_type(SagaEventType.STEP_STARTED)]
        assert started == ["a", "c", "b"]
        assert state.status is SagaStatus.COMPLETED

    def test_complete_finishes_early(self) -> None:
        b = ScriptedStepHandler("b")
        harness = Harness(ScriptedStepHandler("a", [StepResult.complete()]), b)
        state = harness.new_saga("a", "b")
        asyncio.run(harness.orchestrator.start(state))
        assert state.status is SagaStatus.COMPLETED
        assert b.execute_calls == 0
        assert state.require_step("b").status is SagaStepStatus.PENDING

    def test_compensate_action(self) -> None:
        a = ScriptedStepHandler("a")
        b = ScriptedStepHandler("b", [StepResult.compensate("out of stock")])
        harness = Harness(a, b)
        state = harness.new_saga("a", "b")
        asyncio.run(harness.orchestrator.start(state))
        assert b.execute_calls == 1
        assert state.status is SagaStatus.COMPENSATED
        assert state.require_step("b").error_message == "out of stock"
        assert a.compensate_calls == 1
        compensating = harness.publisher.of_type(SagaEventType.COMPENSATING)[0]
        assert compensating.data == {"reason": "out of stock"}

    def test_abort_action_skips_compensation(self) -> None:
        a = ScriptedStepHandler("a")
        harness = Harness(a, ScriptedStepHandler("b", [StepResult.abort("fraud suspected")]))
        state = harness.new_saga("a", "b")
        asyncio.run(harness.orchestrator.start(state))
        assert state.status is SagaStatus.ABORTED
        assert state.get_data("abort_reason") == "fraud suspected"
        assert a.compensate_calls == 0
        assert state.completed_at is not None

    def test_suspend_and_resume(self) -> None:
        b = ScriptedStepHandler("b", [StepResult.suspend("awaiting approval"), StepResult.success()])
        harness = Harness(ScriptedStepHandler("a"), b, ScriptedStepHandler("c"))
        state = harness.new_saga("a", "b", "c")

        asyncio.run(harness.orchestrator.start(state))
        assert state.status is SagaStatus.SUSPENDED
        assert state.get_data("suspend_reason") == "awaiting approval"
        assert state.require_step("b").status is SagaStepStatus.PENDING

        asyncio.run(harness.orchestrator.resume(state))
        assert state.status is SagaStatus.COMPLETED
        assert b.execute_calls == 2
        assert SagaEventType.RESUMED in harness.publisher.types
        assert state.get_data("resumed_at") is not None
        assert state.version == harness.persistence.saves


# ---------------------------------------------------------------------------
# Caller operations
# ---------------------------------------------------------------------------


class TestCallerOperations:
    def test_continue_at(self) -> None:
        b = ScriptedStepHandler("b")
        harness = Harness(ScriptedStepHandler("a"), b)
        state = harness.new_saga("a", "b", status=SagaStatus.RUNNING)
        state.require_step("a").status = SagaStepStatus.COMPLETED
        asyncio.run(harness.orchestrator.continue_at(state, "b"))
        assert b.execute_calls == 1
        assert state.status is SagaStatus.COMPLETED

    def test_continue_at_requires_running(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a", status=SagaStatus.SUSPENDED)
        with pytest.raises(InvalidSagaTransitionError):
            asyncio.run(harness.orchestrator.continue_at(state, "a"))

    def test_continue_at_validates_step(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a", status=SagaStatus.RUNNING)
        with pytest.raises(ValidationError):
            asyncio.run(harness.orchestrator.continue_at(state, ""))
        with pytest.raises(SagaStepNotFoundError):
            asyncio.run(harness.orchestrator.continue_at(state, "zzz"))

    def test_suspend_running_saga(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a", status=SagaStatus.RUNNING)
        asyncio.run(harness.orchestrator.suspend(state, "maintenance window"))
        assert state.status is SagaStatus.SUSPENDED
        assert harness.publisher.of_type(SagaEventType.SUSPENDED)[0].data == {"reason": "maintenance window"}

    def test_suspend_requires_reason(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        with pytest.raises(ValidationError):
            asyncio.run(harness.orchestrator.suspend(harness.new_saga("a", status=SagaStatus.RUNNING), ""))

    def test_resume_requires_suspended(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a", status=SagaStatus.RUNNING)
        with pytest.raises(InvalidSagaTransitionError):
            asyncio.run(harness.orchestrator.resume(state))

    def test_abort_suspended_saga(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a", status=SagaStatus.SUSPENDED)
        asyncio.run(harness.orchestrator.abort(state, "cancelled by customer"))
        assert state.status is SagaStatus.ABORTED
        assert state.get_data("abort_reason") == "cancelled by customer"

    def test_abort_completed_saga_rejected(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = harness.new_saga("a")
        asyncio.run(harness.orchestrator.start(state))
        with pytest.raises(InvalidSagaTransitionError):
            asyncio.run(harness.orchestrator.abort(state, "too late"))

    def test_compensate_running_saga(self) -> None:
        a, b = ScriptedStepHandler("a"), ScriptedStepHandler("b")
        harness = Harness(a, b)
        clock = harness.clock
        state = harness.new_saga("a", "b", status=SagaStatus.RUNNING)
        for name in ("a", "b"):
            clock.advance(seconds=1)
            state.require_step(name).mark(SagaStepStatus.COMPLETED, clock.now())

        asyncio.run(harness.orchestrator.compensate(state))

        assert state.status is SagaStatus.COMPENSATED
        assert [c.step_name for c in state.compensations] == ["b", "a"]

    def test_failed_compensation_recorded(self) -> None:
        a = ScriptedStepHandler("a", compensation=[RuntimeError("refund api down")])
        harness = Harness(a)
        state = harness.new_saga("a", status=SagaStatus.RUNNING)
        state.require_step("a").mark(SagaStepStatus.COMPLETED, harness.clock.now())

        asyncio.run(harness.orchestrator.compensate(state))

        assert state.status is SagaStatus.COMPENSATED
        record = state.compensations[0]
        assert record.status is SagaStepStatus.COMPENSATION_FAILED
        assert record.error_message == "refund api down"
        assert state.require_step("a").status is SagaStepStatus.COMPENSATION_FAILED
        compensated = harness.publisher.of_type(SagaEventType.COMPENSATED)[0]
        assert compensated.data == {"compensated_steps": 0, "failed_compensations": 1}

    def test_compensation_skipped_when_declined(self) -> None:
        a = ScriptedStepHandler("a", can_compensate=False)
        harness = Harness(a)
        state = harness.new_saga("a", status=SagaStatus.RUNNING)
        state.require_step("a").mark(SagaStepStatus.COMPLETED, harness.clock.now())
        asyncio.run(harness.orchestrator.compensate(state))
        assert a.compensate_calls == 0
        assert state.compensations == []
        assert state.status is SagaStatus.COMPENSATED


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class TestHandleTimeout:
    def _timed(self, harness: Harness, action: str | None, status: SagaStatus = SagaStatus.RUNNING) -> SagaState:
        state = harness.new_saga(
            "a",
            status=status,
            metadata=SagaMetadata(timeout=timedelta(minutes=1), timeout_action=action),
        )
        state.require_step("a").mark(SagaStepStatus.COMPLETED, harness.clock.now())
        return state

    def test_compensate_action(self) -> None:
        a = ScriptedStepHandler("a")
        harness = Harness(a)
        state = self._timed(harness, "compensate")
        asyncio.run(harness.orchestrator.handle_timeout(state))
        assert state.status is SagaStatus.COMPENSATED
        assert a.compensate_calls == 1
        types = harness.publisher.types
        assert types.index(SagaEventType.TIMED_OUT) < types.index(SagaEventType.COMPENSATED)

    def test_abort_action(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = self._timed(harness, "Abort", status=SagaStatus.SUSPENDED)
        asyncio.run(harness.orchestrator.handle_timeout(state))
        assert state.status is SagaStatus.ABORTED
        assert state.get_data("abort_reason") == "Saga timed out"

    def test_no_action_stays_timed_out(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = self._timed(harness, None)
        asyncio.run(harness.orchestrator.handle_timeout(state))
        assert state.status is SagaStatus.TIMED_OUT
        assert state.completed_at == harness.clock.now()

    def test_finished_saga_rejected(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        state = self._timed(harness, "Compensate", status=SagaStatus.COMPLETED)
        with pytest.raises(InvalidSagaTransitionError):
            asyncio.run(harness.orchestrator.handle_timeout(state))

    def test_outdated_copy_does_not_overwrite_finished_saga(self) -> None:
        async def run() -> None:
            harness = Harness(ScriptedStepHandler("a", [StepResult.suspend("waiting for warehouse")]))
            state = harness.new_saga(
                "a", metadata=SagaMetadata(timeout=timedelta(minutes=1), timeout_action="Compensate")
            )
            await harness.orchestrator.start(state)
            outdated = await harness.persistence.get(state.saga_id)
            await harness.orchestrator.abort(state, "customer cancelled")

            with pytest.raises(SagaConcurrencyError) as info:
                await harness.orchestrator.handle_timeout(outdated)  # type: ignore[arg-type]
            assert info.value.stored_version == state.version
            assert info.value.incoming_version == state.version - 1

            stored = await harness.persistence.get(state.saga_id)
            assert stored.status is SagaStatus.ABORTED  # type: ignore[union-attr]
            assert stored.get_data("abort_reason") == "customer cancelled"  # type: ignore[union-attr]
            assert SagaEventType.TIMED_OUT not in harness.publisher.types

        asyncio.run(run())


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancelled_step_fails_saga_and_publishes_failure(self) -> None:
        async def run() -> None:
            gate = asyncio.Event()
            a, b = ScriptedStepHandler("a"), ScriptedStepHandler("b", gate=gate)
            recorder = RecordingEventPublisher()
            monitor = SagaMonitor()
            harness = Harness(a, b, publisher=SagaEventBus([recorder, monitor]))  # type: ignore[arg-type]
            state = harness.new_saga("a", "b")

            task = asyncio.create_task(harness.orchestrator.start(state))
            await b.entered.wait()
            assert harness.orchestrator.is_busy(state.saga_id)
            assert len(monitor.get_active_sagas()) == 1

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            stored = await harness.persistence.get(state.saga_id)
            assert stored is not None
            assert stored.status is SagaStatus.FAILED
            assert _statuses(stored) == {"a": SagaStepStatus.COMPLETED, "b": SagaStepStatus.FAILED}
            assert stored.require_step("b").error_message == "Step execution was cancelled"
            assert stored.compensations == []
            assert recorder.types[-2:] == [SagaEventType.STEP_FAILED, SagaEventType.FAILED]
            assert recorder.of_type(SagaEventType.FAILED)[0].data["cancelled"] is True
            assert monitor.get_active_sagas() == []
            assert not harness.orchestrator.is_busy(state.saga_id)

        asyncio.run(run())

    def test_cancelled_saga_can_be_compensated_afterwards(self) -> None:
        async def run() -> None:
            gate = asyncio.Event()
            a, b = ScriptedStepHandler("a"), ScriptedStepHandler("b", gate=gate)
            harness = Harness(a, b)
            state = harness.new_saga("a", "b")

            task = asyncio.create_task(harness.orchestrator.start(state))
            await b.entered.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert a.compensate_calls == 0

            await harness.orchestrator.compensate(state)
            assert state.status is SagaStatus.COMPENSATED
            assert a.compensate_calls == 1
            assert [c.step_name for c in state.compensations] == ["a"]

        asyncio.run(run())


# ---------------------------------------------------------------------------
# can_execute_step
# ---------------------------------------------------------------------------


class TestCanExecuteStep:
    def test_running_with_willing_handler(self) -> None:
        harness = Harness(ScriptedStepHandler("a"), ScriptedStepHandler("b", can_execute=False))
        state = harness.new_saga("a", "b", status=SagaStatus.RUNNING)
        assert harness.orchestrator.can_execute_step(state, "a") is True
        assert harness.orchestrator.can_execute_step(state, "b") is False
        assert harness.orchestrator.can_execute_step(state, "unknown") is False
        assert state.version == 0

    def test_not_running(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        assert harness.orchestrator.can_execute_step(harness.new_saga("a"), "a") is False

    def test_empty_step_name(self) -> None:
        harness = Harness(ScriptedStepHandler("a"))
        with pytest.raises(ValidationError):
            harness.orchestrator.can_execute_step(harness.new_saga("a"), "")
