"""Unit tests for InMemorySagaPersistence and SagaStatistics."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from saga_conductor.application.saga import (
    InMemorySagaPersistence,
    SagaConcurrencyError,
    SagaMetadata,
    SagaState,
    SagaStatistics,
    SagaStatus,
    SagaStep,
)
from saga_conductor.kernel.errors import ValidationError
from saga_conductor.testing import FakeClock


def _state(status: SagaStatus = SagaStatus.RUNNING, **kwargs) -> SagaState:
    return SagaState(saga_type=kwargs.pop("saga_type", "OrderSaga"), status=status, **kwargs)


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


class TestInMemorySagaPersistence:
    def test_get_missing(self) -> None:
        assert asyncio.run(InMemorySagaPersistence().get(uuid4())) is None

    def test_round_trip_returns_equal_copy(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            state = _state(steps=[SagaStep(name="a")], correlation_id="c-1")
            state.merge_data({"order": {"id": 1}})
            state.touch()
            await store.save(state)

            loaded = await store.get(state.saga_id)
            assert loaded == state
            assert loaded is not state

            loaded.steps[0].retry_count = 9  # type: ignore[union-attr]
            again = await store.get(state.saga_id)
            assert again.steps[0].retry_count == 0  # type: ignore[union-attr]

        asyncio.run(run())

    def test_stale_version_rejected(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            state = _state()
            state.touch()
            state.touch()
            await store.save(state)

            stale = await store.get(state.saga_id)
            state.touch()
            await store.save(state)

            with pytest.raises(SagaConcurrencyError) as info:
                await store.save(stale)  # type: ignore[arg-type]
            assert info.value.stored_version == 3
            assert info.value.incoming_version == 2

        asyncio.run(run())

    def test_same_version_resave_allowed(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            state = _state()
            state.touch()
            await store.save(state)
            await store.save(state)
            assert store.count() == 1

        asyncio.run(run())

    def test_same_version_with_other_content_rejected(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            state = _state()
            state.touch()
            await store.save(state)

            outdated = await store.get(state.saga_id)
            state.status = SagaStatus.ABORTED
            state.touch()
            await store.save(state)

            outdated.status = SagaStatus.TIMED_OUT  # type: ignore[union-attr]
            outdated.touch()  # type: ignore[union-attr]
            with pytest.raises(SagaConcurrencyError):
                await store.save(outdated)  # type: ignore[arg-type]
            stored = await store.get(state.saga_id)
            assert stored.status is SagaStatus.ABORTED  # type: ignore[union-attr]

        asyncio.run(run())

    def test_several_mutations_between_saves_accepted(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            state = _state()
            await store.save(state)
            state.set_data("note", "gift wrap")
            state.touch()
            await store.save(state)
            stored = await store.get(state.saga_id)
            assert stored.version == 2  # type: ignore[union-attr]

        asyncio.run(run())

    def test_save_none_rejected(self) -> None:
        with pytest.raises(ValidationError):
            asyncio.run(InMemorySagaPersistence().save(None))  # type: ignore[arg-type]

    def test_delete(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            state = _state()
            await store.save(state)
            assert await store.delete(state.saga_id) is True
            assert await store.delete(state.saga_id) is False
            assert await store.get(state.saga_id) is None

        asyncio.run(run())


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_get_by_status(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            running, done = _state(), _state(SagaStatus.COMPLETED)
            await store.save(running)
            await store.save(done)
            found = await store.get_by_status(SagaStatus.RUNNING)
            assert [s.saga_id for s in found] == [running.saga_id]

        asyncio.run(run())

    def test_get_timed_out_only_running_past_deadline(self) -> None:
        async def run() -> None:
            clock = FakeClock()
            store = InMemorySagaPersistence()
            timeout = SagaMetadata(timeout=timedelta(minutes=10))
            expired = _state(created_at=clock.now() - timedelta(minutes=11), metadata=timeout)
            boundary = _state(created_at=clock.now() - timedelta(minutes=10), metadata=timeout)
            fresh = _state(created_at=clock.now(), metadata=timeout)
            suspended = _state(
                SagaStatus.SUSPENDED, created_at=clock.now() - timedelta(hours=1), metadata=timeout
            )
            no_timeout = _state(created_at=clock.now() - timedelta(days=1))
            for state in (expired, boundary, fresh, suspended, no_timeout):
                await store.save(state)

            found = {s.saga_id for s in await store.get_timed_out_sagas(clock.now())}
            assert found == {expired.saga_id, boundary.saga_id}

        asyncio.run(run())

    def test_get_by_correlation_id(self) -> None:
        async def run() -> None:
            store = InMemorySagaPersistence()
            a, b = _state(correlation_id="order-7"), _state(correlation_id="order-8")
            await store.save(a)
            await store.save(b)
            found = await store.get_by_correlation_id("order-7")
            assert [s.saga_id for s in found] == [a.saga_id]

        asyncio.run(run())

    def test_empty_correlation_id_rejected(self) -> None:
        with pytest.raises(ValidationError):
            asyncio.run(InMemorySagaPersistence().get_by_correlation_id(""))


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class TestSagaStatistics:
    def test_from_store(self) -> None:
        async def run() -> None:
            clock = FakeClock()
            store = InMemorySagaPersistence()
            for minutes, status in ((2, SagaStatus.COMPLETED), (4, SagaStatus.COMPENSATED)):
                state = _state(status, created_at=clock.now())
                state.completed_at = clock.now() + timedelta(minutes=minutes)
                await store.save(state)
            await store.save(_state(saga_type="InvoiceSaga"))

            stats = await store.get_statistics()
            assert stats.total_sagas == 3
            assert stats.completed == 1
            assert stats.compensated == 1
            assert stats.running == 1
            assert stats.failed == 0
            assert stats.sagas_by_type == {"OrderSaga": 2, "InvoiceSaga": 1}
            assert stats.average_execution_time == timedelta(minutes=3)

        asyncio.run(run())

    def test_empty(self) -> None:
        stats = SagaStatistics.from_states([])
        assert stats.total_sagas == 0
        assert stats.average_execution_time == timedelta(0)

    def test_merge_weights_averages(self) -> None:
        left = SagaStatistics(
            total_sagas=1,
            by_status={SagaStatus.COMPLETED: 1},
            sagas_by_type={"A": 1},
            average_execution_time=timedelta(seconds=10),
            finished_sagas=1,
        )
        right = SagaStatistics(
            total_sagas=3,
            by_status={SagaStatus.COMPLETED: 3},
            sagas_by_type={"B": 3},
            average_execution_time=timedelta(seconds=30),
            finished_sagas=3,
        )
        merged = left.merge(right)
        assert merged.total_sagas == 4
        assert merged.completed == 4
        assert merged.sagas_by_type == {"A": 1, "B": 3}
        assert merged.average_execution_time == timedelta(seconds=25)

    def test_to_dict(self) -> None:
        stats = SagaStatistics(total_sagas=1, by_status={SagaStatus.FAILED: 1})
        assert stats.to_dict()["by_status"] == {"Failed": 1}
