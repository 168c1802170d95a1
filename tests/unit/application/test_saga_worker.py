"""Unit tests for PeriodicWorker and SagaLockManager."""

from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest

from saga_conductor.application.saga import PeriodicWorker, SagaLockManager


class TickWorker(PeriodicWorker):
    def __init__(self, interval: float = 60.0, *, fail_first: bool = False) -> None:
        super().__init__(interval)
        self.calls = 0
        self.ticked = asyncio.Event()
        self._fail_first = fail_first

    async def run_once(self) -> None:
        self.calls += 1
        self.ticked.set()
        if self._fail_first and self.calls == 1:
            raise RuntimeError("tick exploded")


# ---------------------------------------------------------------------------
# PeriodicWorker
# ---------------------------------------------------------------------------


class TestPeriodicWorker:
    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            TickWorker(interval=0)

    def test_trigger_runs_tick_immediately(self) -> None:
        async def run() -> None:
            worker = TickWorker()
            await worker.start()
            assert worker.is_running
            worker.trigger()
            await asyncio.wait_for(worker.ticked.wait(), timeout=1)
            await worker.stop()
            assert not worker.is_running
            assert worker.calls == 1

        asyncio.run(run())

    def test_interval_elapses(self) -> None:
        async def run() -> None:
            worker = TickWorker(interval=0.01)
            await worker.start()
            await asyncio.wait_for(worker.ticked.wait(), timeout=1)
            await worker.stop()
            assert worker.calls >= 1

        asyncio.run(run())

    def test_failing_tick_keeps_loop_alive(self) -> None:
        async def run() -> None:
            worker = TickWorker(fail_first=True)
            await worker.start()
            worker.trigger()
            await asyncio.wait_for(worker.ticked.wait(), timeout=1)
            worker.ticked.clear()
            worker.trigger()
            await asyncio.wait_for(worker.ticked.wait(), timeout=1)
            assert worker.calls == 2
            assert worker.is_running
            await worker.stop()

        asyncio.run(run())

    def test_stop_prevents_further_ticks(self) -> None:
        async def run() -> None:
            worker = TickWorker()
            await worker.start()
            await worker.stop()
            assert worker.calls == 0

        asyncio.run(run())

    def test_stop_without_start(self) -> None:
        asyncio.run(TickWorker().stop())

    def test_restart(self) -> None:
        async def run() -> None:
            worker = TickWorker()
            await worker.start()
            await worker.start()
            await worker.stop()
            await worker.start()
            worker.trigger()
            await asyncio.wait_for(worker.ticked.wait(), timeout=1)
            await worker.stop()
            assert worker.calls == 1

        asyncio.run(run())


# ---------------------------------------------------------------------------
# SagaLockManager
# ---------------------------------------------------------------------------


class TestSagaLockManager:
    def test_same_saga_serialized(self) -> None:
        async def run() -> None:
            locks = SagaLockManager()
            saga_id = uuid4()
            order: list[str] = []

            async def worker(name: str) -> None:
                async with locks.hold(saga_id):
                    order.append(f"{name}-in")
                    await asyncio.sleep(0)
                    order.append(f"{name}-out")

            await asyncio.gather(worker("first"), worker("second"))
            assert order == ["first-in", "first-out", "second-in", "second-out"]

        asyncio.run(run())

    def test_different_sagas_independent(self) -> None:
        async def run() -> None:
            locks = SagaLockManager()
            a, b = uuid4(), uuid4()
            async with locks.hold(a):
                assert locks.is_locked(a)
                assert not locks.is_locked(b)
                async with locks.hold(b):
                    assert locks.is_locked(b)

        asyncio.run(run())

    def test_entries_released(self) -> None:
        async def run() -> None:
            locks = SagaLockManager()
            saga_id = uuid4()
            async with locks.hold(saga_id):
                assert len(locks) == 1
            assert len(locks) == 0
            assert not locks.is_locked(saga_id)

        asyncio.run(run())
