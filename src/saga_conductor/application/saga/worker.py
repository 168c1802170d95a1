"""Application saga – PeriodicWorker.

Base for the engine's background loops.  A tick runs :meth:`run_once`;
failures are logged and the loop carries on.  ``stop()`` lets an in-flight
tick finish and prevents the next one from starting.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib

from saga_conductor.observability.logging import get_logger

logger = get_logger(__name__)


class PeriodicWorker(abc.ABC):
    def __init__(self, interval: float, *, name: str | None = None) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._name = name or type(self).__name__
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._trigger = asyncio.Event()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @abc.abstractmethod
    async def run_once(self) -> object:
        """One tick of work."""

    def trigger(self) -> None:
        """Wake the loop now instead of waiting for the interval."""
        self._trigger.set()

    async def start(self) -> None:
        if self.is_running:
            logger.warning("worker.already_running", worker=self._name)
            return
        self._stopping = asyncio.Event()
        self._trigger = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=self._name)
        logger.info("worker.started", worker=self._name, interval=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._trigger.set()
        task, self._task = self._task, None
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("worker.stopped", worker=self._name)

    async def _run_loop(self) -> None:
        while not self._stopping.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._trigger.wait(), timeout=self._interval)
            self._trigger.clear()
            if self._stopping.is_set():
                break
            try:
                await self.run_once()
            except Exception as exc:  # noqa: BLE001
                logger.error("worker.tick_failed", worker=self._name, error=str(exc))


__all__ = ["PeriodicWorker"]
