"""Application saga – per-saga serialization of orchestrator calls."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
from collections.abc import AsyncIterator
from uuid import UUID


@dataclasses.dataclass
class _LockEntry:
    lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock)
    users: int = 0


class SagaLockManager:
    """One :class:`asyncio.Lock` per saga id, created on demand.

    An entry is dropped as soon as nobody holds or waits for it, so the map
    only grows with the number of sagas being driven concurrently.

    Example::

        locks = SagaLockManager()
        async with locks.hold(state.saga_id):
            ...
    """

    def __init__(self) -> None:
        self._entries: dict[UUID, _LockEntry] = {}

    @contextlib.asynccontextmanager
    async def hold(self, saga_id: UUID) -> AsyncIterator[None]:
        entry = self._entries.get(saga_id)
        if entry is None:
            entry = self._entries[saga_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(saga_id) is entry:
                del self._entries[saga_id]

    def is_locked(self, saga_id: UUID) -> bool:
        entry = self._entries.get(saga_id)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["SagaLockManager"]
