"""Application saga – SagaPersistence port, statistics and the in-memory backend."""

from __future__ import annotations

import abc
import dataclasses
import threading
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from saga_conductor.application.saga.errors import SagaConcurrencyError, SagaPersistenceError
from saga_conductor.application.saga.state import SagaState, SagaStatus
from saga_conductor.kernel.errors import ValidationError


@dataclasses.dataclass
class SagaStatistics:
    """Aggregate counts over every saga a backend holds."""

    total_sagas: int = 0
    by_status: dict[SagaStatus, int] = dataclasses.field(default_factory=dict)
    sagas_by_type: dict[str, int] = dataclasses.field(default_factory=dict)
    average_execution_time: timedelta = timedelta(0)
    finished_sagas: int = 0

    @classmethod
    def from_states(cls, states: Iterable[SagaState]) -> SagaStatistics:
        by_status: Counter[SagaStatus] = Counter()
        by_type: Counter[str] = Counter()
        total = 0
        durations: list[timedelta] = []
        for state in states:
            total += 1
            by_status[state.status] += 1
            by_type[state.saga_type] += 1
            if state.duration is not None:
                durations.append(state.duration)
        average = sum(durations, timedelta(0)) / len(durations) if durations else timedelta(0)
        return cls(
            total_sagas=total,
            by_status=dict(by_status),
            sagas_by_type=dict(by_type),
            average_execution_time=average,
            finished_sagas=len(durations),
        )

    def count(self, status: SagaStatus) -> int:
        return self.by_status.get(status, 0)

    @property
    def running(self) -> int:
        return self.count(SagaStatus.RUNNING)

    @property
    def completed(self) -> int:
        return self.count(SagaStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self.count(SagaStatus.FAILED)

    @property
    def compensating(self) -> int:
        return self.count(SagaStatus.COMPENSATING)

    @property
    def compensated(self) -> int:
        return self.count(SagaStatus.COMPENSATED)

    @property
    def suspended(self) -> int:
        return self.count(SagaStatus.SUSPENDED)

    @property
    def timed_out(self) -> int:
        return self.count(SagaStatus.TIMED_OUT)

    def merge(self, other: SagaStatistics) -> SagaStatistics:
        """Combine two backends' statistics; averages are weighted."""
        by_status = Counter(self.by_status)
        by_status.update(other.by_status)
        by_type = Counter(self.sagas_by_type)
        by_type.update(other.sagas_by_type)
        finished = self.finished_sagas + other.finished_sagas
        average = timedelta(0)
        if finished:
            average = (
                self.average_execution_time * self.finished_sagas
                + other.average_execution_time * other.finished_sagas
            ) / finished
        return SagaStatistics(
            total_sagas=self.total_sagas + other.total_sagas,
            by_status=dict(by_status),
            sagas_by_type=dict(by_type),
            average_execution_time=average,
            finished_sagas=finished,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sagas": self.total_sagas,
            "by_status": {status.value: n for status, n in self.by_status.items()},
            "sagas_by_type": dict(self.sagas_by_type),
            "average_execution_time_seconds": self.average_execution_time.total_seconds(),
        }


class SagaPersistence(abc.ABC):
    """Port — load, save and query saga documents.

    ``save`` is a full-document upsert keyed by ``saga_id``.  ``version`` is an
    optimistic-concurrency counter: a save that does not advance it must be
    rejected with :class:`SagaConcurrencyError`.  Backends raise
    :class:`~saga_conductor.kernel.errors.PersistenceError` subclasses on
    storage failures; the engine never retries them.
    """

    @abc.abstractmethod
    async def get(self, saga_id: UUID) -> SagaState | None: ...

    @abc.abstractmethod
    async def save(self, state: SagaState) -> None: ...

    @abc.abstractmethod
    async def delete(self, saga_id: UUID) -> bool:
        """Remove the document; return whether one existed."""

    @abc.abstractmethod
    async def get_by_status(self, status: SagaStatus) -> list[SagaState]: ...

    @abc.abstractmethod
    async def get_timed_out_sagas(self, before: datetime) -> list[SagaState]:
        """Running sagas whose ``created_at + metadata.timeout`` is at or before *before*."""

    @abc.abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[SagaState]: ...

    @abc.abstractmethod
    async def get_statistics(self) -> SagaStatistics: ...


class InMemorySagaPersistence(SagaPersistence):
    """Reference backend holding one JSON snapshot per saga.

    Every read deserializes a fresh copy, so callers never share instances
    with the store.  A save must carry a ``version`` above the stored one;
    resaving an identical document is accepted, anything else raises
    :class:`SagaConcurrencyError`.
    """

    def __init__(self) -> None:
        self._documents: dict[UUID, str] = {}
        self._versions: dict[UUID, int] = {}
        self._lock = threading.Lock()

    async def get(self, saga_id: UUID) -> SagaState | None:
        with self._lock:
            document = self._documents.get(saga_id)
        return None if document is None else self._load(document)

    async def save(self, state: SagaState) -> None:
        if state is None:
            raise ValidationError("Cannot save a missing saga state")
        try:
            document = state.model_dump_json()
        except ValueError as exc:
            raise SagaPersistenceError(
                f"Cannot serialize saga '{state.saga_id}': {exc}", cause=exc
            ) from exc
        with self._lock:
            stored = self._versions.get(state.saga_id)
            if stored is not None and state.version <= stored:
                if state.version != stored or self._documents[state.saga_id] != document:
                    raise SagaConcurrencyError(state.saga_id, stored, state.version)
            self._documents[state.saga_id] = document
            self._versions[state.saga_id] = state.version

    async def delete(self, saga_id: UUID) -> bool:
        with self._lock:
            self._versions.pop(saga_id, None)
            return self._documents.pop(saga_id, None) is not None

    async def get_by_status(self, status: SagaStatus) -> list[SagaState]:
        return [s for s in self._all() if s.status is status]

    async def get_timed_out_sagas(self, before: datetime) -> list[SagaState]:
        return [
            s
            for s in self._all()
            if s.status is SagaStatus.RUNNING and s.deadline is not None and s.deadline <= before
        ]

    async def get_by_correlation_id(self, correlation_id: str) -> list[SagaState]:
        if not correlation_id:
            raise ValidationError(
                "correlation_id must not be empty",
                errors=[{"field": "correlation_id", "message": "required"}],
            )
        return [s for s in self._all() if s.correlation_id == correlation_id]

    async def get_statistics(self) -> SagaStatistics:
        return SagaStatistics.from_states(self._all())

    def count(self) -> int:
        with self._lock:
            return len(self._documents)

    def _all(self) -> list[SagaState]:
        with self._lock:
            documents = list(self._documents.values())
        states = [self._load(d) for d in documents]
        states.sort(key=lambda s: s.created_at)
        return states

    @staticmethod
    def _load(document: str) -> SagaState:
        try:
            return SagaState.model_validate_json(document)
        except PydanticValidationError as exc:
            raise SagaPersistenceError(f"Corrupt saga document: {exc}", cause=exc) from exc


__all__ = ["InMemorySagaPersistence", "SagaPersistence", "SagaStatistics"]
