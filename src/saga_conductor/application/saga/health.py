"""Application saga – persistence health check."""

from __future__ import annotations

from saga_conductor.application.saga.store import SagaPersistence
from saga_conductor.observability.health import HealthCheck, HealthStatus


class PersistenceHealthCheck(HealthCheck):
    """Healthy when the backend answers ``get_statistics()``."""

    def __init__(self, saga_type: str, persistence: SagaPersistence) -> None:
        self._saga_type = saga_type
        self._persistence = persistence

    @property
    def name(self) -> str:
        return f"saga_persistence:{self._saga_type}"

    async def check(self) -> HealthStatus:
        try:
            statistics = await self._persistence.get_statistics()
        except Exception as exc:  # noqa: BLE001
            return HealthStatus(healthy=False, detail=str(exc))
        return HealthStatus(healthy=True, detail=f"{statistics.total_sagas} sagas stored")


__all__ = ["PersistenceHealthCheck"]
