"""Observability – health checks.

A :class:`HealthRegistry` runs its checks concurrently, each under a time
limit, and folds the outcomes into a :class:`HealthReport`.  A check that
raises or overruns is reported unhealthy; it never fails the whole run.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import time
from typing import Any

from saga_conductor.observability.logging import get_logger

logger = get_logger(__name__)


@dataclasses.dataclass
class HealthStatus:
    healthy: bool
    detail: str | None = None
    latency_ms: float = 0.0


class HealthCheck(abc.ABC):
    @property
    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def check(self) -> HealthStatus: ...

    async def timed_check(self) -> HealthStatus:
        """``check()`` with ``latency_ms`` filled in."""
        started = time.perf_counter()
        status = await self.check()
        status.latency_ms = (time.perf_counter() - started) * 1000
        return status


@dataclasses.dataclass
class HealthReport:
    results: dict[str, HealthStatus] = dataclasses.field(default_factory=dict)

    @property
    def overall(self) -> bool:
        return all(status.healthy for status in self.results.values())

    def failing(self) -> list[str]:
        return [name for name, status in self.results.items() if not status.healthy]

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.overall,
            "checks": {
                name: {
                    "healthy": status.healthy,
                    "detail": status.detail,
                    "latency_ms": round(status.latency_ms, 2),
                }
                for name, status in self.results.items()
            },
        }


class HealthRegistry:
    def __init__(self, checks: list[HealthCheck] | None = None, *, timeout: float = 5.0) -> None:
        self._checks: list[HealthCheck] = list(checks or [])
        self._timeout = timeout

    def register(self, check: HealthCheck) -> None:
        self._checks.append(check)

    async def run_all(self) -> HealthReport:
        statuses = await asyncio.gather(*(self._run(check) for check in self._checks))
        return HealthReport({check.name: status for check, status in zip(self._checks, statuses)})

    async def _run(self, check: HealthCheck) -> HealthStatus:
        try:
            return await asyncio.wait_for(check.timed_check(), self._timeout)
        except TimeoutError:
            status = HealthStatus(False, f"timed out after {self._timeout}s", self._timeout * 1000)
        except Exception as exc:  # noqa: BLE001
            status = HealthStatus(False, f"{type(exc).__name__}: {exc}")
        logger.warning("health.check_failed", check=check.name, detail=status.detail)
        return status


__all__ = ["HealthCheck", "HealthRegistry", "HealthReport", "HealthStatus"]
