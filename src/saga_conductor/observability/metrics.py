"""Observability – metric instrument ports.

The saga monitor creates its instruments once through a :class:`Metrics`
factory and updates them on every tracked event.  Labels are a small,
bounded set (``saga_type``, ``step``, ``outcome``); saga ids never become
labels.  Plug a Prometheus or OpenTelemetry adapter in by implementing the
four ABCs; :class:`NoopMetrics` is used when nothing is configured.
"""

from __future__ import annotations

import abc

Labels = dict[str, str] | None


class Counter(abc.ABC):
    @abc.abstractmethod
    def add(self, value: float = 1.0, labels: Labels = None) -> None: ...


class Histogram(abc.ABC):
    """Distribution of durations, recorded in milliseconds by default."""

    @abc.abstractmethod
    def record(self, value: float, labels: Labels = None) -> None: ...


class Gauge(abc.ABC):
    """Current level, e.g. sagas in flight per type."""

    @abc.abstractmethod
    def set(self, value: float, labels: Labels = None) -> None: ...

    @abc.abstractmethod
    def inc(self, labels: Labels = None) -> None: ...

    @abc.abstractmethod
    def dec(self, labels: Labels = None) -> None: ...


class Metrics(abc.ABC):
    """Factory for named instruments; asking twice for a name may return the same one."""

    @abc.abstractmethod
    def counter(self, name: str, description: str = "", unit: str = "") -> Counter: ...

    @abc.abstractmethod
    def histogram(
        self,
        name: str,
        description: str = "",
        unit: str = "ms",
        boundaries: list[float] | None = None,
    ) -> Histogram: ...

    @abc.abstractmethod
    def gauge(self, name: str, description: str = "", unit: str = "") -> Gauge: ...


class _Discard(Counter, Histogram, Gauge):
    def add(self, value: float = 1.0, labels: Labels = None) -> None:
        return None

    def record(self, value: float, labels: Labels = None) -> None:
        return None

    def set(self, value: float, labels: Labels = None) -> None:
        return None

    def inc(self, labels: Labels = None) -> None:
        return None

    def dec(self, labels: Labels = None) -> None:
        return None


_DISCARD = _Discard()


class NoopMetrics(Metrics):
    """Every instrument is one shared sink that drops all values."""

    def counter(self, name: str, description: str = "", unit: str = "") -> Counter:
        return _DISCARD

    def histogram(
        self,
        name: str,
        description: str = "",
        unit: str = "ms",
        boundaries: list[float] | None = None,
    ) -> Histogram:
        return _DISCARD

    def gauge(self, name: str, description: str = "", unit: str = "") -> Gauge:
        return _DISCARD


__all__ = ["Counter", "Gauge", "Histogram", "Labels", "Metrics", "NoopMetrics"]
