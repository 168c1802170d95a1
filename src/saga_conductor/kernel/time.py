"""Kernel time – the clock every timestamping component reads.

State touches, step timing, timeout deadlines and monitor windows all go
through a :class:`Clock`, so a test can pin and move time with one
:class:`FrozenClock` shared by every component.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol


def utc_now() -> datetime:
    return datetime.now(UTC)


class Clock(Protocol):
    def now(self) -> datetime: ...

    def timestamp(self) -> float: ...


class SystemClock:
    """Wall clock, always timezone-aware UTC."""

    def now(self) -> datetime:
        return utc_now()

    def timestamp(self) -> float:
        return self.now().timestamp()


class FrozenClock:
    """Clock that only moves when told to.

    Example::

        clock = FrozenClock(datetime(2026, 1, 1, tzinfo=UTC))
        clock.advance(minutes=5)
    """

    def __init__(self, fixed: datetime) -> None:
        self._now = fixed

    def now(self) -> datetime:
        return self._now

    def timestamp(self) -> float:
        return self._now.timestamp()

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> None:
        """Move forward by *delta* or by ``timedelta(**kwargs)``."""
        self._now += delta if delta is not None else timedelta(**kwargs)


__all__ = ["Clock", "FrozenClock", "SystemClock", "utc_now"]
