"""Testing support – fakes for saga engine test suites.

Import in your tests::

    from saga_conductor.testing import FakeClock, ScriptedStepHandler
"""

from saga_conductor.testing.fakes import (
    FakeClock,
    FakeMetricsRegistry,
    FrozenClock,
    RecordingEventPublisher,
    ScriptedStepHandler,
)

__all__ = [
    "FakeClock",
    "FakeMetricsRegistry",
    "FrozenClock",
    "RecordingEventPublisher",
    "ScriptedStepHandler",
]
