"""Testing fakes – in-memory doubles for saga engine ports."""
from saga_conductor.testing.fakes.clock import FakeClock
from saga_conductor.testing.fakes.events import RecordingEventPublisher
from saga_conductor.testing.fakes.handlers import ScriptedStepHandler
from saga_conductor.testing.fakes.metrics import FakeMetricsRegistry
from saga_conductor.kernel.time import FrozenClock

__all__ = [
    "FakeClock",
    "FakeMetricsRegistry",
    "FrozenClock",
    "RecordingEventPublisher",
    "ScriptedStepHandler",
]
