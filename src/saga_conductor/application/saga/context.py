"""Application saga – ExecutionContext."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from uuid import uuid4

if TYPE_CHECKING:
    from saga_conductor.application.saga.state import SagaState


@dataclasses.dataclass(frozen=True)
class ExecutionContext:
    """Caller identity and correlation data passed explicitly through a call.

    Every orchestrator operation accepts one and hands it to each step
    handler; log lines emitted on its behalf carry :meth:`log_fields`.
    """

    correlation_id: str = dataclasses.field(default_factory=lambda: str(uuid4()))
    initiated_by: str | None = None
    attributes: Mapping[str, str] = dataclasses.field(default_factory=dict)

    @classmethod
    def for_saga(cls, state: SagaState, *, initiated_by: str | None = None) -> ExecutionContext:
        """Context derived from the saga's own correlation id and initiator."""
        return cls(
            correlation_id=state.correlation_id or str(state.saga_id),
            initiated_by=initiated_by or state.metadata.initiated_by,
        )

    def with_attributes(self, **attributes: str) -> ExecutionContext:
        return dataclasses.replace(self, attributes={**self.attributes, **attributes})

    def log_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {"correlation_id": self.correlation_id}
        if self.initiated_by is not None:
            fields["initiated_by"] = self.initiated_by
        return fields


__all__ = ["ExecutionContext"]
