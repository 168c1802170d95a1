"""Application saga – saga document export (JSON, XML, CSV)."""

from __future__ import annotations

import csv
import enum
import io
from datetime import datetime
from xml.etree import ElementTree

from saga_conductor.application.saga.state import SagaState

_XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'


class ExportFormat(str, enum.Enum):
    JSON = "json"
    XML = "xml"
    CSV = "csv"


def _timestamp(value: datetime | None) -> str:
    return "" if value is None else value.isoformat()


def to_json(state: SagaState) -> str:
    """Full document, byte-for-byte what persistence stores, indented."""
    return state.model_dump_json(indent=2)


def to_xml(state: SagaState) -> str:
    root = ElementTree.Element("SagaState")
    for tag, value in (
        ("SagaId", str(state.saga_id)),
        ("SagaType", state.saga_type),
        ("Status", state.status.value),
        ("CurrentStep", state.current_step),
        ("CorrelationId", state.correlation_id or ""),
        ("CreatedAt", _timestamp(state.created_at)),
        ("LastUpdatedAt", _timestamp(state.last_updated_at)),
        ("CompletedAt", _timestamp(state.completed_at)),
        ("Version", str(state.version)),
    ):
        ElementTree.SubElement(root, tag).text = value

    steps = ElementTree.SubElement(root, "Steps")
    for step in state.steps:
        ElementTree.SubElement(
            steps,
            "Step",
            Name=step.name,
            Status=step.status.value,
            RetryCount=str(step.retry_count),
        )
    compensations = ElementTree.SubElement(root, "Compensations")
    for record in state.compensations:
        ElementTree.SubElement(
            compensations,
            "Compensation",
            StepName=record.step_name,
            Action=record.action,
            Status=record.status.value,
        )
    ElementTree.indent(root)
    return _XML_DECLARATION + ElementTree.tostring(root, encoding="unicode")


def to_csv(state: SagaState) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["Field", "Value"])
    writer.writerows(
        [
            ["SagaId", str(state.saga_id)],
            ["SagaType", state.saga_type],
            ["Status", state.status.value],
            ["CurrentStep", state.current_step],
            ["CreatedAt", _timestamp(state.created_at)],
            ["LastUpdatedAt", _timestamp(state.last_updated_at)],
            ["CompletedAt", _timestamp(state.completed_at)],
            ["Version", state.version],
            ["StepCount", len(state.steps)],
            ["CompensationCount", len(state.compensations)],
        ]
    )
    return buffer.getvalue()


_EXPORTERS = {
    ExportFormat.JSON: to_json,
    ExportFormat.XML: to_xml,
    ExportFormat.CSV: to_csv,
}


def export_state(state: SagaState, fmt: ExportFormat = ExportFormat.JSON) -> str:
    return _EXPORTERS[ExportFormat(fmt)](state)


__all__ = ["ExportFormat", "export_state", "to_csv", "to_json", "to_xml"]
