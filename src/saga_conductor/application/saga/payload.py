"""Application saga – tagged step payloads.

Step input/output and saga data values are stored as either text or
binary payloads.  Structured values are JSON-encoded into a binary payload
when they enter the engine and decoded on the way out.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from saga_conductor.kernel.errors import SerializationError

JSON_CONTENT_TYPE = "application/json"
OCTET_STREAM = "application/octet-stream"

_JSON = TypeAdapter(Any)


class TextPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    value: str

    def decode(self) -> str:
        return self.value


class BinaryPayload(BaseModel):
    """Raw bytes plus a content type; serialized as base64 in JSON documents."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    kind: Literal["binary"] = "binary"
    value: bytes
    content_type: str = JSON_CONTENT_TYPE

    def decode(self) -> Any:
        if self.content_type == JSON_CONTENT_TYPE:
            try:
                return _JSON.validate_json(self.value)
            except ValueError as exc:
                raise SerializationError(
                    f"Payload is not valid JSON: {exc}", payload_type=self.content_type
                ) from exc
        return self.value


Payload = Annotated[TextPayload | BinaryPayload, Field(discriminator="kind")]


def payload_of(value: Any) -> TextPayload | BinaryPayload:
    """Wrap *value* in the matching payload variant."""
    if isinstance(value, (TextPayload, BinaryPayload)):
        return value
    if isinstance(value, str):
        return TextPayload(value=value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BinaryPayload(value=bytes(value), content_type=OCTET_STREAM)
    try:
        encoded = _JSON.dump_json(value)
    except ValueError as exc:
        raise SerializationError(
            f"Cannot encode {type(value).__name__} as a payload: {exc}",
            payload_type=type(value).__name__,
        ) from exc
    return BinaryPayload(value=encoded, content_type=JSON_CONTENT_TYPE)


def decode_payload(payload: TextPayload | BinaryPayload | None) -> Any:
    return None if payload is None else payload.decode()


__all__ = [
    "BinaryPayload",
    "JSON_CONTENT_TYPE",
    "OCTET_STREAM",
    "Payload",
    "TextPayload",
    "decode_payload",
    "payload_of",
]
