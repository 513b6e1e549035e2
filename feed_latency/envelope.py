from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import orjson

from .errors import EnvelopeDecodeError, UpstreamDecodeError

ENVELOPE_FIELDS = ("sequence_id", "origin_receive_time", "source_event_time", "payload")


@dataclass(frozen=True, slots=True)
class EventEnvelope:
    sequence_id: int
    origin_receive_time: int
    source_event_time: int
    payload: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence_id": self.sequence_id,
            "origin_receive_time": self.origin_receive_time,
            "source_event_time": self.source_event_time,
            "payload": self.payload,
        }


@dataclass(frozen=True, slots=True)
class SourceEvent:
    event_time_ms: int
    raw_text: str
    event_type: str | None = None
    symbol: str | None = None


def _as_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw).decode("utf-8")
    raise TypeError(f"unsupported payload type: {type(raw).__name__}")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def decode_upstream(
    raw: Any,
    *,
    event_time_field: str = "E",
    event_type_field: str = "e",
    symbol_field: str = "s",
) -> SourceEvent:
    """Parse one upstream text message; combined-stream ``{"stream", "data"}`` wrappers are unwrapped."""
    try:
        raw_text = _as_text(raw)
    except (TypeError, UnicodeDecodeError) as exc:
        raise UpstreamDecodeError(str(exc), reason="invalid_text") from exc
    try:
        payload = orjson.loads(raw_text)
    except orjson.JSONDecodeError as exc:
        raise UpstreamDecodeError(
            "upstream payload is not JSON", reason="json_error", sample=raw_text[:50]
        ) from exc
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict) and "stream" in payload:
        payload = payload["data"]
    if not isinstance(payload, dict):
        raise UpstreamDecodeError(
            "upstream payload is not an object", reason="not_object", sample=raw_text[:50]
        )
    if event_time_field not in payload:
        raise UpstreamDecodeError(
            f"upstream payload has no {event_time_field!r} field",
            reason="missing_event_time",
            sample=raw_text[:50],
        )
    event_time_ms = _as_int(payload[event_time_field])
    if event_time_ms is None:
        raise UpstreamDecodeError(
            f"upstream {event_time_field!r} is not an integer",
            reason="invalid_event_time",
            sample=raw_text[:50],
        )
    event_type = payload.get(event_type_field)
    symbol = payload.get(symbol_field)
    return SourceEvent(
        event_time_ms=event_time_ms,
        raw_text=raw_text,
        event_type=event_type if isinstance(event_type, str) else None,
        symbol=symbol if isinstance(symbol, str) else None,
    )


def encode_envelope(envelope: EventEnvelope) -> bytes:
    return orjson.dumps(envelope.to_dict())


def decode_envelope(data: Any) -> EventEnvelope:
    try:
        text = _as_text(data)
    except (TypeError, UnicodeDecodeError) as exc:
        raise EnvelopeDecodeError(str(exc), reason="invalid_text") from exc
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise EnvelopeDecodeError(
            "wire record is not JSON", reason="json_error", sample=text[:50]
        ) from exc
    if not isinstance(payload, dict):
        raise EnvelopeDecodeError("wire record is not an object", reason="not_object")
    missing = [name for name in ENVELOPE_FIELDS if name not in payload]
    if missing:
        raise EnvelopeDecodeError(
            f"wire record missing fields: {','.join(missing)}", reason="missing_field"
        )
    sequence_id = _as_int(payload["sequence_id"])
    origin_receive_time = _as_int(payload["origin_receive_time"])
    source_event_time = _as_int(payload["source_event_time"])
    if sequence_id is None or sequence_id < 0:
        raise EnvelopeDecodeError("invalid sequence_id", reason="invalid_field")
    if origin_receive_time is None or source_event_time is None:
        raise EnvelopeDecodeError("invalid timestamp", reason="invalid_field")
    if not isinstance(payload["payload"], str):
        raise EnvelopeDecodeError("payload must be text", reason="invalid_field")
    return EventEnvelope(
        sequence_id=sequence_id,
        origin_receive_time=origin_receive_time,
        source_event_time=source_event_time,
        payload=payload["payload"],
    )
