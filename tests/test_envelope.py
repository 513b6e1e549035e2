import orjson
import pytest

from feed_latency.envelope import (
    EventEnvelope,
    decode_envelope,
    decode_upstream,
    encode_envelope,
)
from feed_latency.errors import EnvelopeDecodeError, UpstreamDecodeError

BOOK_TICKER = (
    '{"e":"bookTicker","u":400900217,"s":"BTCUSDT","b":"25.35190000",'
    '"B":"31.21000000","a":"25.36520000","A":"40.66000000","E":1700000000123}'
)


def test_envelope_survives_encode_decode() -> None:
    envelope = EventEnvelope(
        sequence_id=17,
        origin_receive_time=1_700_000_000_150_000_123,
        source_event_time=1_700_000_000_123,
        payload=BOOK_TICKER,
    )
    frame = encode_envelope(envelope)
    assert b"\n" not in frame
    assert decode_envelope(frame) == envelope
    assert decode_envelope(frame.decode("utf-8")) == envelope


def test_envelope_wire_field_names() -> None:
    envelope = EventEnvelope(1, 2, 3, "{}")
    assert sorted(orjson.loads(encode_envelope(envelope))) == [
        "origin_receive_time",
        "payload",
        "sequence_id",
        "source_event_time",
    ]


@pytest.mark.parametrize(
    "frame, reason",
    [
        (b"\xff\xfe", "invalid_text"),
        (b"not json", "json_error"),
        (b"[1, 2]", "not_object"),
        (b'{"sequence_id": 1, "origin_receive_time": 2, "payload": "{}"}', "missing_field"),
        (
            b'{"sequence_id": -1, "origin_receive_time": 2, "source_event_time": 3, "payload": "{}"}',
            "invalid_field",
        ),
        (
            b'{"sequence_id": 1, "origin_receive_time": "2", "source_event_time": 3, "payload": "{}"}',
            "invalid_field",
        ),
        (
            b'{"sequence_id": 1, "origin_receive_time": 2, "source_event_time": 3, "payload": {}}',
            "invalid_field",
        ),
    ],
)
def test_decode_envelope_rejects_malformed(frame, reason) -> None:
    with pytest.raises(EnvelopeDecodeError) as excinfo:
        decode_envelope(frame)
    assert excinfo.value.reason == reason


def test_decode_upstream_book_ticker() -> None:
    event = decode_upstream(BOOK_TICKER)
    assert event.event_time_ms == 1_700_000_000_123
    assert event.event_type == "bookTicker"
    assert event.symbol == "BTCUSDT"
    assert event.raw_text == BOOK_TICKER


def test_decode_upstream_unwraps_combined_stream() -> None:
    wrapped = '{"stream":"btcusdt@bookTicker","data":' + BOOK_TICKER + "}"
    event = decode_upstream(wrapped)
    assert event.event_time_ms == 1_700_000_000_123
    assert event.raw_text == wrapped


def test_decode_upstream_custom_event_time_field() -> None:
    event = decode_upstream('{"T": 42, "s": "ETHUSDT"}', event_time_field="T")
    assert event.event_time_ms == 42


@pytest.mark.parametrize(
    "raw, reason",
    [
        ("{", "json_error"),
        ('"text"', "not_object"),
        ('{"u":1,"s":"BTCUSDT","b":"1","a":"2"}', "missing_event_time"),
        ('{"E":"1700000000123"}', "invalid_event_time"),
        ('{"E":true}', "invalid_event_time"),
        ('{"E":1.5}', "invalid_event_time"),
    ],
)
def test_decode_upstream_rejects_malformed(raw, reason) -> None:
    with pytest.raises(UpstreamDecodeError) as excinfo:
        decode_upstream(raw)
    assert excinfo.value.reason == reason
    assert isinstance(excinfo.value, ValueError)
