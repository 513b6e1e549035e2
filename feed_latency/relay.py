from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from .config import Config
from .envelope import EventEnvelope, decode_upstream, encode_envelope
from .errors import (
    DROP_LEG_UNAVAILABLE,
    DROP_RETRY_FAILED,
    FORWARD_DROP,
    FORWARD_FAILED,
    UPSTREAM_MALFORMED,
    ForwardDropped,
    UpstreamDecodeError,
)
from .legs import ReconnectingLeg
from .runlog import RunLog
from .sequence import SequenceCounter
from .transport import Arrival, RelayLink, close_relay_link, relay_link_opener
from .upstream import UpstreamFeed
from .ws_primitives import DropCounter, ReconnectPolicy

DOWNSTREAM_LEG = "downstream"


@dataclass(slots=True)
class RelayStats:
    received: int = 0
    forwarded: int = 0
    malformed: int = 0
    retries: int = 0
    dropped: DropCounter = field(default_factory=DropCounter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "forwarded": self.forwarded,
            "malformed": self.malformed,
            "retries": self.retries,
            "dropped": self.dropped.total,
            "dropped_by_reason": dict(self.dropped.by_reason),
        }


def downstream_leg(
    config: Config,
    *,
    runlog: RunLog,
    policy: ReconnectPolicy | None = None,
) -> ReconnectingLeg[RelayLink]:
    return ReconnectingLeg(
        DOWNSTREAM_LEG,
        relay_link_opener(config),
        policy=policy or ReconnectPolicy.from_config(config),
        runlog=runlog,
        closer=close_relay_link,
        attempt_timeout=config.relay_connect_timeout_seconds,
    )


class RelaySession:
    def __init__(
        self,
        *,
        upstream: UpstreamFeed,
        downstream: ReconnectingLeg[RelayLink],
        counter: SequenceCounter,
        runlog: RunLog,
        send_timeout_seconds: float = 1.0,
        connect_timeout_seconds: float = 5.0,
        event_time_field: str = "E",
        event_type_field: str = "e",
        symbol_field: str = "s",
    ) -> None:
        self._upstream = upstream
        self._downstream = downstream
        self._counter = counter
        self._runlog = runlog
        self._send_timeout = send_timeout_seconds
        self._connect_timeout = connect_timeout_seconds
        self._decode_kwargs = {
            "event_time_field": event_time_field,
            "event_type_field": event_type_field,
            "symbol_field": symbol_field,
        }
        self._deadline_ns: int | None = None
        self.stats = RelayStats()

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        upstream: UpstreamFeed,
        downstream: ReconnectingLeg[RelayLink],
        counter: SequenceCounter,
        runlog: RunLog,
    ) -> "RelaySession":
        return cls(
            upstream=upstream,
            downstream=downstream,
            counter=counter,
            runlog=runlog,
            send_timeout_seconds=config.relay_send_timeout_seconds,
            connect_timeout_seconds=config.relay_connect_timeout_seconds,
            event_time_field=config.upstream_event_time_field,
            event_type_field=config.upstream_event_type_field,
            symbol_field=config.upstream_symbol_field,
        )

    @property
    def counter(self) -> SequenceCounter:
        return self._counter

    async def run(self, deadline_ns: int | None = None) -> RelayStats:
        self._deadline_ns = deadline_ns
        try:
            link = await self._downstream.connect(deadline_ns=deadline_ns)
            if link is None:
                return self.stats
            while True:
                arrival = await self._upstream.receive(deadline_ns)
                if arrival is None:
                    break
                await self.handle_arrival(arrival)
        finally:
            await self.close()
            self._runlog.write(
                "relay_stats",
                sequence_next=self._counter.peek(),
                upstream_reconnects=max(0, self._upstream.leg.connects - 1),
                downstream_reconnects=max(0, self._downstream.connects - 1),
                binary_frames=self._upstream.binary_frames,
                **self.stats.to_dict(),
            )
        return self.stats

    async def handle_arrival(self, arrival: Arrival) -> EventEnvelope | None:
        self.stats.received += 1
        try:
            event = decode_upstream(arrival.data, **self._decode_kwargs)
        except UpstreamDecodeError as exc:
            self.stats.malformed += 1
            self._runlog.write(
                UPSTREAM_MALFORMED,
                reason=exc.reason,
                error=str(exc),
                sample=exc.sample,
            )
            return None
        envelope = EventEnvelope(
            sequence_id=self._counter.next(),
            origin_receive_time=arrival.rx_wall_ns,
            source_event_time=event.event_time_ms,
            payload=event.raw_text,
        )
        try:
            await self._forward(encode_envelope(envelope), envelope.sequence_id)
        except ForwardDropped as exc:
            self.stats.dropped.bump(exc.reason)
            self._runlog.write(
                FORWARD_DROP,
                sequence_id=exc.sequence_id,
                reason=exc.reason,
                error=exc.__cause__,
            )
            return None
        self.stats.forwarded += 1
        return envelope

    async def _forward(self, frame: bytes, sequence_id: int) -> None:
        link = self._downstream.connection
        if link is None:
            # no buffering while the leg is down; backoff runs in the background
            self._downstream.ensure_reconnecting(deadline_ns=self._deadline_ns)
            raise ForwardDropped(sequence_id, DROP_LEG_UNAVAILABLE)
        try:
            await asyncio.wait_for(link.send(frame), timeout=self._send_timeout)
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            first_error = exc
        self._runlog.write(FORWARD_FAILED, sequence_id=sequence_id, error=first_error)
        await self._downstream.mark_failed(first_error)

        # single synchronous reconnect-and-retry of this frame
        self.stats.retries += 1
        try:
            link = await self._downstream.connect_once(timeout=self._connect_timeout)
            await asyncio.wait_for(link.send(frame), timeout=self._send_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._downstream.connection is not None:
                await self._downstream.mark_failed(exc)
            self._downstream.ensure_reconnecting(deadline_ns=self._deadline_ns)
            raise ForwardDropped(sequence_id, DROP_RETRY_FAILED) from exc

    async def close(self) -> None:
        await self._upstream.close()
        await self._downstream.stop()
