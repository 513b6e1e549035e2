import asyncio
from collections import deque

import orjson
import pytest

from feed_latency.errors import DROP_LEG_UNAVAILABLE, DROP_RETRY_FAILED, FORWARD_DROP
from feed_latency.legs import ReconnectingLeg
from feed_latency.relay import RelaySession
from feed_latency.run import monotonic_ns
from feed_latency.runlog import RunLog
from feed_latency.sequence import SequenceCounter
from feed_latency.transport import Arrival
from feed_latency.upstream import UpstreamFeed
from feed_latency.ws_primitives import ReconnectPolicy


def _ticker(event_ms: int) -> str:
    return orjson.dumps({"e": "bookTicker", "s": "BTCUSDT", "E": event_ms}).decode()


class FakeWebSocket:
    def __init__(self, recv_events):
        self._recv_events = deque(recv_events)
        self.closed = False

    async def recv(self):
        if not self._recv_events:
            await asyncio.Event().wait()
        event = self._recv_events.popleft()
        if isinstance(event, Exception):
            raise event
        return event

    async def close(self):
        self.closed = True


class FakeLink:
    def __init__(self, *, fail_on=(), hang=False):
        self.frames = []
        self.closed = False
        self._fail_on = set(fail_on)
        self._hang = hang
        self._sends = 0

    async def send(self, frame):
        self._sends += 1
        if self._hang:
            await asyncio.Event().wait()
        if self._sends in self._fail_on:
            raise BrokenPipeError("peer went away")
        self.frames.append(orjson.loads(frame))

    async def close(self):
        self.closed = True

    @property
    def ids(self):
        return [frame["sequence_id"] for frame in self.frames]


class Gated:
    def __init__(self, gate, link):
        self.gate = gate
        self.link = link


class LinkFactory:
    def __init__(self, outcomes):
        self._outcomes = deque(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if not self._outcomes:
            await asyncio.Event().wait()
        outcome = self._outcomes.popleft()
        if isinstance(outcome, Gated):
            await outcome.gate.wait()
            return outcome.link
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _yield_sleep(seconds):
    await asyncio.sleep(0)


async def _close_link(link):
    await link.close()


def _session(links, *, upstream_events=(), send_timeout=1.0, runlog=None):
    runlog = runlog or RunLog("t", None, echo=False)

    async def _open_ws():
        return FakeWebSocket(upstream_events)

    upstream_leg = ReconnectingLeg(
        "upstream", _open_ws, policy=ReconnectPolicy(), runlog=runlog, sleep=_yield_sleep
    )
    downstream = ReconnectingLeg(
        "downstream",
        LinkFactory(links),
        policy=ReconnectPolicy(),
        runlog=runlog,
        closer=_close_link,
        sleep=_yield_sleep,
    )
    session = RelaySession(
        upstream=UpstreamFeed(upstream_leg, runlog=runlog),
        downstream=downstream,
        counter=SequenceCounter(),
        runlog=runlog,
        send_timeout_seconds=send_timeout,
        connect_timeout_seconds=1.0,
    )
    return session, downstream, runlog


def _arrival(event_ms: int, rx_wall_ns: int = 1_700_000_000_500_000_000) -> Arrival:
    return Arrival(data=_ticker(event_ms), rx_wall_ns=rx_wall_ns, rx_mono_ns=monotonic_ns())


@pytest.mark.asyncio
async def test_relay_forwards_envelopes_and_skips_malformed() -> None:
    link = FakeLink()
    events = [_ticker(1_000), '{"s":"BTCUSDT"}', "not json", _ticker(1_001), b"\x00binary"]
    session, _downstream, runlog = _session([link], upstream_events=events)

    stats = await session.run(monotonic_ns() + 200_000_000)

    assert link.ids == [0, 1]
    assert [frame["source_event_time"] for frame in link.frames] == [1_000, 1_001]
    assert link.frames[0]["payload"] == _ticker(1_000)
    assert stats.received == 4
    assert stats.malformed == 2
    assert stats.forwarded == 2
    assert session.counter.peek() == 2
    assert runlog.count("upstream_malformed") == 2
    assert runlog.count("relay_stats") == 1
    assert link.closed


@pytest.mark.asyncio
async def test_origin_receive_time_is_the_arrival_stamp() -> None:
    link = FakeLink()
    session, downstream, _runlog = _session([link])
    await downstream.connect()

    envelope = await session.handle_arrival(_arrival(1_000, rx_wall_ns=42_000_000_000))

    assert envelope is not None
    assert envelope.origin_receive_time == 42_000_000_000
    assert link.frames[0]["origin_receive_time"] == 42_000_000_000
    await session.close()


@pytest.mark.asyncio
async def test_failed_send_reconnects_and_retries_once() -> None:
    first = FakeLink(fail_on={2})
    second = FakeLink()
    session, downstream, runlog = _session([first, second])
    await downstream.connect()

    for n in range(3):
        assert await session.handle_arrival(_arrival(1_000 + n)) is not None

    assert first.ids == [0]
    assert first.closed
    assert second.ids == [1, 2]
    assert session.stats.retries == 1
    assert session.stats.dropped.total == 0
    assert runlog.count("forward_failed") == 1
    assert runlog.count("leg_down") == 1
    await session.close()


@pytest.mark.asyncio
async def test_outage_drops_without_blocking_and_keeps_numbering() -> None:
    gate = asyncio.Event()
    first = FakeLink(fail_on={2})
    recovered = FakeLink()
    session, downstream, runlog = _session(
        [first, ConnectionRefusedError("refused"), Gated(gate, recovered)]
    )
    await downstream.connect()

    assert await session.handle_arrival(_arrival(1_000)) is not None
    # send fails, the one retry cannot reconnect
    assert await session.handle_arrival(_arrival(1_001)) is None
    assert downstream.reconnecting
    # leg still down: dropped immediately, id still consumed
    assert await session.handle_arrival(_arrival(1_002)) is None

    gate.set()
    for _ in range(50):
        if downstream.connected:
            break
        await asyncio.sleep(0)
    assert downstream.connected

    assert await session.handle_arrival(_arrival(1_003)) is not None
    assert first.ids == [0]
    assert recovered.ids == [3]
    assert session.stats.dropped.by_reason == {
        DROP_RETRY_FAILED: 1,
        DROP_LEG_UNAVAILABLE: 1,
    }
    assert runlog.count(FORWARD_DROP) == 2
    await session.close()


@pytest.mark.asyncio
async def test_slow_peer_send_is_bounded() -> None:
    session, downstream, runlog = _session(
        [FakeLink(hang=True), FakeLink(hang=True)], send_timeout=0.05
    )
    await downstream.connect()

    started = monotonic_ns()
    assert await session.handle_arrival(_arrival(1_000)) is None
    elapsed_s = (monotonic_ns() - started) / 1e9

    assert elapsed_s < 1.0
    assert session.stats.dropped.by_reason == {DROP_RETRY_FAILED: 1}
    assert runlog.count("forward_failed") == 1
    await asyncio.wait_for(session.close(), timeout=1.0)


@pytest.mark.asyncio
async def test_relay_run_stops_at_deadline_while_downstream_unreachable() -> None:
    session, downstream, _runlog = _session([])
    deadline_ns = monotonic_ns() + 100_000_000

    stats = await asyncio.wait_for(session.run(deadline_ns), timeout=2.0)

    assert stats.received == 0
    assert downstream.stopped
