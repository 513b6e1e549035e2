from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import socket
from typing import Any, Awaitable, Callable, Protocol

from .config import TRANSPORT_TCP, TRANSPORT_UDP, Config
from .errors import PEER_REJECTED, WIRE_MALFORMED, SetupError
from .run import monotonic_ns, wall_ns
from .runlog import RunLog

FRAME_DELIMITER = b"\n"
MAX_LINE_BYTES = 1 << 20
MAX_DATAGRAM_BYTES = 65507


@dataclass(frozen=True, slots=True)
class Arrival:
    data: str | bytes
    rx_wall_ns: int
    rx_mono_ns: int


class RelayLink(Protocol):
    async def send(self, frame: bytes) -> None: ...

    async def close(self) -> None: ...


class ArrivalSource(Protocol):
    async def start(self) -> None: ...

    async def receive(self, deadline_ns: int | None) -> Arrival | None: ...

    async def close(self) -> None: ...


def _remaining_seconds(deadline_ns: int | None) -> float | None:
    if deadline_ns is None:
        return None
    return (deadline_ns - monotonic_ns()) / 1_000_000_000


# origin side


class TcpRelayLink:
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    @classmethod
    async def open(cls, host: str, port: int) -> "TcpRelayLink":
        reader, writer = await asyncio.open_connection(host, port)
        sock = writer.get_extra_info("socket")
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return cls(reader, writer)

    async def send(self, frame: bytes) -> None:
        # the destination never writes back, so EOF on the read side means the peer went away
        if self._reader.at_eof() or self._writer.is_closing():
            raise ConnectionResetError("relay peer closed the connection")
        self._writer.write(frame + FRAME_DELIMITER)
        await self._writer.drain()

    async def close(self) -> None:
        self._writer.close()
        with contextlib.suppress(Exception):
            await self._writer.wait_closed()


class _UdpSenderProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.error: Exception | None = None

    def error_received(self, exc: Exception) -> None:
        self.error = exc


class UdpRelayLink:
    def __init__(self, transport: asyncio.DatagramTransport, protocol: _UdpSenderProtocol) -> None:
        self._transport = transport
        self._protocol = protocol

    @classmethod
    async def open(cls, host: str, port: int) -> "UdpRelayLink":
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            _UdpSenderProtocol,
            remote_addr=(host, port),
        )
        return cls(transport, protocol)

    async def send(self, frame: bytes) -> None:
        if len(frame) > MAX_DATAGRAM_BYTES:
            raise ValueError(f"envelope of {len(frame)} bytes exceeds one datagram")
        error = self._protocol.error
        if error is not None:
            self._protocol.error = None
            raise error
        if self._transport.is_closing():
            raise ConnectionResetError("relay datagram endpoint closed")
        self._transport.sendto(frame)

    async def close(self) -> None:
        self._transport.close()


def relay_link_opener(config: Config) -> Callable[[], Awaitable[RelayLink]]:
    host = config.relay_host
    port = config.relay_port
    if config.relay_transport == TRANSPORT_TCP:
        return lambda: TcpRelayLink.open(host, port)
    if config.relay_transport == TRANSPORT_UDP:
        return lambda: UdpRelayLink.open(host, port)
    raise ValueError(f"unknown relay transport: {config.relay_transport}")


async def close_relay_link(link: RelayLink) -> None:
    await link.close()


# destination side


class TcpRelayReceiver:
    """Serves one origin connection at a time and yields newline-framed records.

    A new connection replaces the current peer only once that peer has closed;
    while it is live, extra connections are rejected.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        runlog: RunLog,
        clock: Callable[[], int] = wall_ns,
    ) -> None:
        self._host = host
        self._port = port
        self._runlog = runlog
        self._clock = clock
        self._server: asyncio.AbstractServer | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._peer_ready = asyncio.Event()
        self.accepted_peers = 0
        self.rejected_peers = 0

    @property
    def bound_port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return int(self._server.sockets[0].getsockname()[1])

    async def start(self) -> None:
        try:
            self._server = await asyncio.start_server(
                self._on_connect,
                self._host,
                self._port,
                limit=MAX_LINE_BYTES,
            )
        except OSError as exc:
            raise SetupError(f"cannot listen on {self._host}:{self._port}: {exc}") from exc
        self._runlog.write(
            "listen",
            transport=TRANSPORT_TCP,
            host=self._host,
            port=self.bound_port,
        )

    def _peer_live(self) -> bool:
        if self._reader is None or self._writer is None:
            return False
        return not (self._reader.at_eof() or self._writer.is_closing())

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        if self._peer_live():
            self.rejected_peers += 1
            self._runlog.write(PEER_REJECTED, peer=peer)
            writer.close()
            return
        if self._reader is not None:
            self._drop_peer(self._reader, None)
        self._reader = reader
        self._writer = writer
        self.accepted_peers += 1
        self._runlog.write("peer_accepted", peer=peer, reconnect=self.accepted_peers > 1)
        self._peer_ready.set()

    async def receive(self, deadline_ns: int | None) -> Arrival | None:
        while True:
            remaining = _remaining_seconds(deadline_ns)
            if remaining is not None and remaining <= 0:
                return None
            reader = self._reader
            if reader is None:
                try:
                    await asyncio.wait_for(self._peer_ready.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    return None
                continue
            try:
                line = await asyncio.wait_for(reader.readline(), timeout=remaining)
            except asyncio.TimeoutError:
                return None
            except ValueError:
                self._runlog.write(WIRE_MALFORMED, reason="line_too_long")
                continue
            except (ConnectionError, OSError) as exc:
                self._drop_peer(reader, exc)
                continue
            rx_wall_ns = self._clock()
            rx_mono_ns = monotonic_ns()
            if not line:
                self._drop_peer(reader, None)
                continue
            data = line.rstrip(b"\r\n")
            if not data:
                continue
            return Arrival(data=data, rx_wall_ns=rx_wall_ns, rx_mono_ns=rx_mono_ns)

    def _drop_peer(self, reader: asyncio.StreamReader, exc: BaseException | None) -> None:
        # a peer already replaced by a newer connection is not dropped twice
        if reader is not self._reader:
            return
        writer = self._writer
        self._reader = None
        self._writer = None
        self._peer_ready.clear()
        self._runlog.write("peer_closed", error=exc)
        if writer is not None:
            writer.close()

    async def close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
        if self._server is not None:
            self._server.close()
            with contextlib.suppress(Exception):
                await self._server.wait_closed()
            self._server = None


class _UdpReceiverProtocol(asyncio.DatagramProtocol):
    def __init__(self, queue: asyncio.Queue[Arrival], clock: Callable[[], int]) -> None:
        self._queue = queue
        self._clock = clock
        self.errors = 0

    def datagram_received(self, data: bytes, addr: Any) -> None:
        rx_wall_ns = self._clock()
        self._queue.put_nowait(
            Arrival(data=data, rx_wall_ns=rx_wall_ns, rx_mono_ns=monotonic_ns())
        )

    def error_received(self, exc: Exception) -> None:
        self.errors += 1


class UdpRelayReceiver:
    """Binds a datagram socket and accepts one envelope per datagram from any sender."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        runlog: RunLog,
        clock: Callable[[], int] = wall_ns,
    ) -> None:
        self._host = host
        self._port = port
        self._runlog = runlog
        self._clock = clock
        self._queue: asyncio.Queue[Arrival] = asyncio.Queue()
        self._transport: asyncio.DatagramTransport | None = None
        self._protocol: _UdpReceiverProtocol | None = None

    @property
    def bound_port(self) -> int | None:
        if self._transport is None:
            return None
        return int(self._transport.get_extra_info("sockname")[1])

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: _UdpReceiverProtocol(self._queue, self._clock),
                local_addr=(self._host, self._port),
            )
        except OSError as exc:
            raise SetupError(f"cannot bind {self._host}:{self._port}: {exc}") from exc
        self._transport = transport
        self._protocol = protocol
        self._runlog.write(
            "listen",
            transport=TRANSPORT_UDP,
            host=self._host,
            port=self.bound_port,
        )

    async def receive(self, deadline_ns: int | None) -> Arrival | None:
        remaining = _remaining_seconds(deadline_ns)
        if remaining is not None and remaining <= 0:
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=remaining)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None


def relay_receiver(
    config: Config,
    *,
    runlog: RunLog,
    clock: Callable[[], int] = wall_ns,
) -> ArrivalSource:
    if config.relay_transport == TRANSPORT_TCP:
        return TcpRelayReceiver(config.listen_host, config.relay_port, runlog=runlog, clock=clock)
    if config.relay_transport == TRANSPORT_UDP:
        return UdpRelayReceiver(config.listen_host, config.relay_port, runlog=runlog, clock=clock)
    raise ValueError(f"unknown relay transport: {config.relay_transport}")
