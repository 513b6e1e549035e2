from __future__ import annotations

import asyncio
from typing import Any, Callable

import websockets

from .config import Config
from .legs import ReconnectingLeg
from .run import monotonic_ns, wall_ns
from .runlog import RunLog
from .transport import Arrival
from .ws_primitives import ReconnectPolicy, build_connect_kwargs

UPSTREAM_LEG = "upstream"


async def open_upstream(config: Config) -> Any:
    return await websockets.connect(config.upstream_ws_url, **build_connect_kwargs(config))


async def close_upstream(ws: Any) -> None:
    await ws.close()


def upstream_leg(
    config: Config,
    *,
    runlog: RunLog,
    policy: ReconnectPolicy | None = None,
) -> ReconnectingLeg[Any]:
    async def _open() -> Any:
        return await open_upstream(config)

    return ReconnectingLeg(
        UPSTREAM_LEG,
        _open,
        policy=policy or ReconnectPolicy.from_config(config),
        runlog=runlog,
        closer=close_upstream,
        attempt_timeout=config.upstream_connect_timeout_seconds,
    )


class UpstreamFeed:
    """Text messages from the upstream WebSocket, reconnecting through the leg's backoff."""

    def __init__(
        self,
        leg: ReconnectingLeg[Any],
        *,
        runlog: RunLog,
        clock: Callable[[], int] = wall_ns,
    ) -> None:
        self._leg = leg
        self._runlog = runlog
        self._clock = clock
        self.messages = 0
        self.binary_frames = 0

    @property
    def leg(self) -> ReconnectingLeg[Any]:
        return self._leg

    async def start(self) -> None:
        return None

    async def receive(self, deadline_ns: int | None) -> Arrival | None:
        while not self._leg.stopped:
            ws = self._leg.connection
            if ws is None:
                ws = await self._leg.connect(deadline_ns=deadline_ns)
                if ws is None:
                    return None
            timeout = None
            if deadline_ns is not None:
                timeout = (deadline_ns - monotonic_ns()) / 1_000_000_000
                if timeout <= 0:
                    return None
            # wait on a task so the deadline is told apart from a TimeoutError raised by recv
            pending = asyncio.ensure_future(ws.recv())
            try:
                done, _ = await asyncio.wait({pending}, timeout=timeout)
            finally:
                if not pending.done():
                    pending.cancel()
            if not done:
                return None
            try:
                raw = pending.result()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self._leg.mark_failed(exc)
                continue
            rx_wall_ns = self._clock()
            rx_mono_ns = monotonic_ns()
            if not isinstance(raw, str):
                self.binary_frames += 1
                continue
            self.messages += 1
            return Arrival(data=raw, rx_wall_ns=rx_wall_ns, rx_mono_ns=rx_mono_ns)
        return None

    async def close(self) -> None:
        await self._leg.stop()
