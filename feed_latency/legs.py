from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Generic, TypeVar

from .errors import LEG_CONNECT_FAILED, LEG_DOWN
from .run import monotonic_ns
from .runlog import RunLog
from .ws_primitives import ReconnectPolicy

LEG_DISCONNECTED = "disconnected"
LEG_CONNECTING = "connecting"
LEG_CONNECTED = "connected"

DEFAULT_CLOSE_TIMEOUT_SECONDS = 2.0

T = TypeVar("T")


def _remaining_seconds(deadline_ns: int | None) -> float | None:
    if deadline_ns is None:
        return None
    return (deadline_ns - monotonic_ns()) / 1_000_000_000


class ReconnectingLeg(Generic[T]):
    """One network leg: disconnected -> connecting -> connected, back to disconnected on failure.

    ``opener`` produces a live connection or raises; ``closer`` releases one.
    Attempts are unbounded; only the delay between them is capped by the policy.
    """

    def __init__(
        self,
        name: str,
        opener: Callable[[], Awaitable[T]],
        *,
        policy: ReconnectPolicy,
        runlog: RunLog,
        closer: Callable[[T], Awaitable[None]] | None = None,
        attempt_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self.state = LEG_DISCONNECTED
        self.connection: T | None = None
        self.attempts = 0
        self.connects = 0
        self.failures = 0
        self._opener = opener
        self._closer = closer
        self._policy = policy
        self._runlog = runlog
        self._attempt_timeout = attempt_timeout
        self._sleep = sleep
        self._failed_before = False
        self._stop_event = asyncio.Event()
        self._reconnect_task: asyncio.Task[T | None] | None = None

    @property
    def connected(self) -> bool:
        return self.state == LEG_CONNECTED and self.connection is not None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def connect_once(self, timeout: float | None = None) -> T:
        self.state = LEG_CONNECTING
        self.attempts += 1
        self._runlog.write(
            "leg_connect_attempt",
            leg=self.name,
            attempt=self.attempts,
            reconnect=self._failed_before,
        )
        try:
            if timeout is None:
                connection = await self._opener()
            else:
                connection = await asyncio.wait_for(self._opener(), timeout=max(0.0, timeout))
        except asyncio.CancelledError:
            self.state = LEG_DISCONNECTED
            raise
        except Exception as exc:
            self.state = LEG_DISCONNECTED
            self._failed_before = True
            self._runlog.write(
                LEG_CONNECT_FAILED,
                leg=self.name,
                attempt=self.attempts,
                error=exc,
            )
            raise
        self.connection = connection
        self.state = LEG_CONNECTED
        self.connects += 1
        self._runlog.write(
            "leg_connected",
            leg=self.name,
            attempt=self.attempts,
            reconnect=self._failed_before,
            connects=self.connects,
        )
        return connection

    async def connect(self, *, deadline_ns: int | None = None) -> T | None:
        """Connect with exponential backoff; None if stopped or the deadline passes first."""
        if self.connected:
            return self.connection
        backoff_attempt = 0
        wait_first = self._failed_before
        while not self._stop_event.is_set():
            if wait_first:
                delay = self._policy.backoff(backoff_attempt)
                backoff_attempt += 1
                remaining = _remaining_seconds(deadline_ns)
                if remaining is not None:
                    if remaining <= 0:
                        return None
                    delay = min(delay, remaining)
                self._runlog.write(
                    "leg_backoff",
                    leg=self.name,
                    delay_s=delay,
                    backoff_attempt=backoff_attempt,
                )
                await self._pause(delay)
                if self._stop_event.is_set():
                    break
            wait_first = True
            timeout = self._attempt_timeout
            remaining = _remaining_seconds(deadline_ns)
            if remaining is not None:
                if remaining <= 0:
                    return None
                timeout = remaining if timeout is None else min(timeout, remaining)
            try:
                return await self.connect_once(timeout=timeout)
            except asyncio.CancelledError:
                raise
            except Exception:
                continue
        return None

    def ensure_reconnecting(self, *, deadline_ns: int | None = None) -> asyncio.Task[T | None] | None:
        if self.connected or self._stop_event.is_set():
            return None
        if self.reconnecting:
            return self._reconnect_task
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self.connect(deadline_ns=deadline_ns),
            name=f"reconnect-{self.name}",
        )
        return self._reconnect_task

    async def mark_failed(self, exc: BaseException | None) -> None:
        connection = self.connection
        self.connection = None
        self.state = LEG_DISCONNECTED
        self.failures += 1
        self._failed_before = True
        self._runlog.write(LEG_DOWN, leg=self.name, failures=self.failures, error=exc)
        if connection is not None:
            await self._release(connection)

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        connection = self.connection
        self.connection = None
        self.state = LEG_DISCONNECTED
        if connection is not None:
            await self._release(connection)

    async def _release(self, connection: T) -> None:
        if self._closer is None:
            return
        try:
            await asyncio.wait_for(self._closer(connection), timeout=DEFAULT_CLOSE_TIMEOUT_SECONDS)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._runlog.write("leg_close_error", leg=self.name, error=exc)

    async def _pause(self, seconds: float) -> None:
        if self._sleep is not None:
            await self._sleep(seconds)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
