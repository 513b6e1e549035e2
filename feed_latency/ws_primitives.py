from __future__ import annotations

from dataclasses import dataclass, field
import inspect
from typing import Any

import websockets

from .config import Config

# legacy and asyncio-based websockets clients name these kwargs differently
_CONNECT_PARAMS = inspect.signature(websockets.connect).parameters
CONNECT_SUPPORTS_CLOSE_TIMEOUT = "close_timeout" in _CONNECT_PARAMS
CONNECT_HEADERS_PARAM: str | None = next(
    (name for name in ("additional_headers", "extra_headers") if name in _CONNECT_PARAMS),
    None,
)


@dataclass(slots=True)
class DropCounter:
    total: int = 0
    by_reason: dict[str, int] = field(default_factory=dict)

    def bump(self, reason: str, count: int = 1) -> None:
        self.total += count
        self.by_reason[reason] = self.by_reason.get(reason, 0) + count


@dataclass(slots=True)
class ReconnectPolicy:
    initial_seconds: float = 1.0
    max_seconds: float = 30.0

    def backoff(self, attempt: int) -> float:
        # attempt 0 waits initial_seconds, doubling per failed attempt
        if attempt < 0:
            attempt = 0
        delay = self.initial_seconds * (2 ** min(attempt, 62))
        return max(0.0, min(delay, self.max_seconds))

    @classmethod
    def from_config(cls, config: Config) -> "ReconnectPolicy":
        return cls(
            initial_seconds=config.reconnect_initial_delay_seconds,
            max_seconds=config.reconnect_max_delay_seconds,
        )


def normalize_ws_keepalive(config: Config) -> tuple[float | None, float | None]:
    # non-positive disables the keepalive
    interval = config.ws_ping_interval_seconds
    timeout = config.ws_ping_timeout_seconds
    return (interval if interval > 0 else None, timeout if timeout > 0 else None)


def build_connect_kwargs(config: Config) -> dict[str, Any]:
    ping_interval, ping_timeout = normalize_ws_keepalive(config)
    connect_kwargs: dict[str, Any] = {
        "ping_interval": ping_interval,
        "ping_timeout": ping_timeout,
    }
    if CONNECT_SUPPORTS_CLOSE_TIMEOUT and config.ws_close_timeout_seconds > 0:
        connect_kwargs["close_timeout"] = config.ws_close_timeout_seconds
    if config.ws_user_agent and CONNECT_HEADERS_PARAM is not None:
        connect_kwargs[CONNECT_HEADERS_PARAM] = [("User-Agent", config.ws_user_agent)]
    return connect_kwargs
