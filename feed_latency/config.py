from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

ENV_PREFIX = "FEED_LATENCY_"

MODE_BASELINE = "baseline"
MODE_RELAY = "relay"
MODES = (MODE_BASELINE, MODE_RELAY)

TRANSPORT_TCP = "tcp"
TRANSPORT_UDP = "udp"
TRANSPORTS = (TRANSPORT_TCP, TRANSPORT_UDP)


_TRUE_WORDS = {"1", "true", "yes", "y", "on"}
_FALSE_WORDS = {"0", "false", "no", "n", "off"}
_NULL_WORDS = {"", "none", "null"}
_SCALARS = {"bool": bool, "int": int, "float": float, "str": str}


def parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid bool: {value}")


def field_kind(annotation: Any) -> tuple[type, bool]:
    """Scalar type of a Config annotation and whether it accepts None."""
    if not isinstance(annotation, str):
        annotation = getattr(annotation, "__name__", str(annotation))
    parts = [part.strip() for part in annotation.split("|")]
    optional = "None" in parts
    names = [part for part in parts if part != "None"]
    scalar = _SCALARS.get(names[0], str) if len(names) == 1 else str
    return scalar, optional


def coerce_field(annotation: Any, raw: Any) -> Any:
    scalar, optional = field_kind(annotation)
    if optional and (raw is None or str(raw).strip().lower() in _NULL_WORDS):
        return None
    if scalar is bool:
        return parse_bool(raw)
    if scalar is int:
        return int(str(raw).strip())
    if scalar is float:
        return float(str(raw).strip())
    return raw


@dataclass
class Config:
    # upstream market-data stream
    upstream_ws_url: str = "wss://stream.binance.com:9443/ws/btcusdt@bookTicker"
    upstream_event_time_field: str = "E"
    upstream_event_type_field: str = "e"
    upstream_symbol_field: str = "s"
    ws_ping_interval_seconds: float = 20.0
    ws_ping_timeout_seconds: float = 20.0
    ws_close_timeout_seconds: float = 5.0
    upstream_connect_timeout_seconds: float = 10.0
    ws_user_agent: str = "feed_latency"
    # relay leg
    relay_transport: str = TRANSPORT_TCP
    relay_host: str = "10.1.1.10"
    relay_port: int = 8080
    relay_connect_timeout_seconds: float = 5.0
    relay_send_timeout_seconds: float = 1.0
    listen_host: str = "0.0.0.0"
    reconnect_initial_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0
    # run control
    mode: str = MODE_BASELINE
    duration_seconds: float = 60.0
    origin_duration_seconds: float | None = None
    report_interval_seconds: float = 1.0
    output_path: str | None = None
    csv_output_path: str | None = None
    data_dir: str = "./data"
    runlog_echo: bool = True
    ndjson_fsync_on_close: bool = False

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            if field.name not in overrides:
                continue
            value = overrides[field.name]
            if value is None and not field_kind(field.type)[1]:
                continue
            setattr(self, field.name, value)
        return self

    def validate(self) -> "Config":
        if self.mode not in MODES:
            raise ValueError(f"invalid mode: {self.mode} (expected one of {', '.join(MODES)})")
        if self.relay_transport not in TRANSPORTS:
            raise ValueError(
                f"invalid relay_transport: {self.relay_transport} "
                f"(expected one of {', '.join(TRANSPORTS)})"
            )
        if self.duration_seconds <= 0:
            raise ValueError("duration_seconds must be > 0")
        if self.reconnect_initial_delay_seconds <= 0:
            raise ValueError("reconnect_initial_delay_seconds must be > 0")
        if self.reconnect_max_delay_seconds < self.reconnect_initial_delay_seconds:
            raise ValueError(
                "reconnect_max_delay_seconds must be >= reconnect_initial_delay_seconds"
            )
        if self.report_interval_seconds <= 0:
            raise ValueError("report_interval_seconds must be > 0")
        return self

    @classmethod
    def from_env_and_cli(cls, cli_overrides: dict[str, Any], env: dict[str, str]) -> "Config":
        cfg = cls().apply_overrides(cli_overrides)
        for field in fields(cfg):
            # an explicit CLI value, including an explicit null, beats the environment
            if field.name in cli_overrides:
                continue
            env_key = ENV_PREFIX + field.name.upper()
            if env_key in env:
                setattr(cfg, field.name, coerce_field(field.type, env[env_key]))
        return cfg
