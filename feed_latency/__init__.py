"""Cross-site market-data relay latency experiment."""

__all__ = [
    "cli",
    "config",
    "controller",
    "envelope",
    "errors",
    "ingest",
    "latency",
    "legs",
    "persist",
    "relay",
    "run",
    "runlog",
    "sequence",
    "transport",
    "upstream",
    "ws_primitives",
]
