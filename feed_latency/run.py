from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import os
from pathlib import Path
import secrets
import time
from typing import Any

import orjson

from .config import Config

MANIFEST_VERSION = 1
RUNLOG_NAME = "runlog.ndjson"
MANIFEST_NAME = "manifest.json"


def monotonic_ns() -> int:
    # perf_counter_ns is higher resolution than monotonic_ns on some platforms.
    return time.perf_counter_ns()


def wall_ns() -> int:
    return time.time_ns()


@dataclass(frozen=True, slots=True)
class RunBootstrap:
    run_id: str
    role: str
    run_dir: Path
    started_wall_ns: int
    started_mono_ns: int

    @property
    def runlog_path(self) -> Path:
        return self.run_dir / RUNLOG_NAME

    @property
    def manifest_path(self) -> Path:
        return self.run_dir / MANIFEST_NAME


def new_run_id(role: str) -> str:
    started = datetime.now(timezone.utc)
    return f"{role}-{started:%Y%m%dT%H%M%SZ}-{secrets.token_hex(3)}"


def _append_ndjson(
    path: Path,
    record: dict[str, Any],
    *,
    fsync_on_close: bool = False,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("ab") as handle:
        handle.write(orjson.dumps(record, option=orjson.OPT_APPEND_NEWLINE))
        if fsync_on_close:
            handle.flush()
            os.fsync(handle.fileno())


def bootstrap_run(config: Config, role: str, run_id: str | None = None) -> RunBootstrap:
    """Create ``<data_dir>/runs/<run_id>``, its manifest and the first run-log record.

    The run id must be new; reusing a directory raises ``FileExistsError``.
    """
    run_id = run_id or new_run_id(role)
    run = RunBootstrap(
        run_id=run_id,
        role=role,
        run_dir=Path(config.data_dir) / "runs" / run_id,
        started_wall_ns=wall_ns(),
        started_mono_ns=monotonic_ns(),
    )
    run.run_dir.mkdir(parents=True, exist_ok=False)
    manifest = {
        "manifest_version": MANIFEST_VERSION,
        "run_id": run.run_id,
        "role": role,
        "started_wall_ns": run.started_wall_ns,
        "started_mono_ns": run.started_mono_ns,
        "config": asdict(config),
    }
    run.manifest_path.write_bytes(
        orjson.dumps(manifest, option=orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE)
    )
    _append_ndjson(
        run.runlog_path,
        {
            "record_type": "run_start",
            "run_id": run.run_id,
            "role": role,
            "mode": config.mode,
            "relay_transport": config.relay_transport,
            "ts_wall_ns_utc": run.started_wall_ns,
            "ts_mono_ns": run.started_mono_ns,
        },
        fsync_on_close=config.ndjson_fsync_on_close,
    )
    return run
