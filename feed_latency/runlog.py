from __future__ import annotations

from collections import deque
from dataclasses import asdict, is_dataclass
from pathlib import Path
import sys
from typing import Any, TextIO

from .errors import WARNING_RECORD_TYPES
from .run import _append_ndjson, monotonic_ns, wall_ns
from .writers_ndjson import NdjsonFileWriter


def _normalize_orjson(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if is_dataclass(value) and not isinstance(value, type):
        return _normalize_orjson(asdict(value))
    if isinstance(value, dict):
        return {str(key): _normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset, deque)):
        return [_normalize_orjson(item) for item in value]
    return str(value)


def _echo_line(record: dict[str, Any]) -> str:
    record_type = record.get("record_type", "event")
    details = " ".join(
        f"{key}={value}"
        for key, value in record.items()
        if key not in {"record_type", "run_id", "ts_wall_ns_utc", "ts_mono_ns"}
    )
    return f"[{record_type}] {details}".rstrip()


class RunLog:
    def __init__(
        self,
        run_id: str,
        path: Path | None,
        *,
        writer: NdjsonFileWriter | None = None,
        echo: bool = True,
        stream: TextIO | None = None,
        fsync_on_close: bool = False,
    ) -> None:
        self.run_id = run_id
        self.path = path
        self._writer = writer
        self._echo = echo
        self._stream = stream
        self._fsync_on_close = fsync_on_close
        self._counts: dict[str, int] = {}
        self.failed = False

    @property
    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    def count(self, record_type: str) -> int:
        return self._counts.get(record_type, 0)

    def write(self, record_type: str, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "record_type": record_type,
            "run_id": self.run_id,
            "ts_wall_ns_utc": wall_ns(),
            "ts_mono_ns": monotonic_ns(),
        }
        record.update(fields)
        normalized = _normalize_orjson(record)
        self._counts[record_type] = self._counts.get(record_type, 0) + 1
        if self._echo and record_type in WARNING_RECORD_TYPES:
            print(_echo_line(normalized), file=self._stream or sys.stderr)
        self._persist(normalized)
        return normalized

    def _persist(self, record: dict[str, Any]) -> None:
        if self.path is None or self.failed:
            return
        if self._writer is None:
            _append_ndjson(self.path, record, fsync_on_close=self._fsync_on_close)
            return
        error = self._writer.failure
        if error is not None:
            self._mark_failed(f"{type(error).__name__}: {error}")
            return
        if not self._writer.submit(record):
            self._mark_failed("runlog queue full")

    def _mark_failed(self, detail: str) -> None:
        if self.failed:
            return
        self.failed = True
        print(f"runlog failure: {detail}", file=sys.stderr)

    def close(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.close()
        error = writer.failure
        if error is not None:
            self._mark_failed(f"{type(error).__name__}: {error}")


def open_runlog(
    run_id: str,
    path: Path,
    *,
    echo: bool = True,
    fsync_on_close: bool = False,
) -> RunLog:
    writer = NdjsonFileWriter(path, fsync_on_close=fsync_on_close)
    return RunLog(run_id, path, writer=writer, echo=echo, fsync_on_close=fsync_on_close)
