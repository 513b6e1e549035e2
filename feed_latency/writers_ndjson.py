from __future__ import annotations

import contextlib
import os
import queue
import threading
import time
from pathlib import Path
from typing import Any, BinaryIO

import orjson

_STOP = object()


class NdjsonFileWriter:
    """Appends records to one NDJSON file from a daemon thread so the event loop never waits on disk."""

    def __init__(
        self,
        path: Path,
        *,
        max_queue: int = 10000,
        flush_interval_seconds: float = 0.25,
        batch_size: int = 200,
        fsync_on_close: bool = False,
    ) -> None:
        self.path = path
        self._records: queue.Queue[object] = queue.Queue(maxsize=max_queue)
        self._flush_interval = flush_interval_seconds
        self._batch_size = batch_size
        self._fsync_on_close = fsync_on_close
        self.written = 0
        self.dropped = 0
        self._failure: Exception | None = None
        self._thread = threading.Thread(
            target=self._drain,
            name=f"ndjson-{path.name}",
            daemon=True,
        )
        self._thread.start()

    @property
    def failure(self) -> Exception | None:
        return self._failure

    def submit(self, record: dict[str, Any]) -> bool:
        if self._failure is not None:
            return False
        try:
            self._records.put_nowait(record)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def close(self, timeout_seconds: float = 5.0) -> None:
        with contextlib.suppress(queue.Full):
            self._records.put(_STOP, timeout=timeout_seconds)
        self._thread.join(timeout=timeout_seconds)

    def _drain(self) -> None:
        batch: list[bytes] = []
        handle: BinaryIO | None = None
        deadline = time.monotonic() + self._flush_interval
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.path.open("ab")
            while True:
                timeout = max(0.0, deadline - time.monotonic())
                try:
                    item = self._records.get(timeout=timeout)
                except queue.Empty:
                    item = None
                if item is _STOP:
                    break
                if item is not None:
                    batch.append(orjson.dumps(item, option=orjson.OPT_APPEND_NEWLINE))
                if len(batch) >= self._batch_size or time.monotonic() >= deadline:
                    self._write_batch(handle, batch)
                    deadline = time.monotonic() + self._flush_interval
        except Exception as exc:
            self._failure = exc
        finally:
            if handle is not None:
                with contextlib.suppress(Exception):
                    self._write_batch(handle, batch)
                    if self._fsync_on_close:
                        os.fsync(handle.fileno())
                handle.close()

    def _write_batch(self, handle: BinaryIO, batch: list[bytes]) -> None:
        if not batch:
            return
        handle.write(b"".join(batch))
        handle.flush()
        self.written += len(batch)
        batch.clear()
