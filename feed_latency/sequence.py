from __future__ import annotations

import threading


class SequenceCounter:
    """Issues a gapless, unique, monotonically increasing id per call, safe across threads."""

    def __init__(self, start: int = 0) -> None:
        if start < 0:
            raise ValueError("sequence start must be >= 0")
        self._next = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    def peek(self) -> int:
        with self._lock:
            return self._next
