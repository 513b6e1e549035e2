from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Any, Iterable, Sequence

from .envelope import EventEnvelope

SETUP_BASELINE = "baseline"
SETUP_RELAY = "relay"


@dataclass(frozen=True, slots=True)
class MeasurementRecord:
    sequence_id: int
    source_event_time: int
    mid_path_receive_time: int | None
    destination_receive_time: int
    end_to_end_latency_ms: float
    mid_path_latency_ms: float | None

    @classmethod
    def from_baseline(
        cls,
        sequence_id: int,
        source_event_time: int,
        destination_receive_time: int,
    ) -> "MeasurementRecord":
        # ns local clock against ms producer clock: millisecond resolution at best
        return cls(
            sequence_id=sequence_id,
            source_event_time=source_event_time,
            mid_path_receive_time=None,
            destination_receive_time=destination_receive_time,
            end_to_end_latency_ms=destination_receive_time / 1_000_000.0 - source_event_time,
            mid_path_latency_ms=None,
        )

    @classmethod
    def from_relay(
        cls,
        envelope: EventEnvelope,
        destination_receive_time: int,
    ) -> "MeasurementRecord":
        return cls(
            sequence_id=envelope.sequence_id,
            source_event_time=envelope.source_event_time,
            mid_path_receive_time=envelope.origin_receive_time,
            destination_receive_time=destination_receive_time,
            end_to_end_latency_ms=(
                destination_receive_time / 1_000_000.0 - envelope.source_event_time
            ),
            mid_path_latency_ms=(
                (destination_receive_time - envelope.origin_receive_time) / 1_000_000.0
            ),
        )


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear-interpolation percentile over an ascending sequence, ``p`` in [0, 1]."""
    count = len(sorted_values)
    if count == 0:
        return 0.0
    if count == 1:
        return float(sorted_values[0])
    p = min(1.0, max(0.0, float(p)))
    index = p * (count - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    weight = index - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight


def population_stddev(values: Sequence[float], mean: float | None = None) -> float:
    count = len(values)
    if count == 0 or min(values) == max(values):
        return 0.0
    if mean is None:
        mean = math.fsum(values) / count
    variance = math.fsum((value - mean) * (value - mean) for value in values) / count
    return math.sqrt(variance)


def count_lost(sequence_ids: Iterable[int]) -> int:
    seen = set(sequence_ids)
    if not seen:
        return 0
    return (max(seen) - min(seen) + 1) - len(seen)


@dataclass(frozen=True, slots=True)
class ExperimentSummary:
    setup_type: str
    sample_count: int
    events_lost: int
    avg_latency_ms: float
    median_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    min_latency_ms: float
    max_latency_ms: float
    jitter_stddev_ms: float
    mid_path_avg_latency_ms: float | None = None
    mid_path_median_latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "setup_type": self.setup_type,
            "sample_count": int(self.sample_count),
            "events_lost": int(self.events_lost),
            "avg_latency_ms": float(self.avg_latency_ms),
            "median_latency_ms": float(self.median_latency_ms),
            "p95_latency_ms": float(self.p95_latency_ms),
            "p99_latency_ms": float(self.p99_latency_ms),
            "min_latency_ms": float(self.min_latency_ms),
            "max_latency_ms": float(self.max_latency_ms),
            "jitter_stddev_ms": float(self.jitter_stddev_ms),
            "mid_path_avg_latency_ms": self.mid_path_avg_latency_ms,
            "mid_path_median_latency_ms": self.mid_path_median_latency_ms,
        }


def summarize(
    setup_type: str,
    records: Sequence[MeasurementRecord],
    events_lost: int,
) -> ExperimentSummary:
    sample_count = len(records)
    if sample_count == 0:
        return ExperimentSummary(
            setup_type=setup_type,
            sample_count=0,
            events_lost=events_lost,
            avg_latency_ms=0.0,
            median_latency_ms=0.0,
            p95_latency_ms=0.0,
            p99_latency_ms=0.0,
            min_latency_ms=0.0,
            max_latency_ms=0.0,
            jitter_stddev_ms=0.0,
        )

    latencies = sorted(record.end_to_end_latency_ms for record in records)
    avg = math.fsum(latencies) / sample_count

    mid_path = sorted(
        record.mid_path_latency_ms
        for record in records
        if record.mid_path_latency_ms is not None
    )
    mid_path_avg: float | None = None
    mid_path_median: float | None = None
    if mid_path:
        mid_path_avg = math.fsum(mid_path) / len(mid_path)
        mid_path_median = percentile(mid_path, 0.50)

    return ExperimentSummary(
        setup_type=setup_type,
        sample_count=sample_count,
        events_lost=events_lost,
        avg_latency_ms=avg,
        median_latency_ms=percentile(latencies, 0.50),
        p95_latency_ms=percentile(latencies, 0.95),
        p99_latency_ms=percentile(latencies, 0.99),
        min_latency_ms=latencies[0],
        max_latency_ms=latencies[-1],
        jitter_stddev_ms=population_stddev(latencies, avg),
        mid_path_avg_latency_ms=mid_path_avg,
        mid_path_median_latency_ms=mid_path_median,
    )


@dataclass(frozen=True, slots=True)
class IntervalReport:
    elapsed_s: float
    events: int
    avg_ms: float
    min_ms: float
    max_ms: float
    mid_path_avg_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "elapsed_s": round(self.elapsed_s, 3),
            "events": self.events,
            "avg_ms": self.avg_ms,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "mid_path_avg_ms": self.mid_path_avg_ms,
        }


@dataclass(slots=True)
class IntervalAccumulator:
    start_mono_ns: int
    interval_ns: int = 1_000_000_000
    _window_start_ns: int = field(default=0, init=False)
    _latencies: list[float] = field(default_factory=list, init=False)
    _mid_path: list[float] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        if self.interval_ns <= 0:
            raise ValueError("interval_ns must be > 0")
        self._window_start_ns = self.start_mono_ns

    @property
    def pending(self) -> int:
        return len(self._latencies)

    def observe(
        self,
        now_mono_ns: int,
        latency_ms: float,
        mid_path_latency_ms: float | None = None,
    ) -> IntervalReport | None:
        self._latencies.append(latency_ms)
        if mid_path_latency_ms is not None:
            self._mid_path.append(mid_path_latency_ms)
        if now_mono_ns - self._window_start_ns < self.interval_ns:
            return None
        return self.flush(now_mono_ns)

    def flush(self, now_mono_ns: int) -> IntervalReport | None:
        report: IntervalReport | None = None
        if self._latencies:
            mid_path_avg = None
            if self._mid_path:
                mid_path_avg = math.fsum(self._mid_path) / len(self._mid_path)
            report = IntervalReport(
                elapsed_s=max(0, now_mono_ns - self.start_mono_ns) / 1_000_000_000.0,
                events=len(self._latencies),
                avg_ms=math.fsum(self._latencies) / len(self._latencies),
                min_ms=min(self._latencies),
                max_ms=max(self._latencies),
                mid_path_avg_ms=mid_path_avg,
            )
        self._latencies.clear()
        self._mid_path.clear()
        self._window_start_ns = now_mono_ns
        return report
