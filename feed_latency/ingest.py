from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .config import MODE_BASELINE, MODE_RELAY, Config
from .envelope import decode_envelope, decode_upstream
from .errors import (
    UPSTREAM_MALFORMED,
    WIRE_MALFORMED,
    EnvelopeDecodeError,
    UpstreamDecodeError,
)
from .latency import (
    SETUP_BASELINE,
    SETUP_RELAY,
    IntervalAccumulator,
    IntervalReport,
    MeasurementRecord,
    count_lost,
)
from .run import monotonic_ns
from .runlog import RunLog
from .sequence import SequenceCounter
from .transport import Arrival, ArrivalSource


@dataclass(slots=True)
class IngestionResult:
    setup_type: str
    records: list[MeasurementRecord]
    events_lost: int
    malformed: int
    elapsed_ns: int


class IngestionSession:
    def __init__(
        self,
        *,
        mode: str,
        source: ArrivalSource,
        runlog: RunLog,
        duration_seconds: float,
        report_interval_seconds: float = 1.0,
        reporter: Callable[[IntervalReport], None] | None = None,
        event_time_field: str = "E",
        event_type_field: str = "e",
        symbol_field: str = "s",
    ) -> None:
        if mode not in (MODE_BASELINE, MODE_RELAY):
            raise ValueError(f"unknown mode: {mode}")
        self._mode = mode
        self._source = source
        self._runlog = runlog
        self._duration_ns = int(duration_seconds * 1_000_000_000)
        self._interval_ns = int(report_interval_seconds * 1_000_000_000)
        self._reporter = reporter
        self._decode_kwargs = {
            "event_time_field": event_time_field,
            "event_type_field": event_type_field,
            "symbol_field": symbol_field,
        }
        self._records: list[MeasurementRecord] = []
        self._sequence_ids: set[int] = set()
        self._local_sequence = SequenceCounter()
        self._malformed = 0

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        source: ArrivalSource,
        runlog: RunLog,
        reporter: Callable[[IntervalReport], None] | None = None,
    ) -> "IngestionSession":
        return cls(
            mode=config.mode,
            source=source,
            runlog=runlog,
            duration_seconds=config.duration_seconds,
            report_interval_seconds=config.report_interval_seconds,
            reporter=reporter,
            event_time_field=config.upstream_event_time_field,
            event_type_field=config.upstream_event_type_field,
            symbol_field=config.upstream_symbol_field,
        )

    @property
    def setup_type(self) -> str:
        return SETUP_RELAY if self._mode == MODE_RELAY else SETUP_BASELINE

    async def run(self) -> IngestionResult:
        start_ns = monotonic_ns()
        deadline_ns = start_ns + self._duration_ns
        accumulator = IntervalAccumulator(start_ns, self._interval_ns)
        self._runlog.write(
            "ingest_start",
            mode=self._mode,
            duration_ns=self._duration_ns,
        )
        while monotonic_ns() < deadline_ns:
            arrival = await self._source.receive(deadline_ns)
            if arrival is None:
                break
            record = self._measure(arrival)
            if record is None:
                continue
            self._records.append(record)
            report = accumulator.observe(
                arrival.rx_mono_ns,
                record.end_to_end_latency_ms,
                record.mid_path_latency_ms,
            )
            if report is not None:
                self._emit(report)

        end_ns = monotonic_ns()
        events_lost = count_lost(self._sequence_ids) if self._mode == MODE_RELAY else 0
        records, self._records = self._records, []
        self._runlog.write(
            "ingest_end",
            mode=self._mode,
            samples=len(records),
            distinct_sequence_ids=len(self._sequence_ids),
            events_lost=events_lost,
            malformed=self._malformed,
            elapsed_ns=end_ns - start_ns,
        )
        return IngestionResult(
            setup_type=self.setup_type,
            records=records,
            events_lost=events_lost,
            malformed=self._malformed,
            elapsed_ns=end_ns - start_ns,
        )

    def _measure(self, arrival: Arrival) -> MeasurementRecord | None:
        if self._mode == MODE_RELAY:
            try:
                envelope = decode_envelope(arrival.data)
            except EnvelopeDecodeError as exc:
                self._malformed += 1
                self._runlog.write(
                    WIRE_MALFORMED,
                    reason=exc.reason,
                    error=str(exc),
                    sample=exc.sample,
                )
                return None
            self._sequence_ids.add(envelope.sequence_id)
            return MeasurementRecord.from_relay(envelope, arrival.rx_wall_ns)

        try:
            event = decode_upstream(arrival.data, **self._decode_kwargs)
        except UpstreamDecodeError as exc:
            self._malformed += 1
            self._runlog.write(
                UPSTREAM_MALFORMED,
                reason=exc.reason,
                error=str(exc),
                sample=exc.sample,
            )
            return None
        return MeasurementRecord.from_baseline(
            self._local_sequence.next(),
            event.event_time_ms,
            arrival.rx_wall_ns,
        )

    def _emit(self, report: IntervalReport) -> None:
        self._runlog.write("interval", mode=self._mode, **report.to_dict())
        if self._reporter is not None:
            self._reporter(report)
