from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import Path
import signal
import sys
from typing import Callable, TextIO

from .config import MODE_BASELINE, MODE_RELAY, Config
from .errors import SETUP_FATAL, SetupError
from .ingest import IngestionSession
from .latency import ExperimentSummary, IntervalReport, MeasurementRecord, summarize
from .legs import ReconnectingLeg
from .persist import write_measurements_csv, write_results_json
from .relay import RelaySession, RelayStats, downstream_leg
from .run import RunBootstrap, bootstrap_run, monotonic_ns, wall_ns
from .runlog import RunLog, open_runlog
from .sequence import SequenceCounter
from .transport import ArrivalSource, RelayLink, relay_receiver
from .upstream import UpstreamFeed, upstream_leg


@dataclass(slots=True)
class DestinationRun:
    run: RunBootstrap
    summary: ExperimentSummary
    records: list[MeasurementRecord]
    results_path: Path
    csv_path: Path | None


@dataclass(slots=True)
class OriginRun:
    run: RunBootstrap
    stats: RelayStats
    sequence_next: int


def format_interval_line(report: IntervalReport) -> str:
    line = (
        f"{report.elapsed_s:>6.1f}s | {report.events:>8} | {report.avg_ms:>9.2f} ms"
        f" | {report.min_ms:>8.1f} | {report.max_ms:>8.1f}"
    )
    if report.mid_path_avg_ms is not None:
        line += f" | mid-path {report.mid_path_avg_ms:>7.2f} ms"
    return line


def format_summary_lines(summary: ExperimentSummary) -> list[str]:
    lines = [
        "=== Experiment Results ===",
        f"Setup: {summary.setup_type}",
        f"Samples: {summary.sample_count}",
        f"Events lost: {summary.events_lost}",
        f"Average latency: {summary.avg_latency_ms:.2f} ms",
        f"Median latency: {summary.median_latency_ms:.2f} ms",
        f"P95 latency: {summary.p95_latency_ms:.2f} ms",
        f"P99 latency: {summary.p99_latency_ms:.2f} ms",
        f"Min latency: {summary.min_latency_ms:.2f} ms",
        f"Max latency: {summary.max_latency_ms:.2f} ms",
        f"Jitter (stddev): {summary.jitter_stddev_ms:.2f} ms",
    ]
    if summary.mid_path_avg_latency_ms is not None:
        lines.append(f"Mid-path average latency: {summary.mid_path_avg_latency_ms:.2f} ms")
    if summary.mid_path_median_latency_ms is not None:
        lines.append(f"Mid-path median latency: {summary.mid_path_median_latency_ms:.2f} ms")
    return lines


def _console_reporter(stream: TextIO | None) -> Callable[[IntervalReport], None]:
    def _report(report: IntervalReport) -> None:
        print(format_interval_line(report), file=stream or sys.stdout)

    return _report


def build_arrival_source(
    config: Config,
    *,
    runlog: RunLog,
    clock: Callable[[], int] = wall_ns,
) -> ArrivalSource:
    if config.mode == MODE_RELAY:
        return relay_receiver(config, runlog=runlog, clock=clock)
    if config.mode == MODE_BASELINE:
        return UpstreamFeed(upstream_leg(config, runlog=runlog), runlog=runlog, clock=clock)
    raise ValueError(f"unknown mode: {config.mode}")


async def run_destination(
    config: Config,
    *,
    run_id: str | None = None,
    source: ArrivalSource | None = None,
    console: TextIO | None = None,
) -> DestinationRun:
    config.validate()
    run = bootstrap_run(config, "destination", run_id)
    runlog = open_runlog(
        run.run_id,
        run.runlog_path,
        echo=config.runlog_echo,
        fsync_on_close=config.ndjson_fsync_on_close,
    )
    out = console or sys.stdout
    try:
        if source is None:
            source = build_arrival_source(config, runlog=runlog)
        try:
            await source.start()
        except SetupError as exc:
            runlog.write(SETUP_FATAL, error=str(exc))
            raise
        print(f"destination run dir: {run.run_dir}", file=out)
        print(
            f"collecting {config.mode} data for {config.duration_seconds:g} seconds",
            file=out,
        )
        session = IngestionSession.from_config(
            config,
            source=source,
            runlog=runlog,
            reporter=_console_reporter(out),
        )
        try:
            result = await session.run()
        finally:
            await source.close()

        summary = summarize(result.setup_type, result.records, result.events_lost)
        runlog.write("run_summary", **summary.to_dict())

        results_path = (
            Path(config.output_path) if config.output_path else run.run_dir / "results.json"
        )
        write_results_json(results_path, summary)
        csv_path = Path(config.csv_output_path) if config.csv_output_path else None
        if csv_path is not None:
            write_measurements_csv(csv_path, result.records)
        runlog.write(
            "run_end",
            results_path=results_path,
            csv_path=csv_path,
            samples=summary.sample_count,
            elapsed_ns=result.elapsed_ns,
        )
        for line in format_summary_lines(summary):
            print(line, file=out)
        print(f"results written to {results_path}", file=out)
        return DestinationRun(
            run=run,
            summary=summary,
            records=result.records,
            results_path=results_path,
            csv_path=csv_path,
        )
    finally:
        runlog.close()


async def run_origin(
    config: Config,
    *,
    run_id: str | None = None,
    upstream: UpstreamFeed | None = None,
    downstream: ReconnectingLeg[RelayLink] | None = None,
    counter: SequenceCounter | None = None,
) -> OriginRun:
    config.validate()
    run = bootstrap_run(config, "origin", run_id)
    runlog = open_runlog(
        run.run_id,
        run.runlog_path,
        echo=config.runlog_echo,
        fsync_on_close=config.ndjson_fsync_on_close,
    )
    counter = counter or SequenceCounter()
    try:
        if upstream is None:
            upstream = UpstreamFeed(upstream_leg(config, runlog=runlog), runlog=runlog)
        if downstream is None:
            downstream = downstream_leg(config, runlog=runlog)
        session = RelaySession.from_config(
            config,
            upstream=upstream,
            downstream=downstream,
            counter=counter,
            runlog=runlog,
        )
        deadline_ns = None
        if config.origin_duration_seconds is not None:
            deadline_ns = monotonic_ns() + int(config.origin_duration_seconds * 1_000_000_000)
        print(f"origin run dir: {run.run_dir}")
        print(
            f"relaying {config.upstream_ws_url} -> "
            f"{config.relay_transport}://{config.relay_host}:{config.relay_port}"
        )
        stats = await session.run(deadline_ns)
        return OriginRun(run=run, stats=stats, sequence_next=counter.peek())
    finally:
        runlog.close()


async def run_until_signalled(coro) -> object:
    """Run ``coro`` as a task that SIGINT/SIGTERM cancel; returns None when cancelled that way."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(coro)
    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, task.cancel)
            installed.append(signum)
    try:
        return await task
    except asyncio.CancelledError:
        if task.cancelled():
            return None
        raise
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
