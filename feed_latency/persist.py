from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable

import orjson

from .latency import ExperimentSummary, MeasurementRecord

CSV_HEADER = (
    "sequence_id",
    "source_event_time",
    "mid_path_receive_time",
    "destination_receive_time",
    "latency_ms",
    "mid_path_latency_ms",
)


def write_results_json(path: Path, summary: ExperimentSummary) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(
        orjson.dumps(summary.to_dict(), option=orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE)
    )
    return path


def measurement_row(record: MeasurementRecord) -> list[str]:
    return [
        str(record.sequence_id),
        str(record.source_event_time),
        "" if record.mid_path_receive_time is None else str(record.mid_path_receive_time),
        str(record.destination_receive_time),
        f"{record.end_to_end_latency_ms:.3f}",
        "" if record.mid_path_latency_ms is None else f"{record.mid_path_latency_ms:.3f}",
    ]


def write_measurements_csv(path: Path, records: Iterable[MeasurementRecord]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = 0
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for record in records:
            writer.writerow(measurement_row(record))
            rows += 1
    return rows
