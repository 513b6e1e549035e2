import math

import pytest

from feed_latency.envelope import EventEnvelope
from feed_latency.latency import (
    MeasurementRecord,
    count_lost,
    percentile,
    population_stddev,
    summarize,
)


def _baseline(seq: int, latency_ms: int) -> MeasurementRecord:
    event_ms = 1_000_000 + seq
    return MeasurementRecord.from_baseline(seq, event_ms, (event_ms + latency_ms) * 1_000_000)


@pytest.mark.parametrize(
    "values",
    [[3.0], [1.0, 2.0], [5.0, 1.5, 9.25, 0.0, 7.0], [0.1, 0.2, 0.3, 100.0]],
)
def test_percentile_extremes_match_min_max(values) -> None:
    ordered = sorted(values)
    assert percentile(ordered, 0.0) == min(values)
    assert percentile(ordered, 1.0) == max(values)


@pytest.mark.parametrize("p", [0.0, 0.25, 0.5, 0.95, 0.99, 1.0])
def test_percentile_single_value(p) -> None:
    assert percentile([42.5], p) == 42.5


def test_percentile_interpolates_between_ranks() -> None:
    ordered = [10.0, 20.0, 30.0, 40.0]
    # index = 0.5 * 3 = 1.5 -> halfway between 20 and 30
    assert percentile(ordered, 0.5) == pytest.approx(25.0)
    # index = 0.95 * 3 = 2.85
    assert percentile(ordered, 0.95) == pytest.approx(30.0 * 0.15 + 40.0 * 0.85)


def test_percentile_empty_is_zero() -> None:
    assert percentile([], 0.5) == 0.0


def test_jitter_of_constant_values_is_zero() -> None:
    assert population_stddev([0.1] * 7) == 0.0
    assert population_stddev([12.0] * 3) == 0.0


def test_jitter_is_population_stddev() -> None:
    values = [2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]
    assert population_stddev(values) == pytest.approx(2.0)


def test_loss_count_with_gaps() -> None:
    assert count_lost({0, 1, 2, 5, 6}) == 2


@pytest.mark.parametrize("ids", [set(), {7}, {0, 1, 2, 3}, {10, 11, 12}])
def test_loss_count_contiguous_is_zero(ids) -> None:
    assert count_lost(ids) == 0


def test_summary_empty_collection_is_zero() -> None:
    summary = summarize("relay", [], 4)
    assert summary.sample_count == 0
    assert summary.events_lost == 4
    assert summary.avg_latency_ms == 0.0
    assert summary.p99_latency_ms == 0.0
    assert summary.jitter_stddev_ms == 0.0
    assert summary.mid_path_avg_latency_ms is None
    assert summary.mid_path_median_latency_ms is None


def test_summary_baseline_statistics() -> None:
    records = [_baseline(seq, latency) for seq, latency in enumerate([30, 10, 20, 40, 50])]
    summary = summarize("baseline", records, 0)
    assert summary.sample_count == 5
    assert summary.avg_latency_ms == pytest.approx(30.0)
    assert summary.median_latency_ms == pytest.approx(30.0)
    assert summary.min_latency_ms == pytest.approx(10.0)
    assert summary.max_latency_ms == pytest.approx(50.0)
    assert summary.p95_latency_ms == pytest.approx(48.0)
    assert summary.jitter_stddev_ms == pytest.approx(math.sqrt(200.0))
    assert summary.mid_path_avg_latency_ms is None


def test_summary_mid_path_figures_present_for_relay_records() -> None:
    records = []
    for seq, (e2e_ms, mid_ms) in enumerate([(100, 40), (110, 60), (120, 50)]):
        event_ms = 1_700_000_000_000 + seq
        rx_ns = (event_ms + e2e_ms) * 1_000_000
        envelope = EventEnvelope(
            sequence_id=seq,
            origin_receive_time=rx_ns - mid_ms * 1_000_000,
            source_event_time=event_ms,
            payload="{}",
        )
        records.append(MeasurementRecord.from_relay(envelope, rx_ns))
    summary = summarize("relay", records, 0)
    assert summary.mid_path_avg_latency_ms == pytest.approx(50.0)
    assert summary.mid_path_median_latency_ms == pytest.approx(50.0)
    assert summary.to_dict()["mid_path_avg_latency_ms"] == pytest.approx(50.0)


def test_measurement_latency_mixes_ns_and_ms_clocks() -> None:
    record = MeasurementRecord.from_baseline(0, 1_000, 1_002_500_000)
    assert record.end_to_end_latency_ms == pytest.approx(2.5)
    assert record.mid_path_receive_time is None
    assert record.mid_path_latency_ms is None
