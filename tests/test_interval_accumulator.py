import pytest

from feed_latency.latency import IntervalAccumulator


def test_interval_emits_at_boundary_and_clears() -> None:
    acc = IntervalAccumulator(start_mono_ns=0, interval_ns=1_000)
    assert acc.observe(100, 10.0) is None
    assert acc.observe(500, 30.0, 4.0) is None
    report = acc.observe(1_000, 20.0, 6.0)
    assert report is not None
    assert report.events == 3
    assert report.avg_ms == pytest.approx(20.0)
    assert report.min_ms == 10.0
    assert report.max_ms == 30.0
    assert report.mid_path_avg_ms == pytest.approx(5.0)
    assert acc.pending == 0

    assert acc.observe(1_500, 1.0) is None
    report = acc.observe(2_000, 3.0)
    assert report is not None
    assert report.events == 2
    assert report.mid_path_avg_ms is None


def test_interval_flush_without_samples_returns_none() -> None:
    acc = IntervalAccumulator(start_mono_ns=0, interval_ns=1_000)
    assert acc.flush(5_000) is None


def test_interval_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        IntervalAccumulator(start_mono_ns=0, interval_ns=0)
