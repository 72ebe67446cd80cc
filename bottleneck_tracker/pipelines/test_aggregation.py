import pytest

from bottleneck_tracker.pipelines.aggregation import Aggregator, SampleWindow, compute_statistics
from bottleneck_tracker.pipelines.models import TelemetryRecord


def make_record(machine_id: str, timestamp: int, runtime: float) -> TelemetryRecord:
    return TelemetryRecord(machine_id=machine_id, timestamp=timestamp, runtime_minutes=runtime)


class TestComputeStatistics:
    def test_ten_samples(self):
        stats = compute_statistics("M-1", [10, 20, 30, 40, 50, 60, 70, 80, 90, 100], computed_at=1000)
        assert stats.sample_count == 10
        assert stats.avg_runtime == pytest.approx(55.0)
        assert stats.max_runtime == 100
        assert stats.bottleneck_ratio == pytest.approx(0.55)
        assert stats.bottleneck_score == pytest.approx(0.55)
        assert stats.alert is False
        assert stats.computed_at == 1000

    def test_empty_window_uses_unit_max(self):
        stats = compute_statistics("M-1", [], computed_at=1)
        assert stats.sample_count == 0
        assert stats.avg_runtime == 0.0
        assert stats.max_runtime == 1.0
        assert stats.bottleneck_ratio == 0.0

    def test_alert_rule_sets_flag(self):
        stats = compute_statistics("M-1", [90, 100], computed_at=1, alert_rule=lambda s: s.bottleneck_ratio > 0.8)
        assert stats.alert is True

    def test_ratio_bounds(self):
        stats = compute_statistics("M-1", [3.0, 7.0, 5.0], computed_at=1)
        assert 0 < stats.bottleneck_ratio <= 1


class TestSampleWindow:
    def test_full(self):
        window = SampleWindow(size=2)
        window.add(1)
        assert not window.full
        window.add(2)
        assert window.full
        window.reset()
        assert window.count == 0


class TestAggregator:
    def test_window_closes_at_size(self):
        aggregator = Aggregator(window_size=3)
        assert aggregator.observe(make_record("M-1", 1, 10)) is None
        assert aggregator.observe(make_record("M-1", 2, 20)) is None
        stats = aggregator.observe(make_record("M-1", 3, 30))
        assert stats is not None
        assert stats.sample_count == 3
        assert stats.avg_runtime == pytest.approx(20.0)
        assert stats.computed_at == 3
        assert aggregator.pending("M-1") == 0

    def test_machines_are_independent(self):
        aggregator = Aggregator(window_size=2)
        aggregator.observe(make_record("M-1", 1, 10))
        aggregator.observe(make_record("M-2", 2, 10))
        assert aggregator.pending("M-1") == 1
        assert aggregator.pending("M-2") == 1

    def test_samples_after_close_start_next_window(self):
        aggregator = Aggregator(window_size=2)
        aggregator.observe(make_record("M-1", 1, 10))
        aggregator.observe(make_record("M-1", 2, 10))
        aggregator.observe(make_record("M-1", 3, 50))
        assert aggregator.pending("M-1") == 1

    def test_redelivery_is_replayed(self):
        aggregator = Aggregator(window_size=2)
        aggregator.observe(make_record("M-1", 1, 10), message_id="M-1:1")
        first = aggregator.observe(make_record("M-1", 2, 30), message_id="M-1:2")
        again = aggregator.observe(make_record("M-1", 2, 30), message_id="M-1:2")
        assert first is not None
        assert again == first
        assert aggregator.pending("M-1") == 0
        assert aggregator.get_summary()["windows_closed"] == 1

    def test_redelivery_without_close(self):
        aggregator = Aggregator(window_size=5)
        aggregator.observe(make_record("M-1", 1, 10), message_id="M-1:1")
        aggregator.observe(make_record("M-1", 1, 10), message_id="M-1:1")
        assert aggregator.pending("M-1") == 1

    def test_flush_closes_partial_windows(self):
        aggregator = Aggregator(window_size=10)
        aggregator.observe(make_record("M-1", 1, 40))
        aggregator.observe(make_record("M-1", 2, 60))
        aggregator.observe(make_record("M-2", 3, 80))
        closed = {s.machine_id: s for s in aggregator.flush(computed_at=99)}
        assert set(closed) == {"M-1", "M-2"}
        assert closed["M-1"].sample_count == 2
        assert closed["M-1"].avg_runtime == pytest.approx(50.0)
        assert closed["M-2"].computed_at == 99
        assert aggregator.flush(computed_at=100) == []

    def test_reset(self):
        aggregator = Aggregator(window_size=10)
        aggregator.observe(make_record("M-1", 1, 40))
        aggregator.reset()
        assert aggregator.get_summary()["machines"] == 0

    def test_flush_stamps_after_latest_sample(self):
        aggregator = Aggregator(window_size=10)
        aggregator.observe(make_record("M-1", 5000, 40))
        aggregator.observe(make_record("M-2", 10, 40))
        closed = {s.machine_id: s for s in aggregator.flush(computed_at=4000)}
        assert closed["M-1"].computed_at == 5001
        assert closed["M-2"].computed_at == 4000
