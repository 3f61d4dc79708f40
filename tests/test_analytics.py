"""
Tests for metric collection and accuracy rates.
"""
from datetime import timedelta

import pytest

from analytics.src.analytics_service import AggregationPeriod, AnalyticsService, MetricKind
from kernel.src.errors import ValidationFailure
from kernel.src.ports import MetricEvent


@pytest.fixture
def analytics(clock):
    return AnalyticsService(clock=clock)


def emit(analytics, kind, at, **attributes):
    analytics.emit(MetricEvent(kind=kind.value, occurred_at=at, user_id="user-1",
                               attributes=attributes))


class TestAccuracy:
    def test_empty_rates_are_zero(self, analytics):
        metrics = analytics.get_accuracy_metrics()
        assert metrics.detection_rate == 0.0
        assert metrics.false_positive_rate == 0.0
        assert metrics.false_negative_rate == 0.0

    def test_rates(self, analytics, clock):
        for _ in range(10):
            emit(analytics, MetricKind.SUBMISSION, clock())
        for _ in range(4):
            emit(analytics, MetricKind.CHEAT_DETECTION, clock())
        emit(analytics, MetricKind.FALSE_POSITIVE, clock(), flags=["superhuman_timing"])
        emit(analytics, MetricKind.FALSE_NEGATIVE, clock())

        metrics = analytics.get_accuracy_metrics()
        assert metrics.detection_rate == 0.4
        assert metrics.false_positive_rate == 0.25
        assert metrics.false_negative_rate == 0.25
        assert metrics.to_dict()["total_submissions"] == 10

    def test_false_positive_flags(self, analytics, clock):
        emit(analytics, MetricKind.FALSE_POSITIVE, clock(), flags=["superhuman_timing", "too_optimal"])
        emit(analytics, MetricKind.FALSE_POSITIVE, clock(), flags=["superhuman_timing"])
        assert analytics.get_false_positive_flags() == {"superhuman_timing": 2, "too_optimal": 1}


class TestPeriods:
    def test_event_counts_window(self, analytics, clock):
        emit(analytics, MetricKind.SUBMISSION, clock() - timedelta(days=2))
        emit(analytics, MetricKind.SUBMISSION, clock() - timedelta(hours=2))
        emit(analytics, MetricKind.CASE_CREATED, clock() - timedelta(minutes=5))
        assert analytics.get_event_counts("day") == {"submission": 1, "case_created": 1}
        assert analytics.get_event_counts("week") == {"submission": 2, "case_created": 1}

    def test_unknown_period(self, analytics):
        with pytest.raises(ValidationFailure) as exc:
            analytics.get_event_counts("fortnight")
        assert exc.value.reason == "invalid_period"

    def test_snapshot_excludes_end_boundary(self, analytics, clock):
        """快照窗口为 [now - span, now)"""
        now = clock()
        emit(analytics, MetricKind.SUBMISSION, now - timedelta(days=1))
        emit(analytics, MetricKind.SUBMISSION, now - timedelta(hours=1))
        emit(analytics, MetricKind.SUBMISSION, now)

        snap = analytics.snapshot(now, AggregationPeriod.DAILY)
        assert snap.accuracy.total_submissions == 2
        assert analytics.latest_snapshot() == snap
        assert snap.to_dict()["period"] == "day"

    def test_dashboard(self, analytics, clock):
        emit(analytics, MetricKind.CHEAT_DETECTION, clock())
        dashboard = analytics.get_dashboard()
        assert dashboard["latest_snapshot"] is None
        assert dashboard["last_24h"] == {"cheat_detection": 1}


class TestStoredMetrics:
    def test_events_and_snapshots_are_shared_through_the_store(self, store, clock):
        first = AnalyticsService(clock=clock, store=store)
        emit(first, MetricKind.SUBMISSION, clock())
        emit(first, MetricKind.CHEAT_DETECTION, clock())
        emit(first, MetricKind.SUBMISSION, clock() - timedelta(hours=1))
        snap = first.snapshot()

        second = AnalyticsService(clock=clock, store=store)
        # 按发生时间排序，同一时刻保持写入顺序
        assert [e.kind for e in second.events] == ["submission", "submission", "cheat_detection"]
        assert second.latest_snapshot() == snap
        assert second.get_accuracy_metrics().total_submissions == 2
