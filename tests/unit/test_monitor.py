from __future__ import annotations

from datetime import timedelta
from typing import List

import pytest

from possync.domain.models import PerformanceAlert
from possync.sync.monitor import PerformanceMonitor, severity_for
from tests.fakes import FakeClock


class _Collector:
    def __init__(self) -> None:
        self.alerts: List[PerformanceAlert] = []

    def on_alert(self, alert: PerformanceAlert) -> None:
        self.alerts.append(alert)


class _Exploding:
    def on_alert(self, alert: PerformanceAlert) -> None:
        raise RuntimeError("observer bug")


def test_slow_response_alerts_once_until_resolved(monitor: PerformanceMonitor) -> None:
    collector = _Collector()
    monitor.subscribe(collector)

    monitor.record("transaction_sync", 6.0, True)
    monitor.record("transaction_sync", 7.0, True)

    assert [a.type for a in collector.alerts] == ["slow_response"]
    assert collector.alerts[0].severity == "medium"

    monitor.record("transaction_sync", 0.2, True)
    assert monitor.active_alerts() == []
    assert collector.alerts[0].resolved_at is not None

    monitor.record("transaction_sync", 12.0, True)
    assert len(collector.alerts) == 2
    assert collector.alerts[1].severity == "critical"


def test_error_rate_alert_needs_enough_samples(monitor: PerformanceMonitor) -> None:
    for _ in range(5):
        monitor.record("transaction_sync", 0.1, False)
    assert monitor.active_alerts() == []

    for _ in range(5):
        monitor.record("transaction_sync", 0.1, True)

    [alert] = monitor.active_alerts()
    assert alert.type == "high_error_rate"
    assert alert.value == pytest.approx(50.0)


def test_queue_depth_alert_and_manual_resolution(monitor: PerformanceMonitor) -> None:
    assert monitor.check_queue_depth(monitor.max_queue_size) is None

    alert = monitor.check_queue_depth(monitor.max_queue_size * 2)

    assert alert is not None
    assert alert.type == "large_queue"
    assert alert.severity == "critical"
    assert monitor.resolve_alert("large_queue")
    assert not monitor.resolve_alert("large_queue")
    assert monitor.recent_alerts()[-1].resolved_at is not None


def test_severity_scales_with_ratio() -> None:
    assert severity_for(6, 5) == "medium"
    assert severity_for(8, 5) == "high"
    assert severity_for(10, 5) == "critical"


def test_failing_observer_does_not_break_recording(monitor: PerformanceMonitor) -> None:
    collector = _Collector()
    monitor.subscribe(_Exploding())
    monitor.subscribe(collector)

    monitor.record("transaction_sync", 9.0, True)

    assert len(collector.alerts) == 1
    assert len(monitor.samples()) == 1


def test_subscriptions_are_bounded_deduplicated_and_cancellable(monitor: PerformanceMonitor) -> None:
    collector = _Collector()
    first = monitor.subscribe(collector)
    monitor.subscribe(collector)

    first.cancel()
    monitor.record("transaction_sync", 9.0, True)
    assert collector.alerts == []

    small = PerformanceMonitor(max_observers=1)
    small.subscribe(_Collector())
    with pytest.raises(RuntimeError):
        small.subscribe(_Collector())


def test_samples_expire_after_retention(monitor: PerformanceMonitor, clock: FakeClock) -> None:
    monitor.record("delta_sync", 0.5, True)
    clock.advance(3600)
    monitor.record("delta_sync", 0.5, True)

    assert monitor.cleanup(older_than=timedelta(minutes=30)) == 1
    assert len(monitor.samples()) == 1

    clock.advance(monitor.retention.total_seconds() + 1)
    assert monitor.snapshot().total == 0


def test_snapshot_aggregates(monitor: PerformanceMonitor) -> None:
    monitor.record("transaction_sync", 1.0, True)
    monitor.record("transaction_sync", 3.0, False, error_kind="timeout")

    snapshot = monitor.snapshot()

    assert snapshot.total == 2
    assert snapshot.successes == 1
    assert snapshot.success_rate == pytest.approx(50.0)
    assert snapshot.average_seconds == pytest.approx(2.0)
    assert snapshot.peak_seconds == pytest.approx(3.0)


def test_report_rejects_unknown_period(monitor: PerformanceMonitor) -> None:
    with pytest.raises(ValueError, match="Unknown period"):
        monitor.generate_report("monthly")


def test_empty_report_says_so(monitor: PerformanceMonitor) -> None:
    report = monitor.generate_report("daily")

    assert report.total_operations == 0
    assert report.recommendations == ["No sync activity recorded in this period."]


def test_hourly_report_trends_and_recommendations(
    monitor: PerformanceMonitor, clock: FakeClock
) -> None:
    for _ in range(3):
        monitor.record("transaction_sync", 0.5, True, items=2, bytes=100)
    clock.advance(40 * 60)
    for _ in range(3):
        monitor.record("transaction_sync", 2.0, False, error_kind="timeout")

    report = monitor.generate_report("hourly")

    assert report.total_operations == 6
    assert report.items_transferred == 6
    assert report.bytes_transferred == 300
    assert report.errors_by_kind == {"timeout": 3}
    assert report.response_time_trend == "degrading"
    assert report.success_rate_trend == "degrading"
    assert "Timeouts observed; consider raising the delivery timeout." in report.recommendations
