"""
Performance and health monitor for the sync engine.

Keeps a bounded, time-ordered buffer of ``PerformanceSample`` records, derives
rolling aggregates from it, and raises threshold alerts to subscribed
observers. Alerts are deduplicated by type: a type fires once, stays active
until its metric drops back under the threshold (or it is resolved by hand),
and only then can fire again.
"""

from __future__ import annotations

from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from possync.config import Settings, get_settings
from possync.domain.models import (
    MonitorSnapshot,
    PerformanceAlert,
    PerformanceReport,
    PerformanceSample,
    Severity,
)
from possync.utils.clock import Clock, utc_now
from possync.utils.logging import get_logger

log = get_logger(__name__)

ERROR_RATE_WINDOW = 100
MIN_SAMPLES_FOR_ERROR_RATE = 10
REPORT_PERIODS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


@runtime_checkable
class AlertObserver(Protocol):
    def on_alert(self, alert: PerformanceAlert) -> None: ...


class Subscription:
    """Handle returned by ``PerformanceMonitor.subscribe``."""

    def __init__(self, monitor: "PerformanceMonitor", observer: AlertObserver) -> None:
        self._monitor = monitor
        self._observer = observer
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self._monitor._unsubscribe(self._observer)
            self.active = False


def severity_for(value: float, threshold: float) -> Severity:
    ratio = value / threshold if threshold > 0 else float("inf")
    if ratio >= 2:
        return "critical"
    if ratio >= 1.5:
        return "high"
    return "medium"


def _trend(first: float, second: float, tolerance: float, lower_is_better: bool) -> str:
    delta = second - first
    if abs(delta) <= tolerance:
        return "stable"
    improved = delta < 0 if lower_is_better else delta > 0
    return "improving" if improved else "degrading"


def _success_rate(samples: Sequence[PerformanceSample]) -> float:
    if not samples:
        return 100.0
    return sum(1 for s in samples if s.success) / len(samples) * 100


def _average(samples: Sequence[PerformanceSample]) -> float:
    if not samples:
        return 0.0
    return sum(s.duration_seconds for s in samples) / len(samples)


class PerformanceMonitor:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        max_observers: int = 16,
    ) -> None:
        settings = settings or get_settings()
        self._clock = clock
        self.max_response_time = settings.alert_max_response_time
        self.max_error_rate = settings.alert_max_error_rate
        self.max_queue_size = settings.alert_max_queue_size
        self.retention = timedelta(hours=settings.monitor_retention_hours)
        self.max_observers = max_observers
        self._samples: Deque[PerformanceSample] = deque(maxlen=settings.monitor_max_samples)
        self._observers: List[AlertObserver] = []
        self._active: Dict[str, PerformanceAlert] = {}
        self._history: Deque[PerformanceAlert] = deque(maxlen=100)

    # Observers

    def subscribe(self, observer: AlertObserver) -> Subscription:
        if observer not in self._observers:
            if len(self._observers) >= self.max_observers:
                raise RuntimeError(f"monitor already has {self.max_observers} observers")
            self._observers.append(observer)
        return Subscription(self, observer)

    def _unsubscribe(self, observer: AlertObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    # Recording

    def record(
        self,
        kind: str,
        duration: float,
        success: bool,
        items: int = 0,
        bytes: int = 0,
        error_kind: Optional[str] = None,
    ) -> PerformanceSample:
        sample = PerformanceSample(
            kind=kind,
            duration_seconds=duration,
            success=success,
            items=items,
            bytes=bytes,
            error_kind=error_kind,
            recorded_at=self._clock(),
        )
        self._samples.append(sample)
        self._prune()
        self._check_response_time(sample)
        self._check_error_rate()
        return sample

    def samples(self) -> List[PerformanceSample]:
        return list(self._samples)

    def _prune(self) -> None:
        cutoff = self._clock() - self.retention
        while self._samples and self._samples[0].recorded_at < cutoff:
            self._samples.popleft()

    def cleanup(self, older_than: Optional[timedelta] = None) -> int:
        """Drop samples older than ``older_than`` (default: the retention window)."""
        cutoff = self._clock() - (older_than or self.retention)
        before = len(self._samples)
        while self._samples and self._samples[0].recorded_at < cutoff:
            self._samples.popleft()
        return before - len(self._samples)

    # Aggregates

    def error_rate(self) -> float:
        recent = list(self._samples)[-ERROR_RATE_WINDOW:]
        if not recent:
            return 0.0
        return sum(1 for s in recent if not s.success) / len(recent) * 100

    def snapshot(self) -> MonitorSnapshot:
        self._prune()
        samples = list(self._samples)
        if not samples:
            return MonitorSnapshot()
        span = (samples[-1].recorded_at - samples[0].recorded_at).total_seconds()
        minutes = max(span / 60, 1.0)
        return MonitorSnapshot(
            total=len(samples),
            successes=sum(1 for s in samples if s.success),
            success_rate=_success_rate(samples),
            average_seconds=_average(samples),
            peak_seconds=max(s.duration_seconds for s in samples),
            throughput_per_minute=len(samples) / minutes,
            error_rate=self.error_rate(),
        )

    # Alerts

    def _raise(
        self, alert_type: str, value: float, threshold: float, message: str
    ) -> Optional[PerformanceAlert]:
        if alert_type in self._active:
            return None
        alert = PerformanceAlert(
            type=alert_type,
            severity=severity_for(value, threshold),
            message=message,
            value=value,
            threshold=threshold,
            raised_at=self._clock(),
        )
        self._active[alert_type] = alert
        self._history.append(alert)
        log.warning(
            f"[ALERT] {alert_type}",
            extra={"severity": alert.severity, "value": value, "threshold": threshold},
        )
        for observer in list(self._observers):
            try:
                observer.on_alert(alert)
            except Exception:  # noqa: BLE001 - a bad observer must not break recording
                log.exception("[ALERT] observer failed", extra={"alert": alert_type})
        return alert

    def resolve_alert(self, alert_type: str) -> bool:
        alert = self._active.pop(alert_type, None)
        if alert is None:
            return False
        alert.resolved_at = self._clock()
        log.info(f"[ALERT] {alert_type} resolved")
        return True

    def _check_response_time(self, sample: PerformanceSample) -> None:
        if sample.duration_seconds > self.max_response_time:
            self._raise(
                "slow_response",
                sample.duration_seconds,
                self.max_response_time,
                f"{sample.kind} took {sample.duration_seconds:.2f}s "
                f"(limit {self.max_response_time:.2f}s)",
            )
        elif "slow_response" in self._active:
            self.resolve_alert("slow_response")

    def _check_error_rate(self) -> None:
        if len(self._samples) < MIN_SAMPLES_FOR_ERROR_RATE:
            return
        rate = self.error_rate()
        if rate > self.max_error_rate:
            self._raise(
                "high_error_rate",
                rate,
                self.max_error_rate,
                f"error rate {rate:.1f}% exceeds {self.max_error_rate:.1f}%",
            )
        elif "high_error_rate" in self._active:
            self.resolve_alert("high_error_rate")

    def check_queue_depth(self, depth: int) -> Optional[PerformanceAlert]:
        if depth > self.max_queue_size:
            return self._raise(
                "large_queue",
                float(depth),
                float(self.max_queue_size),
                f"{depth} transactions waiting (limit {self.max_queue_size})",
            )
        if "large_queue" in self._active:
            self.resolve_alert("large_queue")
        return None

    def active_alerts(self) -> List[PerformanceAlert]:
        return list(self._active.values())

    def recent_alerts(self, limit: int = 20) -> List[PerformanceAlert]:
        return list(self._history)[-limit:]

    # Reports

    def generate_report(self, period: str = "hourly") -> PerformanceReport:
        if period not in REPORT_PERIODS:
            raise ValueError(f"Unknown period '{period}'. Available: {', '.join(REPORT_PERIODS)}")
        end = self._clock()
        start = end - REPORT_PERIODS[period]
        samples = [s for s in self._samples if s.recorded_at >= start]
        report = PerformanceReport(period=period, start=start, end=end)
        if not samples:
            report.recommendations.append("No sync activity recorded in this period.")
            return report

        midpoint = start + (end - start) / 2
        first = [s for s in samples if s.recorded_at < midpoint]
        second = [s for s in samples if s.recorded_at >= midpoint]

        report.total_operations = len(samples)
        report.average_seconds = _average(samples)
        report.peak_seconds = max(s.duration_seconds for s in samples)
        report.success_rate = _success_rate(samples)
        report.errors_by_kind = dict(
            Counter(s.error_kind or "unknown" for s in samples if not s.success)
        )
        report.items_transferred = sum(s.items for s in samples)
        report.bytes_transferred = sum(s.bytes for s in samples)
        if first and second:
            first_avg = _average(first)
            report.response_time_trend = _trend(
                first_avg, _average(second), first_avg * 0.1, lower_is_better=True
            )
            report.success_rate_trend = _trend(
                _success_rate(first), _success_rate(second), 2.0, lower_is_better=False
            )
        report.recommendations = self._recommendations(report)
        return report

    def _recommendations(self, report: PerformanceReport) -> List[str]:
        recommendations: List[str] = []
        if report.average_seconds > self.max_response_time:
            recommendations.append(
                "Average response time is above the alert threshold; "
                "reduce batch size or check the back office load."
            )
        if report.success_rate < 100 - self.max_error_rate:
            recommendations.append(
                "Success rate is low; review the failed transactions and network stability."
            )
        if report.errors_by_kind.get("timeout"):
            recommendations.append("Timeouts observed; consider raising the delivery timeout.")
        if report.errors_by_kind.get("rate_limit"):
            recommendations.append("Remote is rate limiting; lower queue concurrency.")
        if report.response_time_trend == "degrading":
            recommendations.append("Response times are getting worse over the period.")
        if not recommendations:
            recommendations.append("Sync performance is within thresholds.")
        return recommendations


__all__ = ["AlertObserver", "PerformanceMonitor", "Subscription", "severity_for"]
