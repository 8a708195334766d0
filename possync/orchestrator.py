"""
Sync orchestrator: the single surface the host application talks to.

Usage (example from the host application):
    from possync.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(settings, store)
    await orchestrator.start()
    await orchestrator.enqueue(transaction)
    status = await orchestrator.get_status()

The orchestrator holds no business logic. It wires the queue manager, delta
sync manager, monitor and shared circuit breaker together, reacts to
connectivity transitions, runs periodic health checks and keeps a bounded
history of operator-triggered operations. Remote failures never propagate
to callers; they show up in the status snapshot and the health report.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Awaitable, Callable, Deque, List, Optional

from possync.config import Settings, get_settings
from possync.domain.models import (
    DEFAULT_PRIORITY,
    CircuitState,
    HealthCheck,
    HealthReport,
    PerformanceAlert,
    PerformanceReport,
    QueueMetadata,
    SalesTransaction,
    SyncOperation,
    SyncStatusSnapshot,
)
from possync.infrastructure.gateway import HttpRemoteGateway, RemoteGateway
from possync.infrastructure.store import SyncStore
from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.delta_sync import DeltaSyncManager
from possync.sync.monitor import PerformanceMonitor, Subscription
from possync.sync.queue_manager import TransactionQueueManager
from possync.utils.clock import Clock, utc_now
from possync.utils.logging import get_logger
from possync.utils.profiler import current_rss_bytes, profile_block

log = get_logger(__name__)

HISTORY_LIMIT = 100
HISTORY_RETENTION = timedelta(days=7)
STALE_PENDING_SECONDS = 24 * 60 * 60


class SyncOrchestrator:
    """
    Coordinates startup, connectivity, health and operator controls.

    Construct it once at application startup (``build_orchestrator``) and
    inject it wherever the application needs sync status or controls.
    """

    def __init__(
        self,
        settings: Settings,
        store: SyncStore,
        gateway: RemoteGateway,
        breaker: CircuitBreaker,
        monitor: PerformanceMonitor,
        queue: TransactionQueueManager,
        delta: DeltaSyncManager,
        clock: Clock = utc_now,
        memory_probe: Callable[[], Optional[int]] = current_rss_bytes,
    ) -> None:
        self.settings = settings
        self.store = store
        self.gateway = gateway
        self.breaker = breaker
        self.monitor = monitor
        self.queue = queue
        self.delta = delta
        self._clock = clock
        self._memory_probe = memory_probe

        self._online = True
        self._started = False
        self._timers: List[asyncio.Task] = []
        self._subscription: Optional[Subscription] = None
        self._last_health: Optional[HealthReport] = None
        self._history: Deque[SyncOperation] = deque(maxlen=HISTORY_LIMIT)

    @property
    def online(self) -> bool:
        return self._online

    @property
    def started(self) -> bool:
        return self._started

    # Alert observer

    def on_alert(self, alert: PerformanceAlert) -> None:
        log.warning(
            f"[ALERT] {alert.message}",
            extra={"alert": alert.type, "severity": alert.severity},
        )

    # Operation history

    def _prune_history(self) -> None:
        cutoff = self._clock() - HISTORY_RETENTION
        while self._history and self._history[0].started_at < cutoff:
            self._history.popleft()

    @asynccontextmanager
    async def _operation(self, kind: str, reraise: bool = False) -> AsyncIterator[SyncOperation]:
        """
        Record an operator-triggered operation in the bounded history.

        Errors are logged and recorded on the operation; only when ``reraise``
        is set are they passed on to the caller.
        """
        self._prune_history()
        operation = SyncOperation(kind=kind, started_at=self._clock())
        self._history.append(operation)
        log.info(f"[OPERATION] {kind} started")
        with profile_block(kind, sample_rss=False) as stats:
            try:
                yield operation
                operation.status = "completed"
            except Exception as exc:  # noqa: BLE001 - failures surface through status and history
                operation.status = "failed"
                operation.error = str(exc)
                if reraise:
                    raise
                log.exception(f"[OPERATION] {kind} failed")
            finally:
                operation.completed_at = self._clock()
        operation.duration_seconds = round(stats.duration_seconds, 3)
        log.info(
            f"[OPERATION] {kind} {operation.status}",
            extra={"detail": operation.detail, "duration": operation.duration_seconds},
        )

    def operation_history(self, limit: int = 20) -> List[SyncOperation]:
        self._prune_history()
        return list(self._history)[-limit:]

    # Lifecycle

    async def start(self) -> None:
        """Restore persisted state and start the periodic timers."""
        if self._started:
            return
        async with self._operation("start") as op:
            op.detail["session_restored"] = await self.gateway.restore_session()
            op.detail["queued"] = await self.queue.load()
            op.detail["checkpoint"] = (await self.delta.load()).isoformat()
            if self.settings.resume_interrupted_on_start:
                op.detail["resumed"] = await self.queue.resume_interrupted()
            self._subscription = self.monitor.subscribe(self)
            self._timers = [
                asyncio.create_task(
                    self._every(self.settings.health_check_interval, self.health_check, "health")
                ),
                asyncio.create_task(
                    self._every(self.settings.queue_poll_interval, self._queue_tick, "queue")
                ),
            ]
            self.delta.set_online(self._online)
            self.queue.set_online(self._online)
            self.delta.start()
            if self._online:
                self.queue.trigger()
            self._started = True

    async def stop(self) -> None:
        """
        Cancel the periodic timers and wait for in-flight work to finish.

        Queue passes and delta runs already under way are not interrupted; a
        remote write with an unknown outcome is left to the pre-flight check.
        """
        if not self._started:
            return
        async with self._operation("stop"):
            for timer in self._timers:
                timer.cancel()
            await asyncio.gather(*self._timers, return_exceptions=True)
            self._timers = []
            await self.delta.stop()
            await self.queue.drain()
            if self._subscription is not None:
                self._subscription.cancel()
                self._subscription = None
            self._started = False

    async def _every(
        self, interval: float, action: Callable[[], Awaitable[object]], name: str
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await action()
            except Exception:  # noqa: BLE001 - a failing tick must not kill the timer
                log.exception(f"[TIMER] {name} tick failed")

    async def _queue_tick(self) -> None:
        await self.queue.health_sweep()
        if self._online:
            self.queue.trigger()

    # Connectivity

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        log.info("[CONNECTIVITY] online" if online else "[CONNECTIVITY] offline")
        self.queue.set_online(online)
        self.delta.set_online(online)
        if online:
            self.breaker.reset()
            self.queue.trigger()
            if self._started and self.delta.is_due():
                self.delta.trigger()

    # Health

    async def health_check(self) -> HealthReport:
        """Probe the remote, the store, the queue backlog, the breaker and memory."""
        checks: List[HealthCheck] = []
        issues: List[str] = []
        recommendations: List[str] = []
        max_response = self.settings.alert_max_response_time

        started = time.perf_counter()
        try:
            await self.gateway.probe()
        except Exception as exc:  # noqa: BLE001 - probe failure is a health verdict, not an error
            remote_ok = False
            checks.append(HealthCheck(component="remote", status="unhealthy", message=str(exc)))
            issues.append("Back office is unreachable")
            recommendations.append("Check the network connection and the back office URL.")
        else:
            remote_ok = True
            latency = time.perf_counter() - started
            slow = latency > max_response
            checks.append(
                HealthCheck(
                    component="remote",
                    status="degraded" if slow else "healthy",
                    message=f"responded in {latency:.2f}s",
                    latency_seconds=latency,
                )
            )
            if slow:
                recommendations.append("Back office responses are slow; expect delayed syncs.")
        if self.settings.auto_connectivity:
            await self.set_online(remote_ok)

        try:
            await self.store.ping()
        except Exception as exc:  # noqa: BLE001 - reported through the health report
            checks.append(HealthCheck(component="store", status="unhealthy", message=str(exc)))
            issues.append("Local store is not writable")
            recommendations.append("Check local disk space and database availability.")
        else:
            checks.append(HealthCheck(component="store", status="healthy"))

        stats = await self.queue.stats()
        queue_status = "healthy"
        if stats.pending > self.settings.alert_max_queue_size:
            queue_status = "degraded"
            issues.append(f"Queue backlog of {stats.pending} pending transactions")
            recommendations.append("Backlog is growing; check connectivity and remote health.")
        if stats.failed > self.settings.health_max_failed:
            queue_status = "degraded"
            issues.append(f"{stats.failed} transactions failed permanently")
            recommendations.append("Review failed transactions and run retry-failed.")
        if (
            stats.oldest_pending_age_seconds is not None
            and stats.oldest_pending_age_seconds > STALE_PENDING_SECONDS
        ):
            recommendations.append("Some transactions have waited more than 24 hours to sync.")
        checks.append(
            HealthCheck(
                component="queue",
                status=queue_status,
                message=f"{stats.pending} pending, {stats.failed} failed, {stats.stuck} stuck",
            )
        )
        self.monitor.check_queue_depth(stats.pending)

        if self.breaker.state is CircuitState.OPEN:
            issues.append("Circuit breaker is open; remote calls are paused")
            recommendations.append("Remote calls resume automatically after the reset timeout.")
        checks.append(
            HealthCheck(
                component="circuit_breaker",
                status="degraded" if self.breaker.state is CircuitState.OPEN else "healthy",
                message=self.breaker.state.value,
            )
        )

        rss = self._memory_probe()
        if rss is not None and rss > self.settings.queue_memory_limit:
            issues.append(f"Memory usage {rss / (1024 * 1024):.0f} MB is above the ceiling")
            recommendations.append("Clear completed transactions to free memory.")

        remote_degraded = any(c.component == "remote" and c.status == "degraded" for c in checks)
        if len(issues) > 1:
            verdict = "unhealthy"
        elif issues or remote_degraded:
            verdict = "degraded"
        else:
            verdict = "healthy"

        report = HealthReport(
            verdict=verdict,
            checked_at=self._clock(),
            checks=checks,
            issues=issues,
            recommendations=recommendations,
        )
        self._last_health = report
        log.info(
            f"[HEALTH] {verdict}",
            extra={"issues": issues, "pending": stats.pending, "failed": stats.failed},
        )
        return report

    # Status

    async def get_status(self) -> SyncStatusSnapshot:
        stats = await self.queue.stats()
        alerts = self.monitor.active_alerts()
        issues = list(self._last_health.issues) if self._last_health else []
        issues += [alert.message for alert in alerts]
        return SyncStatusSnapshot(
            queue_depth=stats.depth,
            health_verdict=self._last_health.verdict if self._last_health else "unknown",
            last_sync=self.delta.last_sync_at,
            active_issues=issues,
            online=self._online,
            running=self._started,
            breaker=self.breaker.snapshot(),
            queue=stats,
            delta=self.delta.status(),
            active_alerts=alerts,
        )

    def performance_report(self, period: str = "hourly") -> PerformanceReport:
        return self.monitor.generate_report(period)

    # Controls

    async def enqueue(
        self, transaction: SalesTransaction, priority: int = DEFAULT_PRIORITY
    ) -> QueueMetadata:
        """
        Queue a finalized sale.

        Raises
        ------
        TransactionValidationError
            If the sale fails validation; nothing is persisted.
        Exception
            Store failures propagate so the caller keeps the sale.
        """
        async with self._operation("enqueue", reraise=True) as op:
            op.detail["transaction_id"] = transaction.id
            metadata = await self.queue.enqueue(transaction, priority)
        return metadata

    async def force_full_sync(self) -> None:
        async with self._operation("force_full_sync") as op:
            with profile_block("force_full_sync") as stats:
                result = await self.delta.force_full_sync()
                op.detail["requeued"] = await self.queue.force_sync_all()
            op.detail.update(
                synced=result.synced,
                failed=result.failed,
                conflicts=result.conflicts,
                **stats.as_detail(),
            )

    async def retry_failed(self) -> int:
        count = 0
        async with self._operation("retry_failed") as op:
            count = await self.queue.retry_failed()
            op.detail["requeued"] = count
        return count

    async def cancel(self, transaction_id: str, reason: str) -> bool:
        cancelled = False
        async with self._operation("cancel") as op:
            op.detail.update(transaction_id=transaction_id, reason=reason)
            cancelled = await self.queue.cancel(transaction_id, reason)
            op.detail["cancelled"] = cancelled
        return cancelled

    async def clear_completed(self) -> int:
        purged = 0
        async with self._operation("clear_completed") as op:
            purged = await self.queue.clear_completed()
            op.detail["purged"] = purged
        return purged

    async def start_sync(self) -> None:
        """Resume the delta loop and queue delivery after ``stop_sync``."""
        async with self._operation("start_sync"):
            self.queue.resume()
            self.delta.start()
            if self._online:
                self.queue.trigger()

    async def stop_sync(self) -> None:
        """
        Pause the delta loop and queue delivery.

        Sales are still accepted and persisted; they wait for ``start_sync``.
        A queue pass already under way finishes its current batch.
        """
        async with self._operation("stop_sync"):
            self.queue.pause()
            await self.delta.stop()


def build_orchestrator(
    settings: Optional[Settings] = None,
    store: Optional[SyncStore] = None,
    gateway: Optional[RemoteGateway] = None,
    clock: Clock = utc_now,
) -> SyncOrchestrator:
    """
    Construct every component explicitly and wire them into an orchestrator.

    Parameters
    ----------
    settings : Settings, optional
        Defaults to ``get_settings()``.
    store : SyncStore
        Durable store; required (use ``MemorySyncStore`` for development).
    gateway : RemoteGateway, optional
        Defaults to an ``HttpRemoteGateway`` persisting its session in ``store``.
    """
    if store is None:
        raise ValueError("a SyncStore is required")
    settings = settings or get_settings()
    gateway = gateway or HttpRemoteGateway(settings, key_store=store, clock=clock)
    breaker = CircuitBreaker(
        threshold=settings.circuit_breaker_threshold,
        reset_timeout=settings.circuit_breaker_reset_timeout,
        clock=clock,
    )
    monitor = PerformanceMonitor(settings, clock=clock)
    queue = TransactionQueueManager(
        store, gateway, breaker, settings=settings, monitor=monitor, clock=clock
    )
    delta = DeltaSyncManager(store, gateway, breaker, settings=settings, monitor=monitor, clock=clock)
    return SyncOrchestrator(
        settings=settings,
        store=store,
        gateway=gateway,
        breaker=breaker,
        monitor=monitor,
        queue=queue,
        delta=delta,
        clock=clock,
    )


__all__ = ["SyncOrchestrator", "build_orchestrator"]
