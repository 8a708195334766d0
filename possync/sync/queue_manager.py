"""
Durable transaction queue and delivery pipeline.

The queue manager owns every sale from the moment it is enqueued until it is
purged after terminal success or operator cancellation. The store is the
source of truth; ``_transactions`` and ``_metadata`` are a write-through cache
over it that ``load()`` rebuilds after a restart.

Delivery of one transaction (``process_one``):

    pre-flight duplicate check -> map to invoice -> create remote record
    -> finalize -> verify remote total -> mark completed

A retry after a crash resumes from whatever the pre-flight lookup finds on the
remote side, so a record created but never finalized is finalized rather than
created twice.

Concurrency is cooperative (asyncio). Two markers provide the logical mutual
exclusion the pipeline needs across suspension points: ``_in_flight`` holds
the ids currently being delivered, and ``_processing`` is set while a queue
pass runs.
"""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set

from possync.config import Settings, get_settings
from possync.domain.models import (
    ACTIVE_STATUSES,
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    AttemptResult,
    CircuitState,
    QueueMetadata,
    QueuePassResult,
    QueueStats,
    QueueStatus,
    SalesTransaction,
)
from possync.domain.validation import AMOUNT_TOLERANCE, ensure_valid
from possync.errors import (
    DuplicateTransactionError,
    ErrorKind,
    GatewayError,
    TransactionValidationError,
    VerificationError,
    classify_error,
)
from possync.infrastructure.gateway import RemoteGateway
from possync.infrastructure.store import SyncStore
from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.mapping import build_invoice_payload
from possync.sync.monitor import PerformanceMonitor
from possync.utils.clock import Clock, utc_now
from possync.utils.logging import get_logger
from possync.utils.profiler import current_rss_bytes

log = get_logger(__name__)

SAMPLE_KIND = "transaction_sync"
COMPLETED_CACHE_TTL = timedelta(hours=24)


def compute_retry_delay(
    attempts: int,
    base_delay: float,
    max_delay: float,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential backoff with jitter for the ``attempts``-th failure.

    The jitter is uniform in [0, 10%) of the exponential term so that
    terminals that lost the network together do not retry in lockstep.
    """
    exponential = base_delay * (2 ** max(attempts - 1, 0))
    jitter = (rng or random).uniform(0, 0.1 * exponential)
    return min(exponential + jitter, max_delay)


def _adaptive_delay(base: float, failure_ratio: float) -> float:
    if failure_ratio > 0.5:
        return base * 4
    if failure_ratio > 0.2:
        return base * 2
    return base


def _chunks(items: List[QueueMetadata], first: int, size: int) -> Iterable[List[QueueMetadata]]:
    if first and items:
        yield items[:first]
        items = items[first:]
    for start in range(0, len(items), size):
        yield items[start : start + size]


class TransactionQueueManager:
    """
    Durable queue of pending sales with retrying delivery.

    Parameters
    ----------
    store : SyncStore
        Durable collections; the only ground truth while offline.
    gateway : RemoteGateway
        Back-office client.
    breaker : CircuitBreaker
        Shared breaker, fed one signal per batch.
    monitor : PerformanceMonitor, optional
        Receives one sample per delivery attempt.
    memory_probe : callable, optional
        Returns the process RSS in bytes; defaults to psutil.
    """

    def __init__(
        self,
        store: SyncStore,
        gateway: RemoteGateway,
        breaker: CircuitBreaker,
        settings: Optional[Settings] = None,
        monitor: Optional[PerformanceMonitor] = None,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None,
        memory_probe: Callable[[], Optional[int]] = current_rss_bytes,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._store = store
        self._gateway = gateway
        self._breaker = breaker
        self._monitor = monitor
        self._clock = clock
        self._rng = rng or random.Random()
        self._memory_probe = memory_probe

        self.max_concurrent = settings.queue_max_concurrent
        self.batch_size = settings.queue_batch_size
        self.timeout = settings.queue_timeout
        self.max_attempts = settings.queue_max_attempts

        self._transactions: Dict[str, SalesTransaction] = {}
        self._metadata: Dict[str, QueueMetadata] = {}
        self._in_flight: Set[str] = set()
        self._processing = False
        self._online = True
        self._paused = False
        self._tasks: Set[asyncio.Task] = set()
        self._started_at = time.monotonic()

        self._processed = 0
        self._succeeded = 0
        self._failures = 0
        self._retries = 0
        self._timeouts = 0
        self._processing_seconds = 0.0

    # State

    @property
    def online(self) -> bool:
        return self._online

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def set_online(self, online: bool) -> None:
        if online != self._online:
            log.info("[QUEUE] connectivity changed", extra={"online": online})
        self._online = online

    def pause(self) -> None:
        """Stop starting new passes; sales are still accepted and persisted."""
        if not self._paused:
            log.info("[QUEUE] delivery paused")
        self._paused = True

    def resume(self) -> None:
        if self._paused:
            log.info("[QUEUE] delivery resumed")
        self._paused = False

    def get_transaction(self, transaction_id: str) -> Optional[SalesTransaction]:
        return self._transactions.get(transaction_id)

    def get_metadata(self, transaction_id: str) -> Optional[QueueMetadata]:
        return self._metadata.get(transaction_id)

    async def list_queued(self, status: Optional[QueueStatus] = None) -> List[QueueMetadata]:
        return await self._store.list_metadata(status)

    # Persistence helpers

    async def _save_metadata(self, metadata: QueueMetadata) -> None:
        await self._store.put_metadata(metadata)
        self._metadata[metadata.transaction_id] = metadata

    async def _load_metadata(self, transaction_id: str) -> Optional[QueueMetadata]:
        cached = self._metadata.get(transaction_id)
        if cached is not None:
            return cached
        stored = await self._store.get_metadata(transaction_id)
        if stored is not None:
            self._metadata[transaction_id] = stored
        return stored

    async def _load_transaction(self, transaction_id: str) -> Optional[SalesTransaction]:
        cached = self._transactions.get(transaction_id)
        if cached is not None:
            return cached
        stored = await self._store.get_transaction(transaction_id)
        if stored is not None:
            self._transactions[transaction_id] = stored
        return stored

    async def load(self) -> int:
        """
        Rebuild the cache purely from the store.

        Entries left in ``processing`` by a previous process have no worker any
        more; they are marked ``stuck`` so an operator or the startup resume can
        pick them up. Returns the number of queued transactions.
        """
        self._transactions = {txn.id: txn for txn in await self._store.list_transactions()}
        self._metadata = {}
        for meta in await self._store.list_metadata():
            if meta.status is QueueStatus.PROCESSING and meta.transaction_id not in self._in_flight:
                meta.status = QueueStatus.STUCK
                meta.processing_started_at = None
                meta.last_error = "interrupted while processing"
                await self._store.put_metadata(meta)
            self._metadata[meta.transaction_id] = meta

        for txn_id, txn in self._transactions.items():
            if txn_id not in self._metadata:
                log.warning(
                    "[QUEUE] transaction without metadata, re-queued",
                    extra={"transaction_id": txn_id},
                )
                await self._save_metadata(self._fresh_metadata(txn, DEFAULT_PRIORITY))

        log.info(
            "[QUEUE] loaded from store",
            extra={"transactions": len(self._transactions), "metadata": len(self._metadata)},
        )
        return len(self._transactions)

    def _fresh_metadata(self, transaction: SalesTransaction, priority: int) -> QueueMetadata:
        return QueueMetadata(
            transaction_id=transaction.id,
            priority=max(MIN_PRIORITY, min(MAX_PRIORITY, priority)),
            max_attempts=self.max_attempts,
            created_at=transaction.created_at,
            next_attempt_at=self._clock(),
        )

    # Enqueue

    async def enqueue(
        self, transaction: SalesTransaction, priority: int = DEFAULT_PRIORITY
    ) -> QueueMetadata:
        """
        Validate and durably queue a finalized sale.

        Raises
        ------
        TransactionValidationError
            If the transaction is malformed; nothing is persisted in that case.
        """
        try:
            ensure_valid(transaction, now=self._clock())
        except TransactionValidationError as exc:
            log.warning(
                "[ENQUEUE] rejected",
                extra={"transaction_id": transaction.id, "errors": exc.errors},
            )
            raise

        existing = await self._load_metadata(transaction.id)
        if existing is not None:
            log.info(
                "[ENQUEUE] already queued",
                extra={"transaction_id": transaction.id, "status": existing.status.value},
            )
            return existing

        metadata = self._fresh_metadata(transaction, priority)
        await self._store.put_transaction(transaction)
        await self._store.put_metadata(metadata)
        self._transactions[transaction.id] = transaction
        self._metadata[transaction.id] = metadata
        log.info(
            "[ENQUEUE] accepted",
            extra={
                "transaction_id": transaction.id,
                "receipt_number": transaction.receipt_number,
                "priority": metadata.priority,
                "total": str(transaction.total_amount),
            },
        )
        if self._online and not self._processing:
            self.trigger()
        return metadata

    # Scheduling

    def trigger(self) -> bool:
        """Schedule a background queue pass; returns False if one is already running."""
        if self._processing:
            return False
        task = asyncio.get_running_loop().create_task(self.process_queue())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def drain(self) -> None:
        """Wait for every background pass scheduled so far (and any they schedule)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Processing

    def _check_memory(self) -> bool:
        limit = self._settings.queue_memory_limit
        rss = self._memory_probe()
        if rss is None or rss <= limit:
            return True
        evicted = self._evict_completed()
        rss = self._memory_probe()
        log.warning(
            "[QUEUE] memory ceiling exceeded",
            extra={"rss_bytes": rss, "limit_bytes": limit, "evicted": evicted},
        )
        return rss is None or rss <= limit

    def _evict_completed(self) -> int:
        """Drop old completed entries from the cache; the store keeps them."""
        cutoff = self._clock() - COMPLETED_CACHE_TTL
        stale = [
            txn_id
            for txn_id, meta in self._metadata.items()
            if meta.status is QueueStatus.COMPLETED
            and (meta.synced_at or meta.created_at) < cutoff
        ]
        for txn_id in stale:
            self._metadata.pop(txn_id, None)
            self._transactions.pop(txn_id, None)
        return len(stale)

    async def _eligible(self) -> List[QueueMetadata]:
        now = self._clock()
        eligible: List[QueueMetadata] = []
        for meta in await self._store.list_metadata(QueueStatus.PENDING):
            if meta.transaction_id in self._in_flight:
                continue
            if meta.next_attempt_at is not None and meta.next_attempt_at > now:
                continue
            self._metadata[meta.transaction_id] = meta
            eligible.append(meta)
        eligible.sort(key=lambda m: (-m.priority, m.created_at, m.transaction_id))
        return eligible

    async def process_queue(self) -> QueuePassResult:
        """
        Run one pass over every due ``pending`` entry.

        No-op while another pass runs, while offline or paused, above the memory
        ceiling, or while the circuit breaker denies traffic.
        """
        if self._processing:
            return QueuePassResult(skipped_reason="already running")
        if not self._online:
            return QueuePassResult(skipped_reason="offline")
        if self._paused:
            return QueuePassResult(skipped_reason="paused")

        self._processing = True
        started = time.perf_counter()
        result = QueuePassResult()
        try:
            if not self._check_memory():
                result.skipped_reason = "memory limit"
                return result
            eligible = await self._eligible()
            if not eligible:
                return result
            trial = self._breaker.state is CircuitState.HALF_OPEN
            if not self._breaker.allow_request():
                result.skipped_reason = "circuit open"
                log.info("[QUEUE PASS] skipped, circuit open", extra={"pending": len(eligible)})
                return result

            log.info(
                "[QUEUE PASS] start",
                extra={"eligible": len(eligible), "trial": trial, "batch_size": self.batch_size},
            )
            delay = self._settings.queue_batch_delay
            for index, batch in enumerate(_chunks(eligible, 1 if trial else 0, self.batch_size)):
                if index > 0:
                    await asyncio.sleep(delay)
                    if not self._online:
                        result.skipped_reason = "offline"
                        break
                    if self._paused:
                        result.skipped_reason = "paused"
                        break
                    if not self._breaker.allow_request():
                        result.skipped_reason = "circuit open"
                        break
                outcomes = await self._run_batch(batch)
                result.batches += 1
                transient = 0
                for outcome in outcomes:
                    if outcome.outcome == "skipped":
                        continue
                    result.attempted += 1
                    if outcome.outcome == "completed":
                        result.succeeded += 1
                    elif outcome.outcome == "retry":
                        result.retried += 1
                    elif outcome.outcome == "failed":
                        result.failed += 1
                    elif outcome.outcome == "cancelled":
                        result.cancelled += 1
                    if outcome.error_kind is not None and outcome.error_kind.transient:
                        transient += 1
                attempted = sum(1 for o in outcomes if o.outcome != "skipped")
                if attempted:
                    self._breaker.record(transient == 0)
                ratio = transient / attempted if attempted else 0.0
                delay = _adaptive_delay(self._settings.queue_batch_delay, ratio)
        except Exception:  # noqa: BLE001 - a pass must never take the caller down
            log.exception("[QUEUE PASS] aborted")
            result.skipped_reason = "error"
        finally:
            self._breaker.release_trial()
            self._processing = False
            result.duration_seconds = time.perf_counter() - started

        log.info("[QUEUE PASS] complete", extra=result.model_dump())
        return result

    async def _run_batch(self, batch: List[QueueMetadata]) -> List[AttemptResult]:
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def _guarded(meta: QueueMetadata) -> AttemptResult:
            async with semaphore:
                txn = await self._load_transaction(meta.transaction_id)
                if txn is None:
                    log.error(
                        "[QUEUE] metadata without transaction",
                        extra={"transaction_id": meta.transaction_id},
                    )
                    return AttemptResult(transaction_id=meta.transaction_id, outcome="skipped")
                return await self.process_one(txn)

        return list(await asyncio.gather(*(_guarded(meta) for meta in batch)))

    async def process_one(self, transaction: SalesTransaction) -> AttemptResult:
        """
        Deliver one transaction, racing the pipeline against ``queue_timeout``.

        Every failure is routed through the retry policy; nothing is raised.
        """
        txn_id = transaction.id
        if txn_id in self._in_flight:
            return AttemptResult(transaction_id=txn_id, outcome="skipped")
        self._in_flight.add(txn_id)
        try:
            metadata = await self._load_metadata(txn_id)
            if metadata is None or metadata.status in (
                QueueStatus.COMPLETED,
                QueueStatus.CANCELLED,
            ):
                return AttemptResult(transaction_id=txn_id, outcome="skipped")

            started = time.perf_counter()
            try:
                remote_ref = await asyncio.wait_for(
                    self._deliver(transaction, metadata), timeout=self.timeout
                )
            except Exception as exc:  # noqa: BLE001 - every failure goes through the retry policy
                elapsed = time.perf_counter() - started
                result = await self._handle_failure(metadata, exc, elapsed)
            else:
                elapsed = time.perf_counter() - started
                result = await self._mark_completed(metadata, remote_ref, elapsed)

            self._processed += 1
            self._processing_seconds += elapsed
            if self._monitor is not None:
                self._monitor.record(
                    SAMPLE_KIND,
                    elapsed,
                    result.outcome == "completed",
                    items=len(transaction.items),
                    error_kind=result.error_kind.value if result.error_kind else None,
                )
            return result
        finally:
            self._in_flight.discard(txn_id)

    async def _deliver(self, transaction: SalesTransaction, metadata: QueueMetadata) -> str:
        now = self._clock()
        metadata.status = QueueStatus.PROCESSING
        metadata.processing_started_at = now
        metadata.last_attempt_at = now
        metadata.breaker_failures = self._breaker.failure_count
        await self._save_metadata(metadata)

        await self._check_duplicate_receipt(transaction, metadata)

        ref = metadata.remote_ref or await self._gateway.find_record(transaction.id)
        record = await self._gateway.get_record(ref) if ref else None
        if record is None:
            payload = build_invoice_payload(
                transaction,
                company=self._settings.remote_company,
                branch_id=transaction.branch_id,
                device_id=transaction.device_id,
            )
            ref = await self._gateway.create_record(payload)
            metadata.remote_ref = ref
            await self._save_metadata(metadata)
            await self._gateway.finalize_record(ref)
        else:
            if metadata.remote_ref != record.id:
                metadata.remote_ref = record.id
                await self._save_metadata(metadata)
            ref = record.id
            if record.finalized:
                log.info(
                    "[DELIVERY] remote record already finalized, verifying",
                    extra={"transaction_id": transaction.id, "remote_ref": ref},
                )
            else:
                log.info(
                    "[DELIVERY] resuming unfinalized remote record",
                    extra={"transaction_id": transaction.id, "remote_ref": ref},
                )
                await self._gateway.finalize_record(ref)

        await self._verify(transaction, ref)
        return ref

    async def _check_duplicate_receipt(
        self, transaction: SalesTransaction, metadata: QueueMetadata
    ) -> None:
        """
        Refuse to deliver a receipt number that another queued transaction owns:
        one already completed, or an active one enqueued before this one.
        """
        ids = await self._store.find_transaction_ids_by_receipt(transaction.receipt_number)
        for other_id in ids:
            if other_id == transaction.id:
                continue
            other = await self._load_metadata(other_id)
            if other is None:
                continue
            if other.status is QueueStatus.COMPLETED:
                raise DuplicateTransactionError(
                    f"receipt {transaction.receipt_number} already delivered as {other_id}"
                )
            if other.status in ACTIVE_STATUSES and (other.created_at, other_id) < (
                metadata.created_at,
                transaction.id,
            ):
                raise DuplicateTransactionError(
                    f"receipt {transaction.receipt_number} is already queued as {other_id}"
                )

    async def _verify(self, transaction: SalesTransaction, ref: str) -> None:
        """The remote record must exist and carry the same grand total."""
        record = await self._gateway.get_record(ref)
        if record is None:
            raise VerificationError(
                f"remote record {ref} missing after submit", kind=ErrorKind.SERVER
            )
        if abs(Decimal(record.total) - transaction.total_amount) > AMOUNT_TOLERANCE:
            raise VerificationError(
                f"remote total {record.total} differs from local total "
                f"{transaction.total_amount} on {ref}",
                kind=ErrorKind.CONFLICT,
            )

    async def _mark_completed(
        self, metadata: QueueMetadata, remote_ref: str, elapsed: float
    ) -> AttemptResult:
        metadata.status = QueueStatus.COMPLETED
        metadata.remote_ref = remote_ref
        metadata.synced_at = self._clock()
        metadata.processing_started_at = None
        metadata.processing_seconds = elapsed
        metadata.next_attempt_at = None
        metadata.last_error = None
        metadata.error_kind = None
        await self._save_metadata(metadata)
        self._succeeded += 1
        log.info(
            "[DELIVERED]",
            extra={
                "transaction_id": metadata.transaction_id,
                "remote_ref": remote_ref,
                "attempts": metadata.attempts,
                "duration": round(elapsed, 3),
            },
        )
        return AttemptResult(
            transaction_id=metadata.transaction_id,
            outcome="completed",
            remote_ref=remote_ref,
            duration_seconds=elapsed,
        )

    def _attempt_budget(self, metadata: QueueMetadata, kind: ErrorKind) -> int:
        if kind is ErrorKind.UNKNOWN:
            return min(metadata.max_attempts, self._settings.queue_unknown_max_attempts)
        return metadata.max_attempts

    async def _handle_failure(
        self, metadata: QueueMetadata, exc: BaseException, elapsed: float
    ) -> AttemptResult:
        kind = classify_error(exc)
        message = str(exc) or exc.__class__.__name__
        if kind is ErrorKind.TIMEOUT and not isinstance(exc, GatewayError):
            message = f"delivery timed out after {self.timeout}s"
        if kind is ErrorKind.TIMEOUT:
            self._timeouts += 1
            metadata.timeout_count += 1

        now = self._clock()
        metadata.last_error = message
        metadata.error_kind = kind
        metadata.processing_started_at = None
        metadata.processing_seconds = elapsed
        self._failures += 1

        if not kind.retryable:
            metadata.status = QueueStatus.CANCELLED
            metadata.cancelled_by = "system"
            metadata.next_attempt_at = None
            outcome = "cancelled"
        else:
            budget = self._attempt_budget(metadata, kind)
            metadata.attempts = min(metadata.attempts + 1, budget)
            if metadata.attempts >= budget:
                metadata.status = QueueStatus.FAILED
                metadata.next_attempt_at = None
                outcome = "failed"
            else:
                delay = compute_retry_delay(
                    metadata.attempts,
                    self._settings.queue_retry_delay,
                    self._settings.queue_max_retry_delay,
                    self._rng,
                )
                if isinstance(exc, GatewayError) and exc.retry_after:
                    delay = max(delay, exc.retry_after)
                metadata.status = QueueStatus.PENDING
                metadata.next_attempt_at = now + timedelta(seconds=delay)
                self._retries += 1
                outcome = "retry"
        await self._save_metadata(metadata)

        log_fn = log.warning if outcome == "retry" else log.error
        log_fn(
            f"[DELIVERY FAILED] {outcome}",
            extra={
                "transaction_id": metadata.transaction_id,
                "error_kind": kind.value,
                "error": message,
                "attempts": metadata.attempts,
                "next_attempt_at": (
                    metadata.next_attempt_at.isoformat() if metadata.next_attempt_at else None
                ),
            },
        )
        return AttemptResult(
            transaction_id=metadata.transaction_id,
            outcome=outcome,
            error_kind=kind,
            error=message,
            remote_ref=metadata.remote_ref,
            duration_seconds=elapsed,
        )

    # Operator controls

    async def _reset_to_pending(self, reset_attempts: bool) -> int:
        now = self._clock()
        count = 0
        for status in (QueueStatus.FAILED, QueueStatus.STUCK):
            for meta in await self._store.list_metadata(status):
                if meta.transaction_id in self._in_flight:
                    continue
                if reset_attempts:
                    meta.attempts = 0
                elif meta.attempts >= meta.max_attempts:
                    continue
                meta.status = QueueStatus.PENDING
                meta.next_attempt_at = now
                meta.processing_started_at = None
                await self._save_metadata(meta)
                count += 1
        if count and self._online:
            self.trigger()
        return count

    async def retry_failed(self) -> int:
        """Re-queue failed/stuck entries that still have attempt budget."""
        count = await self._reset_to_pending(reset_attempts=False)
        log.info("[RETRY FAILED]", extra={"requeued": count})
        return count

    async def force_sync_all(self) -> int:
        """Re-queue every failed/stuck entry with a fresh attempt budget."""
        count = await self._reset_to_pending(reset_attempts=True)
        log.info("[FORCE SYNC ALL]", extra={"requeued": count})
        return count

    async def resume_interrupted(self) -> int:
        """Re-queue entries marked ``stuck`` by ``load()``; attempts are preserved."""
        now = self._clock()
        count = 0
        for meta in await self._store.list_metadata(QueueStatus.STUCK):
            meta.status = QueueStatus.PENDING
            meta.next_attempt_at = now
            await self._save_metadata(meta)
            count += 1
        if count:
            log.info("[QUEUE] resumed interrupted deliveries", extra={"count": count})
        return count

    async def cancel(self, transaction_id: str, reason: str) -> bool:
        metadata = await self._load_metadata(transaction_id)
        if metadata is None or transaction_id in self._in_flight:
            return False
        if metadata.status in (QueueStatus.COMPLETED, QueueStatus.CANCELLED):
            return False
        metadata.status = QueueStatus.CANCELLED
        metadata.cancelled_by = "operator"
        metadata.last_error = reason
        metadata.next_attempt_at = None
        await self._save_metadata(metadata)
        log.info("[CANCEL]", extra={"transaction_id": transaction_id, "reason": reason})
        return True

    async def clear_completed(self) -> int:
        """
        Purge completed and operator-cancelled entries. System-cancelled entries
        stay for reconciliation.
        """
        purge = [
            m.transaction_id for m in await self._store.list_metadata(QueueStatus.COMPLETED)
        ]
        purge += [
            m.transaction_id
            for m in await self._store.list_metadata(QueueStatus.CANCELLED)
            if m.cancelled_by == "operator"
        ]
        for txn_id in purge:
            await self._store.delete_transaction(txn_id)
            await self._store.delete_metadata(txn_id)
            self._transactions.pop(txn_id, None)
            self._metadata.pop(txn_id, None)
        log.info("[CLEAR COMPLETED]", extra={"purged": len(purge)})
        return len(purge)

    async def health_sweep(self) -> List[str]:
        """
        Fail entries held in ``processing`` longer than the processing limit.

        Protects against a worker dying mid-flight. Entries with a live attempt
        are left to that attempt's own timeout. Returns the swept ids.
        """
        now = self._clock()
        limit = timedelta(seconds=self._settings.queue_max_processing_time)
        swept: List[str] = []
        for stored in await self._store.list_metadata(QueueStatus.PROCESSING):
            if stored.transaction_id in self._in_flight:
                continue
            meta = self._metadata.get(stored.transaction_id, stored)
            started = meta.processing_started_at or meta.last_attempt_at
            if started is None or now - started <= limit:
                continue
            held = (now - started).total_seconds()
            meta.status = QueueStatus.FAILED
            meta.last_error = f"stuck in processing for {held:.0f}s"
            meta.error_kind = ErrorKind.TIMEOUT
            meta.attempts = min(meta.attempts + 1, meta.max_attempts)
            meta.processing_started_at = None
            meta.next_attempt_at = None
            await self._save_metadata(meta)
            swept.append(meta.transaction_id)
        if swept:
            log.warning("[HEALTH] stuck transactions failed", extra={"transaction_ids": swept})
        return swept

    # Stats

    async def stats(self) -> QueueStats:
        now = self._clock()
        all_meta = await self._store.list_metadata()
        counts = {status.value: 0 for status in QueueStatus}
        oldest: Optional[datetime] = None
        for meta in all_meta:
            counts[meta.status.value] += 1
            if meta.status is QueueStatus.PENDING and (oldest is None or meta.created_at < oldest):
                oldest = meta.created_at
        minutes = max((time.monotonic() - self._started_at) / 60, 1 / 60)
        return QueueStats(
            counts=counts,
            depth=counts["pending"] + counts["processing"],
            pending=counts["pending"],
            processing=counts["processing"],
            failed=counts["failed"],
            completed=counts["completed"],
            cancelled=counts["cancelled"],
            stuck=counts["stuck"],
            in_flight=len(self._in_flight),
            oldest_pending_age_seconds=(now - oldest).total_seconds() if oldest else None,
            processed=self._processed,
            succeeded=self._succeeded,
            failures=self._failures,
            retries=self._retries,
            timeouts=self._timeouts,
            average_processing_seconds=(
                self._processing_seconds / self._processed if self._processed else 0.0
            ),
            success_rate=self._succeeded / self._processed * 100 if self._processed else 100.0,
            throughput_per_minute=self._succeeded / minutes,
            online=self._online,
            paused=self._paused,
            processing_active=self._processing,
        )


__all__ = ["TransactionQueueManager", "compute_retry_delay"]
