"""
Delta sync of reference data (the item master) from the back office.

A run asks the remote for items modified since the stored checkpoint,
classifies them against the local copies, pulls the changed ones in batches,
resolves field-level conflicts with the configured strategy and writes the
result locally. Deletions are soft: the local row is marked inactive so
historical transactions keep resolving their items.

The checkpoint only advances after every batch succeeded (or the caller
accepts a partial run), and it advances to the remote's own high-water mark so
local clock skew cannot skip changes.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from possync.config import ConflictMode, Settings, get_settings
from possync.domain.models import (
    ChangeMarker,
    ChangeSet,
    DeltaSyncResult,
    DeltaSyncStatus,
    ReferenceItem,
    SyncConflict,
)
from possync.errors import RemoteNotFoundError, classify_error
from possync.infrastructure.gateway import RemoteGateway
from possync.infrastructure.store import SyncStore
from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.mapping import CHANGE_FIELDS, TRACKED_FIELDS, item_from_remote
from possync.sync.monitor import PerformanceMonitor
from possync.utils.clock import EPOCH, Clock, utc_now
from possync.utils.logging import get_logger

log = get_logger(__name__)

SAMPLE_KIND = "delta_sync"
CHECKPOINT_KEY = "delta-checkpoint:{branch_id}"


@dataclass
class BatchOutcome:
    synced: int = 0
    failed: int = 0
    conflicts: int = 0
    transient_failures: int = 0
    errors: List[str] = field(default_factory=list)


class DeltaSyncManager:
    """
    Pulls item master changes since the last checkpoint.

    Parameters
    ----------
    store : SyncStore
        Local entity, conflict and checkpoint storage.
    gateway : RemoteGateway
        Back-office client.
    breaker : CircuitBreaker
        Shared with the transaction queue; fed one signal per batch.
    """

    def __init__(
        self,
        store: SyncStore,
        gateway: RemoteGateway,
        breaker: CircuitBreaker,
        settings: Optional[Settings] = None,
        monitor: Optional[PerformanceMonitor] = None,
        clock: Clock = utc_now,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._gateway = gateway
        self._breaker = breaker
        self._monitor = monitor
        self._clock = clock

        self.branch_id = settings.branch_id
        self.interval = settings.sync_interval
        self.batch_size = settings.sync_batch_size
        self.page_size = settings.sync_page_size
        self.strategy: ConflictMode = settings.conflict_resolution

        self._checkpoint: datetime = EPOCH
        self._last_sync_at: Optional[datetime] = None
        self._last_result: Optional[DeltaSyncResult] = None
        self._running = False
        self._online = True
        self._loop_task: Optional[asyncio.Task] = None
        self._runs: Set[asyncio.Task] = set()

    @property
    def checkpoint(self) -> datetime:
        return self._checkpoint

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_sync_at(self) -> Optional[datetime]:
        return self._last_sync_at

    @property
    def checkpoint_key(self) -> str:
        return CHECKPOINT_KEY.format(branch_id=self.branch_id)

    def set_online(self, online: bool) -> None:
        self._online = online

    async def load(self) -> datetime:
        """Read the persisted checkpoint; defaults to the epoch (full scan)."""
        raw = await self._store.get_value(self.checkpoint_key)
        self._checkpoint = datetime.fromisoformat(raw) if raw else EPOCH
        log.info(
            "[DELTA SYNC] checkpoint loaded",
            extra={"checkpoint": self._checkpoint.isoformat()},
        )
        return self._checkpoint

    async def _save_checkpoint(self, value: datetime) -> None:
        await self._store.set_value(self.checkpoint_key, value.isoformat())
        self._checkpoint = value

    # Detection

    async def _fetch_markers(self, since: datetime) -> Dict[str, ChangeMarker]:
        markers: Dict[str, ChangeMarker] = {}
        page = 0
        while True:
            batch = await self._gateway.list_changed(since, CHANGE_FIELDS, self.page_size, page)
            for marker in batch:
                markers[marker.id] = marker
            if len(batch) < self.page_size:
                return markers
            page += 1

    async def detect_changes(self) -> ChangeSet:
        """Classify remote changes since the checkpoint into added/modified/deleted."""
        since = self._checkpoint
        full_scan = since <= EPOCH
        markers = await self._fetch_markers(since)
        local = {item.id: item for item in await self._store.list_entities()}

        added: Set[str] = set()
        modified: Set[str] = set()
        deleted: Set[str] = set()
        for entity_id, marker in markers.items():
            if marker.deleted:
                if entity_id in local and local[entity_id].is_active:
                    deleted.add(entity_id)
            elif entity_id in local:
                modified.add(entity_id)
            else:
                added.add(entity_id)

        if full_scan:
            deleted |= {
                entity_id
                for entity_id, item in local.items()
                if item.is_active and entity_id not in markers
            }

        changes = ChangeSet(
            added=added,
            modified=modified,
            deleted=deleted,
            since=since,
            checked_at=self._clock(),
            full_scan=full_scan,
            high_water=max((m.modified_at for m in markers.values()), default=None),
        )
        log.info(
            "[DELTA SYNC] changes detected",
            extra={
                "added": len(added),
                "modified": len(modified),
                "deleted": len(deleted),
                "full_scan": full_scan,
            },
        )
        return changes

    # Batches

    def _detect_conflicts(
        self, local: ReferenceItem, remote: ReferenceItem
    ) -> List[SyncConflict]:
        now = self._clock()
        conflicts: List[SyncConflict] = []
        for name in TRACKED_FIELDS:
            local_value: Any = getattr(local, name)
            remote_value: Any = getattr(remote, name)
            if local_value != remote_value:
                conflicts.append(
                    SyncConflict(
                        entity_id=remote.id,
                        field=name,
                        local_value=local_value,
                        remote_value=remote_value,
                        detected_at=now,
                    )
                )
        return conflicts

    def _resolve(
        self,
        local: Optional[ReferenceItem],
        remote: ReferenceItem,
        conflicts: List[SyncConflict],
    ) -> ReferenceItem:
        now = self._clock()
        update: Dict[str, Any] = {}
        for conflict in conflicts:
            conflict.resolved_by = "system"
            conflict.resolved_at = now
            if self.strategy == "client-wins":
                conflict.resolution = "client"
                update[conflict.field] = conflict.local_value
            else:
                conflict.resolution = "server"
                conflict.requires_review = self.strategy == "manual"
        if local is not None and local.created_at is not None and remote.created_at is None:
            update["created_at"] = local.created_at
        return remote.model_copy(update=update) if update else remote

    async def _soft_delete(self, entity_id: str) -> bool:
        local = await self._store.get_entity(entity_id)
        if local is None or not local.is_active:
            return False
        now = self._clock()
        await self._store.put_entity(
            local.model_copy(update={"is_active": False, "updated_at": now, "last_synced_at": now})
        )
        return True

    async def sync_batch(self, ids: List[str]) -> BatchOutcome:
        """Fetch, reconcile and store each id; per-id failures do not stop the batch."""
        outcome = BatchOutcome()
        for entity_id in ids:
            try:
                payload = await self._gateway.get_entity(entity_id)
                remote = item_from_remote(payload, synced_at=self._clock())
            except RemoteNotFoundError:
                await self._soft_delete(entity_id)
                outcome.synced += 1
                continue
            except Exception as exc:  # noqa: BLE001 - per-item failures are counted, not raised
                kind = classify_error(exc)
                outcome.failed += 1
                if kind.transient:
                    outcome.transient_failures += 1
                outcome.errors.append(f"{entity_id}: {exc}")
                log.warning(
                    "[DELTA SYNC] item failed",
                    extra={"entity_id": entity_id, "error_kind": kind.value, "error": str(exc)},
                )
                continue

            local = await self._store.get_entity(entity_id)
            conflicts = self._detect_conflicts(local, remote) if local is not None else []
            resolved = self._resolve(local, remote, conflicts)
            for conflict in conflicts:
                await self._store.add_conflict(conflict)
            await self._store.put_entity(resolved)
            outcome.synced += 1
            outcome.conflicts += len(conflicts)
        return outcome

    # Runs

    async def run(self, accept_partial: bool = False) -> DeltaSyncResult:
        """
        One full delta sync: detect, pull in batches, apply deletions.

        Failures are reported in the result, never raised.
        """
        if self._running:
            return DeltaSyncResult(success=False, skipped_reason="already running")
        if not self._online:
            return DeltaSyncResult(success=False, skipped_reason="offline")
        if not self._breaker.allow_request():
            return DeltaSyncResult(success=False, skipped_reason="circuit open")

        self._running = True
        started = time.perf_counter()
        result = DeltaSyncResult(success=False)
        try:
            try:
                changes = await self.detect_changes()
            except Exception as exc:  # noqa: BLE001 - detection failure ends the run
                kind = classify_error(exc)
                if kind.transient:
                    self._breaker.record_failure()
                result.errors.append(f"change detection failed: {exc}")
                log.error(
                    "[DELTA SYNC] change detection failed",
                    extra={"error_kind": kind.value, "error": str(exc)},
                )
                return result

            ids = sorted(changes.added | changes.modified)
            complete = True
            batches = 0
            for start in range(0, len(ids), self.batch_size):
                if batches and not self._breaker.allow_request():
                    result.errors.append("circuit opened during sync")
                    complete = False
                    break
                outcome = await self.sync_batch(ids[start : start + self.batch_size])
                batches += 1
                self._breaker.record(outcome.transient_failures == 0)
                result.synced += outcome.synced
                result.failed += outcome.failed
                result.conflicts += outcome.conflicts
                result.errors.extend(outcome.errors)
                if outcome.failed:
                    complete = False
            if not batches:
                self._breaker.record_success()

            for entity_id in sorted(changes.deleted):
                if await self._soft_delete(entity_id):
                    result.synced += 1

            result.success = complete
            if (complete or accept_partial) and changes.high_water is not None:
                if changes.high_water > self._checkpoint:
                    await self._save_checkpoint(changes.high_water)
            if complete:
                self._last_sync_at = self._clock()
            return result
        finally:
            self._breaker.release_trial()
            self._running = False
            result.duration_seconds = time.perf_counter() - started
            result.next_sync_at = self._clock() + timedelta(seconds=self.interval)
            self._last_result = result
            if self._monitor is not None:
                self._monitor.record(
                    SAMPLE_KIND,
                    result.duration_seconds,
                    result.success,
                    items=result.synced,
                )
            log.info(
                "[DELTA SYNC] complete",
                extra={
                    "success": result.success,
                    "synced": result.synced,
                    "failed": result.failed,
                    "conflicts": result.conflicts,
                    "duration": round(result.duration_seconds, 3),
                },
            )

    async def force_full_sync(self) -> DeltaSyncResult:
        """Reset the checkpoint to the epoch and rerun; recovery after suspected drift."""
        log.info("[DELTA SYNC] forcing full sync", extra={"branch_id": self.branch_id})
        await self._save_checkpoint(EPOCH)
        return await self.run()

    async def list_conflicts(self, limit: Optional[int] = 50) -> List[SyncConflict]:
        return await self._store.list_conflicts(limit)

    def status(self) -> DeltaSyncStatus:
        return DeltaSyncStatus(
            branch_id=self.branch_id,
            checkpoint=self._checkpoint,
            last_sync_at=self._last_sync_at,
            last_result=self._last_result,
            running=self._running,
            online=self._online,
            conflict_resolution=self.strategy,
        )

    # Periodic loop

    def is_due(self) -> bool:
        if self._last_sync_at is None:
            return True
        return self._clock() - self._last_sync_at >= timedelta(seconds=self.interval)

    def trigger(self) -> asyncio.Task:
        """Run once in the background; stopping the loop does not cancel it."""
        task = asyncio.get_running_loop().create_task(self.run())
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    async def _loop(self) -> None:
        while True:
            if self.is_due():
                # Shielded so that stop() cancels the timer, not a run in progress.
                await asyncio.shield(self.trigger())
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        await self.drain()

    async def drain(self) -> None:
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)


__all__ = ["BatchOutcome", "CHECKPOINT_KEY", "DeltaSyncManager"]
