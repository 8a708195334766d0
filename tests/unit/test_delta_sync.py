from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from possync.config import Settings
from possync.domain.models import CircuitState, ReferenceItem
from possync.errors import ErrorKind, GatewayError
from possync.infrastructure.store import MemorySyncStore
from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.delta_sync import DeltaSyncManager
from possync.sync.monitor import PerformanceMonitor
from possync.utils.clock import EPOCH
from tests.fakes import START, FakeClock, FakeRemoteGateway

HOUR = timedelta(hours=1)


def server_error() -> GatewayError:
    return GatewayError("bad gateway", ErrorKind.SERVER, 502, "HTTP_502")


@pytest.fixture
def delta(
    store: MemorySyncStore,
    gateway: FakeRemoteGateway,
    breaker: CircuitBreaker,
    settings: Settings,
    monitor: PerformanceMonitor,
    clock: FakeClock,
) -> DeltaSyncManager:
    return DeltaSyncManager(store, gateway, breaker, settings=settings, monitor=monitor, clock=clock)


def seed_menu(gateway: FakeRemoteGateway) -> None:
    gateway.put_item("ESP", "Espresso", "2.50", modified=START - 3 * HOUR)
    gateway.put_item("LAT", "Latte", "3.75", modified=START - 2 * HOUR)
    gateway.put_item("MUF", "Muffin", "2.25", modified=START - HOUR)


@pytest.mark.asyncio
async def test_full_sync_then_detection_is_empty(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, store: MemorySyncStore
) -> None:
    seed_menu(gateway)

    result = await delta.run()

    assert result.success
    assert result.synced == 3
    assert delta.checkpoint == START - HOUR
    assert len(await store.list_entities(active_only=True)) == 3
    latte = await store.get_entity("LAT")
    assert latte.name == "Latte"
    assert latte.base_price == Decimal("3.75")

    changes = await delta.detect_changes()
    assert changes.is_empty
    assert not changes.full_scan


@pytest.mark.asyncio
async def test_incremental_run_only_pulls_changed_items(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, store: MemorySyncStore
) -> None:
    seed_menu(gateway)
    await delta.run()
    gateway.put_item("LAT", "Latte", "3.95", modified=START)
    gateway.put_item("TEA", "Green Tea", "2.00", modified=START)

    changes = await delta.detect_changes()
    assert changes.modified == {"LAT"}
    assert changes.added == {"TEA"}

    result = await delta.run()

    assert result.synced == 2
    assert (await store.get_entity("LAT")).base_price == Decimal("3.95")
    assert delta.checkpoint == START


@pytest.mark.asyncio
async def test_server_wins_keeps_remote_value_and_records_conflict(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, store: MemorySyncStore
) -> None:
    await store.put_entity(ReferenceItem(id="ESP", name="Espresso", base_price=Decimal("2.00")))
    gateway.put_item("ESP", "Espresso", "2.50", modified=START - HOUR)

    result = await delta.run()

    assert result.conflicts == 1
    assert (await store.get_entity("ESP")).base_price == Decimal("2.5")
    [conflict] = await store.list_conflicts()
    assert conflict.field == "base_price"
    assert conflict.resolution == "server"
    assert conflict.resolved_by == "system"
    assert conflict.local_value == Decimal("2.00")
    assert not conflict.requires_review


@pytest.mark.asyncio
async def test_client_wins_keeps_local_value(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, store: MemorySyncStore
) -> None:
    delta.strategy = "client-wins"
    await store.put_entity(ReferenceItem(id="ESP", name="Espresso", base_price=Decimal("2.00")))
    gateway.put_item("ESP", "Espresso", "2.50", modified=START - HOUR)

    await delta.run()

    assert (await store.get_entity("ESP")).base_price == Decimal("2.00")
    [conflict] = await delta.list_conflicts()
    assert conflict.resolution == "client"


@pytest.mark.asyncio
async def test_manual_mode_applies_remote_and_flags_for_review(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, store: MemorySyncStore
) -> None:
    delta.strategy = "manual"
    await store.put_entity(ReferenceItem(id="ESP", name="Espresso", base_price=Decimal("2.00")))
    gateway.put_item("ESP", "Espresso", "2.50", modified=START - HOUR)

    await delta.run()

    assert (await store.get_entity("ESP")).base_price == Decimal("2.5")
    [conflict] = await store.list_conflicts()
    assert conflict.requires_review


@pytest.mark.asyncio
async def test_deletions_are_soft(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, store: MemorySyncStore, clock: FakeClock
) -> None:
    await store.put_entity(ReferenceItem(id="OLD", name="Discontinued", base_price=Decimal("1")))
    seed_menu(gateway)

    await delta.run()

    vanished = await store.get_entity("OLD")
    assert vanished is not None
    assert not vanished.is_active

    gateway.put_item("LAT", "Latte", "3.75", modified=START, disabled=True)
    clock.advance(60)
    changes = await delta.detect_changes()
    assert changes.deleted == {"LAT"}

    await delta.run()

    disabled = await store.get_entity("LAT")
    assert not disabled.is_active
    assert disabled.updated_at == clock.now


@pytest.mark.asyncio
async def test_listing_is_paged_until_a_short_page(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, store: MemorySyncStore
) -> None:
    delta.page_size = 2
    delta.batch_size = 2
    for index in range(5):
        gateway.put_item(f"ITEM-{index}", price="1.00", modified=START - timedelta(minutes=index))

    result = await delta.run()

    assert gateway.calls["list_changed"] == 3
    assert result.synced == 5
    assert len(await store.list_entities()) == 5


@pytest.mark.asyncio
async def test_checkpoint_holds_on_partial_failure_unless_accepted(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, breaker: CircuitBreaker
) -> None:
    seed_menu(gateway)
    gateway.fail_next("get_entity", server_error())

    partial = await delta.run()

    assert not partial.success
    assert partial.failed == 1
    assert partial.synced == 2
    assert delta.checkpoint == EPOCH
    assert breaker.failure_count == 1

    gateway.fail_next("get_entity", server_error())
    accepted = await delta.run(accept_partial=True)

    assert not accepted.success
    assert delta.checkpoint == START - HOUR


@pytest.mark.asyncio
async def test_missing_remote_item_in_batch_becomes_soft_delete(
    delta: DeltaSyncManager, store: MemorySyncStore
) -> None:
    await store.put_entity(ReferenceItem(id="GONE", name="Gone", base_price=Decimal("1")))

    outcome = await delta.sync_batch(["GONE"])

    assert outcome.synced == 1
    assert outcome.failed == 0
    assert not (await store.get_entity("GONE")).is_active


@pytest.mark.asyncio
async def test_detection_failure_ends_run_and_feeds_breaker(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, breaker: CircuitBreaker
) -> None:
    gateway.fail_next("list_changed", server_error())

    result = await delta.run()

    assert not result.success
    assert result.errors[0].startswith("change detection failed")
    assert breaker.failure_count == 1
    assert delta.checkpoint == EPOCH


@pytest.mark.asyncio
async def test_run_is_skipped_offline_or_with_open_breaker(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, breaker: CircuitBreaker
) -> None:
    delta.set_online(False)
    assert (await delta.run()).skipped_reason == "offline"

    delta.set_online(True)
    for _ in range(breaker.threshold):
        breaker.record_failure()
    assert breaker.state is CircuitState.OPEN
    assert (await delta.run()).skipped_reason == "circuit open"
    assert gateway.calls["list_changed"] == 0


@pytest.mark.asyncio
async def test_force_full_sync_rescans_from_epoch(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway
) -> None:
    seed_menu(gateway)
    await delta.run()

    result = await delta.force_full_sync()

    assert result.success
    assert result.synced == 3
    assert delta.checkpoint == START - HOUR


@pytest.mark.asyncio
async def test_checkpoint_survives_restart(
    delta: DeltaSyncManager,
    gateway: FakeRemoteGateway,
    store: MemorySyncStore,
    breaker: CircuitBreaker,
    settings: Settings,
    clock: FakeClock,
) -> None:
    seed_menu(gateway)
    await delta.run()

    restarted = DeltaSyncManager(store, gateway, breaker, settings=settings, clock=clock)

    assert await restarted.load() == START - HOUR


@pytest.mark.asyncio
async def test_run_reports_status_and_monitor_sample(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway, monitor: PerformanceMonitor, clock: FakeClock
) -> None:
    seed_menu(gateway)

    await delta.run()

    status = delta.status()
    assert status.last_sync_at == clock.now
    assert status.last_result.synced == 3
    assert status.conflict_resolution == "server-wins"
    [sample] = monitor.samples()
    assert sample.kind == "delta_sync"
    assert sample.items == 3
    assert not delta.is_due()


@pytest.mark.asyncio
async def test_periodic_loop_runs_when_due_and_stops_cleanly(
    delta: DeltaSyncManager, gateway: FakeRemoteGateway
) -> None:
    seed_menu(gateway)

    delta.start()
    await asyncio.sleep(0.01)
    await delta.stop()

    assert delta.last_sync_at is not None
    assert not delta.running
