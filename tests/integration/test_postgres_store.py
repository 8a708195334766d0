"""
Integration tests for the Postgres-backed sync store.

These tests run against a real PostgreSQL instance and verify that:
1. Transactions and queue metadata survive a round trip through JSONB
2. Status and receipt lookups use the indexed columns correctly
3. The queue manager can run end to end on top of the store

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
from datetime import timedelta
from decimal import Decimal
from typing import AsyncIterator

import pytest
import pytest_asyncio

from possync.config import Settings
from possync.domain.models import QueueMetadata, QueueStatus, ReferenceItem, SyncConflict
from possync.infrastructure.postgres_store import TABLES, PostgresSyncStore
from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.queue_manager import TransactionQueueManager
from tests.fakes import START, FakeClock, FakeRemoteGateway, build_transaction

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
        reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable Postgres",
    ),
]


@pytest_asyncio.fixture
async def pg_store(
    test_settings: Settings, db_connection_available: bool
) -> AsyncIterator[PostgresSyncStore]:
    if not db_connection_available:
        pytest.skip("Postgres is not reachable")
    store = await PostgresSyncStore.open(test_settings, create_schema=True)
    async with store._pool.connection() as conn:
        await conn.execute(f"TRUNCATE {', '.join(TABLES)}")
    try:
        yield store
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_transaction_round_trip_and_receipt_lookup(pg_store: PostgresSyncStore) -> None:
    transaction = build_transaction(tax="0.74")

    await pg_store.put_transaction(transaction)
    await pg_store.put_transaction(transaction)

    loaded = await pg_store.get_transaction(transaction.id)
    assert loaded == transaction
    assert loaded.total_amount == Decimal("9.99")
    assert await pg_store.find_transaction_ids_by_receipt(transaction.receipt_number) == [
        transaction.id
    ]

    await pg_store.delete_transaction(transaction.id)
    assert await pg_store.get_transaction(transaction.id) is None


@pytest.mark.asyncio
async def test_metadata_filtering_by_status(pg_store: PostgresSyncStore) -> None:
    pending = QueueMetadata(transaction_id="txn-a", created_at=START)
    failed = QueueMetadata(
        transaction_id="txn-b",
        created_at=START,
        status=QueueStatus.FAILED,
        attempts=5,
        last_error="HTTP_503",
    )
    await pg_store.put_metadata(pending)
    await pg_store.put_metadata(failed)

    failed.status = QueueStatus.PENDING
    await pg_store.put_metadata(failed)

    assert {m.transaction_id for m in await pg_store.list_metadata(QueueStatus.PENDING)} == {
        "txn-a",
        "txn-b",
    }
    assert await pg_store.list_metadata(QueueStatus.FAILED) == []
    assert (await pg_store.get_metadata("txn-b")).attempts == 5


@pytest.mark.asyncio
async def test_entities_conflicts_and_key_values(pg_store: PostgresSyncStore) -> None:
    await pg_store.put_entity(ReferenceItem(id="ESP", name="Espresso", base_price=Decimal("2.50")))
    await pg_store.put_entity(ReferenceItem(id="OLD", name="Old", is_active=False))
    await pg_store.add_conflict(
        SyncConflict(
            entity_id="ESP",
            field="base_price",
            local_value="2.00",
            remote_value="2.50",
            detected_at=START,
            resolution="server",
        )
    )
    await pg_store.add_conflict(
        SyncConflict(entity_id="ESP", field="name", detected_at=START + timedelta(minutes=1))
    )
    await pg_store.set_value("delta-sync-checkpoint", {"at": START.isoformat()})

    assert [e.id for e in await pg_store.list_entities(active_only=True)] == ["ESP"]
    assert (await pg_store.get_entity("ESP")).base_price == Decimal("2.50")
    conflicts = await pg_store.list_conflicts(limit=1)
    assert len(conflicts) == 1
    assert await pg_store.get_value("delta-sync-checkpoint") == {"at": START.isoformat()}

    await pg_store.delete_value("delta-sync-checkpoint")
    assert await pg_store.get_value("delta-sync-checkpoint") is None
    await pg_store.ping()


@pytest.mark.asyncio
async def test_queue_delivers_from_postgres(
    pg_store: PostgresSyncStore, test_settings: Settings
) -> None:
    clock = FakeClock()
    gateway = FakeRemoteGateway()
    settings = test_settings.model_copy(
        update={"queue_batch_delay": 0.0, "queue_memory_limit": 10**12}
    )
    breaker = CircuitBreaker(threshold=5, reset_timeout=60, clock=clock)
    queue = TransactionQueueManager(pg_store, gateway, breaker, settings=settings, clock=clock)
    transactions = [build_transaction() for _ in range(3)]

    queue.set_online(False)
    for transaction in transactions:
        await queue.enqueue(transaction)

    restarted = TransactionQueueManager(pg_store, gateway, breaker, settings=settings, clock=clock)
    assert await restarted.load() == 3
    result = await restarted.process_queue()

    assert result.succeeded == 3
    completed = await pg_store.list_metadata(QueueStatus.COMPLETED)
    assert {m.transaction_id for m in completed} == {t.id for t in transactions}
    assert all(m.remote_ref for m in completed)
