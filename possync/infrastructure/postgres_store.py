"""
Postgres implementation of the sync store.

Each collection is a table keyed by id with the full model kept in a JSONB
column; the handful of columns the engine filters on (status, receipt number,
activity flag) are duplicated next to it so range queries stay indexed.
"""

from __future__ import annotations

from typing import Any, List, Optional

from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from possync.config import Settings
from possync.domain.models import (
    QueueMetadata,
    QueueStatus,
    ReferenceItem,
    SalesTransaction,
    SyncConflict,
)
from possync.infrastructure.db_factory import open_async_pool
from possync.infrastructure.store import AbstractSyncStore

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_transactions (
    id TEXT PRIMARY KEY,
    receipt_number TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    payload JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS sync_transactions_receipt_idx
    ON sync_transactions (receipt_number);

CREATE TABLE IF NOT EXISTS sync_queue_metadata (
    transaction_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    priority INTEGER NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS sync_queue_metadata_status_idx
    ON sync_queue_metadata (status);

CREATE TABLE IF NOT EXISTS sync_entities (
    id TEXT PRIMARY KEY,
    is_active BOOLEAN NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id BIGSERIAL PRIMARY KEY,
    entity_id TEXT NOT NULL,
    field TEXT NOT NULL,
    detected_at TIMESTAMPTZ NOT NULL,
    payload JSONB NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_kv (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

TABLES = (
    "sync_transactions",
    "sync_queue_metadata",
    "sync_entities",
    "sync_conflicts",
    "sync_kv",
)


class PostgresSyncStore(AbstractSyncStore):
    """
    ``SyncStore`` backed by a psycopg async connection pool.

    Use ``PostgresSyncStore.open(settings)`` to build one with its own pool;
    the store closes the pool it was given when ``close()`` is called.
    """

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    @classmethod
    async def open(cls, settings: Settings, create_schema: bool = True) -> "PostgresSyncStore":
        pool = await open_async_pool(
            settings.dsn,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
        store = cls(pool)
        if create_schema:
            await store.create_schema()
        return store

    async def create_schema(self) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def _fetch_payloads(self, query: str, params: tuple = ()) -> List[Any]:
        async with self._pool.connection() as conn:
            cur = await conn.execute(query, params)
            return [row[0] for row in await cur.fetchall()]

    async def _execute(self, query: str, params: tuple = ()) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(query, params)

    # Transactions

    async def put_transaction(self, transaction: SalesTransaction) -> None:
        await self._execute(
            """
            INSERT INTO sync_transactions (id, receipt_number, created_at, payload)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET payload = EXCLUDED.payload
            """,
            (
                transaction.id,
                transaction.receipt_number,
                transaction.created_at,
                Jsonb(transaction.model_dump(mode="json")),
            ),
        )

    async def get_transaction(self, transaction_id: str) -> Optional[SalesTransaction]:
        rows = await self._fetch_payloads(
            "SELECT payload FROM sync_transactions WHERE id = %s", (transaction_id,)
        )
        return SalesTransaction.model_validate(rows[0]) if rows else None

    async def delete_transaction(self, transaction_id: str) -> None:
        await self._execute("DELETE FROM sync_transactions WHERE id = %s", (transaction_id,))

    async def list_transactions(self) -> List[SalesTransaction]:
        rows = await self._fetch_payloads(
            "SELECT payload FROM sync_transactions ORDER BY created_at, id"
        )
        return [SalesTransaction.model_validate(row) for row in rows]

    async def find_transaction_ids_by_receipt(self, receipt_number: str) -> List[str]:
        return await self._fetch_payloads(
            "SELECT id FROM sync_transactions WHERE receipt_number = %s", (receipt_number,)
        )

    # Queue metadata

    async def put_metadata(self, metadata: QueueMetadata) -> None:
        await self._execute(
            """
            INSERT INTO sync_queue_metadata (transaction_id, status, priority, payload)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (transaction_id) DO UPDATE
            SET status = EXCLUDED.status,
                priority = EXCLUDED.priority,
                payload = EXCLUDED.payload,
                updated_at = now()
            """,
            (
                metadata.transaction_id,
                metadata.status.value,
                metadata.priority,
                Jsonb(metadata.model_dump(mode="json")),
            ),
        )

    async def get_metadata(self, transaction_id: str) -> Optional[QueueMetadata]:
        rows = await self._fetch_payloads(
            "SELECT payload FROM sync_queue_metadata WHERE transaction_id = %s",
            (transaction_id,),
        )
        return QueueMetadata.model_validate(rows[0]) if rows else None

    async def delete_metadata(self, transaction_id: str) -> None:
        await self._execute(
            "DELETE FROM sync_queue_metadata WHERE transaction_id = %s", (transaction_id,)
        )

    async def list_metadata(self, status: Optional[QueueStatus] = None) -> List[QueueMetadata]:
        if status is None:
            rows = await self._fetch_payloads("SELECT payload FROM sync_queue_metadata")
        else:
            rows = await self._fetch_payloads(
                "SELECT payload FROM sync_queue_metadata WHERE status = %s", (status.value,)
            )
        return [QueueMetadata.model_validate(row) for row in rows]

    # Reference entities

    async def put_entity(self, item: ReferenceItem) -> None:
        await self._execute(
            """
            INSERT INTO sync_entities (id, is_active, payload)
            VALUES (%s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET is_active = EXCLUDED.is_active, payload = EXCLUDED.payload, updated_at = now()
            """,
            (item.id, item.is_active, Jsonb(item.model_dump(mode="json"))),
        )

    async def get_entity(self, entity_id: str) -> Optional[ReferenceItem]:
        rows = await self._fetch_payloads(
            "SELECT payload FROM sync_entities WHERE id = %s", (entity_id,)
        )
        return ReferenceItem.model_validate(rows[0]) if rows else None

    async def list_entities(self, active_only: bool = False) -> List[ReferenceItem]:
        query = "SELECT payload FROM sync_entities"
        if active_only:
            query += " WHERE is_active"
        rows = await self._fetch_payloads(query)
        return [ReferenceItem.model_validate(row) for row in rows]

    # Conflicts

    async def add_conflict(self, conflict: SyncConflict) -> None:
        await self._execute(
            """
            INSERT INTO sync_conflicts (entity_id, field, detected_at, payload)
            VALUES (%s, %s, %s, %s)
            """,
            (
                conflict.entity_id,
                conflict.field,
                conflict.detected_at,
                Jsonb(conflict.model_dump(mode="json")),
            ),
        )

    async def list_conflicts(self, limit: Optional[int] = None) -> List[SyncConflict]:
        query = "SELECT payload FROM sync_conflicts ORDER BY id DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT %s"
            params = (limit,)
        rows = await self._fetch_payloads(query, params)
        return [SyncConflict.model_validate(row) for row in rows]

    # Key-value area

    async def get_value(self, key: str) -> Optional[Any]:
        rows = await self._fetch_payloads("SELECT value FROM sync_kv WHERE key = %s", (key,))
        return rows[0] if rows else None

    async def set_value(self, key: str, value: Any) -> None:
        await self._execute(
            """
            INSERT INTO sync_kv (key, value) VALUES (%s, %s)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
            """,
            (key, Jsonb(value)),
        )

    async def delete_value(self, key: str) -> None:
        await self._execute("DELETE FROM sync_kv WHERE key = %s", (key,))

    async def close(self) -> None:
        await self._pool.close()


__all__ = ["PostgresSyncStore", "SCHEMA_SQL", "TABLES"]
