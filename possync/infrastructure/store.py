"""
Persistence surface consumed by the sync engine.

The store is the single source of truth: the queue manager and delta sync
manager keep in-memory caches over it, but every mutation is written here
first and a restart rebuilds the caches from the store alone.

``MemorySyncStore`` keeps deep copies of everything it is handed so that
mutating a cached model never changes the "durable" copy behind the caller's
back. It is used by the unit tests and by embedded development setups.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from possync.domain.models import (
    QueueMetadata,
    QueueStatus,
    ReferenceItem,
    SalesTransaction,
    SyncConflict,
)

_PING_KEY = "store-ping"


@runtime_checkable
class KeyValueStore(Protocol):
    """Small durable key-value area for checkpoints and session tokens."""

    async def get_value(self, key: str) -> Optional[Any]: ...

    async def set_value(self, key: str, value: Any) -> None: ...

    async def delete_value(self, key: str) -> None: ...


@runtime_checkable
class SyncStore(KeyValueStore, Protocol):
    """
    Durable collections for queued transactions, their metadata, reference
    entities and conflict records.
    """

    async def put_transaction(self, transaction: SalesTransaction) -> None: ...

    async def get_transaction(self, transaction_id: str) -> Optional[SalesTransaction]: ...

    async def delete_transaction(self, transaction_id: str) -> None: ...

    async def list_transactions(self) -> List[SalesTransaction]: ...

    async def find_transaction_ids_by_receipt(self, receipt_number: str) -> List[str]: ...

    async def put_metadata(self, metadata: QueueMetadata) -> None: ...

    async def get_metadata(self, transaction_id: str) -> Optional[QueueMetadata]: ...

    async def delete_metadata(self, transaction_id: str) -> None: ...

    async def list_metadata(self, status: Optional[QueueStatus] = None) -> List[QueueMetadata]: ...

    async def put_entity(self, item: ReferenceItem) -> None: ...

    async def get_entity(self, entity_id: str) -> Optional[ReferenceItem]: ...

    async def list_entities(self, active_only: bool = False) -> List[ReferenceItem]: ...

    async def add_conflict(self, conflict: SyncConflict) -> None: ...

    async def list_conflicts(self, limit: Optional[int] = None) -> List[SyncConflict]: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class AbstractSyncStore(abc.ABC):
    """Optional ABC helper; ``ping`` is implemented as a key-value write/read."""

    @abc.abstractmethod
    async def get_value(self, key: str) -> Optional[Any]:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    async def set_value(self, key: str, value: Any) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def ping(self) -> None:
        """Raise unless the store accepts a write and returns it."""
        await self.set_value(_PING_KEY, {"ok": True})
        if await self.get_value(_PING_KEY) != {"ok": True}:
            raise OSError("store did not return the value it just accepted")


class MemorySyncStore(AbstractSyncStore):
    """In-process implementation of ``SyncStore``."""

    def __init__(self) -> None:
        self._transactions: Dict[str, SalesTransaction] = {}
        self._metadata: Dict[str, QueueMetadata] = {}
        self._entities: Dict[str, ReferenceItem] = {}
        self._conflicts: List[SyncConflict] = []
        self._values: Dict[str, Any] = {}
        self.closed = False

    async def put_transaction(self, transaction: SalesTransaction) -> None:
        self._transactions[transaction.id] = transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[SalesTransaction]:
        found = self._transactions.get(transaction_id)
        return found.model_copy(deep=True) if found else None

    async def delete_transaction(self, transaction_id: str) -> None:
        self._transactions.pop(transaction_id, None)

    async def list_transactions(self) -> List[SalesTransaction]:
        return [txn.model_copy(deep=True) for txn in self._transactions.values()]

    async def find_transaction_ids_by_receipt(self, receipt_number: str) -> List[str]:
        return [
            txn.id for txn in self._transactions.values() if txn.receipt_number == receipt_number
        ]

    async def put_metadata(self, metadata: QueueMetadata) -> None:
        self._metadata[metadata.transaction_id] = metadata.model_copy(deep=True)

    async def get_metadata(self, transaction_id: str) -> Optional[QueueMetadata]:
        found = self._metadata.get(transaction_id)
        return found.model_copy(deep=True) if found else None

    async def delete_metadata(self, transaction_id: str) -> None:
        self._metadata.pop(transaction_id, None)

    async def list_metadata(self, status: Optional[QueueStatus] = None) -> List[QueueMetadata]:
        return [
            meta.model_copy(deep=True)
            for meta in self._metadata.values()
            if status is None or meta.status is status
        ]

    async def put_entity(self, item: ReferenceItem) -> None:
        self._entities[item.id] = item.model_copy(deep=True)

    async def get_entity(self, entity_id: str) -> Optional[ReferenceItem]:
        found = self._entities.get(entity_id)
        return found.model_copy(deep=True) if found else None

    async def list_entities(self, active_only: bool = False) -> List[ReferenceItem]:
        return [
            item.model_copy(deep=True)
            for item in self._entities.values()
            if item.is_active or not active_only
        ]

    async def add_conflict(self, conflict: SyncConflict) -> None:
        self._conflicts.append(conflict.model_copy(deep=True))

    async def list_conflicts(self, limit: Optional[int] = None) -> List[SyncConflict]:
        newest_first = list(reversed(self._conflicts))
        if limit is not None:
            newest_first = newest_first[:limit]
        return [conflict.model_copy(deep=True) for conflict in newest_first]

    async def get_value(self, key: str) -> Optional[Any]:
        return self._values.get(key)

    async def set_value(self, key: str, value: Any) -> None:
        self._values[key] = value

    async def delete_value(self, key: str) -> None:
        self._values.pop(key, None)

    async def close(self) -> None:
        self.closed = True


__all__ = ["AbstractSyncStore", "KeyValueStore", "MemorySyncStore", "SyncStore"]
