"""
Infrastructure package for the POS offline sync engine.

Centralizes I/O concerns: the durable local store (in-memory and Postgres), the
database connection factories and the HTTP gateway to the back office. Keep
this layer focused on I/O and resource management, decoupled from queue and
delta sync policy.
"""

from possync.infrastructure.db_factory import build_dsn, open_async_pool
from possync.infrastructure.gateway import HttpRemoteGateway, RemoteGateway
from possync.infrastructure.store import KeyValueStore, MemorySyncStore, SyncStore

__all__ = [
    "build_dsn",
    "HttpRemoteGateway",
    "KeyValueStore",
    "MemorySyncStore",
    "open_async_pool",
    "RemoteGateway",
    "SyncStore",
]
