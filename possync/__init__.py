"""
possync - offline-first sync engine for point-of-sale terminals.

Keeps a branch terminal selling while the back office is unreachable:

- Finalized sales are validated and queued durably, then delivered exactly once
  with retries, backoff and a circuit breaker.
- Reference data (items, prices) is pulled incrementally from a checkpoint, with
  configurable conflict resolution.
- Sync health is monitored with threshold alerts and periodic reports.

The host application talks to a single ``SyncOrchestrator`` built with
``build_orchestrator``.
"""

from __future__ import annotations

__version__ = "0.1.0"

from possync.config import Settings, get_settings
from possync.domain.models import QueueMetadata, QueueStatus, SalesTransaction
from possync.errors import ErrorKind, SyncError, TransactionValidationError
from possync.infrastructure.store import MemorySyncStore, SyncStore
from possync.orchestrator import SyncOrchestrator, build_orchestrator
from possync.utils.logging import configure_logging, get_logger

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "get_settings",
    # Domain
    "QueueMetadata",
    "QueueStatus",
    "SalesTransaction",
    # Errors
    "ErrorKind",
    "SyncError",
    "TransactionValidationError",
    # Storage
    "MemorySyncStore",
    "SyncStore",
    # Orchestration
    "SyncOrchestrator",
    "build_orchestrator",
    # Logging
    "configure_logging",
    "get_logger",
]
