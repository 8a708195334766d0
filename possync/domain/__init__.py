"""
Domain package for the POS offline sync engine.

Exports the sales payload, the delivery envelope and the sync result models
shared by the queue, delta sync, monitor and orchestrator. Keep this package
focused on data definitions and validation concerns.
"""

from possync.domain.models import (
    ChangeSet,
    LineItem,
    PaymentBreakdown,
    QueueMetadata,
    QueueStatus,
    ReferenceItem,
    SalesTransaction,
    SyncConflict,
)
from possync.domain.validation import validate_transaction

__all__ = [
    "ChangeSet",
    "LineItem",
    "PaymentBreakdown",
    "QueueMetadata",
    "QueueStatus",
    "ReferenceItem",
    "SalesTransaction",
    "SyncConflict",
    "validate_transaction",
]
