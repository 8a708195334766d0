"""
Sync engine components: circuit breaker, performance monitor, transaction queue
manager and delta sync manager.
"""

from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.monitor import PerformanceMonitor
from possync.sync.queue_manager import TransactionQueueManager
from possync.sync.delta_sync import DeltaSyncManager

__all__ = [
    "CircuitBreaker",
    "DeltaSyncManager",
    "PerformanceMonitor",
    "TransactionQueueManager",
]
