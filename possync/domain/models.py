"""
Domain models for the POS offline sync engine.

The sales payload is immutable once finalized at the till; the delivery
envelope (``QueueMetadata``) is the only part the queue manager mutates.
Everything here is a pydantic model so the durable store can round-trip it
through JSON without bespoke codecs.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field, field_validator, model_validator

from possync.errors import ErrorKind

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    STUCK = "stuck"


# Still owned by the delivery pipeline; completed/failed/cancelled need an operator.
ACTIVE_STATUSES = frozenset({QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.STUCK})


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class LineItem(BaseModel):
    item_id: str
    item_name: str
    barcode: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")

    model_config = {"frozen": True}

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_price - self.discount


class PaymentBreakdown(BaseModel):
    cash: Decimal = Decimal("0")
    card: Decimal = Decimal("0")
    ewallet: Decimal = Decimal("0")
    bank_transfer: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")

    model_config = {"frozen": True}

    @property
    def total_payment(self) -> Decimal:
        return self.cash + self.card + self.ewallet + self.bank_transfer + self.credit

    def tenders(self) -> Dict[str, Decimal]:
        return {name: getattr(self, name) for name in type(self).model_fields}


class SalesTransaction(BaseModel):
    """
    A finalized sale as captured on the terminal.

    The ``id`` is generated client-side and doubles as the idempotency key
    sent to the back office.
    """

    id: str = Field(..., description="Client-generated unique id.")
    receipt_number: str
    branch_id: str
    device_id: str
    cashier_id: str
    customer_id: Optional[str] = None
    items: List[LineItem] = Field(default_factory=list)
    subtotal_amount: Decimal
    discount_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal
    payment: PaymentBreakdown = Field(default_factory=PaymentBreakdown)
    created_at: datetime

    model_config = {"frozen": True}

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        """Naive creation times are taken to be UTC."""
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class QueueMetadata(BaseModel):
    """Mutable delivery envelope kept beside each queued transaction."""

    transaction_id: str
    status: QueueStatus = QueueStatus.PENDING
    priority: int = Field(DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    attempts: int = 0
    max_attempts: int = 5
    created_at: datetime
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    breaker_failures: int = 0
    timeout_count: int = 0
    remote_ref: Optional[str] = None
    synced_at: Optional[datetime] = None
    processing_seconds: Optional[float] = None
    cancelled_by: Optional[Literal["operator", "system"]] = None


class CircuitBreakerState(BaseModel):
    state: CircuitState
    failure_count: int
    threshold: int
    last_failure_at: Optional[datetime] = None
    reset_after: Optional[datetime] = None


class ChangeSet(BaseModel):
    """Remote ids that changed since ``since``; the three sets never overlap."""

    added: Set[str] = Field(default_factory=set)
    modified: Set[str] = Field(default_factory=set)
    deleted: Set[str] = Field(default_factory=set)
    since: datetime
    checked_at: datetime
    full_scan: bool = False
    high_water: Optional[datetime] = Field(
        None, description="Largest remote modification time observed."
    )

    @model_validator(mode="after")
    def _check_disjoint(self) -> "ChangeSet":
        overlap = (
            (self.added & self.modified)
            | (self.added & self.deleted)
            | (self.modified & self.deleted)
        )
        if overlap:
            raise ValueError(f"ids appear in more than one change set: {sorted(overlap)}")
        return self

    @property
    def total(self) -> int:
        return len(self.added) + len(self.modified) + len(self.deleted)

    @property
    def is_empty(self) -> bool:
        return self.total == 0


class SyncConflict(BaseModel):
    entity_id: str
    field: str
    local_value: Any = None
    remote_value: Any = None
    detected_at: datetime
    resolution: Optional[Literal["server", "client"]] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    requires_review: bool = False


class ReferenceItem(BaseModel):
    """Local copy of an item master record pulled from the back office."""

    id: str
    name: str
    category: Optional[str] = None
    unit: Optional[str] = None
    barcode: Optional[str] = None
    base_price: Decimal = Decimal("0")
    cost: Optional[Decimal] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class PerformanceSample(BaseModel):
    kind: str
    duration_seconds: float
    success: bool
    items: int = 0
    bytes: int = 0
    error_kind: Optional[str] = None
    recorded_at: datetime


# Remote gateway value objects


class RemoteSession(BaseModel):
    sid: str
    user: Optional[str] = None
    expires_at: datetime


class RemoteRecord(BaseModel):
    id: str
    total: Decimal
    finalized: bool = False
    client_id: Optional[str] = None


class ChangeMarker(BaseModel):
    id: str
    modified_at: datetime
    deleted: bool = False


# Results and reports


class AttemptResult(BaseModel):
    transaction_id: str
    outcome: Literal["completed", "retry", "failed", "cancelled", "skipped"]
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    remote_ref: Optional[str] = None
    duration_seconds: float = 0.0


class QueuePassResult(BaseModel):
    attempted: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    batches: int = 0
    duration_seconds: float = 0.0
    skipped_reason: Optional[str] = None


class QueueStats(BaseModel):
    counts: Dict[str, int] = Field(default_factory=dict)
    depth: int = 0
    pending: int = 0
    processing: int = 0
    failed: int = 0
    completed: int = 0
    cancelled: int = 0
    stuck: int = 0
    in_flight: int = 0
    oldest_pending_age_seconds: Optional[float] = None
    processed: int = 0
    succeeded: int = 0
    failures: int = 0
    retries: int = 0
    timeouts: int = 0
    average_processing_seconds: float = 0.0
    success_rate: float = 100.0
    throughput_per_minute: float = 0.0
    online: bool = True
    paused: bool = False
    processing_active: bool = False


class DeltaSyncResult(BaseModel):
    success: bool
    synced: int = 0
    failed: int = 0
    conflicts: int = 0
    duration_seconds: float = 0.0
    errors: List[str] = Field(default_factory=list)
    next_sync_at: Optional[datetime] = None
    skipped_reason: Optional[str] = None


class DeltaSyncStatus(BaseModel):
    branch_id: str
    checkpoint: datetime
    last_sync_at: Optional[datetime] = None
    last_result: Optional[DeltaSyncResult] = None
    running: bool = False
    online: bool = True
    conflict_resolution: str = "server-wins"


Severity = Literal["medium", "high", "critical"]


class PerformanceAlert(BaseModel):
    type: Literal["slow_response", "high_error_rate", "large_queue"]
    severity: Severity
    message: str
    value: float
    threshold: float
    raised_at: datetime
    resolved_at: Optional[datetime] = None


class MonitorSnapshot(BaseModel):
    total: int = 0
    successes: int = 0
    success_rate: float = 100.0
    average_seconds: float = 0.0
    peak_seconds: float = 0.0
    throughput_per_minute: float = 0.0
    error_rate: float = 0.0


class PerformanceReport(BaseModel):
    period: Literal["hourly", "daily", "weekly"]
    start: datetime
    end: datetime
    total_operations: int = 0
    average_seconds: float = 0.0
    peak_seconds: float = 0.0
    success_rate: float = 100.0
    errors_by_kind: Dict[str, int] = Field(default_factory=dict)
    items_transferred: int = 0
    bytes_transferred: int = 0
    response_time_trend: Literal["improving", "degrading", "stable"] = "stable"
    success_rate_trend: Literal["improving", "degrading", "stable"] = "stable"
    recommendations: List[str] = Field(default_factory=list)


HealthVerdict = Literal["healthy", "degraded", "unhealthy"]


class HealthCheck(BaseModel):
    component: str
    status: HealthVerdict
    message: str = ""
    latency_seconds: Optional[float] = None


class HealthReport(BaseModel):
    verdict: HealthVerdict
    checked_at: datetime
    checks: List[HealthCheck] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class SyncOperation(BaseModel):
    kind: str
    status: Literal["running", "completed", "failed"] = "running"
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class SyncStatusSnapshot(BaseModel):
    queue_depth: int
    health_verdict: Literal["healthy", "degraded", "unhealthy", "unknown"]
    last_sync: Optional[datetime] = None
    active_issues: List[str] = Field(default_factory=list)
    online: bool = True
    running: bool = False
    breaker: CircuitBreakerState
    queue: QueueStats
    delta: DeltaSyncStatus
    active_alerts: List[PerformanceAlert] = Field(default_factory=list)


__all__ = [
    "ACTIVE_STATUSES",
    "AttemptResult",
    "ChangeMarker",
    "ChangeSet",
    "CircuitBreakerState",
    "CircuitState",
    "DEFAULT_PRIORITY",
    "DeltaSyncResult",
    "DeltaSyncStatus",
    "HealthCheck",
    "HealthReport",
    "HealthVerdict",
    "LineItem",
    "MAX_PRIORITY",
    "MIN_PRIORITY",
    "MonitorSnapshot",
    "PaymentBreakdown",
    "PerformanceAlert",
    "PerformanceReport",
    "PerformanceSample",
    "QueueMetadata",
    "QueuePassResult",
    "QueueStats",
    "QueueStatus",
    "ReferenceItem",
    "RemoteRecord",
    "RemoteSession",
    "SalesTransaction",
    "SyncConflict",
    "SyncOperation",
    "SyncStatusSnapshot",
]
