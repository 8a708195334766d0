"""
Test doubles shared by the unit tests: a controllable clock, a scriptable
back office and a factory for consistent sales transactions.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional

from possync.domain.models import (
    ChangeMarker,
    LineItem,
    PaymentBreakdown,
    RemoteRecord,
    RemoteSession,
    SalesTransaction,
)
from possync.errors import RemoteNotFoundError

START = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeRemoteGateway:
    """
    In-process stand-in for the back office.

    Failures are scripted per operation with ``fail_next`` (consumed in order)
    or ``fail_always`` (until cleared). ``delay`` slows down record creation
    so concurrency and timeout paths can be exercised.
    """

    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self.items: Dict[str, Dict[str, Any]] = {}
        self.calls: Dict[str, int] = defaultdict(int)
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.total_adjustment = Decimal("0")
        self.probe_error: Optional[Exception] = None
        self._next_failures: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._always: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

    # Failure scripting

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self._next_failures[operation].extend(errors)

    def fail_always(self, operation: str, error: Exception) -> None:
        self._always[operation] = error

    def clear_failures(self) -> None:
        self._next_failures.clear()
        self._always.clear()

    def _maybe_fail(self, operation: str) -> None:
        self.calls[operation] += 1
        if self._next_failures[operation]:
            raise self._next_failures[operation].popleft()
        if operation in self._always:
            raise self._always[operation]

    # Reference data helpers

    def put_item(
        self,
        item_id: str,
        name: Optional[str] = None,
        price: str = "10.00",
        modified: datetime = START,
        disabled: bool = False,
        **extra: Any,
    ) -> None:
        self.items[item_id] = {
            "name": item_id,
            "item_name": name or item_id,
            "standard_rate": float(price),
            "modified": modified.isoformat(),
            "creation": START.isoformat(),
            "disabled": 1 if disabled else 0,
            **extra,
        }

    # RemoteGateway

    async def authenticate(self) -> RemoteSession:
        self._maybe_fail("authenticate")
        return RemoteSession(sid="fake", expires_at=START + timedelta(hours=23))

    async def restore_session(self) -> bool:
        return False

    async def create_record(self, payload: Dict[str, Any]) -> str:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        self._maybe_fail("create_record")
        record_id = f"SINV-{next(self._ids):05d}"
        self.records[record_id] = {
            "client_id": payload["pos_transaction_id"],
            "total": Decimal(str(payload["grand_total"])) + self.total_adjustment,
            "finalized": False,
        }
        return record_id

    async def finalize_record(self, record_id: str) -> None:
        self._maybe_fail("finalize_record")
        self.records[record_id]["finalized"] = True

    async def get_record(self, record_id: str) -> Optional[RemoteRecord]:
        self._maybe_fail("get_record")
        record = self.records.get(record_id)
        if record is None:
            return None
        return RemoteRecord(
            id=record_id,
            total=record["total"],
            finalized=record["finalized"],
            client_id=record["client_id"],
        )

    async def find_record(self, client_id: str) -> Optional[str]:
        self._maybe_fail("find_record")
        for record_id, record in self.records.items():
            if record["client_id"] == client_id:
                return record_id
        return None

    async def list_changed(
        self, since: datetime, fields: List[str], page_size: int, page: int = 0
    ) -> List[ChangeMarker]:
        self._maybe_fail("list_changed")
        changed = sorted(
            (
                ChangeMarker(
                    id=item_id,
                    modified_at=datetime.fromisoformat(item["modified"]),
                    deleted=bool(item["disabled"]),
                )
                for item_id, item in self.items.items()
            ),
            key=lambda marker: (marker.modified_at, marker.id),
        )
        changed = [marker for marker in changed if marker.modified_at > since]
        return changed[page * page_size : (page + 1) * page_size]

    async def get_entity(self, entity_id: str) -> Dict[str, Any]:
        self._maybe_fail("get_entity")
        if entity_id not in self.items:
            raise RemoteNotFoundError(f"Item {entity_id} not found")
        return dict(self.items[entity_id])

    async def probe(self) -> None:
        self.calls["probe"] += 1
        if self.probe_error is not None:
            raise self.probe_error

    def records_for(self, client_id: str) -> List[str]:
        return [rid for rid, record in self.records.items() if record["client_id"] == client_id]


_txn_counter = itertools.count(1)


def build_transaction(
    txn_id: Optional[str] = None,
    receipt_number: Optional[str] = None,
    lines: Optional[List[tuple]] = None,
    tax: str = "0.00",
    discount: str = "0.00",
    created_at: datetime = START - timedelta(minutes=5),
    **overrides: Any,
) -> SalesTransaction:
    """
    Build a consistent sale: subtotal is the sum of the lines and the total is
    subtotal - discount + tax, paid in cash.
    """
    number = next(_txn_counter)
    items = [
        LineItem(
            item_id=item_id,
            item_name=item_id.title(),
            quantity=Decimal(str(qty)),
            unit_price=Decimal(price),
        )
        for item_id, qty, price in (lines or [("coffee", 2, "3.50"), ("bagel", 1, "2.25")])
    ]
    subtotal = sum((item.line_total for item in items), Decimal("0"))
    total = subtotal - Decimal(discount) + Decimal(tax)
    fields: Dict[str, Any] = dict(
        id=txn_id or f"txn-{number:04d}",
        receipt_number=receipt_number or f"R-{number:06d}",
        branch_id="main",
        device_id="pos-01",
        cashier_id="cashier-1",
        items=items,
        subtotal_amount=subtotal,
        discount_amount=Decimal(discount),
        tax_amount=Decimal(tax),
        total_amount=total,
        payment=PaymentBreakdown(cash=total),
        created_at=created_at,
    )
    fields.update(overrides)
    return SalesTransaction(**fields)

