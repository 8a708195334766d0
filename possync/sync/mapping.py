"""
Translation between local models and the back office's document shapes.

Outbound sales become ERPNext-style Sales Invoices; inbound Item documents
become ``ReferenceItem`` rows. Amounts leave as floats because that is what
the remote JSON API accepts, and come back in as ``Decimal``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from possync.domain.models import PaymentBreakdown, ReferenceItem, SalesTransaction
from possync.utils.clock import parse_remote_datetime

# Fields compared between the local copy and the remote copy of an item.
TRACKED_FIELDS = ("name", "base_price", "cost", "category", "unit")

# Item fields requested when listing remote changes.
CHANGE_FIELDS = ["name", "modified", "disabled"]

_MODES_OF_PAYMENT = {
    "cash": "Cash",
    "card": "Credit Card",
    "ewallet": "E-Wallet",
    "bank_transfer": "Bank Transfer",
    "credit": "Credit",
}


def _money(value: Decimal) -> float:
    return float(value)


def _payments(payment: PaymentBreakdown) -> List[Dict[str, Any]]:
    return [
        {"mode_of_payment": _MODES_OF_PAYMENT[name], "amount": _money(amount)}
        for name, amount in payment.tenders().items()
        if amount > 0
    ]


def build_invoice_payload(
    transaction: SalesTransaction,
    company: str,
    branch_id: str,
    device_id: str,
) -> Dict[str, Any]:
    """Map a sale to the remote Sales Invoice schema."""
    discount = transaction.discount_amount
    discount_pct = (
        float(discount / transaction.subtotal_amount * 100)
        if discount > 0 and transaction.subtotal_amount > 0
        else 0.0
    )
    return {
        "doctype": "Sales Invoice",
        "company": company,
        "customer": transaction.customer_id or "Walk-in Customer",
        "branch": branch_id,
        "posting_date": transaction.created_at.date().isoformat(),
        "posting_time": transaction.created_at.strftime("%H:%M:%S"),
        "is_pos": 1,
        "items": [
            {
                "item_code": item.item_id,
                "item_name": item.item_name,
                "barcode": item.barcode,
                "qty": _money(item.quantity),
                "rate": _money(item.unit_price),
                "discount_amount": _money(item.discount),
                "amount": _money(item.line_total),
            }
            for item in transaction.items
        ],
        "payments": _payments(transaction.payment),
        "total_taxes_and_charges": _money(transaction.tax_amount),
        "additional_discount_percentage": discount_pct,
        "discount_amount": _money(discount),
        "apply_discount_on": "Grand Total",
        "grand_total": _money(transaction.total_amount),
        "remarks": (
            f"POS Transaction: {transaction.receipt_number} - {len(transaction.items)} items"
        ),
        "pos_branch_id": branch_id,
        "pos_device_id": device_id,
        "pos_cashier_id": transaction.cashier_id,
        "pos_transaction_id": transaction.id,
        "pos_receipt_number": transaction.receipt_number,
    }


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def item_from_remote(payload: Dict[str, Any], synced_at: datetime) -> ReferenceItem:
    """Map a remote Item document onto the local ``ReferenceItem`` shape."""
    barcodes = payload.get("barcodes") or []
    barcode = payload.get("barcode")
    if not barcode and barcodes:
        barcode = barcodes[0].get("barcode")
    return ReferenceItem(
        id=payload["name"],
        name=payload.get("item_name") or payload["name"],
        category=payload.get("item_group"),
        unit=payload.get("stock_uom"),
        barcode=barcode,
        base_price=_decimal(payload.get("standard_rate")) or Decimal("0"),
        cost=_decimal(payload.get("valuation_rate")),
        is_active=not payload.get("disabled"),
        created_at=parse_remote_datetime(payload.get("creation")),
        updated_at=parse_remote_datetime(payload.get("modified")),
        last_synced_at=synced_at,
    )


__all__ = [
    "CHANGE_FIELDS",
    "TRACKED_FIELDS",
    "build_invoice_payload",
    "item_from_remote",
]
