"""Pre-enqueue validation of sales transactions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List

from possync.domain.models import SalesTransaction
from possync.errors import TransactionValidationError

AMOUNT_TOLERANCE = Decimal("0.01")


def validate_transaction(transaction: SalesTransaction, now: datetime) -> List[str]:
    """
    Return every problem found with ``transaction``; an empty list means valid.

    ``now`` comes from the caller's clock so that creation times can be checked
    against the same notion of time the queue uses.
    """
    errors: List[str] = []

    if not transaction.id.strip():
        errors.append("transaction id is required")
    if not transaction.receipt_number.strip():
        errors.append("receipt number is required")
    if not transaction.branch_id.strip():
        errors.append("branch id is required")

    if not transaction.items:
        errors.append("transaction must contain at least one line item")
    for index, item in enumerate(transaction.items, start=1):
        if not item.item_id.strip():
            errors.append(f"line {index}: item id is required")
        if not item.item_name.strip():
            errors.append(f"line {index}: item name is required")
        if item.quantity <= 0:
            errors.append(f"line {index}: quantity must be positive")
        if item.unit_price < 0:
            errors.append(f"line {index}: unit price must not be negative")

    amounts = {
        "subtotal": transaction.subtotal_amount,
        "discount": transaction.discount_amount,
        "tax": transaction.tax_amount,
        "total": transaction.total_amount,
    }
    for name, value in amounts.items():
        if value < 0:
            errors.append(f"{name} amount must not be negative")

    if transaction.items:
        line_sum = sum((item.line_total for item in transaction.items), Decimal("0"))
        if abs(line_sum - transaction.subtotal_amount) > AMOUNT_TOLERANCE:
            errors.append(
                f"subtotal {transaction.subtotal_amount} does not match line items ({line_sum})"
            )

    expected_total = (
        transaction.subtotal_amount - transaction.discount_amount + transaction.tax_amount
    )
    if abs(expected_total - transaction.total_amount) > AMOUNT_TOLERANCE:
        errors.append(
            f"total {transaction.total_amount} does not equal subtotal - discount + tax "
            f"({expected_total})"
        )
    if transaction.discount_amount > transaction.subtotal_amount:
        errors.append("discount exceeds subtotal")

    tenders = transaction.payment.tenders()
    for name, value in tenders.items():
        if value < 0:
            errors.append(f"{name} payment must not be negative")
    paid = transaction.payment.total_payment
    if paid > 0 and paid + AMOUNT_TOLERANCE < transaction.total_amount:
        errors.append(f"payments ({paid}) do not cover total ({transaction.total_amount})")

    if transaction.created_at > now:
        errors.append("creation time is in the future")

    return errors


def ensure_valid(transaction: SalesTransaction, now: datetime) -> None:
    errors = validate_transaction(transaction, now)
    if errors:
        raise TransactionValidationError(errors)


__all__ = ["AMOUNT_TOLERANCE", "ensure_valid", "validate_transaction"]
