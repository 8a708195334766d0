from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from possync.domain.models import PaymentBreakdown
from possync.domain.validation import ensure_valid, validate_transaction
from possync.errors import ErrorKind, TransactionValidationError
from tests.fakes import START, build_transaction


def test_consistent_transaction_has_no_errors() -> None:
    txn = build_transaction(tax="0.74", discount="0.25")

    assert validate_transaction(txn, now=START) == []


def test_zero_line_items_is_rejected() -> None:
    txn = build_transaction(
        items=[], subtotal_amount=Decimal("0"), total_amount=Decimal("0"), payment=PaymentBreakdown()
    )

    errors = validate_transaction(txn, now=START)

    assert "transaction must contain at least one line item" in errors


def test_subtotal_must_match_line_items() -> None:
    txn = build_transaction(subtotal_amount=Decimal("100.00"), total_amount=Decimal("100.00"))

    errors = validate_transaction(txn, now=START)

    assert any(error.startswith("subtotal 100.00 does not match") for error in errors)


def test_total_must_equal_subtotal_minus_discount_plus_tax() -> None:
    txn = build_transaction(total_amount=Decimal("1.00"), payment=PaymentBreakdown(cash=Decimal("1")))

    errors = validate_transaction(txn, now=START)

    assert any("does not equal subtotal - discount + tax" in error for error in errors)


def test_rounding_within_a_cent_is_tolerated() -> None:
    base = build_transaction()
    txn = base.model_copy(update={"total_amount": base.total_amount + Decimal("0.01")})

    assert validate_transaction(txn, now=START) == []


def test_non_positive_quantity_and_negative_price_are_reported_per_line() -> None:
    txn = build_transaction(lines=[("coffee", 0, "3.50"), ("bagel", 1, "-2.00")])

    errors = validate_transaction(txn, now=START)

    assert "line 1: quantity must be positive" in errors
    assert "line 2: unit price must not be negative" in errors


def test_payments_must_cover_total_when_present() -> None:
    txn = build_transaction(payment=PaymentBreakdown(cash=Decimal("1.00")))

    errors = validate_transaction(txn, now=START)

    assert any(error.startswith("payments (1.00) do not cover total") for error in errors)


def test_missing_payment_breakdown_is_accepted() -> None:
    txn = build_transaction(payment=PaymentBreakdown())

    assert validate_transaction(txn, now=START) == []


def test_future_creation_time_is_rejected() -> None:
    txn = build_transaction(created_at=START + timedelta(hours=1))

    assert "creation time is in the future" in validate_transaction(txn, now=START)


def test_naive_creation_time_is_taken_as_utc() -> None:
    txn = build_transaction(created_at=datetime(2024, 1, 15, 11, 0))

    assert txn.created_at == datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc)
    assert validate_transaction(txn, now=START) == []


def test_naive_future_creation_time_is_a_validation_error() -> None:
    txn = build_transaction(created_at=datetime(2024, 1, 15, 13, 0))

    with pytest.raises(TransactionValidationError) as excinfo:
        ensure_valid(txn, now=START)

    assert excinfo.value.errors == ["creation time is in the future"]


def test_blank_identifiers_are_rejected() -> None:
    txn = build_transaction().model_copy(
        update={"id": "  ", "receipt_number": "", "branch_id": ""}
    )

    errors = validate_transaction(txn, now=START)

    assert "transaction id is required" in errors
    assert "receipt number is required" in errors
    assert "branch id is required" in errors


def test_ensure_valid_raises_with_every_error() -> None:
    txn = build_transaction(
        items=[], subtotal_amount=Decimal("0"), total_amount=Decimal("5"), payment=PaymentBreakdown()
    )

    with pytest.raises(TransactionValidationError) as excinfo:
        ensure_valid(txn, now=START)

    assert excinfo.value.kind is ErrorKind.VALIDATION
    assert len(excinfo.value.errors) == 2
