"""
Error taxonomy for the POS offline sync engine.

Every failure the engine reasons about is reduced to an ``ErrorKind``. The kind
decides whether a queued transaction is retried, cancelled for manual
reconciliation, and whether the shared circuit breaker counts it as a failure
signal.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import List, Optional, Sequence

import httpx


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    CONFLICT = "conflict"
    NETWORK = "network"
    SERVER = "server"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        """Whether a queued transaction failing with this kind is scheduled again."""
        return self not in _NON_RETRYABLE

    @property
    def transient(self) -> bool:
        """Whether this kind feeds the circuit breaker as a failure signal."""
        return self not in _NON_RETRYABLE


_NON_RETRYABLE = frozenset({ErrorKind.VALIDATION, ErrorKind.AUTH, ErrorKind.CONFLICT})


class SyncError(Exception):
    """Base class for all engine errors; carries an ``ErrorKind``."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class TransactionValidationError(SyncError):
    """Raised synchronously at enqueue; the transaction never reaches the store."""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors: List[str] = list(errors)
        super().__init__("invalid transaction: " + "; ".join(self.errors))


class GatewayError(SyncError):
    """
    A classified failure from the remote back office.

    Attributes
    ----------
    status_code : int | None
        HTTP status when the remote answered at all.
    code : str
        Machine-readable code (``AUTH_ERROR``, ``HTTP_<n>``, ``TIMEOUT``, ``NETWORK_ERROR``).
    retry_after : float | None
        Seconds the remote asked us to wait (rate limiting).
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: Optional[int] = None,
        code: str = "UNKNOWN_ERROR",
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, kind)
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after


class RemoteNotFoundError(GatewayError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.SERVER, status_code=404, code="HTTP_404")


class DuplicateTransactionError(SyncError):
    kind = ErrorKind.CONFLICT


class VerificationError(SyncError):
    """The remote record does not reflect what was delivered."""


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised during delivery or sync onto an ``ErrorKind``."""
    if isinstance(exc, SyncError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


__all__ = [
    "DuplicateTransactionError",
    "ErrorKind",
    "GatewayError",
    "RemoteNotFoundError",
    "SyncError",
    "TransactionValidationError",
    "VerificationError",
    "classify_error",
]
