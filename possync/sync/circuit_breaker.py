"""
Tri-state circuit breaker shared by every outbound remote call.

The mode is derived rather than stored: the breaker is ``open`` exactly when
the consecutive failure count has reached the threshold and the reset time has
not passed yet. Once the reset time passes it reads as ``half-open`` and lets
a single trial through; the outcome of that trial closes or reopens it.

One instance is shared by the queue manager and the delta sync manager so a
failing back office throttles both. Callers report one aggregate signal per
batch rather than one per call.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from possync.domain.models import CircuitBreakerState, CircuitState
from possync.utils.clock import Clock, utc_now
from possync.utils.logging import get_logger

log = get_logger(__name__)


class CircuitBreaker:
    def __init__(
        self,
        threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Clock = utc_now,
        name: str = "remote",
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._failures = 0
        self._last_failure_at: Optional[datetime] = None
        self._reset_after: Optional[datetime] = None
        self._trial_in_flight = False

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def state(self) -> CircuitState:
        if self._failures < self.threshold:
            return CircuitState.CLOSED
        if self._reset_after is not None and self._clock() < self._reset_after:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def allow_request(self) -> bool:
        """
        Whether a caller may go ahead. In half-open mode only the first caller
        gets through until an outcome is recorded.
        """
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.OPEN:
            return False
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        log.info("[BREAKER] half-open, allowing trial", extra={"breaker": self.name})
        return True

    def release_trial(self) -> None:
        """Give back an unused half-open trial (the caller had nothing to send)."""
        self._trial_in_flight = False

    def _open(self, now: datetime) -> None:
        self._reset_after = now + timedelta(seconds=self.reset_timeout)
        log.warning(
            "[BREAKER] open",
            extra={
                "breaker": self.name,
                "failures": self._failures,
                "reset_after": self._reset_after.isoformat(),
            },
        )

    def record_failure(self) -> None:
        state = self.state
        now = self._clock()
        self._last_failure_at = now
        self._trial_in_flight = False
        if state is CircuitState.HALF_OPEN:
            self._open(now)
            return
        self._failures += 1
        if state is CircuitState.CLOSED and self._failures >= self.threshold:
            self._open(now)

    def record_success(self) -> None:
        if self._failures:
            log.info(
                "[BREAKER] closed",
                extra={"breaker": self.name, "previous_failures": self._failures},
            )
        self._failures = 0
        self._reset_after = None
        self._trial_in_flight = False

    def record(self, ok: bool) -> None:
        if ok:
            self.record_success()
        else:
            self.record_failure()

    def reset(self) -> None:
        """Force the breaker closed (used on reconnect)."""
        self._failures = 0
        self._reset_after = None
        self._last_failure_at = None
        self._trial_in_flight = False

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self.state,
            failure_count=self._failures,
            threshold=self.threshold,
            last_failure_at=self._last_failure_at,
            reset_after=self._reset_after,
        )


__all__ = ["CircuitBreaker"]
