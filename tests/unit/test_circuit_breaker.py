from __future__ import annotations

import pytest

from possync.domain.models import CircuitState
from possync.sync.circuit_breaker import CircuitBreaker
from tests.fakes import FakeClock

THRESHOLD = 3
RESET_SECONDS = 30.0


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(threshold=THRESHOLD, reset_timeout=RESET_SECONDS, clock=clock)


def test_opens_after_exactly_threshold_failures(breaker: CircuitBreaker) -> None:
    for _ in range(THRESHOLD - 1):
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.allow_request()

    breaker.record_failure()

    assert breaker.state is CircuitState.OPEN
    assert not breaker.allow_request()


def test_denies_until_reset_timeout_then_allows_a_single_trial(
    breaker: CircuitBreaker, clock: FakeClock
) -> None:
    for _ in range(THRESHOLD):
        breaker.record_failure()

    clock.advance(RESET_SECONDS - 1)
    assert not breaker.allow_request()

    clock.advance(1)
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.allow_request()
    assert not breaker.allow_request()


def test_successful_trial_closes(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(THRESHOLD):
        breaker.record_failure()
    clock.advance(RESET_SECONDS)
    assert breaker.allow_request()

    breaker.record_success()

    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 0
    assert breaker.allow_request()


def test_failed_trial_reopens_for_another_timeout(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(THRESHOLD):
        breaker.record_failure()
    clock.advance(RESET_SECONDS)
    assert breaker.allow_request()

    breaker.record_failure()

    assert breaker.state is CircuitState.OPEN
    clock.advance(RESET_SECONDS)
    assert breaker.state is CircuitState.HALF_OPEN


def test_released_trial_can_be_taken_again(breaker: CircuitBreaker, clock: FakeClock) -> None:
    for _ in range(THRESHOLD):
        breaker.record_failure()
    clock.advance(RESET_SECONDS)
    assert breaker.allow_request()

    breaker.release_trial()

    assert breaker.allow_request()


def test_success_resets_consecutive_failure_count(breaker: CircuitBreaker) -> None:
    breaker.record_failure()
    breaker.record_failure()
    breaker.record(True)
    breaker.record(False)

    assert breaker.failure_count == 1
    assert breaker.state is CircuitState.CLOSED


def test_reset_forces_closed_and_snapshot_reports_state(breaker: CircuitBreaker) -> None:
    for _ in range(THRESHOLD):
        breaker.record_failure()
    snapshot = breaker.snapshot()
    assert snapshot.state is CircuitState.OPEN
    assert snapshot.failure_count == THRESHOLD
    assert snapshot.reset_after is not None

    breaker.reset()

    assert breaker.snapshot().state is CircuitState.CLOSED
    assert breaker.snapshot().last_failure_at is None


def test_threshold_must_be_positive(clock: FakeClock) -> None:
    with pytest.raises(ValueError):
        CircuitBreaker(threshold=0, clock=clock)
