"""
Pytest configuration for the POS offline sync engine.

Provides fixtures for:
- A controllable clock and test-specific settings
- An in-memory store and a scriptable fake back office
- Factories for valid sales transactions
- Database connection management for integration tests
"""

from __future__ import annotations

import os
from typing import Callable

import psycopg
import pytest

from possync.config import Settings
from possync.domain.models import SalesTransaction
from possync.infrastructure.store import MemorySyncStore
from possync.sync.circuit_breaker import CircuitBreaker
from possync.sync.monitor import PerformanceMonitor
from tests.fakes import FakeClock, FakeRemoteGateway, build_transaction


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """
    Settings with test-friendly tuning: no pacing between batches, no in-call
    retry waits and a memory ceiling no test process reaches.
    """
    return Settings(
        queue_batch_delay=0.0,
        queue_memory_limit=10**12,
        queue_timeout=5.0,
        remote_retry_delay=0.0,
        health_check_interval=3600.0,
        queue_poll_interval=3600.0,
        sync_interval=3600.0,
        branch_id="main",
        device_id="pos-01",
        log_level="DEBUG",
    )


@pytest.fixture
def store() -> MemorySyncStore:
    return MemorySyncStore()


@pytest.fixture
def gateway() -> FakeRemoteGateway:
    return FakeRemoteGateway()


@pytest.fixture
def breaker(clock: FakeClock, settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        threshold=settings.circuit_breaker_threshold,
        reset_timeout=settings.circuit_breaker_reset_timeout,
        clock=clock,
    )


@pytest.fixture
def monitor(clock: FakeClock, settings: Settings) -> PerformanceMonitor:
    return PerformanceMonitor(settings, clock=clock)


@pytest.fixture
def make_transaction() -> Callable[..., SalesTransaction]:
    return build_transaction


# Integration fixtures


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture pointing at the integration database.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "possync"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def db_connection_available(test_settings: Settings) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_settings.dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except Exception:
        return False
