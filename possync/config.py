"""
Configuration settings for the POS offline sync engine.

Uses Pydantic Settings to load environment variables for the remote back-office
endpoint, the delta sync and queue tuning knobs, monitor thresholds, the local
Postgres store, and logging. All durations are expressed in seconds.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ConflictMode = Literal["server-wins", "client-wins", "manual"]


class Settings(BaseSettings):
    # Remote back office
    remote_base_url: str = Field("http://localhost:8000", alias="REMOTE_BASE_URL")
    remote_timeout: float = Field(30.0, alias="REMOTE_TIMEOUT")
    remote_max_retries: int = Field(3, alias="REMOTE_MAX_RETRIES")
    remote_retry_delay: float = Field(1.0, alias="REMOTE_RETRY_DELAY")
    remote_api_key: str = Field("", alias="REMOTE_API_KEY")
    remote_api_secret: str = Field("", alias="REMOTE_API_SECRET")
    remote_company: str = Field("", alias="REMOTE_COMPANY")

    # Terminal identity
    branch_id: str = Field("main", alias="BRANCH_ID")
    device_id: str = Field("pos-01", alias="DEVICE_ID")

    # Delta sync
    sync_interval: float = Field(300.0, alias="SYNC_INTERVAL")
    sync_batch_size: int = Field(50, alias="SYNC_BATCH_SIZE")
    sync_page_size: int = Field(500, alias="SYNC_PAGE_SIZE")
    conflict_resolution: ConflictMode = Field("server-wins", alias="CONFLICT_RESOLUTION")

    # Transaction queue
    queue_max_concurrent: int = Field(3, alias="QUEUE_MAX_CONCURRENT")
    queue_batch_size: int = Field(10, alias="QUEUE_BATCH_SIZE")
    queue_retry_delay: float = Field(1.0, alias="QUEUE_RETRY_DELAY")
    queue_max_retry_delay: float = Field(30.0, alias="QUEUE_MAX_RETRY_DELAY")
    queue_timeout: float = Field(30.0, alias="QUEUE_TIMEOUT")
    queue_max_attempts: int = Field(5, alias="QUEUE_MAX_ATTEMPTS")
    queue_unknown_max_attempts: int = Field(3, alias="QUEUE_UNKNOWN_MAX_ATTEMPTS")
    queue_batch_delay: float = Field(0.5, alias="QUEUE_BATCH_DELAY")
    queue_poll_interval: float = Field(15.0, alias="QUEUE_POLL_INTERVAL")
    queue_max_processing_time: float = Field(60.0, alias="QUEUE_MAX_PROCESSING_TIME")
    queue_memory_limit: int = Field(100 * 1024 * 1024, alias="QUEUE_MEMORY_LIMIT")
    health_check_interval: float = Field(60.0, alias="HEALTH_CHECK_INTERVAL")
    circuit_breaker_threshold: int = Field(5, alias="CIRCUIT_BREAKER_THRESHOLD")
    circuit_breaker_reset_timeout: float = Field(60.0, alias="CIRCUIT_BREAKER_RESET_TIMEOUT")

    # Monitor thresholds
    alert_max_response_time: float = Field(5.0, alias="ALERT_MAX_RESPONSE_TIME")
    alert_max_error_rate: float = Field(5.0, alias="ALERT_MAX_ERROR_RATE")
    alert_max_queue_size: int = Field(100, alias="ALERT_MAX_QUEUE_SIZE")
    health_max_failed: int = Field(10, alias="HEALTH_MAX_FAILED")
    monitor_max_samples: int = Field(1000, alias="MONITOR_MAX_SAMPLES")
    monitor_retention_hours: float = Field(24.0, alias="MONITOR_RETENTION_HOURS")

    # Orchestrator
    auto_connectivity: bool = Field(True, alias="AUTO_CONNECTIVITY")
    resume_interrupted_on_start: bool = Field(True, alias="RESUME_INTERRUPTED_ON_START")

    # Local store (Postgres)
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("possync", alias="DB_NAME")
    db_pool_min_size: int = Field(1, alias="DB_POOL_MIN_SIZE")
    db_pool_max_size: int = Field(5, alias="DB_POOL_MAX_SIZE")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def dsn(self) -> str:
        """Postgres connection string for the local store."""
        return (
            f"postgresql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["ConflictMode", "Settings", "get_settings"]
