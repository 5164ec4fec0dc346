"""Dependency providers and settings management."""

import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ingestion settings loaded from environment or .env."""

    DATABASE_URL: Optional[str] = None

    # Redis is only used by the ARQ cron trigger for the scheduler tick.
    # The job queue itself lives in the database.
    REDIS_URL: str = "redis://localhost:6379"

    # Worker
    INGESTION_FORCE_MOCK: bool = False
    INGESTION_WORKER_ID: str = Field(default_factory=lambda: f"ingestion-worker-{os.getpid()}")
    INGESTION_POLL_INTERVAL_MS: int = 2000
    INGESTION_CONCURRENCY: int = 2
    INGESTION_CAPACITY_WAIT_MS: int = 100

    # Scheduling and retries
    INGESTION_SYNC_INTERVAL_SECONDS: int = 3600  # fixed, not adaptive
    INGESTION_MAX_ATTEMPTS: int = 3
    INGESTION_BACKOFF_BASE_MS: int = 5000
    INGESTION_BACKOFF_CAP: int = 6
    INGESTION_BACKOFF_JITTER_MS: int = 500
    INGESTION_STALE_LOCK_SECONDS: int = 1800

    # Error tracking
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    RELEASE_VERSION: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("INGESTION_CONCURRENCY")
    @classmethod
    def _at_least_one_slot(cls, value: int) -> int:
        return max(1, value)

    @property
    def poll_interval_seconds(self) -> float:
        return self.INGESTION_POLL_INTERVAL_MS / 1000

    @property
    def capacity_wait_seconds(self) -> float:
        return self.INGESTION_CAPACITY_WAIT_MS / 1000


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@lru_cache()
def get_registry():
    """Return the process-wide sync handler registry.

    Built once at startup from the provider table. Scheduler, workers and the
    direct pipeline receive it as an argument so tests can pass their own.
    """
    from adsync.services.sync_registry import build_default_registry

    return build_default_registry(force_mock=get_settings().INGESTION_FORCE_MOCK)
