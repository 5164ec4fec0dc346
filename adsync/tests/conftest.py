"""Pytest configuration for ingestion tests

WHAT: Shared fixtures for the scheduler, job queue, worker and pipeline tests
WHY: Every test gets its own file-backed SQLite database, so several sessions
     (standing in for several worker processes) can race on the same rows
REFERENCES:
    - adsync/database.py: Engine/session configuration
    - adsync/deps.py: Settings
    - adsync/services/sync_registry.py: Handler registry
"""

import os
import random
import uuid
from datetime import datetime, timezone
from typing import Generator

import pytest
from sqlalchemy.orm import Session, sessionmaker

# Set test environment (adsync.database builds its engine at import time)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("INGESTION_FORCE_MOCK", "false")

from adsync.database import Base, create_db_engine  # noqa: E402
from adsync.deps import Settings  # noqa: E402
from adsync.models import Integration  # noqa: E402
from adsync.services.mock_providers import default_mock_handlers  # noqa: E402
from adsync.services.sync_registry import SyncHandlerRegistry  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine (shared across sessions and threads)."""
    db_file = tmp_path / "ingestion.db"
    engine = create_db_engine(f"sqlite:///{db_file}")
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings / Registry Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    """Fast, deterministic settings (no jitter, short sleeps)."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        INGESTION_WORKER_ID="test-worker",
        INGESTION_POLL_INTERVAL_MS=10,
        INGESTION_CAPACITY_WAIT_MS=5,
        INGESTION_CONCURRENCY=2,
        INGESTION_BACKOFF_JITTER_MS=0,
    )


@pytest.fixture
def mock_registry() -> SyncHandlerRegistry:
    """Registry with the shipped mock handlers and a seeded RNG."""
    return SyncHandlerRegistry(default_mock_handlers(rng=random.Random(7)))


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_integration(db_session, tenant_id):
    """Factory for committed integrations.

    Usage:
        integration = make_integration(provider="facebook", credentials={"token": "x"})
    """

    def _make(
        provider: str = "facebook",
        credentials=None,
        config=None,
        is_active: bool = True,
        last_sync_at: datetime = None,
        tenant=None,
        session: Session = None,
    ) -> Integration:
        session = session or db_session
        integration = Integration(
            tenant_id=tenant or tenant_id,
            provider=provider,
            name=f"{provider} test",
            credentials=credentials if credentials is not None else {},
            config=config if config is not None else {},
            is_active=is_active,
            last_sync_at=last_sync_at,
        )
        session.add(integration)
        session.commit()
        session.refresh(integration)
        return integration

    return _make


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


# ============================================================================
# Handler Fixtures
# ============================================================================

class RecordingHandler:
    """Sync handler double that records calls and returns a fixed result."""

    def __init__(self, result=None, exc: Exception = None):
        self.result = result if result is not None else {"status": "ok"}
        self.exc = exc
        self.calls = []

    def __call__(self, db, integration):
        self.calls.append(integration.id)
        if self.exc is not None:
            raise self.exc
        return dict(self.result)


@pytest.fixture
def recording_handler():
    return RecordingHandler
