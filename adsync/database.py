"""Database engine and session configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory used by the scheduler,
    the ingestion workers and the direct pipeline.

WHY:
    - Workers and the scheduler coordinate only through these tables, so every
      process builds its sessions from the same DATABASE_URL
    - Each claimed job runs in its own session (sessions are not thread-safe)

USAGE:
    from adsync.database import SessionLocal, get_sync_session

    with get_sync_session() as db:
        jobs = db.query(IngestionJob).all()
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_database_url() -> str:
    """Read DATABASE_URL, falling back to the .env file.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    from adsync.utils.env import load_env_file, require_env

    if not os.getenv("DATABASE_URL"):
        load_env_file()
    return require_env("DATABASE_URL", hint="Ensure .env is loaded or env var is exported.")


def create_db_engine(database_url: str):
    """Build an engine with pool settings suited to the backend.

    SQLite engines (tests, local runs) do not support pool_size/max_overflow
    and need check_same_thread disabled because jobs run in worker threads.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    # Each worker thread holds at most one connection while a job runs
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


DATABASE_URL = _get_database_url()
engine = create_db_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

# Re-exported for alembic and the test fixtures
from .models import Base  # noqa: E402,F401


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions in workers, scripts and tests.

    Example:
        with get_sync_session() as db:
            integrations = find_active_integrations(db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
