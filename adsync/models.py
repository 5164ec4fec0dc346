"""SQLAlchemy ORM models and enums.

This module defines the ingestion schema using UUID primary keys and explicit
relationships. Integrations are configured by the tenant-facing application;
the ingestion subsystem reads them, writes their status/timestamps back, and
owns the sync state, job queue and sync history tables.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire package
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# Enums ---------------------------------------------------------

class IntegrationStatusEnum(str, enum.Enum):
    active = "active"
    error = "error"


class JobStatusEnum(str, enum.Enum):
    """Ingestion job lifecycle.

    queued -> running -> success
                      -> queued (retry with backoff)
                      -> failed (attempts exhausted)
    """
    queued = "queued"
    running = "running"
    success = "success"
    failed = "failed"


IN_FLIGHT_STATUSES = (JobStatusEnum.queued, JobStatusEnum.running)


class JobTriggerEnum(str, enum.Enum):
    cron = "cron"
    manual = "manual"


class SyncModeEnum(str, enum.Enum):
    real = "real"
    mock = "mock"


class SyncOutcomeStatusEnum(str, enum.Enum):
    success = "success"
    error = "error"


# Integration store ----------------------------------------------

class Integration(Base):
    """One tenant's connection to an external data provider.

    `provider` is a free-form string (not an enum) because providers are
    added dynamically; the sync registry normalizes aliases before lookup.
    `credentials` and `config` are opaque JSON blobs. `config` may carry
    `mockMode` and `lookbackDays`.
    """
    __tablename__ = "integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(String, nullable=False)
    name = Column(String, nullable=True)
    credentials = Column(JSON, nullable=True)
    config = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(String, nullable=False, default=IntegrationStatusEnum.active.value)  # active, error
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    sync_state = relationship("IntegrationSyncState", back_populates="integration", uselist=False)
    jobs = relationship("IngestionJob", back_populates="integration")
    history = relationship("SyncHistory", back_populates="integration")
    campaigns = relationship("Campaign", back_populates="integration")

    def __str__(self):
        return f"{self.name or self.provider} ({self.provider})"


# Ingestion tables -----------------------------------------------

class IntegrationSyncState(Base):
    """Incremental progress for one integration (1:1).

    WHAT:
        Provider cursor plus attempt/success timestamps and the next time the
        scheduler may consider the integration again.
    WHY:
        `next_run_at` only moves forward on a successful sync. Failed attempts
        are retried through the job's attempt counter, not by re-scheduling.
    """
    __tablename__ = "integration_sync_states"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False, unique=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(String, nullable=False)  # denormalized canonical key
    cursor = Column(JSON, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    integration = relationship("Integration", back_populates="sync_state")


class IngestionJob(Base):
    """A unit of ingestion work, claimed by exactly one worker at a time.

    The lock columns (`locked_at`, `locked_by`) together with `status` form
    the compare-and-swap target of the claim. Jobs are never deleted; terminal
    rows are kept as history.
    """
    __tablename__ = "ingestion_jobs"
    __table_args__ = (
        # At most one queued/running job per integration
        Index(
            "uq_ingestion_jobs_in_flight",
            "integration_id",
            unique=True,
            postgresql_where=text("status IN ('queued', 'running')"),
            sqlite_where=text("status IN ('queued', 'running')"),
        ),
        Index("ix_ingestion_jobs_claim", "status", "run_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    trigger = Column(
        Enum(JobTriggerEnum, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
        default=JobTriggerEnum.cron,
    )
    status = Column(
        Enum(JobStatusEnum, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
        default=JobStatusEnum.queued,
    )
    run_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)  # e.g. {"interval_seconds": 3600}
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    integration = relationship("Integration", back_populates="jobs")

    def __str__(self):
        return f"{self.provider} job {self.id} ({self.status.value})"


class SyncHistory(Base):
    """Immutable audit record of one sync attempt."""
    __tablename__ = "sync_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    status = Column(String, nullable=False)  # success, error
    data = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    integration = relationship("Integration", back_populates="history")


# Stores written by sync handlers --------------------------------

class Campaign(Base):
    """Advertising campaign pulled (or synthesized) from a provider."""
    __tablename__ = "campaigns"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "external_id", name="uq_campaign_tenant_platform_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    integration_id = Column(UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=True)
    platform = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    objective = Column(String, nullable=True)
    budget = Column(Numeric(14, 2), nullable=True)
    budget_type = Column(String, nullable=True)  # daily, lifetime
    currency = Column(String, nullable=True)
    start_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    integration = relationship("Integration", back_populates="campaigns")
    metrics = relationship("DailyMetric", back_populates="campaign")

    def __str__(self):
        return f"{self.name} ({self.platform})"


class DailyMetric(Base):
    """Per-campaign daily performance row."""
    __tablename__ = "daily_metrics"
    __table_args__ = (
        UniqueConstraint("campaign_id", "date", "source", name="uq_daily_metric_campaign_date_source"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    platform = Column(String, nullable=False)
    source = Column(String, nullable=False)  # canonical provider key
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    spend = Column(Numeric(14, 2), nullable=False, default=0)
    revenue = Column(Numeric(14, 2), nullable=False, default=0)
    details = Column(JSON, nullable=True)

    campaign = relationship("Campaign", back_populates="metrics")
