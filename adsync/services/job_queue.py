"""Persisted ingestion job queue.

WHAT:
    Enqueue, claim, complete and fail IngestionJob rows.

WHY:
    Several worker processes poll the same table. There is no broker and no
    advisory lock: the claim is a conditional UPDATE (status still queued and
    lock still empty) followed by a check of the affected row count, which is
    a compare-and-swap on the row. The loser sees 0 rows and re-polls.

STATE MACHINE:
    queued -> running            (try_claim_job, attempts += 1)
    running -> success           (mark_done)
    running -> queued            (mark_failed, attempts < max_attempts, run_at += backoff)
    running -> failed            (mark_failed, attempts >= max_attempts)
    running(stale lock) -> queued/failed   (requeue_stale_jobs)

mark_done and mark_failed only match a row still `running` and locked by the
calling worker; a worker whose lock was swept and re-claimed writes nothing.

REFERENCES:
    - adsync/services/sync_scheduler.py (enqueue side)
    - adsync/workers/ingestion_worker.py (claim/complete side)
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adsync.models import (
    IN_FLIGHT_STATUSES,
    IngestionJob,
    Integration,
    JobStatusEnum,
    JobTriggerEnum,
)
from adsync.services.sync_registry import normalize_provider_key
from adsync.utils.time import utcnow

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE_MS = 5000
DEFAULT_BACKOFF_CAP = 6
DEFAULT_BACKOFF_JITTER_MS = 500
MAX_ERROR_LENGTH = 2000
STALE_LOCK_ERROR = "Lock expired (worker crashed or timed out)"


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int = DEFAULT_BACKOFF_BASE_MS
    cap: int = DEFAULT_BACKOFF_CAP
    jitter_ms: int = DEFAULT_BACKOFF_JITTER_MS

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            base_ms=settings.INGESTION_BACKOFF_BASE_MS,
            cap=settings.INGESTION_BACKOFF_CAP,
            jitter_ms=settings.INGESTION_BACKOFF_JITTER_MS,
        )


@dataclass(frozen=True)
class ClaimedJob:
    """Detached snapshot of a job right after a successful claim."""

    id: UUID
    tenant_id: UUID
    integration_id: UUID
    provider: str
    trigger: JobTriggerEnum
    attempts: int
    max_attempts: int
    payload: Optional[Dict[str, Any]]
    locked_by: Optional[str]

    @classmethod
    def from_row(cls, job: IngestionJob) -> "ClaimedJob":
        return cls(
            id=job.id,
            tenant_id=job.tenant_id,
            integration_id=job.integration_id,
            provider=job.provider,
            trigger=job.trigger,
            attempts=job.attempts or 0,
            max_attempts=job.max_attempts or 3,
            payload=job.payload,
            locked_by=job.locked_by,
        )


def backoff_ms(
    attempts: int,
    base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    cap: int = DEFAULT_BACKOFF_CAP,
    jitter_ms: int = DEFAULT_BACKOFF_JITTER_MS,
    rng: Callable[[], float] = random.random,
) -> int:
    """Delay before a failed job becomes claimable again.

    base_ms * 2^min(attempts, cap) + jitter, jitter in [0, jitter_ms).
    """
    exponent = min(cap, max(0, attempts))
    jitter = int(rng() * jitter_ms) if jitter_ms > 0 else 0
    return base_ms * (2 ** exponent) + jitter


# =============================================================================
# ENQUEUE
# =============================================================================

def has_in_flight_job(db: Session, integration_id: UUID) -> bool:
    return (
        db.query(IngestionJob.id)
        .filter(
            IngestionJob.integration_id == integration_id,
            IngestionJob.status.in_(IN_FLIGHT_STATUSES),
        )
        .first()
        is not None
    )


def enqueue_job(
    db: Session,
    integration: Integration,
    now: Optional[datetime] = None,
    trigger: JobTriggerEnum = JobTriggerEnum.cron,
    max_attempts: int = 3,
    payload: Optional[Dict[str, Any]] = None,
) -> Optional[IngestionJob]:
    """Insert a queued job and commit.

    Returns None when the in-flight unique index rejects the row, i.e. another
    scheduler tick enqueued for the same integration in the meantime. The
    session is rolled back in that case.
    """
    now = now or utcnow()
    job = IngestionJob(
        tenant_id=integration.tenant_id,
        integration_id=integration.id,
        provider=normalize_provider_key(integration.provider),
        trigger=trigger,
        status=JobStatusEnum.queued,
        run_at=now,
        attempts=0,
        max_attempts=max_attempts,
        payload=payload or {},
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "[JOB_QUEUE] In-flight job already exists for integration %s, skipping enqueue",
            integration.id,
        )
        return None

    logger.info(
        "[JOB_QUEUE] Enqueued %s job %s for integration %s (%s)",
        trigger.value, job.id, integration.id, job.provider,
    )
    return job


# =============================================================================
# CLAIM
# =============================================================================

def find_claimable_job(db: Session, now: datetime) -> Optional[IngestionJob]:
    """Earliest-run_at queued job that is due and unlocked."""
    return (
        db.query(IngestionJob)
        .filter(
            IngestionJob.status == JobStatusEnum.queued,
            IngestionJob.run_at <= now,
            IngestionJob.locked_at.is_(None),
        )
        .order_by(IngestionJob.run_at.asc())
        .first()
    )


def try_claim_job(db: Session, job_id: UUID, worker_id: str, now: datetime) -> bool:
    """Conditionally transition one job queued -> running.

    Commits. Returns False when another worker changed the row first.
    """
    updated = (
        db.query(IngestionJob)
        .filter(
            IngestionJob.id == job_id,
            IngestionJob.status == JobStatusEnum.queued,
            IngestionJob.locked_at.is_(None),
        )
        .update(
            {
                IngestionJob.status: JobStatusEnum.running,
                IngestionJob.locked_at: now,
                IngestionJob.locked_by: worker_id,
                IngestionJob.started_at: now,
                IngestionJob.attempts: IngestionJob.attempts + 1,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def claim_next_job(db: Session, worker_id: str, now: Optional[datetime] = None) -> Optional[ClaimedJob]:
    """Find and claim the next due job, or None (nothing due or race lost)."""
    now = now or utcnow()
    candidate = find_claimable_job(db, now)
    if candidate is None:
        return None

    job_id = candidate.id
    if not try_claim_job(db, job_id, worker_id, now):
        logger.debug("[JOB_QUEUE] Lost claim race for job %s", job_id)
        return None

    db.expire_all()
    job = db.get(IngestionJob, job_id)
    return ClaimedJob.from_row(job) if job else None


# =============================================================================
# COMPLETE / FAIL
# =============================================================================

def _owned_by(db: Session, job_id: UUID, worker_id: str):
    """Query for the job only while `worker_id` still holds its lock.

    The stale lock sweep can hand a slow worker's job to another worker; the
    original owner's late completion must then match no row.
    """
    return db.query(IngestionJob).filter(
        IngestionJob.id == job_id,
        IngestionJob.status == JobStatusEnum.running,
        IngestionJob.locked_by == worker_id,
    )


def mark_done(db: Session, job_id: UUID, worker_id: str, now: Optional[datetime] = None) -> bool:
    """Complete a job held by `worker_id`. Returns False if the lock was lost."""
    now = now or utcnow()
    updated = _owned_by(db, job_id, worker_id).update(
        {
            IngestionJob.status: JobStatusEnum.success,
            IngestionJob.finished_at: now,
            IngestionJob.locked_at: None,
            IngestionJob.locked_by: None,
        },
        synchronize_session=False,
    )
    db.commit()
    if updated != 1:
        logger.warning("[JOB_QUEUE] Job %s no longer held by %s, completion ignored", job_id, worker_id)
        return False
    return True


def mark_failed(
    db: Session,
    job_id: UUID,
    worker_id: str,
    attempts: int,
    max_attempts: int,
    error: str,
    now: Optional[datetime] = None,
    policy: BackoffPolicy = BackoffPolicy(),
    rng: Callable[[], float] = random.random,
) -> Optional[JobStatusEnum]:
    """Requeue with backoff while attempts remain, otherwise fail terminally.

    Returns the status the job ended up in (queued or failed), or None when
    `worker_id` no longer holds the job's lock and nothing was written.
    """
    now = now or utcnow()
    error = (error or "Unknown error")[:MAX_ERROR_LENGTH]

    if attempts < max_attempts:
        delay = backoff_ms(attempts, policy.base_ms, policy.cap, policy.jitter_ms, rng)
        values = {
            IngestionJob.status: JobStatusEnum.queued,
            IngestionJob.error: error,
            IngestionJob.run_at: now + timedelta(milliseconds=delay),
            IngestionJob.locked_at: None,
            IngestionJob.locked_by: None,
            IngestionJob.started_at: None,
            IngestionJob.finished_at: None,
        }
        status = JobStatusEnum.queued
    else:
        delay = 0
        values = {
            IngestionJob.status: JobStatusEnum.failed,
            IngestionJob.error: error,
            IngestionJob.finished_at: now,
            IngestionJob.locked_at: None,
            IngestionJob.locked_by: None,
        }
        status = JobStatusEnum.failed

    updated = _owned_by(db, job_id, worker_id).update(values, synchronize_session=False)
    db.commit()

    if updated != 1:
        logger.warning("[JOB_QUEUE] Job %s no longer held by %s, failure ignored: %s", job_id, worker_id, error)
        return None

    if status == JobStatusEnum.queued:
        logger.info(
            "[JOB_QUEUE] Job %s requeued (attempt %d/%d, retry in %dms)",
            job_id, attempts, max_attempts, delay,
        )
    else:
        logger.warning(
            "[JOB_QUEUE] Job %s failed permanently after %d attempts: %s",
            job_id, attempts, error,
        )
    return status


# =============================================================================
# STALE LOCK SWEEP
# =============================================================================

def requeue_stale_jobs(
    db: Session,
    stale_after: timedelta,
    now: Optional[datetime] = None,
    policy: BackoffPolicy = BackoffPolicy(),
    rng: Callable[[], float] = random.random,
) -> Tuple[int, int]:
    """Recover `running` jobs whose worker died (lock older than `stale_after`).

    Each recovery is itself a conditional update on the observed lock, so a
    worker that finishes the job concurrently wins. Returns
    (requeued, failed).
    """
    now = now or utcnow()
    threshold = now - stale_after
    stale_jobs = (
        db.query(IngestionJob)
        .filter(
            IngestionJob.status == JobStatusEnum.running,
            IngestionJob.locked_at.isnot(None),
            IngestionJob.locked_at < threshold,
        )
        .all()
    )

    requeued = failed = 0
    for job in stale_jobs:
        attempts = job.attempts or 0
        max_attempts = job.max_attempts or 3
        if attempts < max_attempts:
            delay = backoff_ms(attempts, policy.base_ms, policy.cap, policy.jitter_ms, rng)
            values = {
                IngestionJob.status: JobStatusEnum.queued,
                IngestionJob.error: STALE_LOCK_ERROR,
                IngestionJob.run_at: now + timedelta(milliseconds=delay),
                IngestionJob.locked_at: None,
                IngestionJob.locked_by: None,
                IngestionJob.started_at: None,
                IngestionJob.finished_at: None,
            }
        else:
            values = {
                IngestionJob.status: JobStatusEnum.failed,
                IngestionJob.error: STALE_LOCK_ERROR,
                IngestionJob.finished_at: now,
                IngestionJob.locked_at: None,
                IngestionJob.locked_by: None,
            }

        updated = (
            db.query(IngestionJob)
            .filter(
                IngestionJob.id == job.id,
                IngestionJob.status == JobStatusEnum.running,
                IngestionJob.locked_at == job.locked_at,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            continue

        logger.warning(
            "[JOB_QUEUE] Recovered stale job %s (locked by %s since %s, attempts %d/%d)",
            job.id, job.locked_by, job.locked_at, attempts, max_attempts,
        )
        if attempts < max_attempts:
            requeued += 1
        else:
            failed += 1

    db.commit()
    return requeued, failed
