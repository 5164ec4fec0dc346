"""Ingestion worker - drains the persisted job queue.

WHAT:
    Polls `ingestion_jobs`, claims due jobs with a compare-and-swap, runs each
    through the sync handler registry and marks it done or failed (with
    retry/backoff).

WHY:
    - The queue lives in the database: any number of worker processes can run
      against it and the claim guarantees a job is processed by one of them
    - Bounded concurrency per process (INGESTION_CONCURRENCY) keeps provider
      API usage and DB connections predictable
    - Graceful shutdown: request_stop() stops claiming and lets in-flight jobs
      finish; nothing is left half-claimed by a clean exit

LOOP:
    1. At capacity -> sleep INGESTION_CAPACITY_WAIT_MS, re-check
    2. Claim the next due job (claim errors are logged, treated as "none")
    3. None -> sleep INGESTION_POLL_INTERVAL_MS
    4. Else start process_job in a thread without waiting for it

JOB (process_job, one session per job):
    integration missing       -> IntegrationNotFoundError -> mark_failed
    handler non-success/raise -> history + status=error   -> mark_failed
    success                   -> history + state advanced -> mark_done

REFERENCES:
    - adsync/services/job_queue.py
    - adsync/services/sync_runner.py
    - adsync/workers/start_worker.py
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from sqlalchemy.orm import Session

from adsync.database import SessionLocal
from adsync.deps import Settings, get_registry, get_settings
from adsync.services.errors import IntegrationNotFoundError, SyncFailedError
from adsync.services.integration_store import get_integration
from adsync.services.job_queue import (
    BackoffPolicy,
    ClaimedJob,
    claim_next_job,
    mark_done,
    mark_failed,
)
from adsync.services.sync_registry import SyncHandlerRegistry
from adsync.services.sync_runner import SyncExecution, execute_integration_sync
from adsync.telemetry import capture_exception

logger = logging.getLogger(__name__)


class IngestionWorker:
    """Bounded-concurrency consumer of the ingestion job queue."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        registry: Optional[SyncHandlerRegistry] = None,
        settings: Optional[Settings] = None,
        rng: Callable[[], float] = random.random,
    ):
        self.session_factory = session_factory
        self.registry = registry or get_registry()
        self.settings = settings or get_settings()
        self.worker_id = self.settings.INGESTION_WORKER_ID
        self.concurrency = max(1, self.settings.INGESTION_CONCURRENCY)
        self.backoff = BackoffPolicy.from_settings(self.settings)
        self.rng = rng
        self.processed = 0
        self._stopping = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def request_stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs run to completion."""
        if not self._stopping:
            logger.info("[INGESTION_WORKER] %s stopping, draining in-flight jobs", self.worker_id)
        self._stopping = True

    @property
    def stopping(self) -> bool:
        return self._stopping

    async def run(self, stop_when_idle: bool = False) -> int:
        """Poll/claim/dispatch until stopped.

        Args:
            stop_when_idle: Return once nothing is claimable and nothing is in
                flight (used by `--once` and tests)

        Returns:
            Number of jobs processed by this call
        """
        in_flight: Set[asyncio.Task] = set()
        started = self.processed

        logger.info(
            "[INGESTION_WORKER] %s started (concurrency=%d, poll=%dms)",
            self.worker_id, self.concurrency, self.settings.INGESTION_POLL_INTERVAL_MS,
        )

        while not self._stopping:
            if len(in_flight) >= self.concurrency:
                await asyncio.sleep(self.settings.capacity_wait_seconds)
                continue

            try:
                job = await asyncio.to_thread(self.claim)
            except Exception as e:
                logger.exception("[INGESTION_WORKER] Claim failed: %s", e)
                capture_exception(e, extra={"operation": "claim_next_job", "worker_id": self.worker_id})
                job = None

            if job is None:
                if stop_when_idle:
                    if not in_flight:
                        break
                    # A finishing job may be the only thing left; re-poll after it
                    await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                    continue
                await asyncio.sleep(self.settings.poll_interval_seconds)
                continue

            task = asyncio.create_task(asyncio.to_thread(self.process_job, job))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)

        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)

        logger.info(
            "[INGESTION_WORKER] %s stopped after %d job(s)",
            self.worker_id, self.processed - started,
        )
        return self.processed - started

    # -------------------------------------------------------------------------
    # Claim
    # -------------------------------------------------------------------------

    def claim(self, now: Optional[datetime] = None) -> Optional[ClaimedJob]:
        db = self.session_factory()
        try:
            return claim_next_job(db, self.worker_id, now=now)
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Process
    # -------------------------------------------------------------------------

    def run_job(self, db: Session, job: ClaimedJob) -> SyncExecution:
        """Sync the job's integration. Raises on any outcome other than success."""
        integration = get_integration(db, job.integration_id)
        if integration is None:
            raise IntegrationNotFoundError(job.integration_id)

        interval_seconds = (job.payload or {}).get("interval_seconds") or self.settings.INGESTION_SYNC_INTERVAL_SECONDS
        execution = execute_integration_sync(
            db,
            self.registry,
            integration,
            trigger=job.trigger,
            interval=timedelta(seconds=int(interval_seconds)),
            extra={"job_id": str(job.id), "attempt": job.attempts},
        )
        if not execution.ok:
            raise SyncFailedError(
                execution.provider,
                execution.error or "Sync failed",
                execution.result,
            )
        return execution

    def process_job(self, job: ClaimedJob) -> bool:
        """Run one claimed job to a terminal or requeued state. Never raises.

        Returns:
            True if the job succeeded and this worker still held its lock
        """
        logger.info(
            "[INGESTION_WORKER] Processing job %s for integration %s (%s, attempt %d/%d)",
            job.id, job.integration_id, job.provider, job.attempts, job.max_attempts,
        )

        db = self.session_factory()
        try:
            self.run_job(db, job)
            if not mark_done(db, job.id, job.locked_by):
                logger.warning("[INGESTION_WORKER] Job %s synced but its lock was taken over", job.id)
                return False
            logger.info("[INGESTION_WORKER] Job %s succeeded", job.id)
            return True

        except Exception as e:
            db.rollback()
            logger.error("[INGESTION_WORKER] Job %s failed: %s", job.id, e)
            capture_exception(e, extra={
                "operation": "ingestion_job",
                "job_id": str(job.id),
                "integration_id": str(job.integration_id),
                "provider": job.provider,
                "attempt": job.attempts,
            })
            self._fail(job, str(e) or e.__class__.__name__)
            return False

        finally:
            db.close()
            self.processed += 1

    def _fail(self, job: ClaimedJob, error: str) -> None:
        # Fresh session: the job's session may be unusable after the failure
        db = self.session_factory()
        try:
            mark_failed(
                db,
                job.id,
                job.locked_by,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                error=error,
                policy=self.backoff,
                rng=self.rng,
            )
        except Exception as e:
            # Job stays `running` until the stale lock sweep recovers it
            db.rollback()
            logger.exception("[INGESTION_WORKER] Could not record failure for job %s: %s", job.id, e)
            capture_exception(e, extra={"operation": "mark_failed", "job_id": str(job.id)})
        finally:
            db.close()
