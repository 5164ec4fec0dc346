"""Ingestion scheduler tick.

WHAT:
    Scans active integrations and enqueues at most one pending job for each
    one that is due.

WHY:
    - The tick is a best-effort batch, not a transaction: one integration
      failing is logged and the scan continues
    - A datastore outage during the scan ends the tick early; the next tick
      retries the full scan
    - Overlapping ticks (or a slow-draining queue) never produce a second
      in-flight job: the existence check skips, and the in-flight unique index
      rejects whatever slips past the check

TICK (hourly, see adsync/workers/scheduler_worker.py):
    0. Recover jobs whose worker died (stale lock sweep)
    For each active integration:
    1. Ensure its IntegrationSyncState exists (next_run_at = now when created)
    2. Skip if not due
    3. Skip if a queued/running job exists
    4. Enqueue: status=queued, run_at=now, attempts=0, max_attempts=3
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.models import JobTriggerEnum
from adsync.services.integration_store import find_active_integrations
from adsync.services.job_queue import (
    BackoffPolicy,
    enqueue_job,
    has_in_flight_job,
    requeue_stale_jobs,
)
from adsync.services.sync_state import ensure_sync_state, is_due
from adsync.telemetry import capture_exception, capture_message
from adsync.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SchedulerTickResult:
    scanned: int = 0
    due: int = 0
    enqueued: int = 0
    skipped_not_due: int = 0
    skipped_in_flight: int = 0
    errors: int = 0
    requeued_stale: int = 0
    failed_stale: int = 0
    aborted: bool = False

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def run_scheduler_tick(
    db: Session,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> SchedulerTickResult:
    """Run one scheduler pass. Never raises."""
    settings = settings or get_settings()
    now = now or utcnow()
    result = SchedulerTickResult()

    logger.info("[SCHEDULER] Starting ingestion tick at %s", now.isoformat())

    try:
        result.requeued_stale, result.failed_stale = requeue_stale_jobs(
            db,
            stale_after=timedelta(seconds=settings.INGESTION_STALE_LOCK_SECONDS),
            now=now,
            policy=BackoffPolicy.from_settings(settings),
        )
        if result.requeued_stale or result.failed_stale:
            capture_message(
                "Recovered orphaned ingestion jobs",
                level="warning",
                extra={"requeued": result.requeued_stale, "failed": result.failed_stale},
            )
    except Exception as e:
        db.rollback()
        logger.exception("[SCHEDULER] Stale job sweep failed: %s", e)
        capture_exception(e, extra={"operation": "requeue_stale_jobs"})

    try:
        integrations = find_active_integrations(db)
    except Exception as e:
        db.rollback()
        logger.exception("[SCHEDULER] Failed to load active integrations, ending tick: %s", e)
        capture_exception(e, extra={"operation": "scheduler_tick", "phase": "scan"})
        result.aborted = True
        return result

    interval_seconds = settings.INGESTION_SYNC_INTERVAL_SECONDS
    # Read ids before any rollback below expires the instances
    scheduled = [(integration.id, integration) for integration in integrations]
    for integration_id, integration in scheduled:
        result.scanned += 1
        try:
            state = ensure_sync_state(db, integration, now)
            if not is_due(state, now):
                result.skipped_not_due += 1
                db.commit()
                continue

            result.due += 1
            if has_in_flight_job(db, integration_id):
                result.skipped_in_flight += 1
                db.commit()
                logger.debug("[SCHEDULER] Integration %s already has an in-flight job", integration_id)
                continue

            job = enqueue_job(
                db,
                integration,
                now=now,
                trigger=JobTriggerEnum.cron,
                max_attempts=settings.INGESTION_MAX_ATTEMPTS,
                payload={"interval_seconds": interval_seconds},
            )
            if job is None:
                result.skipped_in_flight += 1
            else:
                result.enqueued += 1

        except Exception as e:
            db.rollback()
            result.errors += 1
            logger.error("[SCHEDULER] Failed to schedule integration %s: %s", integration_id, e)
            capture_exception(e, extra={
                "operation": "scheduler_tick",
                "integration_id": str(integration_id),
            })

    logger.info(
        "[SCHEDULER] Tick complete: scanned=%d due=%d enqueued=%d not_due=%d in_flight=%d errors=%d stale_requeued=%d stale_failed=%d",
        result.scanned, result.due, result.enqueued, result.skipped_not_due,
        result.skipped_in_flight, result.errors, result.requeued_stale, result.failed_stale,
    )
    return result
