"""Tests for the persisted ingestion job queue.

WHAT: Enqueue, compare-and-swap claim, completion, retry/backoff and the
      stale lock sweep
WHY: Several worker processes share this table; a job must be processed by
     exactly one of them and failures must be retried a bounded number of times

REFERENCES:
  - adsync/services/job_queue.py
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from adsync.models import IngestionJob, JobStatusEnum, JobTriggerEnum
from adsync.services.job_queue import (
    STALE_LOCK_ERROR,
    BackoffPolicy,
    backoff_ms,
    claim_next_job,
    enqueue_job,
    find_claimable_job,
    has_in_flight_job,
    mark_done,
    mark_failed,
    requeue_stale_jobs,
    try_claim_job,
)
from adsync.utils.time import ensure_utc

NO_JITTER = BackoffPolicy(jitter_ms=0)


def _job(db, job_id) -> IngestionJob:
    db.expire_all()
    return db.get(IngestionJob, job_id)


# ============================================================================
# Backoff
# ============================================================================

class TestBackoff:

    def test_doubles_per_attempt(self):
        assert backoff_ms(0, rng=lambda: 0.0) == 5000
        assert backoff_ms(1, rng=lambda: 0.0) == 10000
        assert backoff_ms(2, rng=lambda: 0.0) == 20000

    def test_exponent_is_capped(self):
        capped = 5000 * 2 ** 6
        assert backoff_ms(6, rng=lambda: 0.0) == capped
        assert backoff_ms(40, rng=lambda: 0.0) == capped

    def test_non_decreasing_in_attempts(self):
        delays = [backoff_ms(n, rng=lambda: 0.0) for n in range(12)]
        assert delays == sorted(delays)

    def test_jitter_stays_below_bound(self):
        for attempts in range(8):
            base = backoff_ms(attempts, rng=lambda: 0.0)
            jittered = backoff_ms(attempts, rng=lambda: 0.9999)
            assert base <= jittered < base + 500

    def test_negative_attempts_clamp_to_zero(self):
        assert backoff_ms(-3, rng=lambda: 0.0) == 5000


# ============================================================================
# Enqueue
# ============================================================================

class TestEnqueue:

    def test_enqueue_creates_queued_job(self, db_session, make_integration, now):
        integration = make_integration(provider="line")

        job = enqueue_job(db_session, integration, now=now, payload={"interval_seconds": 3600})

        assert job is not None
        job = _job(db_session, job.id)
        assert job.status == JobStatusEnum.queued
        assert job.trigger == JobTriggerEnum.cron
        assert job.provider == "line_ads"
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.locked_at is None
        assert ensure_utc(job.run_at) == now
        assert job.payload == {"interval_seconds": 3600}
        assert has_in_flight_job(db_session, integration.id) is True

    def test_second_in_flight_job_is_rejected(self, db_session, make_integration, now):
        integration = make_integration()

        assert enqueue_job(db_session, integration, now=now) is not None
        assert enqueue_job(db_session, integration, now=now) is None
        assert db_session.query(IngestionJob).count() == 1

    def test_in_flight_index_rejects_direct_insert(self, db_session, make_integration, now):
        integration = make_integration()
        enqueue_job(db_session, integration, now=now)

        db_session.add(IngestionJob(
            tenant_id=integration.tenant_id,
            integration_id=integration.id,
            provider="facebook",
            status=JobStatusEnum.running,
            run_at=now,
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_terminal_job_does_not_block_new_enqueue(self, db_session, make_integration, now):
        integration = make_integration()
        first = enqueue_job(db_session, integration, now=now)
        claimed = claim_next_job(db_session, "w1", now=now)
        mark_done(db_session, claimed.id, "w1", now=now)

        second = enqueue_job(db_session, integration, now=now + timedelta(hours=1))

        assert second is not None
        assert second.id != first.id


# ============================================================================
# Claim
# ============================================================================

class TestClaim:

    def test_claim_transitions_to_running(self, db_session, make_integration, now):
        integration = make_integration()
        job = enqueue_job(db_session, integration, now=now)

        claimed = claim_next_job(db_session, "worker-a", now=now)

        assert claimed.id == job.id
        assert claimed.attempts == 1
        assert claimed.locked_by == "worker-a"
        row = _job(db_session, job.id)
        assert row.status == JobStatusEnum.running
        assert ensure_utc(row.locked_at) == now
        assert ensure_utc(row.started_at) == now

    def test_claim_is_atomic_across_sessions(self, session_factory, make_integration, now):
        integration = make_integration()
        seed = session_factory()
        job_id = enqueue_job(seed, integration, now=now).id
        seed.close()

        sessions = [session_factory() for _ in range(5)]
        try:
            # Every session sees the same candidate before anyone claims it
            for db in sessions:
                assert find_claimable_job(db, now).id == job_id

            wins = [try_claim_job(db, job_id, f"worker-{i}", now) for i, db in enumerate(sessions)]

            assert wins.count(True) == 1
            assert wins[0] is True
            row = _job(sessions[0], job_id)
            assert row.locked_by == "worker-0"
            assert row.attempts == 1
        finally:
            for db in sessions:
                db.close()

    def test_loser_gets_nothing(self, session_factory, make_integration, now):
        integration = make_integration()
        db1, db2 = session_factory(), session_factory()
        try:
            enqueue_job(db1, integration, now=now)
            assert claim_next_job(db1, "w1", now=now) is not None
            assert claim_next_job(db2, "w2", now=now) is None
        finally:
            db1.close()
            db2.close()

    def test_future_run_at_is_not_claimable(self, db_session, make_integration, now):
        integration = make_integration()
        enqueue_job(db_session, integration, now=now + timedelta(minutes=5))

        assert claim_next_job(db_session, "w1", now=now) is None
        assert claim_next_job(db_session, "w1", now=now + timedelta(minutes=5)) is not None

    def test_earliest_run_at_claimed_first(self, db_session, make_integration, now):
        later = enqueue_job(db_session, make_integration(), now=now - timedelta(minutes=1))
        earlier = enqueue_job(db_session, make_integration(), now=now - timedelta(minutes=10))

        assert claim_next_job(db_session, "w1", now=now).id == earlier.id
        assert claim_next_job(db_session, "w1", now=now).id == later.id
        assert claim_next_job(db_session, "w1", now=now) is None


# ============================================================================
# Complete / Fail
# ============================================================================

class TestCompletion:

    def test_mark_done(self, db_session, make_integration, now):
        integration = make_integration()
        enqueue_job(db_session, integration, now=now)
        claimed = claim_next_job(db_session, "w1", now=now)

        mark_done(db_session, claimed.id, "w1", now=now + timedelta(seconds=3))

        row = _job(db_session, claimed.id)
        assert row.status == JobStatusEnum.success
        assert ensure_utc(row.finished_at) == now + timedelta(seconds=3)
        assert row.locked_at is None
        assert row.locked_by is None
        assert has_in_flight_job(db_session, integration.id) is False

    def test_mark_failed_requeues_with_backoff(self, db_session, make_integration, now):
        integration = make_integration()
        enqueue_job(db_session, integration, now=now)
        claimed = claim_next_job(db_session, "w1", now=now)

        status = mark_failed(
            db_session, claimed.id, claimed.locked_by, claimed.attempts, claimed.max_attempts,
            "token expired", now=now, policy=NO_JITTER,
        )

        assert status == JobStatusEnum.queued
        row = _job(db_session, claimed.id)
        assert row.status == JobStatusEnum.queued
        assert row.error == "token expired"
        assert row.locked_at is None
        assert row.locked_by is None
        assert row.started_at is None
        assert ensure_utc(row.run_at) == now + timedelta(milliseconds=10000)

        # Not claimable until the backoff elapses
        assert claim_next_job(db_session, "w1", now=now + timedelta(seconds=9)) is None
        retry = claim_next_job(db_session, "w1", now=now + timedelta(seconds=10))
        assert retry.id == claimed.id
        assert retry.attempts == 2

    def test_retries_exhaust_to_failed(self, db_session, make_integration, now):
        integration = make_integration()
        enqueue_job(db_session, integration, now=now, max_attempts=3)

        clock = now
        statuses = []
        for _ in range(3):
            claimed = claim_next_job(db_session, "w1", now=clock)
            assert claimed is not None
            statuses.append(mark_failed(
                db_session, claimed.id, claimed.locked_by, claimed.attempts, claimed.max_attempts,
                "boom", now=clock, policy=NO_JITTER,
            ))
            clock += timedelta(hours=1)

        assert statuses == [JobStatusEnum.queued, JobStatusEnum.queued, JobStatusEnum.failed]
        row = _job(db_session, claimed.id)
        assert row.status == JobStatusEnum.failed
        assert row.attempts == 3
        assert row.finished_at is not None
        assert claim_next_job(db_session, "w1", now=clock + timedelta(days=1)) is None
        assert has_in_flight_job(db_session, integration.id) is False

    def test_error_message_is_truncated(self, db_session, make_integration, now):
        enqueue_job(db_session, make_integration(), now=now)
        claimed = claim_next_job(db_session, "w1", now=now)

        mark_failed(db_session, claimed.id, "w1", 1, 3, "x" * 5000, now=now, policy=NO_JITTER)

        assert len(_job(db_session, claimed.id).error) == 2000


# ============================================================================
# Stale lock sweep
# ============================================================================

class TestStaleLockSweep:

    def test_stale_running_job_is_requeued(self, db_session, make_integration, now):
        enqueue_job(db_session, make_integration(), now=now)
        claimed = claim_next_job(db_session, "dead-worker", now=now)

        requeued, failed = requeue_stale_jobs(
            db_session, timedelta(minutes=30), now=now + timedelta(minutes=31), policy=NO_JITTER,
        )

        assert (requeued, failed) == (1, 0)
        row = _job(db_session, claimed.id)
        assert row.status == JobStatusEnum.queued
        assert row.error == STALE_LOCK_ERROR
        assert row.locked_by is None
        assert row.attempts == 1

    def test_fresh_lock_is_left_alone(self, db_session, make_integration, now):
        enqueue_job(db_session, make_integration(), now=now)
        claimed = claim_next_job(db_session, "busy-worker", now=now)

        assert requeue_stale_jobs(db_session, timedelta(minutes=30), now=now + timedelta(minutes=10)) == (0, 0)
        assert _job(db_session, claimed.id).status == JobStatusEnum.running

    def test_stale_job_without_attempts_left_fails(self, db_session, make_integration, now):
        enqueue_job(db_session, make_integration(), now=now, max_attempts=1)
        claimed = claim_next_job(db_session, "dead-worker", now=now)

        requeued, failed = requeue_stale_jobs(db_session, timedelta(minutes=30), now=now + timedelta(hours=2))

        assert (requeued, failed) == (0, 1)
        row = _job(db_session, claimed.id)
        assert row.status == JobStatusEnum.failed
        assert row.finished_at is not None

    @pytest.mark.parametrize("late_call", ["done", "failed"])
    def test_swept_owner_cannot_overwrite_new_claim(self, session_factory, make_integration, now, late_call):
        integration = make_integration()
        slow, sweeper, fast = session_factory(), session_factory(), session_factory()
        try:
            enqueue_job(slow, integration, now=now)
            stale = claim_next_job(slow, "worker-a", now=now)

            later = now + timedelta(minutes=31)
            assert requeue_stale_jobs(sweeper, timedelta(minutes=30), now=later, policy=NO_JITTER) == (1, 0)
            reclaimed = claim_next_job(fast, "worker-b", now=later + timedelta(minutes=1))
            assert reclaimed.id == stale.id
            assert reclaimed.attempts == 2

            if late_call == "done":
                assert mark_done(slow, stale.id, stale.locked_by, now=later) is False
            else:
                assert mark_failed(
                    slow, stale.id, stale.locked_by, stale.attempts, stale.max_attempts,
                    "timed out", now=later, policy=NO_JITTER,
                ) is None

            row = _job(fast, stale.id)
            assert row.status == JobStatusEnum.running
            assert row.locked_by == "worker-b"
            assert row.attempts == 2
            assert has_in_flight_job(fast, integration.id) is True

            # The current owner still completes normally
            assert mark_done(fast, reclaimed.id, "worker-b", now=later) is True
            assert _job(fast, stale.id).status == JobStatusEnum.success
        finally:
            for db in (slow, sweeper, fast):
                db.close()
