"""Per-integration sync state tracking.

WHAT:
    Due-ness check and success bookkeeping for `IntegrationSyncState`.

WHY:
    "When should the scheduler next consider this integration" is kept apart
    from "how many times has this attempt been retried". There is deliberately
    no record_failure: failures live on the IngestionJob attempt counter, and
    `next_run_at` only advances on success (by a fixed interval).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adsync.models import Integration, IntegrationSyncState
from adsync.services.sync_registry import normalize_provider_key
from adsync.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def is_due(state: Optional[IntegrationSyncState], now: datetime) -> bool:
    """True when there is no state yet or `next_run_at <= now`."""
    if state is None or state.next_run_at is None:
        return True
    return ensure_utc(state.next_run_at) <= ensure_utc(now)


def get_sync_state(db: Session, integration_id: UUID) -> Optional[IntegrationSyncState]:
    return (
        db.query(IntegrationSyncState)
        .filter(IntegrationSyncState.integration_id == integration_id)
        .first()
    )


def ensure_sync_state(db: Session, integration: Integration, now: datetime) -> IntegrationSyncState:
    """Create the integration's state row on first sight (due immediately).

    A new row is committed right away. If a concurrent scheduler tick created
    it first, the unique constraint rejects ours and theirs is returned; the
    session is rolled back in that case, so call this with no pending work.
    """
    state = get_sync_state(db, integration.id)
    if state is not None:
        return state

    integration_id = integration.id
    state = IntegrationSyncState(
        integration_id=integration_id,
        tenant_id=integration.tenant_id,
        provider=normalize_provider_key(integration.provider),
        cursor={},
        next_run_at=now,
    )
    db.add(state)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("[SYNC_STATE] State for integration %s created concurrently", integration_id)
        return get_sync_state(db, integration_id)

    logger.debug("[SYNC_STATE] Created state for integration %s", integration_id)
    return state


def record_success(
    db: Session,
    integration_id: UUID,
    tenant_id: UUID,
    provider: str,
    cursor: Any,
    now: Optional[datetime] = None,
    interval: timedelta = timedelta(hours=1),
) -> IntegrationSyncState:
    """Upsert the state after a successful sync.

    Sets last_attempt_at = last_success_at = now, next_run_at = now + interval
    and stores the handler's cursor (empty dict when none was returned).
    Caller commits.
    """
    now = now or utcnow()
    state = get_sync_state(db, integration_id)
    if state is None:
        state = IntegrationSyncState(integration_id=integration_id, tenant_id=tenant_id)
        db.add(state)

    state.provider = provider
    state.cursor = cursor if cursor is not None else {}
    state.last_attempt_at = now
    state.last_success_at = now
    state.next_run_at = now + interval
    db.flush()
    return state
