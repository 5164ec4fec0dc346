"""Direct ("run now") pipeline and sync status query.

WHAT:
    - run_pipeline: synchronously syncs a tenant's active integrations and
      returns one outcome per integration
    - get_sync_status: provider, status, last sync and due-ness per integration

WHY:
    Users press "Sync now" and expect an answer in the same request. This path
    bypasses the job queue entirely: no retries, no backoff. Failures are
    reported back to the caller, and the hourly scheduler retries on its own
    cadence. It records exactly the same side effects as a worker run
    (integration status, SyncHistory row, sync state on success).
    Integrations whose provider has no handler in either mode are skipped
    (logged), not reported as failures on every run.

REFERENCES:
    - adsync/services/sync_runner.py (shared execution/recording)
    - adsync/services/sync_scheduler.py (asynchronous path)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.models import (
    Integration,
    IntegrationSyncState,
    JobTriggerEnum,
    SyncOutcomeStatusEnum,
)
from adsync.schemas import IntegrationSyncStatus, PipelineSummary, SyncOutcome
from adsync.services.integration_store import find_active_integrations
from adsync.services.providers import provider_name, provider_priority
from adsync.services.sync_registry import SyncHandlerRegistry, normalize_provider_key
from adsync.services.sync_runner import execute_integration_sync
from adsync.services.sync_state import is_due
from adsync.telemetry import capture_exception
from adsync.utils.time import utcnow

logger = logging.getLogger(__name__)


def _states_by_integration(db: Session, integrations: List[Integration]):
    ids = [i.id for i in integrations]
    if not ids:
        return {}
    rows = db.query(IntegrationSyncState).filter(IntegrationSyncState.integration_id.in_(ids)).all()
    return {row.integration_id: row for row in rows}


def _select_integrations(
    db: Session,
    registry: SyncHandlerRegistry,
    tenant_id: UUID,
    providers: Optional[Iterable[str]],
    force_sync: bool,
    now: datetime,
) -> List[Integration]:
    integrations = find_active_integrations(db, tenant_id=tenant_id)

    known = set(registry.known_providers())
    unknown = [i for i in integrations if normalize_provider_key(i.provider) not in known]
    if unknown:
        logger.warning(
            "[PIPELINE] Skipping %d integration(s) with no sync handler: %s",
            len(unknown), sorted({i.provider for i in unknown}),
        )
        integrations = [i for i in integrations if normalize_provider_key(i.provider) in known]

    if providers:
        allowed = {normalize_provider_key(p) for p in providers}
        integrations = [i for i in integrations if normalize_provider_key(i.provider) in allowed]

    if not force_sync:
        states = _states_by_integration(db, integrations)
        integrations = [i for i in integrations if is_due(states.get(i.id), now)]

    # sorted() is stable, so least-recently-synced order holds within a provider
    return sorted(integrations, key=lambda i: provider_priority(normalize_provider_key(i.provider)))


def run_pipeline(
    db: Session,
    registry: SyncHandlerRegistry,
    tenant_id: UUID,
    providers: Optional[Iterable[str]] = None,
    force_sync: bool = False,
    settings: Optional[Settings] = None,
) -> List[SyncOutcome]:
    """Sync a tenant's integrations now and report per-integration outcomes.

    Args:
        db: Request-scoped session
        registry: Handler registry
        tenant_id: Tenant whose integrations are synced
        providers: Optional allow-list of provider keys (aliases accepted)
        force_sync: Sync even integrations that are not due yet
        settings: Settings override (tests)

    Returns:
        One SyncOutcome per selected integration, in catalog priority order.
        A failing integration is reported, never raised.
    """
    settings = settings or get_settings()
    interval = timedelta(seconds=settings.INGESTION_SYNC_INTERVAL_SECONDS)
    now = utcnow()

    integrations = _select_integrations(db, registry, tenant_id, providers, force_sync, now)
    logger.info(
        "[PIPELINE] Running for tenant %s: %d integration(s), force_sync=%s",
        tenant_id, len(integrations), force_sync,
    )

    outcomes: List[SyncOutcome] = []
    # Read keys before any rollback below expires the instances
    selected = [
        (integration.id, normalize_provider_key(integration.provider), integration)
        for integration in integrations
    ]
    for integration_id, provider, integration in selected:
        try:
            execution = execute_integration_sync(
                db,
                registry,
                integration,
                trigger=JobTriggerEnum.manual,
                interval=interval,
            )
            outcomes.append(SyncOutcome(
                provider=execution.provider,
                integration_id=integration_id,
                status=SyncOutcomeStatusEnum.success if execution.ok else SyncOutcomeStatusEnum.error,
                mode=execution.mode,
                synced=execution.ok,
                duration_ms=execution.duration_ms,
                error=execution.error,
            ))
        except Exception as e:
            # Recording itself failed (datastore error); report and move on
            db.rollback()
            logger.exception("[PIPELINE] Failed to sync integration %s (%s): %s", integration_id, provider, e)
            capture_exception(e, extra={
                "operation": "run_pipeline",
                "tenant_id": str(tenant_id),
                "integration_id": str(integration_id),
                "provider": provider,
            })
            outcomes.append(SyncOutcome(
                provider=provider,
                integration_id=integration_id,
                status=SyncOutcomeStatusEnum.error,
                synced=False,
                error=str(e) or e.__class__.__name__,
            ))

    summary = summarize_outcomes(outcomes)
    logger.info(
        "[PIPELINE] Completed for tenant %s: total=%d successful=%d failed=%d",
        tenant_id, summary.total, summary.successful, summary.failed,
    )
    return outcomes


def summarize_outcomes(outcomes: List[SyncOutcome]) -> PipelineSummary:
    successful = sum(1 for o in outcomes if o.status == SyncOutcomeStatusEnum.success)
    return PipelineSummary(
        total=len(outcomes),
        successful=successful,
        failed=len(outcomes) - successful,
        results=list(outcomes),
    )


def get_sync_status(
    db: Session,
    tenant_id: UUID,
    now: Optional[datetime] = None,
) -> List[IntegrationSyncStatus]:
    """Status of every active integration of a tenant. Read-only."""
    now = now or utcnow()
    integrations = find_active_integrations(db, tenant_id=tenant_id)
    states = _states_by_integration(db, integrations)

    statuses = []
    for integration in integrations:
        provider = normalize_provider_key(integration.provider)
        state = states.get(integration.id)
        statuses.append(IntegrationSyncStatus(
            id=integration.id,
            provider=provider,
            provider_name=provider_name(provider),
            status=integration.status,
            last_sync_at=integration.last_sync_at,
            next_run_at=state.next_run_at if state else None,
            needs_sync=is_due(state, now),
        ))
    return statuses
