"""Single-integration sync execution.

WHAT:
    Dispatches one integration through the registry and records the outcome:
    integration status/last_sync_at, a SyncHistory row, and (on success) the
    sync state cursor and next run time.

WHY:
    The worker (trigger=cron) and the direct pipeline (trigger=manual) must
    leave identical side effects for the same outcome. Handler exceptions are
    converted into an error outcome here so every attempt gets a history row;
    callers decide what an error means for them (retry vs. report).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from adsync.models import Integration, JobTriggerEnum, SyncModeEnum
from adsync.services.errors import NoSyncHandlerError
from adsync.services.integration_store import update_status_and_last_sync
from adsync.services.sync_history import append_sync_history
from adsync.services.sync_registry import (
    SyncHandlerRegistry,
    is_success_result,
    normalize_provider_key,
    result_error_message,
)
from adsync.services.sync_state import record_success
from adsync.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncExecution:
    provider: str
    integration_id: Any
    ok: bool
    mode: Optional[SyncModeEnum]
    result: Optional[Dict[str, Any]]
    error: Optional[str]
    duration_ms: int


def execute_integration_sync(
    db: Session,
    registry: SyncHandlerRegistry,
    integration: Integration,
    trigger: JobTriggerEnum,
    interval: timedelta,
    now: Optional[datetime] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> SyncExecution:
    """Run and record one sync attempt. Commits; never raises for handler failures.

    Args:
        db: Session owned by the caller
        registry: Handler registry to dispatch through
        integration: Integration to sync
        trigger: cron (worker) or manual (direct pipeline)
        interval: Fixed advance for next_run_at on success
        now: Clock override (tests)
        extra: Additional keys for the history payload (job id, attempt)
    """
    provider = normalize_provider_key(integration.provider)
    started = time.monotonic()

    mode: Optional[SyncModeEnum] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    try:
        dispatched = registry.dispatch(db, integration)
        mode = dispatched.mode
        result = dispatched.result
        ok = is_success_result(result)
        if not ok:
            error = result_error_message(result)
    except NoSyncHandlerError as e:
        ok = False
        error = str(e)
        logger.error("[SYNC] %s", error)
    except Exception as e:
        # Handler writes may be half-done; drop them before recording the failure
        db.rollback()
        ok = False
        error = str(e) or e.__class__.__name__
        logger.exception("[SYNC] Handler for %s raised on integration %s", provider, integration.id)

    duration_ms = int((time.monotonic() - started) * 1000)
    finished_at = now or utcnow()

    update_status_and_last_sync(db, integration, ok, finished_at)

    payload: Dict[str, Any] = {
        "trigger": trigger.value,
        "mode": mode.value if mode else None,
        "duration_ms": duration_ms,
        "result": result,
    }
    if extra:
        payload.update(extra)
    append_sync_history(
        db,
        tenant_id=integration.tenant_id,
        integration_id=integration.id,
        provider=provider,
        ok=ok,
        data=payload,
        error=error,
        synced_at=finished_at,
    )

    if ok:
        record_success(
            db,
            integration_id=integration.id,
            tenant_id=integration.tenant_id,
            provider=provider,
            cursor=(result or {}).get("cursor"),
            now=finished_at,
            interval=interval,
        )

    db.commit()

    logger.info(
        "[SYNC] %s sync for integration %s: ok=%s mode=%s duration=%dms",
        provider, integration.id, ok, mode.value if mode else None, duration_ms,
    )
    return SyncExecution(
        provider=provider,
        integration_id=integration.id,
        ok=ok,
        mode=mode,
        result=result,
        error=error,
        duration_ms=duration_ms,
    )
