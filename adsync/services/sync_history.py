"""Append-only sync history (audit log)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import SyncHistory, SyncOutcomeStatusEnum


def append_sync_history(
    db: Session,
    tenant_id: UUID,
    integration_id: UUID,
    provider: str,
    ok: bool,
    data: Optional[Dict[str, Any]],
    error: Optional[str],
    synced_at: datetime,
) -> SyncHistory:
    """Record one sync attempt. Rows are never updated afterwards. Caller commits."""
    entry = SyncHistory(
        tenant_id=tenant_id,
        integration_id=integration_id,
        provider=provider,
        status=(SyncOutcomeStatusEnum.success if ok else SyncOutcomeStatusEnum.error).value,
        data=data,
        error=None if ok else error,
        synced_at=synced_at,
    )
    db.add(entry)
    db.flush()
    return entry
