"""Integration store access used by the ingestion subsystem.

The tenant-facing application owns integration configuration. Ingestion only
lists active integrations and writes back status and last-sync time.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import Integration, IntegrationStatusEnum


def find_active_integrations(db: Session, tenant_id: Optional[UUID] = None) -> List[Integration]:
    """Active integrations, least recently synced first (never-synced first)."""
    query = db.query(Integration).filter(Integration.is_active.is_(True))
    if tenant_id is not None:
        query = query.filter(Integration.tenant_id == tenant_id)
    return query.order_by(Integration.last_sync_at.is_(None).desc(), Integration.last_sync_at.asc()).all()


def get_integration(db: Session, integration_id: UUID) -> Optional[Integration]:
    return db.get(Integration, integration_id)


def update_status_and_last_sync(db: Session, integration: Integration, ok: bool, now: datetime) -> None:
    """Last-writer-wins update; only the single in-flight job writes it."""
    integration.last_sync_at = now
    integration.status = (IntegrationStatusEnum.active if ok else IntegrationStatusEnum.error).value
    db.flush()
