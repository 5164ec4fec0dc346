"""Pydantic schemas for pipeline results and sync status."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import SyncModeEnum, SyncOutcomeStatusEnum


class SyncOutcome(BaseModel):
    """Result of one integration in a direct pipeline run."""

    provider: str = Field(
        description="Canonical provider key",
        examples=["google_ads"],
    )
    integration_id: UUID = Field(
        description="Integration that was synced",
    )
    status: SyncOutcomeStatusEnum = Field(
        description="success or error",
    )
    mode: Optional[SyncModeEnum] = Field(
        None,
        description="Handler mode that ran (real/mock); null when no handler was found",
    )
    synced: bool = Field(
        description="True when the handler ran and reported success",
    )
    duration_ms: int = Field(
        0,
        description="Wall-clock duration of the handler call",
    )
    error: Optional[str] = Field(
        None,
        description="Error message when status is error",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "provider": "facebook",
                "integration_id": "5f1c8a2e-3f5b-4d7e-9b8a-1c2d3e4f5a6b",
                "status": "success",
                "mode": "mock",
                "synced": True,
                "duration_ms": 412,
                "error": None,
            }
        }
    }


class PipelineSummary(BaseModel):
    """Counts over a list of SyncOutcome."""

    total: int = Field(description="Integrations attempted")
    successful: int = Field(description="Integrations that synced successfully")
    failed: int = Field(description="Integrations that ended in error")
    results: List[SyncOutcome] = Field(default_factory=list)


class IntegrationSyncStatus(BaseModel):
    """Sync status of one integration, as shown on the integrations page."""

    id: UUID = Field(description="Integration id")
    provider: str = Field(description="Canonical provider key")
    provider_name: str = Field(description="Display name of the provider")
    status: str = Field(
        description="Integration status (active/error)",
        examples=["active"],
    )
    last_sync_at: Optional[datetime] = Field(
        None,
        description="When the last attempt finished (success or error)",
    )
    next_run_at: Optional[datetime] = Field(
        None,
        description="When the scheduler next considers this integration",
    )
    needs_sync: bool = Field(
        description="True when the integration is due for a sync",
    )
