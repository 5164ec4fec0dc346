"""Ingestion error types.

The worker does not branch on these: every failure inside a job goes through
the same retry path. The types exist so logs, Sentry events and sync history
carry a precise cause.
"""

from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base class for ingestion failures."""


class NoSyncHandlerError(IngestionError):
    """Neither a real nor a mock handler is registered for the provider."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"No sync handler found for provider: {provider}")


class IntegrationNotFoundError(IngestionError):
    """The job's integration no longer exists."""

    def __init__(self, integration_id: Any):
        self.integration_id = integration_id
        super().__init__(f"Integration not found: {integration_id}")


class SyncFailedError(IngestionError):
    """A handler returned a non-success status (or raised)."""

    def __init__(self, provider: str, message: str, result: Optional[Dict[str, Any]] = None):
        self.provider = provider
        self.result = result
        super().__init__(message)
