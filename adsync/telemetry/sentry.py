"""
Sentry for the ingestion processes
==================================

Failures in the scheduler and workers are contained (a job is requeued, a
tick skips one integration) and would otherwise only be visible in logs. This
module reports them to Sentry with the ids needed to find the job again.

Tagging:
- `operation`, `provider` and `worker_id` from `extra` become Sentry tags
  (searchable); everything else is attached as extra context
- every event carries `process` (worker or scheduler) and the worker id as
  server name, so events from several worker replicas can be told apart

Related files:
- adsync/workers/start_worker.py, scheduler_worker.py: call init_observability()
- adsync/workers/ingestion_worker.py: per-job failures
- adsync/services/sync_scheduler.py: per-integration and tick failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (unset disables reporting)
- ENVIRONMENT: production, staging, development
- RELEASE_VERSION: release identifier, set by CI
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from adsync.deps import get_settings

logger = logging.getLogger(__name__)

TAG_KEYS = ("operation", "provider", "worker_id")


def _process_name() -> str:
    argv = " ".join(sys.argv)
    if "scheduler" in argv:
        return "scheduler"
    if "worker" in argv:
        return "worker"
    return "other"


def init_sentry() -> bool:
    """Initialize Sentry for this process.

    Returns:
        True when reporting is enabled; False when SENTRY_DSN is unset or the
        SDK failed to start (the process keeps running either way).
    """
    settings = get_settings()
    if not settings.SENTRY_DSN:
        logger.debug("[SENTRY] SENTRY_DSN not set, error reporting disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=settings.RELEASE_VERSION,
            server_name=settings.INGESTION_WORKER_ID,
            integrations=[
                SqlalchemyIntegration(),
                # Log lines become breadcrumbs; only ERROR+ are sent as events
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.0,
            send_default_pii=False,
        )
        sentry_sdk.set_tag("process", _process_name())
        logger.info("[SENTRY] Reporting enabled (%s)", settings.ENVIRONMENT)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def _apply_context(scope, extra: Optional[Dict[str, Any]]) -> None:
    for key, value in (extra or {}).items():
        if key in TAG_KEYS and value is not None:
            scope.set_tag(key, str(value))
        else:
            scope.set_extra(key, value)


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """Report a contained exception.

    Example:
        except Exception as e:
            capture_exception(e, extra={"operation": "ingestion_job", "job_id": str(job.id)})
    """
    if not sentry_sdk.is_initialized():
        logger.debug("[SENTRY] Not reporting (disabled): %r %s", exception, extra or {})
        return

    try:
        with sentry_sdk.new_scope() as scope:
            _apply_context(scope, extra)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to report exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a notable condition that is not an exception (e.g. recovered jobs)."""
    if not sentry_sdk.is_initialized():
        logger.log(
            logging.getLevelName(level.upper()),
            "[SENTRY] Not reporting (disabled): %s %s",
            message,
            extra or {},
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            _apply_context(scope, extra)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to report message: %s", e)
