"""Error reporting for the scheduler and ingestion workers.

Both entry points call init_observability() once at startup; the capture
helpers are safe to call whether or not Sentry is configured.

    from adsync.telemetry import init_observability, capture_exception

    status = init_observability()   # {"sentry": True/False}
"""

from adsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """Start every configured reporter and return which ones are live."""
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
