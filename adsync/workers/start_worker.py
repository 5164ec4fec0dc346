#!/usr/bin/env python3
"""Start an ingestion worker process.

WHAT:
    Runs IngestionWorker against the database job queue until SIGINT/SIGTERM.

WHY:
    - Workers scale horizontally: start as many processes as needed, each with
      its own INGESTION_WORKER_ID
    - SIGTERM (deploys, autoscaling) drains in-flight jobs before exit instead
      of leaving them locked until the stale sweep

USAGE:
    python -m adsync.workers.start_worker

    # Drain every due job once and exit (cron-style / local debugging)
    python -m adsync.workers.start_worker --once

PRODUCTION:
    # [program:ingestion-worker]
    # command=adsync-worker
    # autostart=true
    # autorestart=true
    # stopsignal=TERM
    # stopwaitsecs=600
"""

import argparse
import asyncio
import logging
import signal
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingestion job queue worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process every due job, then exit",
    )
    return parser.parse_args(argv)


async def _serve(worker, once: bool) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: worker.request_stop())
    return await worker.run(stop_when_idle=once)


def main(argv=None):
    """Start the ingestion worker."""
    args = _parse_args(argv)
    try:
        from adsync.deps import get_settings
        from adsync.telemetry import init_observability
        from adsync.workers.ingestion_worker import IngestionWorker

        observability = init_observability()
        settings = get_settings()

        logger.info("=" * 60)
        logger.info("Starting ingestion worker")
        logger.info("=" * 60)
        logger.info("Worker id: %s", settings.INGESTION_WORKER_ID)
        logger.info("Concurrency: %d", settings.INGESTION_CONCURRENCY)
        logger.info("Poll interval: %dms", settings.INGESTION_POLL_INTERVAL_MS)
        logger.info("Force mock: %s", settings.INGESTION_FORCE_MOCK)
        logger.info("Sentry: %s", "enabled" if observability["sentry"] else "disabled")
        logger.info("Mode: %s", "once" if args.once else "continuous")
        logger.info("=" * 60)

        processed = asyncio.run(_serve(IngestionWorker(settings=settings), once=args.once))
        logger.info("Worker exited cleanly (%d job(s) processed)", processed)

    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
