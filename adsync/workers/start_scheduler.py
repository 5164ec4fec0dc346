#!/usr/bin/env python3
"""Start the ingestion scheduler (ARQ cron).

USAGE:
    python -m adsync.workers.start_scheduler

    # Run a single tick against the database and exit (no Redis needed)
    python -m adsync.workers.start_scheduler --once

    Or directly:
    arq adsync.workers.scheduler_worker.SchedulerSettings
"""

import argparse
import json
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def _run_once() -> None:
    from adsync.database import get_sync_session
    from adsync.services.sync_scheduler import run_scheduler_tick
    from adsync.telemetry import init_observability

    init_observability()
    with get_sync_session() as db:
        result = run_scheduler_tick(db)
    print(json.dumps(result.as_dict(), indent=2))


def main(argv=None):
    """Start the scheduler, or run one tick with --once."""
    parser = argparse.ArgumentParser(description="Ingestion scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args(argv)

    if args.once:
        try:
            _run_once()
        except Exception as e:
            logger.exception("Scheduler tick failed: %s", e)
            sys.exit(1)
        return

    try:
        from arq import run_worker
        from adsync.workers.scheduler_worker import SchedulerSettings

        logger.info("Starting ingestion scheduler...")
        run_worker(SchedulerSettings)
    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.exception("Scheduler failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
