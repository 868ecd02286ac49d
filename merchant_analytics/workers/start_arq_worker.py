#!/usr/bin/env python3
"""Start the ARQ analytics worker (or the scheduler).

USAGE:
    python -m merchant_analytics.workers.start_arq_worker
    python -m merchant_analytics.workers.start_arq_worker --scheduler

    Or directly:
    arq merchant_analytics.workers.arq_worker.WorkerSettings
    arq merchant_analytics.workers.arq_worker.SchedulerSettings
"""

import logging
import sys

from merchant_analytics.utils.env import load_env_file

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main(argv=None):
    """Start the ARQ worker, or the cron scheduler with --scheduler."""
    argv = sys.argv[1:] if argv is None else argv
    load_env_file()

    from arq import run_worker

    from merchant_analytics.workers.arq_worker import SchedulerSettings, WorkerSettings

    if "--scheduler" in argv:
        logger.info("Starting ARQ scheduler...")
        run_worker(SchedulerSettings)
    else:
        logger.info("Starting ARQ worker...")
        run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
