#!/usr/bin/env python3
"""Start the ARQ usage worker.

USAGE:
    python -m crannies.workers.start_usage_worker

    Or directly:
    arq crannies.workers.usage_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from crannies.telemetry import init_sentry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the usage worker."""
    from crannies.workers.usage_worker import WorkerSettings

    init_sentry()
    logger.info("Starting ARQ usage worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
