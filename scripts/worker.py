#!/usr/bin/env python3
"""Job-queue worker: promotes due jobs from the Redis delayed set, pops waiting jobs in
priority order and dispatches them to the evaluation handlers.

Only single-evaluation and api-test jobs are taken here. Batch and scheduled
evaluations refer to state held by the API process, so they stay queued for its
in-process worker.

Usage:
  REDIS_URL=redis://localhost:6379/0 python scripts/worker.py

Set TESTING=1 to use the in-memory AsyncInMemoryRedis implementation used by the tests.
"""
import asyncio
import logging
from typing import Optional

from evalrunner.config import LOG_LEVEL, TESTING
from evalrunner.queue import STATELESS_JOB_TYPES
from evalrunner.redis_helper import get_redis
from evalrunner.services import Services

logger = logging.getLogger("evalrunner.worker")


async def run_worker(services: Optional[Services] = None):
    services = services or Services(await get_redis(), job_types=STATELESS_JOB_TYPES)
    await services.start(worker=True, batch_loop=False)
    logger.info("worker: connected, testing=%s", TESTING)
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await services.shutdown()


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("worker: exiting")
