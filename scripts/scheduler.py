#!/usr/bin/env python3
"""Scheduler process: fires recurring evaluation schedules and drains pending batch jobs.

Schedules live in this process, so their runs execute here rather than being
handed to a separate worker.

Usage:
  python scripts/scheduler.py

Environment variables:
- REDIS_URL (optional)
- TESTING=1 to use in-memory redis
- INSTALL_DEFAULTS=0 to start without the stock schedules
- BATCH_POLL_SECONDS (optional, default 5)
"""
import asyncio
import logging
from typing import Optional

from evalrunner.config import INSTALL_DEFAULTS, LOG_LEVEL
from evalrunner.redis_helper import get_redis
from evalrunner.services import Services

logger = logging.getLogger("evalrunner.scheduler")


async def run_scheduler(services: Optional[Services] = None, install_defaults: bool = INSTALL_DEFAULTS):
    services = services or Services(await get_redis(), schedule_via_queue=False)
    if install_defaults:
        created = await services.scheduler.install_default_schedules()
        logger.info("scheduler: installed %s default schedules", len(created))
    await services.start(worker=False, batch_loop=True)
    logger.info("scheduler: running %s schedules", len(services.scheduler.list_schedules()))
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
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info("scheduler: exiting")
