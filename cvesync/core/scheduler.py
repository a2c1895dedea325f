"""Background stuck-job monitor.

Runs as an asyncio task started by ``JobController.startup``. Every
``interval`` seconds it fails RUNNING jobs whose heartbeat has gone stale,
without any cooperation from the runs themselves.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from cvesync.core.logging import get_logger

if TYPE_CHECKING:
    from cvesync.jobs.controller import JobController

logger = get_logger(__name__)


async def stuck_job_monitor(controller: JobController, interval: float) -> None:
    """Infinite loop: wake every ``interval`` seconds and sweep stuck jobs."""
    logger.info("Stuck job monitor started", interval=interval)
    while True:
        await asyncio.sleep(interval)
        try:
            stuck = await controller.sweep_stuck()
            if stuck:
                logger.info("Stuck job sweep", failed=[str(j) for j in stuck])
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stuck job sweep error, will retry next cycle")
