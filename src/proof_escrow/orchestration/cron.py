"""In-process driver for the scheduler tick.

Deployments without an external cron trigger enable SCHEDULER_ENABLED and
let APScheduler call the tick on an interval. ``max_instances=1`` and
``coalesce`` keep a slow tick from overlapping the next one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from proof_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from proof_escrow.config import Settings
    from proof_escrow.services.scheduler import VerificationScheduler

logger = get_logger(__name__)

TICK_JOB_ID = "verification_tick"


def build_scheduler(scheduler: VerificationScheduler, settings: Settings) -> AsyncIOScheduler:
    """Create (but do not start) the APScheduler instance running the tick."""
    apscheduler = AsyncIOScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": settings.scheduler_interval_seconds,
        },
        timezone="UTC",
    )

    async def tick() -> None:
        report = await scheduler.run_tick()
        if report.errors:
            logger.warning("cron.tick_errors", errors=report.errors)

    apscheduler.add_job(
        tick,
        trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
        id=TICK_JOB_ID,
        name="Verification scheduler tick",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("cron.configured", interval_seconds=settings.scheduler_interval_seconds)
    return apscheduler
