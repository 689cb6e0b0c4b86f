"""
APScheduler jobs for background replication.

The replication tick runs every `interval_seconds`; APScheduler never lets two
ticks overlap (max_instances=1) and folds missed runs into one (coalesce).
A one-shot warm-up tick runs shortly after start so a restarted worker
drains its backlog without waiting a full interval.

Changing the worker's config at runtime reschedules or pauses the tick.
"""
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

TICK_JOB_ID = "replication_tick"
WARMUP_JOB_ID = "replication_warmup"
WARMUP_DELAY_SECONDS = 5


def build_scheduler(worker) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        worker: SyncWorker whose run_once() is scheduled.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    config = worker.get_config()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _replication_tick,
        trigger="interval",
        seconds=config.interval_seconds,
        id=TICK_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
        kwargs={"worker": worker},
    )
    if config.enabled:
        scheduler.add_job(
            _replication_tick,
            trigger="date",
            run_date=datetime.now() + timedelta(seconds=WARMUP_DELAY_SECONDS),
            id=WARMUP_JOB_ID,
            replace_existing=True,
            kwargs={"worker": worker},
        )
    else:
        scheduler.pause_job(TICK_JOB_ID)
        logger.info("Replication disabled: tick job added paused")

    worker.add_config_listener(lambda cfg: apply_config(scheduler, cfg))
    return scheduler


def apply_config(scheduler: AsyncIOScheduler, config) -> None:
    """Bring the tick job in line with a new SyncConfig."""
    job = scheduler.get_job(TICK_JOB_ID)
    if job is None:
        return
    if job.trigger.interval != timedelta(seconds=config.interval_seconds):
        scheduler.reschedule_job(TICK_JOB_ID, trigger="interval", seconds=config.interval_seconds)
        logger.info("Replication tick rescheduled every %ss", config.interval_seconds)
    if config.enabled:
        scheduler.resume_job(TICK_JOB_ID)
    else:
        scheduler.pause_job(TICK_JOB_ID)
        logger.info("Replication tick paused")


async def _replication_tick(worker) -> None:
    """One scheduled tick; never lets an exception reach the scheduler."""
    try:
        report = await worker.run_once()
        if report is None:
            logger.debug("Replication tick skipped (already running)")
        elif report.error:
            logger.error("Replication tick failed: %s", report.error)
    except Exception as exc:
        logger.error("Replication tick crashed: %s", exc)
