"""
Periodic maintenance jobs on APScheduler.

Jobs:
- stale_task_recovery: applies the stale-task policy to RUNNING tasks whose
  heartbeat stopped (crashed or redeployed workers)
- worker_health: logs the worker health report (stuck and abandoned runs)

The task poll loop itself lives in BackgroundWorker; it needs a sub-minute
cadence and back-pressure that an interval job does not give.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..archivist.task_store import TaskStore
from ..config.settings import settings
from .stuck_monitor import recover_stale_tasks
from .worker import BackgroundWorker

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = 300  # 5 minutes

scheduler: Optional[AsyncIOScheduler] = None


async def stale_task_recovery_job(store: TaskStore, worker: Optional[BackgroundWorker] = None):
    """Scheduled stale-task recovery, skipping runs this process is executing."""
    exclude = set(worker.tracked_task_ids) if worker is not None else set()
    try:
        summary = await recover_stale_tasks(store, exclude_ids=exclude)
    except Exception as e:
        logger.error(f"Stale task recovery failed: {e}", exc_info=True)
        return None

    if any(summary.values()):
        logger.warning(
            f"STALE_TASK_RECOVERY: requeued={len(summary['requeued'])} "
            f"failed={len(summary['failed'])} reported={len(summary['reported'])}"
        )
    return summary


async def worker_health_job(worker: BackgroundWorker):
    """Log the worker health report; degraded reports are warnings."""
    report = worker.health_check()
    if report["status"] != "healthy":
        logger.warning(
            f"WORKER_DEGRADED: {worker.worker_id} stuck={len(report['stuck_tasks'])} "
            f"abandoned={len(report['abandoned_tasks'])}"
        )
    else:
        logger.info(f"Worker {worker.worker_id} healthy, running={report['running']}")
    return report


def setup_scheduler(store: TaskStore, worker: Optional[BackgroundWorker] = None) -> AsyncIOScheduler:
    """
    Initialize and start the APScheduler.

    Configures:
    - Stale task recovery every stale_check_interval_seconds
    - Worker health logging every 5 minutes (when a worker is given)
    - Job store in memory (stateless)
    """
    global scheduler

    scheduler = AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,  # Collapse missed runs into one
            "max_instances": 1,  # Only one instance at a time
            "misfire_grace_time": 60,
        }
    )

    scheduler.add_job(
        stale_task_recovery_job,
        trigger=IntervalTrigger(seconds=settings.stale_check_interval_seconds),
        args=[store, worker],
        id="stale_task_recovery",
        name=f"Stale task recovery ({settings.stale_task_policy})",
        replace_existing=True,
    )

    if worker is not None:
        scheduler.add_job(
            worker_health_job,
            trigger=IntervalTrigger(seconds=HEALTH_CHECK_INTERVAL),
            args=[worker],
            id="worker_health",
            name="Worker health check",
            replace_existing=True,
        )

    scheduler.start()
    logger.info("Scheduler started")

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.id} - next run: {job.next_run_time}")

    return scheduler


def shutdown_scheduler():
    """Shutdown the scheduler without waiting for running jobs."""
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete")
        scheduler = None
