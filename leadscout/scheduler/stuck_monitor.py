"""
Stale task recovery - handles RUNNING tasks orphaned by a dead worker.

A worker that is OOM-killed or redeployed mid-run leaves its tasks RUNNING
forever: no executor owns them anymore and the CAS never lets another worker
claim them. Such a task is recognised by its heartbeat (updated_at), which a
live run refreshes every `heartbeat_interval_seconds`.

What happens to a stale task is an explicit policy:
- requeue (default): counts as one transient retry; the task goes back to
  PENDING, or to FAILED once retries are exhausted
- fail: mark FAILED immediately
- report: log only, leave the task RUNNING for an operator

Runs once when a worker starts and then periodically from the scheduler.
Tasks tracked by this process are never touched. Tasks are never deleted.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Collection, Dict, List, Optional

from ..archivist.models import utc_now_naive
from ..archivist.task_store import TaskStore
from ..config.settings import settings

logger = logging.getLogger(__name__)


class StaleTaskPolicy(str, Enum):
    REQUEUE = "requeue"
    FAIL = "fail"
    REPORT = "report"


def retry_delay_seconds(retry_count: int, base: float, cap: float) -> float:
    """Exponential backoff before attempt retry_count + 1: min(base * 2**retry_count, cap)."""
    return min(base * (2 ** retry_count), cap)


async def recover_stale_tasks(
    store: TaskStore,
    policy: Optional[StaleTaskPolicy] = None,
    stale_after_seconds: Optional[float] = None,
    max_retries: Optional[int] = None,
    exclude_ids: Collection[str] = (),
) -> Dict[str, List[str]]:
    """
    Apply the stale-task policy to RUNNING tasks with an old heartbeat.

    Args:
        store: Task store to scan
        policy: What to do with stale tasks (default: settings.stale_task_policy)
        stale_after_seconds: Heartbeat age that makes a task stale
        max_retries: Retry limit for the requeue policy
        exclude_ids: Task ids owned by live executors in this process

    Returns:
        {"requeued": [...], "failed": [...], "reported": [...]} task ids
    """
    policy = StaleTaskPolicy(policy or settings.stale_task_policy)
    stale_after = stale_after_seconds if stale_after_seconds is not None else settings.stale_after_seconds
    max_retries = settings.max_retries if max_retries is None else max_retries

    now = utc_now_naive()
    cutoff = now - timedelta(seconds=stale_after)
    stale_tasks = [t for t in await store.find_stale_running(cutoff) if t.id not in exclude_ids]

    summary: Dict[str, List[str]] = {"requeued": [], "failed": [], "reported": []}
    if not stale_tasks:
        logger.debug("Stale task check: no stale tasks found")
        return summary

    for task in stale_tasks:
        stale_seconds = (now - task.updated_at).total_seconds()
        detail = f"heartbeat stale for {stale_seconds:.0f}s (worker={task.worker_id or 'unknown'})"
        stage = task.current_stage or "unknown"

        if policy == StaleTaskPolicy.REPORT:
            logger.warning(f"STALE_TASK: {task.id} stage={stage} {detail} - reporting only")
            summary["reported"].append(task.id)
            continue

        if policy == StaleTaskPolicy.REQUEUE and task.retry_count < max_retries:
            delay = retry_delay_seconds(
                task.retry_count, settings.retry_base_seconds, settings.retry_max_seconds
            )
            if await store.requeue(
                task.id,
                retry_count=task.retry_count + 1,
                not_before=now + timedelta(seconds=delay),
                error_message=f"Worker lost during stage '{stage}' ({detail})",
            ):
                logger.warning(f"STALE_TASK_REQUEUED: {task.id} {detail}")
                summary["requeued"].append(task.id)
            continue

        if policy == StaleTaskPolicy.REQUEUE:
            message = (
                f"Failed after {task.retry_count} retries. "
                f"Last error: worker lost during stage '{stage}' ({detail})"
            )
        else:
            message = f"Worker lost during stage '{stage}' ({detail})"
        if await store.mark_failed(task.id, message, stage):
            logger.warning(f"STALE_TASK_FAILED: {task.id} {detail}")
            summary["failed"].append(task.id)

    return summary
