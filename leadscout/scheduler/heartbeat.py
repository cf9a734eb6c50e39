"""
Run heartbeat - keeps updated_at of a RUNNING task fresh.

The stale-task monitor treats a RUNNING task whose updated_at has not moved
for `stale_after_seconds` as orphaned by a dead worker. While a run is alive
this heartbeat touches the row every `heartbeat_interval_seconds`, even during
long stages that produce no progress writes (search, enrichment).

Usage:
    async with task_heartbeat(store, task.id):
        outcome = await executor.run(task, ctx)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from ..archivist.task_store import TaskStore
from ..config.settings import settings

logger = logging.getLogger(__name__)


async def _heartbeat_loop(store: TaskStore, task_id: str, interval: float):
    """Touch the task every `interval` seconds until cancelled or the task leaves RUNNING."""
    while True:
        try:
            await asyncio.sleep(interval)
            if not await store.heartbeat(task_id):
                logger.info(f"[{task_id}] Heartbeat stopped: task is no longer running")
                break
        except asyncio.CancelledError:
            break
        except Exception as e:
            # Log but continue - a missed heartbeat must not kill the run
            logger.warning(f"[{task_id}] Heartbeat update failed: {e}")


@asynccontextmanager
async def task_heartbeat(
    store: TaskStore,
    task_id: str,
    interval: Optional[float] = None,
):
    """Run a background heartbeat for the duration of the block."""
    interval = interval or settings.heartbeat_interval_seconds
    heartbeat = asyncio.create_task(
        _heartbeat_loop(store, task_id, interval),
        name=f"heartbeat_{task_id}",
    )
    try:
        yield heartbeat
    finally:
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass
