"""
TaskService - the surface exposed to API handlers.

All user-facing reads are scoped to the owner. Cancellation is recorded in
the store first (conditional on PENDING/RUNNING) and then signalled to the
local worker, so a run in flight stops at its next stage boundary and its
remaining writes are rejected.
"""

import logging
from typing import Any, Dict, List, Optional

from .archivist.models import ParsingTask, TaskStatus
from .archivist.progress import ProgressBroadcaster, Subscription
from .archivist.task_store import TaskStore
from .scheduler.worker import BackgroundWorker

logger = logging.getLogger(__name__)


class TaskNotFoundError(Exception):
    """Task does not exist or belongs to another owner."""


class TaskStateError(Exception):
    """Requested operation is not valid in the task's current status."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class TaskService:
    def __init__(
        self,
        store: TaskStore,
        worker: Optional[BackgroundWorker] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
    ):
        self.store = store
        self.worker = worker
        self.broadcaster = broadcaster or ProgressBroadcaster()

    async def create_task(
        self,
        owner_id: str,
        kind: str,
        task_name: str,
        input_data: Dict[str, Any],
    ) -> ParsingTask:
        """Create a PENDING task; the worker picks it up on its next tick.

        Raises:
            ValueError / pydantic.ValidationError: unknown kind or invalid input
        """
        return await self.store.create_task(owner_id, kind, input_data, task_name=task_name)

    async def get_task(self, task_id: str, owner_id: Optional[str] = None) -> ParsingTask:
        task = await self.store.get_task(task_id)
        if task is None or (owner_id is not None and task.owner_id != owner_id):
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    async def list_active_tasks(self, owner_id: str) -> List[ParsingTask]:
        return await self.store.list_active_tasks(owner_id)

    async def list_tasks(self, owner_id: str, limit: int = 50) -> List[ParsingTask]:
        return await self.store.list_tasks(owner_id, limit=limit)

    async def cancel_task(self, task_id: str, owner_id: Optional[str] = None) -> ParsingTask:
        """
        Cancel a PENDING or RUNNING task.

        Raises:
            TaskNotFoundError: unknown task or not owned by `owner_id`
            TaskStateError: task already finished
        """
        task = await self.get_task(task_id, owner_id)
        if task.status_enum.is_terminal:
            raise TaskStateError(f"Task is already {task.status}", status=task.status)

        if not await self.store.mark_cancelled(task_id):
            # Finished between the read and the write
            task = await self.get_task(task_id, owner_id)
            raise TaskStateError(f"Task is already {task.status}", status=task.status)

        signalled = self.worker.cancel_task(task_id) if self.worker is not None else False
        if not signalled:
            # No local run will close the channel for us
            self.broadcaster.close(task_id, "cancelled", "Task cancelled")
        logger.info(f"Task {task_id} cancelled by {owner_id or 'system'} (run signalled={signalled})")
        return await self.get_task(task_id, owner_id)

    async def run_now(self, task_id: str, owner_id: Optional[str] = None) -> bool:
        """
        Ask the local worker to start a PENDING task immediately.

        Returns True when this call claimed the task. False means it stays
        PENDING for the next poll tick (worker busy or stopped) or someone
        else claimed it first.
        """
        task = await self.get_task(task_id, owner_id)
        if task.status != TaskStatus.PENDING.value:
            raise TaskStateError(f"Task is {task.status}, only pending tasks can be started", status=task.status)
        if self.worker is None:
            return False
        return await self.worker.submit(task_id)

    async def task_stats(self) -> Dict[str, Any]:
        counts = await self.store.count_by_status()
        stats: Dict[str, Any] = {
            "tasks": counts,
            "total": sum(counts.values()),
            "active": counts.get(TaskStatus.PENDING.value, 0) + counts.get(TaskStatus.RUNNING.value, 0),
        }
        if self.worker is not None:
            stats["worker"] = self.worker.get_status()
        return stats

    def subscribe(self, task_id: str) -> Subscription:
        """Progress events of one task until it finishes."""
        return self.broadcaster.subscribe(task_id)
