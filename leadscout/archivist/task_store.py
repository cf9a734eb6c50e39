"""
Durable task store backed by SQLAlchemy.

Every write that touches `status` is a conditional UPDATE guarded by the
expected current status. This is what makes claiming idempotent (only one
caller can move a task from PENDING to RUNNING) and what keeps terminal
statuses final: an executor that lost its task to a cancellation or to the
stale-task monitor simply sees its write affect zero rows.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from .database import get_session
from .models import (
    ACTIVE_STATUSES,
    ParsingTask,
    TaskKind,
    TaskProgress,
    TaskStatus,
    parse_task_input,
    utc_now_naive,
)

logger = logging.getLogger(__name__)

# Upper bound for stored error messages
MAX_ERROR_MESSAGE_LENGTH = 1000

STAGE_TOTALS = {
    TaskKind.AI_SEARCH.value: 7,
    TaskKind.URL_PARSE.value: 3,
}


class TaskStore:
    """Queryable record store for ParsingTask rows."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def _session(self):
        return get_session(self._session_factory)

    # ------------------------------------------------------------------
    # Creation and queries
    # ------------------------------------------------------------------

    async def create_task(
        self,
        owner_id: str,
        kind: str,
        input_data: Dict[str, Any],
        task_name: str = "",
    ) -> ParsingTask:
        """Validate the input for its kind and insert a new PENDING task."""
        kind = TaskKind(kind).value
        validated = parse_task_input(kind, input_data)
        total = STAGE_TOTALS[kind]
        task = ParsingTask(
            owner_id=owner_id,
            kind=kind,
            task_name=task_name or _default_task_name(kind, validated.model_dump()),
            input_data=validated.model_dump(),
            status=TaskStatus.PENDING.value,
            current_stage="initializing",
            progress=TaskProgress(current=0, total=total, message="Task created, waiting for a worker").model_dump(),
        )
        async with self._session() as session:
            session.add(task)
        logger.info(f"TASK_CREATED: {task.id} kind={kind} owner={owner_id}")
        return task

    async def get_task(self, task_id: str) -> Optional[ParsingTask]:
        async with self._session() as session:
            return await session.get(ParsingTask, task_id, populate_existing=True)

    async def list_tasks(self, owner_id: str, limit: int = 50) -> List[ParsingTask]:
        """All tasks of one owner, newest first."""
        async with self._session() as session:
            stmt = (
                select(ParsingTask)
                .where(ParsingTask.owner_id == owner_id)
                .order_by(ParsingTask.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_active_tasks(self, owner_id: str) -> List[ParsingTask]:
        """PENDING and RUNNING tasks of one owner, newest first."""
        async with self._session() as session:
            stmt = (
                select(ParsingTask)
                .where(
                    ParsingTask.owner_id == owner_id,
                    ParsingTask.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
                .order_by(ParsingTask.created_at.desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def fetch_pending(self, limit: int, now: Optional[datetime] = None) -> List[ParsingTask]:
        """Oldest PENDING tasks of any owner whose backoff has elapsed."""
        if limit <= 0:
            return []
        now = now or utc_now_naive()
        async with self._session() as session:
            stmt = (
                select(ParsingTask)
                .where(
                    ParsingTask.status == TaskStatus.PENDING.value,
                    or_(ParsingTask.not_before.is_(None), ParsingTask.not_before <= now),
                )
                .order_by(ParsingTask.created_at.asc(), ParsingTask.id.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_stale_running(self, heartbeat_before: datetime) -> List[ParsingTask]:
        """RUNNING tasks whose heartbeat (updated_at) is older than the cutoff."""
        async with self._session() as session:
            stmt = (
                select(ParsingTask)
                .where(
                    ParsingTask.status == TaskStatus.RUNNING.value,
                    ParsingTask.updated_at < heartbeat_before,
                )
                .order_by(ParsingTask.updated_at.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        async with self._session() as session:
            stmt = select(ParsingTask.status, func.count()).group_by(ParsingTask.status)
            result = await session.execute(stmt)
            counts = {status.value: 0 for status in TaskStatus}
            for status, count in result.all():
                counts[status] = count
            return counts

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    async def _conditional_update(
        self,
        task_id: str,
        expected: Iterable[TaskStatus],
        values: Dict[str, Any],
    ) -> bool:
        """UPDATE the task only if its status is one of `expected`.

        Returns True when exactly one row changed.
        """
        values = {**values, "updated_at": utc_now_naive()}
        stmt = (
            update(ParsingTask)
            .where(
                ParsingTask.id == task_id,
                ParsingTask.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def claim(self, task_id: str, worker_id: str) -> Optional[ParsingTask]:
        """Atomically move a PENDING task to RUNNING.

        This compare-and-swap is the only legal way to begin executing a task.
        Returns the claimed task, or None when another actor got there first.
        """
        now = utc_now_naive()
        stmt = (
            update(ParsingTask)
            .where(
                ParsingTask.id == task_id,
                ParsingTask.status == TaskStatus.PENDING.value,
            )
            .values(
                status=TaskStatus.RUNNING.value,
                current_stage="initializing",
                worker_id=worker_id,
                started_at=now,
                updated_at=now,
                not_before=None,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                logger.info(f"CLAIM_SKIPPED: {task_id} is no longer pending")
                return None
            task = await session.get(ParsingTask, task_id, populate_existing=True)
        logger.info(f"TASK_CLAIMED: {task_id} by worker={worker_id}")
        return task

    async def update_progress(
        self,
        task_id: str,
        stage: str,
        current: int,
        total: int,
        message: str,
    ) -> bool:
        progress = TaskProgress(current=current, total=total, message=message)
        return await self._conditional_update(
            task_id,
            [TaskStatus.RUNNING],
            {"current_stage": stage, "progress": progress.model_dump()},
        )

    async def save_intermediate(self, task_id: str, updates: Dict[str, Any]) -> bool:
        """Merge stage outputs into intermediate_data of a RUNNING task."""
        async with self._session() as session:
            task = await session.get(ParsingTask, task_id, populate_existing=True)
            if task is None or task.status != TaskStatus.RUNNING.value:
                return False
            merged = {**(task.intermediate_data or {}), **updates}
            stmt = (
                update(ParsingTask)
                .where(
                    ParsingTask.id == task_id,
                    ParsingTask.status == TaskStatus.RUNNING.value,
                )
                .values(intermediate_data=merged, updated_at=utc_now_naive())
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def heartbeat(self, task_id: str) -> bool:
        return await self._conditional_update(task_id, [TaskStatus.RUNNING], {})

    async def mark_completed(self, task_id: str, final_result: Dict[str, Any], total: int) -> bool:
        """Set final_result and transition RUNNING -> COMPLETED in one write."""
        count = final_result.get("final_count", 0)
        progress = TaskProgress(current=total, total=total, message=f"Completed, {count} results found")
        now = utc_now_naive()
        changed = await self._conditional_update(
            task_id,
            [TaskStatus.RUNNING],
            {
                "status": TaskStatus.COMPLETED.value,
                "current_stage": "complete",
                "final_result": final_result,
                "progress": progress.model_dump(),
                "completed_at": now,
            },
        )
        if changed:
            logger.info(f"TASK_COMPLETED: {task_id} results={count}")
        return changed

    async def mark_cancelled(self, task_id: str) -> bool:
        """Cancel a PENDING or RUNNING task. No-op on terminal tasks."""
        changed = await self._conditional_update(
            task_id,
            ACTIVE_STATUSES,
            {
                "status": TaskStatus.CANCELLED.value,
                "current_stage": "cancelled",
                "completed_at": utc_now_naive(),
            },
        )
        if changed:
            logger.info(f"TASK_CANCELLED: {task_id}")
        return changed

    async def mark_failed(self, task_id: str, error_message: str, stage: Optional[str]) -> bool:
        """Transition RUNNING -> FAILED with a non-empty error message."""
        error_message = (error_message or "Unknown error")[:MAX_ERROR_MESSAGE_LENGTH]
        values: Dict[str, Any] = {
            "status": TaskStatus.FAILED.value,
            "error_message": error_message,
            "completed_at": utc_now_naive(),
        }
        if stage:
            values["failed_stage"] = stage
            values["current_stage"] = stage
        changed = await self._conditional_update(task_id, [TaskStatus.RUNNING], values)
        if changed:
            logger.warning(f"TASK_FAILED: {task_id} stage={stage} error={error_message}")
        return changed

    async def requeue(
        self,
        task_id: str,
        retry_count: int,
        not_before: datetime,
        error_message: str,
    ) -> bool:
        """Transition RUNNING -> PENDING for a transient retry."""
        changed = await self._conditional_update(
            task_id,
            [TaskStatus.RUNNING],
            {
                "status": TaskStatus.PENDING.value,
                "retry_count": retry_count,
                "not_before": not_before,
                "error_message": f"Attempt {retry_count}: {error_message}"[:MAX_ERROR_MESSAGE_LENGTH],
                "current_stage": "retry",
                "worker_id": None,
            },
        )
        if changed:
            logger.info(f"TASK_REQUEUED: {task_id} retry={retry_count} not_before={not_before.isoformat()}")
        return changed


def _default_task_name(kind: str, input_data: Dict[str, Any]) -> str:
    if kind == TaskKind.URL_PARSE.value:
        return f"Parse {input_data.get('url', '')}"
    return str(input_data.get("query", ""))[:120]
