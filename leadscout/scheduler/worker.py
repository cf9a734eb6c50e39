"""
BackgroundWorker - polls for PENDING tasks and runs them.

Lifecycle: STOPPED -> RUNNING -> STOPPING -> STOPPED

Every tick (poll_interval_seconds) the worker fills its free slots
(max_concurrent_tasks minus tracked runs) with the oldest eligible PENDING
tasks of any owner. A task only starts executing after the store's
compare-and-swap moved it from PENDING to RUNNING, so a task is never run
twice concurrently, whether picked up by the poll loop, by submit(), or by
another worker process sharing the database.

The executor returns a PipelineOutcome. The worker resolves failures:
- transient and retries left: requeue with exponential backoff
- permanent or retries exhausted: FAILED with error_message and failed_stage
COMPLETED and CANCELLED are written by the executor itself. Either way a
failed outcome ends the task's progress channel with a final event.
"""

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from ..archivist.models import ParsingTask, utc_now_naive
from ..archivist.progress import ProgressBroadcaster
from ..archivist.task_store import TaskStore
from ..common.errors import CancelReason, FailureKind
from ..config.settings import settings
from ..harvester.pipeline import OutcomeStatus, PipelineExecutor, PipelineOutcome, RunContext
from .heartbeat import task_heartbeat
from .stuck_monitor import recover_stale_tasks, retry_delay_seconds

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class TrackedRun:
    """A claimed task currently executing in this process."""
    task_id: str
    kind: str
    ctx: RunContext
    handle: asyncio.Task
    started_at: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def describe(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind,
            "stage": self.ctx.current_stage,
            "elapsed_seconds": round(self.elapsed(), 1),
            "timeout_budget_seconds": self.ctx.timeout_budget,
        }


def default_worker_id() -> str:
    return settings.worker_id or f"{socket.gethostname()}:{os.getpid()}"


class BackgroundWorker:
    """Bounded-concurrency task scheduler for one process."""

    def __init__(
        self,
        store: TaskStore,
        executor: PipelineExecutor,
        worker_id: Optional[str] = None,
        poll_interval_seconds: Optional[float] = None,
        max_concurrent_tasks: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
        recover_on_start: bool = True,
        broadcaster: Optional[ProgressBroadcaster] = None,
    ):
        self.store = store
        self.executor = executor
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval_seconds = poll_interval_seconds or settings.poll_interval_seconds
        self.max_concurrent_tasks = max_concurrent_tasks or settings.max_concurrent_tasks
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.retry_base_seconds = settings.retry_base_seconds if retry_base_seconds is None else retry_base_seconds
        self.retry_max_seconds = settings.retry_max_seconds if retry_max_seconds is None else retry_max_seconds
        self.recover_on_start = recover_on_start
        self.broadcaster = broadcaster

        self._state = WorkerState.STOPPED
        self._runs: Dict[str, TrackedRun] = {}
        self._abandoned: Dict[str, Dict[str, Any]] = {}
        self._claim_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == WorkerState.RUNNING

    @property
    def tracked_task_ids(self) -> List[str]:
        return list(self._runs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the polling loop. Idempotent while running."""
        if self._state == WorkerState.RUNNING:
            logger.warning(f"Worker {self.worker_id} already running")
            return
        if self._state == WorkerState.STOPPING:
            logger.warning(f"Worker {self.worker_id} is stopping; start ignored")
            return

        self._state = WorkerState.RUNNING
        self._stop_event = asyncio.Event()

        if self.recover_on_start:
            try:
                await recover_stale_tasks(self.store, exclude_ids=set(self._runs))
            except Exception as e:
                logger.error(f"Stale task recovery on start failed: {e}", exc_info=True)

        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"worker_poll_{self.worker_id}")
        logger.info(
            f"WORKER_STARTED: {self.worker_id} (poll={self.poll_interval_seconds}s, "
            f"max_concurrent={self.max_concurrent_tasks}, max_retries={self.max_retries})"
        )

    async def _poll_loop(self):
        try:
            while not self._stop_event.is_set():
                try:
                    await self.poll_once()
                except Exception as e:
                    # Store outage: log and try again next tick
                    logger.error(f"WORKER_POLL_ERROR: {e}", exc_info=True)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info(f"Worker {self.worker_id} polling loop exited")

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop polling, signal shutdown to every tracked run and wait for them.

        Runs still in flight after `grace_seconds` are recorded as abandoned
        and reported by health_check() until they finish. They are not killed;
        their store writes stay conditional on RUNNING.
        """
        if self._state == WorkerState.STOPPED:
            return
        grace = settings.graceful_shutdown_seconds if grace_seconds is None else grace_seconds
        self._state = WorkerState.STOPPING
        logger.info(f"WORKER_STOPPING: {self.worker_id} ({len(self._runs)} runs, grace={grace}s)")

        try:
            if self._stop_event is not None:
                self._stop_event.set()
            if self._poll_task is not None:
                try:
                    await self._poll_task
                except asyncio.CancelledError:
                    pass

            runs = list(self._runs.values())
            for run in runs:
                run.ctx.cancel(CancelReason.SHUTDOWN)

            if runs:
                await asyncio.wait([run.handle for run in runs], timeout=grace)
                for run in runs:
                    if not run.handle.done():
                        info = run.describe()
                        info["abandoned_at"] = utc_now_naive().isoformat()
                        self._abandoned[run.task_id] = info
                        logger.warning(
                            f"ABANDONED_TASK: {run.task_id} still running after {grace}s grace "
                            f"(stage={run.ctx.current_stage})"
                        )
        finally:
            self._poll_task = None
            self._state = WorkerState.STOPPED
            logger.info(f"WORKER_STOPPED: {self.worker_id}")

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    async def poll_once(self) -> int:
        """One scheduling tick. Returns the number of tasks started."""
        async with self._claim_lock:
            free_slots = self.max_concurrent_tasks - len(self._runs)
            if free_slots <= 0 or self._state != WorkerState.RUNNING:
                return 0

            candidates = await self.store.fetch_pending(free_slots)
            started = 0
            for candidate in candidates:
                claimed = await self.store.claim(candidate.id, self.worker_id)
                if claimed is None:
                    # Another worker or a cancel got there first
                    continue
                self._launch(claimed)
                started += 1

            if started:
                logger.info(f"Worker {self.worker_id} started {started} task(s), running={len(self._runs)}")
            return started

    async def submit(self, task_id: str) -> bool:
        """
        Start a specific PENDING task now, through the same claim.

        Returns False when the worker is not running, is at capacity, or the
        claim was lost; the task then stays with whoever holds it (or stays
        PENDING for the next tick).
        """
        async with self._claim_lock:
            if self._state != WorkerState.RUNNING:
                logger.info(f"SUBMIT_SKIPPED: {task_id} worker not running")
                return False
            if task_id in self._runs:
                return False
            if len(self._runs) >= self.max_concurrent_tasks:
                logger.info(f"SUBMIT_DEFERRED: {task_id} worker at capacity ({len(self._runs)})")
                return False

            claimed = await self.store.claim(task_id, self.worker_id)
            if claimed is None:
                return False
            self._launch(claimed)
            return True

    def _launch(self, task: ParsingTask) -> None:
        ctx = RunContext(
            task_id=task.id,
            kind=task.kind,
            timeout_budget=settings.timeout_budget_for(task.kind),
        )
        handle = asyncio.create_task(self._run(task, ctx), name=f"task_{task.id}")
        self._runs[task.id] = TrackedRun(task_id=task.id, kind=task.kind, ctx=ctx, handle=handle)

    # ------------------------------------------------------------------
    # Execution and resolution
    # ------------------------------------------------------------------

    async def _run(self, task: ParsingTask, ctx: RunContext) -> None:
        try:
            async with task_heartbeat(self.store, task.id):
                try:
                    outcome = await self.executor.run(task, ctx)
                except Exception as e:
                    logger.error(f"[{task.id}] Uncaught executor error: {e}", exc_info=True)
                    outcome = PipelineOutcome.failed(
                        str(e) or type(e).__name__, ctx.current_stage, FailureKind.TRANSIENT
                    )
            await self._resolve(task, outcome)
        except Exception as e:
            logger.error(f"[{task.id}] WORKER_RESOLVE_ERROR: {e}", exc_info=True)
        finally:
            self._runs.pop(task.id, None)
            self._abandoned.pop(task.id, None)

    async def _resolve(self, task: ParsingTask, outcome: PipelineOutcome) -> None:
        """Apply the retry policy to a failed outcome."""
        if outcome.status != OutcomeStatus.FAILED:
            return

        error = outcome.error or "Unknown error"
        stage = outcome.failed_stage or "unknown"

        message = error
        try:
            if outcome.failure_kind != FailureKind.PERMANENT and task.retry_count < self.max_retries:
                delay = retry_delay_seconds(task.retry_count, self.retry_base_seconds, self.retry_max_seconds)
                await self.store.requeue(
                    task.id,
                    retry_count=task.retry_count + 1,
                    not_before=utc_now_naive() + timedelta(seconds=delay),
                    error_message=error,
                )
                message = f"Retry {task.retry_count + 1} scheduled in {delay:.0f}s: {error}"
                return

            if outcome.failure_kind != FailureKind.PERMANENT:
                message = f"Failed after {task.retry_count} retries. Last error: {error}"
            await self.store.mark_failed(task.id, message, stage)
        finally:
            if self.broadcaster is not None:
                self.broadcaster.close(task.id, stage, message)

    # ------------------------------------------------------------------
    # Control and introspection
    # ------------------------------------------------------------------

    def cancel_task(self, task_id: str) -> bool:
        """Signal user cancellation to a tracked run. False if not tracked here."""
        run = self._runs.get(task_id)
        if run is None:
            return False
        run.ctx.cancel(CancelReason.USER)
        logger.info(f"CANCEL_SIGNALLED: {task_id} (stage={run.ctx.current_stage})")
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "state": self._state.value,
            "is_running": self.is_running,
            "running": len(self._runs),
            "tracked_task_ids": self.tracked_task_ids,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "poll_interval_seconds": self.poll_interval_seconds,
        }

    def health_check(self) -> Dict[str, Any]:
        """
        Report runs exceeding their stuck threshold and runs abandoned at shutdown.

        Reports only; nothing is cancelled. Abandoned runs stay listed until
        their run finishes.
        """
        stuck = []
        for run in list(self._runs.values()):
            threshold = run.ctx.timeout_budget * settings.stuck_factor
            if run.elapsed() > threshold:
                info = run.describe()
                info["threshold_seconds"] = threshold
                stuck.append(info)
                logger.warning(
                    f"STUCK_TASK: {run.task_id} running {run.elapsed():.0f}s "
                    f"(threshold {threshold:.0f}s, stage={run.ctx.current_stage})"
                )

        abandoned = list(self._abandoned.values())

        return {
            "status": "degraded" if stuck or abandoned else "healthy",
            "worker_id": self.worker_id,
            "state": self._state.value,
            "running": len(self._runs),
            "stuck_tasks": stuck,
            "abandoned_tasks": abandoned,
            "checked_at": utc_now_naive().isoformat(),
        }
