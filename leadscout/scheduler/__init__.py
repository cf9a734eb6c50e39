"""Background worker, heartbeat, stale-task recovery and periodic jobs."""

from .worker import BackgroundWorker, WorkerState
from .stuck_monitor import StaleTaskPolicy, recover_stale_tasks
from .jobs import setup_scheduler, shutdown_scheduler

__all__ = [
    "BackgroundWorker",
    "WorkerState",
    "StaleTaskPolicy",
    "recover_stale_tasks",
    "setup_scheduler",
    "shutdown_scheduler",
]
