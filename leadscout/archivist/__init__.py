"""Database models, task store and progress reporting."""

from .models import (
    ParsingTask,
    TaskStatus,
    TaskKind,
    TaskProgress,
    AiSearchInput,
    UrlParseInput,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
)
from .database import get_session, init_db, close_db, get_engine, get_session_factory
from .task_store import TaskStore, STAGE_TOTALS
from .progress import ProgressBroadcaster, ProgressEvent, ProgressReporter

__all__ = [
    "ParsingTask",
    "TaskStatus",
    "TaskKind",
    "TaskProgress",
    "AiSearchInput",
    "UrlParseInput",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "get_session",
    "init_db",
    "close_db",
    "get_engine",
    "get_session_factory",
    "TaskStore",
    "STAGE_TOTALS",
    "ProgressBroadcaster",
    "ProgressEvent",
    "ProgressReporter",
]
