"""
Database models using SQLModel (SQLAlchemy + Pydantic).

Schema:
- ParsingTask: one user-submitted data-collection task with its status,
  progress, intermediate stage data and final result

Non-table models describe the JSON payloads stored on a task:
- TaskProgress: fixed {current, total, message} progress structure
- AiSearchInput / UrlParseInput: kind-specific task input
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utc_now_naive() -> datetime:
    """Return current UTC time as timezone-naive datetime.

    PostgreSQL TIMESTAMP WITHOUT TIME ZONE columns require naive datetimes.
    Using timezone-aware datetimes causes asyncpg DataError.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_task_id() -> str:
    return uuid.uuid4().hex


class TaskStatus(str, Enum):
    """Task lifecycle states. COMPLETED, FAILED and CANCELLED are terminal."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING})


class TaskKind(str, Enum):
    """Selects which stage sequence the pipeline runs."""
    AI_SEARCH = "ai_search"
    URL_PARSE = "url_parse"


class TaskProgress(BaseModel):
    """Progress of the current run as written by the progress reporter."""
    current: int = 0
    total: int = 0
    message: str = ""

    @model_validator(mode="after")
    def check_bounds(self) -> "TaskProgress":
        if self.total < 0 or self.current < 0:
            raise ValueError("progress counters must be non-negative")
        if self.current > self.total:
            raise ValueError(f"progress current={self.current} exceeds total={self.total}")
        return self


class AiSearchInput(BaseModel):
    """Free-text search request plus locale hints."""
    query: str
    location: Optional[str] = None  # e.g. "Dubai", used for the location-match boost
    language: Optional[str] = None
    region: Optional[str] = None
    query_count: int = 3  # Query variants to request from the generator
    result_limit: Optional[int] = None  # Truncate scored results when set

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("search query is required for AI search tasks")
        return v

    @field_validator("query_count")
    @classmethod
    def query_count_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("query_count must be >= 1")
        return v


class UrlParseInput(BaseModel):
    """Single target website to enrich directly."""
    url: str

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("website URL is required for URL parsing tasks")
        return v


def parse_task_input(kind: str, data: Dict[str, Any]) -> BaseModel:
    """Validate a stored or submitted input payload for the given kind."""
    if kind == TaskKind.AI_SEARCH:
        return AiSearchInput.model_validate(data)
    if kind == TaskKind.URL_PARSE:
        return UrlParseInput.model_validate(data)
    raise ValueError(f"Unknown task kind: {kind!r}")


class ParsingTask(SQLModel, table=True):
    """A user-submitted data-collection task.

    Status transitions are performed only through TaskStore, which makes
    every status change conditional on the current status so terminal
    statuses are never overwritten.
    """
    __tablename__ = "parsing_tasks"

    id: str = Field(default_factory=new_task_id, primary_key=True, max_length=32)
    owner_id: str = Field(index=True)
    kind: str = Field(default=TaskKind.AI_SEARCH.value)
    task_name: str = ""

    input_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    # Status
    status: str = Field(default=TaskStatus.PENDING.value, index=True)
    current_stage: str = "initializing"
    progress: Dict[str, Any] = Field(
        default_factory=lambda: TaskProgress().model_dump(),
        sa_column=Column(JSON, nullable=False),
    )

    # Stage outputs owned by the executor while running
    intermediate_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    final_result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # Failure tracking
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    retry_count: int = Field(default=0)

    # Claim tracking
    worker_id: Optional[str] = None
    not_before: Optional[datetime] = None  # Earliest claim time after a backoff requeue

    # Timing (updated_at doubles as the run heartbeat)
    created_at: datetime = Field(default_factory=utc_now_naive, index=True)
    updated_at: datetime = Field(default_factory=utc_now_naive)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def status_enum(self) -> TaskStatus:
        return TaskStatus(self.status)

    @property
    def progress_model(self) -> TaskProgress:
        return TaskProgress.model_validate(self.progress or {})

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for API responses."""
        data = self.model_dump()
        for key in ("created_at", "updated_at", "started_at", "completed_at", "not_before"):
            value = data.get(key)
            if value is not None:
                data[key] = value.isoformat()
        return data
