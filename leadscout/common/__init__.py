"""
Common utilities and shared modules.
"""

from .errors import (
    FailureKind,
    PipelineError,
    TransientError,
    PermanentError,
    TaskCancelled,
    CancelReason,
    classify_exception,
)
from .http_client import create_api_client, USER_AGENT_BOT

__all__ = [
    "FailureKind",
    "PipelineError",
    "TransientError",
    "PermanentError",
    "TaskCancelled",
    "CancelReason",
    "classify_exception",
    "create_api_client",
    "USER_AGENT_BOT",
]
