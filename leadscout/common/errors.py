"""
Failure taxonomy and deterministic exception classification.

Transient failures (timeouts, network errors, rate limits, 5xx) are retried
at task level by the background worker. Permanent failures (malformed input,
auth, validation) fail the task immediately. Partial failures of one search
unit or one enrichment call are absorbed where they happen and never reach
this classifier.
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx
from pydantic import ValidationError


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class PipelineError(Exception):
    """Base error raised by pipeline stages and collaborator adapters."""

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage


class TransientError(PipelineError):
    """Retryable failure (collaborator timeout, 5xx, empty generator output)."""
    kind = FailureKind.TRANSIENT


class PermanentError(PipelineError):
    """Terminal failure (malformed input, unauthorized request)."""
    kind = FailureKind.PERMANENT


class CancelReason(str, Enum):
    USER = "user"
    SHUTDOWN = "shutdown"


class TaskCancelled(Exception):
    """Raised inside a run when its cancellation signal is observed."""

    def __init__(self, reason: CancelReason, stage: Optional[str] = None):
        super().__init__(f"Task cancelled ({reason.value})")
        self.reason = reason
        self.stage = stage


_PERMANENT_MESSAGE_PATTERNS: tuple = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
    "permission denied",
    "invalid url",
)
_TRANSIENT_MESSAGE_PATTERNS: tuple = (
    "timeout",
    "timed out",
    "too many requests",
    "rate limit",
    "temporarily unavailable",
    "connection reset",
    "try again later",
)


def classify_status_code(status_code: int) -> FailureKind:
    """429 and 5xx are retryable; any other error status is not."""
    if status_code == 429 or status_code >= 500:
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


def classify_exception(exc: BaseException) -> FailureKind:
    """Classify an exception escaping a stage into a retry class.

    Order matters: explicit pipeline errors first, then transport-level
    errors, then validation, then message patterns. Anything unrecognized is
    treated as transient so it gets a bounded number of retries.
    """
    if isinstance(exc, PipelineError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return FailureKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status_code(exc.response.status_code)
    if isinstance(exc, (ValidationError, ValueError, TypeError, KeyError)):
        return FailureKind.PERMANENT

    message = str(exc).lower()
    if _first_match(message, _TRANSIENT_MESSAGE_PATTERNS):
        return FailureKind.TRANSIENT
    if _first_match(message, _PERMANENT_MESSAGE_PATTERNS):
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


def error_from_response(response: httpx.Response, context: str) -> PipelineError:
    """Build a classified error for a non-success collaborator response."""
    kind = classify_status_code(response.status_code)
    message = f"{context} failed with HTTP {response.status_code}"
    if kind == FailureKind.TRANSIENT:
        return TransientError(message)
    return PermanentError(message)


def _first_match(haystack: str, patterns: tuple) -> Optional[str]:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
