"""
Progress reporting for running tasks.

ProgressReporter writes {stage, current, total, message} onto the task
record and publishes the same event on a ProgressBroadcaster, which backs
the per-task subscription channel exposed to the API layer.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Set

from .task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update as seen by subscribers."""
    task_id: str
    stage: str
    current: int
    total: int
    message: str
    final: bool = False  # True for the event that closes a subscription

    def to_dict(self) -> dict:
        return asdict(self)


class Subscription:
    """Async iterator over one task's events, registered from creation.

    Events published between subscribe() and the first iteration are
    queued, so a caller may read a snapshot after subscribing without
    missing the final event.
    """

    def __init__(self, broadcaster: "ProgressBroadcaster", task_id: str, queue: asyncio.Queue):
        self._broadcaster = broadcaster
        self.task_id = task_id
        self._queue = queue
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._closed:
            raise StopAsyncIteration
        try:
            event = await self._queue.get()
        except BaseException:
            self.close()
            raise
        if event.final:
            self.close()
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broadcaster._unsubscribe(self.task_id, self._queue)


class ProgressBroadcaster:
    """In-process fan-out of progress events to per-task subscribers."""

    def __init__(self, max_queue_size: int = 100):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._max_queue_size = max_queue_size

    def publish(self, event: ProgressEvent) -> None:
        for queue in list(self._subscribers.get(event.task_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow subscriber: drop its oldest event to keep the newest state
                queue.get_nowait()
                queue.put_nowait(event)

    def close(self, task_id: str, stage: str, message: str = "") -> None:
        """Send a final event so subscribers of a finished task stop iterating."""
        self.publish(ProgressEvent(task_id, stage, 0, 0, message, final=True))

    def subscriber_count(self, task_id: str) -> int:
        return len(self._subscribers.get(task_id, ()))

    def subscribe(self, task_id: str) -> Subscription:
        """Register a subscriber now; iterate it until the final event arrives."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[task_id].add(queue)
        return Subscription(self, task_id, queue)

    def _unsubscribe(self, task_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(task_id)
        if subscribers is not None:
            subscribers.discard(queue)
            if not subscribers:
                self._subscribers.pop(task_id, None)


class ProgressReporter:
    """Writes progress for one run; `current` never moves backwards."""

    def __init__(
        self,
        store: TaskStore,
        task_id: str,
        total: int,
        broadcaster: Optional[ProgressBroadcaster] = None,
    ):
        self.store = store
        self.task_id = task_id
        self.total = total
        self.broadcaster = broadcaster
        self._last_current = -1
        self.stage: Optional[str] = None

    async def report(self, stage: str, current: int, message: str) -> bool:
        """Persist and publish a progress update.

        Returns False when the store rejected the write because the task is no
        longer RUNNING (cancelled or recovered elsewhere).
        """
        if current < self._last_current:
            logger.warning(
                f"[{self.task_id}] Ignoring backward progress {current} < {self._last_current} ({stage})"
            )
            return True
        current = min(current, self.total)
        self._last_current = current
        self.stage = stage

        written = await self.store.update_progress(self.task_id, stage, current, self.total, message)
        if self.broadcaster is not None:
            self.broadcaster.publish(ProgressEvent(self.task_id, stage, current, self.total, message))
        logger.info(f"[{self.task_id}] PROGRESS {current}/{self.total} {stage}: {message}")
        return written
