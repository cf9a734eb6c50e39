"""
Shared test helpers: task setup shortcuts and in-memory collaborator fakes.

Fixtures live in conftest.py; these are plain functions and classes imported
by the test modules.
"""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Union

from sqlalchemy import update

from leadscout.archivist.database import get_session
from leadscout.archivist.models import ParsingTask, utc_now_naive
from leadscout.archivist.task_store import TaskStore
from leadscout.harvester.contracts import (
    CapacityDescriptor,
    ContactDetails,
    Organization,
    QueryVariant,
)


# =============================================================================
# Task helpers
# =============================================================================
async def create_claimed(
    store: TaskStore,
    kind: str = "ai_search",
    input_data: Optional[dict] = None,
    owner_id: str = "user-1",
) -> ParsingTask:
    """Create a task and move it to RUNNING through the normal claim."""
    if input_data is None:
        input_data = {"query": "gymnastics clubs UAE", "location": "Dubai"}
    task = await store.create_task(owner_id, kind, input_data)
    claimed = await store.claim(task.id, "test-worker")
    assert claimed is not None
    return claimed


async def backdate(store: TaskStore, task_id: str, seconds: float, **extra) -> None:
    """Move a task's heartbeat (updated_at) into the past."""
    async with get_session(store._session_factory) as session:
        await session.execute(
            update(ParsingTask)
            .where(ParsingTask.id == task_id)
            .values(updated_at=utc_now_naive() - timedelta(seconds=seconds), **extra)
        )


def make_org(
    external_id: Optional[str],
    name: str = "",
    **fields,
) -> Organization:
    return Organization(external_id=external_id, name=name, **fields)


# =============================================================================
# Collaborator fakes
# =============================================================================
class FakeQueryGenerator:
    """Returns queued responses in order; the last one repeats."""

    def __init__(self, *responses: Union[List[QueryVariant], Exception]):
        self.responses = list(responses) or [[]]
        self.calls: List[tuple] = []

    async def generate_queries(self, user_input: str, count: int) -> List[QueryVariant]:
        self.calls.append((user_input, count))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return list(response)


class FakeSearchProvider:
    """Per-query results, errors and delays keyed by query text."""

    def __init__(
        self,
        results: Optional[Dict[str, Union[List[Organization], Exception]]] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.results = results or {}
        self.delays = delays or {}
        self.calls: List[tuple] = []

    async def search_batch(self, variant: QueryVariant, max_items: int) -> List[Organization]:
        self.calls.append((variant.text, max_items))
        delay = self.delays.get(variant.text, 0)
        if delay:
            await asyncio.sleep(delay)
        result = self.results.get(variant.text, [])
        if isinstance(result, Exception):
            raise result
        # Fresh copies so runs never share mutable items
        return [Organization(**org.to_dict()) for org in result]


class FakeContactEnricher:
    """Contact details keyed by website; `on_call` runs before each lookup."""

    def __init__(
        self,
        details: Optional[Dict[str, Union[ContactDetails, Exception]]] = None,
        on_call=None,
    ):
        self.details = details or {}
        self.on_call = on_call
        self.calls: List[str] = []

    async def enrich_contact(self, target) -> ContactDetails:
        url = target.website if isinstance(target, Organization) else target
        self.calls.append(url)
        if self.on_call is not None:
            await self.on_call(url)
        result = self.details.get(url, ContactDetails())
        if isinstance(result, Exception):
            raise result
        return result


class FakeCapacityDetector:
    def __init__(self, capacity: Optional[CapacityDescriptor] = None, error: Optional[Exception] = None):
        self.capacity = capacity or CapacityDescriptor(max_concurrent_units=10, per_unit_timeout=2.0, source="detected")
        self.error = error

    async def detect_capacity(self) -> CapacityDescriptor:
        if self.error is not None:
            raise self.error
        return self.capacity
