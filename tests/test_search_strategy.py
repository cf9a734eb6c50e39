"""
Tests for search strategy selection and execution.

Covers the parallel group timeout, sequential fault isolation, per-unit
timeouts and the cancellation hook.
"""

import asyncio
import time
from unittest.mock import patch

import pytest

from leadscout.common.errors import CancelReason, TaskCancelled
from leadscout.harvester.contracts import CapacityDescriptor, QueryVariant
from leadscout.harvester.search_strategy import (
    SearchStrategy,
    SearchUnit,
    choose_strategy,
    execute_search,
    run_parallel,
    run_sequential,
)
from tests.helpers import make_org


def unit(text, delay=0.0, items=None, error=None):
    async def fetch():
        if delay:
            await asyncio.sleep(delay)
        if error is not None:
            raise error
        return items if items is not None else [make_org(f"{text}-1", text)]

    return SearchUnit(variant=QueryVariant(text), fetch=fetch)


class TestChooseStrategy:

    def test_parallel_when_capacity_covers_all_units(self):
        capacity = CapacityDescriptor(max_concurrent_units=3, per_unit_timeout=10)
        assert choose_strategy(3, capacity) == SearchStrategy.PARALLEL

    def test_sequential_when_capacity_too_small(self):
        capacity = CapacityDescriptor(max_concurrent_units=2, per_unit_timeout=10)
        assert choose_strategy(3, capacity) == SearchStrategy.SEQUENTIAL


class TestRunParallel:

    @pytest.mark.asyncio
    async def test_all_units_succeed_in_input_order(self):
        units = [unit("a", delay=0.05), unit("b"), unit("c", delay=0.02)]

        batches = await run_parallel(units, group_timeout=2.0, per_unit_timeout=1.0)

        assert [b.variant.text for b in batches] == ["a", "b", "c"]
        assert all(b.ok for b in batches)

    @pytest.mark.asyncio
    async def test_group_timeout_bounds_total_time(self):
        units = [unit("fast"), unit("slow", delay=5.0), unit("slower", delay=10.0)]

        started = time.monotonic()
        batches = await run_parallel(units, group_timeout=0.2, per_unit_timeout=30.0)
        elapsed = time.monotonic() - started

        assert elapsed < 2.0
        assert batches[0].ok
        assert len(batches[0].items) == 1
        assert not batches[1].ok
        assert "group timeout" in batches[1].error
        assert not batches[2].ok

    @pytest.mark.asyncio
    async def test_failed_unit_yields_empty_batch(self):
        units = [unit("good"), unit("bad", error=RuntimeError("actor crashed"))]

        batches = await run_parallel(units, group_timeout=2.0, per_unit_timeout=1.0)

        assert batches[0].ok
        assert batches[1].error == "actor crashed"
        assert batches[1].items == []

    @pytest.mark.asyncio
    async def test_per_unit_timeout(self):
        units = [unit("slow", delay=2.0)]

        batches = await run_parallel(units, group_timeout=5.0, per_unit_timeout=0.05)

        assert "timed out" in batches[0].error

    @pytest.mark.asyncio
    async def test_wait_failure_falls_back_to_full_settle(self):
        units = [unit("a"), unit("b", error=ValueError("bad payload"))]

        with patch("leadscout.harvester.search_strategy.asyncio.wait", side_effect=RuntimeError("loop broke")):
            batches = await run_parallel(units, group_timeout=1.0, per_unit_timeout=1.0)

        assert batches[0].ok
        assert batches[1].error == "bad payload"

    @pytest.mark.asyncio
    async def test_no_units(self):
        assert await run_parallel([], group_timeout=1.0, per_unit_timeout=1.0) == []


class TestRunSequential:

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_remaining_units(self):
        units = [unit("a"), unit("b", error=RuntimeError("boom")), unit("c")]

        batches = await run_sequential(units, per_unit_timeout=1.0)

        assert [b.ok for b in batches] == [True, False, True]

    @pytest.mark.asyncio
    async def test_cancel_check_stops_between_units(self):
        calls = []

        def cancel_check():
            calls.append(1)
            if len(calls) == 2:
                raise TaskCancelled(CancelReason.USER, stage="search")

        with pytest.raises(TaskCancelled):
            await run_sequential([unit("a"), unit("b"), unit("c")], 1.0, cancel_check)

        assert len(calls) == 2


class TestExecuteSearch:

    @pytest.mark.asyncio
    async def test_small_capacity_runs_sequentially(self):
        order = []

        def tracked(text):
            async def fetch():
                order.append(f"start-{text}")
                await asyncio.sleep(0.01)
                order.append(f"end-{text}")
                return []
            return SearchUnit(variant=QueryVariant(text), fetch=fetch)

        capacity = CapacityDescriptor(max_concurrent_units=1, per_unit_timeout=1.0)

        await execute_search([tracked("a"), tracked("b")], capacity, group_timeout=5.0)

        assert order == ["start-a", "end-a", "start-b", "end-b"]

    @pytest.mark.asyncio
    async def test_cancel_before_launch(self):
        fetched = []

        async def fetch():
            fetched.append(1)
            return []

        def cancel_check():
            raise TaskCancelled(CancelReason.USER, stage="search")

        capacity = CapacityDescriptor(max_concurrent_units=5, per_unit_timeout=1.0)

        with pytest.raises(TaskCancelled):
            await execute_search(
                [SearchUnit(QueryVariant("a"), fetch)], capacity, group_timeout=1.0, cancel_check=cancel_check
            )

        assert fetched == []
