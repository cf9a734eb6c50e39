"""
Search strategy selection and execution.

A search "unit" is one query variant sent to the search provider. Depending
on the provider capacity, units run either all at once (PARALLEL) or one at a
time (SEQUENTIAL). In both modes a failed or timed-out unit contributes an
empty batch and never fails the whole search.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from .contracts import CapacityDescriptor, Organization, QueryVariant, SearchBatch

logger = logging.getLogger(__name__)


class SearchStrategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass
class SearchUnit:
    """One query variant plus the call that fetches its results."""
    variant: QueryVariant
    fetch: Callable[[], Awaitable[List[Organization]]]


def choose_strategy(n_units: int, capacity: CapacityDescriptor) -> SearchStrategy:
    """PARALLEL when the provider can run every unit at once, else SEQUENTIAL."""
    if capacity.max_concurrent_units >= n_units:
        return SearchStrategy.PARALLEL
    return SearchStrategy.SEQUENTIAL


async def _run_unit(unit: SearchUnit, per_unit_timeout: float) -> SearchBatch:
    """Run one unit bounded by its own timeout; errors become an empty batch."""
    query = unit.variant.text
    try:
        items = await asyncio.wait_for(unit.fetch(), timeout=per_unit_timeout)
        logger.info(f"SEARCH_UNIT_DONE: '{query}' ({unit.variant.language}) -> {len(items or [])} items")
        return SearchBatch(variant=unit.variant, items=list(items or []))
    except asyncio.TimeoutError:
        logger.warning(f"SEARCH_TIMEOUT: '{query}' exceeded {per_unit_timeout}s")
        return SearchBatch(variant=unit.variant, error=f"timed out after {per_unit_timeout}s")
    except Exception as e:
        logger.error(f"SEARCH_UNIT_FAILED: '{query}': {e}")
        return SearchBatch(variant=unit.variant, error=str(e) or type(e).__name__)


async def run_parallel(
    units: Sequence[SearchUnit],
    group_timeout: float,
    per_unit_timeout: float,
) -> List[SearchBatch]:
    """Launch all units and settle them within `group_timeout`.

    Units still running when the group timeout fires are cancelled and
    reported as empty batches. Results keep input order.
    """
    if not units:
        return []

    tasks = [asyncio.create_task(_run_unit(unit, per_unit_timeout)) for unit in units]
    try:
        try:
            done, pending = await asyncio.wait(tasks, timeout=group_timeout)
        except Exception as e:
            # Timed wait broke down; settle everything unconditionally instead
            logger.error(f"SEARCH_GROUP_WAIT_FAILED: {e} - falling back to full settle")
            settled = await asyncio.gather(*tasks, return_exceptions=True)
            return [
                result if isinstance(result, SearchBatch)
                else SearchBatch(variant=unit.variant, error=str(result) or type(result).__name__)
                for unit, result in zip(units, settled)
            ]

        if pending:
            logger.warning(
                f"SEARCH_TIMEOUT: group timeout {group_timeout}s reached, "
                f"{len(done)} settled, {len(pending)} abandoned"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        batches: List[SearchBatch] = []
        for unit, task in zip(units, tasks):
            if task in done and not task.cancelled() and task.exception() is None:
                batches.append(task.result())
            else:
                batches.append(SearchBatch(variant=unit.variant, error=f"group timeout after {group_timeout}s"))
        return batches
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


async def run_sequential(
    units: Sequence[SearchUnit],
    per_unit_timeout: float,
    cancel_check: Optional[Callable[[], None]] = None,
) -> List[SearchBatch]:
    """Run units one at a time; a failing unit never stops the loop."""
    batches: List[SearchBatch] = []
    for index, unit in enumerate(units, start=1):
        if cancel_check is not None:
            cancel_check()
        logger.info(f"SEARCH_SEQUENTIAL: unit {index}/{len(units)} '{unit.variant.text}'")
        batches.append(await _run_unit(unit, per_unit_timeout))
    return batches


async def execute_search(
    units: Sequence[SearchUnit],
    capacity: CapacityDescriptor,
    group_timeout: float,
    cancel_check: Optional[Callable[[], None]] = None,
) -> List[SearchBatch]:
    """Pick a strategy for the capacity and run every unit.

    Returns one SearchBatch per unit, in input order. `cancel_check` is
    called before units are launched and raises to abort the search.
    """
    strategy = choose_strategy(len(units), capacity)
    logger.info(
        f"SEARCH_STRATEGY: {strategy.value} units={len(units)} "
        f"capacity={capacity.max_concurrent_units} ({capacity.source})"
    )
    if cancel_check is not None:
        cancel_check()

    if strategy == SearchStrategy.PARALLEL:
        return await run_parallel(units, group_timeout, capacity.per_unit_timeout)
    return await run_sequential(units, capacity.per_unit_timeout, cancel_check)
