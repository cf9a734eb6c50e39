"""
Pipeline executor - runs one claimed task through its stage sequence.

AI_SEARCH (7 stages):
    query_generation -> search -> aggregation -> enrichment -> filtering
    -> scoring -> finalize
URL_PARSE (3 stages):
    initializing (URL validation) -> enrichment -> finalize

The executor owns the task record while it is RUNNING. It writes progress,
intermediate stage outputs and the COMPLETED / CANCELLED transitions itself.
Failures are returned to the worker as a PipelineOutcome; the worker decides
between requeue and FAILED.

Every write is conditional on the task still being RUNNING. When a write is
rejected the run has been superseded (cancelled through the API or recovered
by the stale-task monitor) and the executor stops without further writes.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ..archivist.models import (
    AiSearchInput,
    ParsingTask,
    TaskKind,
    UrlParseInput,
    utc_now_naive,
)
from ..archivist.progress import ProgressBroadcaster, ProgressReporter
from ..archivist.task_store import STAGE_TOTALS, TaskStore
from ..common.errors import (
    CancelReason,
    FailureKind,
    PermanentError,
    TaskCancelled,
    TransientError,
    classify_exception,
)
from ..common.url_utils import is_scrapable_website, sanitize_url
from ..config.settings import Settings, settings
from .aggregation import aggregate_batches, dedupe_queries
from .contact_filter import filter_with_contacts, pick_primary_email
from .contracts import (
    CapacityDescriptor,
    CapacityDetector,
    ContactDetails,
    ContactEnricher,
    Organization,
    QueryGenerator,
    QueryVariant,
    SearchProvider,
)
from .relevance import rank_by_relevance
from .search_strategy import SearchUnit, choose_strategy, execute_search

logger = logging.getLogger(__name__)

QUERY_GENERATION_ATTEMPTS = 2  # First try plus one retry


@dataclass
class RunContext:
    """Executor-local state of one run. Never persisted."""
    task_id: str
    kind: str = TaskKind.AI_SEARCH.value
    timeout_budget: float = 1800.0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: Optional[CancelReason] = None
    stage_timings: Dict[str, float] = field(default_factory=dict)
    capacity: Optional[CapacityDescriptor] = None
    started_at: float = field(default_factory=time.monotonic)
    current_stage: str = "initializing"
    _stage_started: float = field(default_factory=time.monotonic, repr=False)

    def cancel(self, reason: CancelReason) -> None:
        """Signal cancellation. The first reason wins."""
        if self.cancel_reason is None:
            self.cancel_reason = reason
        self.cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self, stage: Optional[str] = None) -> None:
        if self.cancel_event.is_set():
            raise TaskCancelled(self.cancel_reason or CancelReason.USER, stage or self.current_stage)

    def begin_stage(self, stage: str) -> None:
        self.close_stage()
        self.current_stage = stage
        self._stage_started = time.monotonic()

    def close_stage(self) -> None:
        elapsed = time.monotonic() - self._stage_started
        self.stage_timings[self.current_stage] = round(
            self.stage_timings.get(self.current_stage, 0.0) + elapsed, 3
        )
        self._stage_started = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SUPERSEDED = "superseded"  # Task left RUNNING under us; nothing more to write


@dataclass
class PipelineOutcome:
    status: OutcomeStatus
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    final_result: Optional[Dict[str, Any]] = None

    @classmethod
    def failed(cls, error: str, stage: Optional[str], kind: FailureKind) -> "PipelineOutcome":
        return cls(OutcomeStatus.FAILED, error=error, failed_stage=stage, failure_kind=kind)


class RunSuperseded(Exception):
    """A conditional write was rejected because the task is no longer RUNNING."""

    def __init__(self, stage: str):
        super().__init__(f"task left RUNNING before stage '{stage}' could be recorded")
        self.stage = stage


class PipelineExecutor:
    """Executes the stage sequence of a claimed task."""

    def __init__(
        self,
        store: TaskStore,
        query_generator: QueryGenerator,
        search_provider: SearchProvider,
        contact_enricher: ContactEnricher,
        capacity_detector: Optional[CapacityDetector] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.query_generator = query_generator
        self.search_provider = search_provider
        self.contact_enricher = contact_enricher
        self.capacity_detector = capacity_detector
        self.broadcaster = broadcaster
        self.config = config or settings

    def default_capacity(self) -> CapacityDescriptor:
        return CapacityDescriptor(
            max_concurrent_units=self.config.default_max_concurrent_units,
            per_unit_timeout=self.config.default_per_unit_timeout,
            source="default",
        )

    async def run(self, task: ParsingTask, ctx: RunContext) -> PipelineOutcome:
        """Run the task to an outcome. Never raises for pipeline failures."""
        total = STAGE_TOTALS.get(task.kind, 0)
        reporter = ProgressReporter(self.store, task.id, total, self.broadcaster)
        logger.info(f"[{task.id}] PIPELINE_START kind={task.kind} attempt={task.retry_count + 1}")

        try:
            if task.kind == TaskKind.AI_SEARCH.value:
                final_result = await self._run_ai_search(task, ctx, reporter)
            elif task.kind == TaskKind.URL_PARSE.value:
                final_result = await self._run_url_parse(task, ctx, reporter)
            else:
                raise PermanentError(f"Unknown task kind: {task.kind}", stage="initializing")

            ctx.close_stage()
            self._close_channel(task.id, "complete", "Task completed")
            logger.info(f"[{task.id}] PIPELINE_DONE in {ctx.elapsed():.1f}s timings={ctx.stage_timings}")
            return PipelineOutcome(OutcomeStatus.COMPLETED, final_result=final_result)

        except TaskCancelled as e:
            stage = e.stage or ctx.current_stage
            if e.reason == CancelReason.SHUTDOWN:
                logger.warning(f"[{task.id}] PIPELINE_INTERRUPTED by shutdown at stage={stage}")
                return PipelineOutcome.failed("Interrupted by shutdown", stage, FailureKind.TRANSIENT)
            await self.store.mark_cancelled(task.id)
            self._close_channel(task.id, "cancelled", "Task cancelled")
            logger.info(f"[{task.id}] PIPELINE_CANCELLED at stage={stage}")
            return PipelineOutcome(OutcomeStatus.CANCELLED, failed_stage=stage)

        except RunSuperseded as e:
            logger.warning(f"[{task.id}] PIPELINE_SUPERSEDED at stage={e.stage}")
            self._close_channel(task.id, e.stage, "Task is no longer running")
            return PipelineOutcome(OutcomeStatus.SUPERSEDED, failed_stage=e.stage)

        except Exception as e:
            kind = classify_exception(e)
            stage = getattr(e, "stage", None) or ctx.current_stage
            message = str(e) or type(e).__name__
            logger.error(f"[{task.id}] PIPELINE_ERROR stage={stage} kind={kind.value}: {message}")
            return PipelineOutcome.failed(message, stage, kind)

    # ------------------------------------------------------------------
    # Stage sequences
    # ------------------------------------------------------------------

    async def _run_ai_search(
        self,
        task: ParsingTask,
        ctx: RunContext,
        reporter: ProgressReporter,
    ) -> Dict[str, Any]:
        request = AiSearchInput.model_validate(task.input_data)
        await self._report(reporter, "initializing", 0, "Starting AI search")

        # 1. Query generation
        await self._enter_stage(ctx, reporter, "query_generation", 1, "Generating search queries")
        variants = await self._generate_queries(task.id, request, ctx)
        await self._save(task.id, "query_generation", {
            "generated_queries": [v.to_dict() for v in variants],
        })

        # 2. Search
        await self._enter_stage(ctx, reporter, "search", 2, f"Searching with {len(variants)} queries")
        capacity = await self._detect_capacity(task.id)
        ctx.capacity = capacity
        max_items = max(math.ceil(self.config.search_buffer / len(variants)), request.result_limit or 0)
        units = [
            SearchUnit(variant=v, fetch=partial(self.search_provider.search_batch, v, max_items))
            for v in variants
        ]
        batches = await execute_search(
            units,
            capacity,
            self.config.search_group_timeout,
            cancel_check=partial(ctx.check_cancelled, "search"),
        )
        raw_count = sum(len(b.items) for b in batches)
        failed_units = [b.variant.text for b in batches if not b.ok]
        if failed_units:
            # Failed units count as empty batches; the run continues with what settled
            logger.warning(
                f"[{task.id}] SEARCH_PARTIAL: {len(failed_units)}/{len(batches)} queries failed, "
                f"{raw_count} items collected"
            )
        await self._save(task.id, "search", {
            "search_strategy": choose_strategy(len(units), capacity).value,
            "max_items_per_query": max_items,
            "raw_item_count": raw_count,
            "failed_queries": failed_units,
        })

        # 3. Aggregation
        await self._enter_stage(ctx, reporter, "aggregation", 3, f"Merging {raw_count} raw results")
        aggregated = aggregate_batches(batches)
        await self._save(task.id, "aggregation", {"aggregated_count": len(aggregated)})

        # 4. Enrichment
        await self._enter_stage(ctx, reporter, "enrichment", 4, f"Enriching {len(aggregated)} organizations")
        enriched = await self._enrich_all(task.id, aggregated, ctx)
        ctx.check_cancelled("enrichment")
        enriched_count = sum(1 for item in enriched if item.enrichment_error is None)
        await self._save(task.id, "enrichment", {"enriched_count": enriched_count})

        # 5. Contact filtering
        await self._enter_stage(ctx, reporter, "filtering", 5, "Filtering organizations with contacts")
        with_contacts = filter_with_contacts(enriched)
        await self._save(task.id, "filtering", {"with_contacts_count": len(with_contacts)})

        # 6. Relevance scoring
        await self._enter_stage(ctx, reporter, "scoring", 6, "Scoring relevance")
        ranked = rank_by_relevance(with_contacts, request.query, request.location, request.result_limit)

        # 7. Finalize
        await self._enter_stage(ctx, reporter, "finalize", 7, "Saving results")
        final_result = self._build_final_result(
            task,
            ctx,
            original_query=request.query,
            website_url=None,
            variants=variants,
            total_found=len(aggregated),
            enriched_count=enriched_count,
            results=ranked,
            summary={
                "raw_item_count": raw_count,
                "unique_count": len(aggregated),
                "with_contacts_count": len(with_contacts),
                "failed_queries": len(failed_units),
                "search_strategy": choose_strategy(len(units), capacity).value,
                "capacity_source": capacity.source,
            },
        )
        await self._finalize(task, ctx, final_result)
        return final_result

    async def _run_url_parse(
        self,
        task: ParsingTask,
        ctx: RunContext,
        reporter: ProgressReporter,
    ) -> Dict[str, Any]:
        request = UrlParseInput.model_validate(task.input_data)
        await self._report(reporter, "initializing", 0, "Starting URL parsing")

        # 1. Validate
        await self._enter_stage(ctx, reporter, "initializing", 1, "Validating URL")
        url = sanitize_url(request.url)
        if url is None:
            raise PermanentError(f"Invalid URL: {request.url}", stage="initializing")

        # 2. Enrichment
        await self._enter_stage(ctx, reporter, "enrichment", 2, f"Extracting contacts from {url}")
        details = await asyncio.wait_for(
            self.contact_enricher.enrich_contact(url),
            timeout=self.config.apify_contact_timeout,
        )
        ctx.check_cancelled("enrichment")
        organization = apply_contact_details(
            Organization(name=urlparse(url).netloc, website=url),
            details,
        )
        await self._save(task.id, "enrichment", {
            "emails_found": len(organization.all_emails),
            "phones_found": len(details.phones),
        })

        # 3. Finalize
        await self._enter_stage(ctx, reporter, "finalize", 3, "Saving results")
        final_result = self._build_final_result(
            task,
            ctx,
            original_query=None,
            website_url=url,
            variants=[],
            total_found=1,
            enriched_count=0 if details.is_empty else 1,
            results=[organization],
            summary={
                "has_email": organization.email is not None,
                "has_phone": bool(organization.phone),
            },
        )
        await self._finalize(task, ctx, final_result)
        return final_result

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    async def _report(self, reporter: ProgressReporter, stage: str, current: int, message: str) -> None:
        if not await reporter.report(stage, current, message):
            raise RunSuperseded(stage)

    async def _enter_stage(
        self,
        ctx: RunContext,
        reporter: ProgressReporter,
        stage: str,
        current: int,
        message: str,
    ) -> None:
        """Stage boundary: check cancellation, start timing, report progress."""
        ctx.check_cancelled(stage)
        ctx.begin_stage(stage)
        await self._report(reporter, stage, current, message)

    async def _save(self, task_id: str, stage: str, updates: Dict[str, Any]) -> None:
        if not await self.store.save_intermediate(task_id, updates):
            raise RunSuperseded(stage)

    async def _finalize(self, task: ParsingTask, ctx: RunContext, final_result: Dict[str, Any]) -> None:
        ctx.check_cancelled("finalize")
        if not await self.store.mark_completed(task.id, final_result, STAGE_TOTALS[task.kind]):
            raise RunSuperseded("finalize")

    def _close_channel(self, task_id: str, stage: str, message: str) -> None:
        if self.broadcaster is not None:
            self.broadcaster.close(task_id, stage, message)

    async def _generate_queries(
        self,
        task_id: str,
        request: AiSearchInput,
        ctx: RunContext,
    ) -> List[QueryVariant]:
        """Generate, dedupe and cap query variants; one retry on error or empty output."""
        last_error = "no queries returned"
        for attempt in range(1, QUERY_GENERATION_ATTEMPTS + 1):
            ctx.check_cancelled("query_generation")
            try:
                generated = await self.query_generator.generate_queries(request.query, request.query_count)
            except PermanentError as e:
                e.stage = e.stage or "query_generation"
                raise
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"[{task_id}] QUERY_GENERATION_FAILED attempt {attempt}: {last_error}")
                continue

            variants = dedupe_queries(generated or [], request.query_count)
            if variants:
                if len(generated) != len(variants):
                    logger.info(
                        f"[{task_id}] QUERY_DEDUP: {len(generated)} generated -> {len(variants)} used"
                    )
                return variants
            last_error = "no queries returned"
            logger.warning(f"[{task_id}] QUERY_GENERATION_EMPTY attempt {attempt}")

        raise TransientError(
            f"Query generation failed after {QUERY_GENERATION_ATTEMPTS} attempts: {last_error}",
            stage="query_generation",
        )

    async def _detect_capacity(self, task_id: str) -> CapacityDescriptor:
        if self.capacity_detector is None:
            return self.default_capacity()
        try:
            return await self.capacity_detector.detect_capacity()
        except Exception as e:
            capacity = self.default_capacity()
            logger.warning(
                f"[{task_id}] CAPACITY_FALLBACK: detection failed ({e}), "
                f"using max_concurrent_units={capacity.max_concurrent_units}"
            )
            return capacity

    async def _enrich_all(
        self,
        task_id: str,
        items: List[Organization],
        ctx: RunContext,
    ) -> List[Organization]:
        """Enrich every item with bounded concurrency; per-item failures are kept."""
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_enrichments))

        async def enrich_one(item: Organization) -> Organization:
            async with semaphore:
                if ctx.is_cancelled:
                    return item
                return await self._enrich_item(task_id, item)

        return list(await asyncio.gather(*[enrich_one(item) for item in items]))

    async def _enrich_item(self, task_id: str, item: Organization) -> Organization:
        if not is_scrapable_website(item.website):
            item.enrichment_error = "no scrapable website"
            return apply_contact_details(item, ContactDetails())
        try:
            details = await asyncio.wait_for(
                self.contact_enricher.enrich_contact(item),
                timeout=self.config.apify_contact_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{task_id}] ENRICHMENT_TIMEOUT: {item.website}")
            item.enrichment_error = f"timed out after {self.config.apify_contact_timeout}s"
            return apply_contact_details(item, ContactDetails())
        except Exception as e:
            logger.warning(f"[{task_id}] ENRICHMENT_FAILED: {item.website}: {e}")
            item.enrichment_error = str(e) or type(e).__name__
            return apply_contact_details(item, ContactDetails())
        return apply_contact_details(item, details or ContactDetails())

    def _build_final_result(
        self,
        task: ParsingTask,
        ctx: RunContext,
        original_query: Optional[str],
        website_url: Optional[str],
        variants: List[QueryVariant],
        total_found: int,
        enriched_count: int,
        results: List[Organization],
        summary: Dict[str, Any],
    ) -> Dict[str, Any]:
        ctx.close_stage()
        return {
            "task_name": task.task_name,
            "kind": task.kind,
            "original_query": original_query,
            "website_url": website_url,
            "generated_queries": [v.text for v in variants],
            "languages": _unique([v.language for v in variants if v.language]),
            "regions": _unique([v.region for v in variants if v.region]),
            "total_found": total_found,
            "enriched_count": enriched_count,
            "final_count": len(results),
            "results": [item.to_dict() for item in results],
            "summary": summary,
            "stage_timings": dict(ctx.stage_timings),
            "completed_at": utc_now_naive().isoformat(),
        }


def apply_contact_details(item: Organization, details: ContactDetails) -> Organization:
    """Merge enrichment output into an organization without overwriting known values.

    The primary email becomes the first non-blocklisted address among the
    existing email and the enriched ones. When none qualifies the provider's
    email is left untouched.
    """
    candidates = _unique([e.strip() for e in [item.email, *item.all_emails, *details.emails] if e and e.strip()])
    item.all_emails = candidates
    primary = pick_primary_email(candidates)
    if primary is not None:
        item.email = primary

    if not item.phone and details.phones:
        item.phone = details.phones[0]
    if not item.description and details.description:
        item.description = details.description
    if not item.country and details.country:
        item.country = details.country
    item.social_links = _unique([*item.social_links, *details.social_links])
    return item


def _unique(values: List[str]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
