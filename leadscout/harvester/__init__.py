"""Pipeline stages: search, aggregation, enrichment merge, filtering and scoring."""

from .contracts import (
    QueryVariant,
    Organization,
    ContactDetails,
    CapacityDescriptor,
    SearchBatch,
    QueryGenerator,
    SearchProvider,
    ContactEnricher,
    CapacityDetector,
)
from .search_strategy import SearchStrategy, SearchUnit, choose_strategy, execute_search
from .pipeline import PipelineExecutor, PipelineOutcome, OutcomeStatus, RunContext

__all__ = [
    "QueryVariant",
    "Organization",
    "ContactDetails",
    "CapacityDescriptor",
    "SearchBatch",
    "QueryGenerator",
    "SearchProvider",
    "ContactEnricher",
    "CapacityDetector",
    "SearchStrategy",
    "SearchUnit",
    "choose_strategy",
    "execute_search",
    "PipelineExecutor",
    "PipelineOutcome",
    "OutcomeStatus",
    "RunContext",
]
