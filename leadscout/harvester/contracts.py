"""
Data contracts shared by the pipeline and its external collaborators.

The pipeline only talks to the outside world through the four protocols
below. Concrete implementations live in leadscout.enrichment; tests use
in-memory fakes.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable


@dataclass
class QueryVariant:
    """One localized search query produced by the query generator."""
    text: str
    language: str = "en"
    region: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class Organization:
    """A found organization as it moves through aggregation, enrichment and scoring."""
    external_id: Optional[str] = None  # Provider place id; merge key
    name: str = ""
    website: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    all_emails: List[str] = field(default_factory=list)
    social_links: List[str] = field(default_factory=list)
    rating: Optional[float] = None
    reviews_count: Optional[int] = None
    category: Optional[str] = None
    description: Optional[str] = None
    source_query: Optional[str] = None
    enrichment_error: Optional[str] = None
    relevance_score: float = 0.0

    def populated_field_count(self) -> int:
        """Number of non-empty descriptive fields (scores are not counted)."""
        count = 0
        for f in fields(self):
            if f.name in ("relevance_score", "enrichment_error"):
                continue
            if not _is_empty(getattr(self, f.name)):
                count += 1
        return count

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContactDetails:
    """Result of enriching one organization website."""
    emails: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)
    description: Optional[str] = None
    country: Optional[str] = None
    social_links: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.emails or self.phones or self.description or self.social_links)


@dataclass
class CapacityDescriptor:
    """How many search units the provider can run at once, and for how long each."""
    max_concurrent_units: int
    per_unit_timeout: float
    source: str = "default"  # "detected" when read from the provider account


@dataclass
class SearchBatch:
    """Items returned by one search unit. Failed or timed-out units carry an error and no items."""
    variant: QueryVariant
    items: List[Organization] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@runtime_checkable
class QueryGenerator(Protocol):
    async def generate_queries(self, user_input: str, count: int) -> List[QueryVariant]:
        ...


@runtime_checkable
class SearchProvider(Protocol):
    async def search_batch(self, variant: QueryVariant, max_items: int) -> List[Organization]:
        ...


@runtime_checkable
class ContactEnricher(Protocol):
    async def enrich_contact(self, target: Union[Organization, str]) -> ContactDetails:
        ...


@runtime_checkable
class CapacityDetector(Protocol):
    async def detect_capacity(self) -> CapacityDescriptor:
        ...


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False
