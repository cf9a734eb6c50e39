"""
Apify API client.

Implements three pipeline contracts against the Apify platform:
- SearchProvider: Google Maps places actor, one run per query variant
- ContactEnricher: contact-details actor, one run per website
- CapacityDetector: account plan limits from /users/me

Actors are called through the run-sync-get-dataset-items endpoint, so each
call blocks until the actor finishes and returns its dataset items directly.

Retries inside this client cover short blips only (429 and 5xx with
backoff). Anything still failing is raised as a classified PipelineError and
handled by the pipeline (per-unit / per-item) or by the worker (task retry).
"""

import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

import httpx

from ..common.errors import PermanentError, TransientError, error_from_response
from ..common.http_client import create_api_client
from ..config.settings import settings
from ..harvester.contracts import (
    CapacityDescriptor,
    ContactDetails,
    Organization,
    QueryVariant,
)

logger = logging.getLogger(__name__)

# Seconds added on top of the actor timeout for the HTTP round trip
ACTOR_HTTP_GRACE = 30
SEARCH_ACTOR_TIMEOUT = 600
SEARCH_ACTOR_MEMORY_MB = 4096
CONTACT_ACTOR_MEMORY_MB = 1024


class ApifyClient:
    """
    Async client for the Apify REST API.

    Features:
    - Lazily created shared httpx client
    - Backoff retry on 429 / 5xx / network errors
    - Maps actor dataset items onto pipeline contracts
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        backoff_base: float = 2.0,
    ):
        self.token = token if token is not None else settings.apify_token
        self.base_url = base_url or settings.apify_base_url
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = create_api_client(
                base_url=self.base_url,
                extra_headers={"Authorization": f"Bearer {self.token}"},
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def validate_token(self) -> None:
        if not self.token:
            raise PermanentError("APIFY_TOKEN not configured")

    async def request(
        self,
        method: str,
        path: str,
        context: str,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Any:
        """
        Make an API request with backoff retry.

        Args:
            method: HTTP method
            path: Path relative to the API base URL
            context: Short description used in logs and error messages
            timeout: Request timeout override (actor runs take minutes)

        Returns:
            Decoded JSON body

        Raises:
            TransientError: rate limited, server errors or network errors after retries
            PermanentError: other 4xx responses, missing token
        """
        self.validate_token()
        client = await self._get_client()
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            try:
                response = await client.request(
                    method,
                    path,
                    timeout=timeout or settings.request_timeout,
                    **kwargs,
                )
            except httpx.TimeoutException:
                # Actor runs are long; a timed-out run is not retried here
                raise TransientError(f"{context} timed out")
            except httpx.RequestError as e:
                last_error = str(e) or type(e).__name__
                backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                logger.warning(
                    f"Apify network error during {context}: {last_error}. "
                    f"Retrying in {backoff:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(backoff)
                continue

            if response.status_code == 429 or response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                backoff = (self.backoff_base ** attempt) * random.uniform(0.9, 1.1)
                logger.warning(
                    f"Apify {context} returned {response.status_code}. "
                    f"Retrying in {backoff:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(backoff)
                continue

            if response.status_code >= 400:
                logger.error(f"Apify client error during {context}: {response.status_code}")
                raise error_from_response(response, f"Apify {context}")

            try:
                return response.json()
            except ValueError as e:
                raise TransientError(f"Apify {context} returned malformed JSON: {e}")

        raise TransientError(f"Apify {context} failed after {self.max_retries} attempts: {last_error}")

    async def run_actor(
        self,
        actor_id: str,
        run_input: Dict[str, Any],
        timeout_secs: int,
        memory_mb: int,
        context: str,
    ) -> List[Dict[str, Any]]:
        """Run an actor synchronously and return its dataset items."""
        items = await self.request(
            "POST",
            f"/acts/{actor_id}/run-sync-get-dataset-items",
            context=context,
            timeout=timeout_secs + ACTOR_HTTP_GRACE,
            params={"timeout": timeout_secs, "memory": memory_mb, "format": "json"},
            json=run_input,
        )
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    # ------------------------------------------------------------------
    # SearchProvider
    # ------------------------------------------------------------------

    async def search_batch(self, variant: QueryVariant, max_items: int) -> List[Organization]:
        """Search Google Maps for one query variant."""
        run_input = {
            "searchStringsArray": [variant.text],
            "maxCrawledPlacesPerSearch": max_items,
            "language": variant.language or "en",
            "countryCode": (variant.region or "").lower() or None,
            "scrapeReviewsCount": 0,
            "scrapeImages": False,
            "scrapeDirectories": False,
            "includePeopleAlsoSearch": False,
        }
        run_input = {k: v for k, v in run_input.items() if v is not None}
        logger.info(f"Apify search: '{variant.text}' ({variant.language}/{variant.region or '-'}, max={max_items})")

        items = await self.run_actor(
            settings.apify_search_actor,
            run_input,
            timeout_secs=SEARCH_ACTOR_TIMEOUT,
            memory_mb=SEARCH_ACTOR_MEMORY_MB,
            context=f"search '{variant.text}'",
        )
        return [place_to_organization(item, variant.text) for item in items[:max_items]]

    # ------------------------------------------------------------------
    # ContactEnricher
    # ------------------------------------------------------------------

    async def enrich_contact(self, target: Union[Organization, str]) -> ContactDetails:
        """Scrape contact details from an organization website."""
        url = target.website if isinstance(target, Organization) else target
        if not url:
            raise PermanentError("No website to enrich")

        items = await self.run_actor(
            settings.apify_contact_actor,
            {
                "startUrls": [{"url": url}],
                "maxRequestsPerStartUrl": 5,
                "maxDepth": 1,
                "sameDomain": True,
                "considerChildFrames": False,
            },
            timeout_secs=settings.apify_contact_timeout,
            memory_mb=CONTACT_ACTOR_MEMORY_MB,
            context=f"contact scrape {urlparse(url).netloc or url}",
        )
        return contact_items_to_details(items)

    # ------------------------------------------------------------------
    # CapacityDetector
    # ------------------------------------------------------------------

    async def detect_capacity(self) -> CapacityDescriptor:
        """Read the account's concurrent actor run limit."""
        body = await self.request("GET", "/users/me", context="plan detection")
        plan = ((body or {}).get("data") or {}).get("plan") or {}
        limit = plan.get("maxConcurrentActorRuns")
        if not isinstance(limit, int) or limit <= 0:
            raise TransientError("Apify plan has no maxConcurrentActorRuns")

        capacity = CapacityDescriptor(
            max_concurrent_units=min(limit, settings.apify_max_concurrent_runs_cap),
            per_unit_timeout=settings.default_per_unit_timeout,
            source="detected",
        )
        logger.info(f"Apify plan detected: {capacity.max_concurrent_units} concurrent runs")
        return capacity


def place_to_organization(item: Dict[str, Any], source_query: Optional[str] = None) -> Organization:
    """Map one Google Maps dataset item onto an Organization."""
    email = item.get("email")
    emails = [e for e in (item.get("emails") or []) if isinstance(e, str)]
    if email and email not in emails:
        emails.insert(0, email)

    reviews = item.get("reviewsCount")
    rating = item.get("totalScore", item.get("rating"))
    return Organization(
        external_id=item.get("placeId") or item.get("cid") or None,
        name=item.get("title") or item.get("name") or "",
        website=item.get("website") or None,
        address=item.get("address") or None,
        city=item.get("city") or None,
        country=item.get("countryCode") or item.get("country") or None,
        phone=item.get("phone") or item.get("phoneUnformatted") or None,
        email=emails[0] if emails else None,
        all_emails=emails,
        rating=float(rating) if isinstance(rating, (int, float)) else None,
        reviews_count=int(reviews) if isinstance(reviews, (int, float)) else None,
        category=item.get("categoryName") or next(iter(item.get("categories") or []), None),
        description=item.get("description") or None,
        source_query=source_query,
    )


def contact_items_to_details(items: List[Dict[str, Any]]) -> ContactDetails:
    """Fold the per-page items of a contact scrape into one ContactDetails."""
    details = ContactDetails()
    for item in items:
        for email in item.get("emails") or []:
            email = str(email).strip().lower()
            if email and email not in details.emails:
                details.emails.append(email)
        for phone in (item.get("phones") or []) + (item.get("phonesUncertain") or []):
            phone = str(phone).strip()
            if phone and phone not in details.phones:
                details.phones.append(phone)
        for key in ("linkedIns", "facebooks", "instagrams", "twitters", "youtubes"):
            for link in item.get(key) or []:
                if link not in details.social_links:
                    details.social_links.append(link)
        if not details.description and item.get("description"):
            details.description = str(item["description"])[:500]
        if not details.country and item.get("country"):
            details.country = item["country"]
    return details
