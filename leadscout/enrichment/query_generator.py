"""
Search query generation with Claude.

Uses instructor for structured output so the model returns a QueryPlan
(query groups tagged with language and region) instead of free text. The
plan is flattened into QueryVariants; deduplication and capping to the
requested count happen in the pipeline, since the model can over-generate.
"""

import logging
from typing import List, Optional

import httpx
import instructor
from anthropic import APIError, APITimeoutError, AsyncAnthropic, RateLimitError
from pydantic import BaseModel, Field

from ..common.errors import PermanentError, TransientError
from ..config.settings import settings
from ..harvester.contracts import QueryVariant

logger = logging.getLogger(__name__)


class QueryGroup(BaseModel):
    """Queries for one language/region pair."""
    language: str = Field(default="en", description="ISO 639-1 code of the query language")
    region: str = Field(default="", description="ISO 3166-1 alpha-2 country code the queries target")
    queries: List[str] = Field(default_factory=list, description="Google Maps search strings")


class QueryPlan(BaseModel):
    groups: List[QueryGroup] = Field(default_factory=list)


SYSTEM_PROMPT = """You turn a user's description of the organizations they are looking for into Google Maps search queries.

Rules:
- Write each query the way a local would type it into Google Maps.
- When the request targets a country or city, include queries in the local language(s) as well as English.
- Tag every group with its language code and the target country code.
- Keep queries short: the kind of organization plus the place."""


def build_query_prompt(user_input: str, count: int) -> str:
    return (
        f"Request: {user_input}\n\n"
        f"Return at most {count} distinct search queries in total, spread across the most useful languages."
    )


class AnthropicQueryGenerator:
    """QueryGenerator backed by Claude through instructor."""

    def __init__(self, client: Optional[instructor.AsyncInstructor] = None):
        self.configured = client is not None or bool(settings.anthropic_api_key)
        if client is None:
            _anthropic_client = AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=httpx.Timeout(settings.llm_timeout, connect=settings.llm_connect_timeout),
            )
            client = instructor.from_anthropic(_anthropic_client)
        self.client = client

    async def generate_queries(self, user_input: str, count: int) -> List[QueryVariant]:
        """
        Ask the model for localized query variants.

        Args:
            user_input: The user's free-text request
            count: Number of variants wanted (the model may return more)

        Returns:
            Flattened variants in the model's order

        Raises:
            TransientError: timeouts, rate limits, server errors
            PermanentError: authentication and other client errors
        """
        if not self.configured:
            raise PermanentError("ANTHROPIC_API_KEY not configured")

        try:
            plan = await self.client.messages.create(
                model=settings.llm_model,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": build_query_prompt(user_input, count)}],
                response_model=QueryPlan,
                max_retries=settings.llm_max_retries,
            )
        except APITimeoutError as e:
            logger.warning(f"Claude API timeout during query generation: {e}")
            raise TransientError(f"Query generation timed out: {e}")
        except RateLimitError as e:
            logger.warning(f"Claude API rate limit during query generation: {e}")
            raise TransientError(f"Query generation rate limited: {e}")
        except APIError as e:
            status_code = getattr(e, "status_code", None)
            logger.error(f"Claude API error during query generation (status={status_code}): {e}")
            if status_code is not None and 400 <= status_code < 500 and status_code != 429:
                raise PermanentError(f"Query generation rejected: {e}")
            raise TransientError(f"Query generation failed: {e}")

        variants = flatten_plan(plan)
        logger.info(f"Generated {len(variants)} query variants for '{user_input[:80]}'")
        return variants


def flatten_plan(plan: QueryPlan) -> List[QueryVariant]:
    variants: List[QueryVariant] = []
    for group in plan.groups:
        for query in group.queries:
            if query and query.strip():
                variants.append(QueryVariant(text=query.strip(), language=group.language, region=group.region))
    return variants
