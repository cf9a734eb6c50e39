"""External collaborator adapters (Apify, Claude)."""

from .apify_client import ApifyClient
from .query_generator import AnthropicQueryGenerator

__all__ = ["ApifyClient", "AnthropicQueryGenerator"]
