"""
Shared HTTP Client Configuration.

Provides standardized HTTP client creation for the collaborator adapters.

Usage:
    from leadscout.common.http_client import create_api_client

    async with create_api_client(base_url=settings.apify_base_url) as client:
        response = await client.get("/users/me")
"""

import httpx
from typing import Optional

from ..config.settings import settings


USER_AGENT_BOT = "LeadScout/1.0 (Organization Research Bot)"


def create_api_client(
    base_url: str = "",
    timeout: Optional[float] = None,
    max_connections: int = 20,
    max_keepalive: int = 10,
    extra_headers: Optional[dict] = None,
) -> httpx.AsyncClient:
    """
    Create a standardized async HTTP client for collaborator APIs.

    Args:
        base_url: Base URL prepended to relative request paths
        timeout: Request timeout in seconds (default: settings.request_timeout)
        max_connections: Maximum concurrent connections
        max_keepalive: Maximum keepalive connections
        extra_headers: Additional headers to include

    Returns:
        Configured httpx.AsyncClient
    """
    headers = {"User-Agent": USER_AGENT_BOT, "Accept": "application/json"}
    if extra_headers:
        headers.update(extra_headers)

    return httpx.AsyncClient(
        base_url=base_url,
        timeout=timeout or settings.request_timeout,
        headers=headers,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
        ),
        follow_redirects=True,
    )
