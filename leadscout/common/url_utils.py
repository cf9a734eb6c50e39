"""
Shared URL validation and normalization utilities.

Used by:
- the URL_PARSE pipeline (target URL validation)
- contact enrichment (which websites are worth scraping)
"""

import re
from typing import Optional
from urllib.parse import urlparse

# Invalid placeholder values that providers and LLMs sometimes return
INVALID_URL_PLACEHOLDERS = {
    "not mentioned", "not specified", "unknown", "n/a", "none", "",
    "<unknown>", "null", "undefined", "na", "not available", "not provided",
    "no website", "no url", "unavailable", "not found",
}

# Pages that never carry an organization's own contact details
NON_SCRAPABLE_DOMAINS = {
    "facebook.com", "instagram.com", "twitter.com", "x.com", "tiktok.com",
    "youtube.com", "linkedin.com", "wa.me", "t.me",
    "google.com/maps", "maps.google.com", "goo.gl",
}

# Valid URL pattern (basic structure check)
VALID_URL_PATTERN = re.compile(
    r'^https?://[a-zA-Z0-9][a-zA-Z0-9.-]*\.[a-zA-Z]{2,}(?::\d+)?(?:[/?#].*)?$'
)


def is_valid_url(url: Optional[str]) -> bool:
    """
    Check if URL is a real absolute http(s) URL (not a placeholder).

    Examples:
        >>> is_valid_url("https://example.com")
        True
        >>> is_valid_url("www.example.com")
        True
        >>> is_valid_url("n/a")
        False
    """
    if not url:
        return False

    url_lower = url.lower().strip()
    if url_lower in INVALID_URL_PLACEHOLDERS:
        return False

    if url_lower.startswith("www."):
        url_lower = "https://" + url_lower

    if not VALID_URL_PATTERN.match(url_lower):
        return False

    parsed = urlparse(url_lower)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def sanitize_url(url: Optional[str]) -> Optional[str]:
    """
    Sanitize URL - return None if invalid, normalized URL otherwise.

    Normalizations applied:
    - Strip whitespace
    - Add https:// if starts with www.
    """
    if not is_valid_url(url):
        return None

    url = url.strip()
    if url.lower().startswith("www."):
        url = "https://" + url
    return url


def is_scrapable_website(url: Optional[str]) -> bool:
    """True for organization websites worth sending to the contact scraper."""
    if not is_valid_url(url):
        return False
    url_lower = url.lower()
    return not any(domain in url_lower for domain in NON_SCRAPABLE_DOMAINS)
