"""
Relevance scoring and ordering.

score = keyword overlap (+10 per query keyword longer than 2 characters found
in name/description/address/category)
      + location boost (+15 when any location hint appears in address/city/country)
      + rating * 2, plus 3 when the organization has more than 10 reviews
"""

import re
from typing import Iterable, List, Optional

from .contracts import Organization

KEYWORD_WEIGHT = 10.0
LOCATION_BOOST = 15.0
RATING_WEIGHT = 2.0
REVIEWS_BONUS = 3.0
REVIEWS_BONUS_THRESHOLD = 10

_TOKEN_SPLIT = re.compile(r"[,\s]+")


def extract_keywords(text: str) -> List[str]:
    """Distinct lower-cased words longer than 2 characters, in order."""
    keywords: List[str] = []
    for word in _TOKEN_SPLIT.split((text or "").casefold()):
        word = word.strip()
        if len(word) > 2 and word not in keywords:
            keywords.append(word)
    return keywords


def score_organization(
    item: Organization,
    keywords: List[str],
    location_hints: List[str],
) -> float:
    score = 0.0

    searchable = " ".join(
        part for part in (item.name, item.description, item.address, item.category) if part
    ).casefold()
    for keyword in keywords:
        if keyword in searchable:
            score += KEYWORD_WEIGHT

    if location_hints:
        place = " ".join(part for part in (item.address, item.city, item.country) if part).casefold()
        if any(hint in place for hint in location_hints):
            score += LOCATION_BOOST

    if item.rating is not None:
        try:
            score += float(item.rating) * RATING_WEIGHT
        except (TypeError, ValueError):
            pass
        if item.reviews_count and item.reviews_count > REVIEWS_BONUS_THRESHOLD:
            score += REVIEWS_BONUS

    return score


def rank_by_relevance(
    items: Iterable[Organization],
    query: str,
    location: Optional[str] = None,
    result_limit: Optional[int] = None,
) -> List[Organization]:
    """Score, sort descending (stable on ties) and optionally truncate.

    Scores are written onto each item's relevance_score.
    """
    keywords = extract_keywords(query)
    location_hints = extract_keywords(location) if location else []

    scored = list(items)
    for item in scored:
        item.relevance_score = score_organization(item, keywords, location_hints)

    # sorted() is stable, so equal scores keep insertion order
    ranked = sorted(scored, key=lambda org: org.relevance_score, reverse=True)
    if result_limit:
        ranked = ranked[:result_limit]
    return ranked
