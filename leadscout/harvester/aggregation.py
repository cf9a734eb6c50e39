"""
Query deduplication and result aggregation.

Two places in the pipeline need deduplication:
- Query generation: the generator may return more variants than requested
  (e.g. the same query repeated per language). Variants are deduplicated by
  normalized text and hard-capped to the requested count.
- Aggregation: search units overlap, so the same organization comes back from
  several queries. Items are merged by the provider's stable external id,
  never by name.
"""

import logging
import re
from dataclasses import fields
from typing import Dict, Iterable, List, Optional

from .contracts import Organization, QueryVariant, SearchBatch

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_query_text(text: str) -> str:
    """Casefold and collapse whitespace so trivially different variants compare equal."""
    return _WHITESPACE.sub(" ", (text or "").strip()).casefold()


def dedupe_queries(variants: Iterable[QueryVariant], count: int) -> List[QueryVariant]:
    """Keep the first occurrence of each normalized query text, at most `count` of them.

    Blank variants are dropped. Order of first appearance is preserved and the
    kept variants are returned unchanged (original casing and locale tags).
    """
    seen = set()
    unique: List[QueryVariant] = []
    for variant in variants:
        key = normalize_query_text(variant.text)
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(variant)
        if len(unique) >= count:
            break
    return unique


def merge_organizations(first: Organization, second: Organization) -> Organization:
    """Merge two occurrences of the same organization.

    The occurrence with more populated fields is the base (ties keep `first`);
    its empty fields are filled from the other occurrence.
    """
    if second.populated_field_count() > first.populated_field_count():
        base, other = second, first
    else:
        base, other = first, second

    merged = Organization(**{f.name: getattr(base, f.name) for f in fields(Organization)})
    for f in fields(Organization):
        if f.name == "relevance_score":
            continue
        current = getattr(merged, f.name)
        if _is_blank(current):
            candidate = getattr(other, f.name)
            if not _is_blank(candidate):
                setattr(merged, f.name, list(candidate) if isinstance(candidate, list) else candidate)
    return merged


def aggregate_batches(batches: Iterable[SearchBatch]) -> List[Organization]:
    """Flatten batches and merge duplicates by external_id.

    Items without an external id cannot be matched reliably and are kept
    as-is. Output order follows first appearance.
    """
    merged: Dict[str, Organization] = {}
    order: List[object] = []  # external ids (str) or unmatched Organization instances
    raw_count = 0

    for batch in batches:
        for item in batch.items:
            raw_count += 1
            key = _merge_key(item)
            if key is None:
                order.append(item)
                continue
            if key in merged:
                merged[key] = merge_organizations(merged[key], item)
            else:
                merged[key] = item
                order.append(key)

    results = [merged[entry] if isinstance(entry, str) else entry for entry in order]
    logger.info(
        f"AGGREGATION: raw={raw_count} unique={len(results)} duplicates_merged={raw_count - len(results)}"
    )
    return results


def _merge_key(item: Organization) -> Optional[str]:
    if item.external_id is None:
        return None
    key = str(item.external_id).strip()
    return key or None


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list):
        return not value
    return False
