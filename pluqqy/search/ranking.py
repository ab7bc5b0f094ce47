"""
Relevance scoring and result ordering.

Scores are additive. Only non-negated filters that an item actually
satisfies contribute. Discriminative filters (type, status) dominate
text heuristics; exact beats prefix beats substring, tag beats content,
recency beats usage.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from ..types import normalize_tag
from .evaluator import resolve_type
from .index import SearchItem
from .query import STATUS_ACTIVE, STATUS_ARCHIVED, Query


SCORE_BASE = 1.0
SCORE_NAME_EXACT = 2.0
SCORE_NAME_PREFIX = 1.0
SCORE_TAG_EXACT = 1.5
SCORE_CONTENT_OCCURRENCE = 1.0
MAX_CONTENT_OCCURRENCES = 5
SCORE_RECENT_DAY = 1.0
SCORE_RECENT_WEEK = 0.5
SCORE_USAGE = 0.1
MAX_USAGE_BOOST = 0.4
SCORE_TYPE_EXACT = 10.0
SCORE_TYPE_PREFIX = 5.0
SCORE_STATUS = 10.0

SORT_RELEVANCE = "relevance"
SORT_NAME = "name"
SORT_MODIFIED = "modified"
SORT_ORDERS = (SORT_RELEVANCE, SORT_NAME, SORT_MODIFIED)


@dataclass(frozen=True)
class Scored:
    """An item with its relevance score."""
    item: SearchItem
    score: float


def count_occurrences(haystack: str, needle: str) -> int:
    """Case-insensitive, non-overlapping occurrence count."""
    if not needle:
        return 0
    return haystack.lower().count(needle.lower())


def recency_boost(item: SearchItem, now: datetime) -> float:
    age = now - item.modified
    if age < timedelta(hours=24):
        return SCORE_RECENT_DAY
    if age < timedelta(days=7):
        return SCORE_RECENT_WEEK
    return 0.0


def usage_boost(item: SearchItem) -> float:
    if item.is_pipeline:
        return 0.0
    return min(SCORE_USAGE * item.usage_count, MAX_USAGE_BOOST)


def score_item(
    item: SearchItem,
    query: Query,
    now: datetime,
    matches: Callable[[SearchItem, object], bool],
) -> float:
    """
    Score one surviving item.

    Args:
        item: The item to score
        query: The parsed query
        now: Reference time for the recency boost
        matches: Per-filter predicate, e.g. ``Evaluator.item_matches``
    """
    score = SCORE_BASE + recency_boost(item, now) + usage_boost(item)

    for f in query.positive_filters():
        if not matches(item, f):
            continue
        if f.field == "name":
            name = item.name.lower()
            value = f.value.lower()
            if name == value:
                score += SCORE_NAME_EXACT
            elif name.startswith(value):
                score += SCORE_NAME_PREFIX
        elif f.field == "tag":
            if normalize_tag(f.value) in item.normalized_tags:
                score += SCORE_TAG_EXACT
        elif f.field == "content":
            occurrences = min(count_occurrences(item.body, f.value), MAX_CONTENT_OCCURRENCES)
            score += SCORE_CONTENT_OCCURRENCE * occurrences
        elif f.field == "type":
            _, exact = resolve_type(f.value)
            score += SCORE_TYPE_EXACT if exact else SCORE_TYPE_PREFIX
        elif f.field == "status" and f.value in (STATUS_ARCHIVED, STATUS_ACTIVE):
            score += SCORE_STATUS
    return score


def relevance_key(scored: Scored):
    """Total order: score desc, then name (case-folded, then exact), then path."""
    return (-scored.score, scored.item.name.casefold(), scored.item.name, scored.item.path)


def rank(scored: Iterable[Scored]) -> list[Scored]:
    return sorted(scored, key=relevance_key)


def sort_results(results: Sequence[Scored], order: str = SORT_RELEVANCE) -> list[Scored]:
    """
    Order results by relevance, name, or most recently modified.

    Raises:
        ValueError: For an unknown sort order
    """
    if order == SORT_RELEVANCE:
        return rank(results)
    if order == SORT_NAME:
        return sorted(results, key=lambda s: (s.item.name.casefold(), s.item.name, s.item.path))
    if order == SORT_MODIFIED:
        return sorted(
            results,
            key=lambda s: (-s.item.modified.timestamp(), s.item.name.casefold(), s.item.path),
        )
    raise ValueError(f"Unknown sort order {order!r} (expected one of: {', '.join(SORT_ORDERS)})")
