"""
Reduce a parsed query to a set of item ids.

Each filter is evaluated to an id set against the archive-gated universe.
NOT inverts against that universe; operators fold left to right
(AND = intersection, OR = union).
"""

from datetime import datetime
from typing import Callable, Optional

from ..errors import InternalError
from ..types import normalize_tag, utc_now
from .index import KIND_COMPONENT, KIND_PIPELINE, Index, SearchItem, tokenize_content
from .query import AND, OR, STATUS_ACTIVE, STATUS_ARCHIVED, Filter, Query


# type: aliases -> index kind label
TYPE_ALIASES = {
    "prompt": "prompts",
    "prompts": "prompts",
    "context": "contexts",
    "contexts": "contexts",
    "rule": "rules",
    "rules": "rules",
    "pipeline": KIND_PIPELINE,
    "pipelines": KIND_PIPELINE,
    "component": KIND_COMPONENT,
    "components": KIND_COMPONENT,
}


def resolve_type(value: str) -> tuple[set[str], bool]:
    """
    Resolve a type: value to index kind labels.

    An exact alias selects only its label. Otherwise every alias that
    starts with the value contributes ("pipe" -> pipeline, "r" -> rules).

    Returns:
        (labels, exact) where exact is True for an exact alias match
    """
    value = value.strip().lower()
    if value in TYPE_ALIASES:
        return {TYPE_ALIASES[value]}, True
    if not value:
        return set(), False
    return {label for alias, label in TYPE_ALIASES.items() if alias.startswith(value)}, False


def item_has_label(item: SearchItem, label: str) -> bool:
    return item.kind == label or item.subkind == label


class Evaluator:
    """
    Evaluates queries against one index generation.

    Args:
        index: The index to evaluate against
        now: Clock used for modified: filters
    """

    def __init__(self, index: Index, now: Optional[Callable[[], datetime]] = None):
        self._index = index
        self._now = now or utc_now

    @property
    def index(self) -> Index:
        return self._index

    def universe(self, query: Query) -> set[int]:
        """Ids an item set may draw from: archived items only when asked for."""
        if query.wants_archived:
            return set(self._index.all_ids)
        return set(self._index.active_ids)

    def evaluate(self, query: Query, now: Optional[datetime] = None) -> tuple[int, ...]:
        """
        Evaluate a query to a sorted, deduplicated tuple of item ids.

        Raises:
            InternalError: If the query's operators don't line up with its filters
        """
        now = now or self._now()
        universe = self.universe(query)
        if not query.filters:
            return tuple(sorted(universe))

        if len(query.operators) != len(query.filters) - 1:
            raise InternalError(
                f"query has {len(query.filters)} filters but {len(query.operators)} operators"
            )

        result = self.filter_ids(query.filters[0], universe, now)
        for op, f in zip(query.operators, query.filters[1:]):
            ids = self.filter_ids(f, universe, now)
            if op == AND:
                result &= ids
            elif op == OR:
                result |= ids
            else:
                raise InternalError(f"unknown operator {op!r}")
        return tuple(sorted(result))

    def filter_ids(self, f: Filter, universe: set[int], now: datetime) -> set[int]:
        """Ids matching one filter, with negation applied against the universe."""
        ids = self._match(f, now) & universe
        if f.negated:
            return universe - ids
        return ids

    def _match(self, f: Filter, now: datetime) -> set[int]:
        index = self._index
        items = index.items

        if f.field == "tag":
            prefix = normalize_tag(f.value)
            if not prefix:
                return set()
            ids: set[int] = set()
            for tag, tag_ids in index.by_tag.items():
                if tag.startswith(prefix):
                    ids.update(tag_ids)
            return ids

        if f.field == "type":
            labels, _ = resolve_type(f.value)
            ids = set()
            for label in labels:
                ids.update(index.ids_for_kind(label))
            return ids

        if f.field == "name":
            needle = f.value.lower()
            return {i for i, item in enumerate(items) if needle in item.name.lower()}

        if f.field == "content":
            tokens = tokenize_content(f.value)
            if len(tokens) == 1 and tokens[0] in index.by_token:
                return set(index.ids_for_token(tokens[0]))
            needle = f.value.lower()
            return {
                i for i, item in enumerate(items)
                if needle in item.body.lower() or needle in item.name.lower()
            }

        if f.field == "modified":
            return {i for i, item in enumerate(items) if matches_modified(item, f, now)}

        if f.field == "status":
            if f.value == STATUS_ARCHIVED:
                return {i for i, item in enumerate(items) if item.archived}
            if f.value == STATUS_ACTIVE:
                return {i for i, item in enumerate(items) if not item.archived}
            return set()

        raise InternalError(f"unknown field {f.field!r}")

    def item_matches(self, item: SearchItem, f: Filter, now: Optional[datetime] = None) -> bool:
        """
        Per-item predicate for a single filter, ignoring negation.

        Agrees with the set evaluation: used for highlights, scoring and
        the all-AND multi-filter path.
        """
        now = now or self._now()
        if f.field == "tag":
            prefix = normalize_tag(f.value)
            return bool(prefix) and any(tag.startswith(prefix) for tag in item.normalized_tags)
        if f.field == "type":
            labels, _ = resolve_type(f.value)
            return any(item_has_label(item, label) for label in labels)
        if f.field == "name":
            return f.value.lower() in item.name.lower()
        if f.field == "content":
            tokens = tokenize_content(f.value)
            if len(tokens) == 1 and tokens[0] in self._index.by_token:
                return tokens[0] in tokenize_content(item.body)
            needle = f.value.lower()
            return needle in item.body.lower() or needle in item.name.lower()
        if f.field == "modified":
            return matches_modified(item, f, now)
        if f.field == "status":
            if f.value == STATUS_ARCHIVED:
                return item.archived
            if f.value == STATUS_ACTIVE:
                return not item.archived
            return False
        raise InternalError(f"unknown field {f.field!r}")

    def evaluate_all(self, query: Query, now: Optional[datetime] = None) -> tuple[int, ...]:
        """
        Multi-filter evaluation: every filter must hold (operators ignored).

        Matches ``evaluate`` exactly for queries joined only by AND.
        """
        now = now or self._now()
        result = []
        for item_id in sorted(self.universe(query)):
            item = self._index.items[item_id]
            if all(self.item_matches(item, f, now) != f.negated for f in query.filters):
                result.append(item_id)
        return tuple(result)


def matches_modified(item: SearchItem, f: Filter, now: datetime) -> bool:
    """Apply a modified: filter. ">7d" means age < 7 days, "<7d" means age > 7 days."""
    if f.threshold is None:
        raise InternalError(f"modified filter without a duration: {f.value!r}")
    age = now - item.modified
    if f.comparator == ">":
        return age < f.threshold
    return age > f.threshold
