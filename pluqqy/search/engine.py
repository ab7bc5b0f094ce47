"""
Search façade: lazily builds the index and answers queries.

The engine owns one index generation at a time. The first query builds it;
a query that asks for archived items upgrades it to a build that includes
them. Builds happen off to the side and are swapped in under the write
lock, so a failed build leaves the previous index in place.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, NamedTuple, Optional, Union

from ..types import COMPONENT_TYPES, normalize_component_type, normalize_tag, utc_now
from .evaluator import Evaluator
from .index import KIND_COMPONENT, KIND_PIPELINE, Index, ItemSource, SearchItem, build_index
from .query import Query, parse_query
from .ranking import SORT_ORDERS, SORT_RELEVANCE, Scored, score_item, sort_results
from .rwlock import ReadWriteLock

logger = logging.getLogger(__name__)

STATE_UNINITIALIZED = "uninitialized"
STATE_READY = "ready"

MAX_EXCERPTS = 3
EXCERPT_WIDTH = 100
ELLIPSIS = "…"

_TYPE_SUGGESTIONS = ("type:prompt", "type:context", "type:rules", "type:pipeline")
_STATUS_SUGGESTIONS = ("status:archived", "status:active")


@dataclass(frozen=True)
class SearchResult:
    """A matching item, its score, and advisory highlights."""
    item: SearchItem
    score: float
    highlights: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        item = self.item
        return {
            "type": item.display_type,
            "name": item.name,
            "path": item.path,
            "tags": list(item.tags),
            "archived": item.archived,
            "modified": item.modified.isoformat(),
            "tokens": item.token_count,
            "usage": item.usage_count,
            "score": round(self.score, 3),
            "highlights": self.highlights,
        }


class ComponentResults(NamedTuple):
    """Component search results split by subkind."""
    prompts: list[SearchResult]
    contexts: list[SearchResult]
    rules: list[SearchResult]

    def total(self) -> int:
        return len(self.prompts) + len(self.contexts) + len(self.rules)


def extract_excerpts(text: str, needle: str, limit: int = MAX_EXCERPTS,
                     width: int = EXCERPT_WIDTH) -> list[str]:
    """
    Cut short excerpts centered on the first occurrences of needle.

    Each excerpt is about ``width`` characters with whitespace collapsed,
    marked with an ellipsis where the text was truncated.
    """
    if not needle:
        return []
    lower = text.lower()
    target = needle.lower()
    half = max((width - len(target)) // 2, 0)
    excerpts: list[str] = []
    start = 0
    while len(excerpts) < limit:
        pos = lower.find(target, start)
        if pos < 0:
            break
        begin = max(0, pos - half)
        end = min(len(text), pos + len(target) + half)
        snippet = " ".join(text[begin:end].split())
        if begin > 0:
            snippet = ELLIPSIS + snippet
        if end < len(text):
            snippet += ELLIPSIS
        excerpts.append(snippet)
        start = pos + len(target)
    return excerpts


def build_highlights(item: SearchItem, query: Query,
                     matches: Callable[[SearchItem, object], bool]) -> dict[str, list[str]]:
    """Highlights for the positive filters an item satisfies."""
    highlights: dict[str, list[str]] = {}
    for f in query.positive_filters():
        if f.field not in ("name", "tag", "content") or not matches(item, f):
            continue
        if f.field == "name":
            highlights["name"] = [item.name]
        elif f.field == "tag":
            prefix = normalize_tag(f.value)
            tags = highlights.setdefault("tags", [])
            for tag in item.tags:
                if normalize_tag(tag).startswith(prefix) and tag not in tags:
                    tags.append(tag)
        else:
            excerpts = highlights.setdefault("content", [])
            room = MAX_EXCERPTS - len(excerpts)
            if room <= 0:
                continue
            found = extract_excerpts(item.content, f.value, limit=room)
            if not found:
                found = extract_excerpts(item.body, f.value, limit=room)
            excerpts.extend(found)
    return {key: value for key, value in highlights.items() if value}


class SearchEngine:
    """
    Search over a library's pipelines and components.

    Args:
        source: Enumerates items, e.g. a ``Library``
        now: Clock, injectable for tests
        lock: Read/write lock guarding the index
    """

    def __init__(
        self,
        source: ItemSource,
        now: Optional[Callable[[], datetime]] = None,
        lock: Optional[ReadWriteLock] = None,
    ):
        self._source = source
        self._now = now or utc_now
        self._lock = lock or ReadWriteLock()
        self._build_lock = threading.Lock()
        self._index: Optional[Index] = None

    # -- state ----------------------------------------------------------

    @property
    def state(self) -> str:
        with self._lock.read_locked():
            return STATE_UNINITIALIZED if self._index is None else STATE_READY

    @property
    def includes_archived(self) -> bool:
        with self._lock.read_locked():
            return self._index is not None and self._index.include_archived

    @property
    def index(self) -> Optional[Index]:
        """The current index generation (None before the first build)."""
        with self._lock.read_locked():
            return self._index

    def _satisfies(self, index: Optional[Index], include_archived: bool) -> bool:
        return index is not None and (index.include_archived or not include_archived)

    def _build(self, include_archived: bool, force: bool) -> Index:
        with self._build_lock:
            current = self.index
            if not force and self._satisfies(current, include_archived):
                return current
            logger.debug("Building search index (include_archived=%s)", include_archived)
            items = list(self._source.iter_items(include_archived=include_archived))
            index = build_index(items, include_archived=include_archived)
            with self._lock.write_locked():
                self._index = index
            return index

    def ensure_ready(self, include_archived: bool = False) -> Index:
        """Build the index if missing, or upgrade it to include archived items."""
        current = self.index
        if self._satisfies(current, include_archived):
            return current
        return self._build(include_archived, force=False)

    def refresh(self, include_archived: Optional[bool] = None) -> Index:
        """
        Rebuild from the source, e.g. after the library changed on disk.

        Keeps the current archive flag unless one is given.
        """
        if include_archived is None:
            include_archived = self.includes_archived
        return self._build(include_archived, force=True)

    # -- queries --------------------------------------------------------

    def _parse(self, query: Union[str, Query]) -> Query:
        return query if isinstance(query, Query) else parse_query(query)

    def search(
        self,
        query: Union[str, Query],
        limit: Optional[int] = None,
        sort: str = SORT_RELEVANCE,
    ) -> list[SearchResult]:
        """
        Search all items.

        Args:
            query: Query string or parsed Query
            limit: Maximum number of results (None for all)
            sort: "relevance", "name" or "modified"

        Returns:
            Results ordered by score desc, then name, then path (for relevance)

        Raises:
            ParseError: If the query string is invalid
        """
        parsed = self._parse(query)
        if sort not in SORT_ORDERS:
            raise ValueError(f"Unknown sort order {sort!r} (expected one of: {', '.join(SORT_ORDERS)})")

        while True:
            self.ensure_ready(parsed.wants_archived)
            with self._lock.read_locked():
                index = self._index
                # A concurrent refresh may have dropped archived items; rebuild and retry
                if not self._satisfies(index, parsed.wants_archived):
                    continue
                results = self._run(index, parsed, sort)
            break

        if limit is not None and limit >= 0:
            results = results[:limit]
        return results

    def _run(self, index: Index, query: Query, sort: str) -> list[SearchResult]:
        now = self._now()
        evaluator = Evaluator(index, now=lambda: now)

        def matches(item: SearchItem, f) -> bool:
            return evaluator.item_matches(item, f, now)

        scored = [
            Scored(index.items[item_id], score_item(index.items[item_id], query, now, matches))
            for item_id in evaluator.evaluate(query, now)
        ]
        return [
            SearchResult(s.item, s.score, build_highlights(s.item, query, matches))
            for s in sort_results(scored, sort)
        ]

    def search_components_by_kinds(
        self,
        query: Union[str, Query],
        subkinds: Optional[Iterable[str]] = None,
        sort: str = SORT_RELEVANCE,
    ) -> ComponentResults:
        """
        Search components and split the results by subkind.

        Args:
            query: Query string or parsed Query
            subkinds: Component types to include (singular or plural);
                empty or None means all three

        Raises:
            ValueError: For an unknown component type
        """
        wanted = {normalize_component_type(k) for k in subkinds or ()}
        unknown = wanted - set(COMPONENT_TYPES)
        if unknown:
            raise ValueError(f"Unknown component type(s): {', '.join(sorted(unknown))}")
        if not wanted:
            wanted = set(COMPONENT_TYPES)

        buckets: dict[str, list[SearchResult]] = {kind: [] for kind in COMPONENT_TYPES}
        for result in self.search(query, sort=sort):
            item = result.item
            if item.kind == KIND_COMPONENT and item.subkind in wanted:
                buckets[item.subkind].append(result)
        return ComponentResults(
            prompts=buckets["prompts"],
            contexts=buckets["contexts"],
            rules=buckets["rules"],
        )

    def search_pipelines(self, query: Union[str, Query], sort: str = SORT_RELEVANCE) -> list[SearchResult]:
        """Search and keep only pipelines, in result order."""
        return [r for r in self.search(query, sort=sort) if r.item.kind == KIND_PIPELINE]

    def suggest(self, partial: str, limit: int = 20) -> list[str]:
        """
        Completions for a partially typed query term.

        "tag:ap" completes tags, "type:" and "status:" complete their
        values; a bare prefix offers matching tags, names, types and statuses.
        """
        index = self.ensure_ready()
        partial = partial.lower()
        field_name, sep, rest = partial.partition(":")

        tags = sorted({t for item in index.items for t in item.normalized_tags})
        names = sorted({item.name for item in index.items}, key=str.casefold)

        suggestions: list[str] = []
        if sep:
            if field_name == "tag":
                suggestions = [f"tag:{t}" for t in tags if t.startswith(rest)]
            elif field_name == "name":
                suggestions = [
                    f'name:"{n}"' if " " in n else f"name:{n}"
                    for n in names if n.lower().startswith(rest)
                ]
            elif field_name == "type":
                suggestions = [s for s in _TYPE_SUGGESTIONS if s.startswith(partial)]
            elif field_name == "status":
                suggestions = [s for s in _STATUS_SUGGESTIONS if s.startswith(partial)]
        else:
            suggestions.extend(f"tag:{t}" for t in tags if t.startswith(partial))
            suggestions.extend(n for n in names if n.lower().startswith(partial))
            suggestions.extend(s for s in _TYPE_SUGGESTIONS if s.startswith(f"type:{partial}"))
            suggestions.extend(s for s in _STATUS_SUGGESTIONS if s.startswith(f"status:{partial}"))

        seen: set[str] = set()
        unique = []
        for s in suggestions:
            if s not in seen:
                seen.add(s)
                unique.append(s)
        return unique[:limit]
