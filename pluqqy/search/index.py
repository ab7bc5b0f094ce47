"""
In-memory inverted index over library items.

Items are immutable records. The index maps normalized tags, kinds and
content tokens to sorted tuples of item ids (positions in ``Index.items``).
Ids are only meaningful within one build generation.
"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import Iterable, Protocol, runtime_checkable

from ..types import normalize_tag, singular_type, utc_now

logger = logging.getLogger(__name__)

KIND_PIPELINE = "pipeline"
KIND_COMPONENT = "component"

# Characters trimmed from the ends of content tokens
_TOKEN_TRIM = ".,!?;:\"'"

_generation_counter = itertools.count(1)


@dataclass(frozen=True)
class SearchItem:
    """
    A searchable library entry (pipeline or component).

    One record type serves every kind; the differences live in ``kind``
    and ``subkind``.
    """
    kind: str
    path: str
    name: str
    subkind: str = ""
    tags: tuple[str, ...] = ()
    content: str = ""
    modified: datetime = field(default_factory=utc_now)
    archived: bool = False
    token_count: int = 0
    usage_count: int = 0

    @cached_property
    def body(self) -> str:
        """Name, tags and content joined: the text that content filters match."""
        return " ".join(part for part in (self.name, " ".join(self.tags), self.content) if part)

    @cached_property
    def normalized_tags(self) -> frozenset[str]:
        return frozenset(t for t in (normalize_tag(tag) for tag in self.tags) if t)

    @property
    def is_pipeline(self) -> bool:
        return self.kind == KIND_PIPELINE

    @property
    def label(self) -> str:
        """Grouping label: "pipelines" or the component subkind."""
        return "pipelines" if self.is_pipeline else self.subkind

    @property
    def display_type(self) -> str:
        """Singular type for display: pipeline, prompt, context or rule."""
        return KIND_PIPELINE if self.is_pipeline else singular_type(self.subkind)


@runtime_checkable
class ItemSource(Protocol):
    """Anything that can enumerate searchable items (e.g. a Library)."""

    def iter_items(self, include_archived: bool = False) -> Iterable[SearchItem]:
        ...


def tokenize_content(text: str) -> list[str]:
    """
    Split text into lowercase content tokens.

    Hyphens separate words, surrounding punctuation is trimmed, and tokens
    of two characters or fewer are dropped. Used for both indexing and
    query values so the two always agree.
    """
    tokens = []
    for word in text.lower().replace("-", " ").split():
        word = word.strip(_TOKEN_TRIM)
        if len(word) > 2:
            tokens.append(word)
    return tokens


def _freeze(mapping: dict[str, list[int]]) -> dict[str, tuple[int, ...]]:
    return {key: tuple(sorted(set(ids))) for key, ids in sorted(mapping.items())}


@dataclass(frozen=True)
class Index:
    """One immutable build generation of the search index."""
    items: tuple[SearchItem, ...]
    by_tag: dict[str, tuple[int, ...]]
    by_kind: dict[str, tuple[int, ...]]
    by_token: dict[str, tuple[int, ...]]
    include_archived: bool
    generation: int = 0
    built_at: datetime = field(default_factory=utc_now)

    def __len__(self) -> int:
        return len(self.items)

    @cached_property
    def all_ids(self) -> tuple[int, ...]:
        return tuple(range(len(self.items)))

    @cached_property
    def active_ids(self) -> tuple[int, ...]:
        return tuple(i for i, item in enumerate(self.items) if not item.archived)

    def ids_for_kind(self, label: str) -> tuple[int, ...]:
        return self.by_kind.get(label, ())

    def ids_for_token(self, token: str) -> tuple[int, ...]:
        return self.by_token.get(token, ())


def build_index(items: Iterable[SearchItem], include_archived: bool = False) -> Index:
    """
    Build an index from items.

    Archived items are skipped unless ``include_archived`` is set. Items
    whose path was already seen are skipped with a warning, keeping the
    first. Building twice from the same items gives identical indexes.
    """
    kept: list[SearchItem] = []
    seen: set[str] = set()
    skipped_archived = 0

    for item in items:
        if item.archived and not include_archived:
            skipped_archived += 1
            continue
        if item.path in seen:
            logger.warning("Duplicate item path %s; keeping the first", item.path)
            continue
        seen.add(item.path)
        kept.append(item)

    by_tag: dict[str, list[int]] = {}
    by_kind: dict[str, list[int]] = {}
    by_token: dict[str, list[int]] = {}

    for item_id, item in enumerate(kept):
        for tag in item.normalized_tags:
            by_tag.setdefault(tag, []).append(item_id)
        by_kind.setdefault(item.kind, []).append(item_id)
        if item.subkind:
            by_kind.setdefault(item.subkind, []).append(item_id)
        for token in set(tokenize_content(item.body)):
            by_token.setdefault(token, []).append(item_id)

    index = Index(
        items=tuple(kept),
        by_tag=_freeze(by_tag),
        by_kind=_freeze(by_kind),
        by_token=_freeze(by_token),
        include_archived=include_archived,
        generation=next(_generation_counter),
    )
    logger.info(
        "Built search index generation %d: %d items, %d tags, %d tokens%s",
        index.generation, len(kept), len(index.by_tag), len(index.by_token),
        " (archived included)" if include_archived else "",
    )
    if skipped_archived:
        logger.debug("Skipped %d archived items", skipped_archived)
    return index
