"""
Search and indexing for the prompt library.

Components:
    parse_query     Query language parser (tag:, type:, name:, content:, modified:, status:)
    build_index     In-memory inverted index over SearchItems
    Evaluator       Filter sets with AND/OR/NOT and archive gating
    SearchEngine    Lazily built, lock-guarded façade with ranking and highlights
"""

from .engine import ComponentResults, SearchEngine, SearchResult
from .evaluator import Evaluator
from .index import Index, ItemSource, SearchItem, build_index, tokenize_content
from .query import Filter, Query, parse_query

__all__ = [
    "ComponentResults",
    "Evaluator",
    "Filter",
    "Index",
    "ItemSource",
    "Query",
    "SearchEngine",
    "SearchItem",
    "SearchResult",
    "build_index",
    "parse_query",
    "tokenize_content",
]
