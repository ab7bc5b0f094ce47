"""
Pluqqy

A local, file-based library of reusable LLM prompt building blocks.

Contexts, prompts and rules are Markdown files with YAML front-matter.
Pipelines are YAML files listing ordered references to them. Setting a
pipeline composes its components into one output file (PLUQQY.md).

Quick Start:
    from pluqqy import Library, SearchEngine

    lib = Library(".")           # uses ./.pluqqy/
    lib.init()
    engine = SearchEngine(lib)
    results = engine.search("tag:api AND type:prompt")

CLI Usage:
    pluqqy init
    pluqqy search "tag:api NOT status:archived"
    pluqqy set my-pipeline

Environment Variables:
    PLUQQY_ROOT     - Project directory holding .pluqqy/ (default: current directory)
    PLUQQY_VERBOSE  - Set to 1 for debug logging
    EDITOR          - Editor used by `pluqqy edit`
"""

from .errors import InternalError, LibraryError, LoadError, ParseError, PluqqyError
from .library import Library
from .search import SearchEngine, SearchItem, SearchResult, parse_query
from .types import Component, ComponentRef, Pipeline

__version__ = "0.1.0"
__all__ = [
    "Component",
    "ComponentRef",
    "InternalError",
    "Library",
    "LibraryError",
    "LoadError",
    "ParseError",
    "Pipeline",
    "PluqqyError",
    "SearchEngine",
    "SearchItem",
    "SearchResult",
    "parse_query",
]
