"""
Shared pytest fixtures for pluqqy tests.

Provides a fixed clock, an in-memory item source, and an on-disk library
seeded with the standard five-item fixture:

    1. prompts/api-prompt.md        "API Prompt"            [api, error-handling, v2]
    2. prompts/auth-prompt.md       "Authentication Prompt" [auth, security, api]
    3. contexts/api-context.md      "API Context"           [api, documentation]
    4. rules/security-rules.md      "Security Rules"        [security, critical]
    5. pipelines/api-pipeline.yaml  "api-pipeline"          [api, production] -> 1, 3
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from pluqqy.library import Library
from pluqqy.search.index import KIND_COMPONENT, KIND_PIPELINE, SearchItem


NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def fixed_now() -> datetime:
    return NOW


def component(subkind: str, filename: str, name: str, tags=(), content: str = "",
              age: timedelta = timedelta(days=30), archived: bool = False,
              usage_count: int = 0) -> SearchItem:
    """Build a component SearchItem with a path derived from subkind and filename."""
    path = f"components/{subkind}/{filename}"
    if archived:
        path = f"archive/{path}"
    return SearchItem(
        kind=KIND_COMPONENT,
        subkind=subkind,
        path=path,
        name=name,
        tags=tuple(tags),
        content=content,
        modified=NOW - age,
        archived=archived,
        usage_count=usage_count,
    )


def pipeline(filename: str, name: str, tags=(), refs=(), age: timedelta = timedelta(days=30),
             archived: bool = False) -> SearchItem:
    path = f"pipelines/{filename}"
    if archived:
        path = f"archive/{path}"
    return SearchItem(
        kind=KIND_PIPELINE,
        path=path,
        name=name,
        tags=tuple(tags),
        content=" ".join(refs),
        modified=NOW - age,
        archived=archived,
    )


def fixture_items(archive_security: bool = False) -> list[SearchItem]:
    """The five-item library as SearchItems."""
    return [
        component(
            "prompts", "api-prompt.md", "API Prompt", ["api", "error-handling", "v2"],
            "Explain error handling for the API.\nReturn errors as JSON.",
            age=timedelta(hours=2), usage_count=1,
        ),
        component(
            "prompts", "auth-prompt.md", "Authentication Prompt", ["auth", "security", "api"],
            "Walk through the login flow and token refresh.",
            age=timedelta(days=3),
        ),
        component(
            "contexts", "api-context.md", "API Context", ["api", "documentation"],
            "The service exposes a REST interface.",
            age=timedelta(days=10), usage_count=1,
        ),
        component(
            "rules", "security-rules.md", "Security Rules", ["security", "critical"],
            "Never log secrets.",
            age=timedelta(days=60), archived=archive_security,
        ),
        pipeline(
            "api-pipeline.yaml", "api-pipeline", ["api", "production"],
            ["../components/prompts/api-prompt.md", "../components/contexts/api-context.md"],
            age=timedelta(days=1, hours=1),
        ),
    ]


class StaticSource:
    """In-memory item source; records how it was asked to enumerate."""

    def __init__(self, items):
        self.items = list(items)
        self.calls: list[bool] = []
        self.fail = False

    def iter_items(self, include_archived: bool = False):
        self.calls.append(include_archived)
        if self.fail:
            raise OSError("library unreadable")
        for item in self.items:
            if item.archived and not include_archived:
                continue
            yield item


@pytest.fixture
def items():
    return fixture_items()


@pytest.fixture
def source(items):
    return StaticSource(items)


# ---------------------------------------------------------------------------
# On-disk library
# ---------------------------------------------------------------------------

def write_file(library: Library, rel: str, text: str, age: timedelta = timedelta(0)) -> Path:
    """Write a file under .pluqqy/ and backdate its mtime."""
    path = library.path / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    ts = (datetime.now(timezone.utc) - age).timestamp()
    os.utime(path, (ts, ts))
    return path


@pytest.fixture
def library(tmp_path):
    """An initialized library holding the five-item fixture."""
    lib = Library(tmp_path)
    lib.init()
    write_file(lib, "components/prompts/api-prompt.md", (
        "---\n"
        "name: API Prompt\n"
        "tags: [api, error-handling, v2]\n"
        "---\n"
        "Explain error handling for the API.\n"
        "Return errors as JSON.\n"
    ), age=timedelta(hours=2))
    write_file(lib, "components/prompts/auth-prompt.md", (
        "---\n"
        "name: Authentication Prompt\n"
        "tags:\n"
        "  - auth\n"
        "  - security\n"
        "  - api\n"
        "---\n"
        "Walk through the login flow and token refresh.\n"
    ), age=timedelta(days=3))
    write_file(lib, "components/contexts/api-context.md", (
        "---\n"
        "name: API Context\n"
        "tags: api, documentation\n"
        "---\n"
        "The service exposes a REST interface.\n"
    ), age=timedelta(days=10))
    write_file(lib, "components/rules/security-rules.md", (
        "---\n"
        "name: Security Rules\n"
        "tags: [security, critical]\n"
        "---\n"
        "Never log secrets.\n"
    ), age=timedelta(days=60))
    write_file(lib, "pipelines/api-pipeline.yaml", (
        "name: api-pipeline\n"
        "tags: [api, production]\n"
        "components:\n"
        "  - type: prompts\n"
        "    path: ../components/prompts/api-prompt.md\n"
        "    order: 2\n"
        "  - type: context\n"
        "    path: ../components/contexts/api-context.md\n"
        "    order: 1\n"
    ), age=timedelta(days=1))
    return lib
