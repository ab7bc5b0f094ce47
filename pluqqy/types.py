"""
Data types for the prompt library.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


# Component subkinds, in the order they are composed
COMPONENT_TYPES = ("contexts", "prompts", "rules")

# Singular forms accepted wherever a component type is named
_SINGULAR_TO_PLURAL = {
    "context": "contexts",
    "prompt": "prompts",
    "rule": "rules",
}

_TAG_SEPARATOR_RE = re.compile(r"[\s\-]+")
_WORD_RE = re.compile(r"\S+")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def from_timestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp (e.g. a file mtime) to an aware UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def normalize_tag(tag: str) -> str:
    """Normalize a tag for comparison.

    Lowercases, trims, and collapses runs of whitespace or hyphens into a
    single hyphen, so "Error Handling", "error-handling" and "error--handling"
    compare equal. Display code keeps the original spelling.
    """
    return _TAG_SEPARATOR_RE.sub("-", tag.strip().lower()).strip("-")


def normalize_component_type(value: str) -> str:
    """Map a singular or plural component type to its plural label.

    Unknown values are returned lowercased and otherwise unchanged.
    """
    value = value.strip().lower()
    return _SINGULAR_TO_PLURAL.get(value, value)


def singular_type(subkind: str) -> str:
    """Singular display form of a component type ("prompts" -> "prompt")."""
    for singular, plural in _SINGULAR_TO_PLURAL.items():
        if plural == subkind:
            return singular
    return subkind


def name_from_filename(filename: str) -> str:
    """Derive a display name from a filename: "api-error_prompt.md" -> "Api Error Prompt"."""
    stem = filename.rsplit("/", 1)[-1]
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    words = stem.replace("-", " ").replace("_", " ").split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def slugify(name: str) -> str:
    """Turn a display name into a filename stem: "API Prompt" -> "api-prompt"."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower())
    return slug.strip("-") or "unnamed"


def estimate_tokens(text: str) -> int:
    """Rough token estimate for LLM context budgeting.

    Averages a characters/4 estimate with a words*1.3 estimate, and adds
    extra weight for fenced code blocks, which tokenize more densely.
    Returns 0 for empty text and at least 1 otherwise.
    """
    if not text:
        return 0
    text = text.strip()
    base_estimate = len(text) // 4
    word_estimate = int(len(_WORD_RE.findall(text)) * 1.3)
    estimate = (base_estimate + word_estimate) // 2
    for block in _CODE_BLOCK_RE.findall(text):
        estimate += len(block) // 3 - len(block) // 4
    return max(estimate, 1)


def format_token_count(tokens: int) -> str:
    """Format a token estimate for display: ~850 tokens, ~1.2K tokens, ~15K tokens."""
    if tokens < 1000:
        return f"~{tokens} tokens"
    if tokens < 10000:
        return f"~{tokens / 1000:.1f}K tokens"
    return f"~{tokens / 1000:.0f}K tokens"


@dataclass
class Component:
    """
    A reusable prompt building block: a context, prompt or rule.

    Attributes:
        path: Library-relative path, e.g. "components/prompts/api.md"
        type: Plural component type ("contexts", "prompts", "rules")
        name: Display name (front-matter name or derived from filename)
        tags: Tags in their original spelling
        content: Markdown body without front-matter
        modified: Last modification time (aware UTC)
        archived: True if the component lives under archive/
    """
    path: str
    type: str
    name: str
    content: str = ""
    tags: list[str] = field(default_factory=list)
    modified: Optional[datetime] = None
    archived: bool = False

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def to_dict(self) -> dict:
        data: dict = {"name": self.name, "type": self.type}
        if self.tags:
            data["tags"] = list(self.tags)
        data["content"] = self.content
        return data


@dataclass
class ComponentRef:
    """A pipeline's ordered reference to a component file."""
    type: str
    path: str
    order: int = 0

    def to_dict(self) -> dict:
        return {"type": self.type, "path": self.path, "order": self.order}


@dataclass
class Pipeline:
    """An ordered set of component references composed into one output."""
    name: str
    path: str = ""
    components: list[ComponentRef] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    output_path: Optional[str] = None
    modified: Optional[datetime] = None
    archived: bool = False

    def sorted_components(self) -> list[ComponentRef]:
        """Component references ordered by their order field (stable on ties)."""
        return sorted(self.components, key=lambda ref: ref.order)

    def to_dict(self) -> dict:
        data: dict = {"name": self.name}
        if self.tags:
            data["tags"] = list(self.tags)
        data["components"] = [ref.to_dict() for ref in self.components]
        if self.output_path:
            data["output_path"] = self.output_path
        return data


@dataclass
class TagUsage:
    """How many active components and pipelines carry a tag."""
    components: int = 0
    pipelines: int = 0

    @property
    def total(self) -> int:
        return self.components + self.pipelines
