"""
File-based prompt library.

Layout under the project directory:

    .pluqqy/
        components/{contexts,prompts,rules}/*.md
        pipelines/*.yaml
        archive/components/...  archive/pipelines/...
        tmp/
        pluqqy.toml

Items are addressed by logical paths relative to ``.pluqqy/``, e.g.
``components/prompts/api.md`` or ``archive/pipelines/release.yaml``.
Pipelines reference components relative to ``pipelines/``
(``../components/prompts/api.md``).
"""

import logging
import os
import posixpath
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Union

import yaml

from .errors import LibraryError, LoadError
from .search.index import KIND_COMPONENT, KIND_PIPELINE, SearchItem
from .types import (
    COMPONENT_TYPES,
    Component,
    ComponentRef,
    Pipeline,
    TagUsage,
    estimate_tokens,
    from_timestamp,
    name_from_filename,
    normalize_component_type,
    normalize_tag,
    slugify,
)

logger = logging.getLogger(__name__)

LIBRARY_DIRNAME = ".pluqqy"
COMPONENTS_DIR = "components"
PIPELINES_DIR = "pipelines"
ARCHIVE_DIR = "archive"
TMP_DIR = "tmp"

# Largest component or pipeline file we will read or write
MAX_FILE_SIZE = 10 * 1024 * 1024

GITIGNORE_LINES = ("/tmp/", "*.log")

_FRONT_MATTER_DELIMITER = "---"
_PIPELINE_SUFFIXES = (".yaml", ".yml")


# ---------------------------------------------------------------------------
# Front-matter codec
# ---------------------------------------------------------------------------

def split_front_matter(text: str) -> tuple[dict, str]:
    """
    Split a Markdown document into front-matter and body.

    Front-matter sits between two lines that are exactly ``---``, the first
    being the first line of the file. Without it, the whole text is the body.

    Raises:
        ValueError: If the front-matter is unterminated, not valid YAML,
            or not a mapping
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip("\r\n") != _FRONT_MATTER_DELIMITER:
        return {}, text
    for i in range(1, len(lines)):
        if lines[i].rstrip("\r\n") == _FRONT_MATTER_DELIMITER:
            break
    else:
        raise ValueError("front-matter is not terminated by '---'")

    try:
        data = yaml.safe_load("".join(lines[1:i]))
    except yaml.YAMLError as e:
        raise ValueError(f"invalid front-matter YAML: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("front-matter must be a mapping")
    return data, "".join(lines[i + 1:])


def coerce_tags(value) -> list[str]:
    """Accept a YAML list or a comma-separated string of tags."""
    if value is None:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    if isinstance(value, (list, tuple)):
        return [str(t).strip() for t in value if t is not None and str(t).strip()]
    raise ValueError(f"tags must be a list or a comma-separated string, not {type(value).__name__}")


def format_front_matter(body: str, name: Optional[str] = None, tags: Optional[list[str]] = None) -> str:
    """Prefix body with front-matter holding name and tags (omitted when both empty)."""
    data: dict = {}
    if name:
        data["name"] = name
    if tags:
        data["tags"] = list(tags)
    if not data:
        return body
    header = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"{_FRONT_MATTER_DELIMITER}\n{header}{_FRONT_MATTER_DELIMITER}\n{body}"


def ref_to_component_path(ref_path: str) -> str:
    """Resolve a pipeline reference to a logical component path.

    "../components/prompts/api.md" -> "components/prompts/api.md"
    """
    return posixpath.normpath(posixpath.join(PIPELINES_DIR, ref_path.replace("\\", "/")))


def component_path_to_ref(path: str) -> str:
    """Inverse of ref_to_component_path for paths under .pluqqy/."""
    return posixpath.join("..", path)


def strip_archive_prefix(path: str) -> str:
    prefix = ARCHIVE_DIR + "/"
    return path[len(prefix):] if path.startswith(prefix) else path


def is_archived_path(path: str) -> bool:
    return path.startswith(ARCHIVE_DIR + "/")


def is_pipeline_path(path: str) -> bool:
    return strip_archive_prefix(path).startswith(PIPELINES_DIR + "/")


def _write_atomic(path: Path, text: str) -> None:
    """Write text by renaming a temp file into place."""
    data = text.encode("utf-8")
    if len(data) > MAX_FILE_SIZE:
        raise LibraryError(
            f"content size {len(data)} bytes exceeds maximum allowed size of {MAX_FILE_SIZE} bytes"
        )
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "wb", dir=path.parent, prefix=".tmp-", delete=False
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        except OSError:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def write_text_atomic(path: Path, text: str) -> None:
    """Atomically write a UTF-8 file anywhere (used for composed output)."""
    _write_atomic(Path(path), text)


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------

class Library:
    """
    A prompt library rooted at ``<root>/.pluqqy``.

    Args:
        root: Project directory (default: current directory)
    """

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root is not None else Path.cwd()
        self.path = self.root / LIBRARY_DIRNAME

    def __repr__(self) -> str:
        return f"Library({str(self.root)!r})"

    def exists(self) -> bool:
        return self.path.is_dir()

    # -- layout ---------------------------------------------------------

    def init(self) -> Path:
        """Create the directory layout and .gitignore. Safe to run twice."""
        for subdir in [
            *(f"{COMPONENTS_DIR}/{t}" for t in COMPONENT_TYPES),
            PIPELINES_DIR,
            *(f"{ARCHIVE_DIR}/{COMPONENTS_DIR}/{t}" for t in COMPONENT_TYPES),
            f"{ARCHIVE_DIR}/{PIPELINES_DIR}",
            TMP_DIR,
        ]:
            (self.path / subdir).mkdir(parents=True, exist_ok=True)

        gitignore = self.path / ".gitignore"
        existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        present = {line.strip() for line in existing.splitlines()}
        missing = [line for line in GITIGNORE_LINES if line not in present]
        if missing:
            if existing and not existing.endswith("\n"):
                existing += "\n"
            _write_atomic(gitignore, existing + "\n".join(missing) + "\n")

        logger.info("Initialized library at %s", self.path)
        return self.path

    def require(self) -> None:
        """Raise LibraryError if the library has not been initialized."""
        if not self.exists():
            raise LibraryError(f"No library found at {self.path} (run 'pluqqy init')")

    def resolve_path(self, path: str) -> Path:
        """
        Map a logical path to a filesystem path inside the library.

        Raises:
            LibraryError: If the path is absolute or escapes the library
        """
        if not path:
            raise LibraryError("invalid path: empty")
        normalized = posixpath.normpath(path.replace("\\", "/"))
        if posixpath.isabs(normalized) or normalized == ".." or normalized.startswith("../"):
            raise LibraryError(f"invalid path {path!r}: contains directory traversal")
        return self.path / normalized

    def _stat(self, path: str) -> os.stat_result:
        try:
            return self.resolve_path(path).stat()
        except FileNotFoundError:
            raise LibraryError(f"not found: {path}") from None
        except OSError as e:
            raise LoadError(path, f"cannot stat: {e}") from e

    def _read_text(self, path: str) -> str:
        size = self._stat(path).st_size
        if size > MAX_FILE_SIZE:
            raise LoadError(path, f"file size {size} bytes exceeds maximum of {MAX_FILE_SIZE} bytes")
        try:
            return self.resolve_path(path).read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise LoadError(path, f"not valid UTF-8: {e}") from e
        except FileNotFoundError:
            raise LibraryError(f"not found: {path}") from None
        except OSError as e:
            raise LoadError(path, f"cannot read: {e}") from e

    def _mtime(self, path: str):
        return from_timestamp(self._stat(path).st_mtime)

    def _list_dir(self, rel_dir: str, suffixes: tuple[str, ...]) -> list[str]:
        directory = self.path / rel_dir
        if not directory.is_dir():
            return []
        return [
            f"{rel_dir}/{entry.name}"
            for entry in sorted(directory.iterdir(), key=lambda p: p.name)
            if entry.is_file() and not entry.name.startswith(".") and entry.suffix in suffixes
        ]

    # -- components -----------------------------------------------------

    def component_paths(self, type: Optional[str] = None, archived: bool = False) -> list[str]:
        """Logical paths of component files, sorted by type then filename."""
        types = [normalize_component_type(type)] if type else list(COMPONENT_TYPES)
        for t in types:
            if t not in COMPONENT_TYPES:
                raise LibraryError(f"unknown component type {type!r}")
        prefix = f"{ARCHIVE_DIR}/" if archived else ""
        paths = []
        for t in types:
            paths.extend(self._list_dir(f"{prefix}{COMPONENTS_DIR}/{t}", (".md",)))
        return paths

    def read_component(self, path: str) -> Component:
        """
        Load one component.

        Raises:
            LibraryError: If the file does not exist or the path is invalid
            LoadError: If the file is unreadable or its front-matter is malformed
        """
        text = self._read_text(path)
        try:
            meta, body = split_front_matter(text)
            tags = coerce_tags(meta.get("tags"))
        except ValueError as e:
            raise LoadError(path, str(e)) from e
        parts = strip_archive_prefix(path).split("/")
        ctype = parts[1] if len(parts) >= 3 and parts[0] == COMPONENTS_DIR else ""
        name = meta.get("name")
        return Component(
            path=path,
            type=ctype,
            name=str(name).strip() if name else name_from_filename(path),
            content=body,
            tags=tags,
            modified=self._mtime(path),
            archived=is_archived_path(path),
        )

    def list_components(self, type: Optional[str] = None, archived: bool = False) -> list[Component]:
        """Load components, skipping (and logging) any that fail to load."""
        components = []
        for path in self.component_paths(type, archived):
            try:
                components.append(self.read_component(path))
            except LibraryError as e:
                logger.warning("Skipping component: %s", e)
        return components

    def write_component(self, component: Component) -> None:
        """Write a component with its name and tags as front-matter."""
        full = self.resolve_path(component.path)
        name = component.name
        if name == name_from_filename(component.path):
            name = None
        _write_atomic(full, format_front_matter(component.content, name, component.tags))
        logger.info("Wrote component %s", component.path)

    def create_component(self, type: str, name: str, content: str = "",
                         tags: Optional[list[str]] = None) -> Component:
        """
        Create a new active component named ``name``.

        Raises:
            LibraryError: For an unknown type or if the file already exists
        """
        ctype = normalize_component_type(type)
        if ctype not in COMPONENT_TYPES:
            raise LibraryError(f"unknown component type {type!r} (expected context, prompt or rule)")
        path = f"{COMPONENTS_DIR}/{ctype}/{slugify(name)}.md"
        if self.resolve_path(path).exists():
            raise LibraryError(f"component already exists: {path}")
        component = Component(path=path, type=ctype, name=name.strip(), content=content, tags=list(tags or []))
        self.write_component(component)
        return self.read_component(path)

    def update_tags(self, path: str, tags: list[str]) -> Union[Component, Pipeline]:
        """Replace the tags of a component or pipeline, leaving the rest untouched."""
        if is_pipeline_path(path):
            pipeline = self.read_pipeline(path)
            pipeline.tags = list(tags)
            self.write_pipeline(pipeline)
            return pipeline
        component = self.read_component(path)
        component.tags = list(tags)
        self.write_component(component)
        return self.read_component(path)

    # -- pipelines ------------------------------------------------------

    def pipeline_paths(self, archived: bool = False) -> list[str]:
        prefix = f"{ARCHIVE_DIR}/" if archived else ""
        return self._list_dir(f"{prefix}{PIPELINES_DIR}", _PIPELINE_SUFFIXES)

    def read_pipeline(self, path: str) -> Pipeline:
        """
        Load one pipeline.

        Raises:
            LibraryError: If the file does not exist or the path is invalid
            LoadError: If the YAML is malformed or has the wrong shape
        """
        text = self._read_text(path)
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise LoadError(path, f"invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise LoadError(path, "pipeline must be a YAML mapping")

        refs = []
        raw_components = data.get("components") or []
        if not isinstance(raw_components, list):
            raise LoadError(path, "components must be a list")
        for i, entry in enumerate(raw_components):
            if not isinstance(entry, dict) or not entry.get("path"):
                raise LoadError(path, f"component #{i + 1} has no path")
            try:
                order = int(entry.get("order", i + 1))
            except (TypeError, ValueError):
                raise LoadError(path, f"component #{i + 1} has a non-integer order") from None
            ref_path = str(entry["path"])
            ctype = entry.get("type")
            if not ctype:
                ctype = ref_to_component_path(ref_path).split("/")[-2]
            refs.append(ComponentRef(type=normalize_component_type(str(ctype)), path=ref_path, order=order))

        try:
            tags = coerce_tags(data.get("tags"))
        except ValueError as e:
            raise LoadError(path, str(e)) from e
        name = data.get("name")
        return Pipeline(
            name=str(name).strip() if name else name_from_filename(path),
            path=path,
            components=refs,
            tags=tags,
            output_path=data.get("output_path") or None,
            modified=self._mtime(path),
            archived=is_archived_path(path),
        )

    def list_pipelines(self, archived: bool = False) -> list[Pipeline]:
        """Load pipelines, skipping (and logging) any that fail to load."""
        pipelines = []
        for path in self.pipeline_paths(archived):
            try:
                pipelines.append(self.read_pipeline(path))
            except LibraryError as e:
                logger.warning("Skipping pipeline: %s", e)
        return pipelines

    def write_pipeline(self, pipeline: Pipeline) -> None:
        if not pipeline.path:
            pipeline.path = f"{PIPELINES_DIR}/{slugify(pipeline.name)}.yaml"
        full = self.resolve_path(pipeline.path)
        text = yaml.safe_dump(pipeline.to_dict(), sort_keys=False, allow_unicode=True)
        _write_atomic(full, text)
        logger.info("Wrote pipeline %s", pipeline.path)

    def create_pipeline(self, name: str, components: list[str],
                        tags: Optional[list[str]] = None) -> Pipeline:
        """
        Create a pipeline from logical component paths, in the given order.

        Raises:
            LibraryError: If a component does not exist or the pipeline already exists
        """
        path = f"{PIPELINES_DIR}/{slugify(name)}.yaml"
        if self.resolve_path(path).exists():
            raise LibraryError(f"pipeline already exists: {path}")
        refs = []
        for order, component_path in enumerate(components, start=1):
            if not self.resolve_path(component_path).is_file():
                raise LibraryError(f"not found: {component_path}")
            ctype = component_path.split("/")[-2]
            refs.append(ComponentRef(ctype, component_path_to_ref(component_path), order))
        pipeline = Pipeline(name=name.strip(), path=path, components=refs, tags=list(tags or []))
        self.write_pipeline(pipeline)
        return self.read_pipeline(path)

    # -- archive / restore / delete -------------------------------------

    def archive(self, path: str) -> str:
        """
        Move an active item into archive/. Returns the new logical path.

        Raises:
            LibraryError: If the item is missing, already archived, or the
                archive already holds a file with that name
        """
        if is_archived_path(path):
            raise LibraryError(f"already archived: {path}")
        return self._move(path, f"{ARCHIVE_DIR}/{path}")

    def restore(self, path: str) -> str:
        """Move an archived item back to its active location. Returns the new path."""
        if not is_archived_path(path):
            raise LibraryError(f"not archived: {path}")
        return self._move(path, strip_archive_prefix(path))

    def _move(self, source: str, target: str) -> str:
        src = self.resolve_path(source)
        dst = self.resolve_path(target)
        if not src.is_file():
            raise LibraryError(f"not found: {source}")
        if dst.exists():
            raise LibraryError(f"cannot move {source}: {target} already exists")
        dst.parent.mkdir(parents=True, exist_ok=True)
        os.replace(src, dst)
        logger.info("Moved %s -> %s", source, target)
        return target

    def delete(self, path: str) -> None:
        """Delete an item's file."""
        full = self.resolve_path(path)
        if not full.is_file():
            raise LibraryError(f"not found: {path}")
        full.unlink()
        logger.info("Deleted %s", path)

    def remove_component_references(self, component_path: str) -> list[str]:
        """
        Drop references to a component from every active pipeline.

        Returns:
            Names of the pipelines that were changed
        """
        target = strip_archive_prefix(component_path)
        changed = []
        for pipeline in self.list_pipelines():
            kept = [ref for ref in pipeline.components if ref_to_component_path(ref.path) != target]
            if len(kept) != len(pipeline.components):
                pipeline.components = kept
                self.write_pipeline(pipeline)
                changed.append(pipeline.name)
        return changed

    def update_component_references(self, old_path: str, new_path: str) -> list[str]:
        """
        Point every pipeline reference to ``old_path`` at ``new_path``.

        Active and archived pipelines are both rewritten. References always
        name the active location, so archive prefixes are ignored.

        Returns:
            Names of the pipelines that were changed
        """
        old_target = strip_archive_prefix(old_path)
        new_ref = component_path_to_ref(strip_archive_prefix(new_path))
        changed = []
        for archived in (False, True):
            for pipeline in self.list_pipelines(archived=archived):
                modified = False
                for ref in pipeline.components:
                    if ref_to_component_path(ref.path) == old_target:
                        ref.path = new_ref
                        modified = True
                if modified:
                    self.write_pipeline(pipeline)
                    changed.append(pipeline.name)
        return changed

    # -- rename ---------------------------------------------------------

    def rename(self, path: str, new_name: str) -> tuple[str, list[str]]:
        """
        Give a component or pipeline a new display name and a matching filename.

        The item stays in its directory (active or archived). Renaming a
        component rewrites the references of every pipeline that uses it.

        Returns:
            (new logical path, names of pipelines whose references changed)

        Raises:
            LibraryError: If the name is empty, the item is missing, or
                another file already has the new filename
        """
        new_name = new_name.strip()
        if not new_name:
            raise LibraryError("new name cannot be empty")
        directory, filename = posixpath.split(path)
        new_path = posixpath.join(directory, slugify(new_name) + posixpath.splitext(filename)[1])
        if new_path != path and self.resolve_path(new_path).exists():
            raise LibraryError(f"cannot rename {path}: {new_path} already exists")

        item = self.read(path)
        item.name = new_name
        item.path = new_path
        if isinstance(item, Pipeline):
            self.write_pipeline(item)
        else:
            self.write_component(item)
        if new_path == path:
            logger.info("Renamed %s to %r", path, new_name)
            return path, []

        self.resolve_path(path).unlink()
        logger.info("Renamed %s -> %s", path, new_path)
        if is_pipeline_path(path):
            return new_path, []
        return new_path, self.update_component_references(path, new_path)

    # -- references -----------------------------------------------------

    def component_usage(self) -> dict[str, int]:
        """Number of active pipelines referencing each component path."""
        usage: dict[str, int] = {}
        for pipeline in self.list_pipelines():
            for target in {ref_to_component_path(ref.path) for ref in pipeline.components}:
                usage[target] = usage.get(target, 0) + 1
        return usage

    def tag_usage(self) -> dict[str, TagUsage]:
        """
        Count the active components and pipelines carrying each tag.

        Tags are normalized, so "Error Handling" and "error-handling" are
        one entry. Keys are sorted.
        """
        usage: dict[str, TagUsage] = {}
        for component in self.list_components():
            for tag in {normalize_tag(t) for t in component.tags} - {""}:
                usage.setdefault(tag, TagUsage()).components += 1
        for pipeline in self.list_pipelines():
            for tag in {normalize_tag(t) for t in pipeline.tags} - {""}:
                usage.setdefault(tag, TagUsage()).pipelines += 1
        return dict(sorted(usage.items()))

    def find_affected_pipelines(self, component_path: str) -> tuple[list[str], list[str]]:
        """
        Find pipelines that reference a component.

        Returns:
            (active pipeline names, archived pipeline names)
        """
        target = strip_archive_prefix(component_path)
        found: tuple[list[str], list[str]] = ([], [])
        for bucket, archived in ((found[0], False), (found[1], True)):
            for pipeline in self.list_pipelines(archived=archived):
                if any(ref_to_component_path(ref.path) == target for ref in pipeline.components):
                    bucket.append(pipeline.name)
        return found

    def resolve(self, ref: str, include_archived: bool = True) -> str:
        """
        Resolve a user-supplied reference to one logical path.

        Accepts a logical path ("components/prompts/api.md"), a path
        without the components/ prefix ("prompts/api.md"), a filename or
        stem ("api.md", "api"), or a display name ("API Prompt").
        Active items win over archived ones with the same reference.

        Raises:
            LibraryError: If nothing matches or the reference is ambiguous
        """
        ref = ref.strip()
        if not ref:
            raise LibraryError("empty reference")

        direct = ref.replace("\\", "/")
        if direct.startswith("./"):
            direct = direct[2:]
        for candidate in (direct, f"{COMPONENTS_DIR}/{direct}"):
            if self.resolve_path(candidate).is_file():
                return posixpath.normpath(candidate)

        active = self.component_paths() + self.pipeline_paths()
        archived = (self.component_paths(archived=True) + self.pipeline_paths(archived=True)) if include_archived else []

        for paths in (active, archived):
            matches = self._match_reference(ref, paths)
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise LibraryError(
                    f"ambiguous reference {ref!r}; matches: {', '.join(matches)}"
                )
        raise LibraryError(f"not found: {ref}")

    def _match_reference(self, ref: str, paths: list[str]) -> list[str]:
        lowered = ref.lower()
        by_file = []
        for path in paths:
            filename = path.rsplit("/", 1)[-1]
            stem = filename.rsplit(".", 1)[0]
            if lowered in (filename.lower(), stem.lower()) or slugify(ref) == stem.lower():
                by_file.append(path)
        if by_file:
            return by_file
        by_name = []
        for path in paths:
            try:
                name = (self.read_pipeline(path) if is_pipeline_path(path) else self.read_component(path)).name
            except LoadError:
                continue
            if name.lower() == lowered:
                by_name.append(path)
        return by_name

    def read(self, path: str) -> Union[Component, Pipeline]:
        """Read a component or pipeline by logical path."""
        if is_pipeline_path(path):
            return self.read_pipeline(path)
        return self.read_component(path)

    # -- search source --------------------------------------------------

    def iter_items(self, include_archived: bool = False) -> Iterator[SearchItem]:
        """
        Enumerate searchable items: components first, then pipelines.

        Unloadable files are skipped with a warning. Archived items are
        only read when ``include_archived`` is set.
        """
        usage = self.component_usage()
        component_tokens: dict[str, int] = {}
        states = (False, True) if include_archived else (False,)

        for archived in states:
            for component in self.list_components(archived=archived):
                tokens = estimate_tokens(component.content)
                component_tokens[component.path] = tokens
                yield SearchItem(
                    kind=KIND_COMPONENT,
                    subkind=component.type,
                    path=component.path,
                    name=component.name,
                    tags=tuple(component.tags),
                    content=component.content,
                    modified=component.modified,
                    archived=component.archived,
                    token_count=tokens,
                    usage_count=usage.get(strip_archive_prefix(component.path), 0),
                )

        for archived in states:
            for pipeline in self.list_pipelines(archived=archived):
                refs = pipeline.sorted_components()
                yield SearchItem(
                    kind=KIND_PIPELINE,
                    path=pipeline.path,
                    name=pipeline.name,
                    tags=tuple(pipeline.tags),
                    content=" ".join(ref.path for ref in refs),
                    modified=pipeline.modified,
                    archived=pipeline.archived,
                    token_count=sum(
                        component_tokens.get(ref_to_component_path(ref.path), 0) for ref in refs
                    ),
                )
