"""
Compose pipelines and single components into one Markdown document.
"""

import logging
from pathlib import Path
from typing import Optional

from .config import Settings
from .errors import LibraryError, LoadError
from .library import Library, is_archived_path, ref_to_component_path, write_text_atomic
from .types import Component, Pipeline, singular_type

logger = logging.getLogger(__name__)


def _fallback_heading(component_type: str) -> str:
    return f"## {singular_type(component_type).upper()}S" if component_type else "## OTHER"


def compose_pipeline(library: Library, pipeline: Pipeline, settings: Settings) -> str:
    """
    Compose a pipeline into Markdown.

    Components are read in ``order``, grouped by type, and emitted in the
    configured section order (types missing from the settings come last,
    in order of first appearance). References that can't be loaded are
    listed in a warning block at the top rather than failing the whole
    composition.

    Raises:
        LibraryError: If the pipeline has no components
    """
    if not pipeline.components:
        raise LibraryError(f"cannot compose pipeline '{pipeline.name}': no components defined")

    groups: dict[str, list[Component]] = {}
    missing: list[str] = []
    for ref in pipeline.sorted_components():
        path = ref_to_component_path(ref.path)
        try:
            component = library.read_component(path)
        except LoadError as e:
            logger.warning("Cannot load %s for pipeline %s: %s", ref.path, pipeline.name, e.reason)
            missing.append(ref.path)
            continue
        except LibraryError:
            missing.append(ref.path)
            continue
        if is_archived_path(path):
            logger.info("Pipeline %s uses archived component %s", pipeline.name, path)
        groups.setdefault(component.type or ref.type, []).append(component)

    formatting = settings.output.formatting
    parts = [f"# {pipeline.name}\n\n"]

    if missing:
        parts.append("⚠️ **Warning: Missing Components**\n\n")
        parts.append("The following components could not be found:\n")
        parts.extend(f"- {path}\n" for path in missing)
        parts.append("\nThese components may have been deleted or moved. Consider updating this pipeline.\n\n")
        parts.append("---\n\n")

    configured = [s.type for s in formatting.sections]
    order = configured + [t for t in groups if t not in configured]
    for component_type in order:
        components = groups.get(component_type)
        if not components:
            continue
        if formatting.show_headings:
            heading = formatting.heading_for(component_type) or _fallback_heading(component_type)
            parts.append(f"{heading}\n\n")
        for component in components:
            parts.append(component.content.strip())
            parts.append("\n\n")
        parts.append("\n")

    return "".join(parts)


def compose_component(component: Component, settings: Settings) -> str:
    """Compose a single component under its section heading."""
    parts = []
    formatting = settings.output.formatting
    if formatting.show_headings:
        heading = formatting.heading_for(component.type)
        if heading:
            parts.append(f"{heading}\n\n")
    parts.append(component.content)
    if not component.content.endswith("\n"):
        parts.append("\n")
    return "".join(parts)


def output_path_for(library: Library, settings: Settings, pipeline: Optional[Pipeline] = None,
                    override: Optional[str] = None) -> Path:
    """Where composed output goes: explicit override, pipeline output_path, then settings."""
    if override:
        return library.root / override
    if pipeline is not None and pipeline.output_path:
        return library.root / pipeline.output_path
    return settings.output_file(library.root)


def write_output(path: Path, content: str) -> Path:
    """Atomically write composed output. Returns the path written."""
    write_text_atomic(path, content)
    logger.info("Wrote composed output to %s", path)
    return path
