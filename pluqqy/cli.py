"""
CLI interface for the prompt library.

Usage:
    pluqqy init
    pluqqy search "tag:api AND type:prompt"
    pluqqy set my-pipeline
    pluqqy export my-pipeline > prompt.md
    pluqqy archive "Security Rules"
"""

import json
import logging
import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Optional

import tomli_w
import typer
import yaml
from typing_extensions import Annotated

from .composer import compose_component, compose_pipeline, output_path_for, write_output
from .config import DEFAULT_EDITOR, load_or_create_settings, load_settings_or_default
from .errors import LibraryError, ParseError, PluqqyError
from .library import ARCHIVE_DIR, Library, is_archived_path, is_pipeline_path
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from .search import SearchEngine, SearchResult
from .search.index import SearchItem
from .search.ranking import SORT_ORDERS, SORT_RELEVANCE
from .types import COMPONENT_TYPES, estimate_tokens, format_token_count, normalize_component_type

OUTPUT_FORMATS = ("text", "json", "yaml")

# Display order for grouped output
_GROUP_ORDER = ("pipeline", "context", "prompt", "rule")

_EXCERPT_WIDTH = 70


# Quiet by default; PLUQQY_VERBOSE=1 enables debug mode via environment
if os.environ.get("PLUQQY_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"pluqqy {version('pluqqy')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_root_override: Optional[Path] = None
_ops_handler: Optional[logging.Handler] = None


def _root_callback(value: Optional[Path]):
    global _root_override
    _root_override = value
    return value


def _get_root() -> Path:
    if _root_override is not None:
        return _root_override
    env_root = os.environ.get("PLUQQY_ROOT")
    return Path(env_root) if env_root else Path.cwd()


app = typer.Typer(
    name="pluqqy",
    help="Compose reusable LLM prompt components into pipelines.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    root: Annotated[Optional[Path], typer.Option(
        "--root", "-r",
        envvar="PLUQQY_ROOT",
        help="Project directory containing .pluqqy/ (default: current directory)",
        callback=_root_callback,
        is_eager=True,
    )] = None,
):
    """Compose reusable LLM prompt components into pipelines."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _fail(message) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _get_library(require: bool = True) -> Library:
    """Open the library for the current root, exiting if it isn't initialized."""
    library = Library(_get_root())
    if require and not library.exists():
        _fail(f"no .pluqqy directory found in {library.root}. Run 'pluqqy init' first")
    return library


def _enable_ops_log(library: Library) -> None:
    """Attach the rotating operations log for commands that change the library."""
    global _ops_handler
    target = os.path.abspath(library.path / "pluqqy-ops.log")
    if _ops_handler is not None:
        if getattr(_ops_handler, "baseFilename", None) == target:
            return
        logging.getLogger("pluqqy").removeHandler(_ops_handler)
        _ops_handler.close()
    _ops_handler = configure_ops_log(library.path)


def _check_format(output: str) -> None:
    if output not in OUTPUT_FORMATS:
        _fail(f"unknown output format {output!r} (expected one of: {', '.join(OUTPUT_FORMATS)})")


def _format(data, output: str) -> str:
    if output == "json":
        return json.dumps(data, indent=2, ensure_ascii=False)
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True).rstrip("\n")


def _emit(data, output: str) -> None:
    typer.echo(_format(data, output))


def _truncate(text: str, width: int) -> str:
    text = " ".join(text.split())
    if len(text) <= width:
        return text
    return text[:width - 3].rstrip() + "..."


def _resolve(library: Library, ref: str, include_archived: bool = True) -> str:
    try:
        return library.resolve(ref, include_archived=include_archived)
    except LibraryError as e:
        _fail(e)


def _complete_query(incomplete: str) -> list[str]:
    """Shell completion for search terms."""
    library = Library(_get_root())
    if not library.exists():
        return []
    try:
        return SearchEngine(library).suggest(incomplete)
    except (PluqqyError, OSError):
        return []


def _item_row(item: SearchItem) -> dict:
    return {
        "type": item.display_type,
        "name": item.name,
        "path": item.path,
        "tags": list(item.tags),
        "archived": item.archived,
        "tokens": item.token_count,
        "usage": item.usage_count,
        "modified": item.modified.isoformat(),
    }


def _render_groups(items: list[SearchItem], excerpts: dict[str, str]) -> list[str]:
    """Render items grouped as PIPELINES, CONTEXTS, PROMPTS, RULES."""
    lines: list[str] = []
    by_type: dict[str, list[SearchItem]] = {}
    for item in items:
        by_type.setdefault(item.display_type, []).append(item)

    for item_type in _GROUP_ORDER:
        group = by_type.get(item_type)
        if not group:
            continue
        lines.append("")
        lines.append(f"{item_type.upper()}S ({len(group)})")
        width = max(len(_display_name(i)) for i in group)
        for item in group:
            tags = ", ".join(item.tags) or "-"
            lines.append(f"  {_display_name(item).ljust(width)}  {tags}")
            excerpt = excerpts.get(item.path)
            if excerpt:
                lines.append(f"    └─ {_truncate(excerpt, _EXCERPT_WIDTH)}")
    return lines


def _display_name(item: SearchItem) -> str:
    return f"{item.name} [archived]" if item.archived else item.name


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

OutputOption = Annotated[
    str,
    typer.Option(
        "--output", "-o",
        help="Output format: text, json or yaml"
    )
]


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init():
    """
    Create the .pluqqy library in the project directory.

    Safe to run again: existing files are left alone.
    """
    library = _get_library(require=False)
    try:
        library.init()
        _enable_ops_log(library)
        load_or_create_settings(library.path)
    except (PluqqyError, OSError, ValueError) as e:
        _fail(e)
    typer.echo(f"Initialized pluqqy library in {library.path}")


@app.command()
def search(
    query: Annotated[list[str], typer.Argument(
        help="Search query",
        autocompletion=_complete_query,
    )],
    output: OutputOption = "text",
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n",
        help="Maximum results to return (default: search.max_results setting)"
    )] = None,
    sort: Annotated[str, typer.Option(
        "--sort",
        help="Sort order: relevance, name or modified"
    )] = SORT_RELEVANCE,
):
    """
    Search components and pipelines.

    \b
    Query syntax:
        tag:api              Items with a tag starting with "api"
        type:prompt          Prompts (also context, rule, pipeline, component)
        name:auth            Name contains "auth"
        content:"error"      Body contains "error" (bare words work too)
        modified:>7d         Changed within the last 7 days
        modified:<30d        Not changed for more than 30 days
        status:archived      Archived items (searched only when asked for)
    Combine with AND, OR and NOT (left to right); adjacent terms are ANDed.
    Units for modified: d, w (7d), m (30d), y (365d).

    \b
    Examples:
        pluqqy search "tag:api AND type:component"
        pluqqy search "tag:auth OR tag:security"
        pluqqy search "tag:api NOT tag:security" -o json
    """
    _check_format(output)
    if sort not in SORT_ORDERS:
        _fail(f"unknown sort order {sort!r} (expected one of: {', '.join(SORT_ORDERS)})")

    text = " ".join(query)
    library = _get_library()
    try:
        settings = load_settings_or_default(library.path)
        engine = SearchEngine(library)
        max_results = limit if limit is not None else settings.search.max_results
        results: list[SearchResult] = engine.search(text, limit=max_results, sort=sort)
    except ParseError as e:
        _fail(f"invalid query: {e}")
    except (PluqqyError, OSError, ValueError) as e:
        _fail(f"search failed: {e}")

    if output != "text":
        _emit({
            "query": text,
            "count": len(results),
            "results": [r.to_dict() for r in results],
        }, output)
        return

    if not results:
        typer.echo(f"No results found for query: {text}")
        return

    excerpts = {
        r.item.path: r.highlights["content"][0]
        for r in results if r.highlights.get("content")
    }
    typer.echo(f"\nSearch Results for: {text}")
    typer.echo("-" * 80)
    for line in _render_groups([r.item for r in results], excerpts):
        typer.echo(line)
    typer.echo(f"\nTotal: {len(results)} results")


@app.command("list")
def list_items(
    type: Annotated[Optional[str], typer.Option(
        "--type", "-t",
        help="Only this type: pipeline, context, prompt or rule"
    )] = None,
    archived: Annotated[bool, typer.Option(
        "--archived", "-a",
        help="List archived items instead of active ones"
    )] = False,
    output: OutputOption = "text",
):
    """List components and pipelines with tags, token estimates and usage."""
    _check_format(output)
    wanted = None
    if type:
        wanted = type.strip().lower()
        if wanted in ("pipeline", "pipelines"):
            wanted = "pipeline"
        else:
            wanted = normalize_component_type(wanted)
            if wanted not in COMPONENT_TYPES:
                _fail(f"unknown type {type!r} (expected pipeline, context, prompt or rule)")

    library = _get_library()
    try:
        items = [
            item for item in library.iter_items(include_archived=archived)
            if item.archived == archived
            and (wanted is None or item.kind == wanted or item.subkind == wanted)
        ]
    except (PluqqyError, OSError) as e:
        _fail(e)

    if output != "text":
        _emit([_item_row(item) for item in items], output)
        return

    if not items:
        typer.echo("No archived items." if archived else "No items. Create one with 'pluqqy create'.")
        return

    by_type: dict[str, list[SearchItem]] = {}
    for item in items:
        by_type.setdefault(item.display_type, []).append(item)
    for item_type in _GROUP_ORDER:
        group = by_type.get(item_type)
        if not group:
            continue
        typer.echo(f"\n{item_type.upper()}S ({len(group)})")
        width = max(len(i.name) for i in group)
        for item in group:
            tags = ", ".join(item.tags) or "-"
            usage = "" if item.is_pipeline else f"  used by {item.usage_count}"
            typer.echo(f"  {item.name.ljust(width)}  {format_token_count(item.token_count)}{usage}  [{tags}]")


@app.command()
def create(
    type: Annotated[str, typer.Argument(help="Component type: context, prompt or rule")],
    name: Annotated[str, typer.Argument(help="Display name")],
    tag: Annotated[Optional[list[str]], typer.Option(
        "--tag", "-t",
        help="Tag (repeatable)"
    )] = None,
    content: Annotated[Optional[str], typer.Option(
        "--content", "-c",
        help="Markdown body; '-' reads stdin"
    )] = None,
):
    """
    Create a component.

    \b
    Examples:
        pluqqy create prompt "API Prompt" -t api -c "Describe the endpoint."
        cat notes.md | pluqqy create context "Project Notes" -c -
    """
    body = content or ""
    if content == "-":
        body = sys.stdin.read()
    library = _get_library()
    _enable_ops_log(library)
    try:
        component = library.create_component(type, name, content=body, tags=tag or [])
    except (PluqqyError, OSError) as e:
        _fail(e)
    typer.echo(f"Created {component.path}")


@app.command()
def show(
    ref: Annotated[str, typer.Argument(help="Component or pipeline (name, filename or path)")],
):
    """Print a component, or a pipeline composed as it would be set."""
    library = _get_library()
    path = _resolve(library, ref)
    try:
        settings = load_settings_or_default(library.path)
        if is_pipeline_path(path):
            text = compose_pipeline(library, library.read_pipeline(path), settings)
        else:
            text = compose_component(library.read_component(path), settings)
    except (PluqqyError, OSError, ValueError) as e:
        _fail(e)
    typer.echo(text, nl=False)


@app.command("set")
def set_output(
    ref: Annotated[str, typer.Argument(help="Pipeline or component to activate")],
    output_file: Annotated[Optional[str], typer.Option(
        "--output-file", "-f",
        help="Write here instead of the configured output file"
    )] = None,
):
    """Compose a pipeline (or single component) into the output file (PLUQQY.md)."""
    library = _get_library()
    _enable_ops_log(library)
    path = _resolve(library, ref)
    try:
        settings = load_settings_or_default(library.path)
        if is_pipeline_path(path):
            pipeline = library.read_pipeline(path)
            text = compose_pipeline(library, pipeline, settings)
            target = output_path_for(library, settings, pipeline, output_file)
            name = pipeline.name
        else:
            component = library.read_component(path)
            text = compose_component(component, settings)
            target = output_path_for(library, settings, None, output_file)
            name = component.name
        write_output(target, text)
    except (PluqqyError, OSError, ValueError) as e:
        _fail(e)
    typer.echo(f"Set {name} -> {target} ({format_token_count(estimate_tokens(text))})")


@app.command()
def export(
    ref: Annotated[str, typer.Argument(help="Pipeline or component to export")],
    file: Annotated[Optional[Path], typer.Option(
        "--file", "-f",
        help="Write to this file instead of stdout"
    )] = None,
    output: OutputOption = "text",
):
    """
    Compose a pipeline or component to stdout or a file.

    With -o json or -o yaml the item's definition is exported instead
    of the composed text.

    \b
    Examples:
        pluqqy export api-pipeline > prompt.md
        pluqqy export prompts/api-prompt.md --file prompt.md
        pluqqy export api-pipeline -o yaml
    """
    _check_format(output)
    library = _get_library()
    path = _resolve(library, ref)
    try:
        item = library.read(path)
        if output != "text":
            text = _format(item.to_dict(), output) + "\n"
        elif is_pipeline_path(path):
            text = compose_pipeline(library, item, load_settings_or_default(library.path))
        else:
            text = compose_component(item, load_settings_or_default(library.path))
        if file is not None:
            write_output(file, text)
    except (PluqqyError, OSError, ValueError) as e:
        _fail(e)

    if file is None:
        typer.echo(text, nl=False)
        return
    kind = "Pipeline" if is_pipeline_path(path) else "Component"
    if output != "text":
        typer.echo(f"{kind} '{item.name}' exported to {file} ({output})")
    else:
        typer.echo(f"{kind} '{item.name}' exported to {file} ({format_token_count(estimate_tokens(text))})")


@app.command()
def edit(
    ref: Annotated[str, typer.Argument(help="Component or pipeline to edit")],
):
    """Open a component or pipeline in $EDITOR (or the editor.command setting)."""
    library = _get_library()
    _enable_ops_log(library)
    path = _resolve(library, ref)
    try:
        settings = load_settings_or_default(library.path)
    except ValueError as e:
        _fail(e)
    editor = settings.editor.command or os.environ.get("EDITOR") or DEFAULT_EDITOR
    command = shlex.split(editor) + [str(library.resolve_path(path))]
    try:
        result = subprocess.run(command, check=False)
    except FileNotFoundError:
        _fail(f"editor not found: {editor}")
    if result.returncode != 0:
        _fail(f"editor exited with status {result.returncode}")
    logging.getLogger(__name__).info("Edited %s", path)


@app.command()
def rename(
    ref: Annotated[str, typer.Argument(help="Component or pipeline to rename")],
    new_name: Annotated[str, typer.Argument(help="New display name")],
):
    """
    Rename a component or pipeline. The filename follows the new name.

    Pipelines that use a renamed component are updated to its new path.
    """
    library = _get_library()
    _enable_ops_log(library)
    path = _resolve(library, ref)
    try:
        new_path, changed = library.rename(path, new_name)
    except (PluqqyError, OSError) as e:
        _fail(e)
    typer.echo(f"Renamed {path} -> {new_path}")
    if changed:
        typer.echo(f"Updated references in: {', '.join(changed)}")


@app.command()
def archive(
    ref: Annotated[str, typer.Argument(help="Component or pipeline to archive")],
):
    """Move an item into the archive. Archived items only appear in status:archived searches."""
    library = _get_library()
    _enable_ops_log(library)
    path = _resolve(library, ref)
    if is_archived_path(path):
        _fail(f"already archived: {path}")
    try:
        if not is_pipeline_path(path):
            active, _ = library.find_affected_pipelines(path)
            if active:
                typer.echo(f"Warning: still used by pipelines: {', '.join(active)}", err=True)
        new_path = library.archive(path)
    except (PluqqyError, OSError) as e:
        _fail(e)
    typer.echo(f"Archived {path} -> {new_path}")


@app.command()
def restore(
    ref: Annotated[str, typer.Argument(help="Archived component or pipeline")],
):
    """Move an archived item back to the active library."""
    library = _get_library()
    _enable_ops_log(library)
    path = _resolve(library, ref)
    if not is_archived_path(path):
        _fail(f"not archived: {path}")
    try:
        new_path = library.restore(path)
    except (PluqqyError, OSError) as e:
        _fail(e)
    typer.echo(f"Restored {path} -> {new_path}")


@app.command()
def delete(
    ref: Annotated[str, typer.Argument(help="Component or pipeline to delete")],
    archived: Annotated[bool, typer.Option(
        "--archived", "-a",
        help="Delete the archived copy of the item"
    )] = False,
    force: Annotated[bool, typer.Option(
        "--force", "-f",
        help="Don't ask for confirmation"
    )] = False,
):
    """
    Delete an item permanently.

    Deleting an active component also removes it from the pipelines that use it.
    """
    library = _get_library()
    _enable_ops_log(library)
    path = _resolve(library, ref)
    if archived and not is_archived_path(path):
        archived_path = f"{ARCHIVE_DIR}/{path}"
        if not library.resolve_path(archived_path).is_file():
            _fail(f"not archived: {path}")
        path = archived_path
    try:
        affected: list[str] = []
        if not is_pipeline_path(path) and not is_archived_path(path):
            affected, _ = library.find_affected_pipelines(path)
        if not force:
            prompt = f"Delete {path}?"
            if affected:
                prompt = f"Delete {path}? It is used by: {', '.join(affected)}."
            typer.confirm(prompt, abort=True)
        library.delete(path)
        changed = library.remove_component_references(path) if affected else []
    except (PluqqyError, OSError) as e:
        _fail(e)
    typer.echo(f"Deleted {path}")
    if changed:
        typer.echo(f"Removed references from: {', '.join(changed)}")


@app.command()
def usage(
    ref: Annotated[Optional[str], typer.Argument(help="Component to look up")] = None,
    show_all: Annotated[bool, typer.Option(
        "--all", "-a",
        help="Show usage counts for every active component"
    )] = False,
    output: OutputOption = "text",
):
    """Show which pipelines use a component."""
    _check_format(output)
    if not ref and not show_all:
        _fail("specify a component or --all")
    library = _get_library()

    try:
        if show_all:
            counts = library.component_usage()
            rows = [
                {"path": p, "uses": counts.get(p, 0)}
                for p in library.component_paths()
            ]
            if output != "text":
                _emit(rows, output)
                return
            width = max((len(r["path"]) for r in rows), default=0)
            for row in rows:
                typer.echo(f"{row['path'].ljust(width)}  {row['uses']}")
            return

        path = _resolve(library, ref)
        if is_pipeline_path(path):
            _fail(f"{path} is a pipeline, not a component")
        active, archived = library.find_affected_pipelines(path)
    except (PluqqyError, OSError) as e:
        _fail(e)

    if output != "text":
        _emit({"component": path, "pipelines": active, "archived_pipelines": archived}, output)
        return
    if not active and not archived:
        typer.echo(f"{path} is not used by any pipeline")
        return
    typer.echo(f"{path} is used by:")
    for name in active:
        typer.echo(f"  {name}")
    for name in archived:
        typer.echo(f"  {name} [archived]")


@app.command()
def tags(
    output: OutputOption = "text",
):
    """List tags with the number of active components and pipelines using each."""
    _check_format(output)
    library = _get_library()
    try:
        usage = library.tag_usage()
    except (PluqqyError, OSError) as e:
        _fail(e)

    rows = [
        {"tag": tag, "components": u.components, "pipelines": u.pipelines, "total": u.total}
        for tag, u in usage.items()
    ]
    if output != "text":
        _emit(rows, output)
        return
    if not rows:
        typer.echo("No tags in use.")
        return
    width = max(len(row["tag"]) for row in rows)
    for row in rows:
        typer.echo(
            f"{row['tag'].ljust(width)}  {row['total']}"
            f"  ({row['components']} components, {row['pipelines']} pipelines)"
        )


@app.command()
def config(
    key: Annotated[Optional[str], typer.Argument(
        help="Dotted key to show, e.g. output.default_filename"
    )] = None,
):
    """Show library settings (pluqqy.toml)."""
    library = _get_library()
    try:
        data = load_settings_or_default(library.path).to_dict()
    except ValueError as e:
        _fail(e)
    if key is None:
        typer.echo(tomli_w.dumps(data).rstrip("\n"))
        return
    value = data
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            _fail(f"unknown setting {key!r}")
        value = value[part]
    if isinstance(value, dict):
        typer.echo(tomli_w.dumps(value).rstrip("\n"))
    elif isinstance(value, list):
        typer.echo(json.dumps(value, ensure_ascii=False))
    else:
        typer.echo(str(value))


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="pluqqy CLI", root=_get_root())
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
