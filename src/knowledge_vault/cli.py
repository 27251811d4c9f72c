#!/usr/bin/env python3
"""
kvault: CLI for the knowledge vault

Usage:
    kvault lookup "React"                       # Read a topic
    kvault update "React" --content "..."       # Create or update a topic
    kvault related "React"                      # Show relations
    kvault history "React"                      # Version history
    kvault serve                                # Run the MCP server (stdio)
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
from click.exceptions import UsageError
from pydantic import BaseModel

from . import __version__ as KVAULT_VERSION
from .config import (
    DEFAULT_CONTENT_TYPE,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_RELATION_STRENGTH,
    DEFAULT_SEARCH_LIMIT,
    MAX_HISTORY_LIMIT,
    MAX_SEARCH_LIMIT,
    ConfigurationError,
    get_db_path,
)
from .errors import ErrorCode, VaultError, format_error_json
from .store import KnowledgeStore


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


def _to_jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, list):
        return [_to_jsonable(item) for item in data]
    return data


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(_to_jsonable(data), indent=2, default=str))
    else:
        click.echo(data)


def _handle_error(ctx: click.Context, error: Exception) -> NoReturn:
    """Report an error (as JSON with --json-errors) and exit 1."""
    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False

    if isinstance(error, VaultError):
        if json_errors:
            click.echo(error.to_json(), err=True)
        else:
            click.echo(f"Error: {error.message}", err=True)
    else:
        if json_errors:
            click.echo(format_error_json(ErrorCode.INVALID_ARGUMENT, str(error)), err=True)
        else:
            click.echo(f"Error: {error}", err=True)

    sys.exit(1)


def _get_store(ctx: click.Context) -> KnowledgeStore:
    obj = ctx.find_root().obj
    store = obj.get("store")
    if store is None:
        try:
            db_path = obj.get("db_path") or get_db_path()
        except ConfigurationError as e:
            _handle_error(ctx, e)
        store = KnowledgeStore.open(db_path)
        obj["store"] = store
        ctx.find_root().call_on_close(store.close)
    return store


def _run(ctx: click.Context, coro_factory):
    """Run a core coroutine against the store, routing VaultErrors to _handle_error."""
    store = _get_store(ctx)
    try:
        return run_async(coro_factory(store))
    except VaultError as e:
        _handle_error(ctx, e)


def _read_content(content: str | None, file: Path | None) -> str:
    if content is not None and file is not None:
        raise UsageError("Use either --content or --file, not both")
    if file is not None:
        if str(file) == "-":
            return sys.stdin.read()
        return file.read_text(encoding="utf-8")
    if content is None:
        raise UsageError("Provide --content or --file")
    return content


def _format_category(category: str | None) -> str:
    return f" (in {category})" if category else ""


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=KVAULT_VERSION, prog_name="kvault")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="KVAULT_DB_PATH",
    help="SQLite database path (default: ./knowledge.db)",
)
@click.option(
    "--json-errors",
    "json_errors",
    is_flag=True,
    help="Output errors as JSON (for programmatic use)",
)
@click.pass_context
def cli(ctx: click.Context, db_path: Path | None, json_errors: bool):
    """kvault: CLI for the knowledge vault.

    \b
    Read:
      kvault lookup "TypeScript"
      kvault search "type inference"
      kvault list
    \b
    Write:
      kvault update "TypeScript" --content "Typed superset of JavaScript"
      kvault relate "TypeScript" "JavaScript" compiles_to --strength 0.9
    """
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["json_errors"] = json_errors


@cli.command()
@click.pass_context
def serve(ctx: click.Context):
    """Run the MCP server over stdio."""
    from . import server

    db_path = ctx.obj.get("db_path")
    if db_path:
        os.environ["KVAULT_DB_PATH"] = str(db_path)
    server.main()


@cli.command()
@click.argument("topic")
@click.option("--category", "-c", help="Category the topic belongs to")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def lookup(ctx: click.Context, topic: str, category: str | None, as_json: bool):
    """Show the content of a topic."""
    from .core import look_up

    found = _run(ctx, lambda store: look_up(store, topic, category))
    if as_json:
        output(found, as_json=True)
        return
    status = "" if found.is_active else " [inactive]"
    click.echo(f"# {found.name}{_format_category(found.category)}{status}\n")
    click.echo(found.content)


@cli.command()
@click.argument("query")
@click.option("--category", "-c", help="Only search within this category")
@click.option(
    "--limit",
    "-n",
    default=DEFAULT_SEARCH_LIMIT,
    type=click.IntRange(1, MAX_SEARCH_LIMIT),
    help="Max results",
)
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive topics")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search(
    ctx: click.Context,
    query: str,
    category: str | None,
    limit: int,
    include_inactive: bool,
    as_json: bool,
):
    """Find topics containing every term of QUERY."""
    from .core import search as core_search

    response = _run(
        ctx,
        lambda store: core_search(
            store, query, category=category, limit=limit, include_inactive=include_inactive
        ),
    )
    if as_json:
        output(response, as_json=True)
        return
    if not response.results:
        click.echo(f'No results found for query "{query}"{_format_category(category)}')
        return
    click.echo(f'# Search Results for "{query}"\n\nFound {len(response.results)} results:\n')
    blocks = [f"## {hit.topic}\nPath: {hit.path}\n\n{hit.snippet}" for hit in response.results]
    click.echo("\n\n---\n\n".join(blocks))


@cli.command()
@click.argument("topic")
@click.option("--content", help="Markdown content to store")
@click.option(
    "--file",
    "-f",
    type=click.Path(dir_okay=False, allow_dash=True, path_type=Path),
    help="Read content from a file ('-' for stdin)",
)
@click.option("--category", "-c", help="Category to place the topic in")
@click.option("--user", default="system", show_default=True, help="User making the change")
@click.option("--comment", "-m", help="Comment about the change")
@click.option("--content-type", help=f"Content type tag (default for new topics: {DEFAULT_CONTENT_TYPE})")
@click.option(
    "--no-detect",
    "no_detect",
    is_flag=True,
    help="Do not record mentions of other topics as relations",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def update(
    ctx: click.Context,
    topic: str,
    content: str | None,
    file: Path | None,
    category: str | None,
    user: str,
    comment: str | None,
    content_type: str | None,
    no_detect: bool,
    as_json: bool,
):
    """Create or update TOPIC."""
    from .core import update_topic

    body = _read_content(content, file)
    result = _run(
        ctx,
        lambda store: update_topic(
            store,
            topic,
            body,
            category=category,
            user=user,
            comment=comment,
            content_type=content_type,
            detect_references=not no_detect,
        ),
    )
    if as_json:
        output(result, as_json=True)
        return
    click.echo(
        f'Successfully {result.action} information for "{result.topic}"'
        f"{_format_category(result.category)}"
    )
    for ref in result.references:
        click.echo(f"  references {ref.name} (confidence: {ref.confidence:.2f})")


@cli.command("list")
@click.option("--category", "-c", help="Only list topics in this category")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive topics")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def list_cmd(ctx: click.Context, category: str | None, include_inactive: bool, as_json: bool):
    """List topics grouped by category."""
    from .core import list_topics

    listing = _run(
        ctx, lambda store: list_topics(store, category=category, include_inactive=include_inactive)
    )
    if as_json:
        output(listing.groups, as_json=True)
        return
    lines = ["# Available Topics", ""]
    for label, names in listing.groups.items():
        lines.append(f"## {label}")
        lines.append("")
        lines.extend(f"- {name}" for name in names)
        lines.append("")
    if not listing.groups:
        lines.append("No topics found.")
    click.echo("\n".join(lines))


@cli.command()
@click.argument("source")
@click.argument("target")
@click.argument("relation_type")
@click.option(
    "--strength",
    "-s",
    default=DEFAULT_RELATION_STRENGTH,
    type=click.FloatRange(0.0, 1.0),
    show_default=True,
    help="Relationship strength from 0 to 1",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def relate(
    ctx: click.Context,
    source: str,
    target: str,
    relation_type: str,
    strength: float,
    as_json: bool,
):
    """Create or update a relation SOURCE -[RELATION_TYPE]-> TARGET."""
    from .core import create_relation

    result = _run(
        ctx, lambda store: create_relation(store, source, target, relation_type, strength)
    )
    if as_json:
        output(result, as_json=True)
        return
    click.echo(
        f'Relationship created: "{result.source}" {result.relation_type} '
        f'"{result.target}" (strength: {result.strength})'
    )


@cli.command()
@click.argument("topic")
@click.option("--type", "-t", "relation_types", multiple=True, help="Filter by relation type (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def related(ctx: click.Context, topic: str, relation_types: tuple[str, ...], as_json: bool):
    """Show topics TOPIC relates to, strongest first."""
    from .core import get_related

    relations = _run(ctx, lambda store: get_related(store, topic, list(relation_types) or None))
    if as_json:
        output(relations, as_json=True)
        return
    if not relations:
        click.echo(f'No related topics found for "{topic}".')
        return
    click.echo(f'# Topics Related to "{topic}"\n')
    for rel in relations:
        click.echo(
            f"- **{rel.topic}**{_format_category(rel.category)}: "
            f"{rel.relation_type} (strength: {rel.strength * 100:.0f}%)"
        )


@cli.command()
@click.argument("topic")
@click.option(
    "--limit",
    "-n",
    default=DEFAULT_HISTORY_LIMIT,
    type=click.IntRange(1, MAX_HISTORY_LIMIT),
    help="Maximum number of versions to show",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def history(ctx: click.Context, topic: str, limit: int, as_json: bool):
    """Show the version history of TOPIC."""
    from .core import view_history

    view = _run(ctx, lambda store: view_history(store, topic, limit=limit))
    if as_json:
        output(view, as_json=True)
        return
    if not view.versions:
        click.echo(f'No history found for topic "{topic}".')
        return
    click.echo(f'# Version History for "{view.topic}"{_format_category(view.category)}\n')
    for entry in view.versions:
        click.echo(f"### Version {entry.version}")
        click.echo(f"- **Date:** {entry.changed_at}")
        click.echo(f"- **Editor:** {entry.changed_by}")
        click.echo(f"- **Comment:** {entry.change_comment or 'No comment'}")
        click.echo(f"- **Content Size:** {entry.content_length} characters\n")


@cli.command()
@click.argument("topic")
@click.argument("number", type=click.IntRange(min=1))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def version(ctx: click.Context, topic: str, number: int, as_json: bool):
    """Print the content of version NUMBER of TOPIC (1 is the oldest)."""
    from .core import get_version

    snapshot = _run(ctx, lambda store: get_version(store, topic, number))
    if as_json:
        output(snapshot, as_json=True)
        return
    click.echo(snapshot.content)


def _set_active(ctx: click.Context, topic: str, category: str | None, active: bool) -> None:
    from .core import set_active

    updated = _run(ctx, lambda store: set_active(store, topic, active, category=category))
    state = "active" if updated.is_active else "inactive"
    click.echo(f'"{updated.name}"{_format_category(updated.category)} is now {state}')


@cli.command()
@click.argument("topic")
@click.option("--category", "-c", help="Category the topic belongs to")
@click.pass_context
def activate(ctx: click.Context, topic: str, category: str | None):
    """Mark TOPIC active."""
    _set_active(ctx, topic, category, True)


@cli.command()
@click.argument("topic")
@click.option("--category", "-c", help="Category the topic belongs to")
@click.pass_context
def deactivate(ctx: click.Context, topic: str, category: str | None):
    """Mark TOPIC inactive (hidden from list and search)."""
    _set_active(ctx, topic, category, False)


@cli.command()
@click.option("--content", help="Content to scan")
@click.option(
    "--file",
    "-f",
    type=click.Path(dir_okay=False, allow_dash=True, path_type=Path),
    help="Read content from a file ('-' for stdin)",
)
@click.option("--exclude", help="Topic name to leave out (usually the topic being written)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def detect(
    ctx: click.Context,
    content: str | None,
    file: Path | None,
    exclude: str | None,
    as_json: bool,
):
    """Preview which topics some content would reference."""
    from .core import detect_references

    body = _read_content(content, file)
    mentions = _run(ctx, lambda store: detect_references(store, body, exclude_topic=exclude))
    if as_json:
        output(mentions, as_json=True)
        return
    if not mentions:
        click.echo("No topic mentions found.")
        return
    for mention in mentions:
        click.echo(f"{mention.confidence:.1f}  {mention.name}")


@cli.command("export")
@click.argument("destination", type=click.Path(path_type=Path))
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["json", "markdown"]),
    default="json",
    show_default=True,
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def export_cmd(ctx: click.Context, destination: Path, fmt: str, as_json: bool):
    """Export the vault to DESTINATION (a file for json, a directory for markdown)."""
    from .core import export_vault

    result = _run(ctx, lambda store: export_vault(store, destination, fmt))
    if as_json:
        output(result, as_json=True)
        return
    click.echo(
        f"Exported {result.topics} topics, {result.categories} categories and "
        f"{result.relations} relations to {result.destination}"
    )


@cli.command("import")
@click.argument("source", type=click.Path(exists=True, path_type=Path))
@click.option("--detect", "detect_refs", is_flag=True, help="Run reference detection on imported content")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def import_cmd(ctx: click.Context, source: Path, detect_refs: bool, as_json: bool):
    """Import a JSON export file or markdown export directory."""
    from .core import import_vault

    result = _run(ctx, lambda store: import_vault(store, source, detect_references=detect_refs))
    if as_json:
        output(result, as_json=True)
        return
    click.echo(
        f"Imported {result.topics_created} new and {result.topics_updated} updated topics, "
        f"{result.relations} relations"
    )
    for error in result.errors:
        click.echo(f"Warning: {error}", err=True)


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def main():
    """Entry point for kvault CLI."""
    from ._logging import configure_logging

    configure_logging()
    cli()


if __name__ == "__main__":
    main()
