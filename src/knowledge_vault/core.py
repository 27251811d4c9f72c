"""Core business logic for knowledge_vault.

The MCP server and the CLI are thin wrappers around these functions.

Design principles:
- All operations are async for a uniform call style from FastMCP and click
- The storage handle is always passed in explicitly
- Failures callers can act on are raised as VaultError
"""

import logging
import sqlite3
from pathlib import Path
from typing import Literal

from . import transfer
from .config import (
    DEFAULT_EDITOR,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_RELATION_STRENGTH,
    DEFAULT_SEARCH_LIMIT,
    MAX_HISTORY_LIMIT,
    MAX_SEARCH_LIMIT,
    SNIPPET_LENGTH,
    UNCATEGORIZED_LABEL,
)
from .crossref import apply_cross_references, detect_mentions, mentions_as_models, refresh_name_index
from .errors import ErrorCode, VaultError
from .models import (
    ExportResult,
    HistoryVersion,
    HistoryView,
    ImportResult,
    Mention,
    RelatedTopic,
    RelationResult,
    SearchHit,
    SearchResponse,
    Topic,
    TopicListing,
    UpdateResult,
    VersionContent,
)
from .store import KnowledgeStore, topic_to_slug

log = logging.getLogger(__name__)


def _require_topic_name(topic: str) -> str:
    name = (topic or "").strip()
    if not topic_to_slug(name).strip("-"):
        raise VaultError.invalid_argument(
            "Topic name must contain at least one letter or digit", topic=topic
        )
    return name


def _resolve_topic(store: KnowledgeStore, topic: str, category: str | None = None) -> Topic:
    found = store.find_topic(topic_to_slug(topic.strip()), category or None)
    if found is None:
        raise VaultError.topic_not_found(topic, category or None)
    return found


def _snippet(content: str) -> str:
    if len(content) <= SNIPPET_LENGTH:
        return content
    return content[:SNIPPET_LENGTH] + "..."


async def look_up(store: KnowledgeStore, topic: str, category: str | None = None) -> Topic:
    """Retrieve a topic by name, optionally restricted to a category."""
    return _resolve_topic(store, topic, category)


async def read_resource(store: KnowledgeStore, slug: str, category: str | None = None) -> str:
    """Content behind knowledge://[category/]slug."""
    if category:
        found = store.find_topic(slug, category)
    else:
        found = store.find_topic_in(slug, None)
    if found is None:
        path = f"{category}/{slug}" if category else slug
        raise VaultError(
            ErrorCode.TOPIC_NOT_FOUND,
            f"Resource not found: knowledge://{path}",
            {"slug": slug, "category": category},
        )
    return found.content


async def search(
    store: KnowledgeStore,
    query: str,
    category: str | None = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
    include_inactive: bool = False,
) -> SearchResponse:
    """Find topics whose name or content contains every term of the query."""
    if limit < 1:
        raise VaultError.invalid_argument("limit must be at least 1", limit=limit)
    limit = min(limit, MAX_SEARCH_LIMIT)

    terms = query.split()
    if not terms:
        return SearchResponse(query=query, category=category)

    topics = store.search_topics(
        terms,
        category=category or None,
        include_inactive=include_inactive,
        limit=limit,
    )
    hits = [
        SearchHit(
            topic=t.name,
            slug=t.slug,
            category=t.category,
            path=t.path,
            snippet=_snippet(t.content),
            is_active=t.is_active,
        )
        for t in topics
    ]
    return SearchResponse(query=query, category=category, results=hits)


async def update_topic(
    store: KnowledgeStore,
    topic: str,
    content: str,
    category: str | None = None,
    user: str = DEFAULT_EDITOR,
    comment: str | None = None,
    content_type: str | None = None,
    detect_references: bool = True,
) -> UpdateResult:
    """Create or replace a topic's content.

    The previous content of an existing topic is snapshotted to history
    first. When detect_references is set, mentions of other topics in the
    new content become references / referenced_by edges.

    The write and its edges share one transaction: if writing an edge fails
    the content write is rolled back too and STORAGE_ERROR is raised.
    """
    name = _require_topic_name(topic)
    slug = topic_to_slug(name)
    category = (category or "").strip() or None

    try:
        with store.transaction():
            category_id = store.get_or_create_category(category) if category else None
            existing = store.find_topic_in(slug, category_id)

            action: Literal["created", "updated"]
            if existing is not None:
                store.add_history(
                    existing.id,
                    content=existing.content,
                    changed_by=user,
                    comment=comment or "Update via API",
                )
                store.update_topic_content(existing.id, content=content, content_type=content_type)
                topic_id = existing.id
                action = "updated"
            else:
                topic_id = store.insert_topic(
                    name=name,
                    category_id=category_id,
                    content=content,
                    content_type=content_type,
                )
                store.add_history(
                    topic_id,
                    content=content,
                    changed_by=user,
                    comment=comment or "Initial creation",
                )
                action = "created"

            references = []
            if detect_references:
                mentions = detect_mentions(content, refresh_name_index(store))
                references = apply_cross_references(store, topic_id, mentions)
    except sqlite3.Error as e:
        log.error("Failed to write topic %r: %s", name, e)
        raise VaultError.storage_error("update", e) from e

    log.info(
        "%s topic %r%s (%d reference(s))",
        action.capitalize(),
        name,
        f" in {category!r}" if category else "",
        len(references),
    )
    return UpdateResult(
        topic=name,
        category=category,
        topic_id=topic_id,
        action=action,
        references=references,
        references_detected=detect_references,
    )


async def list_topics(
    store: KnowledgeStore,
    category: str | None = None,
    include_inactive: bool = False,
) -> TopicListing:
    """Topic names grouped by category; uncategorized topics come first."""
    groups: dict[str, list[str]] = {}
    for t in store.list_topics(category=category or None, include_inactive=include_inactive):
        label = t.category or UNCATEGORIZED_LABEL
        groups.setdefault(label, []).append(t.name)
    return TopicListing(groups=groups)


async def create_relation(
    store: KnowledgeStore,
    source_topic: str,
    target_topic: str,
    relation_type: str,
    strength: float = DEFAULT_RELATION_STRENGTH,
) -> RelationResult:
    """Create or update a relation between two topics, bypassing detection."""
    relation_type = (relation_type or "").strip()
    if not relation_type:
        raise VaultError.invalid_argument("relation type is required")
    if not 0.0 <= strength <= 1.0:
        raise VaultError.invalid_argument(
            "strength must be between 0 and 1", strength=strength
        )

    source = store.find_topic(topic_to_slug(source_topic.strip()))
    target = store.find_topic(topic_to_slug(target_topic.strip()))
    if source is None or target is None:
        missing = [name for name, t in ((source_topic, source), (target_topic, target)) if t is None]
        raise VaultError(
            ErrorCode.TOPIC_NOT_FOUND,
            "One or both topics not found.",
            {"missing": missing},
        )

    try:
        with store.transaction():
            store.upsert_relation(source.id, target.id, relation_type, strength)
    except sqlite3.Error as e:
        raise VaultError.storage_error("createRelation", e) from e

    log.info("Relation %r %s %r (%.2f)", source.name, relation_type, target.name, strength)
    return RelationResult(
        source=source.name,
        target=target.name,
        relation_type=relation_type,
        strength=strength,
    )


async def get_related(
    store: KnowledgeStore,
    topic: str,
    relation_types: list[str] | None = None,
) -> list[RelatedTopic]:
    """Outgoing relations of a topic, strongest first."""
    found = _resolve_topic(store, topic)
    return store.list_related(found.id, relation_types or None)


async def view_history(
    store: KnowledgeStore,
    topic: str,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> HistoryView:
    """Version history of a topic, newest first."""
    if not 1 <= limit <= MAX_HISTORY_LIMIT:
        raise VaultError.invalid_argument(
            f"limit must be between 1 and {MAX_HISTORY_LIMIT}", limit=limit
        )
    found = _resolve_topic(store, topic)
    total = store.count_history(found.id)
    entries = store.list_history(found.id, limit=limit)
    versions = [
        HistoryVersion(
            version=total - index,
            changed_at=entry.changed_at,
            changed_by=entry.changed_by,
            change_comment=entry.change_comment,
            content_length=len(entry.content),
        )
        for index, entry in enumerate(entries)
    ]
    return HistoryView(
        topic=found.name,
        category=found.category,
        total_versions=total,
        versions=versions,
    )


async def get_version(store: KnowledgeStore, topic: str, version: int) -> VersionContent:
    """Stored content of one history version (1 is the oldest)."""
    found = _resolve_topic(store, topic)
    entry = store.get_history_version(found.id, version)
    if entry is None:
        raise VaultError(
            ErrorCode.VERSION_NOT_FOUND,
            f'Version {version} not found for topic "{found.name}"',
            {"topic": found.name, "version": version, "total_versions": store.count_history(found.id)},
        )
    return VersionContent(
        topic=found.name,
        version=version,
        changed_at=entry.changed_at,
        changed_by=entry.changed_by,
        change_comment=entry.change_comment,
        content=entry.content,
    )


async def set_active(
    store: KnowledgeStore,
    topic: str,
    active: bool,
    category: str | None = None,
) -> Topic:
    """Mark a topic active or inactive. Inactive topics drop out of list/search."""
    found = _resolve_topic(store, topic, category)
    try:
        with store.transaction():
            store.set_topic_active(found.id, active)
    except sqlite3.Error as e:
        raise VaultError.storage_error("setActive", e) from e
    log.info("Topic %r is now %s", found.name, "active" if active else "inactive")
    updated = store.get_topic(found.id)
    if updated is None:
        raise VaultError.topic_not_found(topic, category or None)
    return updated


async def detect_references(
    store: KnowledgeStore,
    content: str,
    exclude_topic: str | None = None,
) -> list[Mention]:
    """Dry run: which topics would content reference? Nothing is written."""
    names = refresh_name_index(store)
    if exclude_topic:
        excluded = exclude_topic.strip().casefold()
        names = [n for n in names if n.casefold() != excluded]
    return mentions_as_models(detect_mentions(content, names))


async def export_vault(
    store: KnowledgeStore,
    destination: str | Path,
    format: Literal["json", "markdown"] = "json",
) -> ExportResult:
    """Export every topic, category and relation."""
    try:
        return transfer.export_vault(store, Path(destination), format)
    except OSError as e:
        raise VaultError.storage_error("export", e) from e


async def import_vault(
    store: KnowledgeStore,
    source: str | Path,
    detect_references: bool = False,
) -> ImportResult:
    """Import an export produced by export_vault (format chosen by path type)."""
    path = Path(source)
    if not path.exists():
        raise VaultError.invalid_argument(f"Import source not found: {path}", source=str(path))

    if path.is_dir():
        documents = transfer.read_markdown_export(path)
        fmt: Literal["json", "markdown"] = "markdown"
    else:
        documents = transfer.read_json_export(path)
        fmt = "json"

    result = ImportResult(source=str(path), format=fmt)
    try:
        with store.transaction():
            for name in documents.categories:
                store.get_or_create_category(name)
    except sqlite3.Error as e:
        raise VaultError.storage_error("import", e) from e

    imported: list[tuple[int, str]] = []
    for doc in documents.topics:
        written = await update_topic(
            store,
            doc.name,
            doc.content,
            category=doc.category,
            user=DEFAULT_EDITOR,
            comment="Imported",
            content_type=doc.content_type,
            detect_references=False,
        )
        imported.append((written.topic_id, doc.content))
        if written.action == "created":
            result.topics_created += 1
        else:
            result.topics_updated += 1
        try:
            with store.transaction():
                store.set_topic_active(written.topic_id, doc.active)
        except sqlite3.Error as e:
            raise VaultError.storage_error("import", e) from e

    # Detection runs once every topic exists, so file order does not matter.
    if detect_references and imported:
        names = refresh_name_index(store)
        try:
            with store.transaction():
                for topic_id, content in imported:
                    edges = apply_cross_references(store, topic_id, detect_mentions(content, names))
                    result.references += len(edges)
        except sqlite3.Error as e:
            raise VaultError.storage_error("import", e) from e

    for rel in documents.relations:
        source_topic = transfer.find_exported_topic(store, rel.source, rel.source_category)
        target_topic = transfer.find_exported_topic(store, rel.target, rel.target_category)
        if source_topic is None or target_topic is None:
            result.skipped_relations += 1
            result.errors.append(
                f"Relation {rel.source!r} -[{rel.type}]-> {rel.target!r}: topic not found"
            )
            continue
        if not 0.0 <= rel.strength <= 1.0:
            result.skipped_relations += 1
            result.errors.append(
                f"Relation {rel.source!r} -[{rel.type}]-> {rel.target!r}: "
                f"strength {rel.strength} outside [0, 1]"
            )
            continue
        try:
            with store.transaction():
                store.upsert_relation(source_topic.id, target_topic.id, rel.type, rel.strength)
        except sqlite3.Error as e:
            raise VaultError.storage_error("import", e) from e
        result.relations += 1

    log.info(
        "Imported %s: %d created, %d updated, %d relation(s)",
        path,
        result.topics_created,
        result.topics_updated,
        result.relations,
    )
    return result
