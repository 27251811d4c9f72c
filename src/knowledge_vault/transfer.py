"""Vault import and export.

Two on-disk formats:

- JSON: a single file holding categories, topics and relations.
- Markdown: one ``<category>/<slug>.md`` file per topic with a YAML header
  carrying the topic's metadata and its outgoing relations.

Relations refer to topics by (name, category) so exports survive a round
trip into a vault with different ids. Imported records are validated with
the document models below; anything malformed is an INVALID_FORMAT error.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Literal

import frontmatter
from frontmatter.default_handlers import YAMLHandler
from pydantic import BaseModel, Field, ValidationError

from .config import (
    DEFAULT_CONTENT_TYPE,
    DEFAULT_RELATION_STRENGTH,
    EXPORT_FORMAT_NAME,
    EXPORT_FORMAT_VERSION,
    UNCATEGORIZED_EXPORT_DIR,
)
from .errors import ErrorCode, VaultError
from .models import ExportResult, Topic
from .store import KnowledgeStore, topic_to_slug

log = logging.getLogger(__name__)

# Header written by write_markdown_export; the body is everything after it.
_HEADER_PATTERN = re.compile(r"\A---\n(.*?)\n---\n", re.DOTALL)

_yaml = YAMLHandler()


class TopicDocument(BaseModel):
    """A topic as it appears in an export."""

    name: str
    content: str
    category: str | None = None
    content_type: str = DEFAULT_CONTENT_TYPE
    active: bool = True


class RelationDocument(BaseModel):
    """A relation between two exported topics, addressed by name and category."""

    source: str
    target: str
    type: str
    strength: float = DEFAULT_RELATION_STRENGTH  # Range checked on import
    source_category: str | None = None
    target_category: str | None = None


class VaultDocuments(BaseModel):
    categories: list[str] = Field(default_factory=list)
    topics: list[TopicDocument] = Field(default_factory=list)
    relations: list[RelationDocument] = Field(default_factory=list)


def find_exported_topic(store: KnowledgeStore, name: str, category: str | None) -> Topic | None:
    """Locate the topic an exported (name, category) pair refers to."""
    slug = topic_to_slug(name)
    if category:
        return store.find_topic(slug, category)
    return store.find_topic_in(slug, None)


def collect(store: KnowledgeStore) -> VaultDocuments:
    """Read the whole vault into export documents."""
    topics = store.list_topics(include_inactive=True)
    by_id = {t.id: t for t in topics}

    documents = VaultDocuments(categories=[c.name for c in store.list_categories()])
    documents.topics = [
        TopicDocument(
            name=t.name,
            content=t.content,
            category=t.category,
            content_type=t.content_type,
            active=t.is_active,
        )
        for t in topics
    ]
    for rel in store.list_relations():
        source = by_id.get(rel.source_id)
        target = by_id.get(rel.target_id)
        if source is None or target is None:
            continue
        documents.relations.append(
            RelationDocument(
                source=source.name,
                source_category=source.category,
                target=target.name,
                target_category=target.category,
                type=rel.relation_type,
                strength=rel.strength,
            )
        )
    return documents


def export_vault(
    store: KnowledgeStore,
    destination: Path,
    format: Literal["json", "markdown"] = "json",
) -> ExportResult:
    documents = collect(store)
    if format == "json":
        write_json_export(documents, destination)
    elif format == "markdown":
        write_markdown_export(documents, destination)
    else:
        raise VaultError.invalid_argument(f"Unknown export format: {format}", format=format)

    log.info("Exported %d topic(s) to %s (%s)", len(documents.topics), destination, format)
    return ExportResult(
        destination=str(destination),
        format=format,
        topics=len(documents.topics),
        categories=len(documents.categories),
        relations=len(documents.relations),
    )


def _invalid(path: Path, message: str) -> VaultError:
    return VaultError(ErrorCode.INVALID_FORMAT, f"{path}: {message}", {"source": str(path)})


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"malformed record at {location}: {first['msg']}"


# ─────────────────────────────────────────────────────────────────────────────
# JSON
# ─────────────────────────────────────────────────────────────────────────────


def write_json_export(documents: VaultDocuments, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "format": EXPORT_FORMAT_NAME,
        "version": EXPORT_FORMAT_VERSION,
        **documents.model_dump(),
    }
    destination.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def read_json_export(path: Path) -> VaultDocuments:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise _invalid(path, f"not valid JSON ({e})") from e

    if not isinstance(payload, dict) or payload.get("format") != EXPORT_FORMAT_NAME:
        raise _invalid(path, "not a knowledge-vault export")
    version = payload.get("version")
    if version != EXPORT_FORMAT_VERSION:
        raise _invalid(path, f"unsupported export version {version!r}")

    try:
        return VaultDocuments.model_validate(
            {key: payload.get(key, []) for key in ("categories", "topics", "relations")}
        )
    except ValidationError as e:
        raise _invalid(path, _describe(e)) from e


# ─────────────────────────────────────────────────────────────────────────────
# Markdown
# ─────────────────────────────────────────────────────────────────────────────


def _category_dir(category: str | None) -> str:
    if not category:
        return UNCATEGORIZED_EXPORT_DIR
    return topic_to_slug(category).strip("-") or UNCATEGORIZED_EXPORT_DIR


def render_markdown(metadata: dict[str, Any], content: str) -> str:
    """YAML header followed by the content exactly as stored."""
    header = _yaml.export(metadata).rstrip("\n")
    return f"---\n{header}\n---\n{content}"


def parse_markdown(text: str) -> tuple[dict[str, Any], str]:
    """Split a markdown document into its YAML header and body.

    Files in the exported layout keep their body byte for byte. Anything
    else falls back to python-frontmatter's own parsing, which trims the body.
    """
    match = _HEADER_PATTERN.match(text)
    if match is None:
        post = frontmatter.loads(text)
        return dict(post.metadata), post.content
    metadata = _yaml.load(match.group(1)) or {}
    if not isinstance(metadata, dict):
        raise ValueError("frontmatter is not a mapping")
    return metadata, text[match.end():]


def write_markdown_export(documents: VaultDocuments, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)

    outgoing: dict[tuple[str, str | None], list[dict[str, Any]]] = {}
    for rel in documents.relations:
        outgoing.setdefault((rel.source, rel.source_category), []).append(
            {
                "target": rel.target,
                "target_category": rel.target_category,
                "type": rel.type,
                "strength": rel.strength,
            }
        )

    used: set[Path] = set()
    for doc in documents.topics:
        folder = destination / _category_dir(doc.category)
        stem = topic_to_slug(doc.name).strip("-") or "topic"
        file_path = folder / f"{stem}.md"
        suffix = 2
        # Distinct categories can share a directory name
        while file_path in used:
            file_path = folder / f"{stem}-{suffix}.md"
            suffix += 1
        used.add(file_path)

        metadata: dict[str, Any] = {
            "title": doc.name,
            "category": doc.category,
            "content_type": doc.content_type,
            "active": doc.active,
        }
        relations = outgoing.get((doc.name, doc.category))
        if relations:
            metadata["relations"] = relations

        folder.mkdir(parents=True, exist_ok=True)
        file_path.write_text(render_markdown(metadata, doc.content), encoding="utf-8")


def read_markdown_export(root: Path) -> VaultDocuments:
    documents = VaultDocuments()
    categories: set[str] = set()

    for md_file in sorted(root.rglob("*.md")):
        try:
            metadata, body = parse_markdown(md_file.read_text(encoding="utf-8"))
        except Exception as e:
            raise _invalid(md_file, f"failed to parse frontmatter: {e}") from e

        title = metadata.get("title")
        if not isinstance(title, str) or not title.strip():
            raise _invalid(md_file, "missing 'title' in frontmatter")

        try:
            topic = TopicDocument.model_validate(
                {
                    "name": title,
                    "content": body,
                    "category": metadata.get("category") or None,
                    "content_type": metadata.get("content_type") or DEFAULT_CONTENT_TYPE,
                    "active": metadata.get("active", True),
                }
            )
        except ValidationError as e:
            raise _invalid(md_file, _describe(e)) from e
        documents.topics.append(topic)
        if topic.category:
            categories.add(topic.category)

        for rel in metadata.get("relations") or []:
            if not isinstance(rel, dict) or "target" not in rel or "type" not in rel:
                log.warning("Ignoring malformed relation in %s: %r", md_file, rel)
                continue
            try:
                documents.relations.append(
                    RelationDocument.model_validate(
                        {
                            **rel,
                            "source": title,
                            "source_category": topic.category,
                            "target_category": rel.get("target_category") or None,
                        }
                    )
                )
            except ValidationError as e:
                raise _invalid(md_file, _describe(e)) from e

    documents.categories = sorted(categories)
    return documents
