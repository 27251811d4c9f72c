"""FastMCP server for knowledge_vault.

This module provides MCP protocol wrappers around the core business logic.
All actual logic lives in core.py - this file handles the storage handle,
MCP serialization and error translation.
"""

import logging
from typing import Literal

from fastmcp import FastMCP
from fastmcp.exceptions import ResourceError, ToolError

from . import core
from .config import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_RELATION_STRENGTH,
    DEFAULT_SEARCH_LIMIT,
    get_db_path,
)
from .errors import VaultError
from .models import (
    ExportResult,
    HistoryView,
    ImportResult,
    Mention,
    RelatedTopic,
    RelationResult,
    SearchResponse,
    Topic,
    TopicListing,
    UpdateResult,
    VersionContent,
)
from .store import KnowledgeStore

log = logging.getLogger(__name__)

mcp = FastMCP(
    name="knowledge-vault",
    instructions=(
        "Knowledge base of named topics. Use lookUp/search to read, update to write. "
        "Mentions of other topic names in written content are linked automatically."
    ),
)

_store: KnowledgeStore | None = None


def get_store() -> KnowledgeStore:
    """Open the vault database on first use."""
    global _store
    if _store is None:
        db_path = get_db_path()
        log.info("Opening knowledge vault at %s", db_path)
        _store = KnowledgeStore.open(db_path)
    return _store


def _tool_error(error: VaultError) -> ToolError:
    return ToolError(error.message)


# ─────────────────────────────────────────────────────────────────────────────
# Resources
# ─────────────────────────────────────────────────────────────────────────────


@mcp.resource(
    "knowledge://{slug}",
    name="Knowledge Base",
    description="Content of an uncategorized topic.",
    mime_type="text/markdown",
)
async def topic_resource(slug: str) -> str:
    try:
        return await core.read_resource(get_store(), slug)
    except VaultError as e:
        raise ResourceError(e.message) from e


@mcp.resource(
    "knowledge://{category}/{slug}",
    name="Knowledge Base (categorized)",
    description="Content of a topic within a category.",
    mime_type="text/markdown",
)
async def categorized_topic_resource(category: str, slug: str) -> str:
    try:
        return await core.read_resource(get_store(), slug, category=category)
    except VaultError as e:
        raise ResourceError(e.message) from e


# ─────────────────────────────────────────────────────────────────────────────
# MCP Tool Wrappers
# ─────────────────────────────────────────────────────────────────────────────


@mcp.tool(
    name="lookUp",
    description=(
        "Look up information about a specific topic or technology from the knowledge vault. "
        "Use this when you need details about a particular tool, service, or concept."
    ),
)
async def look_up_tool(topic: str, category: str | None = None) -> Topic:
    """Retrieve a topic."""
    try:
        return await core.look_up(get_store(), topic, category)
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="search",
    description=(
        "Search across all topics in the knowledge vault containing specific terms. "
        "Every term must appear in the topic name or content."
    ),
)
async def search_tool(
    query: str,
    category: str | None = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
    include_inactive: bool = False,
) -> SearchResponse:
    """Search topics."""
    try:
        return await core.search(
            get_store(),
            query,
            category=category,
            limit=limit,
            include_inactive=include_inactive,
        )
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="update",
    description=(
        "Add new information or update existing information about a topic in the knowledge vault. "
        "Previous content is kept in the topic's history. Mentions of other topics are "
        "recorded as relations unless detect_references is false."
    ),
)
async def update_tool(
    topic: str,
    content: str,
    category: str | None = None,
    user: str = "system",
    comment: str | None = None,
    content_type: str | None = None,
    detect_references: bool = True,
) -> UpdateResult:
    """Create or update a topic."""
    try:
        return await core.update_topic(
            get_store(),
            topic,
            content,
            category=category,
            user=user,
            comment=comment,
            content_type=content_type,
            detect_references=detect_references,
        )
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="list",
    description="List all available topics in the knowledge vault, grouped by category.",
)
async def list_tool(category: str | None = None, include_inactive: bool = False) -> TopicListing:
    """List topics."""
    return await core.list_topics(get_store(), category=category, include_inactive=include_inactive)


@mcp.tool(
    name="createRelation",
    description="Create or update a relationship between two knowledge topics.",
)
async def create_relation_tool(
    sourceTopic: str,
    targetTopic: str,
    relationType: str,
    strength: float = DEFAULT_RELATION_STRENGTH,
) -> RelationResult:
    """Create a manual relation."""
    try:
        return await core.create_relation(
            get_store(), sourceTopic, targetTopic, relationType, strength
        )
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="getRelated",
    description="Find topics related to a specific topic in the knowledge vault.",
)
async def get_related_tool(
    topic: str,
    relationTypes: list[str] | None = None,
) -> list[RelatedTopic]:
    """Outgoing relations of a topic."""
    try:
        return await core.get_related(get_store(), topic, relationTypes)
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="viewHistory",
    description="View the version history of a topic in the knowledge vault.",
)
async def view_history_tool(topic: str, limit: int = DEFAULT_HISTORY_LIMIT) -> HistoryView:
    """Version history of a topic."""
    try:
        return await core.view_history(get_store(), topic, limit=limit)
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="getVersion",
    description="Get the stored content of one version of a topic (version 1 is the oldest).",
)
async def get_version_tool(topic: str, version: int) -> VersionContent:
    try:
        return await core.get_version(get_store(), topic, version)
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="setActive",
    description="Mark a topic active or inactive. Inactive topics are hidden from list and search.",
)
async def set_active_tool(topic: str, active: bool, category: str | None = None) -> Topic:
    try:
        return await core.set_active(get_store(), topic, active, category=category)
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="detectReferences",
    description="Preview which known topics a piece of content would reference, without writing.",
)
async def detect_references_tool(content: str, exclude_topic: str | None = None) -> list[Mention]:
    return await core.detect_references(get_store(), content, exclude_topic=exclude_topic)


@mcp.tool(
    name="exportVault",
    description="Export all topics, categories and relations to a JSON file or a markdown directory.",
)
async def export_vault_tool(
    destination: str,
    format: Literal["json", "markdown"] = "json",
) -> ExportResult:
    try:
        return await core.export_vault(get_store(), destination, format)
    except VaultError as e:
        raise _tool_error(e) from e


@mcp.tool(
    name="importVault",
    description="Import a JSON export file or markdown export directory into the vault.",
)
async def import_vault_tool(source: str, detect_references: bool = False) -> ImportResult:
    try:
        return await core.import_vault(get_store(), source, detect_references=detect_references)
    except VaultError as e:
        raise _tool_error(e) from e


def main():
    """Run the MCP server over stdio."""
    from ._logging import configure_logging

    configure_logging()
    get_store()
    log.info("Knowledge Vault MCP server running")
    mcp.run()


if __name__ == "__main__":
    main()
