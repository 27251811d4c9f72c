"""Pydantic models for the knowledge vault."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class Category(BaseModel):
    """A named group of topics."""

    id: int
    name: str


class Topic(BaseModel):
    """A named unit of stored content."""

    id: int
    name: str
    slug: str  # Derived from name, unique per category
    category_id: int | None = None
    category: str | None = None  # Category name, joined in at read time
    content: str
    content_type: str = "text/markdown"
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def path(self) -> str:
        """Display path: category/name, or just name when uncategorized."""
        if self.category:
            return f"{self.category}/{self.name}"
        return self.name


class Relation(BaseModel):
    """A directed, typed, weighted edge between two topics."""

    source_id: int
    target_id: int
    relation_type: str
    strength: float = Field(ge=0.0, le=1.0)


class HistoryEntry(BaseModel):
    """A content snapshot recorded when a topic was written."""

    id: int
    topic_id: int
    content: str
    changed_by: str = "system"
    changed_at: datetime | None = None
    change_comment: str | None = None


class Mention(BaseModel):
    """A topic name detected in a block of content."""

    name: str
    confidence: float


class ReferenceEdge(BaseModel):
    """A cross-reference written for one detected mention."""

    name: str  # Mentioned topic name as it appears in the name index
    target_id: int
    confidence: float  # Strength of the references edge
    reverse_strength: float  # Strength of the referenced_by edge


class UpdateResult(BaseModel):
    """Result of writing topic content."""

    topic: str
    category: str | None = None
    topic_id: int
    action: Literal["created", "updated"]
    references: list[ReferenceEdge] = Field(default_factory=list)
    references_detected: bool = True


class SearchHit(BaseModel):
    """A topic matching every search term."""

    topic: str
    slug: str
    category: str | None = None
    path: str
    snippet: str
    is_active: bool = True


class SearchResponse(BaseModel):
    """Search results for a query."""

    query: str
    category: str | None = None
    results: list[SearchHit] = Field(default_factory=list)


class TopicListing(BaseModel):
    """Topic names grouped by category label."""

    groups: dict[str, list[str]] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(names) for names in self.groups.values())


class RelationResult(BaseModel):
    """Result of a manual createRelation call."""

    source: str
    target: str
    relation_type: str
    strength: float


class RelatedTopic(BaseModel):
    """An outgoing edge from a topic, resolved to the target's name."""

    topic: str
    category: str | None = None
    relation_type: str
    strength: float


class HistoryVersion(BaseModel):
    """One row of a topic's version history listing."""

    version: int  # 1 is the oldest recorded version
    changed_at: datetime | None = None
    changed_by: str
    change_comment: str | None = None
    content_length: int


class HistoryView(BaseModel):
    """Version history for a topic, newest first."""

    topic: str
    category: str | None = None
    total_versions: int
    versions: list[HistoryVersion] = Field(default_factory=list)


class VersionContent(BaseModel):
    """The stored content of one history version."""

    topic: str
    version: int
    changed_at: datetime | None = None
    changed_by: str
    change_comment: str | None = None
    content: str


class ExportResult(BaseModel):
    """Summary of an export run."""

    destination: str
    format: Literal["json", "markdown"]
    topics: int
    categories: int
    relations: int


class ImportResult(BaseModel):
    """Summary of an import run."""

    source: str
    format: Literal["json", "markdown"]
    topics_created: int = 0
    topics_updated: int = 0
    relations: int = 0
    references: int = 0  # Cross-reference edges written when detection is on
    skipped_relations: int = 0
    errors: list[str] = Field(default_factory=list)
