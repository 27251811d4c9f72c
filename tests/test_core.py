"""Tests for core business logic.

Covers topic writes with cross-reference detection, reads, relations,
history and the active flag. Storage is an in-memory vault per test.
"""

import sqlite3

import pytest

from knowledge_vault import core
from knowledge_vault.config import (
    EXACT_CONFIDENCE,
    FUZZY_CONFIDENCE,
    LINK_CONFIDENCE,
    MAX_SEARCH_LIMIT,
    REFERENCED_BY,
    REFERENCES,
    REVERSE_DISCOUNT,
    SNIPPET_LENGTH,
)
from knowledge_vault.errors import ErrorCode, VaultError


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _edges(store) -> dict[tuple[str, str, str], float]:
    """All relations keyed by (source name, target name, type)."""
    names = {t.id: t.name for t in store.list_topics(include_inactive=True)}
    return {
        (names[r.source_id], names[r.target_id], r.relation_type): r.strength
        for r in store.list_relations()
    }


# ─────────────────────────────────────────────────────────────────────────────
# update
# ─────────────────────────────────────────────────────────────────────────────


class TestUpdateTopic:
    """Tests for creating and updating topics."""

    @pytest.mark.asyncio
    async def test_creates_topic_with_initial_history(self, store):
        result = await core.update_topic(store, "React", "UI library", category="frontend")

        assert result.action == "created"
        assert result.category == "frontend"
        topic = await core.look_up(store, "React")
        assert topic.content == "UI library"
        assert topic.category == "frontend"

        view = await core.view_history(store, "React")
        assert view.total_versions == 1
        assert view.versions[0].change_comment == "Initial creation"
        assert view.versions[0].changed_by == "system"

    @pytest.mark.asyncio
    async def test_update_snapshots_previous_content(self, store):
        await core.update_topic(store, "React", "v1")
        result = await core.update_topic(store, "React", "v2", user="alice")

        assert result.action == "updated"
        assert (await core.look_up(store, "React")).content == "v2"

        view = await core.view_history(store, "React")
        assert view.total_versions == 2
        newest = view.versions[0]
        assert newest.version == 2
        assert newest.changed_by == "alice"
        assert newest.change_comment == "Update via API"
        assert (await core.get_version(store, "React", 1)).content == "v1"
        assert (await core.get_version(store, "React", 2)).content == "v1"

    @pytest.mark.asyncio
    async def test_custom_comment_and_content_type(self, store):
        await core.update_topic(
            store, "Draft", "plain", comment="first draft", content_type="text/plain"
        )

        topic = await core.look_up(store, "Draft")
        assert topic.content_type == "text/plain"
        assert (await core.get_version(store, "Draft", 1)).change_comment == "first draft"

    @pytest.mark.asyncio
    async def test_update_matched_by_slug(self, store):
        await core.update_topic(store, "Node.js", "v1")
        result = await core.update_topic(store, "node js", "v2")

        assert result.action == "updated"
        assert (await core.look_up(store, "Node.js")).content == "v2"

    @pytest.mark.asyncio
    async def test_same_name_in_other_category_is_a_new_topic(self, store):
        await core.update_topic(store, "Testing", "frontend", category="frontend")
        result = await core.update_topic(store, "Testing", "backend", category="backend")

        assert result.action == "created"
        assert (await core.look_up(store, "Testing", "frontend")).content == "frontend"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "   ", "!!!"])
    async def test_rejects_names_without_letters_or_digits(self, store, name):
        with pytest.raises(VaultError) as exc_info:
            await core.update_topic(store, name, "content")
        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT


class TestUpdateCrossReferences:
    """Tests for edges written when topic content mentions other topics."""

    @pytest.mark.asyncio
    async def test_mention_creates_both_edges(self, store):
        await core.update_topic(store, "React", "UI library")
        result = await core.update_topic(store, "Next.js", "A framework built on React.")

        assert [(r.name, r.confidence) for r in result.references] == [
            ("React", EXACT_CONFIDENCE)
        ]
        edges = _edges(store)
        assert edges[("Next.js", "React", REFERENCES)] == pytest.approx(EXACT_CONFIDENCE)
        assert edges[("React", "Next.js", REFERENCED_BY)] == pytest.approx(
            EXACT_CONFIDENCE * REVERSE_DISCOUNT
        )

    @pytest.mark.asyncio
    async def test_link_and_letter_spaced_mentions(self, store):
        await core.update_topic(store, "Go", "A language")
        await core.update_topic(store, "Go Routines", "Lightweight threads")

        await core.update_topic(
            store, "Concurrency", "Start with [Go](go.md), then read about Goroutines."
        )

        edges = _edges(store)
        assert edges[("Concurrency", "Go", REFERENCES)] == pytest.approx(LINK_CONFIDENCE)
        assert edges[("Concurrency", "Go Routines", REFERENCES)] == pytest.approx(
            FUZZY_CONFIDENCE
        )
        assert edges[("Go Routines", "Concurrency", REFERENCED_BY)] == pytest.approx(0.49)

    @pytest.mark.asyncio
    async def test_self_mention_creates_no_edge(self, store):
        await core.update_topic(store, "React", "React is a UI library.")
        assert store.list_relations() == []

    @pytest.mark.asyncio
    async def test_detection_can_be_disabled(self, store):
        await core.update_topic(store, "React", "UI library")
        result = await core.update_topic(
            store, "Next.js", "Built on React.", detect_references=False
        )

        assert result.references == []
        assert result.references_detected is False
        assert store.list_relations() == []

    @pytest.mark.asyncio
    async def test_inactive_topic_still_referenced(self, store):
        await core.update_topic(store, "Perl", "Old scripting language")
        await core.set_active(store, "Perl", False)

        result = await core.update_topic(store, "Scripts", "Legacy Perl scripts.")

        assert [r.name for r in result.references] == ["Perl"]

    @pytest.mark.asyncio
    async def test_topics_created_later_are_detected_on_next_write(self, store):
        await core.update_topic(store, "Next.js", "Built on React.")
        assert store.list_relations() == []

        await core.update_topic(store, "React", "UI library")
        await core.update_topic(store, "Next.js", "Built on React.")

        assert ("Next.js", "React", REFERENCES) in _edges(store)

    @pytest.mark.asyncio
    async def test_edges_are_not_duplicated_on_rewrite(self, store):
        await core.update_topic(store, "React", "UI library")
        await core.update_topic(store, "Next.js", "Built on React.")
        await core.update_topic(store, "Next.js", "Built on [React](react.md).")

        edges = _edges(store)
        assert len(edges) == 2
        assert edges[("Next.js", "React", REFERENCES)] == pytest.approx(LINK_CONFIDENCE)
        assert edges[("React", "Next.js", REFERENCED_BY)] == pytest.approx(
            LINK_CONFIDENCE * REVERSE_DISCOUNT
        )

    @pytest.mark.asyncio
    async def test_edge_failure_rolls_back_content_write(self, store, monkeypatch):
        await core.update_topic(store, "React", "UI library")

        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "upsert_relation", fail)

        with pytest.raises(VaultError) as exc_info:
            await core.update_topic(store, "Next.js", "Built on React.")

        assert exc_info.value.code == ErrorCode.STORAGE_ERROR
        assert store.find_topic("next-js") is None
        react = store.find_topic("react")
        assert store.count_history(react.id) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────────────────────────────────────


class TestLookUp:
    @pytest.mark.asyncio
    async def test_missing_topic(self, store):
        with pytest.raises(VaultError) as exc_info:
            await core.look_up(store, "Nothing")
        assert exc_info.value.code == ErrorCode.TOPIC_NOT_FOUND
        assert exc_info.value.message == 'No information found for topic "Nothing"'

    @pytest.mark.asyncio
    async def test_missing_in_category(self, store):
        await core.update_topic(store, "React", "UI", category="frontend")
        with pytest.raises(VaultError) as exc_info:
            await core.look_up(store, "React", "backend")
        assert "in category \"backend\"" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_read_resource(self, store):
        await core.update_topic(store, "Docker", "containers")
        await core.update_topic(store, "React", "UI", category="frontend")

        assert await core.read_resource(store, "docker") == "containers"
        assert await core.read_resource(store, "react", category="frontend") == "UI"
        with pytest.raises(VaultError, match="knowledge://react"):
            await core.read_resource(store, "react")


class TestSearch:
    @pytest.mark.asyncio
    async def test_all_terms_required(self, store):
        await core.update_topic(store, "React", "Component library for the web")
        await core.update_topic(store, "Vue", "Component framework")

        response = await core.search(store, "component web")

        assert [hit.topic for hit in response.results] == ["React"]

    @pytest.mark.asyncio
    async def test_matches_name(self, store):
        await core.update_topic(store, "Kubernetes", "Orchestration")
        response = await core.search(store, "kube")
        assert [hit.topic for hit in response.results] == ["Kubernetes"]

    @pytest.mark.asyncio
    async def test_category_filter_and_inactive(self, store):
        await core.update_topic(store, "A", "shared text", category="one")
        await core.update_topic(store, "B", "shared text", category="two")
        await core.update_topic(store, "C", "shared text")
        await core.set_active(store, "C", False)

        assert [h.topic for h in (await core.search(store, "shared", category="one")).results] == ["A"]
        assert [h.topic for h in (await core.search(store, "shared")).results] == ["A", "B"]
        everything = await core.search(store, "shared", include_inactive=True)
        assert [h.topic for h in everything.results] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_snippet_truncated(self, store):
        await core.update_topic(store, "Long", "word " * 100)
        hit = (await core.search(store, "word")).results[0]
        assert hit.snippet.endswith("...")
        assert len(hit.snippet) == SNIPPET_LENGTH + 3

    @pytest.mark.asyncio
    async def test_blank_query_returns_nothing(self, store):
        await core.update_topic(store, "React", "UI")
        assert (await core.search(store, "   ")).results == []

    @pytest.mark.asyncio
    async def test_limit_validated_and_clamped(self, store):
        with pytest.raises(VaultError):
            await core.search(store, "x", limit=0)
        response = await core.search(store, "x", limit=MAX_SEARCH_LIMIT + 50)
        assert response.results == []


class TestListTopics:
    @pytest.mark.asyncio
    async def test_grouped_with_uncategorized_first(self, store):
        await core.update_topic(store, "Vue", "", category="frontend")
        await core.update_topic(store, "React", "", category="frontend")
        await core.update_topic(store, "Docker", "")
        await core.update_topic(store, "Postgres", "", category="backend")

        listing = await core.list_topics(store)

        assert list(listing.groups) == ["(No category)", "backend", "frontend"]
        assert listing.groups["frontend"] == ["React", "Vue"]
        assert listing.total == 4

    @pytest.mark.asyncio
    async def test_inactive_hidden_unless_requested(self, store):
        await core.update_topic(store, "Old", "")
        await core.update_topic(store, "New", "")
        await core.set_active(store, "Old", False)

        assert (await core.list_topics(store)).groups == {"(No category)": ["New"]}
        everything = await core.list_topics(store, include_inactive=True)
        assert everything.groups == {"(No category)": ["New", "Old"]}

    @pytest.mark.asyncio
    async def test_empty_vault(self, store):
        assert (await core.list_topics(store)).groups == {}


# ─────────────────────────────────────────────────────────────────────────────
# Relations
# ─────────────────────────────────────────────────────────────────────────────


class TestCreateRelation:
    @pytest.mark.asyncio
    async def test_create_and_get_related(self, store):
        await core.update_topic(store, "TypeScript", "")
        await core.update_topic(store, "JavaScript", "")

        result = await core.create_relation(store, "TypeScript", "JavaScript", "compiles_to", 0.9)
        related = await core.get_related(store, "TypeScript")

        assert result.strength == 0.9
        assert [(r.topic, r.relation_type, r.strength) for r in related] == [
            ("JavaScript", "compiles_to", 0.9)
        ]

    @pytest.mark.asyncio
    async def test_default_strength_and_upsert(self, store):
        await core.update_topic(store, "A", "")
        await core.update_topic(store, "B", "")

        await core.create_relation(store, "A", "B", "uses")
        assert (await core.get_related(store, "A"))[0].strength == 0.5

        await core.create_relation(store, "A", "B", "uses", 0.2)
        related = await core.get_related(store, "A")
        assert len(related) == 1
        assert related[0].strength == 0.2

    @pytest.mark.asyncio
    async def test_missing_topic(self, store):
        await core.update_topic(store, "A", "")
        with pytest.raises(VaultError) as exc_info:
            await core.create_relation(store, "A", "Ghost", "uses")
        assert exc_info.value.code == ErrorCode.TOPIC_NOT_FOUND
        assert exc_info.value.details["missing"] == ["Ghost"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("relation_type", "strength"), [("", 0.5), ("uses", 1.5), ("uses", -0.1)])
    async def test_invalid_arguments(self, store, relation_type, strength):
        await core.update_topic(store, "A", "")
        await core.update_topic(store, "B", "")
        with pytest.raises(VaultError) as exc_info:
            await core.create_relation(store, "A", "B", relation_type, strength)
        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_get_related_filters_types(self, store):
        await core.update_topic(store, "React", "")
        await core.update_topic(store, "Next.js", "Built on React.")
        await core.create_relation(store, "Next.js", "React", "extends", 0.4)

        refs = await core.get_related(store, "Next.js", [REFERENCES])
        assert [(r.topic, r.relation_type) for r in refs] == [("React", REFERENCES)]

        incoming = await core.get_related(store, "React")
        assert [r.relation_type for r in incoming] == [REFERENCED_BY]

    @pytest.mark.asyncio
    async def test_get_related_missing_topic(self, store):
        with pytest.raises(VaultError) as exc_info:
            await core.get_related(store, "Ghost")
        assert exc_info.value.code == ErrorCode.TOPIC_NOT_FOUND


# ─────────────────────────────────────────────────────────────────────────────
# History, active flag, detection preview
# ─────────────────────────────────────────────────────────────────────────────


class TestHistory:
    @pytest.mark.asyncio
    async def test_limit_and_numbering(self, store):
        for n in range(5):
            await core.update_topic(store, "Doc", f"v{n}")

        view = await core.view_history(store, "Doc", limit=2)

        assert view.total_versions == 5
        assert [v.version for v in view.versions] == [5, 4]
        assert view.versions[0].content_length == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 51])
    async def test_limit_out_of_range(self, store, limit):
        await core.update_topic(store, "Doc", "v")
        with pytest.raises(VaultError) as exc_info:
            await core.view_history(store, "Doc", limit=limit)
        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_missing_version(self, store):
        await core.update_topic(store, "Doc", "v")
        with pytest.raises(VaultError) as exc_info:
            await core.get_version(store, "Doc", 3)
        assert exc_info.value.code == ErrorCode.VERSION_NOT_FOUND
        assert exc_info.value.details["total_versions"] == 1


class TestSetActive:
    @pytest.mark.asyncio
    async def test_toggle(self, store):
        await core.update_topic(store, "Perl", "")

        hidden = await core.set_active(store, "Perl", False)
        assert hidden.is_active is False
        assert (await core.look_up(store, "Perl")).is_active is False

        shown = await core.set_active(store, "Perl", True)
        assert shown.is_active is True

    @pytest.mark.asyncio
    async def test_missing_topic(self, store):
        with pytest.raises(VaultError):
            await core.set_active(store, "Ghost", False)

    @pytest.mark.asyncio
    async def test_topic_vanishing_after_write(self, store, monkeypatch):
        await core.update_topic(store, "Perl", "")
        monkeypatch.setattr(store, "get_topic", lambda topic_id: None)

        with pytest.raises(VaultError) as exc_info:
            await core.set_active(store, "Perl", False)
        assert exc_info.value.code == ErrorCode.TOPIC_NOT_FOUND


class TestDetectReferences:
    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, store):
        await core.update_topic(store, "React", "")
        await core.update_topic(store, "TypeScript", "")

        mentions = await core.detect_references(store, "[React](r) with T y p e S c r i p t")

        assert [(m.name, m.confidence) for m in mentions] == [
            ("React", LINK_CONFIDENCE),
            ("TypeScript", FUZZY_CONFIDENCE),
        ]
        assert store.list_relations() == []

    @pytest.mark.asyncio
    async def test_exclude_topic(self, store):
        await core.update_topic(store, "React", "")
        mentions = await core.detect_references(store, "React", exclude_topic="react")
        assert mentions == []
