"""Cross-reference detection between topics.

When a topic's content is written, every other known topic name is looked
for in that content. Each mention gets a confidence depending on how it was
found, and becomes a pair of weighted edges in the relations table:

- ``[Name](target)`` markdown link          -> 1.0
- whole-word, case-insensitive occurrence   -> 0.9
- letter-spaced occurrence ("N a m e")      -> 0.7

The forward edge (``references``) carries the confidence; the reverse edge
(``referenced_by``) carries the confidence times REVERSE_DISCOUNT.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from .config import (
    EXACT_CONFIDENCE,
    FUZZY_CONFIDENCE,
    FUZZY_MAX_NAME_LENGTH,
    LINK_CONFIDENCE,
    REFERENCED_BY,
    REFERENCES,
    REVERSE_DISCOUNT,
)
from .models import Mention, ReferenceEdge
from .store import KnowledgeStore

log = logging.getLogger(__name__)

# [label](target); the label may not contain brackets, the target may hold
# one level of balanced parens, as in wiki/Go_(programming_language).
MARKDOWN_LINK_PATTERN = re.compile(r"\[([^\[\]]+)\]\(((?:[^()]|\([^()]*\))*)\)")

# Letters and digits; underscore counts as a boundary character.
_ALNUM = r"[^\W_]"
_BOUNDARY_BEFORE = rf"(?<!{_ALNUM})"
_BOUNDARY_AFTER = rf"(?!{_ALNUM})"


def prepare_name_index(names: Iterable[str]) -> list[str]:
    """De-duplicate names case-insensitively and sort longest first.

    The first spelling seen for a name is kept. Sorting is stable, so names
    of equal length keep their original order.
    """
    seen: set[str] = set()
    unique: list[str] = []
    for name in names:
        cleaned = name.strip()
        key = cleaned.casefold()
        if not cleaned or key in seen:
            continue
        seen.add(key)
        unique.append(cleaned)
    return sorted(unique, key=len, reverse=True)


def refresh_name_index(store: KnowledgeStore) -> list[str]:
    """Snapshot every topic name in the store, ready for detect_mentions.

    Inactive topics stay in the index; they remain valid mention targets.
    """
    return prepare_name_index(store.list_all_topic_names(include_inactive=True))


def _exact_pattern(folded_name: str) -> re.Pattern[str]:
    return re.compile(_BOUNDARY_BEFORE + re.escape(folded_name) + _BOUNDARY_AFTER)


def _fuzzy_pattern(folded_name: str) -> re.Pattern[str] | None:
    """Pattern for the name's characters with any whitespace between them.

    Whitespace inside the name is dropped, so "Go Routines" also matches
    "Goroutines". Returns None for names too long to scan this way.
    """
    chars = [ch for ch in folded_name if not ch.isspace()]
    if not chars or len(chars) > FUZZY_MAX_NAME_LENGTH:
        return None
    body = r"\s*".join(re.escape(ch) for ch in chars)
    return re.compile(_BOUNDARY_BEFORE + body + _BOUNDARY_AFTER)


def detect_mentions(content: str, known_names: Iterable[str]) -> dict[str, float]:
    """Find known topic names mentioned in content.

    All three passes compare case-folded text, so "Straße" and "STRASSE"
    are the same name in a link label and in running text alike.

    Args:
        content: Text to scan.
        known_names: Topic names to look for. Duplicates differing only in
            case are treated as one entry.

    Returns:
        Mapping of name (as spelled in known_names) to the highest confidence
        any pass earned for it. The current topic is not excluded; callers
        filter self-mentions.
    """
    if not content or not content.strip():
        return {}

    names = prepare_name_index(known_names)
    if not names:
        return {}

    mentions: dict[str, float] = {}
    folded_names = {name: name.casefold() for name in names}
    folded_content = content.casefold()

    # Pass 1: explicit markdown links
    by_key = {folded: name for name, folded in folded_names.items()}
    for match in MARKDOWN_LINK_PATTERN.finditer(content):
        name = by_key.get(match.group(1).strip().casefold())
        if name is not None and name not in mentions:
            mentions[name] = LINK_CONFIDENCE

    # Pass 2: whole-word mentions
    for name in names:
        if name in mentions:
            continue
        if _exact_pattern(folded_names[name]).search(folded_content):
            mentions[name] = EXACT_CONFIDENCE

    # Pass 3: letter-spaced mentions
    for name in names:
        if name in mentions:
            continue
        pattern = _fuzzy_pattern(folded_names[name])
        if pattern is not None and pattern.search(folded_content):
            mentions[name] = FUZZY_CONFIDENCE

    return mentions


def mentions_as_models(mentions: dict[str, float]) -> list[Mention]:
    """Mentions strongest first, longer names first among equals."""
    ordered = sorted(mentions.items(), key=lambda item: (-item[1], -len(item[0]), item[0]))
    return [Mention(name=name, confidence=confidence) for name, confidence in ordered]


def apply_cross_references(
    store: KnowledgeStore,
    topic_id: int,
    mentions: dict[str, float],
) -> list[ReferenceEdge]:
    """Write references / referenced_by edges for each resolvable mention.

    Mentions that resolve to no topic, or to topic_id itself, are skipped.
    Runs inside the caller's transaction when there is one.
    """
    edges: list[ReferenceEdge] = []
    with store.transaction():
        for name, confidence in mentions.items():
            target_id = store.find_topic_id_by_slug_or_name(name)
            if target_id is None:
                log.debug("Mention %r does not resolve to a topic; skipping", name)
                continue
            if target_id == topic_id:
                continue

            reverse_strength = confidence * REVERSE_DISCOUNT
            store.upsert_relation(topic_id, target_id, REFERENCES, confidence)
            store.upsert_relation(target_id, topic_id, REFERENCED_BY, reverse_strength)
            edges.append(
                ReferenceEdge(
                    name=name,
                    target_id=target_id,
                    confidence=confidence,
                    reverse_strength=reverse_strength,
                )
            )

    if edges:
        log.debug("Topic %s: wrote %d cross-reference(s)", topic_id, len(edges))
    return edges
