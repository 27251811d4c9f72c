"""SQLite storage for topics, categories, relations and history.

A KnowledgeStore owns exactly one connection. Nothing in the package holds a
module-level connection; callers construct a store and pass it along, which
keeps tests free to use ``:memory:`` databases.

Write methods never commit on their own. Group them inside
``store.transaction()`` so a topic write and the edges derived from it land
together or not at all.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from .config import DEFAULT_CONTENT_TYPE, DEFAULT_EDITOR
from .models import Category, HistoryEntry, RelatedTopic, Relation, Topic

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS topics (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  slug TEXT NOT NULL,
  category_id INTEGER REFERENCES categories (id),
  content TEXT NOT NULL,
  content_type TEXT NOT NULL DEFAULT 'text/markdown',
  is_active INTEGER NOT NULL DEFAULT 1,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  UNIQUE (slug, category_id)
);

-- UNIQUE treats NULLs as distinct, so uncategorized slugs need their own index.
CREATE UNIQUE INDEX IF NOT EXISTS idx_topics_slug_uncategorized
  ON topics (slug) WHERE category_id IS NULL;
CREATE INDEX IF NOT EXISTS idx_topics_slug ON topics (slug);
CREATE INDEX IF NOT EXISTS idx_topics_category ON topics (category_id);

CREATE TABLE IF NOT EXISTS topic_relations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  source_id INTEGER NOT NULL REFERENCES topics (id) ON DELETE CASCADE,
  target_id INTEGER NOT NULL REFERENCES topics (id) ON DELETE CASCADE,
  relationship_type TEXT NOT NULL,
  relationship_strength REAL NOT NULL DEFAULT 0.5,
  UNIQUE (source_id, target_id, relationship_type)
);

CREATE INDEX IF NOT EXISTS idx_topic_relations_source ON topic_relations (source_id);
CREATE INDEX IF NOT EXISTS idx_topic_relations_target ON topic_relations (target_id);

CREATE TABLE IF NOT EXISTS topic_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  topic_id INTEGER NOT NULL REFERENCES topics (id) ON DELETE CASCADE,
  content TEXT NOT NULL,
  changed_by TEXT DEFAULT 'system',
  changed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  change_comment TEXT
);

CREATE INDEX IF NOT EXISTS idx_topic_history_topic ON topic_history (topic_id);
CREATE INDEX IF NOT EXISTS idx_topic_history_date ON topic_history (changed_at);
"""

_TOPIC_SELECT = """
SELECT t.id, t.name, t.slug, t.category_id, c.name AS category, t.content,
       t.content_type, t.is_active, t.created_at, t.updated_at
FROM topics t
LEFT JOIN categories c ON t.category_id = c.id
"""

# Uncategorized topics first, then oldest, when a slug exists in several categories.
_TOPIC_PREFERENCE = "ORDER BY t.category_id IS NOT NULL, t.id"


def topic_to_slug(name: str) -> str:
    """Convert a topic name to its slug ("Node.js" -> "node-js")."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower())


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_topic(row: sqlite3.Row) -> Topic:
    data = dict(row)
    data["is_active"] = bool(data["is_active"])
    return Topic.model_validate(data)


class KnowledgeStore:
    """Storage handle wrapping one SQLite connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def open(cls, db_path: str | Path) -> KnowledgeStore:
        """Open (creating if needed) the database at db_path and initialize it."""
        target = str(db_path)
        if target != ":memory:":
            Path(target).expanduser().parent.mkdir(parents=True, exist_ok=True)
        # The MCP server may dispatch from worker threads; access is serialized by _lock.
        conn = sqlite3.connect(target, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if target != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        store = cls(conn)
        store.initialize()
        log.debug("Opened knowledge store at %s", target)
        return store

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def initialize(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a unit of work; commit on success, roll back on error.

        Nested calls join the outermost transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                with self._conn:
                    yield self._conn
            finally:
                self._depth = 0

    # ─────────────────────────────────────────────────────────────────────
    # Categories
    # ─────────────────────────────────────────────────────────────────────

    def find_category(self, name: str) -> Category | None:
        row = self._conn.execute(
            "SELECT id, name FROM categories WHERE name = ?", (name,)
        ).fetchone()
        return Category.model_validate(dict(row)) if row else None

    def get_or_create_category(self, name: str) -> int:
        existing = self.find_category(name)
        if existing is not None:
            return existing.id
        cur = self._conn.execute("INSERT INTO categories (name) VALUES (?)", (name,))
        log.debug("Created category %r", name)
        return int(cur.lastrowid)

    def list_categories(self) -> list[Category]:
        rows = self._conn.execute("SELECT id, name FROM categories ORDER BY name").fetchall()
        return [Category.model_validate(dict(row)) for row in rows]

    # ─────────────────────────────────────────────────────────────────────
    # Topics
    # ─────────────────────────────────────────────────────────────────────

    def get_topic(self, topic_id: int) -> Topic | None:
        row = self._conn.execute(f"{_TOPIC_SELECT} WHERE t.id = ?", (int(topic_id),)).fetchone()
        return _row_to_topic(row) if row else None

    def find_topic(self, slug: str, category: str | None = None) -> Topic | None:
        """Find a topic by slug, within a category when one is named."""
        if category:
            row = self._conn.execute(
                f"{_TOPIC_SELECT} WHERE t.slug = ? AND c.name = ?",
                (slug, category),
            ).fetchone()
        else:
            row = self._conn.execute(
                f"{_TOPIC_SELECT} WHERE t.slug = ? {_TOPIC_PREFERENCE} LIMIT 1",
                (slug,),
            ).fetchone()
        return _row_to_topic(row) if row else None

    def find_topic_in(self, slug: str, category_id: int | None) -> Topic | None:
        """Find the topic occupying (slug, category_id); None category means uncategorized."""
        row = self._conn.execute(
            f"{_TOPIC_SELECT} WHERE t.slug = ? AND t.category_id IS ?",
            (slug, category_id),
        ).fetchone()
        return _row_to_topic(row) if row else None

    def find_topic_id_by_slug_or_name(self, name: str) -> int | None:
        """Resolve a mentioned name to a topic id, or None when nothing matches."""
        row = self._conn.execute(
            f"""
            SELECT t.id FROM topics t
            WHERE t.slug = ? OR t.name = ? COLLATE NOCASE
            {_TOPIC_PREFERENCE}
            LIMIT 1
            """,
            (topic_to_slug(name), name),
        ).fetchone()
        return int(row["id"]) if row else None

    def list_all_topic_names(self, include_inactive: bool = True) -> list[str]:
        sql = "SELECT name FROM topics"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY id"
        return [str(row["name"]) for row in self._conn.execute(sql)]

    def insert_topic(
        self,
        *,
        name: str,
        category_id: int | None,
        content: str,
        content_type: str | None = None,
    ) -> int:
        cur = self._conn.execute(
            """
            INSERT INTO topics (name, slug, category_id, content, content_type)
            VALUES (?, ?, ?, ?, ?)
            """,
            (name, topic_to_slug(name), category_id, content, content_type or DEFAULT_CONTENT_TYPE),
        )
        return int(cur.lastrowid)

    def update_topic_content(
        self,
        topic_id: int,
        *,
        content: str,
        content_type: str | None = None,
    ) -> None:
        self._conn.execute(
            """
            UPDATE topics
            SET content = ?,
                content_type = COALESCE(?, content_type),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (content, content_type, int(topic_id)),
        )

    def set_topic_active(self, topic_id: int, active: bool) -> None:
        self._conn.execute(
            "UPDATE topics SET is_active = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (1 if active else 0, int(topic_id)),
        )

    def list_topics(
        self,
        category: str | None = None,
        include_inactive: bool = False,
    ) -> list[Topic]:
        clauses: list[str] = []
        params: list[object] = []
        if category:
            clauses.append("c.name = ?")
            params.append(category)
        if not include_inactive:
            clauses.append("t.is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"{_TOPIC_SELECT} {where} ORDER BY c.name IS NOT NULL, c.name, t.name",
            params,
        ).fetchall()
        return [_row_to_topic(row) for row in rows]

    def search_topics(
        self,
        terms: Sequence[str],
        *,
        category: str | None = None,
        include_inactive: bool = False,
        limit: int = 20,
    ) -> list[Topic]:
        """Return topics whose name or content contains every term."""
        if not terms:
            return []

        clauses: list[str] = []
        params: list[object] = []
        for term in terms:
            pattern = f"%{_escape_like(term)}%"
            clauses.append(r"(t.name LIKE ? ESCAPE '\' OR t.content LIKE ? ESCAPE '\')")
            params.extend([pattern, pattern])
        if category:
            clauses.append("c.name = ?")
            params.append(category)
        if not include_inactive:
            clauses.append("t.is_active = 1")
        params.append(int(limit))

        rows = self._conn.execute(
            f"{_TOPIC_SELECT} WHERE {' AND '.join(clauses)} ORDER BY t.id LIMIT ?",
            params,
        ).fetchall()
        return [_row_to_topic(row) for row in rows]

    # ─────────────────────────────────────────────────────────────────────
    # History
    # ─────────────────────────────────────────────────────────────────────

    def add_history(
        self,
        topic_id: int,
        *,
        content: str,
        changed_by: str = DEFAULT_EDITOR,
        comment: str | None = None,
    ) -> int:
        cur = self._conn.execute(
            """
            INSERT INTO topic_history (topic_id, content, changed_by, change_comment)
            VALUES (?, ?, ?, ?)
            """,
            (int(topic_id), content, changed_by, comment),
        )
        return int(cur.lastrowid)

    def count_history(self, topic_id: int) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM topic_history WHERE topic_id = ?", (int(topic_id),)
        ).fetchone()
        return int(row["n"])

    def list_history(self, topic_id: int, limit: int = 10) -> list[HistoryEntry]:
        """Newest first. Rows written within the same second keep insertion order."""
        rows = self._conn.execute(
            """
            SELECT id, topic_id, content, changed_by, changed_at, change_comment
            FROM topic_history
            WHERE topic_id = ?
            ORDER BY changed_at DESC, id DESC
            LIMIT ?
            """,
            (int(topic_id), int(limit)),
        ).fetchall()
        return [HistoryEntry.model_validate(dict(row)) for row in rows]

    def get_history_version(self, topic_id: int, version: int) -> HistoryEntry | None:
        """Fetch the nth recorded version, 1 being the oldest."""
        if version < 1:
            return None
        row = self._conn.execute(
            """
            SELECT id, topic_id, content, changed_by, changed_at, change_comment
            FROM topic_history
            WHERE topic_id = ?
            ORDER BY changed_at, id
            LIMIT 1 OFFSET ?
            """,
            (int(topic_id), int(version) - 1),
        ).fetchone()
        return HistoryEntry.model_validate(dict(row)) if row else None

    # ─────────────────────────────────────────────────────────────────────
    # Relations
    # ─────────────────────────────────────────────────────────────────────

    def upsert_relation(
        self,
        source_id: int,
        target_id: int,
        relation_type: str,
        strength: float,
    ) -> None:
        """Insert an edge or overwrite the strength of the existing triple.

        Strength must already be within [0, 1]; it is not validated here.
        """
        self._conn.execute(
            """
            INSERT INTO topic_relations
              (source_id, target_id, relationship_type, relationship_strength)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (source_id, target_id, relationship_type)
            DO UPDATE SET relationship_strength = excluded.relationship_strength
            """,
            (int(source_id), int(target_id), relation_type, float(strength)),
        )

    def get_relation(self, source_id: int, target_id: int, relation_type: str) -> Relation | None:
        row = self._conn.execute(
            """
            SELECT source_id, target_id, relationship_type AS relation_type,
                   relationship_strength AS strength
            FROM topic_relations
            WHERE source_id = ? AND target_id = ? AND relationship_type = ?
            """,
            (int(source_id), int(target_id), relation_type),
        ).fetchone()
        return Relation.model_validate(dict(row)) if row else None

    def list_relations(self) -> list[Relation]:
        rows = self._conn.execute(
            """
            SELECT source_id, target_id, relationship_type AS relation_type,
                   relationship_strength AS strength
            FROM topic_relations
            ORDER BY id
            """
        ).fetchall()
        return [Relation.model_validate(dict(row)) for row in rows]

    def list_related(
        self,
        topic_id: int,
        relation_types: Sequence[str] | None = None,
    ) -> list[RelatedTopic]:
        """Outgoing edges of a topic, strongest first."""
        sql = """
            SELECT t2.name AS topic, c.name AS category,
                   r.relationship_type AS relation_type,
                   r.relationship_strength AS strength
            FROM topic_relations r
            JOIN topics t2 ON r.target_id = t2.id
            LEFT JOIN categories c ON t2.category_id = c.id
            WHERE r.source_id = ?
        """
        params: list[object] = [int(topic_id)]
        if relation_types:
            placeholders = ",".join("?" * len(relation_types))
            sql += f" AND r.relationship_type IN ({placeholders})"
            params.extend(relation_types)
        sql += " ORDER BY r.relationship_strength DESC, r.id"
        rows = self._conn.execute(sql, params).fetchall()
        return [RelatedTopic.model_validate(dict(row)) for row in rows]
