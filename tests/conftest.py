"""Shared test fixtures for the knowledge_vault test suite.

Design:
- store: isolated in-memory KnowledgeStore per test
- db_path: on-disk database path inside tmp_path (for CLI / MCP tests)
- runner / cli_invoke: CliRunner bound to the temporary database
"""

from pathlib import Path

import pytest
from click.testing import CliRunner

from knowledge_vault.cli import cli
from knowledge_vault.store import KnowledgeStore


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def store():
    """Fresh in-memory vault."""
    vault = KnowledgeStore.open(":memory:")
    yield vault
    vault.close()


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch) -> Path:
    """Database file inside tmp_path, also exported as KVAULT_DB_PATH."""
    path = tmp_path / "data" / "knowledge.db"
    monkeypatch.setenv("KVAULT_DB_PATH", str(path))
    return path


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment."""
    return CliRunner()


@pytest.fixture
def cli_invoke(runner: CliRunner, db_path: Path):
    """Helper for invoking the CLI against the temporary database.

    Usage:
        def test_lookup(cli_invoke):
            result = cli_invoke(["lookup", "React"])
            assert result.exit_code == 0
    """
    def _invoke(args: list[str], input: str | None = None):
        return runner.invoke(
            cli,
            ["--db", str(db_path), *args],
            input=input,
            catch_exceptions=False,
        )
    return _invoke


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions (for test code, not fixtures)
# ─────────────────────────────────────────────────────────────────────────────


def add_topic(
    vault: KnowledgeStore,
    name: str,
    content: str = "",
    category: str | None = None,
) -> int:
    """Insert a topic directly, without history or reference detection."""
    with vault.transaction():
        category_id = vault.get_or_create_category(category) if category else None
        return vault.insert_topic(name=name, category_id=category_id, content=content)
