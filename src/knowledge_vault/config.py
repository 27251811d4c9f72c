"""Configuration management for knowledge_vault.

All tunable constants live here rather than being scattered through the
codebase. Environment lookups are functions so tests can patch the
environment per case.
"""

import os
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration from the environment is invalid."""

    pass


def get_db_path() -> Path:
    """Get the SQLite database path.

    Resolution order:
    1. KVAULT_DB_PATH environment variable
    2. ./knowledge.db in the current working directory
    """
    raw = os.environ.get("KVAULT_DB_PATH", "").strip()
    if raw:
        if raw == ":memory:":
            raise ConfigurationError(
                "KVAULT_DB_PATH=:memory: would discard the vault on exit. "
                "Point it at a file instead."
            )
        return Path(raw).expanduser()
    return Path("./knowledge.db")


# =============================================================================
# Cross-reference detection
# =============================================================================

# Confidence for a markdown link whose label is a topic name: [React](...)
LINK_CONFIDENCE = 1.0

# Confidence for a case-insensitive whole-word mention of a topic name
EXACT_CONFIDENCE = 0.9

# Confidence for a mention with whitespace between the letters ("R e a c t")
FUZZY_CONFIDENCE = 0.7

# Names with more non-whitespace characters than this skip the fuzzy pass.
# Keeps the per-name pattern short on vaults with long, sentence-like titles.
FUZZY_MAX_NAME_LENGTH = 64

# A referenced_by edge carries the forward confidence times this factor.
# Being referenced is a weaker signal than referencing.
REVERSE_DISCOUNT = 0.7

REFERENCES = "references"
REFERENCED_BY = "referenced_by"


# =============================================================================
# Relations
# =============================================================================

# Strength used by createRelation when the caller gives none
DEFAULT_RELATION_STRENGTH = 0.5


# =============================================================================
# Topics, search and history
# =============================================================================

DEFAULT_CONTENT_TYPE = "text/markdown"

# Heading used for topics without a category in listings
UNCATEGORIZED_LABEL = "(No category)"

# Directory used for uncategorized topics in markdown exports
UNCATEGORIZED_EXPORT_DIR = "_uncategorized"

DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 100

# Characters of content shown per search hit
SNIPPET_LENGTH = 200

DEFAULT_HISTORY_LIMIT = 10
MAX_HISTORY_LIMIT = 50

DEFAULT_EDITOR = "system"


# =============================================================================
# Import / export
# =============================================================================

EXPORT_FORMAT_NAME = "knowledge-vault"
EXPORT_FORMAT_VERSION = 1
