"""Logging configuration for knowledge_vault.

Usage in other modules:
    import logging
    log = logging.getLogger(__name__)

The log level can be configured via the KVAULT_LOG_LEVEL environment variable
(DEBUG, INFO, WARNING, ERROR). INFO is the default.
"""

import logging
import os
import sys


def configure_logging() -> None:
    """Configure logging for the knowledge_vault package.

    Call this once at process startup (cli.py or server.py).
    Subsequent calls are no-ops.
    """
    root_logger = logging.getLogger("knowledge_vault")

    if root_logger.handlers:
        return

    level_name = os.environ.get("KVAULT_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # stdout belongs to the MCP stdio transport, so log to stderr only
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))

    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    root_logger.propagate = False
