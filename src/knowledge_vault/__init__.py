"""knowledge-vault: a topic knowledge base served over MCP."""

__version__ = "1.0.0"
