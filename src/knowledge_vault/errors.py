"""Structured errors for knowledge_vault.

Every failure an MCP client or CLI user can act on is raised as a
VaultError carrying a stable code, so both surfaces can report it without
parsing messages.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes for programmatic handling."""

    TOPIC_NOT_FOUND = "TOPIC_NOT_FOUND"
    VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INVALID_FORMAT = "INVALID_FORMAT"
    STORAGE_ERROR = "STORAGE_ERROR"


class VaultError(Exception):
    """Base exception with an error code and optional details."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"error": error}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def topic_not_found(cls, topic: str, category: str | None = None) -> VaultError:
        where = f' in category "{category}"' if category else ""
        details: dict[str, Any] = {"topic": topic}
        if category:
            details["category"] = category
        return cls(
            ErrorCode.TOPIC_NOT_FOUND,
            f'No information found for topic "{topic}"{where}',
            details,
        )

    @classmethod
    def invalid_argument(cls, message: str, **details: Any) -> VaultError:
        return cls(ErrorCode.INVALID_ARGUMENT, message, details)

    @classmethod
    def storage_error(cls, operation: str, error: Exception) -> VaultError:
        return cls(
            ErrorCode.STORAGE_ERROR,
            f"Storage failure during {operation}: {error}",
            {"operation": operation},
        )


def format_error_json(code: ErrorCode | str, message: str) -> str:
    """Format a non-VaultError failure in the same JSON shape."""
    value = code.value if isinstance(code, ErrorCode) else code
    return json.dumps({"error": {"code": value, "message": message}})
