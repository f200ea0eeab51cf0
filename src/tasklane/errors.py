# src/tasklane/errors.py

"""
Error taxonomy.

Every error carries a stable machine-readable `code` next to the human message,
so callers (CLI, tests, embedding apps) can branch on the code instead of parsing text.
"""

from __future__ import annotations

from typing import Any


class TaskError(Exception):
    """Base class for all tasklane errors."""

    default_code = "TASK_ERROR"

    def __init__(self, message: str, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(TaskError):
    """Business-rule or structural violation (illegal edge, illegal transition, ...)."""

    default_code = "VALIDATION_ERROR"


class NotFoundError(TaskError):
    """Missing task or edge."""

    default_code = "NOT_FOUND"


class ConflictError(TaskError):
    """Duplicate edge or active-task contention."""

    default_code = "CONFLICT"
