"""Exceptions raised by the orchestration engine."""

from __future__ import annotations


class MalformedDocumentError(ValueError):
    """Task document cannot be turned into task records."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class SessionNotFoundError(RuntimeError):
    """No run session exists for the requested workspace or feature."""
