"""Exceptions raised by codechat."""

from __future__ import annotations


class CodechatError(Exception):
    """Base exception for all codechat errors."""


class WorkflowError(CodechatError):
    """A review request failed; the message is meant for the end user."""


class NotAGitRepositoryError(WorkflowError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Not a git repository: {path}")


class SessionNotFoundError(CodechatError):
    """No readable session exists for the given id (missing or corrupted)."""

    def __init__(self, session_id: str, reason: str | None = None) -> None:
        self.session_id = session_id
        self.reason = reason
        message = f"Session not found: {session_id}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class StorageError(CodechatError):
    """Writing a session file failed."""
