"""Pydantic models and enums for codechat review sessions."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string with a trailing Z."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


class ReviewStatus(StrEnum):
    """Session review states."""

    PENDING = "pending"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class FileStatus(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class Side(StrEnum):
    """Which side of the diff a comment is anchored to."""

    OLD = "old"
    NEW = "new"


class WireModel(BaseModel):
    """Base model using camelCase field names on the wire and on disk."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-ready dict with camelCase keys and unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FileSummary(WireModel):
    """Per-file change summary derived from a unified diff."""

    path: str
    old_path: str | None = None
    status: FileStatus
    additions: int = 0
    deletions: int = 0


class Comment(WireModel):
    """An inline reviewer comment anchored to a diff location."""

    id: str = Field(default_factory=new_id)
    file_path: str
    line: int = Field(ge=1)
    end_line: int | None = Field(default=None, ge=1)
    side: Side
    body: str = Field(min_length=1)
    created_at: str = Field(default_factory=utc_timestamp)
    resolved: bool = False
    agent_reply: str | None = None

    @property
    def is_range(self) -> bool:
        return self.end_line is not None and self.end_line != self.line


class AgentReply(WireModel):
    """An agent's response to one reviewer comment."""

    comment_id: str
    body: str
    resolved: bool = True


class Session(WireModel):
    """Persisted record of one repository's review conversation."""

    id: str = Field(default_factory=new_id)
    repo_path: str
    created_at: str = Field(default_factory=utc_timestamp)
    updated_at: str = Field(default_factory=utc_timestamp)
    status: ReviewStatus = ReviewStatus.PENDING
    diff: str = ""
    files: list[FileSummary] = Field(default_factory=list)
    comments: list[Comment] = Field(default_factory=list)
    description: str | None = None

    def find_comment(self, comment_id: str) -> Comment | None:
        for comment in self.comments:
            if comment.id == comment_id:
                return comment
        return None

    def unresolved_comments(self) -> list[Comment]:
        return [comment for comment in self.comments if not comment.resolved]


class ReviewResult(WireModel):
    """Outcome of a review round handed back to the calling agent."""

    session_id: str
    status: ReviewStatus
    comments: list[Comment] = Field(default_factory=list)
    summary: str | None = None

    @field_validator("status")
    @classmethod
    def _validate_terminal(cls, value: ReviewStatus) -> ReviewStatus:
        if value == ReviewStatus.PENDING:
            raise ValueError("a review result must carry a terminal status")
        return value


def derive_status(comments: list[Comment]) -> ReviewStatus:
    """Terminal status for a round: changes requested while anything is unresolved."""
    if any(not comment.resolved for comment in comments):
        return ReviewStatus.CHANGES_REQUESTED
    return ReviewStatus.APPROVED
