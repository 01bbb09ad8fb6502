"""WebSocket wire protocol between the review server and the browser UI.

Every frame is a JSON text frame shaped ``{"type": ..., "data": ...}``.
Inbound frames are validated against the discriminated union below;
anything that does not match one of the known variants is dropped.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from codechat.models import Comment, FileSummary, Session, Side, WireModel


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("body must not be blank")
    return value


class AddCommentData(WireModel):
    file_path: str = Field(min_length=1)
    line: int = Field(ge=1)
    end_line: int | None = Field(default=None, ge=1)
    side: Side
    body: str

    @field_validator("body")
    @classmethod
    def _validate_body(cls, value: str) -> str:
        return _require_text(value)

    @model_validator(mode="after")
    def _normalize_range(self) -> AddCommentData:
        # Single-line comments never carry endLine; reversed drags are flipped.
        if self.end_line is not None:
            if self.end_line == self.line:
                self.end_line = None
            elif self.end_line < self.line:
                self.line, self.end_line = self.end_line, self.line
        return self


class EditCommentData(WireModel):
    id: str = Field(min_length=1)
    body: str

    @field_validator("body")
    @classmethod
    def _validate_body(cls, value: str) -> str:
        return _require_text(value)


class DeleteCommentData(WireModel):
    id: str = Field(min_length=1)


class SubmitReviewData(WireModel):
    summary: str | None = None


class AddCommentMessage(BaseModel):
    type: Literal["add_comment"]
    data: AddCommentData


class EditCommentMessage(BaseModel):
    type: Literal["edit_comment"]
    data: EditCommentData


class DeleteCommentMessage(BaseModel):
    type: Literal["delete_comment"]
    data: DeleteCommentData


class SubmitReviewMessage(BaseModel):
    type: Literal["submit_review"]
    data: SubmitReviewData | None = None

    @property
    def summary(self) -> str | None:
        if self.data is None or self.data.summary is None:
            return None
        return self.data.summary.strip() or None


ClientMessage = Annotated[
    AddCommentMessage | EditCommentMessage | DeleteCommentMessage | SubmitReviewMessage,
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage | None:
    """Validate one inbound frame. Returns None for anything malformed or unknown."""
    try:
        return _client_message_adapter.validate_json(raw)
    except ValidationError:
        return None


# -- Server -> client --


def _frame(msg_type: str, data: Any = None) -> str:
    payload: dict[str, Any] = {"type": msg_type}
    if data is not None:
        payload["data"] = data
    return json.dumps(payload, separators=(",", ":"))


def init_frame(session: Session) -> str:
    return _frame("init", session.to_wire())


def comment_added_frame(comment: Comment) -> str:
    return _frame("comment_added", comment.to_wire())


def comment_edited_frame(comment: Comment) -> str:
    return _frame("comment_edited", {"id": comment.id, "body": comment.body})


def comment_deleted_frame(comment_id: str) -> str:
    return _frame("comment_deleted", {"id": comment_id})


def diff_updated_frame(diff: str, files: list[FileSummary]) -> str:
    return _frame("diff_updated", {"diff": diff, "files": [f.to_wire() for f in files]})


def review_complete_frame() -> str:
    return _frame("review_complete")
