"""Tests for the MCP tool handlers."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from fastmcp.exceptions import ToolError

from codechat.config import ReviewSettings
from codechat.errors import NotAGitRepositoryError
from codechat.mcp_server import NO_CHANGES_MESSAGE, codechat_get_session, codechat_review
from codechat.models import AgentReply, ReviewResult, ReviewStatus
from codechat.workflow import EmptyDiffOutcome, ReviewedOutcome, SkippedOutcome, build_store


def _patched(outcome=None, side_effect=None):
    return patch("codechat.mcp_server.execute_review", AsyncMock(return_value=outcome, side_effect=side_effect))


class TestCodechatReview:
    async def test_returns_result_dict(self) -> None:
        result = ReviewResult(session_id="s-1", status=ReviewStatus.APPROVED)
        with _patched(ReviewedOutcome(result=result, url="http://127.0.0.1:9")) as mock:
            payload = await codechat_review.fn(repo_path="/work/repo", message="Add parser", timeout_minutes=5)
        assert payload == {"sessionId": "s-1", "status": "approved", "comments": []}
        options = mock.await_args.args[0]
        assert options.description == "Add parser"
        assert options.timeout == 300
        assert options.open_browser is True

    async def test_empty_diff_message(self) -> None:
        with _patched(EmptyDiffOutcome()):
            payload = await codechat_review.fn(repo_path="/work/repo")
        assert payload == {"message": NO_CHANGES_MESSAGE}

    async def test_skip_review_forwards_replies(self) -> None:
        result = ReviewResult(session_id="s-1", status=ReviewStatus.APPROVED)
        replies = [AgentReply(comment_id="c1", body="done")]
        with _patched(SkippedOutcome(result=result)) as mock:
            await codechat_review.fn(repo_path="/work/repo", replies=replies, skip_review=True, session_id="s-1")
        options = mock.await_args.args[0]
        assert options.replies == replies
        assert options.session_id == "s-1"
        assert options.open_browser is False

    async def test_workflow_error_becomes_tool_error(self) -> None:
        with _patched(side_effect=NotAGitRepositoryError("/nowhere")):
            with pytest.raises(ToolError, match="Not a git repository: /nowhere"):
                await codechat_review.fn(repo_path="/nowhere")

    async def test_rejects_non_positive_timeout(self) -> None:
        with _patched() as mock:
            with pytest.raises(ToolError):
                await codechat_review.fn(repo_path="/work/repo", timeout_minutes=0)
        mock.assert_not_awaited()


class TestCodechatGetSession:
    async def test_missing_session(self, settings: ReviewSettings, monkeypatch) -> None:
        monkeypatch.setenv("CODECHAT_DATA_DIR", str(settings.data_dir))
        monkeypatch.setenv("CODECHAT_CONFIG_PATH", str(Path(settings.data_dir) / "absent.json"))
        with pytest.raises(ToolError, match="Session not found"):
            await codechat_get_session.fn(session_id="nope")

    async def test_returns_session_dict(self, settings: ReviewSettings, monkeypatch) -> None:
        monkeypatch.setenv("CODECHAT_DATA_DIR", str(settings.data_dir))
        monkeypatch.setenv("CODECHAT_CONFIG_PATH", str(Path(settings.data_dir) / "absent.json"))
        session = await build_store(settings).create("/work/repo", "diff", [])
        payload = await codechat_get_session.fn(session_id=session.id)
        assert payload["id"] == session.id
        assert payload["repoPath"] == "/work/repo"
