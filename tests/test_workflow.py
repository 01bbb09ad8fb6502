"""End-to-end tests for the review workflow against real repositories."""

from __future__ import annotations

import asyncio
import json
import socket
from pathlib import Path

import pytest
import uvicorn
from websockets.asyncio.client import connect

from codechat.config import ReviewSettings
from codechat.errors import NotAGitRepositoryError, WorkflowError
from codechat.models import AgentReply, ReviewStatus
from codechat.server import ReviewServer
from codechat.workflow import (
    EmptyDiffOutcome,
    ReviewedOutcome,
    ReviewOptions,
    SkippedOutcome,
    build_store,
    execute_review,
    get_session_by_id,
)


class _Reviewer:
    """Browser stand-in: connects to the served URL, sends frames, waits for review_complete."""

    def __init__(self, *frames: dict) -> None:
        self.frames = frames
        self.received: list[dict] = []
        self.urls: list[str] = []
        self._tasks: list[asyncio.Task] = []

    async def __call__(self, url: str) -> str:
        self.urls.append(url)
        self._tasks.append(asyncio.create_task(self._drive(url)))
        return "test-reviewer"

    async def _drive(self, url: str) -> None:
        async with connect(url.replace("http://", "ws://") + "/") as ws:
            self.received.append(json.loads(await ws.recv()))
            for frame in self.frames:
                await ws.send(json.dumps(frame))
            async for raw in ws:
                message = json.loads(raw)
                self.received.append(message)
                if message["type"] == "review_complete":
                    return


def _modify(repo: Path) -> None:
    (repo / "a.ts").write_text(
        "const a = 1;\nconst b = 3;\nconst c = 4;\nconst d = 5;\nexport { a };\n", encoding="utf-8"
    )


COMMENT = {"type": "add_comment", "data": {"filePath": "a.ts", "line": 2, "side": "new", "body": "why 3?"}}
SUBMIT = {"type": "submit_review"}


class TestPreconditions:
    async def test_not_a_git_repository(self, tmp_path: Path, settings: ReviewSettings) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(NotAGitRepositoryError, match="Not a git repository"):
            await execute_review(ReviewOptions(repo_path=str(plain)), settings=settings)

    async def test_empty_diff_touches_no_storage(self, git_repo: Path, settings: ReviewSettings) -> None:
        opener = _Reviewer()
        outcome = await execute_review(ReviewOptions(repo_path=str(git_repo)), settings=settings, opener=opener)
        assert isinstance(outcome, EmptyDiffOutcome)
        assert not settings.sessions_dir.exists()
        assert opener.urls == []

    async def test_whitespace_only_diff_is_empty(self, git_repo: Path, settings: ReviewSettings) -> None:
        async def blank_diff(root: str) -> str:
            return "\n  \n\t"

        opener = _Reviewer()
        outcome = await execute_review(
            ReviewOptions(repo_path=str(git_repo)), settings=settings, diff_source=blank_diff, opener=opener
        )
        assert isinstance(outcome, EmptyDiffOutcome)
        assert not settings.sessions_dir.exists()
        assert opener.urls == []

    async def test_unknown_session_id(self, git_repo: Path, settings: ReviewSettings) -> None:
        _modify(git_repo)
        with pytest.raises(WorkflowError, match="Session not found"):
            await execute_review(
                ReviewOptions(repo_path=str(git_repo), session_id="missing", skip_review=True),
                settings=settings,
            )

    async def test_missing_ui_assets(self, git_repo: Path, settings: ReviewSettings, tmp_path: Path) -> None:
        _modify(git_repo)
        settings = settings.model_copy(update={"web_dist": tmp_path / "nowhere"})
        with pytest.raises(WorkflowError, match="web UI assets"):
            await execute_review(ReviewOptions(repo_path=str(git_repo), open_browser=False), settings=settings)

    async def test_port_in_use(self, git_repo: Path, settings: ReviewSettings) -> None:
        _modify(git_repo)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen()
            port = blocker.getsockname()[1]
            with pytest.raises(WorkflowError, match="Could not start review server"):
                await execute_review(
                    ReviewOptions(repo_path=str(git_repo), port=port, open_browser=False),
                    settings=settings,
                )

    async def test_server_exiting_during_startup(self, git_repo: Path, settings: ReviewSettings, monkeypatch) -> None:
        _modify(git_repo)

        async def exit_immediately(self, sockets=None) -> None:
            return None

        monkeypatch.setattr(uvicorn.Server, "serve", exit_immediately)
        with pytest.raises(WorkflowError, match="exited during startup"):
            await execute_review(ReviewOptions(repo_path=str(git_repo), open_browser=False), settings=settings)

    async def test_failure_while_waiting_stops_server(
        self, git_repo: Path, settings: ReviewSettings, monkeypatch
    ) -> None:
        _modify(git_repo)
        servers: list[ReviewServer] = []

        async def broken_result(self) -> None:
            servers.append(self)
            raise ValueError("hub state lost")

        monkeypatch.setattr(ReviewServer, "result", broken_result)
        with pytest.raises(WorkflowError, match="hub state lost"):
            await asyncio.wait_for(
                execute_review(ReviewOptions(repo_path=str(git_repo), open_browser=False), settings=settings),
                timeout=10,
            )
        assert servers[0]._serve_task.done()


class TestReviewRounds:
    async def test_comment_then_reply_round_trip(self, git_repo: Path, settings: ReviewSettings) -> None:
        _modify(git_repo)
        reviewer = _Reviewer(COMMENT, SUBMIT)
        outcome = await asyncio.wait_for(
            execute_review(
                ReviewOptions(repo_path=str(git_repo), description="Tweak constants"),
                settings=settings,
                opener=reviewer,
            ),
            timeout=10,
        )

        assert isinstance(outcome, ReviewedOutcome)
        assert outcome.url in reviewer.urls
        result = outcome.result
        assert result.status == ReviewStatus.CHANGES_REQUESTED
        assert len(result.comments) == 1
        assert reviewer.received[0]["data"]["description"] == "Tweak constants"
        assert [m["type"] for m in reviewer.received[1:]] == ["comment_added", "review_complete"]

        reply = AgentReply(comment_id=result.comments[0].id, body="Needed for the new header layout.")
        skipped = await execute_review(
            ReviewOptions(repo_path=str(git_repo), replies=[reply], skip_review=True),
            settings=settings,
        )

        assert isinstance(skipped, SkippedOutcome)
        assert skipped.result.session_id == result.session_id
        assert skipped.result.status == ReviewStatus.APPROVED
        assert skipped.result.comments[0].agent_reply == "Needed for the new header layout."

        stored = await get_session_by_id(result.session_id, settings=settings)
        assert stored.status == ReviewStatus.APPROVED
        assert stored.comments[0].resolved is True

    async def test_open_question_reply_keeps_changes_requested(
        self, git_repo: Path, settings: ReviewSettings
    ) -> None:
        _modify(git_repo)
        first = await asyncio.wait_for(
            execute_review(ReviewOptions(repo_path=str(git_repo)), settings=settings, opener=_Reviewer(COMMENT, SUBMIT)),
            timeout=10,
        )
        comment_id = first.result.comments[0].id
        skipped = await execute_review(
            ReviewOptions(
                repo_path=str(git_repo),
                replies=[AgentReply(comment_id=comment_id, body="Which value?", resolved=False)],
                skip_review=True,
            ),
            settings=settings,
        )
        assert skipped.result.status == ReviewStatus.CHANGES_REQUESTED

    async def test_browser_failure_is_not_fatal(self, git_repo: Path, settings: ReviewSettings) -> None:
        _modify(git_repo)

        async def broken_opener(url: str) -> str:
            raise RuntimeError("no display")

        outcome = await asyncio.wait_for(
            execute_review(
                ReviewOptions(repo_path=str(git_repo), timeout=0.3),
                settings=settings,
                opener=broken_opener,
            ),
            timeout=10,
        )
        assert isinstance(outcome, ReviewedOutcome)
        assert outcome.result.status == ReviewStatus.APPROVED

    async def test_next_round_after_approval_starts_new_session(
        self, git_repo: Path, settings: ReviewSettings
    ) -> None:
        _modify(git_repo)
        first = await asyncio.wait_for(
            execute_review(ReviewOptions(repo_path=str(git_repo)), settings=settings, opener=_Reviewer(SUBMIT)),
            timeout=10,
        )
        assert first.result.status == ReviewStatus.APPROVED
        second = await execute_review(ReviewOptions(repo_path=str(git_repo), skip_review=True), settings=settings)
        assert second.result.session_id != first.result.session_id
        assert len(await build_store(settings).list_by_repo(str(git_repo.resolve()))) == 2


class TestGetSession:
    async def test_missing_session(self, settings: ReviewSettings) -> None:
        with pytest.raises(WorkflowError, match="Session not found"):
            await get_session_by_id("nope", settings=settings)
