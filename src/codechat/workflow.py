"""Review workflow shared by the CLI and the MCP tool."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

from codechat.browser import open_app_mode
from codechat.config import ReviewSettings, load_settings
from codechat.errors import NotAGitRepositoryError, SessionNotFoundError, StorageError, WorkflowError
from codechat.git import DiffSource, GitCommandError, collect_changes, get_diff, get_repo_root, is_git_repo
from codechat.logs import session_tag, short_id
from codechat.models import AgentReply, ReviewResult, Session, derive_status
from codechat.resolver import resolve_session
from codechat.server import ReviewServer
from codechat.store import SessionStore

logger = logging.getLogger("codechat")

BrowserOpener = Callable[[str], Awaitable[object]]


@dataclass
class ReviewOptions:
    """One review request from an agent."""

    repo_path: str
    session_id: str | None = None
    description: str | None = None
    replies: list[AgentReply] = field(default_factory=list)
    skip_review: bool = False
    port: int | None = None
    # Seconds; None uses the configured default.
    timeout: float | None = None
    open_browser: bool = True


class EmptyDiffOutcome(BaseModel):
    kind: Literal["empty_diff"] = "empty_diff"


class SkippedOutcome(BaseModel):
    kind: Literal["skipped"] = "skipped"
    result: ReviewResult


class ReviewedOutcome(BaseModel):
    kind: Literal["reviewed"] = "reviewed"
    result: ReviewResult
    url: str


ReviewOutcome = EmptyDiffOutcome | SkippedOutcome | ReviewedOutcome


def _settings_or_default(settings: ReviewSettings | None) -> ReviewSettings:
    if settings is not None:
        return settings
    try:
        return load_settings()
    except ValueError as exc:
        raise WorkflowError(f"Invalid codechat configuration: {exc}") from exc


def build_store(settings: ReviewSettings) -> SessionStore:
    return SessionStore(settings.sessions_dir, retention_days=settings.retention_days)


def find_web_dist(settings: ReviewSettings) -> Path:
    web_dist = settings.web_dist
    if (web_dist / "index.html").is_file():
        return web_dist
    raise WorkflowError(
        f"Could not find web UI assets in {web_dist}. "
        "Build the UI or point CODECHAT_WEB_DIST at its dist directory."
    )


async def execute_review(
    options: ReviewOptions,
    *,
    settings: ReviewSettings | None = None,
    store: SessionStore | None = None,
    diff_source: DiffSource = get_diff,
    opener: BrowserOpener = open_app_mode,
) -> ReviewOutcome:
    """Run one review round.

    Returns EmptyDiffOutcome without touching storage when there is nothing
    to review, SkippedOutcome when ``skip_review`` is set, and otherwise
    serves the review UI and waits for its ReviewedOutcome. Every failure
    surfaces as WorkflowError.
    """
    settings = _settings_or_default(settings)
    store = store or build_store(settings)
    repo_path = os.path.abspath(os.path.expanduser(options.repo_path))

    if not await is_git_repo(repo_path):
        raise NotAGitRepositoryError(repo_path)

    try:
        repo_root = await get_repo_root(repo_path)
        diff, files = await collect_changes(repo_root, diff_source)
    except (GitCommandError, OSError) as exc:
        raise WorkflowError(f"Failed to compute diff: {exc}") from exc

    if not diff.strip():
        logger.info("No uncommitted changes in %s", repo_root)
        return EmptyDiffOutcome()

    try:
        session = await resolve_session(
            store,
            repo_root,
            diff,
            files,
            session_id=options.session_id,
            description=options.description,
            replies=options.replies,
        )
    except (SessionNotFoundError, StorageError) as exc:
        raise WorkflowError(str(exc)) from exc
    session_tag.set(short_id(session.id))

    if options.skip_review:
        session.status = derive_status(session.comments)
        try:
            await store.save(session)
        except StorageError as exc:
            raise WorkflowError(str(exc)) from exc
        result = ReviewResult(session_id=session.id, status=session.status, comments=session.comments)
        logger.info("Review skipped -> %s", result.status)
        return SkippedOutcome(result=result)

    web_dist = find_web_dist(settings)
    timeout = options.timeout if options.timeout is not None else settings.timeout_seconds
    server = ReviewServer(
        session,
        store,
        web_dist=web_dist,
        port=options.port or 0,
        timeout=timeout,
        disconnect_grace=settings.disconnect_grace_seconds,
        diff_source=diff_source,
        watch=settings.watch,
        debounce=settings.debounce_ms / 1000.0,
    )
    try:
        await server.start()
    except (OSError, RuntimeError) as exc:
        raise WorkflowError(f"Could not start review server on port {options.port or 0}: {exc}") from exc

    logger.info("Review server running at %s", server.url)
    logger.info("Session: %s", session.id)
    logger.info("Reviewing %d file(s)", len(files))

    if options.open_browser:
        try:
            await opener(server.url)
        except Exception as exc:
            logger.warning("Could not open a browser (%s); open %s manually", exc, server.url)

    try:
        result = await server.result()
    except Exception as exc:
        await server.stop()
        if isinstance(exc, WorkflowError):
            raise
        raise WorkflowError(str(exc) or type(exc).__name__) from exc
    return ReviewedOutcome(result=result, url=server.url)


async def get_session_by_id(
    session_id: str,
    *,
    settings: ReviewSettings | None = None,
    store: SessionStore | None = None,
) -> Session:
    """Load a session for display. Raises WorkflowError when it does not exist."""
    store = store or build_store(_settings_or_default(settings))
    try:
        return await store.load(session_id)
    except SessionNotFoundError as exc:
        raise WorkflowError(str(exc)) from exc
