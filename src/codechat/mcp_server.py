"""FastMCP server exposing codechat reviews to coding agents over stdio."""

from __future__ import annotations

import logging
from typing import Any

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from codechat.errors import WorkflowError
from codechat.logs import configure_logging
from codechat.models import AgentReply
from codechat.workflow import EmptyDiffOutcome, ReviewOptions, execute_review, get_session_by_id

logger = logging.getLogger("codechat")

NO_CHANGES_MESSAGE = "No uncommitted changes found."

mcp = FastMCP(
    "codechat",
    instructions=(
        "Request human review of uncommitted changes. "
        "codechat_review blocks until the reviewer submits; address each "
        "unresolved comment, then call it again with replies keyed by commentId."
    ),
)


def mcp_tool(fn):
    """Register ``fn`` as a codechat tool; ``.fn`` stays the plain coroutine for direct calls."""
    registered = mcp.tool(fn)
    if not hasattr(registered, "fn"):
        registered.fn = fn
    return registered


@mcp_tool
async def codechat_review(
    repo_path: str,
    session_id: str | None = None,
    message: str | None = None,
    replies: list[AgentReply] | None = None,
    skip_review: bool = False,
    port: int | None = None,
    timeout_minutes: float | None = None,
) -> dict[str, Any]:
    """Open a browser review of the repository's uncommitted changes and wait for the verdict.

    Returns the review result: ``sessionId``, ``status`` (approved or
    changes_requested), every ``comments`` entry with its ``resolved`` flag,
    and an optional ``summary``. Pass ``replies`` to answer earlier comments;
    a reply resolves its comment unless ``resolved`` is false. Set
    ``skip_review`` to record replies without opening the UI.
    """
    if timeout_minutes is not None and timeout_minutes <= 0:
        raise ToolError("timeout_minutes must be positive")
    options = ReviewOptions(
        repo_path=repo_path,
        session_id=session_id,
        description=message,
        replies=list(replies or []),
        skip_review=skip_review,
        port=port,
        timeout=timeout_minutes * 60 if timeout_minutes is not None else None,
        open_browser=not skip_review,
    )
    try:
        outcome = await execute_review(options)
    except WorkflowError as exc:
        logger.warning("codechat_review -> %s", exc)
        raise ToolError(str(exc)) from exc

    if isinstance(outcome, EmptyDiffOutcome):
        return {"message": NO_CHANGES_MESSAGE}
    return outcome.result.to_wire()


@mcp_tool
async def codechat_get_session(session_id: str) -> dict[str, Any]:
    """Return a stored review session, including its diff and comment history."""
    try:
        session = await get_session_by_id(session_id)
    except WorkflowError as exc:
        raise ToolError(str(exc)) from exc
    return session.to_wire()


def main() -> None:
    """Run the MCP server over stdio. Logs go to stderr and the JSONL logfile."""
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
