"""Create-or-resume policy for review sessions.

Shared by the CLI and the MCP tool. Pure persistence-and-merge logic: it
never starts the review server.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from codechat.errors import SessionNotFoundError
from codechat.logs import short_id
from codechat.models import AgentReply, FileSummary, ReviewStatus, Session
from codechat.store import SessionStore

logger = logging.getLogger("codechat")


def apply_replies(session: Session, replies: Iterable[AgentReply]) -> int:
    """Fold agent replies into matching comments. Returns how many matched.

    Replies for unknown comment ids are ignored. A reply never un-resolves
    a comment; ``resolved=False`` only leaves an open thread open.
    """
    applied = 0
    for reply in replies:
        comment = session.find_comment(reply.comment_id)
        if comment is None:
            logger.debug("Ignoring reply for unknown comment %s", short_id(reply.comment_id))
            continue
        comment.agent_reply = reply.body
        if reply.resolved:
            comment.resolved = True
        applied += 1
    return applied


def resume_session(
    session: Session,
    diff: str,
    files: list[FileSummary],
    description: str | None = None,
    replies: Iterable[AgentReply] = (),
) -> None:
    """Start a new round on an existing session in place; identity is unchanged."""
    session.diff = diff
    session.files = list(files)
    session.status = ReviewStatus.PENDING
    session.description = description
    applied = apply_replies(session, replies)
    logger.info(
        "Session resumed %s (replies applied=%d, unresolved=%d)",
        short_id(session.id),
        applied,
        len(session.unresolved_comments()),
    )


async def resolve_session(
    store: SessionStore,
    repo_path: str,
    diff: str,
    files: list[FileSummary],
    *,
    session_id: str | None = None,
    description: str | None = None,
    replies: list[AgentReply] | None = None,
) -> Session:
    """Return the session for this review request, creating or resuming it.

    Raises SessionNotFoundError when an explicit session_id does not exist
    or belongs to another repository.
    """
    replies = replies or []

    if session_id is not None:
        session = await store.load(session_id)
        if session.repo_path != repo_path:
            raise SessionNotFoundError(session_id, f"belongs to {session.repo_path}")
        resume_session(session, diff, files, description, replies)
        await store.save(session)
        return session

    latest = await store.find_latest_by_repo(repo_path)
    # A finished review is not silently reopened unless the agent is replying to it.
    if latest is None or (latest.status != ReviewStatus.PENDING and not replies):
        session = await store.create(repo_path, diff, files, description)
        store.schedule_prune()
        return session

    resume_session(latest, diff, files, description, replies)
    await store.save(latest)
    return latest
