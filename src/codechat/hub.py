"""Live review state for one session: connected clients, mutations, submission.

The hub is transport-agnostic. The HTTP/WebSocket server attaches one
ClientConnection per socket and feeds it inbound text frames; everything
else (comment mutations, broadcasts, timers, the single submission) lives
here.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from codechat.errors import StorageError
from codechat.logs import session_tag, short_id
from codechat.models import Comment, FileSummary, ReviewResult, Session, derive_status
from codechat.protocol import (
    AddCommentData,
    AddCommentMessage,
    DeleteCommentMessage,
    EditCommentMessage,
    SubmitReviewMessage,
    comment_added_frame,
    comment_deleted_frame,
    comment_edited_frame,
    diff_updated_frame,
    init_frame,
    parse_client_message,
    review_complete_frame,
)
from codechat.store import SessionStore

logger = logging.getLogger("codechat")

DEFAULT_TIMEOUT_SECONDS = 30 * 60.0
DEFAULT_DISCONNECT_GRACE_SECONDS = 5.0
CLIENT_FLUSH_TIMEOUT_SECONDS = 2.0

ShutdownHook = Callable[[], Awaitable[None]]


class ClientConnection:
    """One connected UI tab with an ordered outbound queue.

    Frames are enqueued synchronously and written by a dedicated task, so
    every client sees frames in exactly the order they were broadcast.
    """

    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        close: Callable[[], Awaitable[None]],
        label: str = "client",
    ) -> None:
        self.label = label
        self._send = send
        self._close = close
        self._open = True
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._writer = asyncio.create_task(self._drain())

    @property
    def is_open(self) -> bool:
        return self._open

    def enqueue(self, frame: str) -> None:
        if self._open:
            self._queue.put_nowait(frame)

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                await self._send(frame)
            except Exception as exc:
                logger.debug("%s -> send failed, dropping connection: %s", self.label, exc)
                self._open = False
                return

    async def close(self) -> None:
        """Flush queued frames, then close the socket."""
        if self._open:
            self._open = False
            self._queue.put_nowait(None)
        with suppress(Exception):
            await asyncio.wait_for(self._writer, timeout=CLIENT_FLUSH_TIMEOUT_SECONDS)
        with suppress(Exception):
            await self._close()

    def abort(self) -> None:
        """Drop the connection without flushing (the peer is already gone)."""
        self._open = False
        self._writer.cancel()


class ReviewHub:
    """Protocol state machine for a single review session.

    Lifecycle: ``start()`` arms the timeout; clients attach and detach;
    inbound frames mutate the session; the first submission trigger
    (explicit submit, timeout, or everyone gone past the grace period)
    finalizes the round and resolves ``wait()``.
    """

    def __init__(
        self,
        session: Session,
        store: SessionStore,
        *,
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
        disconnect_grace: float = DEFAULT_DISCONNECT_GRACE_SECONDS,
    ) -> None:
        self.session = session
        self.store = store
        self.timeout = timeout
        self.disconnect_grace = disconnect_grace
        self.write_lock = asyncio.Lock()
        self._clients: set[ClientConnection] = set()
        self._submitted = False
        self._submit_reason: str | None = None
        self._submit_task: asyncio.Task | None = None
        self._result: asyncio.Future[ReviewResult] | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._grace_handle: asyncio.TimerHandle | None = None
        self._shutdown_hooks: list[ShutdownHook] = []

    # -- lifecycle --

    @property
    def submitted(self) -> bool:
        return self._submitted

    @property
    def submit_reason(self) -> str | None:
        return self._submit_reason

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def add_shutdown_hook(self, hook: ShutdownHook) -> None:
        """Register a coroutine run after clients are closed on submission."""
        self._shutdown_hooks.append(hook)

    def start(self) -> None:
        """Arm the overall timeout. Must be called from the running event loop."""
        loop = asyncio.get_running_loop()
        session_tag.set(short_id(self.session.id))
        if self._result is None:
            self._result = loop.create_future()
        if self.timeout is not None and self._timeout_handle is None:
            self._timeout_handle = loop.call_later(self.timeout, self._on_timeout)

    async def wait(self) -> ReviewResult:
        """Block until the review is submitted and return its result."""
        if self._result is None:
            self._result = asyncio.get_running_loop().create_future()
        return await asyncio.shield(self._result)

    # -- clients --

    def attach(self, client: ClientConnection) -> bool:
        """Register a new client and queue its ``init`` frame.

        Returns False once the review has been submitted.
        """
        if self._submitted:
            return False
        # A reconnect within the grace window keeps the review open.
        if self._grace_handle is not None:
            self._grace_handle.cancel()
            self._grace_handle = None
            logger.info("Client reconnected, disconnect grace cancelled")
        self._clients.add(client)
        client.enqueue(init_frame(self.session))
        logger.info("Client connected (%d open)", len(self._clients))
        return True

    def detach(self, client: ClientConnection) -> None:
        if client in self._clients:
            self._clients.discard(client)
            client.abort()
            logger.info("Client disconnected (%d open)", len(self._clients))
        if self._submitted or self._clients or self._grace_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._grace_handle = loop.call_later(self.disconnect_grace, self._on_grace_expired)

    def _broadcast(self, frame: str) -> None:
        for client in list(self._clients):
            if client.is_open:
                client.enqueue(frame)

    # -- inbound protocol --

    async def handle_text(self, raw: str | bytes) -> None:
        """Apply one inbound frame. Malformed or unknown frames are dropped."""
        message = parse_client_message(raw)
        if message is None:
            logger.debug("Dropping malformed client message")
            return

        if isinstance(message, AddCommentMessage):
            await self.add_comment(message.data)
        elif isinstance(message, EditCommentMessage):
            await self.edit_comment(message.data.id, message.data.body)
        elif isinstance(message, DeleteCommentMessage):
            await self.delete_comment(message.data.id)
        elif isinstance(message, SubmitReviewMessage):
            self.request_submit("submitted", summary=message.summary)

    async def _persist(self, action: str) -> bool:
        try:
            await self.store.save(self.session)
        except StorageError as exc:
            # The in-memory session stays authoritative for this round.
            logger.error("%s -> storage write failed: %s", action, exc)
            return False
        return True

    async def add_comment(self, data: AddCommentData) -> Comment | None:
        async with self.write_lock:
            if self._submitted:
                return None
            comment = Comment(
                file_path=data.file_path,
                line=data.line,
                end_line=data.end_line,
                side=data.side,
                body=data.body,
            )
            self.session.comments.append(comment)
            await self._persist("add_comment")
            self._broadcast(comment_added_frame(comment))
            logger.info(
                "add_comment -> %s %s:%s",
                short_id(comment.id),
                comment.file_path,
                comment.line,
            )
            return comment

    def _open_comment(self, comment_id: str) -> Comment | None:
        comment = self.session.find_comment(comment_id)
        if comment is None or comment.resolved:
            return None
        return comment

    async def edit_comment(self, comment_id: str, body: str) -> Comment | None:
        async with self.write_lock:
            if self._submitted:
                return None
            comment = self._open_comment(comment_id)
            if comment is None:
                logger.debug("edit_comment -> %s ignored (missing or resolved)", short_id(comment_id))
                return None
            comment.body = body
            await self._persist("edit_comment")
            self._broadcast(comment_edited_frame(comment))
            return comment

    async def delete_comment(self, comment_id: str) -> bool:
        async with self.write_lock:
            if self._submitted:
                return False
            comment = self._open_comment(comment_id)
            if comment is None:
                logger.debug("delete_comment -> %s ignored (missing or resolved)", short_id(comment_id))
                return False
            self.session.comments.remove(comment)
            await self._persist("delete_comment")
            self._broadcast(comment_deleted_frame(comment_id))
            logger.info("delete_comment -> %s", short_id(comment_id))
            return True

    async def apply_diff(self, diff: str, files: list[FileSummary]) -> bool:
        """Replace diff and files together when the diff text changed."""
        async with self.write_lock:
            if self._submitted or diff == self.session.diff:
                return False
            self.session.diff = diff
            self.session.files = list(files)
            await self._persist("diff_updated")
            self._broadcast(diff_updated_frame(diff, self.session.files))
            logger.info("diff_updated -> %d file(s)", len(files))
            return True

    # -- submission --

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self.request_submit("timeout"):
            logger.info("Review timed out, auto-submitting")

    def _on_grace_expired(self) -> None:
        self._grace_handle = None
        if self._clients:
            return
        if self.request_submit("disconnected"):
            logger.info("All clients gone, auto-submitting")

    def _cancel_timers(self) -> None:
        for handle in (self._timeout_handle, self._grace_handle):
            if handle is not None:
                handle.cancel()
        self._timeout_handle = None
        self._grace_handle = None

    def request_submit(self, reason: str, summary: str | None = None) -> bool:
        """Begin submission once. Later calls are no-ops and return False.

        The guard is checked and set before any await, so concurrent
        triggers (a submit racing the timeout) cannot double-submit.
        """
        if self._submitted:
            return False
        self._submitted = True
        self._submit_reason = reason
        if self._result is None:
            self._result = asyncio.get_running_loop().create_future()
        self._submit_task = asyncio.create_task(self._finish(reason, summary))
        return True

    async def _finish(self, reason: str, summary: str | None) -> None:
        assert self._result is not None
        try:
            # Let an in-flight mutation land (and broadcast) before closing the round.
            async with self.write_lock:
                self.session.status = derive_status(self.session.comments)
                await self._persist("submit")
                result = ReviewResult(
                    session_id=self.session.id,
                    status=self.session.status,
                    comments=list(self.session.comments),
                    summary=summary,
                )
                self._broadcast(review_complete_frame())
            logger.info(
                "Review %s -> %s (%d comment(s), %d unresolved)",
                reason,
                result.status,
                len(result.comments),
                len(self.session.unresolved_comments()),
            )

            self._cancel_timers()
            clients = list(self._clients)
            self._clients.clear()
            await asyncio.gather(*(client.close() for client in clients), return_exceptions=True)

            for hook in self._shutdown_hooks:
                try:
                    await hook()
                except Exception:
                    logger.exception("Shutdown step failed after submit")
        except Exception as exc:
            logger.exception("Submit failed (%s)", reason)
            if not self._result.done():
                self._result.set_exception(exc)
            return

        if not self._result.done():
            self._result.set_result(result)
