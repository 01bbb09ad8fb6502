"""HTTP + WebSocket review server bound to localhost.

Serves the prebuilt UI bundle over HTTP and the live review protocol over a
WebSocket at ``/`` on the same port. One server instance serves one session
and shuts itself down once the review is submitted.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from contextlib import suppress
from pathlib import Path

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from codechat.git import DiffSource, collect_changes, get_diff
from codechat.hub import (
    DEFAULT_DISCONNECT_GRACE_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    ClientConnection,
    ReviewHub,
)
from codechat.logs import session_tag, short_id
from codechat.models import ReviewResult, Session
from codechat.store import SessionStore
from codechat.watcher import DEFAULT_DEBOUNCE_SECONDS, DiffWatcher

logger = logging.getLogger("codechat")

DEFAULT_HOST = "127.0.0.1"
STARTUP_TIMEOUT_SECONDS = 10.0

CONTENT_TYPES: dict[str, str] = {
    ".html": "text/html",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".css": "text/css",
    ".json": "application/json",
    ".map": "application/json",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".txt": "text/plain",
}


def resolve_asset(root: Path, request_path: str) -> Path | None:
    """Map a request path onto the asset root.

    Returns None when the resolved path escapes the root (directory traversal).
    """
    relative = request_path.lstrip("/") or "index.html"
    candidate = (root / relative).resolve()
    # relative_to() gives strict containment; a startswith() prefix check
    # would let sibling directories such as dist-backup/ through.
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    return candidate


class ReviewServer:
    """Serve one session until its review is submitted."""

    def __init__(
        self,
        session: Session,
        store: SessionStore,
        *,
        web_dist: str | Path,
        host: str = DEFAULT_HOST,
        port: int = 0,
        timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
        disconnect_grace: float = DEFAULT_DISCONNECT_GRACE_SECONDS,
        diff_source: DiffSource = get_diff,
        watch: bool = True,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.hub = ReviewHub(session, store, timeout=timeout, disconnect_grace=disconnect_grace)
        self.web_dist = Path(web_dist).resolve()
        self.host = host
        self.port = port
        self.diff_source = diff_source
        self.watch = watch
        self.debounce = debounce
        self.watcher: DiffWatcher | None = None
        self.app = Starlette(
            routes=[
                WebSocketRoute("/", self._websocket_endpoint),
                Route("/{path:path}", self._static_endpoint, methods=["GET"]),
            ]
        )
        self._uvicorn: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None

    @property
    def session(self) -> Session:
        return self.hub.session

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    # -- HTTP --

    async def _static_endpoint(self, request: Request) -> Response:
        asset_path = resolve_asset(self.web_dist, request.path_params.get("path", ""))
        if asset_path is None:
            return PlainTextResponse("Forbidden", status_code=403)

        if asset_path.is_file():
            content_type = CONTENT_TYPES.get(asset_path.suffix.lower(), "application/octet-stream")
            return Response(content=asset_path.read_bytes(), media_type=content_type)

        # SPA fallback: client-side routes all render index.html.
        index_path = self.web_dist / "index.html"
        if index_path.is_file():
            return HTMLResponse(content=index_path.read_bytes())
        return PlainTextResponse("Not found", status_code=404)

    # -- WebSocket --

    async def _websocket_endpoint(self, websocket: WebSocket) -> None:
        session_tag.set(short_id(self.session.id))
        await websocket.accept()
        client = ClientConnection(websocket.send_text, websocket.close, label="ws-client")
        if not self.hub.attach(client):
            await client.close()
            return

        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    # Binary frames are not part of the protocol.
                    continue
                await self.hub.handle_text(raw)
        except WebSocketDisconnect:
            pass
        except RuntimeError as exc:
            # Starlette refuses receive() once the socket was closed server-side.
            logger.debug("WebSocket receive stopped: %s", exc)
        finally:
            self.hub.detach(client)

    # -- lifecycle --

    async def _refresh_diff(self) -> None:
        diff, files = await collect_changes(self.session.repo_path, self.diff_source)
        await self.hub.apply_diff(diff, files)

    async def start(self) -> None:
        """Bind, start serving, arm timers and the file watcher.

        Raises OSError when the port cannot be bound; there is no fallback port.
        Raises RuntimeError when uvicorn exits or stalls before it is serving;
        the socket is closed and the serve task stopped before raising.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=1,
        )
        self._uvicorn = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._uvicorn.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT_SECONDS
        while not self._uvicorn.started:
            if self._serve_task.done():
                sock.close()
                self._serve_task.result()
                raise RuntimeError("Review server exited during startup")
            if loop.time() > deadline:
                await self._stop_serving(cancel=True)
                sock.close()
                raise RuntimeError("Review server did not start in time")
            await asyncio.sleep(0.01)

        self.hub.add_shutdown_hook(self.stop)
        self.hub.start()
        if self.watch:
            self.watcher = DiffWatcher(self.session.repo_path, self._refresh_diff, debounce=self.debounce)
            self.watcher.start()
        logger.debug("Review server listening on %s", self.url)

    async def _stop_serving(self, *, cancel: bool = False) -> None:
        if self._uvicorn is not None:
            self._uvicorn.should_exit = True
            # Do not wait on idle keep-alive connections.
            self._uvicorn.force_exit = True
        if self._serve_task is not None and not self._serve_task.done():
            if cancel:
                self._serve_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._serve_task

    async def stop(self) -> None:
        """Stop the watcher and uvicorn. Safe to call more than once."""
        if self.watcher is not None:
            await self.watcher.stop()
        await self._stop_serving()
        logger.info("Review server stopped")

    async def result(self) -> ReviewResult:
        """Wait for the review result.

        Raises RuntimeError when the server stops without a submission
        (for example on Ctrl-C).
        """
        if self._serve_task is None:
            raise RuntimeError("Review server was not started")
        waiter = asyncio.ensure_future(self.hub.wait())
        done, _ = await asyncio.wait({waiter, self._serve_task}, return_when=asyncio.FIRST_COMPLETED)
        if waiter in done or self.hub.submitted:
            return await waiter
        waiter.cancel()
        raise RuntimeError("Review server stopped before the review was submitted")
