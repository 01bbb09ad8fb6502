"""Repository file watching with a debounced diff refresh."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from watchfiles import DefaultFilter, awatch

logger = logging.getLogger("codechat")

DEFAULT_DEBOUNCE_SECONDS = 0.3

# VCS metadata and dependency/tool directories never affect the reviewed diff.
IGNORE_DIRS: tuple[str, ...] = (
    *DefaultFilter.ignore_dirs,
    "venv",
    ".nox",
    ".ruff_cache",
    "bower_components",
)


def review_watch_filter() -> DefaultFilter:
    return DefaultFilter(ignore_dirs=IGNORE_DIRS)


class DiffWatcher:
    """Watch a repository and call ``on_change`` after each quiet period.

    Every raw change event resets the debounce timer, so a burst of writes
    produces a single refresh. Refreshes never overlap: a change that lands
    while one is running schedules exactly one follow-up run. Failures are
    logged and retried only when the next change event arrives.
    """

    def __init__(
        self,
        repo_root: str,
        on_change: Callable[[], Awaitable[None]],
        *,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.repo_root = repo_root
        self.on_change = on_change
        self.debounce = debounce
        self._stop_event = asyncio.Event()
        self._watch_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._rerun = False

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self._watch_task is None:
            self._watch_task = asyncio.create_task(self._watch())

    async def _watch(self) -> None:
        try:
            async for changes in awatch(
                self.repo_root,
                watch_filter=review_watch_filter(),
                stop_event=self._stop_event,
                step=50,
            ):
                logger.debug("watcher -> %d raw change(s)", len(changes))
                self.notify()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("File watcher stopped, live diff refresh disabled: %s", exc)

    def notify(self) -> None:
        """Record a raw change event and (re)start the debounce timer."""
        if self.stopped:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce, self._on_quiet)

    def _on_quiet(self) -> None:
        self._debounce_handle = None
        if self.stopped:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            self._rerun = True
            return
        self._refresh_task = asyncio.create_task(self._refresh())

    async def _refresh(self) -> None:
        while True:
            self._rerun = False
            try:
                await self.on_change()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Typically a file read mid-write; the next change event retries.
                logger.debug("Diff refresh failed: %s", exc)
            if not self._rerun or self.stopped:
                return

    async def stop(self) -> None:
        self._stop_event.set()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        for task in (self._watch_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError, Exception):
                    await task
