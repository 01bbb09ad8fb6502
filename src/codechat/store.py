"""Session storage: one JSON file per session under the user data directory.

Files are named ``<repoHash>-<sessionId>.json``. Keying by a hash of the
canonical repository path makes "latest session for this repo" a directory
scan without an index file, while the embedded id keeps historical sessions
for the same repository addressable.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import tempfile
import time
from pathlib import Path

from pydantic import ValidationError

from codechat.errors import SessionNotFoundError, StorageError
from codechat.logs import short_id
from codechat.models import FileSummary, Session, utc_timestamp

logger = logging.getLogger("codechat")

REPO_HASH_LENGTH = 16
DEFAULT_RETENTION_DAYS = 30.0
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def repo_hash(repo_path: str) -> str:
    """Stable fixed-length, path-safe key for a canonical repository path."""
    return hashlib.sha256(repo_path.encode("utf-8")).hexdigest()[:REPO_HASH_LENGTH]


class SessionStore:
    """Durable mapping from (repository, session id) to a Session."""

    def __init__(self, sessions_dir: str | Path, retention_days: float = DEFAULT_RETENTION_DAYS) -> None:
        self.sessions_dir = Path(sessions_dir)
        self.retention_days = retention_days
        self._background: set[asyncio.Task] = set()

    def session_path(self, session: Session) -> Path:
        return self.sessions_dir / f"{repo_hash(session.repo_path)}-{session.id}.json"

    # -- sync helpers, run in a worker thread --

    def _write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read(self, path: Path) -> Session:
        return Session.model_validate_json(path.read_text(encoding="utf-8"))

    def _repo_files(self, repo_path: str) -> list[Path]:
        if not self.sessions_dir.is_dir():
            return []
        return sorted(self.sessions_dir.glob(f"{repo_hash(repo_path)}-*.json"))

    def _read_repo_sessions(self, repo_path: str) -> list[Session]:
        sessions: list[Session] = []
        for path in self._repo_files(repo_path):
            try:
                session = self._read(path)
            except (OSError, ValueError, ValidationError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path.name, exc)
                continue
            if session.repo_path != repo_path:
                # Hash prefix collision; not ours.
                continue
            sessions.append(session)
        return sessions

    def _find_by_id(self, session_id: str) -> Path | None:
        if not self.sessions_dir.is_dir():
            return None
        for path in self.sessions_dir.glob(f"*-{session_id}.json"):
            if path.name[REPO_HASH_LENGTH + 1 : -len(".json")] == session_id:
                return path
        return None

    def _prune(self, max_age_days: float) -> int:
        if not self.sessions_dir.is_dir():
            return 0
        cutoff = time.time() - max_age_days * 86400
        removed = 0
        for path in self.sessions_dir.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.debug("prune_expired -> skip %s: %s", path.name, exc)
        return removed

    # -- public API --

    async def create(
        self,
        repo_path: str,
        diff: str,
        files: list[FileSummary],
        description: str | None = None,
    ) -> Session:
        session = Session(repo_path=repo_path, diff=diff, files=files, description=description)
        await self.save(session)
        logger.info("Session created %s (%d file(s))", short_id(session.id), len(files))
        return session

    async def load(self, session_id: str) -> Session:
        """Load a session by id. Missing and corrupted files both raise SessionNotFoundError."""
        if not _SESSION_ID_RE.match(session_id or ""):
            raise SessionNotFoundError(session_id, "invalid id")
        path = await asyncio.to_thread(self._find_by_id, session_id)
        if path is None:
            raise SessionNotFoundError(session_id)
        try:
            return await asyncio.to_thread(self._read, path)
        except FileNotFoundError as exc:
            raise SessionNotFoundError(session_id) from exc
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Session file %s is corrupted: %s", path.name, exc)
            raise SessionNotFoundError(session_id, "corrupted session file") from exc

    async def save(self, session: Session) -> None:
        """Refresh updatedAt and atomically rewrite the whole session file."""
        session.updated_at = utc_timestamp()
        payload = session.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        path = self.session_path(session)
        try:
            await asyncio.to_thread(self._write, path, payload)
        except OSError as exc:
            raise StorageError(f"Failed to write session {session.id}: {exc}") from exc

    async def find_latest_by_repo(self, repo_path: str) -> Session | None:
        sessions = await self.list_by_repo(repo_path)
        return sessions[0] if sessions else None

    async def list_by_repo(self, repo_path: str) -> list[Session]:
        """All readable sessions for a repository, newest first."""
        sessions = await asyncio.to_thread(self._read_repo_sessions, repo_path)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    async def prune_expired(self, max_age_days: float | None = None) -> int:
        """Delete session files older than the retention horizon. Never raises."""
        horizon = self.retention_days if max_age_days is None else max_age_days
        try:
            removed = await asyncio.to_thread(self._prune, horizon)
        except Exception as exc:
            logger.debug("prune_expired -> failed: %s", exc)
            return 0
        if removed:
            logger.info("Pruned %d expired session file(s)", removed)
        return removed

    def schedule_prune(self) -> asyncio.Task:
        """Start a best-effort background prune and return its task."""
        task = asyncio.create_task(self.prune_expired())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
