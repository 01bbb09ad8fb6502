"""Shared test fixtures for codechat."""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path

import pytest

from codechat.config import ReviewSettings
from codechat.hub import ClientConnection
from codechat.store import SessionStore

SAMPLE_DIFF = """\
diff --git a/a.ts b/a.ts
--- a/a.ts
+++ b/a.ts
@@ -1,4 +1,6 @@
 const a = 1;
-const b = 2;
+const b = 3;
+const c = 4;
+const d = 5;
 export { a };
 export { b };
"""


def git(repo: Path, *args: str) -> str:
    """Run git in repo with a fixed identity and return stdout."""
    result = subprocess.run(
        [
            "git",
            "-c", "user.name=codechat-tests",
            "-c", "user.email=tests@codechat.invalid",
            "-c", "commit.gpgsign=false",
            "-c", "init.defaultBranch=main",
            *args,
        ],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A git repository with one committed file and a clean working tree."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    (repo / "a.ts").write_text("const a = 1;\nconst b = 2;\nexport { a };\n", encoding="utf-8")
    git(repo, "add", "a.ts")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def settings(tmp_path: Path) -> ReviewSettings:
    web_dist = tmp_path / "web_dist"
    web_dist.mkdir()
    (web_dist / "index.html").write_text("<!doctype html><title>codechat</title>", encoding="utf-8")
    return ReviewSettings(
        data_dir=tmp_path / "data",
        web_dist=web_dist,
        disconnect_grace_seconds=0.2,
        debounce_ms=50,
        watch=False,
    )


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "data" / "sessions")


class FakeSocket:
    """Records frames a ClientConnection writes, decoded from JSON."""

    def __init__(self) -> None:
        self.frames: list[dict] = []
        self.closed = False

    async def send(self, text: str) -> None:
        self.frames.append(json.loads(text))

    async def close(self) -> None:
        self.closed = True

    def connection(self, label: str = "fake") -> ClientConnection:
        return ClientConnection(self.send, self.close, label=label)

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.frames]


async def settle(delay: float = 0.02) -> None:
    """Give client writer tasks a chance to drain their queues."""
    await asyncio.sleep(delay)
