"""Git plumbing: repository detection and uncommitted-change diffs."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable

from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from codechat.models import FileStatus, FileSummary

logger = logging.getLogger("codechat")

# Given a repository root, return the unified diff of its uncommitted changes.
DiffSource = Callable[[str], Awaitable[str]]

_DIFF_FLAGS = ("--no-color", "--no-ext-diff", "--find-renames")


class GitCommandError(RuntimeError):
    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str) -> None:
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"git {' '.join(args)} failed: {detail}")


async def _run_git(
    *args: str,
    cwd: str,
    ok_codes: tuple[int, ...] = (0,),
) -> str:
    """Run git with argv (no shell) and return decoded stdout."""
    proc = await asyncio.create_subprocess_exec(
        "git", *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode not in ok_codes:
        raise GitCommandError(args, proc.returncode, stderr.decode("utf-8", errors="replace"))
    return stdout.decode("utf-8", errors="replace")


async def is_git_repo(cwd: str) -> bool:
    """Return True when cwd is inside a git working tree."""
    if not os.path.isdir(cwd):
        return False
    try:
        out = await _run_git("rev-parse", "--is-inside-work-tree", cwd=cwd)
    except (GitCommandError, OSError):
        return False
    return out.strip() == "true"


async def get_repo_root(cwd: str) -> str:
    """Canonical top-level path of the repository containing cwd (symlinks resolved)."""
    out = await _run_git("rev-parse", "--show-toplevel", cwd=cwd)
    return os.path.realpath(out.strip())


async def has_commits(cwd: str) -> bool:
    try:
        await _run_git("rev-parse", "--verify", "--quiet", "HEAD", cwd=cwd)
    except GitCommandError:
        return False
    return True


async def _empty_tree(cwd: str) -> str:
    # Works for both SHA-1 and SHA-256 object formats.
    out = await _run_git("hash-object", "-t", "tree", os.devnull, cwd=cwd)
    return out.strip()


async def list_untracked(cwd: str) -> list[str]:
    """Untracked, non-ignored paths relative to the repository root."""
    out = await _run_git("ls-files", "--others", "--exclude-standard", "-z", cwd=cwd)
    # Nested repositories are listed as "dir/" and cannot be diffed as files.
    return [path for path in out.split("\0") if path and not path.endswith("/")]


async def get_diff(repo_root: str) -> str:
    """Unified diff of staged, unstaged and untracked changes against HEAD.

    In a repository without commits the base is the empty tree.
    """
    base = "HEAD" if await has_commits(repo_root) else await _empty_tree(repo_root)
    parts = [await _run_git("diff", *_DIFF_FLAGS, base, "--", cwd=repo_root)]

    for path in await list_untracked(repo_root):
        # --no-index exits 1 when the files differ.
        parts.append(
            await _run_git(
                "diff", "--no-color", "--no-ext-diff", "--no-index", "--", os.devnull, path,
                cwd=repo_root,
                ok_codes=(0, 1),
            )
        )

    chunks = [part if part.endswith("\n") else part + "\n" for part in parts if part]
    return "".join(chunks)


def _strip_prefix(name: str) -> str:
    if name.startswith(("a/", "b/")):
        return name[2:]
    return name


def parse_file_summaries(diff_text: str) -> list[FileSummary]:
    """Parse a unified diff into per-file change summaries.

    Returns [] when the text cannot be parsed.
    """
    if not diff_text.strip():
        return []
    try:
        patch = PatchSet(diff_text)
    except UnidiffParseError as exc:
        logger.debug("parse_file_summaries -> unparseable diff: %s", exc)
        return []

    files: list[FileSummary] = []
    for patched_file in patch:
        source = _strip_prefix(patched_file.source_file)
        target = _strip_prefix(patched_file.target_file)
        old_path: str | None = None
        if patched_file.is_added_file:
            status = FileStatus.ADDED
            path = target
        elif patched_file.is_removed_file:
            status = FileStatus.DELETED
            path = source
        elif source != target:
            status = FileStatus.RENAMED
            path = target
            old_path = source
        else:
            status = FileStatus.MODIFIED
            path = target

        files.append(
            FileSummary(
                path=path,
                old_path=old_path,
                status=status,
                additions=patched_file.added,
                deletions=patched_file.removed,
            )
        )
    return files


async def collect_changes(
    repo_root: str,
    diff_source: DiffSource = get_diff,
) -> tuple[str, list[FileSummary]]:
    """Compute the diff and its file summaries together."""
    diff = await diff_source(repo_root)
    return diff, parse_file_summaries(diff)
