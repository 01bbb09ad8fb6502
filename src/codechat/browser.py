"""Platform-aware browser launching for the review UI."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
import webbrowser

logger = logging.getLogger("codechat")

DARWIN_APP_CANDIDATES: tuple[str, ...] = ("Google Chrome", "Microsoft Edge", "Chromium")
LINUX_APP_CANDIDATES: tuple[str, ...] = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "microsoft-edge",
)


def detect_platform() -> str:
    """Return normalized platform label used for the launch strategy."""
    if os.name == "nt":
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def build_app_mode_argvs(url: str, platform: str | None = None) -> list[list[str]]:
    """Shell-free argv candidates that open url in a chromeless app window, best first."""
    platform = platform or detect_platform()
    if platform == "darwin":
        return [
            ["open", "-na", name, "--args", f"--app={url}"]
            for name in DARWIN_APP_CANDIDATES
            if os.path.isdir(f"/Applications/{name}.app")
        ]
    if platform == "linux":
        argvs = []
        for name in LINUX_APP_CANDIDATES:
            executable = shutil.which(name)
            if executable is not None:
                argvs.append([executable, f"--app={url}"])
        return argvs
    # Windows and others use the regular browser.
    return []


async def open_app_mode(url: str) -> str:
    """Open url in app mode when a Chromium-family browser exists, else a normal tab.

    Returns a label naming how the URL was opened.
    """
    for argv in build_app_mode_argvs(url):
        try:
            # Detached: the browser process may outlive the review.
            await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            logger.debug("App-mode launch failed for %s: %s", argv[0], exc)
            continue
        return argv[0]

    opened = await asyncio.to_thread(webbrowser.open, url)
    if not opened:
        raise RuntimeError(f"No browser available to open {url}")
    return "webbrowser"
