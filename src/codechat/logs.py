"""Logging setup: concise stderr lines plus a structured rotating JSONL logfile."""

from __future__ import annotations

import contextvars
import json
import logging
import os
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from codechat.config import default_user_data_dir

LOGGER_NAME = "codechat"
LOG_DIR_ENV_VAR = "CODECHAT_LOG_DIR"
LOG_MAX_BYTES_ENV_VAR = "CODECHAT_LOG_MAX_BYTES"
LOG_BACKUPS_ENV_VAR = "CODECHAT_LOG_BACKUPS"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUPS = 5

# Short id of the session being served, for log lines.
# Default "codechat" is used outside of any session.
session_tag: contextvars.ContextVar[str] = contextvars.ContextVar("session_tag", default="codechat")


def short_id(session_id: str | None) -> str:
    """Render compact session/comment ids in logs."""
    if not session_id:
        return "unknown"
    return session_id[:8]


class _SessionFormatter(logging.Formatter):
    """Log formatter that injects the session_tag ContextVar into each record."""

    def format(self, record: logging.LogRecord) -> str:
        record.session_tag = session_tag.get()  # type: ignore[attr-defined]
        return super().format(record)


class _JsonFormatter(logging.Formatter):
    """Structured JSON formatter for logfile events."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "session_tag": getattr(record, "session_tag", session_tag.get()),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def resolve_log_dir() -> Path:
    override = os.environ.get(LOG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    data_override = os.environ.get("CODECHAT_DATA_DIR")
    if data_override:
        return Path(data_override).expanduser() / "logs"
    return default_user_data_dir() / "logs"


def _env_int(name: str, default: int, *, minimum: int) -> int:
    """Integer setting from the environment, or ``default`` when it is missing or below ``minimum``."""
    try:
        value = int(os.environ[name])
    except (KeyError, ValueError):
        return default
    return value if value >= minimum else default


def configure_logging(verbose: bool = False) -> None:
    """Configure the codechat logger once; repeated calls are no-ops.

    Console output goes to stderr: stdout carries the CLI result and the
    MCP stdio transport.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    has_stream_handler = any(
        getattr(handler, "_codechat_stream_handler", False) for handler in logger.handlers
    )
    if not has_stream_handler:
        handler = logging.StreamHandler()
        handler._codechat_stream_handler = True  # type: ignore[attr-defined]
        handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        handler.setFormatter(
            _SessionFormatter(
                "%(asctime)s [%(session_tag)s] %(message)s",
                "%H:%M:%S",
            )
        )
        logger.addHandler(handler)

    if not any(getattr(handler, "_codechat_file_handler", False) for handler in logger.handlers):
        log_dir = resolve_log_dir()
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.warning("Cannot create log directory %s; file logging disabled", log_dir)
            return
        log_max_bytes = _env_int(LOG_MAX_BYTES_ENV_VAR, DEFAULT_LOG_MAX_BYTES, minimum=1024)
        log_backups = _env_int(LOG_BACKUPS_ENV_VAR, DEFAULT_LOG_BACKUPS, minimum=1)
        file_handler = RotatingFileHandler(
            log_dir / "codechat.jsonl",
            maxBytes=log_max_bytes,
            backupCount=log_backups,
            encoding="utf-8",
        )
        file_handler._codechat_file_handler = True  # type: ignore[attr-defined]
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_JsonFormatter())
        logger.addHandler(file_handler)
