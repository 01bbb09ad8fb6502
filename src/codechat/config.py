"""Runtime configuration for codechat."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

APP_DIRNAME = "codechat"
CONFIG_PATH_ENV_VAR = "CODECHAT_CONFIG_PATH"

# Environment variable -> ReviewSettings field.
ENV_OVERRIDES: dict[str, str] = {
    "CODECHAT_DATA_DIR": "data_dir",
    "CODECHAT_WEB_DIST": "web_dist",
    "CODECHAT_TIMEOUT_MINUTES": "timeout_minutes",
    "CODECHAT_DISCONNECT_GRACE_SECONDS": "disconnect_grace_seconds",
    "CODECHAT_DEBOUNCE_MS": "debounce_ms",
    "CODECHAT_RETENTION_DAYS": "retention_days",
    "CODECHAT_WATCH": "watch",
}

# Prebuilt UI shipped inside the package.
BUNDLED_WEB_DIST: Path = Path(__file__).resolve().parent / "web_dist"


def _user_dir(xdg_var: str, windows_var: str, windows_default: Path, posix_default: Path) -> Path:
    override = os.environ.get(xdg_var)
    if override:
        base = Path(override).expanduser()
    elif os.name == "nt":
        appdata = os.environ.get(windows_var)
        base = Path(appdata).expanduser() if appdata else Path.home() / windows_default
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path.home() / posix_default
    return base / APP_DIRNAME


def default_user_config_dir() -> Path:
    """Directory holding ``config.json``."""
    return _user_dir("XDG_CONFIG_HOME", "APPDATA", Path("AppData", "Roaming"), Path(".config"))


def default_user_data_dir() -> Path:
    """Per-user directory for session files and logs."""
    return _user_dir("XDG_DATA_HOME", "LOCALAPPDATA", Path("AppData", "Local"), Path(".local", "share"))


class ReviewSettings(BaseModel):
    """Validated review server and storage settings."""

    data_dir: Path = Field(default_factory=default_user_data_dir)
    web_dist: Path = Field(default=BUNDLED_WEB_DIST)
    timeout_minutes: float = Field(default=30.0, gt=0)
    disconnect_grace_seconds: float = Field(default=5.0, ge=0.0)
    debounce_ms: int = Field(default=300, ge=0, le=60_000)
    retention_days: float = Field(default=30.0, gt=0)
    watch: bool = True

    @field_validator("data_dir", "web_dist")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60.0


def resolve_config_path() -> Path:
    configured_path = os.environ.get(CONFIG_PATH_ENV_VAR)
    if configured_path:
        return Path(configured_path).expanduser()
    return default_user_config_dir() / "config.json"


def load_settings(config_path: str | Path | None = None) -> ReviewSettings:
    """Load settings from the JSON config file, then apply environment overrides.

    A missing config file is not an error. Raises:
    - json.JSONDecodeError for malformed JSON.
    - ValueError when the file is not a JSON object.
    - pydantic ValidationError on out-of-range values.
    """
    path = Path(config_path) if config_path is not None else resolve_config_path()

    payload: dict[str, object] = {}
    if path.is_file():
        loaded = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(loaded, dict):
            raise ValueError(f"config file must contain a JSON object: {path}")
        payload.update(loaded)

    for env_name, field_name in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is not None and raw.strip() != "":
            payload[field_name] = raw.strip()

    return ReviewSettings.model_validate(payload)
