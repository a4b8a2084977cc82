"""Server configuration: transcoder path, session timeout, log/output dirs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import json
import logging
import os
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
CONFIG_ENV_VAR = "VIDEOSERVER_CONFIG"
DEFAULT_CONFIG_FILE = CACHE_DIR / "videoserver.json"

_DEFAULT_SESSION_TIMEOUT_SEC = 30.0
_DEFAULT_HLS_SEGMENT_SEC = 2.0
_DEFAULT_STATUS_RETENTION_SEC = 3_600.0


@dataclass(slots=True, frozen=True)
class TranscodeConfig:
    """Read-only settings shared by every transcode session."""

    command: str = "ffmpeg"
    session_timeout: float = _DEFAULT_SESSION_TIMEOUT_SEC
    log_dir: pathlib.Path = field(default_factory=lambda: CACHE_DIR / "logs")
    output_dir: pathlib.Path = field(default_factory=lambda: CACHE_DIR / "videos")
    hls_segment_secs: float = _DEFAULT_HLS_SEGMENT_SEC
    status_retention: float = _DEFAULT_STATUS_RETENTION_SEC

    def __post_init__(self) -> None:
        if self.session_timeout <= 0:
            raise ValueError(f"session_timeout must be positive, got {self.session_timeout}")
        if self.hls_segment_secs <= 0:
            raise ValueError(f"hls_segment_secs must be positive, got {self.hls_segment_secs}")
        if self.status_retention < 0:
            raise ValueError(f"status_retention must not be negative, got {self.status_retention}")
        if not self.command:
            raise ValueError("command must not be empty")


def _get_config_file() -> pathlib.Path:
    """Get the settings file, honoring the environment override."""
    override = os.environ.get(CONFIG_ENV_VAR, "")
    return pathlib.Path(override) if override else DEFAULT_CONFIG_FILE


def _section(settings: dict[str, Any], name: str) -> dict[str, Any]:
    section = settings.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be an object")
    return section


def load_config(path: pathlib.Path | str | None = None) -> TranscodeConfig:
    """Load settings from a JSON file. Missing file = defaults.

    File layout:
        {
          "server": {"session_timeout": 30, "status_retention": 3600},
          "transcode": {"command": "ffmpeg", "log_file_path": "...",
                        "output_path": "...", "hls_segment_secs": 2}
        }

    Relative paths are resolved against the directory holding the file.
    """
    config_file = pathlib.Path(path) if path is not None else _get_config_file()
    if not config_file.exists():
        log.info("No config at %s, using defaults", config_file)
        return TranscodeConfig()

    try:
        settings = json.loads(config_file.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid config file {config_file}: {e}") from e
    if not isinstance(settings, dict):
        raise ValueError(f"Invalid config file {config_file}: expected an object")

    server = _section(settings, "server")
    transcode = _section(settings, "transcode")
    base_dir = config_file.parent
    defaults = TranscodeConfig()

    def _path(key: str, default: pathlib.Path) -> pathlib.Path:
        value = transcode.get(key)
        if not value:
            return default
        p = pathlib.Path(value).expanduser()
        return p if p.is_absolute() else base_dir / p

    try:
        config = TranscodeConfig(
            command=str(transcode.get("command", defaults.command)),
            session_timeout=float(server.get("session_timeout", defaults.session_timeout)),
            log_dir=_path("log_file_path", defaults.log_dir),
            output_dir=_path("output_path", defaults.output_dir),
            hls_segment_secs=float(transcode.get("hls_segment_secs", defaults.hls_segment_secs)),
            status_retention=float(server.get("status_retention", defaults.status_retention)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid config file {config_file}: {e}") from e

    log.info(
        "Loaded config from %s (command=%s, timeout=%.0fs, logs=%s)",
        config_file,
        config.command,
        config.session_timeout,
        config.log_dir,
    )
    return config
