"""
Request context and shared logging state.

The request id lives in a ContextVar so every log line emitted while
handling one HTTP request (including inside background tasks spawned from
it) carries the same id. Level and file settings are module-level state.

Environment Variables:
    - BOOKTAINER_LOG_LEVEL: log level (1-4 or name)
    - BOOKTAINER_LOG_DIR: directory for the JSONL log
    - BOOKTAINER_JSONL_FILE: JSONL filename
    - BOOKTAINER_LOG_ROTATE_BYTES: max file size before rotation
    - BOOKTAINER_LOG_ROTATE_BACKUP: number of rotated files kept
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

import yaml

from .levels import LEVEL_NAMES, LogLevel

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    return _request_id.get()


def set_request_id(rid: str) -> None:
    _request_id.set(rid)


def get_level() -> LogLevel:
    return _current_level


def set_level(level: LogLevel) -> None:
    global _current_level
    _current_level = level


def get_level_name() -> str:
    return LEVEL_NAMES.get(_current_level, "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def _env_int(name: str) -> int | None:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve logging configuration.

    Priority: environment variables, then the ``logging`` section of the
    settings file (``BOOKTAINER_SETTINGS``, default config/settings.yaml),
    then defaults. A missing or unreadable settings file is not an error.
    """
    cfg: Dict[str, Any] = {}

    settings_path = os.getenv("BOOKTAINER_SETTINGS", "config/settings.yaml")
    try:
        from booktainer.core.config import load_settings
        settings = load_settings(settings_path)
        cfg.update(settings.raw.get("logging", {}) or {})
    except (OSError, yaml.YAMLError):
        pass

    if os.getenv("BOOKTAINER_LOG_LEVEL"):
        cfg["level"] = os.environ["BOOKTAINER_LOG_LEVEL"]
    if os.getenv("BOOKTAINER_LOG_DIR"):
        cfg["log_dir"] = os.environ["BOOKTAINER_LOG_DIR"]
    if os.getenv("BOOKTAINER_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["BOOKTAINER_JSONL_FILE"]
    rotate_bytes = _env_int("BOOKTAINER_LOG_ROTATE_BYTES")
    if rotate_bytes is not None:
        cfg["rotate_max_bytes"] = rotate_bytes
    rotate_backup = _env_int("BOOKTAINER_LOG_ROTATE_BACKUP")
    if rotate_backup is not None:
        cfg["rotate_backup_count"] = rotate_backup

    return cfg
