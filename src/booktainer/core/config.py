"""
Configuration Management for booktainer.

This module provides centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration objects
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages

Configuration Hierarchy (highest priority first):
    1. Environment variables (BOOKTAINER_DATA_DIR, OPENAI_API_KEY, etc.)
    2. YAML config file (config/settings.yaml)
    3. Defaults class values

Example settings.yaml:
    storage:
      data_dir: /data

    library:
      allow_upload: true
      max_upload_mb: 500

    tts:
      online:
        model: gpt-4o-mini-tts
      offline:
        transcode: true
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import os
import yaml


class ConfigValidationError(Exception):
    """Raised when a configuration value is out of bounds or of the wrong type."""
    pass


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Storage: data directory layout root
        - Library: upload acceptance
        - Converter: external conversion commands
        - TTS cache: disk cache housekeeping
        - Online / offline TTS: provider settings
        - Auth: owner identity and session lifetime
        - Logging: level and previews
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Storage
    # ─────────────────────────────────────────────────────────────────────────
    STORAGE_DATA_DIR = "./data"

    # ─────────────────────────────────────────────────────────────────────────
    # Library
    # ─────────────────────────────────────────────────────────────────────────
    LIBRARY_ALLOW_UPLOAD = True
    LIBRARY_MAX_UPLOAD_MB = 500

    # ─────────────────────────────────────────────────────────────────────────
    # Converter (argv templates per source format)
    # ─────────────────────────────────────────────────────────────────────────
    CONVERTER_COMMANDS = {"mobi": ["ebook-convert", "{input}", "{output}"]}
    CONVERTER_TIMEOUT_S = 0.0          # 0 disables the timeout

    # ─────────────────────────────────────────────────────────────────────────
    # TTS disk cache
    # ─────────────────────────────────────────────────────────────────────────
    TTS_CACHE_TTL_SECONDS = 86400 * 30
    TTS_CACHE_STALE_PART_SECONDS = 600
    TTS_CACHE_CLEANUP_INTERVAL_SECONDS = 3600

    # ─────────────────────────────────────────────────────────────────────────
    # Online TTS (OpenAI)
    # ─────────────────────────────────────────────────────────────────────────
    ONLINE_BASE_URL = "https://api.openai.com/v1"
    ONLINE_MODEL = "gpt-4o-mini-tts"
    ONLINE_TIMEOUT_S = 60.0

    # ─────────────────────────────────────────────────────────────────────────
    # Offline TTS (Piper)
    # ─────────────────────────────────────────────────────────────────────────
    OFFLINE_PIPER_BINARY = "piper"
    OFFLINE_FFMPEG_BINARY = "ffmpeg"
    OFFLINE_TRANSCODE = True
    OFFLINE_ALLOW_INSTALL = True

    # ─────────────────────────────────────────────────────────────────────────
    # Auth
    # ─────────────────────────────────────────────────────────────────────────
    AUTH_OWNER_HEADER = "X-User-Id"
    AUTH_DEFAULT_OWNER = "local"
    AUTH_SESSION_TTL_SECONDS = 86400 * 30
    AUTH_TOKEN_MAX_TTL_SECONDS = 300

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 80
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


@dataclass
class StorageConfig:
    """
    On-disk layout rooted at ``data_dir``.

    All paths used by the library, the cover store and the TTS cache are
    derived from this single root.
    """
    data_dir: str = Defaults.STORAGE_DATA_DIR

    @property
    def root(self) -> Path:
        return Path(self.data_dir)

    @property
    def library_dir(self) -> Path:
        return self.root / "library"

    @property
    def covers_dir(self) -> Path:
        return self.root / "covers"

    @property
    def tts_cache_dir(self) -> Path:
        return self.root / "tts-cache"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    @property
    def db_path(self) -> Path:
        return self.root / "booktainer.db"

    def ensure_dirs(self) -> None:
        for path in (self.library_dir, self.covers_dir, self.tts_cache_dir, self.tmp_dir):
            path.mkdir(parents=True, exist_ok=True)


@dataclass
class LibraryConfig:
    allow_upload: bool = Defaults.LIBRARY_ALLOW_UPLOAD
    max_upload_mb: int = Defaults.LIBRARY_MAX_UPLOAD_MB

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


@dataclass
class ConverterConfig:
    """
    External converter commands.

    ``commands`` maps a source format to an argv template; ``{input}`` and
    ``{output}`` are substituted with the file paths.
    """
    commands: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in Defaults.CONVERTER_COMMANDS.items()}
    )
    timeout_s: float = Defaults.CONVERTER_TIMEOUT_S


@dataclass
class TTSCacheConfig:
    ttl_seconds: int = Defaults.TTS_CACHE_TTL_SECONDS
    stale_part_seconds: int = Defaults.TTS_CACHE_STALE_PART_SECONDS
    cleanup_interval_seconds: int = Defaults.TTS_CACHE_CLEANUP_INTERVAL_SECONDS


@dataclass
class OnlineTTSConfig:
    """OpenAI speech endpoint settings. No API key means online mode is unavailable."""
    api_key: Optional[str] = None
    base_url: str = Defaults.ONLINE_BASE_URL
    model: str = Defaults.ONLINE_MODEL
    timeout_s: float = Defaults.ONLINE_TIMEOUT_S


@dataclass
class OfflineTTSConfig:
    """Piper settings. ``voices_dir`` defaults to ``<data_dir>/piper-voices``."""
    voices_dir: str = ""
    piper_binary: str = Defaults.OFFLINE_PIPER_BINARY
    ffmpeg_binary: str = Defaults.OFFLINE_FFMPEG_BINARY
    transcode: bool = Defaults.OFFLINE_TRANSCODE
    allow_install: bool = Defaults.OFFLINE_ALLOW_INSTALL


@dataclass
class AuthConfig:
    owner_header: str = Defaults.AUTH_OWNER_HEADER
    default_owner: str = Defaults.AUTH_DEFAULT_OWNER
    session_ttl_seconds: int = Defaults.AUTH_SESSION_TTL_SECONDS
    token_max_ttl_seconds: int = Defaults.AUTH_TOKEN_MAX_TTL_SECONDS


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL: Startup, shutdown, critical errors only
        2 = NORMAL: Request lifecycle, cache status (default)
        3 = VERBOSE: Per-stage timing, detailed flow
        4 = DEBUG: Internal state, full tracing
    """
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS
    level: int = Defaults.LOGGING_LEVEL


@dataclass
class AppConfig:
    """
    Validated configuration for the whole service.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = AppConfig.from_settings(settings)
        print(config.storage.library_dir)
    """
    storage: StorageConfig = field(default_factory=StorageConfig)
    library: LibraryConfig = field(default_factory=LibraryConfig)
    converter: ConverterConfig = field(default_factory=ConverterConfig)
    tts_cache: TTSCacheConfig = field(default_factory=TTSCacheConfig)
    online: OnlineTTSConfig = field(default_factory=OnlineTTSConfig)
    offline: OfflineTTSConfig = field(default_factory=OfflineTTSConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def token_ttl_seconds(self) -> float:
        """Playback tokens never outlive the session nor the hard cap."""
        return float(min(self.auth.session_ttl_seconds, self.auth.token_max_ttl_seconds))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AppConfig":
        """
        Create AppConfig from Settings with validation.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        storage_raw = raw.get("storage", {}) or {}
        storage = StorageConfig(
            data_dir=str(storage_raw.get("data_dir", Defaults.STORAGE_DATA_DIR)),
        )
        if not storage.data_dir.strip():
            raise ConfigValidationError("storage.data_dir must not be empty")

        library_raw = raw.get("library", {}) or {}
        library = LibraryConfig(
            allow_upload=cls._as_bool(library_raw.get("allow_upload", Defaults.LIBRARY_ALLOW_UPLOAD)),
            max_upload_mb=int(library_raw.get("max_upload_mb", Defaults.LIBRARY_MAX_UPLOAD_MB)),
        )
        cls._validate_positive("library.max_upload_mb", library.max_upload_mb)

        converter_raw = raw.get("converter", {}) or {}
        commands_raw = converter_raw.get("commands", Defaults.CONVERTER_COMMANDS) or {}
        if not isinstance(commands_raw, dict):
            raise ConfigValidationError("converter.commands must be a mapping of format to argv list")
        commands: Dict[str, List[str]] = {}
        for fmt, argv in commands_raw.items():
            if not isinstance(argv, (list, tuple)) or not argv:
                raise ConfigValidationError(f"converter.commands.{fmt} must be a non-empty list")
            commands[str(fmt).lower()] = [str(part) for part in argv]
        converter = ConverterConfig(
            commands=commands,
            timeout_s=float(converter_raw.get("timeout_s", Defaults.CONVERTER_TIMEOUT_S)),
        )
        cls._validate_non_negative("converter.timeout_s", converter.timeout_s)

        tts_raw = raw.get("tts", {}) or {}
        cache_raw = tts_raw.get("cache", {}) or {}
        tts_cache = TTSCacheConfig(
            ttl_seconds=int(cache_raw.get("ttl_seconds", Defaults.TTS_CACHE_TTL_SECONDS)),
            stale_part_seconds=int(cache_raw.get("stale_part_seconds", Defaults.TTS_CACHE_STALE_PART_SECONDS)),
            cleanup_interval_seconds=int(
                cache_raw.get("cleanup_interval_seconds", Defaults.TTS_CACHE_CLEANUP_INTERVAL_SECONDS)
            ),
        )
        cls._validate_positive("tts.cache.ttl_seconds", tts_cache.ttl_seconds)
        cls._validate_positive("tts.cache.stale_part_seconds", tts_cache.stale_part_seconds)
        cls._validate_positive("tts.cache.cleanup_interval_seconds", tts_cache.cleanup_interval_seconds)

        online_raw = tts_raw.get("online", {}) or {}
        online = OnlineTTSConfig(
            api_key=(str(online_raw["api_key"]).strip() or None) if online_raw.get("api_key") else None,
            base_url=str(online_raw.get("base_url", Defaults.ONLINE_BASE_URL)).rstrip("/"),
            model=str(online_raw.get("model", Defaults.ONLINE_MODEL)),
            timeout_s=float(online_raw.get("timeout_s", Defaults.ONLINE_TIMEOUT_S)),
        )
        cls._validate_positive("tts.online.timeout_s", online.timeout_s)

        offline_raw = tts_raw.get("offline", {}) or {}
        offline = OfflineTTSConfig(
            voices_dir=str(offline_raw.get("voices_dir") or (storage.root / "piper-voices")),
            piper_binary=str(offline_raw.get("piper_binary", Defaults.OFFLINE_PIPER_BINARY)),
            ffmpeg_binary=str(offline_raw.get("ffmpeg_binary", Defaults.OFFLINE_FFMPEG_BINARY)),
            transcode=cls._as_bool(offline_raw.get("transcode", Defaults.OFFLINE_TRANSCODE)),
            allow_install=cls._as_bool(offline_raw.get("allow_install", Defaults.OFFLINE_ALLOW_INSTALL)),
        )

        auth_raw = raw.get("auth", {}) or {}
        auth = AuthConfig(
            owner_header=str(auth_raw.get("owner_header", Defaults.AUTH_OWNER_HEADER)),
            default_owner=str(auth_raw.get("default_owner", Defaults.AUTH_DEFAULT_OWNER)),
            session_ttl_seconds=int(auth_raw.get("session_ttl_seconds", Defaults.AUTH_SESSION_TTL_SECONDS)),
            token_max_ttl_seconds=int(auth_raw.get("token_max_ttl_seconds", Defaults.AUTH_TOKEN_MAX_TTL_SECONDS)),
        )
        cls._validate_positive("auth.session_ttl_seconds", auth.session_ttl_seconds)
        cls._validate_positive("auth.token_max_ttl_seconds", auth.token_max_ttl_seconds)
        if not auth.default_owner:
            raise ConfigValidationError("auth.default_owner must not be empty")

        logging_raw = raw.get("logging", {}) or {}
        log_level_raw = logging_raw.get("level", Defaults.LOGGING_LEVEL)

        # Handle string log levels (e.g., "INFO", "DEBUG")
        if isinstance(log_level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(log_level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(log_level_raw)

        logging_cfg = LoggingConfig(
            text_preview_chars=int(logging_raw.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
            level=log_level,
        )
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        return cls(
            storage=storage,
            library=library,
            converter=converter,
            tts_cache=tts_cache,
            online=online,
            offline=offline,
            auth=auth,
            logging=logging_cfg,
        )

    @staticmethod
    def _as_bool(value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        """Validate that a value is positive (> 0)."""
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        """Validate that a value is non-negative (>= 0)."""
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        """Validate that a value is within a range [min_val, max_val]."""
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    This is the raw settings object before validation. Use
    get_app_config() to get a validated AppConfig.
    """
    raw: Dict[str, Any]

    @property
    def data_dir(self) -> str:
        return str((self.raw.get("storage", {}) or {}).get("data_dir", Defaults.STORAGE_DATA_DIR))

    @property
    def port(self) -> int:
        return int((self.raw.get("server", {}) or {}).get("port", 8080))

    @property
    def host(self) -> str:
        return str((self.raw.get("server", {}) or {}).get("host", "0.0.0.0"))

    def get_app_config(self) -> AppConfig:
        """
        Raises:
            ConfigValidationError: If validation fails.
        """
        return AppConfig.from_settings(self)


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    data_dir = os.getenv("BOOKTAINER_DATA_DIR")
    if data_dir:
        raw.setdefault("storage", {})["data_dir"] = data_dir

    allow_upload = os.getenv("BOOKTAINER_ALLOW_UPLOAD")
    if allow_upload is not None:
        raw.setdefault("library", {})["allow_upload"] = allow_upload

    port = os.getenv("BOOKTAINER_PORT")
    if port:
        raw.setdefault("server", {})["port"] = int(port)

    tts = raw["tts"] = raw.get("tts") or {}
    api_key = os.getenv("OPENAI_API_KEY")
    if api_key:
        tts.setdefault("online", {})["api_key"] = api_key
    model = os.getenv("OPENAI_TTS_MODEL")
    if model:
        tts.setdefault("online", {})["model"] = model
    voices_dir = os.getenv("PIPER_VOICES_DIR")
    if voices_dir:
        tts.setdefault("offline", {})["voices_dir"] = voices_dir
    return raw


def load_settings(path: str = "config/settings.yaml") -> Settings:
    """
    Load settings from a YAML configuration file.

    Environment variable overrides:
        - BOOKTAINER_DATA_DIR: storage.data_dir
        - BOOKTAINER_ALLOW_UPLOAD: library.allow_upload
        - BOOKTAINER_PORT: server.port
        - OPENAI_API_KEY: tts.online.api_key
        - OPENAI_TTS_MODEL: tts.online.model
        - PIPER_VOICES_DIR: tts.offline.voices_dir

    Raises:
        FileNotFoundError: If the settings file doesn't exist.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    return Settings(raw=_apply_env_overrides(raw))
