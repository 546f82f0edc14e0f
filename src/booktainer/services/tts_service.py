"""
TTSService - cached speech synthesis.

Request Flow:
    1. Validate and canonicalize (rate None -> 1.0)
    2. Derive the content-addressed key
    3. Cache probe (mp3, then wav) -> hit is served from disk
    4. Resolve the provider for the requested mode
    5. Synthesize
    6. File result  -> copied into the cache, returned as-is
       Stream result -> claim the key; winner tees into the cache,
                        loser streams without caching ("bypass")

Cache status reported per request:
    hit     served from a published cache entry
    miss    synthesized; this request populates the cache
    bypass  synthesized; another writer holds the key (or the claim failed)

Usage:
    service = TTSService(config, ProviderRegistry.from_config(config), cache, janitor)
    result = await service.speak(SpeakRequest.create("offline", "en_US-ryan-medium", "Hello"))
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from booktainer.core.config import AppConfig
from booktainer.core.logging import get_logger, info, success, verbose, warn, fail
from booktainer.core.metrics import metrics
from booktainer.services.errors import BooktainerError, ConfigurationError, ProviderError
from booktainer.services.validators import (
    ValidationError,
    sanitize_speech_text,
    validate_rate,
    validate_voice,
)
from booktainer.tts.fanout import CacheTee
from booktainer.tts.providers import MODES, ProviderRegistry, Voice
from booktainer.tts.providers.base import AudioStream
from booktainer.tts.storage import AudioCache, CacheJanitor, make_key
from booktainer.utils.timeit import timeit

_LOG = get_logger("booktainer.tts")

_UNAVAILABLE = {
    "online": "Online TTS not configured.",
    "offline": "Offline TTS not available.",
}


@dataclass(frozen=True)
class SpeakRequest:
    mode: str
    voice: str
    text: str
    rate: Optional[float] = None

    @classmethod
    def create(cls, mode: str, voice: Optional[str], text: Optional[str], rate: Optional[float] = None) -> "SpeakRequest":
        """
        Build a validated request.

        Raises:
            ValidationError: bad mode, voice, text or rate.
        """
        if mode not in MODES:
            raise ValidationError(f"Mode must be one of: {', '.join(MODES)}", "MODE_INVALID")
        return cls(
            mode=mode,
            voice=validate_voice(voice),
            text=sanitize_speech_text(text),
            rate=validate_rate(rate),
        )

    def canonical(self) -> "SpeakRequest":
        """Same request with the rate made explicit."""
        return replace(self, rate=1.0 if self.rate is None else float(self.rate))

    @property
    def cache_key(self) -> str:
        c = self.canonical()
        return make_key(c.mode, c.voice, c.rate, c.text)


@dataclass
class AudioResult:
    """
    Audio ready for delivery: a file on disk or a live stream.

    ``temporary`` files belong to the caller and must be deleted after use.
    """
    content_type: str
    cache_status: str
    file_path: Optional[Path] = None
    stream: Optional[AudioStream] = None
    content_length: Optional[int] = None
    temporary: bool = False


@dataclass(frozen=True)
class DefaultSelection:
    mode: str
    voice: str


@dataclass(frozen=True)
class VoiceListing:
    online: List[Voice]
    offline: List[Voice]

    @property
    def default(self) -> DefaultSelection:
        return default_selection(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "online": [v.to_dict() for v in self.online],
            "offline": [v.to_dict() for v in self.offline],
            "defaultMode": self.default.mode,
            "defaultVoice": self.default.voice,
        }


def default_selection(voices: VoiceListing) -> DefaultSelection:
    """Prefer offline, then online, else offline with no voice."""
    if voices.offline:
        return DefaultSelection("offline", voices.offline[0].id)
    if voices.online:
        return DefaultSelection("online", voices.online[0].id)
    return DefaultSelection("offline", "")


class TTSService:
    """
    Speech synthesis behind a content-addressed disk cache.

    Args:
        config: Validated application config.
        registry: Mode -> provider lookup.
        cache: Audio cache rooted at the tts-cache directory.
        janitor: TTL cleanup for the same directory.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: ProviderRegistry,
        cache: Optional[AudioCache] = None,
        janitor: Optional[CacheJanitor] = None,
    ):
        self._config = config
        self._registry = registry
        cache_dir = config.storage.tts_cache_dir
        self._cache = cache or AudioCache(cache_dir)
        self._janitor = janitor or CacheJanitor(
            cache_dir,
            ttl_seconds=config.tts_cache.ttl_seconds,
            stale_part_seconds=config.tts_cache.stale_part_seconds,
            cleanup_interval_seconds=config.tts_cache.cleanup_interval_seconds,
        )
        self._write_tasks: Set[asyncio.Task] = set()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def cache(self) -> AudioCache:
        return self._cache

    @property
    def janitor(self) -> CacheJanitor:
        return self._janitor

    def _preview(self, text: str) -> str:
        limit = self._config.logging.text_preview_chars
        return text if len(text) <= limit else text[:limit] + "..."

    async def speak(self, request: SpeakRequest) -> AudioResult:
        """
        Produce audio for ``request``, from cache when possible.

        Raises:
            ConfigurationError: the requested mode is not available.
            ProviderError: synthesis failed before any audio was produced.
        """
        self._janitor.maybe_cleanup()
        request = request.canonical()
        key = request.cache_key
        verbose(_LOG, "speak", mode=request.mode, voice=request.voice, key=key[:8], text=self._preview(request.text))

        with timeit("speak") as t:
            cached = await asyncio.to_thread(self._cache.lookup, key)
            if cached is not None:
                metrics.record_tts_request(request.mode, "success", t.elapsed, cache_status="hit")
                info(_LOG, "speak_served", cache="hit", key=key[:8], bytes=cached.content_length)
                return AudioResult(
                    content_type=cached.content_type,
                    cache_status="hit",
                    file_path=cached.path,
                    content_length=cached.content_length,
                )

            provider = self._registry.resolve(request.mode)
            if provider is None:
                metrics.record_tts_request(request.mode, "error", t.elapsed, cache_status="miss")
                raise ConfigurationError(_UNAVAILABLE.get(request.mode, "TTS not available."))

            try:
                result = await provider.speak(request.text, request.voice, request.rate)
            except BooktainerError as e:
                metrics.record_tts_request(request.mode, "error", t.elapsed, cache_status="miss")
                fail(_LOG, "speak_failed", mode=request.mode, error=e.message)
                raise
            except Exception as e:
                metrics.record_tts_request(request.mode, "error", t.elapsed, cache_status="miss")
                fail(_LOG, "speak_failed", mode=request.mode, error=str(e))
                raise ProviderError(f"{provider.name} failed: {e}")

            if result.file_path is not None:
                stored = await asyncio.to_thread(self._cache.store_file, key, result.content_type, result.file_path)
                cache_status = "miss" if stored else "bypass"
                audio = AudioResult(
                    content_type=result.content_type,
                    cache_status=cache_status,
                    file_path=result.file_path,
                    content_length=result.content_length,
                    temporary=result.temporary,
                )
            else:
                writer = await asyncio.to_thread(self._cache.claim, key, result.content_type)
                if writer is None:
                    cache_status = "bypass"
                    stream = result.stream
                else:
                    cache_status = "miss"
                    stream = CacheTee(result.stream, writer, self._write_tasks)
                audio = AudioResult(
                    content_type=result.content_type,
                    cache_status=cache_status,
                    stream=stream,
                    content_length=result.content_length,
                )

        metrics.record_tts_request(request.mode, "success", t.elapsed, cache_status=cache_status)
        success(_LOG, "speak_ready", cache=cache_status, key=key[:8], provider=provider.name, seconds=t.elapsed)
        return audio

    async def list_voices(self) -> VoiceListing:
        voices = await self._registry.list_voices()
        return VoiceListing(online=voices["online"], offline=voices["offline"])

    @property
    def pending_writes(self) -> int:
        return len(self._write_tasks)

    async def wait_for_cache_writes(self) -> None:
        """Wait for background cache writes started by streamed responses."""
        if self._write_tasks:
            await asyncio.gather(*list(self._write_tasks), return_exceptions=True)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Let in-flight cache writes finish, abort whatever is still running after ``timeout``."""
        if self._write_tasks:
            _, pending = await asyncio.wait(list(self._write_tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            await self.wait_for_cache_writes()
        await self._registry.aclose()

    def get_health_info(self) -> Dict[str, Any]:
        providers = {}
        for mode in MODES:
            provider = self._registry.get(mode)
            providers[mode] = {
                "provider": provider.name if provider else None,
                "available": bool(provider and provider.is_available()),
            }
        return {
            "providers": providers,
            "cache": {
                **self._janitor.get_storage_info(),
                **self._janitor.get_stats(),
                "active_writes": self.pending_writes,
            },
        }


def log_unavailable_modes(service: TTSService) -> None:
    for mode in MODES:
        if service.registry.resolve(mode) is None:
            warn(_LOG, "tts_mode_unavailable", mode=mode)
