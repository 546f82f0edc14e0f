"""
Speech providers and their registry.

    online  -> OpenAIProvider (needs an API key)
    offline -> PiperProvider (needs at least one installed voice)
"""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from booktainer.core.config import AppConfig
from booktainer.core.logging import get_logger, warn
from booktainer.tts.providers.base import AudioStream, ProviderResult, TTSProvider, Voice
from booktainer.tts.providers.openai_provider import OpenAIProvider
from booktainer.tts.providers.piper_provider import PIPER_VOICE_CATALOG, PiperProvider

_LOG = get_logger("booktainer.tts.providers")

MODES = ("online", "offline")


class ProviderRegistry:
    """Mode -> provider, consulting availability on every lookup."""

    def __init__(self, providers: Dict[str, TTSProvider]):
        self._providers = dict(providers)

    @classmethod
    def from_config(cls, config: AppConfig) -> "ProviderRegistry":
        return cls({
            "online": OpenAIProvider(config.online),
            "offline": PiperProvider(config.offline, tmp_dir=config.storage.tmp_dir),
        })

    def get(self, mode: str) -> Optional[TTSProvider]:
        """The provider registered for ``mode``, available or not."""
        return self._providers.get(mode)

    def resolve(self, mode: str) -> Optional[TTSProvider]:
        """The provider for ``mode`` if it can serve requests, else None."""
        provider = self._providers.get(mode)
        if provider is None or not provider.is_available():
            return None
        return provider

    async def _voices_for(self, mode: str) -> List[Voice]:
        provider = self.resolve(mode)
        if provider is None:
            return []
        try:
            return await provider.list_voices()
        except Exception as e:
            warn(_LOG, "voice_listing_failed", mode=mode, error=str(e))
            return []

    async def list_voices(self) -> Dict[str, List[Voice]]:
        online, offline = await asyncio.gather(self._voices_for("online"), self._voices_for("offline"))
        return {"online": online, "offline": offline}

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()


__all__ = [
    "AudioStream",
    "MODES",
    "OpenAIProvider",
    "PIPER_VOICE_CATALOG",
    "PiperProvider",
    "ProviderRegistry",
    "ProviderResult",
    "TTSProvider",
    "Voice",
]
