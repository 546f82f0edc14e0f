"""
Online speech through the OpenAI audio/speech endpoint.

The response body is relayed as it arrives rather than buffered, so
playback can start before synthesis of a long passage has finished.
"""
from __future__ import annotations

from typing import List, Optional

import httpx

from booktainer.core.config import OnlineTTSConfig
from booktainer.core.logging import debug, get_logger, warn
from booktainer.services.errors import ConfigurationError, ProviderError
from booktainer.tts.providers.base import ProviderResult, TTSProvider, Voice
from booktainer.tts.storage import MPEG

_LOG = get_logger("booktainer.tts.openai")

OPENAI_VOICES = (
    "alloy", "ash", "ballad", "coral", "echo", "fable", "onyx",
    "nova", "sage", "shimmer", "verse", "cedar", "marin",
)

MIN_SPEED = 0.5
MAX_SPEED = 2.0


class ResponseStream:
    """Relay an httpx streaming response; closing it releases the connection."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks = response.aiter_bytes()
        self._closed = False

    def __aiter__(self) -> "ResponseStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except httpx.HTTPError as e:
            await self.aclose()
            raise ProviderError(f"OpenAI TTS stream interrupted: {e}")
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class OpenAIProvider(TTSProvider):
    mode = "online"
    name = "openai"

    def __init__(self, config: OnlineTTSConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client
        self._owns_client = client is None

    def is_available(self) -> bool:
        return bool(self._config.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_s)
        return self._client

    async def list_voices(self) -> List[Voice]:
        return [Voice(id=v, name=v.capitalize()) for v in OPENAI_VOICES]

    async def speak(self, text: str, voice: str, rate: float) -> ProviderResult:
        if not self.is_available():
            raise ConfigurationError("Online TTS not configured.")
        if voice not in OPENAI_VOICES:
            raise ConfigurationError(f"Unknown online voice: {voice}")

        speed = max(MIN_SPEED, min(MAX_SPEED, float(rate)))
        payload = {
            "model": self._config.model,
            "voice": voice,
            "input": text,
            "response_format": "mp3",
            "speed": speed,
        }
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }
        client = self._get_client()
        request = client.build_request(
            "POST", f"{self._config.base_url}/audio/speech", headers=headers, json=payload
        )
        debug(_LOG, "openai_request", voice=voice, speed=speed, chars=len(text))
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI TTS request failed: {e}")

        if not response.is_success:
            try:
                detail = (await response.aread()).decode("utf-8", errors="replace").strip()
            finally:
                await response.aclose()
            warn(_LOG, "openai_rejected", status=response.status_code)
            raise ProviderError(
                detail or "OpenAI TTS request failed.",
                details={"status": response.status_code},
            )

        length = None if "content-encoding" in response.headers else response.headers.get("content-length")
        return ProviderResult(
            content_type=MPEG,
            stream=ResponseStream(response),
            content_length=int(length) if length and length.isdigit() else None,
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
