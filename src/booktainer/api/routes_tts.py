"""
Speech routes.

Endpoints:
    GET  /api/tts/voices                 voices per mode + default selection
    POST /api/tts/speak                  synthesize, audio in the response body
    POST /api/tts/speak-url              issue a playback token -> {"url": ...}
    GET  /api/tts/speak/{token}          synthesize the tokenized request
    GET  /api/tts/offline/catalog        installable Piper voices
    POST /api/tts/offline/install-voice  download a catalog voice

Audio served from a file (cache hit, offline WAV) honors Range requests;
live streams are relayed as they arrive. ``X-Cache`` reports hit, miss or
bypass.
"""
from __future__ import annotations

import asyncio
from functools import partial
from pathlib import Path

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response

from booktainer.api.delivery import file_response, stream_response
from booktainer.api.dependencies import get_owner_id, get_token_store, get_tts_service
from booktainer.api.schemas import InstallVoiceIn, SpeakIn, SpeakUrlOut
from booktainer.core.logging import get_logger, info, warn
from booktainer.services.errors import ConfigurationError, ForbiddenError, NotFoundError
from booktainer.services.tts_service import AudioResult, SpeakRequest, TTSService
from booktainer.tts.providers import PiperProvider
from booktainer.tts.tokens import TokenStore

router = APIRouter(prefix="/api/tts", tags=["tts"])

_LOG = get_logger("booktainer.api.tts")


def _deliver(result: AudioResult, request: Request) -> Response:
    headers = {"Cache-Control": "no-store", "X-Cache": result.cache_status}
    if result.file_path is None:
        return stream_response(result.stream, result.content_type, result.content_length, headers)

    on_close = None
    if result.temporary:
        path: Path = result.file_path

        async def on_close() -> None:
            await asyncio.to_thread(partial(path.unlink, missing_ok=True))

    return file_response(
        result.file_path,
        request.headers.get("range"),
        media_type=result.content_type,
        headers=headers,
        on_close=on_close,
    )


async def _speak(service: TTSService, speak_request: SpeakRequest, request: Request) -> Response:
    result = await service.speak(speak_request)
    try:
        return _deliver(result, request)
    except FileNotFoundError:
        if result.cache_status != "hit":
            raise
    # The janitor removed the entry between lookup and open.
    warn(_LOG, "cache_hit_vanished", mode=speak_request.mode)
    return _deliver(await service.speak(speak_request), request)


def _piper(service: TTSService) -> PiperProvider:
    provider = service.registry.get("offline")
    if not isinstance(provider, PiperProvider):
        raise ConfigurationError("Offline TTS not available.")
    return provider


@router.get("/voices")
async def list_voices(service: TTSService = Depends(get_tts_service)):
    listing = await service.list_voices()
    return listing.to_dict()


@router.post("/speak")
async def speak(
    body: SpeakIn,
    request: Request,
    service: TTSService = Depends(get_tts_service),
):
    speak_request = SpeakRequest.create(body.mode, body.voice, body.text, body.rate)
    return await _speak(service, speak_request, request)


@router.post("/speak-url", response_model=SpeakUrlOut)
def speak_url(
    body: SpeakIn,
    owner_id: str = Depends(get_owner_id),
    tokens: TokenStore = Depends(get_token_store),
):
    speak_request = SpeakRequest.create(body.mode, body.voice, body.text, body.rate)
    token = tokens.issue(owner_id, speak_request)
    return SpeakUrlOut(url=f"/api/tts/speak/{token}")


@router.get("/speak/{token}")
async def speak_token(
    token: str,
    request: Request,
    owner_id: str = Depends(get_owner_id),
    tokens: TokenStore = Depends(get_token_store),
    service: TTSService = Depends(get_tts_service),
):
    entry = tokens.resolve(token)
    if entry.owner_id != owner_id:
        raise NotFoundError("Not found")
    return await _speak(service, entry.request, request)


async def _catalog(piper: PiperProvider):
    installed = {v.id for v in await asyncio.to_thread(piper.installed_voices)}
    return [{**v.to_dict(), "installed": v.id in installed} for v in piper.catalog()]


@router.get("/offline/catalog")
async def offline_catalog(service: TTSService = Depends(get_tts_service)):
    return {"catalog": await _catalog(_piper(service))}


@router.post("/offline/install-voice")
async def install_voice(
    body: InstallVoiceIn,
    request: Request,
    service: TTSService = Depends(get_tts_service),
):
    if not request.app.state.config.offline.allow_install:
        raise ForbiddenError("Voice installation is disabled")
    piper = _piper(service)
    voice = await piper.install_voice(body.voice.strip())
    info(_LOG, "voice_install_requested", voice=voice.id)
    return {"voice": voice.to_dict(), "catalog": await _catalog(piper)}
