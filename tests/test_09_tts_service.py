"""
Tests for TTSService: cache hit/miss/bypass, provider resolution,
error mapping and voice listing.
"""
import asyncio

import pytest

from booktainer.services.errors import ConfigurationError, ProviderError
from booktainer.services.tts_service import (
    DefaultSelection,
    SpeakRequest,
    TTSService,
    VoiceListing,
    default_selection,
)
from booktainer.services.validators import ValidationError
from booktainer.tts.providers import ProviderRegistry, Voice
from booktainer.tts.storage import MPEG, WAV

from conftest import FakeProvider


async def _read(result):
    body = b""
    async for chunk in result.stream:
        body += chunk
    return body


def _service(app_config, **providers):
    return TTSService(app_config, ProviderRegistry(providers))


class TestSpeakRequest:
    def test_create_validates(self):
        req = SpeakRequest.create("offline", " voice-a ", "  Hello  ")

        assert req.voice == "voice-a"
        assert req.text == "Hello"
        assert req.rate is None

    def test_invalid_mode(self):
        with pytest.raises(ValidationError) as exc_info:
            SpeakRequest.create("cloud", "voice-a", "Hello")

        assert exc_info.value.reason == "MODE_INVALID"

    @pytest.mark.parametrize("voice,text,rate,reason", [
        (None, "Hello", None, "VOICE_REQUIRED"),
        ("v", "   ", None, "TEXT_REQUIRED"),
        ("v", "x" * 4001, None, "TEXT_TOO_LONG"),
        ("v", "Hello", 3.0, "RATE_OUT_OF_RANGE"),
    ])
    def test_invalid_fields(self, voice, text, rate, reason):
        with pytest.raises(ValidationError) as exc_info:
            SpeakRequest.create("offline", voice, text, rate)

        assert exc_info.value.reason == reason

    def test_canonical_rate(self):
        assert SpeakRequest("offline", "v", "t").canonical().rate == 1.0
        assert SpeakRequest("offline", "v", "t").cache_key == SpeakRequest("offline", "v", "t", 1.0).cache_key
        assert SpeakRequest("offline", "v", "t").cache_key != SpeakRequest("offline", "v", "t", 1.5).cache_key


class TestSpeak:
    def test_miss_then_hit(self, app_config):
        provider = FakeProvider()
        service = _service(app_config, offline=provider)
        req = SpeakRequest.create("offline", "voice-a", "Hello there")

        async def run():
            first = await service.speak(req)
            body = await _read(first)
            await service.wait_for_cache_writes()
            second = await service.speak(req)
            return first, body, second

        first, body, second = asyncio.run(run())

        assert first.cache_status == "miss"
        assert first.content_type == MPEG
        assert body == b"ID3audio-bytes"
        assert second.cache_status == "hit"
        assert second.stream is None
        assert second.file_path.read_bytes() == b"ID3audio-bytes"
        assert second.content_length == len(body)
        assert provider.calls == [("Hello there", "voice-a", 1.0)]

    def test_concurrent_requests_single_writer(self, app_config):
        provider = FakeProvider()
        service = _service(app_config, offline=provider)
        req = SpeakRequest.create("offline", "voice-a", "Same text")

        async def run():
            first, second = await asyncio.gather(service.speak(req), service.speak(req))
            bodies = await asyncio.gather(_read(first), _read(second))
            await service.wait_for_cache_writes()
            third = await service.speak(req)
            return first, second, bodies, third

        first, second, bodies, third = asyncio.run(run())

        assert sorted([first.cache_status, second.cache_status]) == ["bypass", "miss"]
        assert bodies[0] == bodies[1] == b"ID3audio-bytes"
        assert third.cache_status == "hit"
        assert len(provider.calls) == 2

    def test_failed_stream_not_cached(self, app_config):
        provider = FakeProvider(fail_at=1)
        service = _service(app_config, offline=provider)
        req = SpeakRequest.create("offline", "voice-a", "Broken")

        async def run():
            result = await service.speak(req)
            with pytest.raises(RuntimeError):
                await _read(result)
            await service.wait_for_cache_writes()
            return result

        result = asyncio.run(run())

        assert result.cache_status == "miss"
        assert service.cache.lookup(req.cache_key) is None
        assert provider.streams[0].closed

    def test_file_result_cached(self, app_config):
        provider = FakeProvider(as_file=True, chunks=(b"RIFF", b"wave"))
        service = _service(app_config, offline=provider)
        req = SpeakRequest.create("offline", "voice-a", "File based", rate=1.25)

        async def run():
            return await service.speak(req), await service.speak(req)

        first, second = asyncio.run(run())
        try:
            assert first.cache_status == "miss"
            assert first.temporary is True
            assert first.content_type == WAV
            assert second.cache_status == "hit"
            assert second.temporary is False
            assert second.file_path.read_bytes() == b"RIFFwave"
            assert second.file_path.name.endswith(".wav")
            assert provider.calls == [("File based", "voice-a", 1.25)]
        finally:
            first.file_path.unlink(missing_ok=True)

    def test_unavailable_modes(self, app_config):
        service = _service(app_config, offline=FakeProvider(available=False))

        with pytest.raises(ConfigurationError) as exc_info:
            asyncio.run(service.speak(SpeakRequest.create("offline", "v", "Hi")))
        assert exc_info.value.message == "Offline TTS not available."

        with pytest.raises(ConfigurationError) as exc_info:
            asyncio.run(service.speak(SpeakRequest.create("online", "alloy", "Hi")))
        assert exc_info.value.message == "Online TTS not configured."

    def test_provider_error_propagates(self, app_config):
        service = _service(app_config, offline=FakeProvider(error=ProviderError("piper exited with code 1")))

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(service.speak(SpeakRequest.create("offline", "v", "Hi")))

        assert exc_info.value.message == "piper exited with code 1"

    def test_unexpected_error_wrapped(self, app_config):
        service = _service(app_config, offline=FakeProvider(error=RuntimeError("segfault")))

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(service.speak(SpeakRequest.create("offline", "v", "Hi")))

        assert "segfault" in exc_info.value.message

    def test_hit_served_without_provider(self, app_config):
        provider = FakeProvider()
        service = _service(app_config, offline=provider)
        req = SpeakRequest.create("offline", "voice-a", "Cached")

        async def run():
            await _read(await service.speak(req))
            await service.wait_for_cache_writes()

        asyncio.run(run())
        provider.available = False

        assert asyncio.run(service.speak(req)).cache_status == "hit"


class TestVoices:
    def test_listing_and_default(self, app_config):
        service = _service(
            app_config,
            online=FakeProvider(mode="online", voices=("alloy",)),
            offline=FakeProvider(voices=("en_US-ryan-medium",)),
        )

        listing = asyncio.run(service.list_voices())
        data = listing.to_dict()

        assert [v["id"] for v in data["online"]] == ["alloy"]
        assert [v["id"] for v in data["offline"]] == ["en_US-ryan-medium"]
        assert data["defaultMode"] == "offline"
        assert data["defaultVoice"] == "en_US-ryan-medium"

    def test_unavailable_provider_lists_nothing(self, app_config):
        service = _service(
            app_config,
            online=FakeProvider(mode="online", voices=("alloy",)),
            offline=FakeProvider(available=False),
        )

        listing = asyncio.run(service.list_voices())

        assert listing.offline == []
        assert listing.default == DefaultSelection("online", "alloy")

    def test_listing_error_degrades(self, app_config):
        service = _service(app_config, offline=FakeProvider(error=RuntimeError("boom")))

        assert asyncio.run(service.list_voices()).offline == []

    def test_default_selection_empty(self):
        assert default_selection(VoiceListing(online=[], offline=[])) == DefaultSelection("offline", "")
        assert default_selection(VoiceListing(online=[Voice("alloy", "Alloy")], offline=[])).mode == "online"


class TestLifecycle:
    def test_health_info(self, app_config):
        service = _service(app_config, offline=FakeProvider(), online=FakeProvider(mode="online", available=False))

        health = service.get_health_info()

        assert health["providers"]["offline"] == {"provider": "fake", "available": True}
        assert health["providers"]["online"]["available"] is False
        assert health["cache"]["file_count"] == 0
        assert health["cache"]["active_writes"] == 0

    def test_aclose_closes_providers(self, app_config):
        provider = FakeProvider()
        service = _service(app_config, offline=provider)

        asyncio.run(service.aclose())

        assert provider.closed
