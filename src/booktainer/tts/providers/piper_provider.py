"""
Offline speech with Piper.

A voice is installed when both ``<id>.onnx`` and ``<id>.onnx.json`` exist
in the voices directory. With ``transcode`` enabled, Piper's WAV output is
piped straight into ffmpeg and the resulting MP3 is streamed:

    text -> piper --output_file - -> ffmpeg -f wav -i pipe:0 -f mp3 pipe:1 -> caller

Without it, Piper writes a temporary WAV file that is returned as a file
result.
"""
from __future__ import annotations

import asyncio
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import httpx

from booktainer.core.config import OfflineTTSConfig
from booktainer.core.logging import debug, get_logger, info, verbose, warn
from booktainer.services.errors import ConfigurationError, InputError, ProviderError
from booktainer.tts.providers.base import ProviderResult, TTSProvider, Voice
from booktainer.tts.storage import MPEG, WAV

_LOG = get_logger("booktainer.tts.piper")

_HF_BASE = "https://huggingface.co/rhasspy/piper-voices/resolve/main"
_VOICE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

READ_CHUNK = 64 * 1024


@dataclass(frozen=True)
class PiperVoiceSpec:
    id: str
    name: str
    locale: str
    path: str

    @property
    def onnx_url(self) -> str:
        return f"{_HF_BASE}/{self.path}/{self.id}.onnx"

    @property
    def config_url(self) -> str:
        return f"{self.onnx_url}.json"

    def to_voice(self) -> Voice:
        return Voice(id=self.id, name=self.name, locale=self.locale)


PIPER_VOICE_CATALOG: Tuple[PiperVoiceSpec, ...] = (
    PiperVoiceSpec("en_US-ryan-medium", "Ryan (en-US)", "en-US", "en/en_US/ryan/medium"),
    PiperVoiceSpec("en_US-amy-medium", "Amy (en-US)", "en-US", "en/en_US/amy/medium"),
    PiperVoiceSpec("en_US-lessac-medium", "Lessac (en-US)", "en-US", "en/en_US/lessac/medium"),
    PiperVoiceSpec("en_GB-alba-medium", "Alba (en-GB)", "en-GB", "en/en_GB/alba/medium"),
)


def catalog_entry(voice_id: str) -> Optional[PiperVoiceSpec]:
    for spec in PIPER_VOICE_CATALOG:
        if spec.id == voice_id:
            return spec
    return None


def length_scale_for(rate: float) -> float:
    """Piper's length_scale is inverse speed, clamped to [0.5, 2]."""
    return max(0.5, min(2.0, 1.0 / max(float(rate), 0.5)))


def _tail(data: bytes, limit: int = 1000) -> str:
    return (data or b"").decode("utf-8", errors="replace").strip()[-limit:]


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


class TranscodeStream:
    """
    MP3 bytes from the piper -> ffmpeg chain.

    Closing the stream, early or not, kills whichever process is still
    running. Exit codes are checked once ffmpeg reaches end of output.
    """

    def __init__(self, piper: asyncio.subprocess.Process, transcoder: asyncio.subprocess.Process):
        self._piper = piper
        self._transcoder = transcoder
        self._total = 0
        self._closed = False

    def __aiter__(self) -> "TranscodeStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        assert self._transcoder.stdout is not None
        try:
            chunk = await self._transcoder.stdout.read(READ_CHUNK)
            if chunk:
                self._total += len(chunk)
                return chunk
            await self._finish()
        except BaseException:
            await self.aclose()
            raise
        await self.aclose()
        raise StopAsyncIteration

    async def _finish(self) -> None:
        ffmpeg_stderr = await self._transcoder.stderr.read() if self._transcoder.stderr else b""
        piper_rc = await self._piper.wait()
        ffmpeg_rc = await self._transcoder.wait()
        if piper_rc != 0:
            raise ProviderError(f"piper exited with code {piper_rc}")
        if ffmpeg_rc != 0:
            raise ProviderError(_tail(ffmpeg_stderr) or f"ffmpeg exited with code {ffmpeg_rc}")
        if self._total == 0:
            raise ProviderError("offline synthesis produced no audio")
        verbose(_LOG, "piper_stream_done", bytes=self._total)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await _terminate(self._piper)
        await _terminate(self._transcoder)


class PiperProvider(TTSProvider):
    mode = "offline"
    name = "piper"

    def __init__(self, config: OfflineTTSConfig, tmp_dir: Optional[Path] = None):
        self._config = config
        self._voices_dir = Path(config.voices_dir)
        self._tmp_dir = Path(tmp_dir) if tmp_dir else Path(tempfile.gettempdir())

    @property
    def voices_dir(self) -> Path:
        return self._voices_dir

    def voice_paths(self, voice_id: str) -> Tuple[Path, Path]:
        if not _VOICE_ID.match(voice_id):
            raise InputError(f"Invalid voice id: {voice_id}")
        return self._voices_dir / f"{voice_id}.onnx", self._voices_dir / f"{voice_id}.onnx.json"

    def installed_voices(self) -> List[Voice]:
        if not self._voices_dir.is_dir():
            return []
        voices = []
        for model in sorted(self._voices_dir.glob("*.onnx")):
            voice_id = model.name[: -len(".onnx")]
            if not model.with_name(model.name + ".json").is_file():
                continue
            spec = catalog_entry(voice_id)
            voices.append(spec.to_voice() if spec else Voice(id=voice_id, name=voice_id))
        return voices

    def is_available(self) -> bool:
        return bool(self.installed_voices())

    async def list_voices(self) -> List[Voice]:
        return await asyncio.to_thread(self.installed_voices)

    def catalog(self) -> List[Voice]:
        return [spec.to_voice() for spec in PIPER_VOICE_CATALOG]

    def _require_binary(self, binary: str) -> str:
        resolved = shutil.which(binary)
        if resolved is None:
            raise ConfigurationError(f"{binary} is not available on PATH.")
        return resolved

    async def speak(self, text: str, voice: str, rate: float) -> ProviderResult:
        model_path, config_path = self.voice_paths(voice)
        if not model_path.is_file() or not config_path.is_file():
            raise ConfigurationError("Piper voice not installed.")

        piper_argv = [
            self._require_binary(self._config.piper_binary),
            "--model", str(model_path),
            "--config", str(config_path),
            "--length_scale", f"{length_scale_for(rate):g}",
        ]
        if self._config.transcode:
            ffmpeg = self._require_binary(self._config.ffmpeg_binary)
            return await self._speak_streaming(piper_argv, ffmpeg, text)
        return await self._speak_to_file(piper_argv, text)

    async def _speak_to_file(self, piper_argv: List[str], text: str) -> ProviderResult:
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix="piper-", suffix=".wav", dir=self._tmp_dir)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            proc = await asyncio.create_subprocess_exec(
                *piper_argv, "--output_file", str(tmp_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await proc.communicate(text.encode("utf-8"))
            except asyncio.CancelledError:
                await _terminate(proc)
                raise
            if proc.returncode != 0:
                raise ProviderError(_tail(stderr) or f"piper exited with code {proc.returncode}")
            size = tmp_path.stat().st_size
            if size == 0:
                raise ProviderError("piper produced no audio")
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        verbose(_LOG, "piper_file_done", bytes=size)
        return ProviderResult(content_type=WAV, file_path=tmp_path, content_length=size, temporary=True)

    async def _speak_streaming(self, piper_argv: List[str], ffmpeg: str, text: str) -> ProviderResult:
        read_fd, write_fd = os.pipe()
        piper = None
        transcoder = None
        try:
            piper = await asyncio.create_subprocess_exec(
                *piper_argv, "--output_file", "-",
                stdin=asyncio.subprocess.PIPE,
                stdout=write_fd,
                stderr=asyncio.subprocess.DEVNULL,
            )
            transcoder = await asyncio.create_subprocess_exec(
                ffmpeg, "-loglevel", "error", "-f", "wav", "-i", "pipe:0", "-f", "mp3", "pipe:1",
                stdin=read_fd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            for proc in (piper, transcoder):
                if proc is not None:
                    await _terminate(proc)
            raise ProviderError(f"failed to start offline synthesis: {e}")
        finally:
            # The children hold their own copies of the pipe ends.
            os.close(read_fd)
            os.close(write_fd)

        assert piper.stdin is not None
        try:
            piper.stdin.write(text.encode("utf-8"))
            await piper.stdin.drain()
            piper.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            await _terminate(piper)
            await _terminate(transcoder)
            raise ProviderError(f"piper exited with code {piper.returncode} before reading input")

        debug(_LOG, "piper_stream_started", pid=piper.pid)
        return ProviderResult(content_type=MPEG, stream=TranscodeStream(piper, transcoder))

    async def install_voice(self, voice_id: str, client: Optional[httpx.AsyncClient] = None) -> Voice:
        """
        Download a catalog voice into the voices directory.

        Files already present are kept. Downloads land in a ``.part`` file
        first so an interrupted download never looks installed.

        Raises:
            InputError: The voice is not in the catalog.
            ProviderError: A download failed.
        """
        spec = catalog_entry(voice_id)
        if spec is None:
            raise InputError("Unknown Piper voice.")
        self._voices_dir.mkdir(parents=True, exist_ok=True)
        model_path, config_path = self.voice_paths(voice_id)

        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=120.0, follow_redirects=True)
        try:
            for url, target in ((spec.onnx_url, model_path), (spec.config_url, config_path)):
                if target.is_file():
                    continue
                await self._download(client, url, target)
        finally:
            if owns_client:
                await client.aclose()
        info(_LOG, "piper_voice_installed", voice=voice_id)
        return spec.to_voice()

    @staticmethod
    async def _download(client: httpx.AsyncClient, url: str, target: Path) -> None:
        part = target.with_name(target.name + ".part")
        try:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise ProviderError(f"Failed to download {url}", details={"status": response.status_code})
                with part.open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        await asyncio.to_thread(fh.write, chunk)
            os.replace(part, target)
        except httpx.HTTPError as e:
            warn(_LOG, "piper_download_failed", url=url, error=str(e))
            raise ProviderError(f"Failed to download {url}: {e}")
        finally:
            part.unlink(missing_ok=True)
