"""Shared fixtures: EPUB builder, settings, fake speech providers."""
from __future__ import annotations

import io
import os
import sys
import tempfile
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

os.environ.setdefault("BOOKTAINER_NO_COLOR", "1")

from booktainer.core.config import Settings
from booktainer.tts.providers.base import ProviderResult, TTSProvider, Voice
from booktainer.tts.storage import MPEG, WAV

CONTAINER_XML = """<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>"""


def build_epub(
    title: Optional[str] = "A Title",
    author: Optional[str] = "An Author",
    opf_path: str = "OEBPS/content.opf",
    meta_cover_id: Optional[str] = None,
    manifest: Iterable[Dict[str, str]] = (),
    files: Optional[Dict[str, bytes]] = None,
    container: bool = True,
) -> bytes:
    """Assemble a minimal EPUB in memory."""
    dc = []
    if title is not None:
        dc.append(f"<dc:title>{title}</dc:title>")
    if author is not None:
        dc.append(f"<dc:creator>{author}</dc:creator>")
    if meta_cover_id is not None:
        dc.append(f'<meta name="cover" content="{meta_cover_id}"/>')
    items = "".join(
        "<item " + " ".join(f'{k}="{v}"' for k, v in item.items()) + "/>" for item in manifest
    )
    opf = (
        '<?xml version="1.0"?>'
        '<package xmlns="http://www.idpf.org/2007/opf" version="3.0">'
        '<metadata xmlns:dc="http://purl.org/dc/elements/1.1/">' + "".join(dc) + "</metadata>"
        "<manifest>" + items + "</manifest>"
        "</package>"
    )
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        if container:
            zf.writestr("META-INF/container.xml", CONTAINER_XML.format(opf_path=opf_path))
        zf.writestr(opf_path, opf)
        for name, data in (files or {}).items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def epub_factory():
    return build_epub


def copy_command() -> List[str]:
    """Converter argv that copies input to output."""
    return [sys.executable, "-c", "import shutil, sys; shutil.copyfile(sys.argv[1], sys.argv[2])", "{input}", "{output}"]


def slow_copy_command(delay: float = 0.5) -> List[str]:
    script = f"import shutil, sys, time; time.sleep({delay}); shutil.copyfile(sys.argv[1], sys.argv[2])"
    return [sys.executable, "-c", script, "{input}", "{output}"]


def failing_command(message: str = "conversion exploded", code: int = 3) -> List[str]:
    script = f"import sys; sys.stderr.write({message!r}); sys.exit({code})"
    return [sys.executable, "-c", script, "{input}", "{output}"]


@pytest.fixture
def make_settings(tmp_path):
    """Settings rooted in a temp data dir; keyword sections are merged in."""

    def _make(**sections) -> Settings:
        raw = {
            "storage": {"data_dir": str(tmp_path / "data")},
            "converter": {"commands": {"mobi": copy_command()}},
            "tts": {"offline": {"voices_dir": str(tmp_path / "voices")}},
        }
        for name, value in sections.items():
            if isinstance(value, dict) and isinstance(raw.get(name), dict):
                raw[name] = {**raw[name], **value}
            else:
                raw[name] = value
        return Settings(raw=raw)

    return _make


@pytest.fixture
def app_config(make_settings):
    return make_settings().get_app_config()


class ListStream:
    """In-memory AudioStream. ``fail_at`` raises instead of yielding that chunk index."""

    def __init__(self, chunks: Iterable[bytes], fail_at: Optional[int] = None, gate=None):
        self._chunks = list(chunks)
        self._fail_at = fail_at
        self._gate = gate
        self._index = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self.closed:
            raise StopAsyncIteration
        if self._gate is not None:
            await self._gate.wait()
        if self._fail_at is not None and self._index == self._fail_at:
            raise RuntimeError("stream broke")
        if self._index >= len(self._chunks):
            raise StopAsyncIteration
        chunk = self._chunks[self._index]
        self._index += 1
        return chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeProvider(TTSProvider):
    """Deterministic provider; records calls."""

    name = "fake"

    def __init__(
        self,
        mode: str = "offline",
        chunks: Iterable[bytes] = (b"ID3", b"audio-", b"bytes"),
        available: bool = True,
        as_file: bool = False,
        fail_at: Optional[int] = None,
        error: Optional[Exception] = None,
        voices: Iterable[str] = ("voice-a", "voice-b"),
    ):
        self.mode = mode
        self.chunks = list(chunks)
        self.available = available
        self.as_file = as_file
        self.fail_at = fail_at
        self.error = error
        self.voices = list(voices)
        self.calls: List[tuple] = []
        self.streams: List[ListStream] = []
        self.files: List[Path] = []
        self.closed = False

    def is_available(self) -> bool:
        return self.available

    async def list_voices(self) -> List[Voice]:
        if self.error is not None:
            raise self.error
        return [Voice(id=v, name=v.title()) for v in self.voices]

    async def speak(self, text: str, voice: str, rate: float) -> ProviderResult:
        self.calls.append((text, voice, rate))
        if self.error is not None:
            raise self.error
        if self.as_file:
            fd, name = tempfile.mkstemp(suffix=".wav")
            with os.fdopen(fd, "wb") as fh:
                fh.write(b"".join(self.chunks))
            size = Path(name).stat().st_size
            self.files.append(Path(name))
            return ProviderResult(content_type=WAV, file_path=Path(name), content_length=size, temporary=True)
        stream = ListStream(self.chunks, fail_at=self.fail_at)
        self.streams.append(stream)
        return ProviderResult(content_type=MPEG, stream=stream)

    async def aclose(self) -> None:
        self.closed = True
