"""
Byte delivery for books, covers and audio.

Range support covers the single-range forms a browser media element or
PDF viewer sends:

    bytes=0-1023   first KiB
    bytes=500-     from offset 500 to the end

Anything else (suffix ranges, multiple ranges, junk) and any range that
cannot be satisfied is answered with the full body. Every file response
advertises ``Accept-Ranges: bytes``; live streams advertise ``none``.
"""
from __future__ import annotations

import asyncio
import mimetypes
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, BinaryIO, Callable, Dict, Optional

from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from booktainer.tts.providers.base import AudioStream

CHUNK_SIZE = 64 * 1024

_RANGE = re.compile(r"^bytes=(\d+)-(\d*)$")

_MEDIA_TYPES = {
    ".epub": "application/epub+zip",
    ".mobi": "application/x-mobipocket-ebook",
    ".md": "text/markdown; charset=utf-8",
    ".txt": "text/plain; charset=utf-8",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
}


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class DeliveryPlan:
    status_code: int
    start: int
    length: int
    media_type: str = "application/octet-stream"
    headers: Dict[str, str] = field(default_factory=dict)


def parse_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """
    Parse a single ``bytes=start-[end]`` range against a resource of ``size`` bytes.

    Returns None when the header is absent, malformed or unsatisfiable.
    An end at or past the resource is clamped to its last byte.
    """
    if not header:
        return None
    m = _RANGE.match(header.strip())
    if m is None:
        return None
    start = int(m.group(1))
    end = int(m.group(2)) if m.group(2) else size - 1
    if start >= size or end < start:
        return None
    return ByteRange(start, min(end, size - 1))


def plan_delivery(size: int, range_header: Optional[str], media_type: str = "application/octet-stream") -> DeliveryPlan:
    byte_range = parse_range(range_header, size)
    if byte_range is None:
        return DeliveryPlan(
            status_code=200,
            start=0,
            length=size,
            media_type=media_type,
            headers={"Accept-Ranges": "bytes", "Content-Length": str(size)},
        )
    return DeliveryPlan(
        status_code=206,
        start=byte_range.start,
        length=byte_range.length,
        media_type=media_type,
        headers={
            "Accept-Ranges": "bytes",
            "Content-Length": str(byte_range.length),
            "Content-Range": f"bytes {byte_range.start}-{byte_range.end}/{size}",
        },
    )


def guess_media_type(path: Path | str) -> str:
    suffix = Path(path).suffix.lower()
    if suffix in _MEDIA_TYPES:
        return _MEDIA_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or "application/octet-stream"


async def iter_file(fh: BinaryIO, start: int, length: int, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Yield ``length`` bytes of the open file ``fh`` from ``start``; reads run in worker threads."""
    await asyncio.to_thread(fh.seek, start)
    remaining = length
    while remaining > 0:
        chunk = await asyncio.to_thread(fh.read, min(chunk_size, remaining))
        if not chunk:
            break
        remaining -= len(chunk)
        yield chunk


class ClosingStreamingResponse(StreamingResponse):
    """StreamingResponse that always runs ``on_close``, also when the client goes away."""

    def __init__(self, content, on_close: Optional[Callable[[], Awaitable[None]]] = None, **kwargs):
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            if self._on_close is not None:
                await self._on_close()


def file_response(
    path: Path,
    range_header: Optional[str] = None,
    media_type: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    on_close: Optional[Callable[[], Awaitable[None]]] = None,
) -> ClosingStreamingResponse:
    """
    Serve ``path``, honoring a single byte range.

    The file is opened here and sized from the open handle, so an unlink
    after this call does not affect the response.

    Raises:
        FileNotFoundError: ``path`` vanished before it could be opened.
    """
    fh = path.open("rb")
    try:
        size = os.fstat(fh.fileno()).st_size
        plan = plan_delivery(size, range_header, media_type or guess_media_type(path))
    except BaseException:
        fh.close()
        raise
    body = iter_file(fh, plan.start, plan.length)

    async def _close() -> None:
        try:
            await body.aclose()
        finally:
            await asyncio.to_thread(fh.close)
            if on_close is not None:
                await on_close()

    return ClosingStreamingResponse(
        body,
        on_close=_close,
        status_code=plan.status_code,
        media_type=plan.media_type,
        headers={**(headers or {}), **plan.headers},
    )


def stream_response(
    stream: AudioStream,
    media_type: str,
    content_length: Optional[int] = None,
    headers: Optional[Dict[str, str]] = None,
) -> ClosingStreamingResponse:
    """Relay a live stream. Ranges cannot be honored; the stream is closed when delivery ends."""
    out = {**(headers or {}), "Accept-Ranges": "none"}
    if content_length is not None:
        out["Content-Length"] = str(content_length)
    return ClosingStreamingResponse(stream, on_close=stream.aclose, media_type=media_type, headers=out)
