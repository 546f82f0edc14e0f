"""
Fan one provider stream out to the caller and the disk cache.

    provider stream ──> CacheTee ──> caller (HTTP response)
                           │
                           └──> asyncio.Queue ──> drain task ──> CacheWriter

The source is read once. Every chunk handed to the caller is also queued
for a background task that writes it to the claimed ``.part`` file, so a
slow disk never throttles playback. The queue is unbounded; its size is
bounded by the length of one synthesized passage.

Outcomes:
    source exhausted        -> commit (atomic rename, empty result dropped)
    source error / closed   -> abort (``.part`` removed)
    cache write error       -> abort, caller keeps receiving audio
"""
from __future__ import annotations

import asyncio
from typing import Optional, Set

from booktainer.core.logging import debug, get_logger, warn
from booktainer.core.metrics import metrics
from booktainer.tts.providers.base import AudioStream
from booktainer.tts.storage import CacheWriter

_LOG = get_logger("booktainer.tts.fanout")

_COMMIT = object()
_ABORT = object()


class CacheTee:
    """
    Args:
        source: provider stream, read exactly once
        writer: claimed cache writer for this request's key
        tasks: optional set that tracks live drain tasks (awaited at shutdown)
    """

    def __init__(self, source: AudioStream, writer: CacheWriter, tasks: Optional[Set[asyncio.Task]] = None):
        self._source = source
        self._chunks = source.__aiter__()
        self._writer = writer
        self._tasks = tasks
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self._closed = False

    @property
    def writer(self) -> CacheWriter:
        return self._writer

    def __aiter__(self) -> "CacheTee":
        return self

    def _start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._drain())
        if self._tasks is not None:
            self._tasks.add(self._task)
            self._task.add_done_callback(self._tasks.discard)

    def _finish(self, marker: object) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(marker)

    async def __anext__(self) -> bytes:
        if self._finished:
            raise StopAsyncIteration
        self._start()
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._finish(_COMMIT)
            raise
        except BaseException:
            self._finish(_ABORT)
            await self._source.aclose()
            raise
        if chunk:
            self._queue.put_nowait(chunk)
        return chunk

    async def _drain(self) -> bool:
        failed = False
        try:
            while True:
                item = await self._queue.get()
                if item is _COMMIT:
                    if failed:
                        return False
                    return await asyncio.to_thread(self._writer.commit)
                if item is _ABORT:
                    await asyncio.to_thread(self._writer.abort)
                    return False
                if failed:
                    continue
                try:
                    await asyncio.to_thread(self._writer.write, item)
                except (OSError, ValueError) as e:
                    failed = True
                    warn(_LOG, "cache_write_failed", key=self._writer.key[:8], error=str(e))
                    await asyncio.to_thread(self._writer.abort)
                    metrics.record_cache_write("failed")
        except asyncio.CancelledError:
            self._writer.abort()
            raise

    async def aclose(self) -> None:
        """Stop early. A write still in progress is aborted."""
        if self._closed:
            return
        self._closed = True
        if not self._finished:
            debug(_LOG, "tee_closed_early", key=self._writer.key[:8])
            self._finish(_ABORT)
            if self._task is None:
                await asyncio.to_thread(self._writer.abort)
        await self._source.aclose()

    async def wait_cached(self) -> bool:
        """Wait for the background write. True if the entry was published."""
        if self._task is None:
            return False
        return await self._task
