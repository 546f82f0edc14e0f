"""
Tests for CacheTee: the caller sees every chunk while the cache entry is
published only for a complete stream.
"""
import asyncio

import pytest

from booktainer.tts.fanout import CacheTee
from booktainer.tts.storage import MPEG, AudioCache, make_key

from conftest import ListStream

KEY = make_key("offline", "voice-a", 1.0, "hello")


@pytest.fixture
def cache(tmp_path):
    return AudioCache(tmp_path / "tts-cache")


async def _consume(tee):
    received = []
    async for chunk in tee:
        received.append(chunk)
    return received


class TestCacheTee:
    def test_complete_stream_is_published(self, cache):
        source = ListStream([b"ID3", b"abc", b"def"])

        async def run():
            tee = CacheTee(source, cache.claim(KEY, MPEG))
            received = await _consume(tee)
            return received, await tee.wait_cached()

        received, cached = asyncio.run(run())

        assert received == [b"ID3", b"abc", b"def"]
        assert cached is True
        assert cache.lookup(KEY).path.read_bytes() == b"ID3abcdef"

    def test_source_error_aborts(self, cache):
        source = ListStream([b"one", b"two", b"three"], fail_at=2)

        async def run():
            tee = CacheTee(source, cache.claim(KEY, MPEG))
            received = []
            with pytest.raises(RuntimeError):
                async for chunk in tee:
                    received.append(chunk)
            return received, await tee.wait_cached()

        received, cached = asyncio.run(run())

        assert received == [b"one", b"two"]
        assert cached is False
        assert source.closed
        assert cache.lookup(KEY) is None
        assert list(cache.base_dir.iterdir()) == []

    def test_early_close_aborts(self, cache):
        source = ListStream([b"one", b"two", b"three"])

        async def run():
            tee = CacheTee(source, cache.claim(KEY, MPEG))
            first = await tee.__anext__()
            await tee.aclose()
            return first, await tee.wait_cached()

        first, cached = asyncio.run(run())

        assert first == b"one"
        assert cached is False
        assert source.closed
        assert list(cache.base_dir.iterdir()) == []

    def test_close_before_first_read(self, cache):
        source = ListStream([b"one"])

        async def run():
            tee = CacheTee(source, cache.claim(KEY, MPEG))
            await tee.aclose()
            await tee.aclose()
            return tee, await tee.wait_cached()

        tee, cached = asyncio.run(run())

        assert cached is False
        assert tee.writer.closed
        assert source.closed
        assert list(cache.base_dir.iterdir()) == []

    def test_empty_stream_not_published(self, cache):
        async def run():
            tee = CacheTee(ListStream([]), cache.claim(KEY, MPEG))
            received = await _consume(tee)
            return received, await tee.wait_cached()

        received, cached = asyncio.run(run())

        assert received == []
        assert cached is False
        assert list(cache.base_dir.iterdir()) == []

    def test_write_failure_does_not_interrupt_caller(self, cache):
        writer = cache.claim(KEY, MPEG)

        def broken_write(chunk):
            raise OSError("disk full")

        writer.write = broken_write

        async def run():
            tee = CacheTee(ListStream([b"a", b"b", b"c"]), writer)
            received = await _consume(tee)
            return received, await tee.wait_cached()

        received, cached = asyncio.run(run())

        assert received == [b"a", b"b", b"c"]
        assert cached is False
        assert cache.lookup(KEY) is None
        assert not writer.part_path.exists()

    def test_task_tracking(self, cache):
        tasks = set()

        async def run():
            tee = CacheTee(ListStream([b"x"]), cache.claim(KEY, MPEG), tasks=tasks)
            await tee.__anext__()
            tracked = len(tasks)
            await _consume(tee)
            await tee.wait_cached()
            await asyncio.sleep(0)
            return tracked

        assert asyncio.run(run()) == 1
        assert tasks == set()
